"""
AWS Fargate compute adapter.

Starts, watches and stops the ECS task that hosts a single CI job, and resolves
the address its SSH server is reachable on.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import DriverError, ErrorKind, wrap
from .signals import CancelContext

logger = logging.getLogger(__name__)

DEFAULT_CONTAINER_NAME = "ci-coordinator"

DEFAULT_POLL_INTERVAL = 6.0
DEFAULT_MAX_ATTEMPTS = 100

LAUNCH_TYPE = "FARGATE"


@dataclass(frozen=True)
class TaskSettings:
    """Definition of the task to start."""

    cluster: str
    task_definition: str
    platform_version: str = ""
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionSettings:
    """Network placement of the task."""

    subnet: str
    security_group: str
    enable_public_ip: bool = False


class ComputeAdapter(ABC):
    """Abstract base class for the remote compute service."""

    @abstractmethod
    def init(self):
        """Create the service clients. Must be called before anything else."""
        pass

    @abstractmethod
    def run_task(self, settings: TaskSettings, connection: ConnectionSettings) -> str:
        """
        Start a new task.

        Returns:
            The task ARN
        """
        pass

    @abstractmethod
    def wait_until_task_running(self, ctx: CancelContext, task_arn: str, cluster: str):
        """Block until the task is running, has failed or ctx is cancelled."""
        pass

    @abstractmethod
    def stop_task(self, task_arn: str, cluster: str):
        """Stop the task."""
        pass

    @abstractmethod
    def get_container_ip(self, task_arn: str, cluster: str, use_public_ip: bool) -> str:
        """Resolve the public or private IPv4 address of the task's container."""
        pass


class FargateAdapter(ComputeAdapter):
    """ComputeAdapter backed by the ECS and EC2 APIs through boto3."""

    def __init__(
        self,
        region: str,
        session_factory=boto3.session.Session,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.region = region
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._ecs = None
        self._ec2 = None

    def init(self):
        logger.debug(f"Initializing AWS clients for region {self.region!r}")
        try:
            session = self.session_factory(region_name=self.region or None)
            self._ecs = session.client("ecs")
            self._ec2 = session.client("ec2")
        except BotoCoreError as e:
            raise wrap("creating AWS session", e, ErrorKind.REMOTE_FAILURE) from e

    def _check_initialized(self):
        if self._ecs is None or self._ec2 is None:
            raise DriverError(
                "AWS clients are not initialized; call init() first",
                ErrorKind.NOT_INITIALIZED,
            )

    @property
    def ecs(self):
        self._check_initialized()
        return self._ecs

    @property
    def ec2(self):
        self._check_initialized()
        return self._ec2

    def run_task(self, settings: TaskSettings, connection: ConnectionSettings) -> str:
        ecs = self.ecs
        request = {
            "cluster": settings.cluster,
            "taskDefinition": settings.task_definition,
            "launchType": LAUNCH_TYPE,
            "count": 1,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": [connection.subnet],
                    "securityGroups": [connection.security_group],
                    "assignPublicIp": (
                        "ENABLED" if connection.enable_public_ip else "DISABLED"
                    ),
                }
            },
        }
        if settings.platform_version:
            request["platformVersion"] = settings.platform_version
        if settings.environment:
            request["overrides"] = {
                "containerOverrides": [
                    {
                        "name": DEFAULT_CONTAINER_NAME,
                        "environment": [
                            {"name": name, "value": value}
                            for name, value in settings.environment.items()
                        ],
                    }
                ]
            }

        logger.debug(
            f"Starting new task with definition {settings.task_definition!r} "
            f"on cluster {settings.cluster!r}"
        )
        try:
            response = ecs.run_task(**request)
        except (BotoCoreError, ClientError) as e:
            raise wrap(
                f"starting new task with definition {settings.task_definition!r}", e
            ) from e

        tasks = response.get("tasks") or []
        if not tasks:
            reasons = _failure_reasons(response.get("failures"))
            raise DriverError(
                f"no task was started with definition {settings.task_definition!r}: "
                f"{reasons or 'unknown reason'}",
                ErrorKind.REMOTE_FAILURE,
            )

        task_arn = tasks[0].get("taskArn", "")
        logger.info(f"Started task {task_arn}")
        return task_arn

    def wait_until_task_running(self, ctx: CancelContext, task_arn: str, cluster: str):
        self._check_initialized()
        logger.debug(f"Waiting for task {task_arn} to be running")

        for attempt in range(1, self.max_attempts + 1):
            if ctx.cancelled:
                break

            task = self._describe_task(task_arn, cluster)
            status = task.get("lastStatus", "")
            logger.debug(f"Task {task_arn} status: {status} (attempt {attempt})")

            if status == "RUNNING":
                logger.info(f"Task {task_arn} is running")
                return
            if status == "STOPPED":
                reason = task.get("stoppedReason") or "unknown reason"
                raise DriverError(
                    f"task {task_arn!r} stopped before running: {reason}",
                    ErrorKind.REMOTE_FAILURE,
                )

            if attempt < self.max_attempts and ctx.wait(self.poll_interval):
                break
        else:
            raise DriverError(
                f"task {task_arn!r} was not running after {self.max_attempts} attempts",
                ErrorKind.REMOTE_FAILURE,
            )

        raise DriverError(
            f"waiting for task {task_arn!r} to be running was cancelled",
            ErrorKind.CANCELLED,
        )

    def stop_task(self, task_arn: str, cluster: str):
        ecs = self.ecs
        logger.debug(f"Stopping task {task_arn}")
        try:
            ecs.stop_task(cluster=cluster, task=task_arn)
        except (BotoCoreError, ClientError) as e:
            raise wrap(f"stopping task {task_arn!r}", e) from e
        logger.info(f"Stopped task {task_arn}")

    def get_container_ip(self, task_arn: str, cluster: str, use_public_ip: bool) -> str:
        self._check_initialized()
        task = self._describe_task(task_arn, cluster)
        if use_public_ip:
            return self._public_ip(task_arn, task)
        return _private_ip(task_arn, task)

    def _describe_task(self, task_arn: str, cluster: str) -> dict:
        try:
            response = self.ecs.describe_tasks(cluster=cluster, tasks=[task_arn])
        except (BotoCoreError, ClientError) as e:
            raise wrap(f"describing task {task_arn!r}", e) from e

        for failure in response.get("failures") or []:
            if failure.get("reason") == "MISSING":
                raise DriverError(
                    f"task {task_arn!r} is missing", ErrorKind.REMOTE_FAILURE
                )

        tasks = response.get("tasks") or []
        if not tasks:
            reasons = _failure_reasons(response.get("failures"))
            raise DriverError(
                f"task {task_arn!r} was not found: {reasons or 'no task returned'}",
                ErrorKind.NOT_FOUND,
            )
        return tasks[0]

    def _public_ip(self, task_arn: str, task: dict) -> str:
        attachments = task.get("attachments") or []
        if not attachments:
            raise DriverError(
                f"task {task_arn!r} has no network attachment", ErrorKind.NOT_FOUND
            )

        interface_id = None
        for detail in attachments[0].get("details") or []:
            if detail.get("name") == "networkInterfaceId":
                interface_id = detail.get("value")
                break
        if not interface_id:
            raise DriverError(
                f"network interface of task {task_arn!r} was not found",
                ErrorKind.NOT_FOUND,
            )

        try:
            response = self.ec2.describe_network_interfaces(
                NetworkInterfaceIds=[interface_id]
            )
        except (BotoCoreError, ClientError) as e:
            raise wrap(
                f"describing network interface {interface_id!r} of task {task_arn!r}", e
            ) from e

        interfaces = response.get("NetworkInterfaces") or []
        public_ip = ""
        if interfaces:
            public_ip = (interfaces[0].get("Association") or {}).get("PublicIp", "")
        if not public_ip:
            raise DriverError(
                f"public IP of task {task_arn!r} was not found", ErrorKind.NOT_FOUND
            )
        return public_ip


def _private_ip(task_arn: str, task: dict) -> str:
    containers = task.get("containers") or []
    interfaces = (containers[0].get("networkInterfaces") or []) if containers else []
    private_ip = interfaces[0].get("privateIpv4Address", "") if interfaces else ""
    if not private_ip:
        raise DriverError(
            f"private IP of task {task_arn!r} was not found", ErrorKind.NOT_FOUND
        )
    return private_ip


def _failure_reasons(failures: Optional[List[dict]]) -> str:
    return "; ".join(
        f"{failure.get('arn', '')} {failure.get('reason', '')}".strip()
        for failure in failures or []
    )
