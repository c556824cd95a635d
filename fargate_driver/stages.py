"""
The four stages of the custom executor protocol.

Each stage receives its collaborators through its constructor so that the
command line wires the real AWS, SSH and file implementations while tests pass
in doubles.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import IO, Callable, List, Optional, Sequence, Tuple

from .config import FargateSettings, SSHSettings
from .errors import DriverError, ErrorKind, wrap
from .executor import DEFAULT_PORT, ExecutionTarget, Executor
from .fargate import ComputeAdapter, ConnectionSettings, TaskSettings
from .keys import DEFAULT_BIT_SIZE, KeyFactory
from .metadata import MetadataStore, TaskRecord, generate_filename
from .runner import RunnerAdapter
from .signals import CancelContext

logger = logging.getLogger(__name__)

PUBLIC_KEY_VARIABLE = "SSH_PUBLIC_KEY"


class ConfigStage:
    """Reports the driver identity and the job's hostname to the job-runner."""

    def __init__(self, runner: RunnerAdapter, out: IO[str]):
        self.runner = runner
        self.out = out

    def execute(self):
        hostname = generate_filename(self.runner.identity)
        try:
            self.runner.write_config_output(self.out, hostname)
        except OSError as e:
            raise wrap("writing config output", e, ErrorKind.STORAGE) from e


class ProvisioningState(Enum):
    """Steps of the prepare stage, in the order they are reached."""

    PENDING = "pending"
    CREATED = "created"
    STARTED = "started"
    RUNNING = "running"
    ADDRESS_RESOLVED = "address_resolved"
    PERSISTED = "persisted"


class Provisioning:
    """
    Progress of a prepare stage.

    Entering a state may register a rollback. When a later step fails, unwind()
    runs the registered rollbacks in reverse order. Rollback failures are
    logged and never replace the error that triggered the unwind.
    """

    def __init__(self):
        self.state = ProvisioningState.PENDING
        self._rollbacks: List[Tuple[ProvisioningState, Callable[[], None]]] = []

    def advance(
        self,
        state: ProvisioningState,
        rollback: Optional[Callable[[], None]] = None,
    ):
        logger.debug(f"Provisioning {self.state.value} -> {state.value}")
        self.state = state
        if rollback is not None:
            self._rollbacks.append((state, rollback))

    def unwind(self, error: BaseException):
        if not self._rollbacks:
            return
        logger.warning(
            f"Rolling back provisioning from state {self.state.value!r} after: {error}"
        )
        while self._rollbacks:
            state, rollback = self._rollbacks.pop()
            try:
                rollback()
            except Exception as e:
                logger.error(
                    f"Rollback of state {state.value!r} failed: {e}", exc_info=True
                )


class PrepareStage:
    """Starts the job's Fargate task and records how to reach it."""

    def __init__(
        self,
        compute: ComputeAdapter,
        store: MetadataStore,
        key_factory: KeyFactory,
        settings: FargateSettings,
        bit_size: int = DEFAULT_BIT_SIZE,
    ):
        self.compute = compute
        self.store = store
        self.key_factory = key_factory
        self.settings = settings
        self.bit_size = bit_size

    def execute(self, ctx: CancelContext):
        self.compute.init()

        provisioning = Provisioning()
        try:
            self._provision(ctx, provisioning)
        except BaseException as e:
            provisioning.unwind(e)
            raise

    def _provision(self, ctx: CancelContext, provisioning: Provisioning):
        settings = self.settings

        key_pair = self.key_factory.create(self.bit_size)

        task_settings = TaskSettings(
            cluster=settings.cluster,
            task_definition=settings.task_definition,
            platform_version=settings.platform_version,
            environment={PUBLIC_KEY_VARIABLE: key_pair.public_key.decode("utf-8")},
        )
        connection = ConnectionSettings(
            subnet=settings.subnet,
            security_group=settings.security_group,
            enable_public_ip=settings.enable_public_ip,
        )
        try:
            task_arn = self.compute.run_task(task_settings, connection)
        except DriverError as e:
            raise wrap("starting new Fargate task", e) from e

        def stop():
            logger.info(f"Stopping task {task_arn} after failed prepare")
            self.compute.stop_task(task_arn, settings.cluster)

        provisioning.advance(ProvisioningState.CREATED, rollback=stop)

        record = TaskRecord(task_arn=task_arn, private_key=key_pair.private_key)
        self._persist(record, task_arn)
        provisioning.advance(ProvisioningState.STARTED)

        try:
            self.compute.wait_until_task_running(ctx, task_arn, settings.cluster)
        except DriverError as e:
            raise wrap(f"waiting for task {task_arn!r} to be running", e) from e
        provisioning.advance(ProvisioningState.RUNNING)

        try:
            record.container_ip = self.compute.get_container_ip(
                task_arn, settings.cluster, settings.enable_public_ip
            )
        except DriverError as e:
            raise wrap(f"fetching container IP for task {task_arn!r}", e) from e
        provisioning.advance(ProvisioningState.ADDRESS_RESOLVED)

        self._persist(record, task_arn)
        provisioning.advance(ProvisioningState.PERSISTED)
        logger.info(f"Task {task_arn} is reachable at {record.container_ip}")

    def _persist(self, record: TaskRecord, task_arn: str):
        try:
            self.store.persist(record)
        except DriverError as e:
            raise wrap(f"persisting metadata of task {task_arn!r}", e) from e


class RunStage:
    """Executes one script of the job on the task's container."""

    def __init__(self, store: MetadataStore, executor: Executor, ssh: SSHSettings):
        self.store = store
        self.executor = executor
        self.ssh = ssh

    def execute(self, ctx: CancelContext, args: Sequence[str]):
        """
        Args:
            ctx: Cancellation context of the process
            args: Script path and stage name passed by the job-runner
        """
        if len(args) < 2:
            raise DriverError("missing required arguments", ErrorKind.ARGUMENT_ERROR)
        script_path, stage_name = args[0], args[1]
        logger.debug(f"Running stage {stage_name!r} with script {script_path}")

        script = _read_script(script_path)

        try:
            record = self.store.get()
        except DriverError as e:
            raise wrap("loading task metadata", e) from e
        if not record.container_ip:
            raise DriverError(
                f"task {record.task_arn!r} has no container IP", ErrorKind.NOT_FOUND
            )

        port = self.ssh.port if self.ssh.port >= 1 else DEFAULT_PORT
        target = ExecutionTarget(
            hostname=record.container_ip,
            port=port,
            username=self.ssh.username,
            private_key=record.private_key,
        )
        try:
            self.executor.execute(ctx, target, script)
        except DriverError as e:
            raise wrap(
                f"executing script on container with IP {record.container_ip!r}", e
            ) from e


class CleanupStage:
    """Stops the job's Fargate task and forgets about it."""

    def __init__(
        self, compute: ComputeAdapter, store: MetadataStore, settings: FargateSettings
    ):
        self.compute = compute
        self.store = store
        self.settings = settings

    def execute(self):
        self.compute.init()

        try:
            record = self.store.get()
        except DriverError as e:
            raise wrap("loading task metadata", e) from e

        try:
            self.compute.stop_task(record.task_arn, self.settings.cluster)
        except DriverError as e:
            raise wrap(f"stopping task {record.task_arn!r}", e) from e

        try:
            self.store.clear()
        except DriverError as e:
            raise wrap(f"deleting metadata of task {record.task_arn!r}", e) from e


def _read_script(script_path: str) -> bytes:
    path = Path(script_path)
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise wrap(f"script file {script_path!r} not found", e, ErrorKind.NOT_FOUND) from e
    except OSError as e:
        raise wrap(f"reading script file {script_path!r}", e, ErrorKind.STORAGE) from e
