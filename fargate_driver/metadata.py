"""
Task metadata shared between the prepare, run and cleanup stages.

Each stage is a separate process, so the details of the job's Fargate task are
persisted in a JSON file whose name is derived from the job identity. Stages of
the same job therefore find the same file without passing anything around.
"""

import base64
import binascii
import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .encoding import dumps, loads
from .errors import DriverError, ErrorKind, wrap
from .runner import JobIdentity

logger = logging.getLogger(__name__)


def generate_filename(identity: JobIdentity) -> str:
    """
    Compute the unique identifier of a job.

    The identifier is the runner's short token followed by the SHA-256 of the
    project URL, pipeline ID and job ID. It is used as the metadata file name
    and as the hostname reported by the config stage.
    """
    long_id = f"{identity.project_url}-{identity.pipeline_id}-{identity.job_id}"
    digest = hashlib.sha256(long_id.encode("utf-8")).hexdigest()
    return f"{identity.short_token}-{digest}"


@dataclass
class TaskRecord:
    """Details of the job's Fargate task needed by later stages."""

    task_arn: str = ""
    container_ip: str = ""
    private_key: bytes = b""

    def to_json(self) -> str:
        return dumps(
            {
                "TaskARN": self.task_arn,
                "ContainerIP": self.container_ip,
                "PrivateKey": base64.b64encode(self.private_key).decode("ascii"),
            }
        )

    @classmethod
    def from_json(cls, content) -> "TaskRecord":
        """
        Decode a record; field names are matched case-insensitively.

        Raises:
            ValueError: if the content is not a valid record
        """
        data = loads(content)
        if not isinstance(data, dict):
            raise ValueError("task metadata must be a JSON object")
        fields = {key.lower(): value for key, value in data.items()}

        private_key = fields.get("privatekey") or ""
        try:
            private_key = base64.b64decode(private_key, validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"invalid PrivateKey encoding: {e}") from e

        return cls(
            task_arn=fields.get("taskarn") or "",
            container_ip=fields.get("containerip") or "",
            private_key=private_key,
        )


class MetadataStore(ABC):
    """Abstract base class for task metadata storage."""

    @abstractmethod
    def persist(self, record: TaskRecord):
        """Save the record, replacing any previous one."""
        pass

    @abstractmethod
    def get(self) -> TaskRecord:
        """
        Load the record.

        Raises:
            DriverError: (NOT_FOUND) if no record was persisted
        """
        pass

    @abstractmethod
    def clear(self):
        """
        Delete the record.

        Raises:
            DriverError: (NOT_FOUND) if no record was persisted
        """
        pass


class FileMetadataStore(MetadataStore):
    """Stores the task metadata as a JSON file in a local directory."""

    def __init__(self, directory, identity: JobIdentity):
        self.directory = Path(directory)
        self.filename = generate_filename(identity)

    @property
    def path(self) -> Path:
        return self.directory / f"{self.filename}.json"

    def persist(self, record: TaskRecord):
        logger.debug(f"Persisting task metadata to {self.path}")
        content = record.to_json().encode("utf-8")
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(content)
        except OSError as e:
            raise wrap(f"writing file {str(self.path)!r}", e, ErrorKind.STORAGE) from e
        logger.debug("Task metadata was persisted")

    def get(self) -> TaskRecord:
        logger.debug(f"Reading task metadata from {self.path}")
        self._error_if_missing()
        try:
            content = self.path.read_bytes()
        except OSError as e:
            raise wrap(f"reading file {str(self.path)!r}", e, ErrorKind.STORAGE) from e

        try:
            record = TaskRecord.from_json(content)
        except ValueError as e:
            raise wrap(
                f"decoding JSON from file {str(self.path)!r}", e, ErrorKind.STORAGE
            ) from e

        logger.debug("Task metadata was fetched")
        return record

    def clear(self):
        logger.debug(f"Deleting task metadata {self.path}")
        self._error_if_missing()
        try:
            self.path.unlink()
        except OSError as e:
            raise wrap(f"deleting file {str(self.path)!r}", e, ErrorKind.STORAGE) from e
        logger.debug("Task metadata was deleted")

    def _error_if_missing(self):
        if not self.path.is_file():
            raise DriverError(
                f"task metadata file {str(self.path)!r} does not exist",
                ErrorKind.NOT_FOUND,
            )
