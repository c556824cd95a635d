"""
Configuration management for the Fargate driver.

This module handles:
- Loading the driver's YAML configuration file into typed settings
- Command line / environment overrides of the task definition settings
- Logging setup (level, format and destination)
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Optional

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException
from rich.console import Console
from rich.logging import RichHandler

from .errors import DriverError, ErrorKind, wrap

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"

LOG_FORMATS = ("text", "text_simple", "json")

# Handlers added by setup_logging, with the log file each one owns
_installed = []


@dataclass
class FargateSettings:
    """Where and how the job's Fargate task is started."""

    cluster: str = ""
    region: str = ""
    subnet: str = ""
    security_group: str = ""
    task_definition: str = ""
    platform_version: str = ""
    enable_public_ip: bool = False


@dataclass
class TaskMetadataSettings:
    """Location of the per-job metadata files."""

    directory: str = "/tmp"


@dataclass
class SSHSettings:
    """Credentials used to reach the task container."""

    username: str = "root"
    port: int = 22


@dataclass
class DriverConfig:
    """Complete driver configuration."""

    log_level: str = "info"
    log_format: str = "text"
    log_file: str = ""
    fargate: FargateSettings = field(default_factory=FargateSettings)
    task_metadata: TaskMetadataSettings = field(default_factory=TaskMetadataSettings)
    ssh: SSHSettings = field(default_factory=SSHSettings)


def load_config(path) -> DriverConfig:
    """
    Load the driver configuration from a YAML file.

    Values missing from the file keep their defaults. Unknown keys and values
    of the wrong type are rejected.

    Args:
        path: Path to the YAML configuration file

    Returns:
        The merged DriverConfig

    Raises:
        DriverError: (CONFIGURATION) if the file can't be read or is invalid
    """
    config_path = Path(path)
    try:
        content = yaml.safe_load(config_path.read_text()) or {}
    except OSError as e:
        raise wrap(
            f"couldn't read configuration file {str(config_path)!r}",
            e,
            ErrorKind.CONFIGURATION,
        ) from e
    except yaml.YAMLError as e:
        raise wrap(
            f"couldn't parse YAML content of the configuration file {str(config_path)!r}",
            e,
            ErrorKind.CONFIGURATION,
        ) from e

    if not isinstance(content, dict):
        raise DriverError(
            f"configuration file {str(config_path)!r} must contain a mapping",
            ErrorKind.CONFIGURATION,
        )

    try:
        schema = OmegaConf.structured(DriverConfig)
        merged = OmegaConf.merge(schema, OmegaConf.create(content))
        config = OmegaConf.to_object(merged)
    except OmegaConfBaseException as e:
        raise wrap(
            f"invalid configuration in {str(config_path)!r}",
            e,
            ErrorKind.CONFIGURATION,
        ) from e

    logger.debug(f"Loaded configuration from {config_path}")
    return config


def apply_overrides(
    config: DriverConfig,
    task_definition: Optional[str] = None,
    platform_version: Optional[str] = None,
) -> DriverConfig:
    """Override file settings with values received by command line or environment."""
    if task_definition:
        config.fargate.task_definition = task_definition
    if platform_version:
        config.fargate.platform_version = platform_version
    return config


class JsonFormatter(logging.Formatter):
    """Formats each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "PID": record.process,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _open_log_file(log_file: str) -> IO[str]:
    """Open the log file for appending, creating it readable by the owner only."""
    try:
        fd = os.open(log_file, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        return os.fdopen(fd, "a", encoding="utf-8")
    except OSError as e:
        raise wrap(
            f"couldn't open log file {log_file!r} for appending",
            e,
            ErrorKind.CONFIGURATION,
        ) from e


def setup_logging(
    level: str = "info", log_format: str = "text", log_file: Optional[str] = None
):
    """
    Configure the root logger.

    Args:
        level: Log level name (debug, info, warning, error, critical)
        log_format: One of "text" (rich console), "text_simple" or "json"
        log_file: Append logs to this file instead of writing to stderr

    Raises:
        DriverError: (CONFIGURATION) for an unknown level or format, or an
            unusable log file
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise DriverError(
            f"couldn't parse log level {level!r}", ErrorKind.CONFIGURATION
        )
    if log_format not in LOG_FORMATS:
        raise DriverError(
            f"unsupported logging format {log_format!r}", ErrorKind.CONFIGURATION
        )

    stream = _open_log_file(log_file) if log_file else None

    # Replace whatever a previous call installed
    close_logging()

    if log_format == "text":
        console = Console(file=stream) if stream else Console(stderr=True)
        handler = RichHandler(console=console, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("[%(process)d] %(message)s"))
    elif log_format == "text_simple":
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
            )
        )
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    handler.setLevel(numeric_level)
    root_logger.addHandler(handler)

    _installed.append((handler, stream))


def close_logging():
    """Detach the handlers installed by setup_logging and close their log files."""
    root_logger = logging.getLogger()
    while _installed:
        handler, stream = _installed.pop()
        root_logger.removeHandler(handler)
        handler.close()
        if stream is not None:
            stream.close()
