"""
Adapter between the driver and the job-runner that invokes it.

The job-runner passes everything it wants the driver to know through
environment variables: the exit codes to use for build and system failures and
the identity of the job being executed.
"""

import os
from dataclasses import dataclass
from typing import IO, Mapping, Optional

from . import NAME, __version__
from .encoding import dumps
from .errors import DriverError, ErrorKind, FailureClass, classify

BUILD_FAILURE_EXIT_CODE_VARIABLE = "BUILD_FAILURE_EXIT_CODE"
SYSTEM_FAILURE_EXIT_CODE_VARIABLE = "SYSTEM_FAILURE_EXIT_CODE"

SHORT_TOKEN_VARIABLE = "CUSTOM_ENV_CI_RUNNER_SHORT_TOKEN"
PROJECT_URL_VARIABLE = "CUSTOM_ENV_CI_PROJECT_URL"
PIPELINE_ID_VARIABLE = "CUSTOM_ENV_CI_PIPELINE_ID"
JOB_ID_VARIABLE = "CUSTOM_ENV_CI_JOB_ID"

UNKNOWN_VALUE = "unknown"


@dataclass(frozen=True)
class JobIdentity:
    """Attributes identifying the job that is being executed."""

    short_token: str
    project_url: str
    pipeline_id: int
    job_id: int

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None):
        if environ is None:
            environ = os.environ
        return cls(
            short_token=_value_or_unknown(environ, SHORT_TOKEN_VARIABLE),
            project_url=_value_or_unknown(environ, PROJECT_URL_VARIABLE),
            pipeline_id=_int_value(environ, PIPELINE_ID_VARIABLE),
            job_id=_int_value(environ, JOB_ID_VARIABLE),
        )


@dataclass(frozen=True)
class RunnerAdapter:
    """Exit codes and job identity handed over by the job-runner."""

    build_failure_exit_code: int
    system_failure_exit_code: int
    identity: JobIdentity

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None):
        """
        Build the adapter from the job-runner's environment variables.

        Raises:
            DriverError: (CONFIGURATION) if an exit code or a job/pipeline ID
                can't be parsed
        """
        if environ is None:
            environ = os.environ
        return cls(
            build_failure_exit_code=_exit_code(
                environ, BUILD_FAILURE_EXIT_CODE_VARIABLE
            ),
            system_failure_exit_code=_exit_code(
                environ, SYSTEM_FAILURE_EXIT_CODE_VARIABLE
            ),
            identity=JobIdentity.from_environment(environ),
        )

    def exit_code_for(self, error: BaseException) -> int:
        """Select the exit code the job-runner expects for ``error``."""
        if classify(error) is FailureClass.BUILD:
            return self.build_failure_exit_code
        return self.system_failure_exit_code

    def write_config_output(self, out: IO[str], hostname: str):
        """Write the config stage response for the job-runner."""
        output = {
            "driver": {"name": NAME, "version": __version__},
            "hostname": hostname,
        }
        out.write(dumps(output))
        out.flush()


def _value_or_unknown(environ: Mapping[str, str], variable: str) -> str:
    return environ.get(variable) or UNKNOWN_VALUE


def _int_value(environ: Mapping[str, str], variable: str) -> int:
    value = environ.get(variable, "")
    if value == "":
        return 0
    try:
        return int(value)
    except ValueError as e:
        error = DriverError(
            f"couldn't parse integer value {value!r} from variable {variable!r}",
            ErrorKind.CONFIGURATION,
        )
        raise error from e


def _exit_code(environ: Mapping[str, str], variable: str) -> int:
    value = environ.get(variable, "")
    try:
        return int(value)
    except ValueError as e:
        error = DriverError(
            f"couldn't parse exit code {value!r} from variable {variable!r}",
            ErrorKind.CONFIGURATION,
        )
        raise error from e
