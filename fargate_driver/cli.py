"""
Command line entry point of the Fargate driver.

The job-runner invokes one ``fargate custom <stage>`` command per stage of a
job. Global options configure logging and the task definition; the stage
commands live in custom_cli.
"""

import logging
import sys

import click

from . import NAME, __version__
from .config import (
    DEFAULT_CONFIG_FILE,
    LOG_FORMATS,
    apply_overrides,
    close_logging,
    load_config,
    setup_logging,
)
from .custom_cli import custom_cli
from .errors import DriverError
from .runner import RunnerAdapter
from .signals import CancelContext, TerminationHandler

logger = logging.getLogger(__name__)

TASK_DEFINITION_VARIABLE = "CUSTOM_ENV_FARGATE_TASK_DEFINITION"
PLATFORM_VERSION_VARIABLE = "CUSTOM_ENV_FARGATE_PLATFORM_VERSION"


def new_state() -> dict:
    """Objects shared by the commands of one driver invocation."""
    return {"cancel": CancelContext(), "runner": None, "config": None}


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option(
    "--config",
    "config_file",
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Path to the driver's YAML configuration file",
)
@click.option("--debug", is_flag=True, help="Force debug logging")
@click.option("--log-level", help="Log level (overrides the configuration file)")
@click.option(
    "--log-format",
    type=click.Choice(LOG_FORMATS),
    help="Log format (overrides the configuration file)",
)
@click.option("--log-file", help="Append logs to this file instead of stderr")
@click.option(
    "--task-def",
    envvar=TASK_DEFINITION_VARIABLE,
    help="Task definition to run (overrides the configuration file)",
)
@click.option(
    "--platform-version",
    envvar=PLATFORM_VERSION_VARIABLE,
    help="Fargate platform version (overrides the configuration file)",
)
@click.pass_context
def cli(
    ctx,
    version,
    config_file,
    debug,
    log_level,
    log_format,
    log_file,
    task_def,
    platform_version,
):
    """
    fargate - run CI jobs on AWS Fargate tasks

    Configure the job-runner's custom executor to call the stages:
        fargate custom config
        fargate custom prepare
        fargate custom run <script> <stage>
        fargate custom cleanup
    """
    if version:
        click.echo(f"{NAME} {__version__}")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)

    state = ctx.ensure_object(dict)
    state.setdefault("cancel", CancelContext())

    state["runner"] = RunnerAdapter.from_environment()

    config = load_config(config_file)
    apply_overrides(config, task_definition=task_def, platform_version=platform_version)
    state["config"] = config

    level = "debug" if debug else (log_level or config.log_level)
    setup_logging(
        level=level,
        log_format=log_format or config.log_format,
        log_file=log_file or config.log_file or None,
    )
    logger.info(f"Starting {NAME} {__version__}")


cli.add_command(custom_cli)


def main(args=None):
    """Run the driver and exit with the status the job-runner expects."""
    state = new_state()
    TerminationHandler(state["cancel"]).install()

    try:
        cli.main(args=args, prog_name=NAME, standalone_mode=False, obj=state)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except Exception as e:
        logger.error(
            f"Application execution failed: {e}",
            exc_info=not isinstance(e, DriverError),
        )
        runner = state["runner"]
        sys.exit(runner.exit_code_for(e) if runner is not None else 1)
    finally:
        close_logging()
