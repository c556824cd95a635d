"""
Custom executor stage commands.

Each command wires the real AWS, SSH and file implementations into the
matching stage.
"""

import sys

import click

from .executor import SSHExecutor
from .fargate import FargateAdapter
from .keys import RSAKeyFactory
from .metadata import FileMetadataStore
from .stages import CleanupStage, ConfigStage, PrepareStage, RunStage


def _metadata_store(state: dict) -> FileMetadataStore:
    return FileMetadataStore(
        state["config"].task_metadata.directory, state["runner"].identity
    )


@click.group(name="custom")
def custom_cli():
    """Stages of the job-runner's custom executor."""
    pass


@custom_cli.command(name="config")
@click.pass_obj
def config_cmd(state):
    """Print the driver identity and the job's hostname."""
    ConfigStage(state["runner"], sys.stdout).execute()


@custom_cli.command(name="prepare")
@click.pass_obj
def prepare_cmd(state):
    """Start the job's Fargate task and wait until it is reachable."""
    config = state["config"]
    stage = PrepareStage(
        FargateAdapter(config.fargate.region),
        _metadata_store(state),
        RSAKeyFactory(),
        config.fargate,
    )
    stage.execute(state["cancel"])


@custom_cli.command(
    name="run", context_settings={"ignore_unknown_options": True}
)
@click.argument("args", nargs=-1)
@click.pass_obj
def run_cmd(state, args):
    """Run a job script on the task's container: run <script> <stage>."""
    stage = RunStage(_metadata_store(state), SSHExecutor(), state["config"].ssh)
    stage.execute(state["cancel"], args)


@custom_cli.command(name="cleanup")
@click.pass_obj
def cleanup_cmd(state):
    """Stop the job's Fargate task and delete its metadata."""
    config = state["config"]
    stage = CleanupStage(
        FargateAdapter(config.fargate.region), _metadata_store(state), config.fargate
    )
    stage.execute()
