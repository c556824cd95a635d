"""
Tests for the command line interface.
"""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from fargate_driver import __version__
from fargate_driver.cli import cli, main, new_state
from fargate_driver.config import close_logging
from fargate_driver.errors import DriverError, ErrorKind
from fargate_driver.metadata import generate_filename
from fargate_driver.runner import JobIdentity

ENVIRONMENT = {
    "BUILD_FAILURE_EXIT_CODE": "2",
    "SYSTEM_FAILURE_EXIT_CODE": "3",
    "CUSTOM_ENV_CI_RUNNER_SHORT_TOKEN": "test",
    "CUSTOM_ENV_CI_PROJECT_URL": "http://gitlab.example.com/my/project",
    "CUSTOM_ENV_CI_PIPELINE_ID": "1",
    "CUSTOM_ENV_CI_JOB_ID": "1",
}


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "log_format": "text_simple",
                "fargate": {"cluster": "ci", "task_definition": "from-file"},
                "task_metadata": {"directory": str(tmp_path)},
            }
        )
    )
    return path


class TestCli:
    """Test the click commands through CliRunner."""

    def setup_method(self):
        self.runner = CliRunner()

    def teardown_method(self):
        close_logging()

    def invoke(self, args, env=None):
        state = new_state()
        result = self.runner.invoke(
            cli, args, obj=state, env=dict(ENVIRONMENT, **(env or {}))
        )
        return result, state

    def test_version(self):
        result, _ = self.invoke(["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_custom_config(self, config_file):
        result, _ = self.invoke(["--config", str(config_file), "custom", "config"])

        assert result.exit_code == 0, result.output
        output = json.loads(result.stdout.splitlines()[-1])
        identity = JobIdentity.from_environment(ENVIRONMENT)
        assert output["hostname"] == generate_filename(identity)

    def test_task_definition_from_environment(self, config_file):
        result, state = self.invoke(
            ["--config", str(config_file), "custom", "config"],
            env={"CUSTOM_ENV_FARGATE_TASK_DEFINITION": "from-env"},
        )

        assert result.exit_code == 0, result.output
        assert state["config"].fargate.task_definition == "from-env"

    def test_task_definition_option_wins(self, config_file):
        result, state = self.invoke(
            [
                "--config",
                str(config_file),
                "--task-def",
                "from-cli",
                "--platform-version",
                "1.4.0",
                "custom",
                "config",
            ],
            env={"CUSTOM_ENV_FARGATE_TASK_DEFINITION": "from-env"},
        )

        assert result.exit_code == 0, result.output
        assert state["config"].fargate.task_definition == "from-cli"
        assert state["config"].fargate.platform_version == "1.4.0"

    def test_run_with_one_argument(self, config_file):
        result, state = self.invoke(
            ["--config", str(config_file), "custom", "run", "script.sh"]
        )

        assert isinstance(result.exception, DriverError)
        assert result.exception.kind is ErrorKind.ARGUMENT_ERROR
        assert state["runner"].exit_code_for(result.exception) == 3

    def test_cleanup_without_record(self, config_file):
        with patch("fargate_driver.custom_cli.FargateAdapter") as adapter:
            result, _ = self.invoke(["--config", str(config_file), "custom", "cleanup"])

        adapter.return_value.init.assert_called_once_with()
        adapter.return_value.stop_task.assert_not_called()
        assert isinstance(result.exception, DriverError)
        assert result.exception.kind is ErrorKind.NOT_FOUND

    def test_missing_config_file(self, tmp_path):
        result, _ = self.invoke(
            ["--config", str(tmp_path / "missing.yaml"), "custom", "config"]
        )

        assert isinstance(result.exception, DriverError)
        assert result.exception.kind is ErrorKind.CONFIGURATION


class TestMain:
    """Test exit codes selected by main()."""

    def test_build_failure_exit_code(self, monkeypatch, config_file):
        for name, value in ENVIRONMENT.items():
            monkeypatch.setenv(name, value)
        build_failure = DriverError("exit status 1", ErrorKind.BUILD_FAILURE)

        with patch("fargate_driver.cli.TerminationHandler"), patch(
            "fargate_driver.custom_cli.RunStage"
        ) as run_stage:
            run_stage.return_value.execute.side_effect = build_failure
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(config_file), "custom", "run", "a", "b"])

        assert exc_info.value.code == 2

    def test_system_failure_exit_code(self, monkeypatch, config_file):
        for name, value in ENVIRONMENT.items():
            monkeypatch.setenv(name, value)

        with patch("fargate_driver.cli.TerminationHandler"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(config_file), "custom", "run", "a"])

        assert exc_info.value.code == 3

    def test_invalid_runner_environment_exits_1(self, monkeypatch, config_file):
        monkeypatch.setenv("BUILD_FAILURE_EXIT_CODE", "not-a-number")

        with patch("fargate_driver.cli.TerminationHandler"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(config_file), "custom", "config"])

        assert exc_info.value.code == 1
