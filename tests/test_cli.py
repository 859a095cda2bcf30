"""Tests for the command-line interface."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from cfn_deploy.cli.main import cli
from cfn_deploy.state.manager import StateManager, default_state_path

INIT_ARGS = ["init", "--name", "demo", "--region", "us-east-1", "--account", "123456789012"]


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures the root logger; put pytest's handlers back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(runner, tmp_path):
    """Run inside a freshly initialised project."""
    with runner.isolated_filesystem(temp_dir=tmp_path) as directory:
        result = runner.invoke(cli, INIT_ARGS)
        assert result.exit_code == 0, result.output
        yield Path(directory)


@pytest.fixture
def aws(cloudformation):
    with patch("cfn_deploy.cli.main.AWSClientManager") as manager_class:
        manager = manager_class.return_value
        manager.session = MagicMock(region_name="us-east-1")
        manager.get_client.side_effect = (
            lambda service: cloudformation if service == "cloudformation" else MagicMock()
        )
        yield manager


def stored_state(project):
    return StateManager(str(default_state_path("demo", "dev", project.resolve()))).load()


class TestInit:
    """Scaffolding a project."""

    def test_writes_config_templates_and_gitignore(self, project):
        assert (project / "cfn-deploy.yaml").is_file()
        assert sorted(p.name for p in (project / "templates").iterdir()) == [
            "container.yaml", "network.yaml", "pipeline.yaml", "service.yaml",
        ]
        assert ".cfn-deploy/" in (project / ".gitignore").read_text()

    def test_refuses_to_overwrite(self, runner, project):
        result = runner.invoke(cli, INIT_ARGS)
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force_overwrites(self, runner, project):
        result = runner.invoke(cli, INIT_ARGS + ["--force"])
        assert result.exit_code == 0


class TestOfflineCommands:
    """Commands that never call AWS."""

    def test_validate(self, runner, project):
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0, result.output
        assert "Configuration is valid" in result.output

    def test_validate_reports_wrong_teardown(self, runner, project):
        config = project / "cfn-deploy.yaml"
        config.write_text(config.read_text().replace(
            "  - service\n  - container\n", "  - container\n  - service\n"
        ))
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 1
        assert "Teardown order" in result.output

    def test_order(self, runner, project):
        result = runner.invoke(cli, ["order"])
        assert result.exit_code == 0
        assert "Teardown:" in result.output
        assert "pipeline -> service -> container -> network" in result.output

    def test_plan(self, runner, project):
        result = runner.invoke(cli, ["plan", "--env", "dev"])
        assert result.exit_code == 0, result.output
        assert "4 to create" in result.output

    def test_unknown_environment(self, runner, project):
        result = runner.invoke(cli, ["plan", "--env", "prod"])
        assert result.exit_code == 1
        assert "Environment 'prod' not found" in result.output

    def test_missing_config(self, runner, tmp_path):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(cli, ["order"])
        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_status_without_deployment(self, runner, project):
        result = runner.invoke(cli, ["status", "--env", "dev"])
        assert result.exit_code == 0
        assert "No deployment found" in result.output


class TestDeployCommands:
    """Commands that talk to CloudFormation through a patched client manager."""

    def test_deploy_status_outputs_and_destroy(self, runner, project, aws, cloudformation):
        result = runner.invoke(cli, ["deploy", "--env", "dev", "--yes"])
        assert result.exit_code == 0, result.output
        assert "Deployment successful" in result.output
        assert sorted(cloudformation.stacks) == ["container", "network", "pipeline", "service"]
        aws.get_account_id.assert_not_called()

        result = runner.invoke(cli, ["deploy", "--env", "dev", "--yes"])
        assert result.exit_code == 0
        assert "Nothing to deploy" in result.output

        result = runner.invoke(cli, ["status", "--env", "dev"])
        assert result.exit_code == 0
        assert "pipeline" in result.output

        result = runner.invoke(cli, ["--log-level", "error", "outputs", "--env", "dev", "--format", "json"])
        assert result.exit_code == 0
        outputs = json.loads(result.stdout)
        assert list(outputs) == ["network", "container", "service", "pipeline"]
        assert outputs["network"]["VpcId"] == "vpcid-network"

        result = runner.invoke(cli, ["drift", "--env", "dev", "--local-only"])
        assert result.exit_code == 0
        assert "No drift" in result.output

        result = runner.invoke(cli, ["destroy", "--env", "dev", "--yes"])
        assert result.exit_code == 0, result.output
        assert "Destruction successful" in result.output
        assert cloudformation.stacks == {}
        assert stored_state(project).records == {}

    def test_failed_deploy_exits_non_zero(self, runner, project, aws, cloudformation):
        cloudformation.fail_on["service"] = "Resource handler returned message: Target group health checks failed"
        result = runner.invoke(cli, ["deploy", "--env", "dev", "--yes"])
        assert result.exit_code == 1
        assert "Deployment failed" in result.output
        assert stored_state(project).records["service"].status.value == "failed"

    def test_auto_rollback(self, runner, project, aws, cloudformation):
        cloudformation.fail_on["container"] = "Resource handler returned message: Access Denied"
        result = runner.invoke(cli, ["deploy", "--env", "dev", "--yes", "--auto-rollback"])
        assert result.exit_code == 1
        assert "Rollback status: success" in result.output
        assert cloudformation.stacks == {}

    def test_deploy_can_be_cancelled(self, runner, project, aws, cloudformation):
        result = runner.invoke(cli, ["deploy", "--env", "dev"], input="n\n")
        assert result.exit_code == 0
        assert "Deployment cancelled" in result.output
        assert cloudformation.operations == []

    def test_region_override_must_match_environment(self, runner, project, aws, cloudformation):
        result = runner.invoke(cli, ["--region", "eu-west-1", "deploy", "--env", "dev", "--yes"])
        assert result.exit_code == 1
        assert "does not match" in result.output
        assert cloudformation.operations == []

        result = runner.invoke(cli, ["--region", "us-east-1", "deploy", "--env", "dev", "--yes"])
        assert result.exit_code == 0, result.output
        assert stored_state(project).region == "us-east-1"

    def test_destroy_without_deployment(self, runner, project, aws):
        result = runner.invoke(cli, ["destroy", "--env", "dev", "--yes"])
        assert result.exit_code == 0
        assert "No deployment found" in result.output


class TestCheckApp:
    """Companion file checks from the command line."""

    def write_companions(self, root):
        (root / "Dockerfile").write_text("FROM public.ecr.aws/docker/library/python:3.12-slim\n")
        (root / "buildspec.yml").write_text("version: 0.2\nphases: {}\nartifacts: {}\n")
        (root / "appspec.yaml").write_text("version: 0.0\nResources: []\n")

    def test_passes(self, runner, project):
        self.write_companions(project)
        result = runner.invoke(cli, ["check-app"])
        assert result.exit_code == 0, result.output

    def test_missing_file_fails(self, runner, project):
        self.write_companions(project)
        (project / "appspec.yaml").unlink()
        result = runner.invoke(cli, ["check-app"])
        assert result.exit_code == 1

    def test_explicit_path(self, runner, project):
        app = project / "app"
        app.mkdir()
        self.write_companions(app)
        assert runner.invoke(cli, ["check-app", "app"]).exit_code == 0
        assert runner.invoke(cli, ["check-app"]).exit_code == 1
