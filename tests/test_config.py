"""Tests for configuration loading and validation."""

import pytest
import yaml

from cfn_deploy.config.models import OutputReference, StageConfig, format_parameter_value
from cfn_deploy.config.parser import Config, ConfigValidationError


def write_config(tmp_path, data):
    path = tmp_path / "cfn-deploy.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


BASE = {
    "project": {"name": "demo", "region": "us-east-1"},
    "stages": [
        {"name": "network", "template": "templates/network.yaml"},
        {"name": "service", "template": "templates/service.yaml", "depends_on": ["network"]},
    ],
}


class TestLoading:
    """Loading the scaffolded configuration."""

    def test_scaffolded_config_loads(self, config):
        assert config.project.name == "demo"
        assert [stage.name for stage in config.stages] == ["network", "container", "service", "pipeline"]
        assert config.environments["dev"].account == "123456789012"
        assert config.teardown == ["pipeline", "service", "container", "network"]

    def test_stack_name_defaults_to_stage_name(self, config):
        assert config.get_stage("network").resolved_stack_name == "network"

    def test_base_dir_is_config_directory(self, config, project_dir):
        assert config.base_dir == project_dir.resolve()
        assert config.resolve_path("templates/network.yaml") == project_dir.resolve() / "templates" / "network.yaml"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / "absent.yaml")).load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "cfn-deploy.yaml"
        path.write_text("project: [unclosed")
        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()


class TestValidation:
    """Schema and cross-reference errors."""

    def test_missing_sections(self, tmp_path):
        with pytest.raises(ConfigValidationError) as exc_info:
            Config(write_config(tmp_path, {"environments": {}})).load()
        locations = [error["loc"] for error in exc_info.value.errors]
        assert ["project"] in locations
        assert ["stages"] in locations

    def test_duplicate_stage_names(self, tmp_path):
        data = dict(BASE, stages=BASE["stages"] + [{"name": "network", "template": "other.yaml", "stack_name": "other"}])
        with pytest.raises(ConfigValidationError) as exc_info:
            Config(write_config(tmp_path, data)).load()
        assert any("Duplicate stage name" in error["msg"] for error in exc_info.value.errors)

    def test_unknown_dependency(self, tmp_path):
        data = dict(BASE, stages=[{"name": "service", "template": "s.yaml", "depends_on": ["network"]}])
        with pytest.raises(ConfigValidationError) as exc_info:
            Config(write_config(tmp_path, data)).load()
        assert "Unknown stage 'network'" in str(exc_info.value)

    def test_invalid_capability(self, tmp_path):
        data = dict(BASE, stages=[{"name": "network", "template": "n.yaml", "capabilities": ["CAPABILITY_ALL"]}])
        with pytest.raises(ConfigValidationError, match="validation failed"):
            Config(write_config(tmp_path, data)).load()

    def test_invalid_account(self, tmp_path):
        data = dict(BASE, environments={"dev": {"account": "1234", "region": "us-east-1"}})
        with pytest.raises(ConfigValidationError):
            Config(write_config(tmp_path, data)).load()

    def test_teardown_names_unknown_stage(self, tmp_path):
        data = dict(BASE, teardown=["service", "database"])
        with pytest.raises(ConfigValidationError) as exc_info:
            Config(write_config(tmp_path, data)).load()
        assert "Unknown stage 'database'" in str(exc_info.value)

    def test_unknown_environment(self, config):
        with pytest.raises(ConfigValidationError, match="Available environments: dev"):
            config.get_environment("prod")


class TestStageParameters:
    """Parameter values and environment overrides."""

    def test_environment_overrides_stage_parameters(self, tmp_path):
        data = dict(BASE)
        data["stages"] = [
            {"name": "network", "template": "n.yaml"},
            {"name": "service", "template": "s.yaml", "parameters": {"DesiredCount": 1, "ServiceName": "app"}},
        ]
        data["environments"] = {
            "prod": {"account": "210987654321", "region": "eu-west-1", "parameters": {"service": {"DesiredCount": 3}}}
        }
        config = Config(write_config(tmp_path, data)).load()
        service = config.get_stage("service")
        assert config.stage_parameters(service, "prod") == {"DesiredCount": 3, "ServiceName": "app"}
        assert config.stage_parameters(service) == {"DesiredCount": 1, "ServiceName": "app"}

    def test_output_reference(self):
        stage = StageConfig(
            name="service",
            template="s.yaml",
            parameters={"VpcId": {"output": "network.VpcId"}},
        )
        reference = stage.parameters["VpcId"]
        assert isinstance(reference, OutputReference)
        assert (reference.stage, reference.key) == ("network", "VpcId")

    def test_self_reference_is_rejected(self):
        with pytest.raises(ValueError):
            StageConfig(name="network", template="n.yaml", parameters={"X": {"output": "network.VpcId"}})

    @pytest.mark.parametrize("value,expected", [
        (True, "true"),
        (3, "3"),
        (["a", "b"], "a,b"),
        ("text", "text"),
    ])
    def test_format_parameter_value(self, value, expected):
        assert format_parameter_value(value) == expected
