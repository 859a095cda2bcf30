"""YAML configuration parser for cfn-deploy."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import (
    ApplicationConfig,
    EnvironmentConfig,
    ParameterValue,
    ProjectConfig,
    StageConfig,
)

DEFAULT_CONFIG_FILE = "cfn-deploy.yaml"


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for cfn-deploy."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to cfn-deploy.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.stages: List[StageConfig] = []
        self.environments: Dict[str, EnvironmentConfig] = {}
        self.application: ApplicationConfig = ApplicationConfig()
        self.teardown: Optional[List[str]] = None

    @property
    def base_dir(self) -> Path:
        """Directory that relative template and application paths resolve against."""
        return self.config_path.resolve().parent

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self.load_dict(self.data)

    def load_dict(self, data: Dict) -> "Config":
        """Validate and parse an already-loaded configuration mapping."""
        self.data = data

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self._parse_project()
        self._parse_stages()
        self._parse_environments()
        self._parse_application()
        self.teardown = self.data.get("teardown")

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.data, dict):
            return [{"loc": [], "msg": "Configuration must be a mapping"}]

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._model_errors(ProjectConfig, self.data["project"], ["project"]))

        stage_names: List[str] = []
        stack_names: List[str] = []
        if "stages" not in self.data:
            errors.append({"loc": ["stages"], "msg": "Required field 'stages' is missing"})
        elif not isinstance(self.data["stages"], list) or len(self.data["stages"]) == 0:
            errors.append({"loc": ["stages"], "msg": "At least one stage must be defined"})
        else:
            for idx, stage_data in enumerate(self.data["stages"]):
                stage_errors = self._model_errors(StageConfig, stage_data, ["stages", idx])
                errors.extend(stage_errors)
                if stage_errors:
                    continue
                stage = StageConfig(**stage_data)
                if stage.name in stage_names:
                    errors.append({"loc": ["stages", idx, "name"], "msg": f"Duplicate stage name '{stage.name}'"})
                if stage.resolved_stack_name in stack_names:
                    errors.append({
                        "loc": ["stages", idx, "stack_name"],
                        "msg": f"Duplicate stack name '{stage.resolved_stack_name}'",
                    })
                stage_names.append(stage.name)
                stack_names.append(stage.resolved_stack_name)

            errors.extend(self._validate_stage_references(stage_names))

        if "environments" in self.data:
            if not isinstance(self.data["environments"], dict):
                errors.append({"loc": ["environments"], "msg": "Environments must be a dictionary"})
            else:
                for env_name, env_data in self.data["environments"].items():
                    env_config_data = {"name": env_name, **(env_data or {})}
                    env_errors = self._model_errors(
                        EnvironmentConfig, env_config_data, ["environments", env_name]
                    )
                    errors.extend(env_errors)
                    if not env_errors:
                        for stage_name in env_config_data.get("parameters", {}):
                            if stage_names and stage_name not in stage_names:
                                errors.append({
                                    "loc": ["environments", env_name, "parameters", stage_name],
                                    "msg": f"Unknown stage '{stage_name}'",
                                })

        if "application" in self.data:
            errors.extend(self._model_errors(ApplicationConfig, self.data["application"], ["application"]))

        teardown = self.data.get("teardown")
        if teardown is not None:
            if not isinstance(teardown, list):
                errors.append({"loc": ["teardown"], "msg": "Teardown must be a list of stage names"})
            else:
                for name in teardown:
                    if stage_names and name not in stage_names:
                        errors.append({"loc": ["teardown"], "msg": f"Unknown stage '{name}'"})

        return errors

    def _validate_stage_references(self, stage_names: List[str]) -> List[Dict]:
        """Check that depends_on and output references name known stages."""
        errors = []
        for idx, stage_data in enumerate(self.data["stages"]):
            try:
                stage = StageConfig(**stage_data)
            except (ValidationError, TypeError):
                continue
            for dep in stage.depends_on:
                if dep not in stage_names:
                    errors.append({
                        "loc": ["stages", idx, "depends_on"],
                        "msg": f"Unknown stage '{dep}'",
                    })
            for ref in stage.output_references():
                if ref.stage not in stage_names:
                    errors.append({
                        "loc": ["stages", idx, "parameters"],
                        "msg": f"Output reference '{ref.output}' names unknown stage '{ref.stage}'",
                    })
        return errors

    @staticmethod
    def _model_errors(model, data, loc: List) -> List[Dict]:
        if not isinstance(data, dict):
            return [{"loc": loc, "msg": "Expected a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": loc + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def get_stages(self, stage_filter: Optional[str] = None) -> List[StageConfig]:
        """Get stage configurations in declaration order.

        Args:
            stage_filter: Optional stage name to filter by
        """
        if stage_filter:
            return [stage for stage in self.stages if stage.name == stage_filter]
        return self.stages

    def get_stage(self, stage_name: str) -> Optional[StageConfig]:
        """Get specific stage configuration by name."""
        for stage in self.stages:
            if stage.name == stage_name:
                return stage
        return None

    def get_environment(self, env_name: str) -> EnvironmentConfig:
        """Get environment-specific configuration.

        Raises:
            ConfigValidationError: If environment doesn't exist
        """
        if env_name not in self.environments:
            available = ", ".join(self.environments.keys()) or "none"
            raise ConfigValidationError(
                f"Environment '{env_name}' not found. Available environments: {available}"
            )

        return self.environments[env_name]

    def stage_parameters(
        self, stage: StageConfig, environment: Optional[str] = None
    ) -> Dict[str, ParameterValue]:
        """Stage parameters with environment overrides applied."""
        parameters = dict(stage.parameters)
        if environment and environment in self.environments:
            parameters.update(self.environments[environment].parameters.get(stage.name, {}))
        return parameters

    def resolve_path(self, path: str) -> Path:
        """Resolve a path from the configuration relative to the config file."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def _parse_project(self):
        self.project = ProjectConfig(**self.data["project"])

    def _parse_stages(self):
        self.stages = [StageConfig(**stage_data) for stage_data in self.data["stages"]]

    def _parse_environments(self):
        for env_name, env_data in (self.data.get("environments") or {}).items():
            self.environments[env_name] = EnvironmentConfig(name=env_name, **(env_data or {}))

    def _parse_application(self):
        if "application" in self.data:
            self.application = ApplicationConfig(**self.data["application"])

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary."""
        return {
            "project": self.project.model_dump() if self.project else {},
            "stages": [stage.model_dump() for stage in self.stages],
            "environments": {
                name: env.model_dump(exclude={"name"}) for name, env in self.environments.items()
            },
            "application": self.application.model_dump(),
            "teardown": self.teardown,
        }
