"""Pydantic models for configuration schema."""

import re
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator


REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")

VALID_CAPABILITIES = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND")

# Stage names double as the default CloudFormation stack name
NAME_PATTERN = "^[A-Za-z][A-Za-z0-9-]*$"


def _validate_region(v: str) -> str:
    if not REGION_PATTERN.match(v):
        raise ValueError(f"Invalid AWS region: {v}")
    return v


def _validate_tags(v: Dict[str, str]) -> Dict[str, str]:
    for key, value in v.items():
        if not key or not isinstance(key, str):
            raise ValueError(f"Tag key must be a non-empty string: {key}")
        if not isinstance(value, str):
            raise ValueError(f"Tag value must be a string for key '{key}': {value}")
        if len(key) > 128:
            raise ValueError(f"Tag key exceeds 128 characters: {key}")
        if len(value) > 256:
            raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
    return v


class OutputReference(BaseModel):
    """Parameter value taken from another stage's stack output."""

    output: str = Field(..., pattern=r"^[A-Za-z][A-Za-z0-9-]*\.[A-Za-z0-9]+$")

    @property
    def stage(self) -> str:
        return self.output.split(".", 1)[0]

    @property
    def key(self) -> str:
        return self.output.split(".", 1)[1]


ParameterValue = Union[OutputReference, bool, int, float, str, List[str]]


def format_parameter_value(value: Union[bool, int, float, str, List[str]]) -> str:
    """Render a literal parameter value the way CloudFormation expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(str(item) for item in value)
    return str(value)


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: str = Field(..., min_length=1)
    tags: Dict[str, str] = Field(default_factory=dict)
    template_bucket: Optional[str] = Field(
        None, description="S3 bucket for templates larger than the inline body limit"
    )

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        return _validate_region(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _validate_tags(v)


class StageConfig(BaseModel):
    """A deployable stage backed by one CloudFormation stack."""

    name: str = Field(..., min_length=1, max_length=64, pattern=NAME_PATTERN)
    template: str = Field(..., min_length=1)
    stack_name: Optional[str] = Field(None, max_length=128, pattern=NAME_PATTERN)
    description: Optional[str] = None
    parameters: Dict[str, ParameterValue] = Field(default_factory=dict)
    capabilities: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    imports: List[str] = Field(default_factory=list, description="Export names consumed in addition to the template's")
    exports: List[str] = Field(default_factory=list, description="Export names produced in addition to the template's")
    external_imports: List[str] = Field(
        default_factory=list, description="Export names produced outside this project"
    )
    tags: Dict[str, str] = Field(default_factory=dict)
    termination_protection: bool = False

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: List[str]) -> List[str]:
        for capability in v:
            if capability not in VALID_CAPABILITIES:
                raise ValueError(
                    f"Invalid capability: {capability}. Must be one of: {', '.join(VALID_CAPABILITIES)}"
                )
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _validate_tags(v)

    @model_validator(mode="after")
    def validate_self_reference(self):
        if self.name in self.depends_on:
            raise ValueError(f"Stage '{self.name}' cannot depend on itself")
        for value in self.parameters.values():
            if isinstance(value, OutputReference) and value.stage == self.name:
                raise ValueError(
                    f"Stage '{self.name}' cannot take a parameter from its own output '{value.output}'"
                )
        return self

    @property
    def resolved_stack_name(self) -> str:
        """Stack name, defaulting to the stage name."""
        return self.stack_name or self.name

    def output_references(self) -> List[OutputReference]:
        """Parameter values that read another stage's outputs."""
        return [v for v in self.parameters.values() if isinstance(v, OutputReference)]


class EnvironmentConfig(BaseModel):
    """Environment-specific configuration."""

    name: str = Field(..., min_length=1)
    account: str = Field(..., pattern="^[0-9]{12}$")
    region: str = Field(..., min_length=1)
    parameters: Dict[str, Dict[str, ParameterValue]] = Field(
        default_factory=dict, description="Per-stage parameter overrides"
    )
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        return _validate_region(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _validate_tags(v)


class CompanionFileConfig(BaseModel):
    """A file the application repository must carry for the pipeline stage."""

    kind: str = Field(..., pattern="^(container_build|build_spec|deploy_mapping)$")
    path: str = Field(..., min_length=1)
    required_keys: List[str] = Field(default_factory=list)


def default_companion_files() -> List[CompanionFileConfig]:
    return [
        CompanionFileConfig(kind="container_build", path="Dockerfile"),
        CompanionFileConfig(
            kind="build_spec", path="buildspec.yml", required_keys=["version", "phases", "artifacts"]
        ),
        CompanionFileConfig(
            kind="deploy_mapping", path="appspec.yaml", required_keys=["version", "Resources"]
        ),
    ]


class ApplicationConfig(BaseModel):
    """Location and expected layout of the deployed application's repository."""

    path: str = "."
    files: List[CompanionFileConfig] = Field(default_factory=default_companion_files)
