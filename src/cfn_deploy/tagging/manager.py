"""Stack tagging with inheritance from project, environment and stage."""

from typing import Dict, List, Optional

from cfn_deploy.config.models import EnvironmentConfig, ProjectConfig, StageConfig
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)

TAG_PREFIX = "cfn-deploy:"
MANAGED_BY = "cfn-deploy"

# CloudFormation accepts at most 50 tags per stack
MAX_STACK_TAGS = 50


class DeploymentContext:
    """Context information for a deployment."""

    def __init__(self, project_name: str, environment: str, stage: Optional[str] = None):
        self.project_name = project_name
        self.environment = environment
        self.stage = stage


class TagManager:
    """Generates the tag set applied to each stack."""

    def __init__(self, project_config: ProjectConfig):
        self.project_config = project_config

    def generate_tags(
        self,
        context: DeploymentContext,
        stage_config: Optional[StageConfig] = None,
        environment_config: Optional[EnvironmentConfig] = None,
    ) -> Dict[str, str]:
        """Generate complete tag set for a stack.

        Tag inheritance order (later overrides earlier):
        1. Project-level tags
        2. Environment-level tags
        3. Stage-level tags
        4. System tags (cfn-deploy:*), which cannot be overridden
        """
        tags: Dict[str, str] = {}
        tags.update(self.project_config.tags)

        if environment_config:
            tags.update(environment_config.tags)

        if stage_config:
            tags.update(stage_config.tags)

        tags.update(self._generate_system_tags(context))

        if len(tags) > MAX_STACK_TAGS:
            logger.warning(
                f"Stack for stage {context.stage} has {len(tags)} tags; CloudFormation accepts {MAX_STACK_TAGS}"
            )

        return tags

    def _generate_system_tags(self, context: DeploymentContext) -> Dict[str, str]:
        tags = {
            f"{TAG_PREFIX}project": context.project_name,
            f"{TAG_PREFIX}environment": context.environment,
            f"{TAG_PREFIX}managed-by": MANAGED_BY,
        }
        if context.stage:
            tags[f"{TAG_PREFIX}stage"] = context.stage
        return tags

    @staticmethod
    def to_cloudformation(tags: Dict[str, str]) -> List[Dict[str, str]]:
        """Convert a tag mapping to the CloudFormation ``Tags`` list."""
        return [{"Key": key, "Value": value} for key, value in tags.items()]

    @staticmethod
    def is_managed(stack_tags: Optional[Dict[str, str]], project_name: str, environment: str) -> bool:
        """Whether a described stack carries this project's system tags."""
        tags = stack_tags or {}
        return (
            tags.get(f"{TAG_PREFIX}project") == project_name
            and tags.get(f"{TAG_PREFIX}environment") == environment
        )
