"""Stack tagging."""

from cfn_deploy.tagging.manager import DeploymentContext, TagManager

__all__ = ["TagManager", "DeploymentContext"]
