"""Template store: loading and static analysis of stage templates."""

from .intrinsics import EvaluationContext, evaluate, find_functions, referenced_names
from .loader import CloudFormationLoader, parse_template
from .models import (
    MAX_TEMPLATE_BODY_SIZE,
    ResourceDeclaration,
    StageTemplate,
    TemplateOutput,
    TemplateParameter,
)
from .store import TemplateStore

__all__ = [
    "EvaluationContext",
    "evaluate",
    "find_functions",
    "referenced_names",
    "CloudFormationLoader",
    "parse_template",
    "MAX_TEMPLATE_BODY_SIZE",
    "ResourceDeclaration",
    "StageTemplate",
    "TemplateOutput",
    "TemplateParameter",
    "TemplateStore",
]
