"""Parsed view of a stage template."""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cfn_deploy.templates.intrinsics import EvaluationContext, evaluate, find_functions

# Templates above this size must be passed to CloudFormation through S3
MAX_TEMPLATE_BODY_SIZE = 51200


@dataclass
class TemplateParameter:
    """A declared template parameter."""

    name: str
    type: str = "String"
    default: Optional[str] = None
    description: Optional[str] = None
    no_echo: bool = False


@dataclass
class ResourceDeclaration:
    """A resource in a stage template with its intra-stage edges."""

    logical_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)


@dataclass
class TemplateOutput:
    """A declared template output."""

    key: str
    value: Any
    export_name: Any = None  # Raw expression of Export.Name
    description: Optional[str] = None


@dataclass
class StageTemplate:
    """A loaded template and what it declares."""

    path: str
    body: str
    document: Dict[str, Any]
    parameters: Dict[str, TemplateParameter] = field(default_factory=dict)
    resources: List[ResourceDeclaration] = field(default_factory=list)
    outputs: Dict[str, TemplateOutput] = field(default_factory=dict)
    description: Optional[str] = None

    @property
    def hash(self) -> str:
        """SHA-256 of the raw template body."""
        return hashlib.sha256(self.body.encode("utf-8")).hexdigest()

    @property
    def size(self) -> int:
        return len(self.body.encode("utf-8"))

    def requires_upload(self) -> bool:
        return self.size > MAX_TEMPLATE_BODY_SIZE

    def get_resource(self, logical_id: str) -> Optional[ResourceDeclaration]:
        for resource in self.resources:
            if resource.logical_id == logical_id:
                return resource
        return None

    def default_parameters(self) -> Dict[str, Optional[str]]:
        return {name: param.default for name, param in self.parameters.items()}

    def resolve_exports(self, context: EvaluationContext) -> Tuple[Dict[str, str], List[str]]:
        """Resolve export names against a context.

        Returns:
            (export name -> output key, output keys whose export name is not static)
        """
        exports: Dict[str, str] = {}
        unresolved: List[str] = []
        for output in self.outputs.values():
            if output.export_name is None:
                continue
            name = evaluate(output.export_name, context)
            if name is None:
                unresolved.append(output.key)
            else:
                exports[name] = output.key
        return exports, unresolved

    def resolve_imports(self, context: EvaluationContext) -> Tuple[List[str], List[Any]]:
        """Resolve every Fn::ImportValue in the template.

        Returns:
            (resolved import names, raw expressions that are not static)
        """
        imports: List[str] = []
        unresolved: List[Any] = []
        searchable = {
            key: self.document.get(key)
            for key in ("Resources", "Outputs", "Conditions")
            if key in self.document
        }
        for expression in find_functions(searchable, "Fn::ImportValue"):
            name = evaluate(expression, context)
            if name is None:
                unresolved.append(expression)
            elif name not in imports:
                imports.append(name)
        return imports, unresolved
