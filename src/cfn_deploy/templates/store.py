"""Template store: loads and inspects stage templates."""

from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from cfn_deploy.templates.intrinsics import referenced_names
from cfn_deploy.templates.loader import parse_template
from cfn_deploy.templates.models import (
    ResourceDeclaration,
    StageTemplate,
    TemplateOutput,
    TemplateParameter,
)
from cfn_deploy.utils.errors import DependencyError, ErrorContext, TemplateError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class TemplateStore:
    """Loads stage templates relative to a base directory and caches them."""

    def __init__(self, base_dir: Union[str, Path] = "."):
        self.base_dir = Path(base_dir)
        self._cache: Dict[Path, StageTemplate] = {}
        self._lock = Lock()

    def resolve(self, template_path: str) -> Path:
        path = Path(template_path)
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def load(self, template_path: str, stage: Optional[str] = None) -> StageTemplate:
        """Load a template from disk.

        Args:
            template_path: Path to the template, relative to the base directory
            stage: Stage name used in error context

        Raises:
            TemplateError: If the file is missing or not a valid template
        """
        path = self.resolve(template_path)

        with self._lock:
            if path in self._cache:
                return self._cache[path]

        if not path.is_file():
            raise TemplateError(
                f"Template file not found: {path}",
                context=ErrorContext(stage=stage, operation="load_template"),
                suggestions=["Check the 'template' path of the stage in cfn-deploy.yaml"],
            )

        body = path.read_text(encoding="utf-8")
        template = self.from_body(body, source=str(path), stage=stage)

        with self._lock:
            self._cache[path] = template

        logger.debug(
            f"Loaded template {path} ({len(template.resources)} resources, {template.size} bytes)",
            extra={"stage": stage},
        )
        return template

    def from_body(self, body: str, source: str = "<template>", stage: Optional[str] = None) -> StageTemplate:
        """Build a StageTemplate from a raw body."""
        try:
            document = parse_template(body, source)
        except TemplateError as e:
            e.context.stage = stage
            raise

        parameters = self._parse_parameters(document)
        resources = self._parse_resources(document, parameters, source)
        outputs = self._parse_outputs(document)

        return StageTemplate(
            path=source,
            body=body,
            document=document,
            parameters=parameters,
            resources=resources,
            outputs=outputs,
            description=document.get("Description"),
        )

    @staticmethod
    def _parse_parameters(document: Dict[str, Any]) -> Dict[str, TemplateParameter]:
        parameters = {}
        for name, definition in (document.get("Parameters") or {}).items():
            definition = definition or {}
            default = definition.get("Default")
            if isinstance(default, list):
                default = ",".join(str(item) for item in default)
            elif isinstance(default, bool):
                default = "true" if default else "false"
            elif default is not None:
                default = str(default)
            parameters[name] = TemplateParameter(
                name=name,
                type=str(definition.get("Type", "String")),
                default=default,
                description=definition.get("Description"),
                no_echo=str(definition.get("NoEcho", "false")).lower() == "true",
            )
        return parameters

    @staticmethod
    def _parse_resources(
        document: Dict[str, Any], parameters: Dict[str, TemplateParameter], source: str
    ) -> List[ResourceDeclaration]:
        """Parse resources and validate their intra-template edges."""
        from cfn_deploy.orchestrator.dependency_graph import DependencyGraph

        resources_section = document["Resources"]
        logical_ids = set(resources_section)
        known_names = logical_ids | set(parameters)
        graph = DependencyGraph(kind="resource")
        resources = []

        for logical_id, definition in resources_section.items():
            if not isinstance(definition, dict) or "Type" not in definition:
                raise TemplateError(f"Resource '{logical_id}' in {source} has no Type")

            explicit = definition.get("DependsOn") or []
            if isinstance(explicit, str):
                explicit = [explicit]

            referenced = referenced_names(
                {key: value for key, value in definition.items() if key != "DependsOn"}
            )
            unknown = sorted((referenced - known_names) | (set(explicit) - logical_ids))
            if unknown:
                raise TemplateError(
                    f"Resource '{logical_id}' in {source} references undeclared name(s): {', '.join(unknown)}"
                )

            edges = list(explicit)
            for name in sorted(referenced & logical_ids):
                if name not in edges:
                    edges.append(name)

            resources.append(ResourceDeclaration(
                logical_id=logical_id,
                type=definition["Type"],
                properties=definition.get("Properties") or {},
                depends_on=edges,
            ))
            graph.add_node(logical_id, edges)

        try:
            graph.validate()
        except DependencyError as e:
            raise TemplateError(f"Invalid resource dependencies in {source}: {e.message}", cause=e)

        return resources

    @staticmethod
    def _parse_outputs(document: Dict[str, Any]) -> Dict[str, TemplateOutput]:
        outputs = {}
        for key, definition in (document.get("Outputs") or {}).items():
            definition = definition or {}
            export = definition.get("Export") or {}
            outputs[key] = TemplateOutput(
                key=key,
                value=definition.get("Value"),
                export_name=export.get("Name") if isinstance(export, dict) else None,
                description=definition.get("Description"),
            )
        return outputs
