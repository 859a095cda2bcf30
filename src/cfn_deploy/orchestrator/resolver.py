"""Stage dependency resolution from cross-stack references."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cfn_deploy.config.models import (
    OutputReference,
    ParameterValue,
    StageConfig,
    format_parameter_value,
)
from cfn_deploy.config.parser import Config
from cfn_deploy.orchestrator.dependency_graph import DependencyGraph
from cfn_deploy.state.models import State
from cfn_deploy.templates.intrinsics import EvaluationContext
from cfn_deploy.templates.models import StageTemplate
from cfn_deploy.utils.errors import DependencyError, ErrorContext
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ResolvedStage:
    """A stage with its template and cross-stack references resolved."""

    config: StageConfig
    template: StageTemplate
    parameters: Dict[str, ParameterValue] = field(default_factory=dict)
    exports: Dict[str, Optional[str]] = field(default_factory=dict)  # export name -> output key
    imports: List[str] = field(default_factory=list)
    unresolved_imports: List[Any] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def stack_name(self) -> str:
        return self.config.resolved_stack_name

    def output_references(self) -> Dict[str, OutputReference]:
        """Parameter name -> output reference, after environment overrides."""
        return {
            name: value for name, value in self.parameters.items() if isinstance(value, OutputReference)
        }


@dataclass
class StageGraph:
    """Resolved stages and the orders derived from their dependencies."""

    graph: DependencyGraph
    stages: Dict[str, ResolvedStage]
    deployment_order: List[str]
    waves: List[List[str]]
    export_producers: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def teardown_order(self) -> List[str]:
        return list(reversed(self.deployment_order))

    def get_stage(self, name: str) -> ResolvedStage:
        if name not in self.stages:
            raise DependencyError(f"Unknown stage '{name}'")
        return self.stages[name]

    def with_dependencies(self, name: str) -> List[str]:
        """A stage and everything it transitively needs, in deployment order."""
        selected = self.graph.get_all_dependencies(name) | {name}
        return [stage for stage in self.deployment_order if stage in selected]


class StageResolver:
    """Builds the stage graph from templates, explicit dependencies and output references.

    Edges run from the producing stage to the consuming stage for:
    - each import that matches another stage's export
    - each explicit ``depends_on`` entry
    - each parameter that reads another stage's output
    """

    def __init__(
        self,
        config: Config,
        templates: Dict[str, StageTemplate],
        environment: Optional[str] = None,
        region: Optional[str] = None,
        account_id: Optional[str] = None,
    ):
        """Initialize resolver.

        Args:
            config: Loaded configuration
            templates: Stage name -> loaded template
            environment: Environment whose parameter overrides apply
            region: Region used when evaluating export names
            account_id: Account used when evaluating export names
        """
        self.config = config
        self.templates = templates
        self.environment = environment
        self.region = region
        self.account_id = account_id

    def resolve(self) -> StageGraph:
        """Resolve every stage and order them.

        Raises:
            DependencyError: On missing producers, duplicate exports, unknown
                stages or circular dependencies
        """
        warnings: List[str] = []
        stages: Dict[str, ResolvedStage] = {}

        for stage_config in self.config.stages:
            stages[stage_config.name] = self._resolve_stage(stage_config, warnings)

        export_producers = self._collect_exports(stages)

        graph = DependencyGraph(kind="stage")
        for name, stage in stages.items():
            stage.dependencies = self._stage_dependencies(stage, stages, export_producers)
            graph.add_node(name, stage.dependencies, payload=stage)

        deployment_order = graph.topological_sort()
        waves = graph.get_deployment_waves()

        for warning in warnings:
            logger.warning(warning)

        logger.debug(f"Deployment order: {' -> '.join(deployment_order)}")

        return StageGraph(
            graph=graph,
            stages=stages,
            deployment_order=deployment_order,
            waves=waves,
            export_producers=export_producers,
            warnings=warnings,
        )

    def evaluation_context(self, stage_config: StageConfig, template: StageTemplate) -> EvaluationContext:
        """Values known for a stage before it is applied."""
        parameters = template.default_parameters()
        for name, value in self.config.stage_parameters(stage_config, self.environment).items():
            parameters[name] = None if isinstance(value, OutputReference) else format_parameter_value(value)
        return EvaluationContext(
            stack_name=stage_config.resolved_stack_name,
            region=self.region,
            account_id=self.account_id,
            parameters=parameters,
        )

    def _resolve_stage(self, stage_config: StageConfig, warnings: List[str]) -> ResolvedStage:
        template = self.templates[stage_config.name]
        context = self.evaluation_context(stage_config, template)

        exports_by_output, unresolved_exports = template.resolve_exports(context)
        exports: Dict[str, Optional[str]] = dict(exports_by_output)
        for name in stage_config.exports:
            exports.setdefault(name, None)
        for key in unresolved_exports:
            warnings.append(
                f"Stage '{stage_config.name}': export name of output '{key}' cannot be resolved "
                f"before deployment and is ignored for ordering"
            )

        imports, unresolved_imports = template.resolve_imports(context)
        for name in stage_config.imports:
            if name not in imports:
                imports.append(name)
        for expression in unresolved_imports:
            warnings.append(
                f"Stage '{stage_config.name}': import {expression!r} cannot be resolved "
                f"before deployment and is ignored for ordering"
            )

        return ResolvedStage(
            config=stage_config,
            template=template,
            parameters=self.config.stage_parameters(stage_config, self.environment),
            exports=exports,
            imports=imports,
            unresolved_imports=unresolved_imports,
        )

    @staticmethod
    def _collect_exports(stages: Dict[str, ResolvedStage]) -> Dict[str, str]:
        producers: Dict[str, str] = {}
        for name, stage in stages.items():
            for export_name in stage.exports:
                if export_name in producers:
                    raise DependencyError(
                        f"Export '{export_name}' is produced by both stage '{producers[export_name]}' "
                        f"and stage '{name}'",
                        suggestions=["Export names must be unique within a region"],
                    )
                producers[export_name] = name
        return producers

    def _stage_dependencies(
        self,
        stage: ResolvedStage,
        stages: Dict[str, ResolvedStage],
        export_producers: Dict[str, str],
    ) -> List[str]:
        dependencies: List[str] = []
        context = ErrorContext(stage=stage.name, stack_name=stage.stack_name, operation="resolve")

        def add(name: str) -> None:
            if name not in dependencies:
                dependencies.append(name)

        for import_name in stage.imports:
            producer = export_producers.get(import_name)
            if producer is None:
                if import_name in stage.config.external_imports:
                    continue
                raise DependencyError(
                    f"Stage '{stage.name}' imports '{import_name}' but no stage exports it",
                    context=context,
                    suggestions=[
                        "Add a stage whose template exports this name",
                        f"List '{import_name}' under external_imports if another tool creates it",
                    ],
                )
            if producer == stage.name:
                raise DependencyError(
                    f"Stage '{stage.name}' imports its own export '{import_name}'", context=context
                )
            add(producer)

        for name in stage.config.depends_on:
            if name not in stages:
                raise DependencyError(
                    f"Stage '{stage.name}' depends on unknown stage '{name}'", context=context
                )
            add(name)

        for parameter, reference in stage.output_references().items():
            producer = stages.get(reference.stage)
            if producer is None:
                raise DependencyError(
                    f"Parameter '{parameter}' of stage '{stage.name}' reads output of unknown stage "
                    f"'{reference.stage}'",
                    context=context,
                )
            if reference.key not in producer.template.outputs:
                raise DependencyError(
                    f"Parameter '{parameter}' of stage '{stage.name}' reads output '{reference.key}' "
                    f"which stage '{reference.stage}' does not declare",
                    context=context,
                )
            add(reference.stage)

        # Stable ordering by declaration
        declared = list(stages)
        return sorted(dependencies, key=declared.index)


def parameter_errors(stage: ResolvedStage) -> List[str]:
    """Parameters that are unknown to the template or have no value at all."""
    errors = []
    declared = stage.template.parameters

    for name in stage.parameters:
        if name not in declared:
            errors.append(f"Stage '{stage.name}' sets parameter '{name}' which its template does not declare")

    for name, parameter in declared.items():
        if parameter.default is None and name not in stage.parameters:
            errors.append(f"Stage '{stage.name}' parameter '{name}' has no value and no default")

    return errors


def resolve_parameters(stage: ResolvedStage, state: State) -> Dict[str, str]:
    """Concrete parameter values for an apply, reading referenced outputs from state.

    Raises:
        DependencyError: If a referenced stage has not been applied or lacks the output
    """
    values: Dict[str, str] = {}
    for name, value in stage.parameters.items():
        if isinstance(value, OutputReference):
            values[name] = _read_output(stage, name, value, state)
        else:
            values[name] = format_parameter_value(value)
    return values


def _read_output(stage: ResolvedStage, parameter: str, reference: OutputReference, state: State) -> str:
    record = state.get_record(reference.stage)
    context = ErrorContext(stage=stage.name, stack_name=stage.stack_name, operation="resolve_parameters")
    if record is None or not record.is_applied:
        raise DependencyError(
            f"Parameter '{parameter}' of stage '{stage.name}' needs output '{reference.output}' "
            f"but stage '{reference.stage}' is not applied",
            context=context,
            suggestions=[f"Deploy stage '{reference.stage}' first"],
        )
    if reference.key not in record.outputs:
        raise DependencyError(
            f"Stage '{reference.stage}' has no output '{reference.key}' (needed by parameter "
            f"'{parameter}' of stage '{stage.name}')",
            context=context,
        )
    return record.outputs[reference.key]
