"""Deployment planner for creating deployment and destruction plans."""

from typing import Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

from cfn_deploy.orchestrator.dependency_graph import DependencyGraph
from cfn_deploy.orchestrator.resolver import ResolvedStage, StageGraph, resolve_parameters
from cfn_deploy.provisioners.base import ChangeType
from cfn_deploy.state.models import DeploymentRecord, DeploymentStatus, State
from cfn_deploy.utils.errors import DependencyError, ErrorContext, ValidationError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageChange:
    """Represents a change to a stage's stack."""

    stage: str
    stack_name: str
    change_type: ChangeType
    record: Optional[DeploymentRecord] = None
    resolved: Optional[ResolvedStage] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


@dataclass
class DeploymentWave:
    """Stages that do not depend on each other and can be applied together."""

    wave_number: int
    stages: List[str]
    changes: Dict[str, StageChange] = field(default_factory=dict)

    def add_change(self, change: StageChange) -> None:
        self.changes[change.stage] = change

    def get_change(self, stage: str) -> Optional[StageChange]:
        return self.changes.get(stage)

    def size(self) -> int:
        return len(self.stages)


@dataclass
class DeploymentPlan:
    """Complete deployment plan with waves and changes."""

    waves: List[DeploymentWave]
    all_changes: Dict[str, StageChange] = field(default_factory=dict)  # In deployment order
    stage_graph: Optional[StageGraph] = None
    created_at: datetime = field(default_factory=_utcnow)

    def get_total_stages(self) -> int:
        return len(self.all_changes)

    def get_changes_by_type(self, change_type: ChangeType) -> List[StageChange]:
        return [
            change for change in self.all_changes.values()
            if change.change_type == change_type
        ]

    def has_changes(self) -> bool:
        """Check if the plan applies anything."""
        return any(
            change.change_type in (ChangeType.CREATE, ChangeType.UPDATE)
            for change in self.all_changes.values()
        )

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of changes by type."""
        summary = {
            'create': 0,
            'update': 0,
            'delete': 0,
            'no_change': 0
        }
        for change in self.all_changes.values():
            summary[change.change_type.value] += 1
        return summary


@dataclass
class DestructionPlan:
    """Plan for deleting stages in reverse dependency order."""

    stages: List[str]  # In destruction order
    records: Dict[str, DeploymentRecord] = field(default_factory=dict)
    dependency_graph: Optional[DependencyGraph] = None
    created_at: datetime = field(default_factory=_utcnow)

    def get_total_stages(self) -> int:
        return len(self.stages)

    def is_empty(self) -> bool:
        return not self.stages


class DeploymentPlanner:
    """Creates deployment and destruction plans by comparing stages with recorded state."""

    def __init__(self):
        self.logger = get_logger(__name__)

    def create_deployment_plan(
        self,
        stage_graph: StageGraph,
        current_state: State,
        stage_filter: Optional[str] = None,
    ) -> DeploymentPlan:
        """Create a deployment plan.

        Args:
            stage_graph: Resolved stages
            current_state: Current deployment state
            stage_filter: Optional stage to deploy together with the stages it needs

        Returns:
            DeploymentPlan with waves of the stages to create or update
        """
        self.logger.info("Creating deployment plan...")

        if stage_filter:
            selected = stage_graph.with_dependencies(stage_graph.get_stage(stage_filter).name)
        else:
            selected = list(stage_graph.deployment_order)

        changes: Dict[str, StageChange] = {}
        for name in selected:
            changes[name] = self._detect_change(stage_graph.stages[name], current_state, changes)

        applying = [name for name in selected if changes[name].change_type != ChangeType.NO_CHANGE]
        waves = self._create_deployment_waves(stage_graph.graph.subgraph(applying), changes)

        plan = DeploymentPlan(waves=waves, all_changes=changes, stage_graph=stage_graph)

        summary = plan.get_summary()
        self.logger.info(
            f"Deployment plan created: {summary['create']} create, "
            f"{summary['update']} update, {summary['no_change']} unchanged, {len(waves)} waves"
        )
        return plan

    def _detect_change(
        self,
        stage: ResolvedStage,
        current_state: State,
        planned: Dict[str, StageChange],
    ) -> StageChange:
        record = current_state.get_record(stage.name)
        change = StageChange(
            stage=stage.name,
            stack_name=stage.stack_name,
            change_type=ChangeType.NO_CHANGE,
            record=record,
            resolved=stage,
        )

        if record is None:
            change.change_type = ChangeType.CREATE
            change.reasons.append("Stage has no deployment record")
            return change

        if record.status != DeploymentStatus.APPLIED:
            change.reasons.append(f"Last attempt is {record.status.value}")
            change.change_type = (
                ChangeType.UPDATE if record.stack_id or record.previous else ChangeType.CREATE
            )
            return change

        reasons = self._differences(stage, record, current_state, planned)
        if reasons:
            change.change_type = ChangeType.UPDATE
            change.reasons.extend(reasons)
        else:
            change.reasons.append("No changes detected")
        return change

    def _differences(
        self,
        stage: ResolvedStage,
        record: DeploymentRecord,
        current_state: State,
        planned: Dict[str, StageChange],
    ) -> List[str]:
        """Reasons the applied record no longer matches the stage."""
        reasons = []

        if record.stack_name != stage.stack_name:
            reasons.append(f"Stack name changed ({record.stack_name} -> {stage.stack_name})")

        if record.template_hash != stage.template.hash:
            reasons.append("Template changed")

        pending_producers = [
            ref.stage for ref in stage.output_references().values()
            if ref.stage in planned and planned[ref.stage].change_type != ChangeType.NO_CHANGE
        ]
        if pending_producers:
            reasons.append(
                f"Parameters read outputs of changing stage(s): {', '.join(sorted(set(pending_producers)))}"
            )
        else:
            try:
                parameters = resolve_parameters(stage, current_state)
            except DependencyError as e:
                reasons.append(e.message)
            else:
                changed = sorted(
                    name for name in set(parameters) | set(record.parameters)
                    if parameters.get(name) != record.parameters.get(name)
                )
                if changed:
                    reasons.append(f"Parameters changed: {', '.join(changed)}")

        if sorted(record.capabilities) != sorted(stage.config.capabilities):
            reasons.append("Capabilities changed")

        return reasons

    def _create_deployment_waves(
        self,
        graph: DependencyGraph,
        changes: Dict[str, StageChange],
    ) -> List[DeploymentWave]:
        if graph.is_empty():
            return []

        waves = []
        for wave_number, stages in enumerate(graph.get_deployment_waves(), start=1):
            wave = DeploymentWave(wave_number=wave_number, stages=stages)
            for stage in stages:
                wave.add_change(changes[stage])
            waves.append(wave)
        return waves

    def create_destruction_plan(
        self,
        current_state: State,
        stage_graph: Optional[StageGraph] = None,
        stage_filter: Optional[str] = None,
        cascade: bool = False,
    ) -> DestructionPlan:
        """Create a destruction plan for recorded stages.

        The order is the exact reverse of the deployment order. A single
        stage can only be destroyed alone when no recorded stage consumes it.

        Args:
            current_state: Current deployment state
            stage_graph: Resolved stages, used for ordering and extra edges
            stage_filter: Optional stage to destroy
            cascade: Also destroy the stages that consume ``stage_filter``

        Raises:
            ValidationError: If ``stage_filter`` has no record
            DependencyError: If other recorded stages consume ``stage_filter``
        """
        self.logger.info("Creating destruction plan...")

        records = current_state.records
        if not records:
            self.logger.info("No stages to destroy")
            return DestructionPlan(stages=[])

        graph = self._recorded_graph(current_state, stage_graph)

        if stage_filter:
            if stage_filter not in records:
                raise ValidationError(
                    f"Stage '{stage_filter}' has no deployment record",
                    context=ErrorContext(stage=stage_filter, operation="destroy"),
                )
            dependents = graph.get_all_dependents(stage_filter)
            if dependents and not cascade:
                ordered = [name for name in graph.topological_sort() if name in dependents]
                raise DependencyError(
                    f"Stage '{stage_filter}' is still used by: {', '.join(ordered)}",
                    context=ErrorContext(stage=stage_filter, operation="destroy"),
                    suggestions=["Destroy the consuming stages first, or pass --cascade"],
                )
            graph = graph.subgraph(dependents | {stage_filter})

        destruction_order = graph.get_destruction_order()

        plan = DestructionPlan(
            stages=destruction_order,
            records={name: records[name] for name in destruction_order},
            dependency_graph=graph,
        )
        self.logger.info(f"Destruction plan created: {' -> '.join(destruction_order)}")
        return plan

    @staticmethod
    def _recorded_graph(current_state: State, stage_graph: Optional[StageGraph]) -> DependencyGraph:
        """Graph of recorded stages from recorded and configured dependencies.

        Configured stages keep their deployment order; records of stages no
        longer configured follow in state order.
        """
        records = current_state.records
        ordered = [name for name in (stage_graph.deployment_order if stage_graph else []) if name in records]
        ordered += [name for name in records if name not in ordered]

        graph = DependencyGraph(kind="stage")
        for name in ordered:
            dependencies = set(records[name].dependencies)
            if stage_graph and name in stage_graph.stages:
                dependencies |= set(stage_graph.stages[name].dependencies)
            graph.add_node(name, dependencies & set(records), payload=records[name])
        return graph
