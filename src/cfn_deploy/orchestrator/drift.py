"""Drift detection between configuration, recorded state and live stacks."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from cfn_deploy.orchestrator.resolver import StageGraph, resolve_parameters
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.state.models import DeploymentStatus, State
from cfn_deploy.utils.errors import DeploymentError, DependencyError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class DriftType(Enum):
    TEMPLATE_CHANGED = "template_changed"
    PARAMETERS_CHANGED = "parameters_changed"
    CAPABILITIES_CHANGED = "capabilities_changed"
    NOT_DEPLOYED = "not_deployed"
    NOT_APPLIED = "not_applied"
    ORPHANED = "orphaned"
    STACK_MISSING = "stack_missing"
    STACK_STATUS = "stack_status"
    RESOURCES_DRIFTED = "resources_drifted"


@dataclass
class DriftItem:
    stage: str
    drift_type: DriftType
    detail: str
    remote: bool = False


@dataclass
class DriftReport:
    """All drift found for an environment."""

    items: List[DriftItem] = field(default_factory=list)
    checked_remote: bool = False

    def has_drift(self) -> bool:
        return bool(self.items)

    def for_stage(self, stage: str) -> List[DriftItem]:
        return [item for item in self.items if item.stage == stage]

    def by_stage(self) -> Dict[str, List[DriftItem]]:
        grouped: Dict[str, List[DriftItem]] = {}
        for item in self.items:
            grouped.setdefault(item.stage, []).append(item)
        return grouped


class DriftDetector:
    """Compares configured stages with their records and, optionally, with CloudFormation."""

    def __init__(self, provisioner: Optional[CloudFormationProvisioner] = None):
        self.provisioner = provisioner

    def detect(self, stage_graph: StageGraph, state: State, remote: bool = True) -> DriftReport:
        report = DriftReport(checked_remote=remote and self.provisioner is not None)

        for name in stage_graph.deployment_order:
            report.items.extend(self._local_drift(stage_graph, name, state))

        for name in state.records:
            if name not in stage_graph.stages:
                report.items.append(DriftItem(
                    stage=name,
                    drift_type=DriftType.ORPHANED,
                    detail="Stage has a deployment record but is no longer configured",
                ))

        if report.checked_remote:
            for record in state.applied_records():
                report.items.extend(self._remote_drift(record.stage, record.stack_name))

        logger.info(f"Drift detection found {len(report.items)} item(s)")
        return report

    def _local_drift(self, stage_graph: StageGraph, name: str, state: State) -> List[DriftItem]:
        stage = stage_graph.stages[name]
        record = state.get_record(name)

        if record is None:
            return [DriftItem(name, DriftType.NOT_DEPLOYED, "Stage has never been applied")]

        items = []
        if record.status != DeploymentStatus.APPLIED:
            items.append(DriftItem(name, DriftType.NOT_APPLIED, f"Record status is {record.status.value}"))

        if record.template_hash != stage.template.hash:
            items.append(DriftItem(
                name,
                DriftType.TEMPLATE_CHANGED,
                f"Template hash {_short(record.template_hash)} -> {_short(stage.template.hash)}",
            ))

        try:
            parameters = resolve_parameters(stage, state)
        except DependencyError as e:
            items.append(DriftItem(name, DriftType.PARAMETERS_CHANGED, e.message))
        else:
            changed = sorted(
                key for key in set(parameters) | set(record.parameters)
                if parameters.get(key) != record.parameters.get(key)
            )
            if changed:
                items.append(DriftItem(name, DriftType.PARAMETERS_CHANGED, f"Changed: {', '.join(changed)}"))

        if sorted(record.capabilities) != sorted(stage.config.capabilities):
            items.append(DriftItem(
                name,
                DriftType.CAPABILITIES_CHANGED,
                f"{', '.join(record.capabilities) or 'none'} -> {', '.join(stage.config.capabilities) or 'none'}",
            ))

        return items

    def _remote_drift(self, stage: str, stack_name: str) -> List[DriftItem]:
        current = self.provisioner.describe(stack_name)
        if current is None:
            return [DriftItem(stage, DriftType.STACK_MISSING, f"Stack {stack_name} does not exist", remote=True)]

        if not current.is_complete:
            return [DriftItem(stage, DriftType.STACK_STATUS, f"Stack status is {current.status}", remote=True)]

        try:
            drift = self.provisioner.detect_drift(stack_name)
        except DeploymentError as e:
            logger.warning(f"Drift detection failed for stack {stack_name}: {e.message}")
            return [DriftItem(stage, DriftType.STACK_STATUS, f"Drift detection failed: {e.message}", remote=True)]

        if not drift.is_drifted:
            return []

        resources = ", ".join(
            f"{r['logical_id']} ({r['status']})" for r in drift.drifted_resources
        ) or "unknown resources"
        return [DriftItem(stage, DriftType.RESOURCES_DRIFTED, f"Drifted: {resources}", remote=True)]


def _short(value: Optional[str]) -> str:
    return value[:12] if value else "none"
