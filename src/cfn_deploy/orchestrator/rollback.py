"""Rollback of failed deployment runs."""

from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from cfn_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentResult,
    ExecutionStatus,
    ProgressCallback,
)
from cfn_deploy.orchestrator.planner import DeploymentPlan
from cfn_deploy.orchestrator.resolver import ResolvedStage
from cfn_deploy.provisioners.base import ChangeType
from cfn_deploy.state.models import DeploymentRecord, DeploymentStatus, State
from cfn_deploy.utils.errors import error_handler, ErrorContext, StateError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _content_before(record: Optional[DeploymentRecord]) -> Optional[Dict[str, Any]]:
    """Stack content a record says was live before the run started."""
    if record is None:
        return None
    if record.status in (DeploymentStatus.APPLIED, DeploymentStatus.ROLLED_BACK):
        return record.snapshot()
    # Failed and pending attempts left the stack at the last applied content
    return record.previous


class RollbackStrategy(Enum):
    """Strategy for rollback."""
    AUTOMATIC = "automatic"  # Roll back as soon as a run fails
    NONE = "none"  # Leave the failed run as it is


class RollbackAction(Enum):
    DELETE = "delete"  # Stack was created by the failed run
    RESTORE = "restore"  # Stack was updated; re-apply the content from before the run
    RECORD = "record"  # CloudFormation already restored the stack, or never changed it


@dataclass
class RollbackStep:
    stage: str
    action: RollbackAction
    stack_name: str
    previous: Optional[DeploymentRecord] = None  # Record as it was before the run
    snapshot: Optional[Dict[str, Any]] = None  # Stack content to restore
    resolved: Optional[ResolvedStage] = None


@dataclass
class RollbackPlan:
    """Plan for rolling back a failed deployment, in reverse execution order."""

    steps: List[RollbackStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def stages_to_destroy(self) -> List[str]:
        return [s.stage for s in self.steps if s.action == RollbackAction.DELETE]

    @property
    def stages_to_restore(self) -> List[str]:
        return [s.stage for s in self.steps if s.action == RollbackAction.RESTORE]

    def get_total_operations(self) -> int:
        return len(self.steps)


@dataclass
class RollbackResult:
    """Result of rollback execution."""

    status: ExecutionStatus
    destroyed_stages: List[str] = field(default_factory=list)
    restored_stages: List[str] = field(default_factory=list)
    failed_operations: Dict[str, str] = field(default_factory=dict)  # stage -> error
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


class RollbackManager:
    """Undoes the stages a failed run touched.

    Stacks CloudFormation created in the run are deleted, and only when their
    tags show this project and environment own them. Stacks the run updated
    are re-applied from the content that was live before the run; a stack
    with no such content is left as deployed.
    Steps run in reverse execution order so consumers are undone before the
    stages they import from.
    """

    def __init__(self, executor: DeploymentExecutor):
        self.executor = executor
        self.logger = get_logger(__name__)

    def create_rollback_plan(
        self,
        deployment_plan: DeploymentPlan,
        deployment_result: DeploymentResult,
        state_before: State,
    ) -> RollbackPlan:
        """Create a rollback plan from a failed deployment.

        Args:
            deployment_plan: The plan that was executed
            deployment_result: Result of the failed deployment
            state_before: State before the deployment started
        """
        self.logger.info("Creating rollback plan...")
        steps: List[RollbackStep] = []

        for result in reversed(deployment_result.stage_results()):
            if not result.attempted or result.change_type == ChangeType.NO_CHANGE:
                continue

            before = state_before.get_record(result.stage)
            change = deployment_plan.all_changes.get(result.stage)
            resolved = change.resolved if change else None

            if result.planned_change == ChangeType.CREATE:
                action = RollbackAction.DELETE
            elif result.is_failed():
                # Failed updates are rolled back by CloudFormation itself
                action = RollbackAction.RECORD
            else:
                action = RollbackAction.RESTORE

            steps.append(RollbackStep(
                stage=result.stage,
                action=action,
                stack_name=result.stack_name or (before.stack_name if before else result.stage),
                previous=before,
                snapshot=_content_before(before),
                resolved=resolved,
            ))

        plan = RollbackPlan(steps=steps)
        self.logger.info(
            f"Rollback plan created: {len(plan.stages_to_destroy)} to destroy, "
            f"{len(plan.stages_to_restore)} to restore"
        )
        return plan

    def execute_rollback(
        self,
        plan: RollbackPlan,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RollbackResult:
        """Execute a rollback plan.

        Every step is attempted even when an earlier one fails.
        """
        self.logger.info("Starting rollback execution...")

        start_time = _utcnow()
        destroyed: List[str] = []
        restored: List[str] = []
        failed: Dict[str, str] = {}
        state_manager = self.executor.state_manager

        for step in plan.steps:
            if progress_callback:
                progress_callback(step.stage, ExecutionStatus.IN_PROGRESS, f"rollback ({step.action.value})")

            reason = f"rollback: {step.action.value}"
            try:
                if step.action == RollbackAction.DELETE:
                    self._check_ownership(step)
                    self.executor.provisioner.destroy(step.stack_name, stage=step.stage)
                    state_manager.mark_rolled_back(step.stage, reason=reason)
                    destroyed.append(step.stage)
                elif step.action == RollbackAction.RESTORE:
                    self._restore(step)
                    state_manager.mark_rolled_back(
                        step.stage, reason=reason, restored=step.previous, content=step.snapshot
                    )
                    restored.append(step.stage)
                else:
                    state_manager.mark_rolled_back(
                        step.stage, reason=reason, restored=step.previous, content=step.snapshot
                    )
                    restored.append(step.stage)
            except Exception as e:
                error = error_handler.handle_exception(
                    e, ErrorContext(stage=step.stage, stack_name=step.stack_name, operation="rollback")
                )
                failed[step.stage] = error.message
                self.logger.error(f"Failed to roll back stage {step.stage}: {error.message}")
                if progress_callback:
                    progress_callback(step.stage, ExecutionStatus.FAILED, error.message)
                continue

            self.logger.info(f"Rolled back stage {step.stage} ({step.action.value})")
            if progress_callback:
                progress_callback(step.stage, ExecutionStatus.SUCCESS, f"rolled back ({step.action.value})")

        end_time = _utcnow()
        duration = (end_time - start_time).total_seconds()

        if failed:
            status = ExecutionStatus.FAILED
            self.logger.warning(f"Rollback completed with failures: {len(failed)} operations failed")
        else:
            status = ExecutionStatus.SUCCESS
            self.logger.info(
                f"Rollback completed successfully: {len(destroyed)} destroyed, "
                f"{len(restored)} restored in {duration:.1f}s"
            )

        return RollbackResult(
            status=status,
            destroyed_stages=destroyed,
            restored_stages=restored,
            failed_operations=failed,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
        )

    def _check_ownership(self, step: RollbackStep) -> None:
        current = self.executor.provisioner.describe(step.stack_name)
        if current is not None and not self.executor.owns_stack(current.tags):
            raise StateError(
                f"Stack {step.stack_name} is not tagged as deployed by this project and environment; "
                f"refusing to delete it",
                context=ErrorContext(stage=step.stage, stack_name=step.stack_name, operation="rollback"),
            )

    def _restore(self, step: RollbackStep) -> None:
        snapshot = step.snapshot
        if not snapshot or not snapshot.get("template_body") or step.resolved is None:
            raise StateError(
                f"No recorded template to restore stage '{step.stage}' from",
                context=ErrorContext(stage=step.stage, stack_name=step.stack_name, operation="rollback"),
                suggestions=[f"Stack {step.stack_name} was left as the failed run deployed it"],
            )

        spec = self.executor.build_spec(step.resolved, dict(snapshot.get("parameters") or {}))
        spec.stack_name = step.stack_name
        spec.template_body = snapshot["template_body"]
        spec.template_hash = snapshot.get("template_hash") or ""
        spec.capabilities = list(snapshot.get("capabilities") or [])

        provisioner = self.executor.provisioner
        provisioner.provision(provisioner.plan(spec))


class AutoRollbackExecutor:
    """Executor that rolls back automatically on deployment failure."""

    def __init__(self, executor: DeploymentExecutor, rollback_manager: RollbackManager):
        self.executor = executor
        self.rollback_manager = rollback_manager
        self.logger = get_logger(__name__)

    def execute_with_auto_rollback(
        self,
        plan: DeploymentPlan,
        state_before: State,
        parallel: bool = False,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[DeploymentResult, Optional[RollbackResult]]:
        """Execute deployment with automatic rollback on failure.

        Returns:
            Tuple of (DeploymentResult, RollbackResult or None)
        """
        self.logger.info("Executing deployment with auto-rollback enabled...")

        deployment_result = self.executor.execute_deployment(
            plan=plan,
            parallel=parallel,
            progress_callback=progress_callback
        )

        if not deployment_result.is_failed():
            return deployment_result, None

        self.logger.warning("Deployment failed, initiating automatic rollback...")
        rollback_plan = self.rollback_manager.create_rollback_plan(plan, deployment_result, state_before)
        rollback_result = self.rollback_manager.execute_rollback(rollback_plan, progress_callback)

        if rollback_result.is_success():
            self.logger.info("Automatic rollback completed successfully")
        else:
            self.logger.error("Automatic rollback failed - manual intervention required")

        return deployment_result, rollback_result
