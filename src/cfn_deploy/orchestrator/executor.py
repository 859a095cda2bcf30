"""Deployment executor with wave ordering and progress tracking."""

from typing import Dict, List, Optional, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum

from cfn_deploy.config.models import EnvironmentConfig
from cfn_deploy.orchestrator.planner import DeploymentPlan, DeploymentWave, DestructionPlan, StageChange
from cfn_deploy.orchestrator.resolver import ResolvedStage, resolve_parameters
from cfn_deploy.provisioners.base import ChangeType, ProvisionPlan, StackSpec
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.state.manager import StateManager
from cfn_deploy.tagging.manager import DeploymentContext, TagManager
from cfn_deploy.utils.logging import get_logger
from cfn_deploy.utils.errors import DeploymentError, ErrorContext, error_handler

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(Enum):
    """Status of execution."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageExecutionResult:
    """Result of applying or deleting a single stage."""

    stage: str
    status: ExecutionStatus
    stack_name: Optional[str] = None
    change_type: Optional[ChangeType] = None  # What CloudFormation actually did
    planned_change: Optional[ChangeType] = None  # What CloudFormation was asked to do
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[DeploymentError] = None
    attempted: bool = False  # A record was moved to pending for this stage
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


@dataclass
class WaveExecutionResult:
    """Result of executing a deployment wave."""

    wave_number: int
    stage_results: Dict[str, StageExecutionResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def get_success_count(self) -> int:
        return sum(1 for r in self.stage_results.values() if r.is_success())

    def get_failed_count(self) -> int:
        return sum(1 for r in self.stage_results.values() if r.is_failed())

    def has_failures(self) -> bool:
        return self.get_failed_count() > 0


@dataclass
class DeploymentResult:
    """Complete deployment execution result."""

    status: ExecutionStatus
    wave_results: List[WaveExecutionResult] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    total_stages: int = 0
    successful_stages: int = 0
    failed_stages: int = 0
    skipped_stages: List[str] = field(default_factory=list)
    error: Optional[DeploymentError] = None

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED

    def stage_results(self) -> List[StageExecutionResult]:
        """Every executed stage result, in execution order."""
        return [result for wave in self.wave_results for result in wave.stage_results.values()]

    def get_result(self, stage: str) -> Optional[StageExecutionResult]:
        for result in self.stage_results():
            if result.stage == stage:
                return result
        return None

    def get_failed_stages(self) -> List[str]:
        return [r.stage for r in self.stage_results() if r.is_failed()]

    def get_stages_by_change(self, change_type: ChangeType) -> List[str]:
        """Stages that CloudFormation created or updated in this run."""
        return [
            r.stage for r in self.stage_results()
            if r.is_success() and r.change_type == change_type
        ]


@dataclass
class DestructionResult:
    """Result of destruction execution."""

    status: ExecutionStatus
    stage_results: Dict[str, StageExecutionResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    total_stages: int = 0
    successful_stages: int = 0
    failed_stages: int = 0
    skipped_stages: List[str] = field(default_factory=list)
    error: Optional[DeploymentError] = None

    def is_success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


# Type alias for progress callback: (stage, status, message)
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]


class DeploymentExecutor:
    """Executes deployment and destruction plans stage by stage."""

    def __init__(
        self,
        provisioner: CloudFormationProvisioner,
        state_manager: StateManager,
        tag_manager: TagManager,
        environment: str,
        environment_config: Optional[EnvironmentConfig] = None,
        max_workers: int = 4,
    ):
        """Initialize deployment executor.

        Args:
            provisioner: Stack provisioner
            state_manager: State manager holding the loaded state
            tag_manager: Generates the stack tags
            environment: Environment name
            environment_config: Environment whose tags apply
            max_workers: Maximum number of stages applied at once in parallel mode
        """
        self.provisioner = provisioner
        self.state_manager = state_manager
        self.tag_manager = tag_manager
        self.environment = environment
        self.environment_config = environment_config
        self.max_workers = max_workers
        self.logger = get_logger(__name__)

    def execute_deployment(
        self,
        plan: DeploymentPlan,
        parallel: bool = False,
        progress_callback: Optional[ProgressCallback] = None
    ) -> DeploymentResult:
        """Execute a deployment plan.

        Waves run in order. Execution stops after the first wave with a
        failure; the stages that did not run are reported as skipped.

        Args:
            plan: Deployment plan to execute
            parallel: Apply the stages of a wave concurrently
            progress_callback: Optional callback for progress updates
        """
        self.logger.info(f"Starting deployment execution (parallel={parallel})...")

        start_time = _utcnow()
        wave_results: List[WaveExecutionResult] = []
        skipped: List[str] = []
        failed_wave: Optional[int] = None

        for wave in plan.waves:
            if failed_wave is not None:
                skipped.extend(wave.stages)
                continue

            self.logger.info(f"Executing wave {wave.wave_number} ({', '.join(wave.stages)})...")
            wave_result = self._execute_wave(wave, parallel, progress_callback)
            wave_results.append(wave_result)
            skipped.extend(s for s in wave.stages if s not in wave_result.stage_results)

            if wave_result.has_failures():
                self.logger.error(
                    f"Wave {wave.wave_number} completed with {wave_result.get_failed_count()} failures"
                )
                failed_wave = wave.wave_number
            else:
                self.logger.info(
                    f"Wave {wave.wave_number} completed successfully in {wave_result.duration:.1f}s"
                )

        for stage in skipped:
            if progress_callback:
                progress_callback(stage, ExecutionStatus.SKIPPED, "an earlier stage failed")

        end_time = _utcnow()
        duration = (end_time - start_time).total_seconds()

        total = sum(len(w.stage_results) for w in wave_results)
        successful = sum(w.get_success_count() for w in wave_results)
        failed = sum(w.get_failed_count() for w in wave_results)

        if failed > 0:
            status = ExecutionStatus.FAILED
            first_error = next(
                (r.error for w in wave_results for r in w.stage_results.values() if r.error), None
            )
            self.logger.error(f"Deployment failed: {failed}/{total} stages failed, {len(skipped)} skipped")
        else:
            status = ExecutionStatus.SUCCESS
            first_error = None
            self.logger.info(f"Deployment completed successfully: {successful} stages in {duration:.1f}s")

        return DeploymentResult(
            status=status,
            wave_results=wave_results,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            total_stages=total,
            successful_stages=successful,
            failed_stages=failed,
            skipped_stages=skipped,
            error=first_error,
        )

    def execute_destruction(
        self,
        plan: DestructionPlan,
        progress_callback: Optional[ProgressCallback] = None
    ) -> DestructionResult:
        """Delete stages one at a time in plan order.

        A stage's record is removed once its stack is gone. Destruction stops
        at the first failure so that producers outlive their consumers.
        """
        self.logger.info(f"Starting destruction of {plan.get_total_stages()} stages...")

        start_time = _utcnow()
        stage_results: Dict[str, StageExecutionResult] = {}
        skipped: List[str] = []

        for stage in plan.stages:
            if any(r.is_failed() for r in stage_results.values()):
                skipped.append(stage)
                if progress_callback:
                    progress_callback(stage, ExecutionStatus.SKIPPED, "an earlier stage failed")
                continue

            if progress_callback:
                progress_callback(stage, ExecutionStatus.IN_PROGRESS, None)

            result = self._destroy_stage(stage, plan.records[stage].stack_name)
            stage_results[stage] = result

            if progress_callback:
                progress_callback(stage, result.status, result.error.message if result.error else None)

        end_time = _utcnow()
        duration = (end_time - start_time).total_seconds()
        successful = sum(1 for r in stage_results.values() if r.is_success())
        failed = sum(1 for r in stage_results.values() if r.is_failed())

        if failed > 0:
            status = ExecutionStatus.FAILED
            self.logger.warning(f"Destruction stopped: {failed} failed, {len(skipped)} skipped")
        else:
            status = ExecutionStatus.SUCCESS
            self.logger.info(f"Destruction completed successfully: {successful} stages in {duration:.1f}s")

        return DestructionResult(
            status=status,
            stage_results=stage_results,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            total_stages=len(stage_results),
            successful_stages=successful,
            failed_stages=failed,
            skipped_stages=skipped,
            error=next((r.error for r in stage_results.values() if r.error), None),
        )

    def _execute_wave(
        self,
        wave: DeploymentWave,
        parallel: bool,
        progress_callback: Optional[ProgressCallback]
    ) -> WaveExecutionResult:
        start_time = _utcnow()

        if parallel and wave.size() > 1:
            stage_results = self._execute_wave_parallel(wave, progress_callback)
        else:
            stage_results = self._execute_wave_sequential(wave, progress_callback)

        end_time = _utcnow()
        return WaveExecutionResult(
            wave_number=wave.wave_number,
            stage_results=stage_results,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
        )

    def _execute_wave_parallel(
        self,
        wave: DeploymentWave,
        progress_callback: Optional[ProgressCallback]
    ) -> Dict[str, StageExecutionResult]:
        results: Dict[str, StageExecutionResult] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_stage = {}
            for stage in wave.stages:
                if progress_callback:
                    progress_callback(stage, ExecutionStatus.IN_PROGRESS, None)
                future_to_stage[executor.submit(self._apply_stage, wave.changes[stage])] = stage

            for future in as_completed(future_to_stage):
                stage = future_to_stage[future]
                result = future.result()
                results[stage] = result
                if progress_callback:
                    progress_callback(stage, result.status, self._message(result))

        # Report in wave order
        return {stage: results[stage] for stage in wave.stages}

    def _execute_wave_sequential(
        self,
        wave: DeploymentWave,
        progress_callback: Optional[ProgressCallback]
    ) -> Dict[str, StageExecutionResult]:
        results: Dict[str, StageExecutionResult] = {}

        for stage in wave.stages:
            if progress_callback:
                progress_callback(stage, ExecutionStatus.IN_PROGRESS, None)

            result = self._apply_stage(wave.changes[stage])
            results[stage] = result

            if progress_callback:
                progress_callback(stage, result.status, self._message(result))

            if result.is_failed():
                break

        return results

    @staticmethod
    def _message(result: StageExecutionResult) -> Optional[str]:
        if result.error:
            return result.error.message
        if result.change_type == ChangeType.NO_CHANGE:
            return "no updates to perform"
        return result.change_type.value if result.change_type else None

    def build_spec(self, stage: ResolvedStage, parameters: Dict[str, str]) -> StackSpec:
        """Desired stack for a stage with concrete parameter values."""
        tags = self.tag_manager.generate_tags(
            DeploymentContext(
                project_name=self.tag_manager.project_config.name,
                environment=self.environment,
                stage=stage.name,
            ),
            stage_config=stage.config,
            environment_config=self.environment_config,
        )
        return StackSpec(
            stage=stage.name,
            stack_name=stage.stack_name,
            template_body=stage.template.body,
            template_hash=stage.template.hash,
            parameters=parameters,
            capabilities=list(stage.config.capabilities),
            tags=tags,
            termination_protection=stage.config.termination_protection,
        )

    def owns_stack(self, tags: Dict[str, str]) -> bool:
        """Whether stack tags mark it as deployed by this project and environment."""
        return TagManager.is_managed(tags, self.tag_manager.project_config.name, self.environment)

    def _warn_on_adoption(self, stage: str, provision_plan: ProvisionPlan) -> None:
        current = provision_plan.current_state
        if current is not None and not self.owns_stack(current.tags):
            self.logger.warning(
                f"Stack {current.stack_name} exists without a deployment record; "
                f"stage {stage} will update it in place and never delete it on rollback",
                extra={"stage": stage, "stack_name": current.stack_name},
            )

    def _apply_stage(self, change: StageChange) -> StageExecutionResult:
        """Apply a single stage and record the outcome."""
        stage = change.resolved
        start_time = _utcnow()
        result = StageExecutionResult(
            stage=change.stage,
            stack_name=change.stack_name,
            status=ExecutionStatus.FAILED,
            start_time=start_time,
        )
        context = ErrorContext(stage=change.stage, stack_name=change.stack_name, operation="apply")

        try:
            # Outputs of earlier stages of this run are in state by now
            parameters = resolve_parameters(stage, self.state_manager.get_state())
            spec = self.build_spec(stage, parameters)

            self.state_manager.record_attempt(
                stage=stage.name,
                stack_name=stage.stack_name,
                parameters=parameters,
                template_hash=spec.template_hash,
                template_body=spec.template_body,
                capabilities=spec.capabilities,
                imports=stage.imports,
                dependencies=stage.dependencies,
            )
            result.attempted = True

            self.logger.info(
                f"Applying stage {stage.name} to stack {stage.stack_name} ({change.change_type.value})...",
                extra={"stage": stage.name, "stack_name": stage.stack_name},
            )
            provision_plan = self.provisioner.plan(spec)
            result.planned_change = provision_plan.change_type
            if provision_plan.change_type == ChangeType.UPDATE and change.record is None:
                self._warn_on_adoption(stage.name, provision_plan)
            outcome = self.provisioner.provision(provision_plan)

            self.state_manager.mark_applied(
                stage.name, stack_id=outcome.stack_id, outputs=outcome.outputs, exports=outcome.exports
            )
            result.status = ExecutionStatus.SUCCESS
            result.change_type = outcome.change_type
            result.outputs = dict(outcome.outputs)

        except Exception as e:
            error = error_handler.handle_exception(e, context)
            if error.context.stage is None:
                error.context.stage = change.stage
            result.error = error
            self.logger.error(
                f"Failed to apply stage {change.stage}: {error.message}",
                extra={"stage": change.stage, "stack_name": change.stack_name},
            )
            if result.attempted:
                self.state_manager.mark_failed(change.stage, error.message)

        result.end_time = _utcnow()
        result.duration = (result.end_time - start_time).total_seconds()
        if result.is_success():
            self.logger.info(
                f"Stage {change.stage} applied in {result.duration:.1f}s",
                extra={"stage": change.stage, "duration": result.duration},
            )
        return result

    def _destroy_stage(self, stage: str, stack_name: str) -> StageExecutionResult:
        start_time = _utcnow()
        result = StageExecutionResult(
            stage=stage,
            stack_name=stack_name,
            status=ExecutionStatus.FAILED,
            change_type=ChangeType.DELETE,
            start_time=start_time,
        )

        try:
            self.logger.info(f"Deleting stack {stack_name} of stage {stage}...", extra={"stage": stage})
            self.provisioner.destroy(stack_name, stage=stage)
            self.state_manager.remove_record(stage)
            result.status = ExecutionStatus.SUCCESS
        except Exception as e:
            result.error = error_handler.handle_exception(
                e, ErrorContext(stage=stage, stack_name=stack_name, operation="delete")
            )
            self.logger.error(f"Failed to delete stage {stage}: {result.error.message}", extra={"stage": stage})

        result.end_time = _utcnow()
        result.duration = (result.end_time - start_time).total_seconds()
        return result
