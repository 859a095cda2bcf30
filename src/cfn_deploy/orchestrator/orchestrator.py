"""Main orchestrator that coordinates planning, execution, rollback and drift detection."""

from typing import Dict, Optional, Tuple

from cfn_deploy.config.models import EnvironmentConfig
from cfn_deploy.config.parser import Config
from cfn_deploy.orchestrator.drift import DriftDetector, DriftReport
from cfn_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentResult,
    DestructionResult,
    ExecutionStatus,
    ProgressCallback,
)
from cfn_deploy.orchestrator.planner import DeploymentPlan, DeploymentPlanner, DestructionPlan
from cfn_deploy.orchestrator.resolver import StageGraph, StageResolver, parameter_errors
from cfn_deploy.orchestrator.rollback import (
    AutoRollbackExecutor,
    RollbackManager,
    RollbackResult,
    RollbackStrategy,
)
from cfn_deploy.orchestrator.validator import ConsistencyValidator, ValidationReport
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.state.manager import StateManager
from cfn_deploy.state.models import State
from cfn_deploy.tagging.manager import TagManager
from cfn_deploy.templates.models import StageTemplate
from cfn_deploy.templates.store import TemplateStore
from cfn_deploy.utils.errors import ConfigurationError, StateError, ValidationError
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class DeploymentOrchestrator:
    """Coordinates deployment planning, execution, and rollback for one environment."""

    def __init__(
        self,
        config: Config,
        environment: Optional[str] = None,
        state_manager: Optional[StateManager] = None,
        provisioner: Optional[CloudFormationProvisioner] = None,
        template_store: Optional[TemplateStore] = None,
        account_id: Optional[str] = None,
        region: Optional[str] = None,
        max_workers: int = 4,
    ):
        """Initialize deployment orchestrator.

        Args:
            config: Loaded configuration
            environment: Environment name; without one no overrides apply
            state_manager: State manager for the environment's state file;
                required for anything that reads or writes records
            provisioner: Stack provisioner; required for deploy, destroy and remote drift
            template_store: Template store (defaults to one rooted at the config directory)
            account_id: Account used when the environment does not declare one
            region: Region override; must match the environment's region when it declares one
            max_workers: Maximum stages applied at once in parallel mode

        Raises:
            ConfigurationError: If the region override contradicts the environment
        """
        self.config = config
        self.environment = environment
        self.environment_config: Optional[EnvironmentConfig] = (
            config.get_environment(environment) if environment and config.environments else None
        )
        if self.environment_config and region and region != self.environment_config.region:
            raise ConfigurationError(
                f"Region {region} does not match region {self.environment_config.region} "
                f"of environment '{environment}'",
                suggestions=[
                    "Drop --region, or declare another environment for that region",
                    "Each environment keeps one state file and deploys to one region",
                ],
            )
        if self.environment_config:
            self.region = self.environment_config.region
        else:
            self.region = region or config.project.region
        self.account_id = self.environment_config.account if self.environment_config else (account_id or "")

        self.state_manager = state_manager
        self.provisioner = provisioner
        self.template_store = template_store or TemplateStore(config.base_dir)
        self.tag_manager = TagManager(config.project)
        self.planner = DeploymentPlanner()
        self.drift_detector = DriftDetector(provisioner)
        self.max_workers = max_workers

        self._executor: Optional[DeploymentExecutor] = None
        self._stage_graph: Optional[StageGraph] = None
        self.logger = get_logger(__name__)

    @property
    def executor(self) -> DeploymentExecutor:
        if self.provisioner is None:
            raise ConfigurationError("No stack provisioner configured for this orchestrator")
        if self.state_manager is None or self.environment is None:
            raise ConfigurationError("Applying stages needs an environment and a state file")
        if self._executor is None:
            self._executor = DeploymentExecutor(
                provisioner=self.provisioner,
                state_manager=self.state_manager,
                tag_manager=self.tag_manager,
                environment=self.environment,
                environment_config=self.environment_config,
                max_workers=self.max_workers,
            )
        return self._executor

    def load_templates(self) -> Dict[str, StageTemplate]:
        """Load every stage's template."""
        return {
            stage.name: self.template_store.load(stage.template, stage=stage.name)
            for stage in self.config.stages
        }

    def resolve(self) -> StageGraph:
        """Resolve stage dependencies (cached)."""
        if self._stage_graph is None:
            resolver = StageResolver(
                config=self.config,
                templates=self.load_templates(),
                environment=self.environment,
                region=self.region,
                account_id=self.account_id or None,
            )
            self._stage_graph = resolver.resolve()
        return self._stage_graph

    def validate(self) -> ValidationReport:
        """Run the consistency checks on the resolved stages."""
        return ConsistencyValidator(self.resolve(), teardown=self.config.teardown).validate()

    def load_state(self) -> State:
        """Load the environment's state, creating an empty one when missing."""
        if self.state_manager is None or self.environment is None:
            raise StateError("Deployment state needs an environment and a state file")
        state = self.state_manager.load_or_initialize(
            environment=self.environment,
            region=self.region,
            account=self.account_id,
            project_name=self.config.project.name,
        )
        if state.region != self.region:
            raise StateError(
                f"State file {self.state_manager.state_path} records region {state.region}, not {self.region}",
                suggestions=["Run against the region the environment was deployed to"],
            )
        return state

    def plan_deployment(self, stage_filter: Optional[str] = None) -> DeploymentPlan:
        """Create a deployment plan.

        Raises:
            ValidationError: If a selected stage has unusable parameters
        """
        self.logger.info("Planning deployment...")
        stage_graph = self.resolve()
        plan = self.planner.create_deployment_plan(stage_graph, self.load_state(), stage_filter)

        errors = [
            error
            for name in plan.all_changes
            for error in parameter_errors(stage_graph.stages[name])
        ]
        if errors:
            raise ValidationError(
                f"Invalid stage parameters: {'; '.join(errors)}",
                suggestions=["Set the missing parameters in cfn-deploy.yaml or give them a template default"],
            )
        return plan

    def execute_deployment(
        self,
        plan: DeploymentPlan,
        parallel: bool = False,
        rollback_strategy: RollbackStrategy = RollbackStrategy.NONE,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Tuple[DeploymentResult, Optional[RollbackResult]]:
        """Execute a deployment plan.

        Returns:
            Tuple of (DeploymentResult, RollbackResult or None)
        """
        self.logger.info(
            f"Executing deployment (parallel={parallel}, rollback={rollback_strategy.value})..."
        )

        # Snapshot for rollback
        state_before = self.load_state().model_copy(deep=True)

        if rollback_strategy == RollbackStrategy.AUTOMATIC:
            rollback_manager = RollbackManager(self.executor)
            return AutoRollbackExecutor(self.executor, rollback_manager).execute_with_auto_rollback(
                plan=plan,
                state_before=state_before,
                parallel=parallel,
                progress_callback=progress_callback,
            )

        result = self.executor.execute_deployment(
            plan=plan, parallel=parallel, progress_callback=progress_callback
        )
        return result, None

    def deploy(
        self,
        stage_filter: Optional[str] = None,
        parallel: bool = False,
        rollback_strategy: RollbackStrategy = RollbackStrategy.NONE,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Tuple[DeploymentResult, Optional[RollbackResult]]:
        """Plan and execute deployment in one step, holding the state lock."""
        with self.executor.state_manager:
            plan = self.plan_deployment(stage_filter=stage_filter)

            if not plan.has_changes():
                self.logger.info("No changes to deploy")
                return DeploymentResult(status=ExecutionStatus.SUCCESS), None

            return self.execute_deployment(
                plan=plan,
                parallel=parallel,
                rollback_strategy=rollback_strategy,
                progress_callback=progress_callback,
            )

    def plan_destruction(self, stage_filter: Optional[str] = None, cascade: bool = False) -> DestructionPlan:
        """Create a destruction plan (reverse deployment order)."""
        self.logger.info("Planning destruction...")
        return self.planner.create_destruction_plan(
            current_state=self.load_state(),
            stage_graph=self.resolve(),
            stage_filter=stage_filter,
            cascade=cascade,
        )

    def execute_destruction(
        self,
        plan: DestructionPlan,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DestructionResult:
        self.logger.info("Executing destruction...")
        return self.executor.execute_destruction(plan=plan, progress_callback=progress_callback)

    def destroy(
        self,
        stage_filter: Optional[str] = None,
        cascade: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DestructionResult:
        """Plan and execute destruction in one step, holding the state lock."""
        with self.executor.state_manager:
            plan = self.plan_destruction(stage_filter=stage_filter, cascade=cascade)

            if plan.is_empty():
                self.logger.info("No stages to destroy")
                return DestructionResult(status=ExecutionStatus.SUCCESS)

            return self.execute_destruction(plan=plan, progress_callback=progress_callback)

    def detect_drift(self, remote: bool = True) -> DriftReport:
        return self.drift_detector.detect(self.resolve(), self.load_state(), remote=remote)

    def get_outputs(self, stage_filter: Optional[str] = None) -> Dict[str, Dict[str, str]]:
        """Recorded outputs per stage, in deployment order where known."""
        state = self.load_state()
        order = [name for name in self.resolve().deployment_order if name in state.records]
        order += [name for name in state.records if name not in order]
        return {
            name: dict(state.records[name].outputs)
            for name in order
            if stage_filter is None or name == stage_filter
        }
