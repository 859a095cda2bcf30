"""Orchestrator module for stage resolution, deployment planning and execution."""

from cfn_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from cfn_deploy.orchestrator.resolver import (
    ResolvedStage,
    StageGraph,
    StageResolver,
    parameter_errors,
    resolve_parameters,
)
from cfn_deploy.orchestrator.planner import (
    DeploymentPlanner,
    DeploymentPlan,
    DestructionPlan,
    StageChange,
    DeploymentWave
)
from cfn_deploy.orchestrator.executor import (
    DeploymentExecutor,
    DeploymentResult,
    DestructionResult,
    ExecutionStatus,
    StageExecutionResult,
    WaveExecutionResult,
    ProgressCallback
)
from cfn_deploy.orchestrator.rollback import (
    RollbackManager,
    RollbackPlan,
    RollbackResult,
    RollbackStrategy,
    AutoRollbackExecutor
)
from cfn_deploy.orchestrator.drift import DriftDetector, DriftItem, DriftReport, DriftType
from cfn_deploy.orchestrator.validator import ConsistencyValidator, ValidationReport
from cfn_deploy.orchestrator.orchestrator import DeploymentOrchestrator

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Resolution
    'ResolvedStage',
    'StageGraph',
    'StageResolver',
    'parameter_errors',
    'resolve_parameters',

    # Planning
    'DeploymentPlanner',
    'DeploymentPlan',
    'DestructionPlan',
    'StageChange',
    'DeploymentWave',

    # Execution
    'DeploymentExecutor',
    'DeploymentResult',
    'DestructionResult',
    'ExecutionStatus',
    'StageExecutionResult',
    'WaveExecutionResult',
    'ProgressCallback',

    # Rollback
    'RollbackManager',
    'RollbackPlan',
    'RollbackResult',
    'RollbackStrategy',
    'AutoRollbackExecutor',

    # Checks
    'DriftDetector',
    'DriftItem',
    'DriftReport',
    'DriftType',
    'ConsistencyValidator',
    'ValidationReport',

    # Main orchestrator
    'DeploymentOrchestrator',
]
