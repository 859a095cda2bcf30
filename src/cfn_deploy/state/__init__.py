"""State management module for tracking deployment records."""

from .manager import StateLockError, StateManager, StateNotFoundError, default_state_path
from .models import DeploymentRecord, DeploymentStatus, State, StatusTransition

__all__ = [
    "DeploymentRecord",
    "DeploymentStatus",
    "State",
    "StatusTransition",
    "StateManager",
    "StateLockError",
    "StateNotFoundError",
    "default_state_path",
]
