"""Base provisioner interface and abstract classes."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import boto3


class ChangeType(Enum):
    """Type of change for a stage's stack."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_CHANGE = "no_change"


@dataclass
class StackSpec:
    """Desired state of a stage's stack."""
    stage: str
    stack_name: str
    template_body: str
    template_hash: str
    parameters: Dict[str, str] = field(default_factory=dict)
    capabilities: List[str] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    termination_protection: bool = False


@dataclass
class StackState:
    """Stack as described by CloudFormation."""
    stack_name: str
    stack_id: Optional[str]
    status: str
    status_reason: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    exports: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    termination_protection: bool = False

    @property
    def is_complete(self) -> bool:
        # ROLLBACK_COMPLETE is a failed create; UPDATE_ROLLBACK_COMPLETE is a usable stack
        return self.status.endswith("_COMPLETE") and self.status != "ROLLBACK_COMPLETE"

    @property
    def is_in_progress(self) -> bool:
        return self.status.endswith("_IN_PROGRESS")


@dataclass
class ProvisionPlan:
    """Plan for applying a stack."""
    spec: StackSpec
    change_type: ChangeType
    current_state: Optional[StackState]
    replace_failed: bool = False  # Stack left in ROLLBACK_COMPLETE by a failed create


@dataclass
class ProvisionResult:
    """Outcome of applying a stack."""
    stack_name: str
    stack_id: Optional[str]
    change_type: ChangeType
    changed: bool
    outputs: Dict[str, str] = field(default_factory=dict)
    exports: Dict[str, str] = field(default_factory=dict)


class BaseProvisioner(ABC):
    """Base class for stack provisioners."""

    def __init__(self, boto_session: boto3.Session):
        """Initialize provisioner with boto3 session.

        Args:
            boto_session: Configured boto3 session for AWS API calls
        """
        self.session = boto_session

    @abstractmethod
    def plan(self, spec: StackSpec) -> ProvisionPlan:
        """Determine whether the stack must be created or updated."""
        pass

    @abstractmethod
    def provision(self, plan: ProvisionPlan) -> ProvisionResult:
        """Execute the provisioning plan and wait for it to settle."""
        pass

    @abstractmethod
    def destroy(self, stack_name: str) -> bool:
        """Delete the stack.

        Returns:
            False when the stack did not exist
        """
        pass
