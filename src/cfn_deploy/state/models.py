"""State file data models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from cfn_deploy.utils.errors import ErrorContext, StateError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    """Lifecycle status of a stage's deployment record."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.APPLIED, DeploymentStatus.FAILED},
    DeploymentStatus.APPLIED: {DeploymentStatus.PENDING, DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.FAILED: {DeploymentStatus.PENDING, DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.ROLLED_BACK: {DeploymentStatus.PENDING},
}


class StatusTransition(BaseModel):
    """One entry of a record's status history."""

    status: DeploymentStatus
    timestamp: datetime = Field(default_factory=_utcnow)
    reason: Optional[str] = None


class DeploymentRecord(BaseModel):
    """What was last applied for one stage."""

    stage: str = Field(..., description="Stage name")
    stack_name: str = Field(..., description="CloudFormation stack name")
    stack_id: Optional[str] = Field(None, description="CloudFormation stack ARN")
    status: DeploymentStatus = DeploymentStatus.PENDING
    parameters: Dict[str, str] = Field(default_factory=dict, description="Applied parameter values")
    template_hash: Optional[str] = None
    template_body: Optional[str] = Field(None, description="Body last applied, used for rollback")
    capabilities: List[str] = Field(default_factory=list)
    outputs: Dict[str, str] = Field(default_factory=dict)
    exports: Dict[str, str] = Field(default_factory=dict, description="Export name -> value")
    imports: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list, description="Stages this stage consumes")
    timestamp: datetime = Field(default_factory=_utcnow)
    error: Optional[str] = None
    history: List[StatusTransition] = Field(default_factory=list)
    previous: Optional[Dict[str, Any]] = Field(
        None, description="Applied snapshot replaced by the current attempt"
    )

    def can_transition(self, status: DeploymentStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: DeploymentStatus, reason: Optional[str] = None) -> None:
        """Move the record to a new status.

        Raises:
            StateError: If the transition is not allowed
        """
        if not self.can_transition(status):
            raise StateError(
                f"Invalid status transition for stage '{self.stage}': "
                f"{self.status.value} -> {status.value}",
                context=ErrorContext(stage=self.stage, stack_name=self.stack_name),
            )
        self.status = status
        self.timestamp = _utcnow()
        self.history.append(StatusTransition(status=status, timestamp=self.timestamp, reason=reason))

    @property
    def is_applied(self) -> bool:
        return self.status == DeploymentStatus.APPLIED

    def snapshot(self) -> Dict[str, Any]:
        """What is needed to restore this record's stack later."""
        return {
            "parameters": dict(self.parameters),
            "template_hash": self.template_hash,
            "template_body": self.template_body,
            "capabilities": list(self.capabilities),
        }


class State(BaseModel):
    """Complete deployment state of one project environment."""

    version: str = Field("1.0", description="State file format version")
    project_name: str = Field(..., description="Project name")
    environment: str = Field(..., description="Environment name")
    region: str = Field(..., description="AWS region")
    account: str = Field(..., description="AWS account ID")
    timestamp: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
    records: Dict[str, DeploymentRecord] = Field(
        default_factory=dict, description="Deployment records keyed by stage name"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_record(self, stage: str) -> Optional[DeploymentRecord]:
        return self.records.get(stage)

    def has_record(self, stage: str) -> bool:
        return stage in self.records

    def set_record(self, record: DeploymentRecord) -> None:
        self.records[record.stage] = record
        self.timestamp = _utcnow()

    def remove_record(self, stage: str) -> Optional[DeploymentRecord]:
        record = self.records.pop(stage, None)
        self.timestamp = _utcnow()
        return record

    def applied_records(self) -> List[DeploymentRecord]:
        return [record for record in self.records.values() if record.is_applied]

    def find_export(self, export_name: str) -> Optional[DeploymentRecord]:
        """Record of the stage that produced an export."""
        for record in self.records.values():
            if export_name in record.exports:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        """Create State from dictionary."""
        return cls.model_validate(data)
