"""Provisioners module for CloudFormation stack management."""

from .base import BaseProvisioner, ChangeType, ProvisionPlan, ProvisionResult, StackSpec, StackState
from .cloudformation import CloudFormationProvisioner, StackDrift

__all__ = [
    "BaseProvisioner",
    "ChangeType",
    "ProvisionPlan",
    "ProvisionResult",
    "StackSpec",
    "StackState",
    "CloudFormationProvisioner",
    "StackDrift",
]
