"""Classification of CloudFormation stack failures into known failure modes."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class FailureMode(Enum):
    """Known operator-facing failure modes."""
    CIDR_CONFLICT = "cidr_conflict"
    AVAILABILITY_ZONE = "availability_zone"
    NETWORK_MISCONFIGURATION = "network_misconfiguration"
    TASK_DEFINITION = "task_definition"
    HEALTH_CHECK = "health_check"
    PIPELINE_AUTH = "pipeline_auth"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


@dataclass
class Diagnosis:
    """A failed stack event matched against a failure mode."""

    mode: FailureMode
    logical_id: Optional[str]
    resource_type: Optional[str]
    reason: str
    verification_commands: List[str] = field(default_factory=list)

    def summary(self) -> str:
        target = self.logical_id or "stack"
        return f"{target} ({self.mode.value}): {self.reason}"


# Order matters: the first matching rule wins
_RULES = [
    (
        FailureMode.CIDR_CONFLICT,
        re.compile(r"cidr.*(conflict|overlap)|(conflict|overlap).*cidr|InvalidSubnet\.Conflict", re.I),
        [
            "aws ec2 describe-vpcs --query 'Vpcs[].CidrBlock'",
            "aws ec2 describe-subnets --filters Name=vpc-id,Values=<vpc-id>",
        ],
    ),
    (
        FailureMode.AVAILABILITY_ZONE,
        re.compile(r"availability zone|availabilityzone|InvalidParameterValue.*zone", re.I),
        [
            "aws ec2 describe-availability-zones --region <region>",
        ],
    ),
    (
        FailureMode.NETWORK_MISCONFIGURATION,
        re.compile(r"subnet|security ?group|InvalidGroup|route table|internet gateway", re.I),
        [
            "aws ec2 describe-subnets --filters Name=vpc-id,Values=<vpc-id>",
            "aws ec2 describe-security-groups --filters Name=vpc-id,Values=<vpc-id>",
        ],
    ),
    (
        FailureMode.HEALTH_CHECK,
        re.compile(r"health ?check|unhealthy|did not stabilize|target group", re.I),
        [
            "aws ecs describe-services --cluster <cluster> --services <service>",
            "aws elbv2 describe-target-health --target-group-arn <target-group-arn>",
        ],
    ),
    (
        FailureMode.TASK_DEFINITION,
        re.compile(r"task ?definition|container definition|CannotPullContainer|essential container", re.I),
        [
            "aws ecs describe-task-definition --task-definition <family>",
            "aws ecs describe-tasks --cluster <cluster> --tasks <task-id>",
        ],
    ),
    (
        FailureMode.PIPELINE_AUTH,
        re.compile(r"oauth|github|connection.*(not|pending)|codestar|webhook|personal access token", re.I),
        [
            "aws codepipeline get-pipeline-state --name <pipeline>",
            "aws codestar-connections list-connections",
        ],
    ),
    (
        FailureMode.PERMISSION,
        re.compile(r"not authorized|access ?denied|AccessDenied|UnauthorizedOperation|iam:PassRole", re.I),
        [
            "aws sts get-caller-identity",
            "aws iam simulate-principal-policy --policy-source-arn <arn> --action-names <action>",
        ],
    ),
]

FAILED_STATUS_SUFFIX = "_FAILED"


def classify_reason(reason: str) -> FailureMode:
    """Return the failure mode matching a status reason."""
    for mode, pattern, _ in _RULES:
        if pattern.search(reason or ""):
            return mode
    return FailureMode.UNKNOWN


def diagnose_events(events: List[Dict[str, Any]]) -> List[Diagnosis]:
    """Diagnose the failed events of a stack.

    Args:
        events: Stack events as returned by ``describe_stack_events``

    Returns:
        One diagnosis per failed event, oldest first
    """
    diagnoses = []
    for event in events:
        status = event.get("ResourceStatus", "")
        reason = event.get("ResourceStatusReason", "")
        if not status.endswith(FAILED_STATUS_SUFFIX) or not reason:
            continue
        # Cascade noise from resources cancelled by another failure
        if reason.startswith("Resource creation cancelled") or reason.startswith("Resource update cancelled"):
            continue

        mode = classify_reason(reason)
        commands = next((cmds for m, _, cmds in _RULES if m == mode), [
            "aws cloudformation describe-stack-events --stack-name <stack>",
        ])
        diagnoses.append(
            Diagnosis(
                mode=mode,
                logical_id=event.get("LogicalResourceId"),
                resource_type=event.get("ResourceType"),
                reason=reason,
                verification_commands=list(commands),
            )
        )

    # describe_stack_events returns newest first
    diagnoses.reverse()
    return diagnoses


def suggestions_for(diagnoses: List[Diagnosis]) -> List[str]:
    """Flatten diagnoses into de-duplicated suggestion lines."""
    suggestions: List[str] = []
    for diagnosis in diagnoses:
        for line in [diagnosis.summary()] + [f"Verify with: {c}" for c in diagnosis.verification_commands]:
            if line not in suggestions:
                suggestions.append(line)
    return suggestions
