"""CloudFormation stack provisioner."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from cfn_deploy.provisioners.base import (
    BaseProvisioner,
    ChangeType,
    ProvisionPlan,
    ProvisionResult,
    StackSpec,
    StackState,
)
from cfn_deploy.tagging.manager import TagManager
from cfn_deploy.templates.models import MAX_TEMPLATE_BODY_SIZE
from cfn_deploy.utils.diagnostics import Diagnosis, diagnose_events, suggestions_for
from cfn_deploy.utils.errors import (
    ErrorContext,
    ProvisioningError,
    ValidationError,
    error_handler,
)
from cfn_deploy.utils.logging import get_logger
from cfn_deploy.utils.retry import RetryStrategy

logger = get_logger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed"

# Stacks in this status only accept deletion
ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"

DRIFT_STATUS_IN_PROGRESS = "DETECTION_IN_PROGRESS"


@dataclass
class StackDrift:
    """Result of a CloudFormation drift detection run."""
    stack_name: str
    status: str  # IN_SYNC, DRIFTED, UNKNOWN, NOT_CHECKED
    drifted_resources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_drifted(self) -> bool:
        return self.status == "DRIFTED"


class CloudFormationProvisioner(BaseProvisioner):
    """Applies and deletes one stack per stage through the CloudFormation API."""

    def __init__(
        self,
        boto_session: boto3.Session,
        template_bucket: Optional[str] = None,
        client: Any = None,
        s3_client: Any = None,
        waiter_delay: int = 10,
        waiter_max_attempts: int = 360,
        retry_strategy: Optional[RetryStrategy] = None,
    ):
        """Initialize the provisioner.

        Args:
            boto_session: Configured boto3 session
            template_bucket: S3 bucket for bodies above the inline limit
            client: Pre-built cloudformation client (defaults to one from the session)
            s3_client: Pre-built s3 client
            waiter_delay: Seconds between waiter polls
            waiter_max_attempts: Waiter polls before giving up
            retry_strategy: Backoff applied to API calls
        """
        super().__init__(boto_session)
        self.template_bucket = template_bucket
        self._client = client
        self._s3_client = s3_client
        self.waiter_config = {"Delay": waiter_delay, "MaxAttempts": waiter_max_attempts}
        self.retry = retry_strategy or RetryStrategy()

    @property
    def client(self):
        if self._client is None:
            self._client = self.session.client("cloudformation")
        return self._client

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = self.session.client("s3")
        return self._s3_client

    def _call(self, operation: str, **kwargs):
        return self.retry.execute_with_retry(getattr(self.client, operation), **kwargs)

    def describe(self, stack_name: str) -> Optional[StackState]:
        """Describe a stack, returning None when it does not exist."""
        try:
            response = self._call("describe_stacks", StackName=stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                return None
            raise error_handler.handle_exception(
                e, ErrorContext(stack_name=stack_name, operation="describe")
            )

        stacks = response.get("Stacks") or []
        if not stacks or stacks[0].get("StackStatus") == "DELETE_COMPLETE":
            return None

        stack = stacks[0]
        outputs: Dict[str, str] = {}
        exports: Dict[str, str] = {}
        for output in stack.get("Outputs") or []:
            outputs[output["OutputKey"]] = output.get("OutputValue", "")
            if output.get("ExportName"):
                exports[output["ExportName"]] = output.get("OutputValue", "")

        return StackState(
            stack_name=stack.get("StackName", stack_name),
            stack_id=stack.get("StackId"),
            status=stack.get("StackStatus", ""),
            status_reason=stack.get("StackStatusReason"),
            parameters={
                p["ParameterKey"]: p.get("ParameterValue", "") for p in stack.get("Parameters") or []
            },
            outputs=outputs,
            exports=exports,
            tags={t["Key"]: t["Value"] for t in stack.get("Tags") or []},
            termination_protection=bool(stack.get("EnableTerminationProtection")),
        )

    def get_outputs(self, stack_name: str) -> Dict[str, str]:
        state = self.describe(stack_name)
        return state.outputs if state else {}

    def plan(self, spec: StackSpec) -> ProvisionPlan:
        """Decide between create and update from the stack's remote status.

        Raises:
            ProvisioningError: If the stack is busy with another operation
        """
        current = self.describe(spec.stack_name)

        if current is None:
            return ProvisionPlan(spec=spec, change_type=ChangeType.CREATE, current_state=None)

        if current.is_in_progress:
            raise ProvisioningError(
                f"Stack {spec.stack_name} is busy ({current.status})",
                context=ErrorContext(stage=spec.stage, stack_name=spec.stack_name, operation="plan"),
                suggestions=["Wait for the running stack operation to finish and retry"],
            )

        if current.status == ROLLBACK_COMPLETE:
            return ProvisionPlan(
                spec=spec, change_type=ChangeType.CREATE, current_state=current, replace_failed=True
            )

        return ProvisionPlan(spec=spec, change_type=ChangeType.UPDATE, current_state=current)

    def provision(self, plan: ProvisionPlan) -> ProvisionResult:
        """Create or update the stack and wait for it to settle.

        Raises:
            ProvisioningError: If CloudFormation fails the operation
        """
        spec = plan.spec
        context = ErrorContext(stage=spec.stage, stack_name=spec.stack_name, operation=plan.change_type.value)

        if plan.replace_failed:
            logger.info(
                f"Deleting stack {spec.stack_name} left in {ROLLBACK_COMPLETE} before re-creating it",
                extra={"stage": spec.stage, "stack_name": spec.stack_name},
            )
            self.destroy(spec.stack_name, stage=spec.stage)

        arguments = self._stack_arguments(spec)
        started = time.time()

        if plan.change_type == ChangeType.CREATE:
            stack_id = self._create(spec, arguments, context)
            changed = True
        else:
            stack_id, changed = self._update(spec, arguments, context, plan.current_state)

        state = self.describe(spec.stack_name)
        logger.info(
            f"Stack {spec.stack_name} {'applied' if changed else 'unchanged'}",
            extra={
                "stage": spec.stage,
                "stack_name": spec.stack_name,
                "operation": plan.change_type.value,
                "duration": round(time.time() - started, 2),
            },
        )

        return ProvisionResult(
            stack_name=spec.stack_name,
            stack_id=(state.stack_id if state else None) or stack_id,
            change_type=plan.change_type if changed else ChangeType.NO_CHANGE,
            changed=changed,
            outputs=state.outputs if state else {},
            exports=state.exports if state else {},
        )

    def _create(self, spec: StackSpec, arguments: Dict[str, Any], context: ErrorContext) -> Optional[str]:
        try:
            response = self._call(
                "create_stack",
                OnFailure="ROLLBACK",
                EnableTerminationProtection=spec.termination_protection,
                **arguments,
            )
        except ClientError as e:
            raise error_handler.handle_exception(e, context)

        self._wait("stack_create_complete", spec.stack_name, context)
        return response.get("StackId")

    def _update(
        self,
        spec: StackSpec,
        arguments: Dict[str, Any],
        context: ErrorContext,
        current: Optional[StackState],
    ):
        if current is not None and current.termination_protection != spec.termination_protection:
            self._call(
                "update_termination_protection",
                StackName=spec.stack_name,
                EnableTerminationProtection=spec.termination_protection,
            )

        try:
            response = self._call("update_stack", **arguments)
        except ClientError as e:
            if _is_no_updates(e):
                logger.info(
                    f"No updates are to be performed on stack {spec.stack_name}",
                    extra={"stage": spec.stage, "stack_name": spec.stack_name},
                )
                return (current.stack_id if current else None), False
            raise error_handler.handle_exception(e, context)

        self._wait("stack_update_complete", spec.stack_name, context)
        return response.get("StackId"), True

    def destroy(self, stack_name: str, stage: Optional[str] = None) -> bool:
        """Delete a stack and wait for the deletion to finish.

        Returns:
            False when the stack did not exist
        """
        context = ErrorContext(stage=stage, stack_name=stack_name, operation="delete")
        current = self.describe(stack_name)
        if current is None:
            logger.info(f"Stack {stack_name} does not exist, nothing to delete", extra={"stage": stage})
            return False

        if current.termination_protection:
            raise ProvisioningError(
                f"Stack {stack_name} has termination protection enabled",
                context=context,
                suggestions=[
                    f"aws cloudformation update-termination-protection --no-enable-termination-protection "
                    f"--stack-name {stack_name}",
                ],
            )

        try:
            self._call("delete_stack", StackName=current.stack_id or stack_name)
        except ClientError as e:
            raise error_handler.handle_exception(e, context)

        self._wait("stack_delete_complete", current.stack_id or stack_name, context)
        logger.info(f"Deleted stack {stack_name}", extra={"stage": stage, "stack_name": stack_name})
        return True

    def _wait(self, waiter_name: str, stack_name: str, context: ErrorContext) -> None:
        waiter = self.client.get_waiter(waiter_name)
        try:
            waiter.wait(StackName=stack_name, WaiterConfig=self.waiter_config)
        except WaiterError as e:
            diagnoses = self.get_failure_events(stack_name)
            reason = diagnoses[0].reason if diagnoses else str(e)
            raise ProvisioningError(
                f"Stack {context.stack_name or stack_name} failed during {context.operation}: {reason}",
                context=context,
                cause=e,
                suggestions=suggestions_for(diagnoses) or [
                    f"aws cloudformation describe-stack-events --stack-name {context.stack_name or stack_name}",
                ],
            )

    def get_failure_events(self, stack_name: str, max_events: int = 100) -> List[Diagnosis]:
        """Diagnose the failed events of a stack's most recent operations."""
        events: List[Dict[str, Any]] = []
        try:
            paginator = self.client.get_paginator("describe_stack_events")
            for page in paginator.paginate(StackName=stack_name):
                events.extend(page.get("StackEvents") or [])
                if len(events) >= max_events:
                    break
        except ClientError as e:
            logger.warning(f"Could not read events of stack {stack_name}: {e}")
            return []

        return diagnose_events(events[:max_events])

    def detect_drift(self, stack_name: str, poll_interval: float = 5.0, max_polls: int = 60) -> StackDrift:
        """Run CloudFormation drift detection on a stack."""
        context = ErrorContext(stack_name=stack_name, operation="detect_drift")
        try:
            detection_id = self._call("detect_stack_drift", StackName=stack_name)["StackDriftDetectionId"]

            status: Dict[str, Any] = {}
            for _ in range(max_polls):
                status = self._call(
                    "describe_stack_drift_detection_status", StackDriftDetectionId=detection_id
                )
                if status.get("DetectionStatus") != DRIFT_STATUS_IN_PROGRESS:
                    break
                time.sleep(poll_interval)
            else:
                return StackDrift(stack_name=stack_name, status="UNKNOWN")

            drift_status = status.get("StackDriftStatus", "UNKNOWN")
            drifted: List[Dict[str, Any]] = []
            if drift_status == "DRIFTED":
                response = self._call(
                    "describe_stack_resource_drifts",
                    StackName=stack_name,
                    StackResourceDriftStatusFilters=["MODIFIED", "DELETED"],
                )
                drifted = [
                    {
                        "logical_id": drift.get("LogicalResourceId"),
                        "resource_type": drift.get("ResourceType"),
                        "status": drift.get("StackResourceDriftStatus"),
                    }
                    for drift in response.get("StackResourceDrifts") or []
                ]
        except ClientError as e:
            raise error_handler.handle_exception(e, context)

        return StackDrift(stack_name=stack_name, status=drift_status, drifted_resources=drifted)

    def _stack_arguments(self, spec: StackSpec) -> Dict[str, Any]:
        arguments: Dict[str, Any] = {
            "StackName": spec.stack_name,
            "Parameters": [
                {"ParameterKey": key, "ParameterValue": value} for key, value in spec.parameters.items()
            ],
            "Capabilities": list(spec.capabilities),
            "Tags": TagManager.to_cloudformation(spec.tags),
        }

        if len(spec.template_body.encode("utf-8")) > MAX_TEMPLATE_BODY_SIZE:
            arguments["TemplateURL"] = self._upload_template(spec)
        else:
            arguments["TemplateBody"] = spec.template_body

        return arguments

    def _upload_template(self, spec: StackSpec) -> str:
        if not self.template_bucket:
            raise ValidationError(
                f"Template for stage {spec.stage} exceeds {MAX_TEMPLATE_BODY_SIZE} bytes and no template bucket is configured",
                context=ErrorContext(stage=spec.stage, stack_name=spec.stack_name, operation="upload_template"),
                suggestions=["Set project.template_bucket in cfn-deploy.yaml"],
            )

        key = f"cfn-deploy/{spec.stack_name}/{spec.template_hash}.template"
        try:
            self.s3_client.put_object(Bucket=self.template_bucket, Key=key, Body=spec.template_body.encode("utf-8"))
        except ClientError as e:
            raise error_handler.handle_exception(
                e, ErrorContext(stage=spec.stage, stack_name=spec.stack_name, operation="upload_template")
            )

        region = self.session.region_name or "us-east-1"
        logger.debug(f"Uploaded template to s3://{self.template_bucket}/{key}", extra={"stage": spec.stage})
        return f"https://{self.template_bucket}.s3.{region}.amazonaws.com/{key}"


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "")


def _is_missing_stack(error: ClientError) -> bool:
    return (
        error.response.get("Error", {}).get("Code") == "ValidationError"
        and "does not exist" in _error_message(error)
    )


def _is_no_updates(error: ClientError) -> bool:
    return (
        error.response.get("Error", {}).get("Code") == "ValidationError"
        and NO_UPDATES_MESSAGE in _error_message(error)
    )
