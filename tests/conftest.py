"""Shared fixtures: a scaffolded project and an in-memory CloudFormation client."""

import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, WaiterError

from cfn_deploy.cli.scaffold import TEMPLATES, render_config
from cfn_deploy.config.parser import Config
from cfn_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.state.manager import StateManager, default_state_path
from cfn_deploy.templates.loader import parse_template
from cfn_deploy.utils.retry import RetryStrategy

ACCOUNT = "123456789012"
REGION = "us-east-1"


def client_error(code: str, message: str, operation: str = "DescribeStacks") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"RequestId": "req-1"}},
        operation,
    )


class FakeWaiter:
    TARGETS = {
        "stack_create_complete": "CREATE_COMPLETE",
        "stack_update_complete": "UPDATE_COMPLETE",
        "stack_delete_complete": None,
    }

    def __init__(self, cloudformation: "FakeCloudFormation", name: str):
        self.cloudformation = cloudformation
        self.name = name

    def wait(self, StackName: str, WaiterConfig: Optional[Dict[str, int]] = None) -> None:
        stack = self.cloudformation.find(StackName)
        target = self.TARGETS[self.name]
        if target is None:
            if stack is not None:
                raise WaiterError(self.name, "Waiter encountered a terminal failure state", {})
            return
        if stack is None or stack["StackStatus"] != target:
            raise WaiterError(
                self.name,
                "Waiter encountered a terminal failure state",
                {"Stacks": [stack] if stack else []},
            )


class FakeEventPaginator:
    def __init__(self, cloudformation: "FakeCloudFormation"):
        self.cloudformation = cloudformation

    def paginate(self, StackName: str):
        yield {"StackEvents": list(self.cloudformation.events.get(StackName, []))}


class FakeCloudFormation:
    """Just enough of the CloudFormation API to drive the provisioner.

    Stacks settle immediately. Names in ``fail_on`` fail their next create or
    update with the given reason, the way CloudFormation reports it.
    """

    def __init__(self):
        self.stacks: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_on: Dict[str, str] = {}
        self.drift_status: Dict[str, str] = {}
        self.operations: List[tuple] = []
        self._ids = itertools.count(1)

    def find(self, name_or_id: str) -> Optional[Dict[str, Any]]:
        for stack in self.stacks.values():
            if name_or_id in (stack["StackName"], stack["StackId"]):
                return stack
        return None

    def describe_stacks(self, StackName: str) -> Dict[str, Any]:
        stack = self.find(StackName)
        if stack is None:
            raise client_error("ValidationError", f"Stack with id {StackName} does not exist")
        return {"Stacks": [dict(stack)]}

    def create_stack(self, StackName: str, Parameters=(), Capabilities=(), Tags=(), TemplateBody=None,
                     TemplateURL=None, OnFailure="ROLLBACK", EnableTerminationProtection=False):
        self.operations.append(("create", StackName))
        if self.find(StackName) is not None:
            raise client_error("AlreadyExistsException", f"Stack [{StackName}] already exists", "CreateStack")

        stack_id = f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:stack/{StackName}/{next(self._ids)}"
        stack = {
            "StackName": StackName,
            "StackId": stack_id,
            "StackStatus": "CREATE_COMPLETE",
            "Parameters": list(Parameters),
            "Tags": list(Tags),
            "Capabilities": list(Capabilities),
            "EnableTerminationProtection": EnableTerminationProtection,
            "TemplateBody": TemplateBody,
            "TemplateURL": TemplateURL,
        }
        if StackName in self.fail_on:
            stack["StackStatus"] = "ROLLBACK_COMPLETE"
            self._record_failure(StackName, "CREATE_FAILED", self.fail_on.pop(StackName))
        else:
            stack["Outputs"] = self._outputs(StackName, TemplateBody)
        self.stacks[StackName] = stack
        return {"StackId": stack_id}

    def update_stack(self, StackName: str, Parameters=(), Capabilities=(), Tags=(), TemplateBody=None,
                     TemplateURL=None):
        self.operations.append(("update", StackName))
        stack = self.find(StackName)
        if stack is None:
            raise client_error("ValidationError", f"Stack [{StackName}] does not exist", "UpdateStack")

        if StackName in self.fail_on:
            stack["StackStatus"] = "UPDATE_ROLLBACK_COMPLETE"
            self._record_failure(StackName, "UPDATE_FAILED", self.fail_on.pop(StackName))
            return {"StackId": stack["StackId"]}

        if stack["TemplateBody"] == TemplateBody and stack["Parameters"] == list(Parameters):
            raise client_error("ValidationError", "No updates are to be performed.", "UpdateStack")

        stack.update({
            "StackStatus": "UPDATE_COMPLETE",
            "Parameters": list(Parameters),
            "Tags": list(Tags),
            "Capabilities": list(Capabilities),
            "TemplateBody": TemplateBody,
            "TemplateURL": TemplateURL,
            "Outputs": self._outputs(StackName, TemplateBody),
        })
        return {"StackId": stack["StackId"]}

    def delete_stack(self, StackName: str) -> Dict[str, Any]:
        stack = self.find(StackName)
        self.operations.append(("delete", stack["StackName"] if stack else StackName))
        if stack is not None:
            del self.stacks[stack["StackName"]]
        return {}

    def update_termination_protection(self, StackName: str, EnableTerminationProtection: bool):
        self.operations.append(("protect", StackName))
        self.find(StackName)["EnableTerminationProtection"] = EnableTerminationProtection
        return {}

    def get_waiter(self, name: str) -> FakeWaiter:
        return FakeWaiter(self, name)

    def get_paginator(self, name: str) -> FakeEventPaginator:
        assert name == "describe_stack_events"
        return FakeEventPaginator(self)

    def detect_stack_drift(self, StackName: str) -> Dict[str, str]:
        return {"StackDriftDetectionId": f"drift-{StackName}"}

    def describe_stack_drift_detection_status(self, StackDriftDetectionId: str) -> Dict[str, str]:
        stack_name = StackDriftDetectionId[len("drift-"):]
        return {
            "DetectionStatus": "DETECTION_COMPLETE",
            "StackDriftStatus": self.drift_status.get(stack_name, "IN_SYNC"),
        }

    def describe_stack_resource_drifts(self, StackName: str, StackResourceDriftStatusFilters=()):
        return {
            "StackResourceDrifts": [
                {
                    "LogicalResourceId": "Vpc",
                    "ResourceType": "AWS::EC2::VPC",
                    "StackResourceDriftStatus": "MODIFIED",
                }
            ]
        }

    def parameters_of(self, stack_name: str) -> Dict[str, str]:
        stack = self.find(stack_name)
        return {p["ParameterKey"]: p["ParameterValue"] for p in stack["Parameters"]}

    def _record_failure(self, stack_name: str, status: str, reason: str) -> None:
        self.events.setdefault(stack_name, []).insert(0, {
            "LogicalResourceId": "Service",
            "ResourceType": "AWS::ECS::Service",
            "ResourceStatus": status,
            "ResourceStatusReason": reason,
        })

    @staticmethod
    def _outputs(stack_name: str, body: Optional[str]) -> List[Dict[str, str]]:
        if not body:
            return []
        outputs = []
        for key, definition in (parse_template(body).get("Outputs") or {}).items():
            output = {"OutputKey": key, "OutputValue": f"{key.lower()}-{stack_name}"}
            if "Export" in definition:
                output["ExportName"] = f"{stack_name}-{key}"
            outputs.append(output)
        return outputs


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """A project as written by ``cfn-deploy init``."""
    (tmp_path / "cfn-deploy.yaml").write_text(render_config("demo", REGION, ACCOUNT))
    templates = tmp_path / "templates"
    templates.mkdir()
    for filename, body in TEMPLATES.items():
        (templates / filename).write_text(body)
    return tmp_path


@pytest.fixture
def config(project_dir) -> Config:
    return Config(str(project_dir / "cfn-deploy.yaml")).load()


@pytest.fixture
def cloudformation() -> FakeCloudFormation:
    return FakeCloudFormation()


@pytest.fixture
def provisioner(cloudformation) -> CloudFormationProvisioner:
    return CloudFormationProvisioner(
        MagicMock(region_name=REGION),
        client=cloudformation,
        s3_client=MagicMock(),
        retry_strategy=RetryStrategy(max_retries=0),
    )


@pytest.fixture
def state_manager(config) -> StateManager:
    return StateManager(str(default_state_path(config.project.name, "dev", config.base_dir)))


@pytest.fixture
def orchestrator(config, state_manager, provisioner) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        config=config,
        environment="dev",
        state_manager=state_manager,
        provisioner=provisioner,
    )
