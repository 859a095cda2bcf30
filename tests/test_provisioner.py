"""Tests for the CloudFormation provisioner."""

from unittest.mock import MagicMock

import pytest

from cfn_deploy.cli.scaffold import TEMPLATES
from cfn_deploy.provisioners.base import ChangeType, StackSpec
from cfn_deploy.provisioners.cloudformation import CloudFormationProvisioner
from cfn_deploy.templates.models import MAX_TEMPLATE_BODY_SIZE
from cfn_deploy.utils.errors import DeploymentError, ErrorCategory, ProvisioningError, ValidationError
from cfn_deploy.utils.retry import RetryStrategy

from conftest import client_error


def spec(stack_name="network", body=None, **kwargs):
    body = body if body is not None else TEMPLATES["network.yaml"]
    return StackSpec(stage=stack_name, stack_name=stack_name, template_body=body, template_hash="abc123", **kwargs)


class TestPlan:
    """Choosing between create and update."""

    def test_missing_stack_is_created(self, provisioner):
        plan = provisioner.plan(spec())
        assert plan.change_type == ChangeType.CREATE
        assert plan.current_state is None

    def test_existing_stack_is_updated(self, provisioner):
        provisioner.provision(provisioner.plan(spec()))
        plan = provisioner.plan(spec())
        assert plan.change_type == ChangeType.UPDATE
        assert plan.current_state.status == "CREATE_COMPLETE"

    def test_busy_stack(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec()))
        cloudformation.find("network")["StackStatus"] = "UPDATE_IN_PROGRESS"
        with pytest.raises(ProvisioningError, match="busy"):
            provisioner.plan(spec())

    def test_rollback_complete_is_replaced(self, provisioner, cloudformation):
        cloudformation.fail_on["network"] = "Resource handler returned message: CIDR conflicts with another subnet"
        with pytest.raises(ProvisioningError):
            provisioner.provision(provisioner.plan(spec()))

        plan = provisioner.plan(spec())
        assert plan.change_type == ChangeType.CREATE
        assert plan.replace_failed
        result = provisioner.provision(plan)
        assert result.change_type == ChangeType.CREATE
        assert cloudformation.operations == [("create", "network"), ("delete", "network"), ("create", "network")]


class TestProvision:
    """Create, update and no-op applies."""

    def test_create_returns_outputs_and_exports(self, provisioner):
        result = provisioner.provision(provisioner.plan(spec()))
        assert result.changed
        assert result.stack_id.startswith("arn:aws:cloudformation")
        assert result.outputs["VpcId"] == "vpcid-network"
        assert result.exports == {
            "network-VpcId": "vpcid-network",
            "network-PublicSubnetOne": "publicsubnetone-network",
            "network-PublicSubnetTwo": "publicsubnettwo-network",
        }

    def test_no_updates_is_not_an_error(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec()))
        result = provisioner.provision(provisioner.plan(spec()))
        assert result.change_type == ChangeType.NO_CHANGE
        assert not result.changed
        assert result.outputs["VpcId"] == "vpcid-network"

    def test_failed_create_is_diagnosed(self, provisioner, cloudformation):
        cloudformation.fail_on["network"] = "Resource handler returned message: CIDR conflicts with another subnet"
        with pytest.raises(ProvisioningError) as exc_info:
            provisioner.provision(provisioner.plan(spec()))
        error = exc_info.value
        assert "CIDR conflicts" in error.message
        assert error.context.operation == "create"
        assert error.suggestions[0].startswith("Service (cidr_conflict)")

    def test_termination_protection_is_synchronised(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec()))
        provisioner.provision(provisioner.plan(spec(termination_protection=True)))
        assert ("protect", "network") in cloudformation.operations
        assert cloudformation.find("network")["EnableTerminationProtection"] is True

    def test_rejected_request_keeps_aws_message(self, provisioner):
        provisioner._client = MagicMock()
        provisioner._client.describe_stacks.side_effect = client_error(
            "ValidationError", "Stack with id network does not exist"
        )
        provisioner._client.create_stack.side_effect = client_error(
            "InsufficientCapabilitiesException", "Requires capabilities : [CAPABILITY_IAM]", "CreateStack"
        )
        with pytest.raises(DeploymentError) as exc_info:
            provisioner.provision(provisioner.plan(spec()))
        assert exc_info.value.category == ErrorCategory.PERMISSION
        assert "CAPABILITY_IAM" in exc_info.value.message


class TestLargeTemplates:
    """Bodies above the inline limit go through S3."""

    def large_body(self):
        return "#" * (MAX_TEMPLATE_BODY_SIZE + 1) + "\n" + TEMPLATES["network.yaml"]

    def test_uploaded_and_passed_by_url(self, cloudformation):
        s3_client = MagicMock()
        provisioner = CloudFormationProvisioner(
            MagicMock(region_name="eu-west-1"),
            template_bucket="templates-bucket",
            client=cloudformation,
            s3_client=s3_client,
            retry_strategy=RetryStrategy(max_retries=0),
        )
        provisioner.provision(provisioner.plan(spec(body=self.large_body())))

        s3_client.put_object.assert_called_once()
        assert s3_client.put_object.call_args.kwargs["Key"] == "cfn-deploy/network/abc123.template"
        stack = cloudformation.find("network")
        assert stack["TemplateURL"] == "https://templates-bucket.s3.eu-west-1.amazonaws.com/cfn-deploy/network/abc123.template"
        assert stack["TemplateBody"] is None

    def test_requires_a_bucket(self, provisioner):
        with pytest.raises(ValidationError, match="no template bucket is configured"):
            provisioner.provision(provisioner.plan(spec(body=self.large_body())))


class TestDestroy:
    """Deleting stacks."""

    def test_missing_stack(self, provisioner, cloudformation):
        assert provisioner.destroy("network") is False
        assert cloudformation.operations == []

    def test_delete(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec()))
        assert provisioner.destroy("network") is True
        assert cloudformation.find("network") is None

    def test_termination_protection_blocks_delete(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec(termination_protection=True)))
        with pytest.raises(ProvisioningError, match="termination protection"):
            provisioner.destroy("network")


class TestDriftDetection:
    """CloudFormation drift detection."""

    def test_in_sync(self, provisioner):
        provisioner.provision(provisioner.plan(spec()))
        assert not provisioner.detect_drift("network").is_drifted

    def test_drifted_resources(self, provisioner, cloudformation):
        provisioner.provision(provisioner.plan(spec()))
        cloudformation.drift_status["network"] = "DRIFTED"
        drift = provisioner.detect_drift("network")
        assert drift.is_drifted
        assert drift.drifted_resources == [
            {"logical_id": "Vpc", "resource_type": "AWS::EC2::VPC", "status": "MODIFIED"}
        ]
