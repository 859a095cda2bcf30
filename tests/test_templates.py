"""Tests for template parsing, intrinsic evaluation and the template store."""

import pytest

from cfn_deploy.cli.scaffold import TEMPLATES
from cfn_deploy.templates.intrinsics import EvaluationContext, evaluate, referenced_names
from cfn_deploy.templates.loader import parse_template
from cfn_deploy.templates.models import MAX_TEMPLATE_BODY_SIZE
from cfn_deploy.templates.store import TemplateStore
from cfn_deploy.utils.errors import TemplateError


class TestParseTemplate:
    """YAML short form and JSON bodies."""

    def test_short_form_tags_become_long_form(self):
        document = parse_template(TEMPLATES["container.yaml"])
        security_group = document["Resources"]["ContainerSecurityGroup"]["Properties"]
        assert security_group["VpcId"] == {"Fn::ImportValue": {"Fn::Sub": "${NetworkStackName}-VpcId"}}
        assert document["Outputs"]["RepositoryUri"]["Value"] == {"Fn::GetAtt": ["Repository", "RepositoryUri"]}

    def test_format_version_stays_a_string(self):
        body = "AWSTemplateFormatVersion: 2010-09-09\nResources:\n  Bucket:\n    Type: AWS::S3::Bucket\n"
        assert parse_template(body)["AWSTemplateFormatVersion"] == "2010-09-09"

    def test_json_body(self):
        document = parse_template('{"Resources": {"Topic": {"Type": "AWS::SNS::Topic"}}}')
        assert document["Resources"]["Topic"]["Type"] == "AWS::SNS::Topic"

    def test_invalid_yaml(self):
        with pytest.raises(TemplateError, match="Failed to parse template"):
            parse_template("Resources: [unclosed")

    def test_requires_resources(self):
        with pytest.raises(TemplateError, match="at least one resource"):
            parse_template("Description: nothing here\n")


class TestEvaluate:
    """Static evaluation of export and import names."""

    def setup_method(self):
        self.context = EvaluationContext(
            stack_name="network",
            region="eu-west-1",
            account_id="123456789012",
            parameters={"Prefix": "demo", "Unknown": None},
        )

    def test_sub_with_pseudo_parameter(self):
        assert evaluate({"Fn::Sub": "${AWS::StackName}-VpcId"}, self.context) == "network-VpcId"

    def test_sub_with_local_variables(self):
        expression = {"Fn::Sub": ["${Name}-${AWS::Region}", {"Name": {"Ref": "Prefix"}}]}
        assert evaluate(expression, self.context) == "demo-eu-west-1"

    def test_sub_escape(self):
        assert evaluate({"Fn::Sub": "${!Literal}-x"}, self.context) == "${Literal}-x"

    def test_join_and_select(self):
        assert evaluate({"Fn::Join": [":", [{"Ref": "AWS::AccountId"}, "vpc"]]}, self.context) == "123456789012:vpc"
        assert evaluate({"Fn::Select": ["1", ["a", "b"]]}, self.context) == "b"

    def test_resource_attributes_are_not_static(self):
        assert evaluate({"Fn::Sub": "${Vpc.CidrBlock}"}, self.context) is None
        assert evaluate({"Fn::GetAtt": ["Vpc", "CidrBlock"]}, self.context) is None

    def test_parameter_without_value_is_not_static(self):
        assert evaluate({"Ref": "Unknown"}, self.context) is None

    def test_referenced_names_skip_pseudo_parameters(self):
        value = {
            "A": {"Ref": "Vpc"},
            "B": {"Fn::GetAtt": ["Role", "Arn"]},
            "C": {"Fn::Sub": "${AWS::Region}-${Bucket.Arn}-${!Skip}"},
        }
        assert referenced_names(value) == {"Vpc", "Role", "Bucket"}


class TestTemplateStore:
    """Loading templates from disk."""

    def test_loads_scaffolded_template(self, project_dir):
        store = TemplateStore(project_dir)
        template = store.load("templates/network.yaml", stage="network")
        assert set(template.outputs) == {"VpcId", "PublicSubnetOne", "PublicSubnetTwo"}
        assert template.parameters["VpcCidr"].default == "10.0.0.0/16"
        route = template.get_resource("PublicRoute")
        assert route.depends_on == ["GatewayAttachment", "InternetGateway", "PublicRouteTable"]

    def test_cache_returns_same_object(self, project_dir):
        store = TemplateStore(project_dir)
        assert store.load("templates/service.yaml") is store.load("templates/service.yaml")

    def test_missing_file(self, tmp_path):
        with pytest.raises(TemplateError) as exc_info:
            TemplateStore(tmp_path).load("templates/absent.yaml", stage="absent")
        assert exc_info.value.context.stage == "absent"

    def test_undeclared_reference(self):
        body = "Resources:\n  Subnet:\n    Type: AWS::EC2::Subnet\n    Properties:\n      VpcId: !Ref Vpc\n"
        with pytest.raises(TemplateError, match="undeclared name"):
            TemplateStore().from_body(body)

    def test_resource_cycle(self):
        body = (
            "Resources:\n"
            "  A:\n    Type: AWS::SNS::Topic\n    DependsOn: B\n"
            "  B:\n    Type: AWS::SNS::Topic\n    DependsOn: A\n"
        )
        with pytest.raises(TemplateError, match="Circular dependency"):
            TemplateStore().from_body(body)

    def test_exports_and_imports_resolve_against_context(self):
        template = TemplateStore().from_body(TEMPLATES["service.yaml"])
        context = EvaluationContext(stack_name="service", parameters=template.default_parameters())
        exports, unresolved_exports = template.resolve_exports(context)
        imports, unresolved_imports = template.resolve_imports(context)
        assert exports == {"service-ServiceName": "ServiceName"}
        assert unresolved_exports == []
        assert imports == [
            "network-VpcId",
            "container-ContainerSecurityGroup",
            "network-PublicSubnetOne",
            "network-PublicSubnetTwo",
            "container-ExecutionRoleArn",
            "container-ClusterName",
        ]
        assert unresolved_imports == []

    def test_large_template_requires_upload(self):
        padding = "#" * (MAX_TEMPLATE_BODY_SIZE + 1)
        template = TemplateStore().from_body(f"{padding}\nResources:\n  T:\n    Type: AWS::SNS::Topic\n")
        assert template.requires_upload()
        assert len(template.hash) == 64
