"""Tests for stage dependency resolution."""

import pytest
import yaml

from cfn_deploy.config.parser import Config
from cfn_deploy.orchestrator.resolver import StageResolver, parameter_errors, resolve_parameters
from cfn_deploy.state.models import DeploymentRecord, DeploymentStatus, State
from cfn_deploy.templates.store import TemplateStore
from cfn_deploy.utils.errors import DependencyError

PRODUCER = """Resources:
  Topic:
    Type: AWS::SNS::Topic
Outputs:
  TopicArn:
    Value: !Ref Topic
    Export:
      Name: !Sub "${AWS::StackName}-TopicArn"
"""

CONSUMER = """Parameters:
  ProducerStackName:
    Type: String
    Default: producer
Resources:
  Queue:
    Type: AWS::SQS::Queue
    Properties:
      QueueName: !ImportValue
        Fn::Sub: "${ProducerStackName}-TopicArn"
"""

PLAIN = """Parameters:
  TopicArn:
    Type: String
Resources:
  Queue:
    Type: AWS::SQS::Queue
"""


def resolve(tmp_path, stages, templates, environment=None, environments=None):
    for filename, body in templates.items():
        (tmp_path / filename).write_text(body)
    data = {"project": {"name": "demo", "region": "us-east-1"}, "stages": stages}
    if environments:
        data["environments"] = environments
    path = tmp_path / "cfn-deploy.yaml"
    path.write_text(yaml.safe_dump(data))
    config = Config(str(path)).load()
    store = TemplateStore(config.base_dir)
    templates = {stage.name: store.load(stage.template) for stage in config.stages}
    return StageResolver(config, templates, environment=environment, region="us-east-1").resolve()


class TestScaffoldedProject:
    """The project written by init."""

    def test_deployment_order(self, config):
        store = TemplateStore(config.base_dir)
        templates = {stage.name: store.load(stage.template) for stage in config.stages}
        graph = StageResolver(config, templates, environment="dev", region="us-east-1").resolve()

        assert graph.deployment_order == ["network", "container", "service", "pipeline"]
        assert graph.waves == [["network"], ["container"], ["service"], ["pipeline"]]
        assert graph.teardown_order == ["pipeline", "service", "container", "network"]
        assert graph.stages["pipeline"].dependencies == ["container", "service"]
        assert graph.export_producers["network-VpcId"] == "network"
        assert graph.warnings == []


class TestEdges:
    """Edges from imports, depends_on and output references."""

    def test_import_creates_edge_regardless_of_declaration_order(self, tmp_path):
        graph = resolve(
            tmp_path,
            [
                {"name": "consumer", "template": "consumer.yaml"},
                {"name": "producer", "template": "producer.yaml"},
            ],
            {"producer.yaml": PRODUCER, "consumer.yaml": CONSUMER},
        )
        assert graph.deployment_order == ["producer", "consumer"]
        assert graph.stages["consumer"].imports == ["producer-TopicArn"]

    def test_stack_name_changes_export_names(self, tmp_path):
        graph = resolve(
            tmp_path,
            [
                {"name": "producer", "template": "producer.yaml", "stack_name": "demo-producer"},
                {
                    "name": "consumer",
                    "template": "consumer.yaml",
                    "parameters": {"ProducerStackName": "demo-producer"},
                },
            ],
            {"producer.yaml": PRODUCER, "consumer.yaml": CONSUMER},
        )
        assert graph.stages["consumer"].dependencies == ["producer"]
        assert "demo-producer-TopicArn" in graph.export_producers

    def test_missing_producer(self, tmp_path):
        with pytest.raises(DependencyError, match="imports 'producer-TopicArn' but no stage exports it"):
            resolve(tmp_path, [{"name": "consumer", "template": "consumer.yaml"}], {"consumer.yaml": CONSUMER})

    def test_external_import_is_not_an_edge(self, tmp_path):
        graph = resolve(
            tmp_path,
            [{"name": "consumer", "template": "consumer.yaml", "external_imports": ["producer-TopicArn"]}],
            {"consumer.yaml": CONSUMER},
        )
        assert graph.stages["consumer"].dependencies == []

    def test_duplicate_export(self, tmp_path):
        with pytest.raises(DependencyError, match="produced by both stage 'one' and stage 'two'"):
            resolve(
                tmp_path,
                [
                    {"name": "one", "template": "producer.yaml", "stack_name": "shared"},
                    {"name": "two", "template": "producer.yaml", "exports": ["shared-TopicArn"]},
                ],
                {"producer.yaml": PRODUCER},
            )

    def test_output_reference_creates_edge(self, tmp_path):
        graph = resolve(
            tmp_path,
            [
                {"name": "consumer", "template": "plain.yaml", "parameters": {"TopicArn": {"output": "producer.TopicArn"}}},
                {"name": "producer", "template": "producer.yaml"},
            ],
            {"producer.yaml": PRODUCER, "plain.yaml": PLAIN},
        )
        assert graph.deployment_order == ["producer", "consumer"]

    def test_output_reference_to_undeclared_output(self, tmp_path):
        with pytest.raises(DependencyError, match="does not declare"):
            resolve(
                tmp_path,
                [
                    {"name": "producer", "template": "producer.yaml"},
                    {"name": "consumer", "template": "plain.yaml", "parameters": {"TopicArn": {"output": "producer.Missing"}}},
                ],
                {"producer.yaml": PRODUCER, "plain.yaml": PLAIN},
            )

    def test_cycle_between_stages(self, tmp_path):
        with pytest.raises(DependencyError, match="Circular dependency detected between stages"):
            resolve(
                tmp_path,
                [
                    {"name": "a", "template": "producer.yaml", "depends_on": ["b"]},
                    {"name": "b", "template": "plain.yaml", "depends_on": ["a"], "parameters": {"TopicArn": "x"}},
                ],
                {"producer.yaml": PRODUCER, "plain.yaml": PLAIN},
            )

    def test_unresolvable_import_is_a_warning(self, tmp_path):
        body = (
            "Resources:\n"
            "  Topic:\n    Type: AWS::SNS::Topic\n"
            "  Queue:\n    Type: AWS::SQS::Queue\n    Properties:\n"
            "      QueueName: !ImportValue\n        Fn::Sub: \"${Topic.TopicName}-TopicArn\"\n"
        )
        graph = resolve(tmp_path, [{"name": "consumer", "template": "consumer.yaml"}], {"consumer.yaml": body})
        assert graph.stages["consumer"].imports == []
        assert len(graph.warnings) == 1
        assert "cannot be resolved" in graph.warnings[0]


class TestParameters:
    """Parameter checks and concrete values."""

    def test_parameter_errors(self, tmp_path):
        graph = resolve(
            tmp_path,
            [{"name": "plain", "template": "plain.yaml", "parameters": {"Extra": "x"}}],
            {"plain.yaml": PLAIN},
        )
        errors = parameter_errors(graph.stages["plain"])
        assert "Stage 'plain' sets parameter 'Extra' which its template does not declare" in errors
        assert "Stage 'plain' parameter 'TopicArn' has no value and no default" in errors

    def test_resolve_parameters_reads_recorded_outputs(self, tmp_path):
        graph = resolve(
            tmp_path,
            [
                {"name": "producer", "template": "producer.yaml"},
                {"name": "consumer", "template": "plain.yaml", "parameters": {"TopicArn": {"output": "producer.TopicArn"}}},
            ],
            {"producer.yaml": PRODUCER, "plain.yaml": PLAIN},
        )
        state = State(project_name="demo", environment="dev", region="us-east-1", account="123456789012")
        consumer = graph.stages["consumer"]

        with pytest.raises(DependencyError, match="is not applied"):
            resolve_parameters(consumer, state)

        state.set_record(DeploymentRecord(
            stage="producer",
            stack_name="producer",
            status=DeploymentStatus.APPLIED,
            outputs={"TopicArn": "arn:aws:sns:us-east-1:123456789012:topic"},
        ))
        assert resolve_parameters(consumer, state) == {"TopicArn": "arn:aws:sns:us-east-1:123456789012:topic"}

    def test_environment_override_applies(self, tmp_path):
        graph = resolve(
            tmp_path,
            [{"name": "plain", "template": "plain.yaml", "parameters": {"TopicArn": "dev-arn"}}],
            {"plain.yaml": PLAIN},
            environment="prod",
            environments={"prod": {"account": "123456789012", "region": "us-east-1", "parameters": {"plain": {"TopicArn": "prod-arn"}}}},
        )
        state = State(project_name="demo", environment="prod", region="us-east-1", account="123456789012")
        assert resolve_parameters(graph.stages["plain"], state) == {"TopicArn": "prod-arn"}
