"""Consistency checks across stages."""

from dataclasses import dataclass, field
from typing import List, Optional

from cfn_deploy.config.models import OutputReference, format_parameter_value
from cfn_deploy.orchestrator.resolver import StageGraph, parameter_errors
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)

STACK_NAME_SUFFIX = "StackName"


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ConsistencyValidator:
    """Checks that stages agree with each other.

    - parameters naming another stack (``*StackName``) point at a stage
      deployed earlier
    - a configured teardown list is the exact reverse of the deployment order
    - every parameter has a value and is declared by its template
    """

    def __init__(self, stage_graph: StageGraph, teardown: Optional[List[str]] = None):
        self.stage_graph = stage_graph
        self.teardown = teardown

    def validate(self) -> ValidationReport:
        report = ValidationReport(warnings=list(self.stage_graph.warnings))
        report.errors.extend(self.check_stack_name_parameters())
        report.errors.extend(self.check_teardown_order())
        for name in self.stage_graph.deployment_order:
            report.errors.extend(parameter_errors(self.stage_graph.stages[name]))

        logger.debug(f"Consistency checks: {len(report.errors)} error(s), {len(report.warnings)} warning(s)")
        return report

    def check_stack_name_parameters(self) -> List[str]:
        """Stack names used as parameter values must belong to earlier stages."""
        errors = []
        order = self.stage_graph.deployment_order
        stack_owner = {stage.stack_name: name for name, stage in self.stage_graph.stages.items()}

        for position, name in enumerate(order):
            stage = self.stage_graph.stages[name]
            for parameter_name, parameter in stage.template.parameters.items():
                if not parameter_name.endswith(STACK_NAME_SUFFIX):
                    continue

                configured = stage.parameters.get(parameter_name)
                if isinstance(configured, OutputReference):
                    continue
                value = format_parameter_value(configured) if configured is not None else parameter.default
                if not value:
                    continue

                owner = stack_owner.get(value)
                if owner is None:
                    errors.append(
                        f"Stage '{name}' parameter '{parameter_name}' names stack '{value}' "
                        f"which no stage creates"
                    )
                elif owner == name or order.index(owner) > position:
                    errors.append(
                        f"Stage '{name}' parameter '{parameter_name}' names stack '{value}' "
                        f"of stage '{owner}' which is not deployed before it"
                    )
        return errors

    def check_teardown_order(self) -> List[str]:
        if self.teardown is None:
            return []
        expected = self.stage_graph.teardown_order
        if list(self.teardown) != expected:
            return [
                f"Teardown order {' -> '.join(self.teardown)} is not the reverse of the deployment "
                f"order; expected {' -> '.join(expected)}"
            ]
        return []
