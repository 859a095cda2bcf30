"""Checks for the files the pipeline stage expects in the application repository."""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import yaml

from cfn_deploy.config.models import ApplicationConfig, CompanionFileConfig
from cfn_deploy.utils.logging import get_logger

logger = get_logger(__name__)

FROM_INSTRUCTION = re.compile(r"^\s*FROM\s+\S+", re.IGNORECASE | re.MULTILINE)

KIND_LABELS = {
    "container_build": "container build file",
    "build_spec": "build specification",
    "deploy_mapping": "deployment mapping",
}


@dataclass
class CompanionCheck:
    """Outcome for one companion file."""

    kind: str
    path: Path
    errors: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return KIND_LABELS.get(self.kind, self.kind)

    @property
    def passed(self) -> bool:
        return not self.errors


@dataclass
class CompanionReport:
    root: Path
    checks: List[CompanionCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    def failures(self) -> List[CompanionCheck]:
        return [check for check in self.checks if not check.passed]


class CompanionFileChecker:
    """Verifies the container build file, build spec and deployment mapping.

    The container build file must declare a base image with ``FROM``. The
    YAML files must parse to a mapping carrying their required top-level keys.
    """

    def __init__(self, application: Optional[ApplicationConfig] = None):
        self.application = application or ApplicationConfig()

    def check(self, root: Union[str, Path, None] = None) -> CompanionReport:
        """Check every configured companion file under ``root``.

        Args:
            root: Application repository; defaults to the configured path
        """
        root_path = Path(root if root is not None else self.application.path)
        report = CompanionReport(root=root_path)

        for file_config in self.application.files:
            check = self.check_file(root_path, file_config)
            report.checks.append(check)
            if check.passed:
                logger.debug(f"{check.label} {check.path} passed")
            else:
                logger.warning(f"{check.label} {check.path}: {'; '.join(check.errors)}")

        return report

    def check_file(self, root: Path, file_config: CompanionFileConfig) -> CompanionCheck:
        path = root / file_config.path
        check = CompanionCheck(kind=file_config.kind, path=path)

        if not path.is_file():
            check.errors.append("File not found")
            return check

        try:
            content = path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            check.errors.append(f"Cannot read file: {e}")
            return check

        if file_config.kind == "container_build":
            check.errors.extend(self._check_container_build(content))
        else:
            check.errors.extend(self._check_yaml_keys(content, file_config.required_keys))
        return check

    @staticmethod
    def _check_container_build(content: str) -> List[str]:
        if not FROM_INSTRUCTION.search(content):
            return ["No FROM instruction declaring a base image"]
        return []

    @staticmethod
    def _check_yaml_keys(content: str, required_keys: List[str]) -> List[str]:
        try:
            document = yaml.safe_load(content)
        except yaml.YAMLError as e:
            return [f"Invalid YAML: {e}"]

        if not isinstance(document, dict):
            return ["Expected a YAML mapping at the top level"]

        missing = [key for key in required_keys if key not in document]
        if missing:
            return [f"Missing top-level key(s): {', '.join(missing)}"]
        return []
