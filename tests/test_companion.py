"""Tests for the application companion file checks."""

import pytest

from cfn_deploy.application import CompanionFileChecker
from cfn_deploy.config.models import ApplicationConfig, CompanionFileConfig


@pytest.fixture
def app_dir(tmp_path):
    (tmp_path / "Dockerfile").write_text(
        "# syntax=docker/dockerfile:1\nfrom python:3.12-slim AS base\nCOPY . /app\n"
    )
    (tmp_path / "buildspec.yml").write_text(
        "version: 0.2\nphases:\n  build:\n    commands: [make]\nartifacts:\n  files: [imagedefinitions.json]\n"
    )
    (tmp_path / "appspec.yaml").write_text("version: 0.0\nResources:\n  - TargetService: {}\n")
    return tmp_path


def errors_by_kind(report):
    return {check.kind: check.errors for check in report.checks}


class TestCompanionFileChecker:
    """Container build file, build spec and deployment mapping."""

    def test_valid_repository(self, app_dir):
        report = CompanionFileChecker().check(app_dir)
        assert report.passed
        assert [check.label for check in report.checks] == [
            "container build file", "build specification", "deployment mapping",
        ]

    def test_dockerfile_without_from(self, app_dir):
        (app_dir / "Dockerfile").write_text("# FROM is only mentioned in a comment here\nRUN make\n")
        report = CompanionFileChecker().check(app_dir)
        assert not report.passed
        assert errors_by_kind(report)["container_build"] == ["No FROM instruction declaring a base image"]

    def test_buildspec_missing_key(self, app_dir):
        (app_dir / "buildspec.yml").write_text("version: 0.2\nphases: {}\n")
        report = CompanionFileChecker().check(app_dir)
        assert errors_by_kind(report)["build_spec"] == ["Missing top-level key(s): artifacts"]
        assert [check.kind for check in report.failures()] == ["build_spec"]

    def test_invalid_yaml(self, app_dir):
        (app_dir / "appspec.yaml").write_text("version: [0.0\n")
        errors = errors_by_kind(CompanionFileChecker().check(app_dir))["deploy_mapping"]
        assert errors[0].startswith("Invalid YAML:")

    def test_yaml_that_is_not_a_mapping(self, app_dir):
        (app_dir / "appspec.yaml").write_text("- version\n- Resources\n")
        errors = errors_by_kind(CompanionFileChecker().check(app_dir))["deploy_mapping"]
        assert errors == ["Expected a YAML mapping at the top level"]

    def test_missing_file(self, app_dir):
        (app_dir / "buildspec.yml").unlink()
        report = CompanionFileChecker().check(app_dir)
        assert errors_by_kind(report)["build_spec"] == ["File not found"]
        assert report.failures()[0].path == app_dir / "buildspec.yml"

    def test_configured_files_and_default_root(self, app_dir):
        (app_dir / "deploy").mkdir()
        (app_dir / "deploy" / "buildspec-prod.yml").write_text("version: 0.2\nenv: {}\n")
        application = ApplicationConfig(
            path=str(app_dir),
            files=[
                CompanionFileConfig(kind="build_spec", path="deploy/buildspec-prod.yml", required_keys=["version", "env"]),
            ],
        )
        report = CompanionFileChecker(application).check()
        assert report.root == app_dir
        assert report.passed
        assert len(report.checks) == 1
