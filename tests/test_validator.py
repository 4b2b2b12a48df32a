from __future__ import annotations

from pathlib import Path

import pytest

from dotnet_pipelines.auth import AuthMode
from dotnet_pipelines.catalog import TemplateCatalog
from dotnet_pipelines.config import Settings
from dotnet_pipelines.errors import ConfigurationError, EnvironmentMismatchError
from dotnet_pipelines.validator import parse_workflow_reference, validate_invocation, validate_workflow_file

CATALOG = TemplateCatalog.default()
SETTINGS = Settings(template_repository="acme/dotnet-workflows")


def test_defaults_are_applied_and_text_is_coerced() -> None:
    invocation = validate_invocation(
        CATALOG.get("dotnet-publish"),
        {"project-path": "src/Lib/Lib.csproj", "use-oidc": "true"},
        {"NUGET_USER": "publisher"},
    )
    assert invocation.inputs["configuration"] == "Release"
    assert invocation.inputs["output-directory"] == "artifacts"
    assert invocation.inputs["use-oidc"] is True
    assert invocation.auth.mode is AuthMode.OIDC


def test_every_problem_is_reported() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        validate_invocation(
            CATALOG.get("dotnet-coverage"),
            {"configuration": "Profile", "verbosity": "high", "output-directory": "../elsewhere"},
            {"NUGET_API_KEY": "key"},
        )
    problems = excinfo.value.problems
    assert "Unknown input 'verbosity' for template 'dotnet-coverage'" in problems
    assert "Input 'configuration' must be one of ['Debug', 'Release'], got 'Profile'" in problems
    assert "Path '../elsewhere' must resolve within the checkout" in problems
    assert "Unknown secret 'NUGET_API_KEY' for template 'dotnet-coverage'" in problems


def test_missing_required_input() -> None:
    with pytest.raises(ConfigurationError, match="Missing required input 'project-path'"):
        validate_invocation(CATALOG.get("dotnet-publish"), {}, {"NUGET_API_KEY": "key"})


def test_wrong_type_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="must be a boolean"):
        validate_invocation(
            CATALOG.get("dotnet-publish"),
            {"project-path": "Lib.csproj", "use-oidc": "maybe"},
            {"NUGET_API_KEY": "key"},
        )


def test_expressions_skip_type_checks() -> None:
    invocation = validate_invocation(
        CATALOG.get("dotnet-format"),
        {"mode": "${{ github.event_name == 'push' && 'fix' || 'check' }}"},
        {},
    )
    assert invocation.inputs["mode"].startswith("${{")


def test_paths_are_checked_against_checkout(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    validate_invocation(CATALOG.get("dotnet-format"), {"solution-path": "src"}, {}, checkout=tmp_path)
    with pytest.raises(ConfigurationError, match="within the checkout"):
        validate_invocation(CATALOG.get("dotnet-format"), {"solution-path": "/etc"}, {}, checkout=tmp_path)


def test_publish_without_credentials_fails_before_anything_else() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        validate_invocation(CATALOG.get("dotnet-publish"), {"project-path": "Lib.csproj"}, {"NUGET_API_KEY": ""})
    assert "NUGET_API_KEY" in str(excinfo.value)
    assert "NUGET_USER" in str(excinfo.value)


def test_external_caller_with_only_oidc_keeps_error_type() -> None:
    with pytest.raises(EnvironmentMismatchError):
        validate_invocation(
            CATALOG.get("dotnet-publish"),
            {"project-path": "Lib.csproj"},
            {"NUGET_USER": "publisher"},
            caller_repository="someone/app",
            template_repository="acme/dotnet-workflows",
        )


def test_parse_workflow_reference() -> None:
    reference = parse_workflow_reference("acme/dotnet-workflows/.github/workflows/dotnet-format.yml@v1")
    assert reference.repository == "acme/dotnet-workflows"
    assert reference.filename == "dotnet-format.yml"
    assert reference.ref == "v1"
    assert parse_workflow_reference("./.github/workflows/local.yml") is None


CALLER_WORKFLOW = """
name: ci
on: [push, pull_request]
jobs:
  format:
    uses: acme/dotnet-workflows/.github/workflows/dotnet-format.yml@v1
    with:
      mode: check
  coverage:
    uses: acme/dotnet-workflows/.github/workflows/dotnet-coverage.yml@v1
    with:
      configuration: Profile
    secrets: inherit
  publish:
    uses: acme/dotnet-workflows/.github/workflows/dotnet-publish.yml@v1
    with:
      project-path: src/Lib/Lib.csproj
    secrets:
      NUGET_USER: ${{ secrets.NUGET_USER }}
  build:
    runs-on: ubuntu-latest
    steps:
      - run: echo hi
  foreign:
    uses: other/repo/.github/workflows/dotnet-format.yml@v1
"""


def test_validate_workflow_file_reports_per_job(tmp_path: Path) -> None:
    path = tmp_path / "ci.yml"
    path.write_text(CALLER_WORKFLOW)

    reports = {report.job_id: report for report in validate_workflow_file(path, CATALOG, SETTINGS)}
    assert sorted(reports) == ["coverage", "format", "publish"]
    assert reports["format"].ok
    assert not reports["coverage"].ok
    assert reports["publish"].ok


def test_validate_workflow_file_flags_oidc_from_other_repository(tmp_path: Path) -> None:
    path = tmp_path / "ci.yml"
    path.write_text(CALLER_WORKFLOW)

    reports = {
        report.job_id: report
        for report in validate_workflow_file(path, CATALOG, SETTINGS, caller_repository="someone/app")
    }
    assert len(reports["publish"].errors) == 1
    assert "another repository" in reports["publish"].errors[0]


def test_workflow_without_jobs_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "ci.yml"
    path.write_text("name: empty\n")
    with pytest.raises(ConfigurationError, match="no 'jobs'"):
        validate_workflow_file(path, CATALOG, SETTINGS)
