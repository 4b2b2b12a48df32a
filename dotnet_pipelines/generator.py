"""Render catalog templates into GitHub Actions reusable workflows."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List

import yaml

from .auth import external_caller_message, missing_both_message, oidc_requested_message
from .catalog import TemplateCatalog
from .config import Settings
from .errors import CatalogError
from .models import TemplateSpec
from .utils import ensure_directory

logger = logging.getLogger(__name__)

HEADER = "# Generated by dotnet-pipelines from the template catalog. Do not edit by hand.\n"
JOB_ID = "run"

CHECKOUT_ACTION = "actions/checkout@v4"
SETUP_DOTNET_ACTION = "actions/setup-dotnet@v4"
UPLOAD_ACTION = "actions/upload-artifact@v4"
REPORT_GENERATOR_ACTION = "danielpalme/ReportGenerator-GitHub-Action@5"
NUGET_LOGIN_ACTION = "NuGet/login@v1"

# Inputs the step builders reference by name.
_KIND_INPUTS = {
    "format": ("solution-path", "dotnet-version", "mode", "git-user-name", "git-user-email", "commit-message"),
    "coverage": ("solution-path", "dotnet-version", "configuration", "output-directory"),
    "publish": ("project-path", "dotnet-version", "configuration", "output-directory", "nuget-source"),
}

StepBuilder = Callable[[TemplateSpec, Settings], List[Dict[str, Any]]]


def _input(name: str) -> str:
    return "${{ inputs." + name + " }}"


def _secret_or(template: TemplateSpec, name: str, fallback: str = "") -> str:
    parts = [f"secrets.{name}"] + [f"secrets.{alias}" for alias in template.aliases_for(name)]
    if fallback:
        parts.append(fallback)
    return "${{ " + " || ".join(parts) + " }}"


def _checkout_step(template: TemplateSpec, **extra: str) -> Dict[str, Any]:
    step: Dict[str, Any] = {"name": "Check out repository", "uses": CHECKOUT_ACTION}
    with_block: Dict[str, str] = {}
    if template.secret("CHECKOUT_TOKEN") is not None:
        with_block["token"] = _secret_or(template, "CHECKOUT_TOKEN", "github.token")
    with_block.update(extra)
    if with_block:
        step["with"] = with_block
    return step


def _setup_dotnet_step() -> Dict[str, Any]:
    return {
        "name": "Set up .NET SDK",
        "uses": SETUP_DOTNET_ACTION,
        "with": {"dotnet-version": _input("dotnet-version")},
    }


def _env_name(input_name: str) -> str:
    return input_name.upper().replace("-", "_")


def _path_guard_step(template: TemplateSpec) -> Dict[str, Any]:
    path_inputs = [spec.name for spec in template.inputs if spec.path]
    lines = ["set -euo pipefail", 'fail() { echo "::error::Path \'$1\' must resolve within the checkout"; exit 1; }']
    for name in path_inputs:
        var = _env_name(name)
        lines.append(f'case "/${var}/" in')
        lines.append(f'  //*|*/../*) fail "${var}" ;;')
        lines.append("esac")
    return {
        "name": "Validate inputs",
        "shell": "bash",
        "env": {_env_name(name): _input(name) for name in path_inputs},
        "run": "\n".join(lines) + "\n",
    }


def _format_steps(template: TemplateSpec, settings: Settings) -> List[Dict[str, Any]]:
    commit_script = "\n".join(
        [
            "set -euo pipefail",
            'if [ -z "$(git status --porcelain)" ]; then',
            '  echo "No formatting changes to commit"',
            "  exit 0",
            "fi",
            'git config user.name "$GIT_USER_NAME"',
            'git config user.email "$GIT_USER_EMAIL"',
            "git add -A",
            'git commit -m "$COMMIT_MESSAGE"',
            "git push",
        ]
    )
    return [
        _path_guard_step(template),
        _checkout_step(template, ref="${{ github.head_ref || github.ref }}"),
        _setup_dotnet_step(),
        {
            "name": "Check formatting",
            "if": "inputs.mode == 'check'",
            "env": {"SOLUTION_PATH": _input("solution-path")},
            "run": 'dotnet format "$SOLUTION_PATH" --verify-no-changes --verbosity diagnostic',
        },
        {
            "name": "Apply formatting",
            "if": "inputs.mode == 'fix'",
            "env": {"SOLUTION_PATH": _input("solution-path")},
            "run": 'dotnet format "$SOLUTION_PATH"',
        },
        {
            "name": "Commit formatting changes",
            "if": "inputs.mode == 'fix'",
            "shell": "bash",
            "env": {
                "GIT_USER_NAME": _input("git-user-name"),
                "GIT_USER_EMAIL": _input("git-user-email"),
                "COMMIT_MESSAGE": _input("commit-message"),
            },
            "run": commit_script + "\n",
        },
    ]


def _coverage_steps(template: TemplateSpec, settings: Settings) -> List[Dict[str, Any]]:
    output_dir = _input("output-directory")
    artifact_paths = [spec.path for spec in template.outputs if spec.kind == "artifact" and spec.path]
    percentage_script = "\n".join(
        [
            "set -euo pipefail",
            'rate=$(grep -o \'line-rate="[0-9.]*"\' "$OUTPUT_DIRECTORY/Cobertura.xml" | head -n 1 | cut -d\'"\' -f2)',
            'percentage=$(awk -v rate="${rate:-0}" \'BEGIN { printf "%.2f", rate * 100 }\')',
            'echo "percentage=$percentage" >> "$GITHUB_OUTPUT"',
            'cp "$OUTPUT_DIRECTORY/SummaryGithub.md" coverage-report.md',
        ]
    )
    return [
        _path_guard_step(template),
        _checkout_step(template),
        _setup_dotnet_step(),
        {
            "name": "Run tests with coverage",
            "env": {
                "SOLUTION_PATH": _input("solution-path"),
                "CONFIGURATION": _input("configuration"),
                "OUTPUT_DIRECTORY": output_dir,
            },
            "run": (
                'dotnet test "$SOLUTION_PATH" --configuration "$CONFIGURATION" '
                '--collect:"XPlat Code Coverage" --results-directory "$OUTPUT_DIRECTORY/raw"'
            ),
        },
        {
            "name": "Aggregate coverage reports",
            "uses": REPORT_GENERATOR_ACTION,
            "with": {
                "reports": output_dir + "/raw/**/coverage.cobertura.xml",
                "targetdir": output_dir,
                "reporttypes": "Cobertura;MarkdownSummaryGithub",
            },
        },
        {
            "name": "Compute coverage percentage",
            "id": "coverage",
            "shell": "bash",
            "env": {"OUTPUT_DIRECTORY": output_dir},
            "run": percentage_script + "\n",
        },
        {
            "name": "Save pull request number",
            "if": "github.event_name == 'pull_request' || github.event_name == 'pull_request_target'",
            "env": {"PR_NUMBER": "${{ github.event.number }}"},
            "run": 'echo "$PR_NUMBER" > pr-number.txt',
        },
        {
            "name": "Upload coverage report",
            "uses": UPLOAD_ACTION,
            "with": {
                "name": "coverage-report",
                "path": "\n".join(artifact_paths) + "\n",
                "if-no-files-found": "warn",
            },
        },
    ]


def render_auth_script(template: TemplateSpec) -> str:
    """Shell rendition of the publish authentication policy."""

    policy = template.auth
    assert policy is not None
    api_name, oidc_name = policy.api_key_secret, policy.oidc_secret
    lines = [
        "set -euo pipefail",
        'prefer="$(printf \'%s\' "$PREFER_OIDC" | tr \'[:upper:]\' \'[:lower:]\')"',
        'caller="$(printf \'%s\' "$CALLER_REPOSITORY" | tr \'[:upper:]\' \'[:lower:]\')"',
        'host="$(printf \'%s\' "$TEMPLATE_REPOSITORY" | tr \'[:upper:]\' \'[:lower:]\')"',
        "external=false",
        'if [ -n "$caller" ] && [ -n "$host" ] && [ "$caller" != "$host" ]; then external=true; fi',
    ]
    for alias in template.aliases_for(api_name):
        lines.append(
            f'if [ -n "${{{_env_name(alias)}:-}}" ]; then '
            f'echo "::warning::Secret {alias} is deprecated, use {api_name} instead"; fi'
        )
    lines += [
        'if [ "$external" = true ]; then',
        '  if [ -z "$API_KEY" ]; then',
        '    if [ -z "$OIDC_USER" ] && [ "$prefer" != true ]; then',
        f'      echo "::error::{missing_both_message(api_name, oidc_name)}"',
        "      exit 1",
        "    fi",
        f'    echo "::error::{external_caller_message(api_name, oidc_name)}"',
        "    exit 1",
        "  fi",
        "  mode=api-key",
        'elif [ -z "$API_KEY" ] && [ -z "$OIDC_USER" ]; then',
        f'  echo "::error::{missing_both_message(api_name, oidc_name)}"',
        "  exit 1",
        'elif [ "$prefer" = true ]; then',
        '  if [ -z "$OIDC_USER" ]; then',
        f'    echo "::error::{oidc_requested_message(oidc_name)}"',
        "    exit 1",
        "  fi",
        "  mode=oidc",
        'elif [ -n "$API_KEY" ]; then',
        "  mode=api-key",
        "else",
        "  mode=oidc",
        "fi",
        'echo "Publishing with $mode authentication"',
        'echo "mode=$mode" >> "$GITHUB_OUTPUT"',
    ]
    return "\n".join(lines) + "\n"


def _publish_steps(template: TemplateSpec, settings: Settings) -> List[Dict[str, Any]]:
    policy = template.auth
    assert policy is not None
    prefer = _input(policy.prefer_oidc_input) if policy.prefer_oidc_input else "false"
    auth_env = {
        "API_KEY": _secret_or(template, policy.api_key_secret),
        "OIDC_USER": "${{ secrets." + policy.oidc_secret + " }}",
        "PREFER_OIDC": prefer,
        "CALLER_REPOSITORY": "${{ github.repository }}",
        "TEMPLATE_REPOSITORY": settings.template_repository,
    }
    for alias in template.aliases_for(policy.api_key_secret):
        auth_env[_env_name(alias)] = "${{ secrets." + alias + " }}"

    api_key_parts = [
        "steps.auth.outputs.mode == 'oidc' && steps.login.outputs.NUGET_API_KEY",
        f"secrets.{policy.api_key_secret}",
    ] + [f"secrets.{alias}" for alias in template.aliases_for(policy.api_key_secret)]
    output_dir = _input("output-directory")
    return [
        _path_guard_step(template),
        _checkout_step(template),
        {
            "name": "Select authentication mode",
            "id": "auth",
            "shell": "bash",
            "env": auth_env,
            "run": render_auth_script(template),
        },
        _setup_dotnet_step(),
        {
            "name": "Pack",
            "env": {
                "PROJECT_PATH": _input("project-path"),
                "CONFIGURATION": _input("configuration"),
                "OUTPUT_DIRECTORY": output_dir,
            },
            "run": 'dotnet pack "$PROJECT_PATH" --configuration "$CONFIGURATION" --output "$OUTPUT_DIRECTORY"',
        },
        {
            "name": "Log in with trusted publishing",
            "id": "login",
            "if": "steps.auth.outputs.mode == 'oidc'",
            "uses": NUGET_LOGIN_ACTION,
            "with": {"user": "${{ secrets." + policy.oidc_secret + " }}"},
        },
        {
            "name": "Push package",
            "shell": "bash",
            "env": {
                "API_KEY": "${{ " + " || ".join(api_key_parts) + " }}",
                "OUTPUT_DIRECTORY": output_dir,
                "NUGET_SOURCE": _input("nuget-source"),
            },
            "run": (
                'dotnet nuget push "$OUTPUT_DIRECTORY"/*.nupkg --api-key "$API_KEY" '
                '--source "$NUGET_SOURCE" --skip-duplicate'
            ),
        },
        {
            "name": "Upload package",
            "uses": UPLOAD_ACTION,
            "with": {"name": "package", "path": output_dir + "/*.nupkg"},
        },
    ]


_STEP_BUILDERS: Dict[str, StepBuilder] = {
    "format": _format_steps,
    "coverage": _coverage_steps,
    "publish": _publish_steps,
}

_PERMISSIONS: Dict[str, Dict[str, str]] = {
    "format": {"contents": "write"},
    "coverage": {"contents": "read"},
    "publish": {"contents": "read", "id-token": "write"},
}

_STEP_OUTPUTS = {"coverage-percentage": "${{ steps.coverage.outputs.percentage }}"}


def _workflow_call(template: TemplateSpec) -> Dict[str, Any]:
    inputs: Dict[str, Any] = {}
    for spec in template.inputs:
        entry: Dict[str, Any] = {"type": spec.type, "required": spec.required}
        description = spec.description
        if spec.options:
            description = f"{description} One of: {', '.join(spec.options)}.".strip()
        if description:
            entry["description"] = description
        if spec.default is not None:
            entry["default"] = spec.default
        inputs[spec.name] = entry

    secrets: Dict[str, Any] = {}
    for spec in template.secrets:
        entry = {"required": spec.required}
        if spec.description:
            entry["description"] = spec.description
        secrets[spec.name] = entry

    outputs: Dict[str, Any] = {}
    for spec in template.outputs:
        if spec.kind != "value":
            continue
        outputs[spec.name] = {
            "description": spec.description or spec.name,
            "value": "${{ jobs." + JOB_ID + ".outputs." + spec.name + " }}",
        }

    block: Dict[str, Any] = {"inputs": inputs}
    if secrets:
        block["secrets"] = secrets
    if outputs:
        block["outputs"] = outputs
    return block


def render_workflow(template: TemplateSpec, settings: Settings) -> Dict[str, Any]:
    """Build the workflow document for one template."""

    missing = [name for name in _KIND_INPUTS[template.kind] if template.input(name) is None]
    if missing:
        raise CatalogError(f"Template '{template.id}' lacks inputs required by the {template.kind} steps: {missing}")

    job: Dict[str, Any] = {
        "runs-on": "ubuntu-latest",
        "permissions": dict(_PERMISSIONS[template.kind]),
    }
    job_outputs = {
        spec.name: _STEP_OUTPUTS[spec.name]
        for spec in template.outputs
        if spec.kind == "value" and spec.name in _STEP_OUTPUTS
    }
    if job_outputs:
        job["outputs"] = job_outputs
    job["steps"] = _STEP_BUILDERS[template.kind](template, settings)

    return {
        "name": template.description or template.id,
        "on": {"workflow_call": _workflow_call(template)},
        "jobs": {JOB_ID: job},
    }


class _WorkflowDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


_WorkflowDumper.add_representer(str, _represent_str)


def dump_workflow(workflow: Dict[str, Any]) -> str:
    return HEADER + yaml.dump(workflow, Dumper=_WorkflowDumper, sort_keys=False, default_flow_style=False, width=120)


def write_workflows(
    catalog: TemplateCatalog,
    settings: Settings,
    output_dir: str | Path,
    template_ids: Iterable[str] = (),
) -> List[Path]:
    """Write one workflow file per template and return the written paths."""

    output_dir = ensure_directory(output_dir)
    selected = list(template_ids)
    templates = [catalog.get(template_id) for template_id in selected] if selected else list(catalog.iter_templates())
    written: List[Path] = []
    for template in templates:
        if template.auth is not None and not settings.template_repository:
            logger.warning(
                "template_repository is not set; %s cannot tell callers from other repositories "
                "and will allow trusted publishing for them",
                template.workflow_file,
            )
        path = output_dir / template.workflow_file
        path.write_text(dump_workflow(render_workflow(template, settings)), encoding="utf-8")
        logger.info("Wrote %s", path)
        written.append(path)
    return written
