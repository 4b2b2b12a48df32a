from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .auth import AuthSelection, CredentialSet, is_external_caller
from .catalog import TemplateCatalog
from .config import Settings
from .errors import ConfigurationError
from .models import InputSpec, TemplateSpec
from .utils import is_contained_path, resolve_within

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(r"^\s*\$\{\{.*\}\}\s*$", re.DOTALL)
_USES = re.compile(r"^(?P<owner>[^/@\s]+)/(?P<repo>[^/@\s]+)/(?P<path>[^@\s]+)@(?P<ref>\S+)$")
# Placeholder for secrets whose value lives in the caller's secret store.
_PRESENT = "<present>"


def is_expression(value: Any) -> bool:
    return isinstance(value, str) and bool(_EXPRESSION.match(value))


@dataclass(frozen=True)
class WorkflowReference:
    owner: str
    repo: str
    path: str
    ref: str

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def parse_workflow_reference(uses: str) -> Optional[WorkflowReference]:
    """Parse ``owner/repo/path/to/workflow.yml@ref``; local ``./`` references yield None."""

    match = _USES.match(uses.strip())
    if not match:
        return None
    return WorkflowReference(**match.groupdict())


@dataclass
class ValidatedInvocation:
    template: TemplateSpec
    inputs: Dict[str, Any]
    credentials: CredentialSet
    auth: Optional[AuthSelection] = None
    external_caller: bool = False


def coerce_input(spec: InputSpec, value: Any) -> Any:
    """Convert command-line text to the input's declared type."""

    if not isinstance(value, str) or spec.type == "string" or is_expression(value):
        return value
    if spec.type == "boolean":
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
        return value
    try:
        number = float(value)
    except ValueError:
        return value
    return int(number) if number.is_integer() else number


def _check_inputs(
    template: TemplateSpec,
    supplied: Mapping[str, Any],
    checkout: Optional[Path],
    problems: List[str],
) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for name in supplied:
        if template.input(name) is None:
            problems.append(f"Unknown input '{name}' for template '{template.id}'")

    for spec in template.inputs:
        if spec.name not in supplied:
            if spec.required:
                problems.append(f"Missing required input '{spec.name}'")
            elif spec.default is not None:
                resolved[spec.name] = spec.default
            continue
        value = coerce_input(spec, supplied[spec.name])
        resolved[spec.name] = value
        if is_expression(value):
            continue
        if not spec.accepts(value):
            problems.append(f"Input '{spec.name}' must be a {spec.type}, got {value!r}")
            continue
        if spec.options and value not in spec.options:
            problems.append(f"Input '{spec.name}' must be one of {list(spec.options)}, got {value!r}")
        if spec.path:
            if checkout is not None:
                try:
                    resolve_within(checkout, value)
                except ConfigurationError as exc:
                    problems.extend(exc.problems)
            elif not is_contained_path(value):
                problems.append(f"Path '{value}' must resolve within the checkout")
    return resolved


def _check_secrets(template: TemplateSpec, supplied: Mapping[str, Optional[str]], problems: List[str]) -> None:
    for name in supplied:
        spec = template.secret(name)
        if spec is None:
            problems.append(f"Unknown secret '{name}' for template '{template.id}'")
    for spec in template.secrets:
        if spec.required and not (supplied.get(spec.name) or "").strip():
            problems.append(f"Missing required secret '{spec.name}'")


def validate_invocation(
    template: TemplateSpec,
    inputs: Mapping[str, Any],
    secrets: Mapping[str, Optional[str]],
    *,
    caller_repository: Optional[str] = None,
    template_repository: Optional[str] = None,
    checkout: str | Path | None = None,
) -> ValidatedInvocation:
    """Check an invocation against a template's interface.

    Every problem is collected before raising, so one ``ConfigurationError``
    names all of them.
    """

    problems: List[str] = []
    resolved = _check_inputs(template, inputs, Path(checkout) if checkout is not None else None, problems)
    _check_secrets(template, secrets, problems)
    credentials = CredentialSet.from_mapping(secrets, template)
    external = is_external_caller(caller_repository, template_repository)

    selection: Optional[AuthSelection] = None
    if template.auth is not None:
        prefer_oidc = False
        if template.auth.prefer_oidc_input:
            prefer_oidc = resolved.get(template.auth.prefer_oidc_input) is True
        try:
            selection = credentials.resolve(template.auth, is_external_caller=external, prefer_oidc=prefer_oidc)
        except ConfigurationError as exc:
            if not problems:
                raise
            problems.extend(exc.problems)
    if problems:
        raise ConfigurationError(problems)
    return ValidatedInvocation(
        template=template,
        inputs=resolved,
        credentials=credentials,
        auth=selection,
        external_caller=external,
    )


@dataclass
class JobReport:
    job_id: str
    template_id: str
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _load_workflow(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read workflow {path}: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("jobs"), dict):
        raise ConfigurationError(f"Workflow {path} has no 'jobs' mapping")
    return data


def validate_workflow_file(
    path: str | Path,
    catalog: TemplateCatalog,
    settings: Settings,
    *,
    caller_repository: Optional[str] = None,
) -> List[JobReport]:
    """Validate every job in a caller workflow that invokes one of the templates."""

    path = Path(path)
    workflow = _load_workflow(path)
    reports: List[JobReport] = []
    for job_id, job in workflow["jobs"].items():
        if not isinstance(job, dict) or not isinstance(job.get("uses"), str):
            continue
        reference = parse_workflow_reference(job["uses"])
        if reference is None:
            continue
        if settings.template_repository and reference.repository.lower() != settings.template_repository.lower():
            continue
        template = catalog.find_by_workflow_file(reference.filename)
        if template is None:
            continue

        report = JobReport(job_id=job_id, template_id=template.id)
        reports.append(report)
        with_block = job.get("with") or {}
        secrets_block = job.get("secrets")
        if not isinstance(with_block, dict):
            report.errors.append("'with' must be a mapping")
            continue

        if secrets_block == "inherit":
            logger.info("Job %s inherits secrets; secret checks skipped", job_id)
            problems: List[str] = []
            _check_inputs(template, with_block, None, problems)
            report.errors.extend(problems)
            continue
        if secrets_block is not None and not isinstance(secrets_block, dict):
            report.errors.append("'secrets' must be a mapping or 'inherit'")
            continue

        secrets = {name: _PRESENT if value not in (None, "") else "" for name, value in (secrets_block or {}).items()}
        try:
            validate_invocation(
                template,
                with_block,
                secrets,
                caller_repository=caller_repository,
                template_repository=settings.template_repository,
            )
        except ConfigurationError as exc:
            report.errors.extend(exc.problems)
    return reports
