from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .auth import AuthMode
from .catalog import TemplateCatalog
from .coverage import aggregate_reports, find_cobertura_reports, pull_request_number, render_markdown_report, write_pr_number
from .errors import EnvironmentMismatchError, FormattingError, PipelineError
from .models import StepResult
from .utils import CommandError, dump_json, ensure_directory, resolve_within, run_command, sha256_file
from .validator import ValidatedInvocation, validate_invocation

logger = logging.getLogger(__name__)

# `dotnet format --verify-no-changes` exits with 2 when files would change.
FORMAT_CHANGES_EXIT_CODE = 2


@dataclass
class RunContext:
    checkout: Path
    workspace: Path
    caller_repository: Optional[str] = None
    template_repository: Optional[str] = None
    event_path: Optional[str] = None
    push: bool = True

    def __post_init__(self) -> None:
        self.checkout = Path(self.checkout).resolve()
        self.workspace = Path(self.workspace)
        ensure_directory(self.workspace)

    @property
    def results_dir(self) -> Path:
        return ensure_directory(self.workspace / "results")

    def result_path(self, template_id: str) -> Path:
        return self.results_dir / f"{template_id}.json"

    def path(self, relative: str) -> Path:
        return resolve_within(self.checkout, relative)


Handler = Callable[[RunContext, ValidatedInvocation], StepResult]


def _git_changes(checkout: Path) -> List[str]:
    status = run_command(["git", "status", "--porcelain"], cwd=checkout)
    return [line[3:] for line in status.stdout.splitlines() if line.strip()]


def _run_format(context: RunContext, invocation: ValidatedInvocation) -> StepResult:
    inputs = invocation.inputs
    target = context.path(inputs["solution-path"])
    template_id = invocation.template.id

    if inputs["mode"] == "check":
        result = run_command(["dotnet", "format", str(target), "--verify-no-changes"], cwd=context.checkout, check=False)
        if result.returncode == FORMAT_CHANGES_EXIT_CODE:
            raise FormattingError(f"Formatting differences detected in {inputs['solution-path']}\n{result.stdout}")
        if result.returncode != 0:
            raise CommandError(
                ["dotnet", "format", str(target), "--verify-no-changes"],
                result.returncode,
                result.stdout,
                result.stderr,
            )
        return StepResult(template_id, "completed", {"mode": "check", "target": str(target)})

    run_command(["dotnet", "format", str(target)], cwd=context.checkout)
    changed = _git_changes(context.checkout)
    details: Dict[str, Any] = {"mode": "fix", "target": str(target), "changed_files": changed, "committed": False}
    if not changed:
        logger.info("No formatting changes to commit")
        return StepResult(template_id, "completed", details)

    identity = [
        "-c",
        f"user.name={inputs['git-user-name']}",
        "-c",
        f"user.email={inputs['git-user-email']}",
    ]
    run_command(["git", "add", "-A"], cwd=context.checkout)
    run_command(["git", *identity, "commit", "-m", inputs["commit-message"]], cwd=context.checkout)
    details["committed"] = True
    if context.push:
        run_command(["git", "push"], cwd=context.checkout)
    details["pushed"] = context.push
    return StepResult(template_id, "completed", details)


def _run_coverage(context: RunContext, invocation: ValidatedInvocation) -> StepResult:
    inputs = invocation.inputs
    target = context.path(inputs["solution-path"])
    output_dir = ensure_directory(context.path(inputs["output-directory"]))
    raw_dir = output_dir / "raw"
    if raw_dir.exists():
        # dotnet test adds a new GUID directory per run and never removes old ones.
        shutil.rmtree(raw_dir)

    start = time.perf_counter()
    run_command(
        [
            "dotnet",
            "test",
            str(target),
            "--configuration",
            inputs["configuration"],
            "--collect:XPlat Code Coverage",
            "--results-directory",
            str(raw_dir),
        ],
        cwd=context.checkout,
    )
    summary = aggregate_reports(find_cobertura_reports(raw_dir))
    report_path = context.checkout / "coverage-report.md"
    report_path.write_text(render_markdown_report(summary), encoding="utf-8")
    dump_json(output_dir / "coverage-summary.json", summary.to_dict())

    details: Dict[str, Any] = {
        "coverage_percentage": summary.percentage,
        "coverage": summary.to_dict(),
        "report_path": str(report_path),
        "duration_s": round(time.perf_counter() - start, 3),
    }
    number = pull_request_number(context.event_path)
    if number is not None:
        details["pr_number_path"] = str(write_pr_number(context.checkout / "pr-number.txt", number))
    logger.info("Line coverage: %.2f%%", summary.percentage)
    return StepResult(invocation.template.id, "completed", details)


def _run_publish(context: RunContext, invocation: ValidatedInvocation) -> StepResult:
    selection = invocation.auth
    assert selection is not None
    if selection.mode is AuthMode.OIDC:
        raise EnvironmentMismatchError(
            "Trusted publishing exchanges the CI host's identity token and cannot run locally; "
            "run the workflow or supply an API key"
        )
    inputs = invocation.inputs
    project = context.path(inputs["project-path"])
    output_dir = ensure_directory(context.path(inputs["output-directory"]))

    run_command(
        ["dotnet", "pack", str(project), "--configuration", inputs["configuration"], "--output", str(output_dir)],
        cwd=context.checkout,
    )
    packages = sorted(output_dir.glob("*.nupkg"))
    if not packages:
        raise PipelineError(f"dotnet pack produced no package in {output_dir}")

    pushed = []
    for package in packages:
        run_command(
            [
                "dotnet",
                "nuget",
                "push",
                str(package),
                "--api-key",
                selection.credential,
                "--source",
                inputs["nuget-source"],
                "--skip-duplicate",
            ],
            cwd=context.checkout,
            redact=[selection.credential],
        )
        pushed.append({"path": str(package), "sha256": sha256_file(package)})
    return StepResult(
        invocation.template.id,
        "completed",
        {"auth_mode": selection.mode.value, "source": inputs["nuget-source"], "packages": pushed},
    )


_KIND_HANDLERS: Dict[str, Handler] = {
    "format": _run_format,
    "coverage": _run_coverage,
    "publish": _run_publish,
}


class TemplateRunner:
    """Executes a template's steps against a local checkout."""

    def __init__(self, context: RunContext, catalog: TemplateCatalog) -> None:
        self.context = context
        self.catalog = catalog

    def validate(self, template_id: str, inputs: Mapping[str, Any], secrets: Mapping[str, Optional[str]]) -> ValidatedInvocation:
        return validate_invocation(
            self.catalog.get(template_id),
            inputs,
            secrets,
            caller_repository=self.context.caller_repository,
            template_repository=self.context.template_repository,
            checkout=self.context.checkout,
        )

    def run(self, template_id: str, inputs: Mapping[str, Any], secrets: Mapping[str, Optional[str]]) -> StepResult:
        invocation = self.validate(template_id, inputs, secrets)
        handler = _KIND_HANDLERS[invocation.template.kind]
        logger.info("Running %s in %s", template_id, self.context.checkout)
        try:
            result = handler(self.context, invocation)
        except (FormattingError, CommandError) as exc:
            dump_json(
                self.context.result_path(template_id),
                StepResult(template_id, "failed", {"message": str(exc)}).to_dict(),
            )
            raise
        dump_json(self.context.result_path(template_id), result.to_dict())
        return result

    def last_result(self, template_id: str) -> Optional[StepResult]:
        path = self.context.result_path(template_id)
        if not path.exists():
            return None
        return StepResult.from_dict(json.loads(path.read_text()))
