from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from dotnet_pipelines import runner as runner_module
from dotnet_pipelines.catalog import TemplateCatalog
from dotnet_pipelines.errors import ConfigurationError, EnvironmentMismatchError, FormattingError
from dotnet_pipelines.runner import RunContext, TemplateRunner
from dotnet_pipelines.utils import CommandError


class FakeCommands:
    """Records commands and answers them from a handler."""

    def __init__(self, handler: Optional[Callable[[List[str]], subprocess.CompletedProcess]] = None) -> None:
        self.calls: List[List[str]] = []
        self.handler = handler

    def __call__(self, command, *, cwd=None, env=None, check=True, redact=()):
        command = list(command)
        self.calls.append(command)
        result = self.handler(command) if self.handler else None
        if result is None:
            result = subprocess.CompletedProcess(command, 0, "", "")
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result


@pytest.fixture
def checkout(tmp_path: Path) -> Path:
    path = tmp_path / "checkout"
    (path / "src").mkdir(parents=True)
    return path


def _runner(tmp_path: Path, checkout: Path, **kwargs) -> TemplateRunner:
    context = RunContext(checkout=checkout, workspace=tmp_path / "workspace", **kwargs)
    return TemplateRunner(context, TemplateCatalog.default())


def test_format_check_passes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands()
    monkeypatch.setattr(runner_module, "run_command", fake)
    result = _runner(tmp_path, checkout).run("dotnet-format", {"solution-path": "src"}, {})
    assert result.status == "completed"
    assert fake.calls == [["dotnet", "format", str(checkout.resolve() / "src"), "--verify-no-changes"]]


def test_format_check_detects_differences(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands(lambda command: subprocess.CompletedProcess(command, 2, "Whitespace in Program.cs", ""))
    monkeypatch.setattr(runner_module, "run_command", fake)
    runner = _runner(tmp_path, checkout)
    with pytest.raises(FormattingError, match="Program.cs"):
        runner.run("dotnet-format", {}, {})
    assert runner.last_result("dotnet-format").status == "failed"


def test_format_check_tool_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands(lambda command: subprocess.CompletedProcess(command, 1, "", "MSBUILD error"))
    monkeypatch.setattr(runner_module, "run_command", fake)
    with pytest.raises(CommandError) as excinfo:
        _runner(tmp_path, checkout).run("dotnet-format", {}, {})
    assert excinfo.value.returncode == 1


def test_format_fix_commits_and_pushes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    def handler(command):
        if command[:2] == ["git", "status"]:
            return subprocess.CompletedProcess(command, 0, " M src/Program.cs\n", "")
        return None

    fake = FakeCommands(handler)
    monkeypatch.setattr(runner_module, "run_command", fake)
    result = _runner(tmp_path, checkout).run(
        "dotnet-format", {"mode": "fix", "commit-message": "style: format"}, {}
    )
    assert result.details["changed_files"] == ["src/Program.cs"]
    assert result.details["committed"] is True
    commit = next(call for call in fake.calls if "commit" in call)
    assert "user.name=github-actions[bot]" in commit
    assert commit[-2:] == ["-m", "style: format"]
    assert fake.calls[-1] == ["git", "push"]


def test_format_fix_without_changes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands()
    monkeypatch.setattr(runner_module, "run_command", fake)
    result = _runner(tmp_path, checkout, push=False).run("dotnet-format", {"mode": "fix"}, {})
    assert result.details["committed"] is False
    assert not any("commit" in call for call in fake.calls)


def test_coverage_writes_report_and_pr_number(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    def handler(command):
        if command[:2] == ["dotnet", "test"]:
            raw = Path(command[command.index("--results-directory") + 1])
            report = raw / "4c1d" / "coverage.cobertura.xml"
            report.parent.mkdir(parents=True)
            report.write_text('<coverage lines-covered="45" lines-valid="60" line-rate="0.75" />')
        return None

    event = tmp_path / "event.json"
    event.write_text(json.dumps({"pull_request": {"number": 12}}))
    monkeypatch.setattr(runner_module, "run_command", FakeCommands(handler))
    runner = _runner(tmp_path, checkout, event_path=str(event))
    result = runner.run("dotnet-coverage", {"configuration": "Debug"}, {})

    assert result.details["coverage_percentage"] == 75.0
    assert (checkout / "coverage-report.md").read_text().startswith("# Code coverage")
    assert (checkout / "pr-number.txt").read_text() == "12\n"
    assert json.loads((checkout / "coverage" / "coverage-summary.json").read_text())["line_pct"] == 75.0
    assert runner.last_result("dotnet-coverage").details["coverage_percentage"] == 75.0


def test_coverage_ignores_reports_from_earlier_runs(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path
) -> None:
    runs = iter([("g1", 0), ("g2", 10)])

    def handler(command):
        if command[:2] == ["dotnet", "test"]:
            guid, hit = next(runs)
            raw = Path(command[command.index("--results-directory") + 1])
            report = raw / guid / "coverage.cobertura.xml"
            report.parent.mkdir(parents=True)
            lines = "".join(
                f'<line number="{number}" hits="{1 if number <= hit else 0}" />' for number in range(1, 11)
            )
            report.write_text(
                '<coverage><packages><package name="Core"><classes>'
                f'<class name="Core.Thing" filename="Thing.cs"><lines>{lines}</lines></class>'
                "</classes></package></packages></coverage>"
            )
        return None

    monkeypatch.setattr(runner_module, "run_command", FakeCommands(handler))
    runner = _runner(tmp_path, checkout)
    assert runner.run("dotnet-coverage", {}, {}).details["coverage_percentage"] == 0.0

    result = runner.run("dotnet-coverage", {}, {})
    assert result.details["coverage_percentage"] == 100.0
    reports = result.details["coverage"]["reports"]
    assert len(reports) == 1 and Path(reports[0]).parent.name == "g2"


def test_coverage_test_failure_propagates(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands(lambda command: subprocess.CompletedProcess(command, 1, "Failed: 2", ""))
    monkeypatch.setattr(runner_module, "run_command", fake)
    with pytest.raises(CommandError):
        _runner(tmp_path, checkout).run("dotnet-coverage", {}, {})


def test_publish_packs_and_pushes_with_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    def handler(command):
        if command[:2] == ["dotnet", "pack"]:
            output = Path(command[command.index("--output") + 1])
            (output / "Lib.1.0.0.nupkg").write_bytes(b"package")
        return None

    fake = FakeCommands(handler)
    monkeypatch.setattr(runner_module, "run_command", fake)
    result = _runner(tmp_path, checkout).run(
        "dotnet-publish", {"project-path": "src/Lib.csproj"}, {"NUGET_KEY": "legacy-key"}
    )
    assert result.details["auth_mode"] == "api-key"
    assert len(result.details["packages"]) == 1
    push = fake.calls[-1]
    assert push[:3] == ["dotnet", "nuget", "push"]
    assert push[push.index("--api-key") + 1] == "legacy-key"
    assert "legacy-key" not in json.dumps(result.to_dict())


def test_publish_rejects_missing_credentials_before_any_command(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path
) -> None:
    fake = FakeCommands()
    monkeypatch.setattr(runner_module, "run_command", fake)
    with pytest.raises(ConfigurationError, match="NUGET_USER"):
        _runner(tmp_path, checkout).run("dotnet-publish", {"project-path": "src/Lib.csproj"}, {})
    assert fake.calls == []


def test_publish_oidc_cannot_run_locally(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands()
    monkeypatch.setattr(runner_module, "run_command", fake)
    with pytest.raises(EnvironmentMismatchError):
        _runner(tmp_path, checkout).run("dotnet-publish", {"project-path": "src/Lib.csproj"}, {"NUGET_USER": "me"})
    assert fake.calls == []


def test_paths_outside_checkout_are_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, checkout: Path) -> None:
    fake = FakeCommands()
    monkeypatch.setattr(runner_module, "run_command", fake)
    with pytest.raises(ConfigurationError, match="within the checkout"):
        _runner(tmp_path, checkout).run("dotnet-format", {"solution-path": "../.."}, {})
    assert fake.calls == []
