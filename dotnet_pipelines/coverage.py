"""Cobertura report aggregation for the coverage template.

``dotnet test --collect:"XPlat Code Coverage"`` writes one
``coverage.cobertura.xml`` per test project under a GUID-named directory.
The reports are merged line by line into a single line-coverage figure.
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CoverageError

REPORT_NAME = "coverage.cobertura.xml"


@dataclass
class PackageCoverage:
    name: str
    lines_covered: int
    lines_valid: int

    @property
    def percentage(self) -> float:
        if self.lines_valid == 0:
            return 0.0
        return round(self.lines_covered * 100.0 / self.lines_valid, 2)


@dataclass
class CoverageSummary:
    lines_covered: int = 0
    lines_valid: int = 0
    reports: List[str] = field(default_factory=list)
    packages: List[PackageCoverage] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        if self.lines_valid == 0:
            return 0.0
        return round(self.lines_covered * 100.0 / self.lines_valid, 2)

    def to_dict(self) -> dict:
        return {
            "line_pct": self.percentage,
            "lines_covered": self.lines_covered,
            "lines_valid": self.lines_valid,
            "reports": list(self.reports),
        }


def find_cobertura_reports(directory: str | Path) -> List[Path]:
    directory = Path(directory)
    if not directory.exists():
        return []
    return sorted(directory.rglob(REPORT_NAME))


# (package, source file, line number)
LineKey = Tuple[str, str, int]


@dataclass
class CoberturaReport:
    """Line hits of one report; ``rate_only`` reports carry counters instead."""

    path: str
    lines: Dict[LineKey, bool] = field(default_factory=dict)
    rate_only: Optional[PackageCoverage] = None
    rate_only_packages: List[PackageCoverage] = field(default_factory=list)


def _counters(element: ET.Element) -> Tuple[int, int]:
    covered = element.get("lines-covered")
    valid = element.get("lines-valid")
    if covered is not None and valid is not None:
        return int(covered), int(valid)
    # Only a rate is known; scale it to a fixed denominator so reports stay comparable.
    rate = float(element.get("line-rate", "0"))
    return round(rate * 10000), 10000


def read_report(path: str | Path) -> CoberturaReport:
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as exc:
        raise CoverageError(f"Cannot read coverage report {path}: {exc}") from exc
    if root.tag != "coverage":
        raise CoverageError(f"{path} is not a Cobertura report")

    report = CoberturaReport(path=str(path))
    try:
        for package in root.iter("package"):
            package_name = package.get("name", "")
            for class_element in package.iter("class"):
                filename = class_element.get("filename", class_element.get("name", ""))
                # Method-level <line> elements repeat the class-level ones.
                for line in class_element.findall("./lines/line"):
                    key = (package_name, filename, int(line.get("number", "0")))
                    hit = int(line.get("hits", "0")) > 0
                    report.lines[key] = report.lines.get(key, False) or hit
        if not report.lines:
            covered, valid = _counters(root)
            report.rate_only = PackageCoverage("", covered, valid)
            for package in root.iter("package"):
                package_covered, package_valid = _counters(package)
                report.rate_only_packages.append(
                    PackageCoverage(package.get("name", ""), package_covered, package_valid)
                )
    except ValueError as exc:
        raise CoverageError(f"Malformed counters in coverage report {path}: {exc}") from exc
    return report


def aggregate_reports(paths: Iterable[str | Path]) -> CoverageSummary:
    """Merge reports line by line, the way ReportGenerator does in the workflow.

    A line counts once however many reports list it, and is covered when any
    report hits it. Reports without line detail add their counters as is.
    """

    summary = CoverageSummary()
    merged: Dict[LineKey, bool] = {}
    packages: Dict[str, PackageCoverage] = {}
    for path in paths:
        report = read_report(path)
        summary.reports.append(report.path)
        for key, hit in report.lines.items():
            merged[key] = merged.get(key, False) or hit
        if report.rate_only is not None:
            summary.lines_covered += report.rate_only.lines_covered
            summary.lines_valid += report.rate_only.lines_valid
            for package in report.rate_only_packages:
                current = packages.setdefault(package.name, PackageCoverage(package.name, 0, 0))
                current.lines_covered += package.lines_covered
                current.lines_valid += package.lines_valid

    for (package_name, _, _), hit in merged.items():
        current = packages.setdefault(package_name, PackageCoverage(package_name, 0, 0))
        current.lines_valid += 1
        summary.lines_valid += 1
        if hit:
            current.lines_covered += 1
            summary.lines_covered += 1
    summary.packages = sorted(packages.values(), key=lambda package: package.name)
    return summary


def render_markdown_report(summary: CoverageSummary, *, title: str = "Code coverage") -> str:
    lines = [
        f"# {title}",
        "",
        f"**Line coverage: {summary.percentage:.2f}%** "
        f"({summary.lines_covered} of {summary.lines_valid} lines)",
        "",
    ]
    if summary.packages:
        lines += ["| Assembly | Covered | Coverable | Line coverage |", "| --- | ---: | ---: | ---: |"]
        for package in summary.packages:
            lines.append(
                f"| {package.name} | {package.lines_covered} | {package.lines_valid} | {package.percentage:.2f}% |"
            )
        lines.append("")
    if not summary.reports:
        lines += ["_No coverage reports were produced._", ""]
    return "\n".join(lines)


def pull_request_number(event_path: str | Path | None) -> Optional[int]:
    """Read the pull request number from a CI event payload, if there is one."""

    if not event_path:
        return None
    path = Path(event_path)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CoverageError(f"Cannot parse event payload {path}: {exc}") from exc
    pull_request = payload.get("pull_request") or {}
    number = pull_request.get("number") or payload.get("number")
    return int(number) if isinstance(number, int) else None


def write_pr_number(path: str | Path, number: int) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{number}\n")
    return path
