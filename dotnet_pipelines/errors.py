from __future__ import annotations

from typing import Iterable, List


class PipelineError(RuntimeError):
    """Base class for every error surfaced by the pipeline tooling."""


class ConfigurationError(PipelineError):
    """Raised when required inputs or secrets are missing or contradictory."""

    def __init__(self, problems: str | Iterable[str]) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems: List[str] = list(problems)
        if len(self.problems) == 1:
            message = self.problems[0]
        else:
            message = "Invalid configuration:\n" + "\n".join(f"  - {problem}" for problem in self.problems)
        super().__init__(message)


class EnvironmentMismatchError(ConfigurationError):
    """Raised when the calling context structurally cannot use the requested mode."""


class CatalogError(PipelineError):
    """Raised when the template catalog cannot be parsed."""


class CoverageError(PipelineError):
    """Raised when a coverage report cannot be read."""


class FormattingError(PipelineError):
    """Raised when formatting differences are detected in check mode."""
