from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError

try:  # pragma: no cover - tomllib is stdlib from 3.11 onwards
    import tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover - fallback for 3.10
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

SETTINGS_FILE = "dotnet-pipelines.toml"
PYPROJECT_TABLE = "dotnet-pipelines"
ENV_PREFIX = "DOTNET_PIPELINES_"


@dataclass(frozen=True)
class Settings:
    """Tool settings shared by the generator, validator and runner."""

    template_repository: str = ""
    template_ref: str = "v1"
    workflows_dir: str = ".github/workflows"
    catalog: Optional[str] = None
    dotnet_version: str = "8.0.x"
    workspace: str = ".dotnet-pipelines"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: str = "settings") -> "Settings":
        return cls().merge(data, source=source)

    def merge(self, data: Mapping[str, Any], *, source: str = "settings") -> "Settings":
        known = {field.name for field in fields(self)}
        updates: Dict[str, Any] = {}
        problems = []
        for key, value in data.items():
            name = key.replace("-", "_")
            if name not in known:
                problems.append(f"Unknown setting '{key}' in {source}")
                continue
            if value is not None and not isinstance(value, str):
                problems.append(f"Setting '{key}' in {source} must be a string")
                continue
            updates[name] = value
        if problems:
            raise ConfigurationError(problems)
        return replace(self, **updates)

    def template_reference(self, workflow_file: str) -> str:
        """The ``uses:`` value callers put in their workflow for a template."""

        repository = self.template_repository or "OWNER/REPO"
        return f"{repository}/{self.workflows_dir.strip('/')}/{workflow_file}@{self.template_ref}"


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc


def load_settings(
    root: str | Path = ".",
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from ``root``.

    Precedence, lowest first: defaults, ``[tool.dotnet-pipelines]`` in
    ``pyproject.toml``, ``dotnet-pipelines.toml``, ``DOTNET_PIPELINES_*``
    environment variables.
    """

    root = Path(root)
    environ = os.environ if environ is None else environ
    settings = Settings()

    pyproject_path = root / "pyproject.toml"
    if pyproject_path.exists():
        table = _read_toml(pyproject_path).get("tool", {}).get(PYPROJECT_TABLE)
        if isinstance(table, dict):
            logger.debug("Loading settings from %s", pyproject_path)
            settings = settings.merge(table, source=str(pyproject_path))

    settings_path = root / SETTINGS_FILE
    if settings_path.exists():
        logger.debug("Loading settings from %s", settings_path)
        settings = settings.merge(_read_toml(settings_path), source=str(settings_path))

    overrides = {
        field.name: environ[ENV_PREFIX + field.name.upper()]
        for field in fields(settings)
        if ENV_PREFIX + field.name.upper() in environ
    }
    if overrides:
        settings = settings.merge(overrides, source="environment")
    return settings
