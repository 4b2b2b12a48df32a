from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

import yaml

from .errors import CatalogError
from .models import TemplateSpec

DEFAULT_CATALOG = Path(__file__).with_name("templates.yaml")


@dataclass
class TemplateCatalog:
    """Lightweight loader for the template catalog file."""

    path: Path
    _cache: Optional[Dict[str, TemplateSpec]] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "TemplateCatalog":
        return cls(path=Path(path))

    @classmethod
    def default(cls) -> "TemplateCatalog":
        return cls(path=DEFAULT_CATALOG)

    def _load(self) -> Dict[str, TemplateSpec]:
        if self._cache is not None:
            return self._cache

        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogError(f"Cannot read template catalog {self.path}: {exc}") from exc
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise CatalogError(f"Template catalog {self.path} is neither JSON nor YAML: {exc}") from exc

        if not isinstance(raw_data, dict) or not isinstance(raw_data.get("templates"), list):
            raise CatalogError("Catalog must contain a top-level 'templates' list")

        templates: Dict[str, TemplateSpec] = {}
        for entry in raw_data["templates"]:
            if not isinstance(entry, dict):
                raise CatalogError("Every catalog entry must be a mapping")
            spec = TemplateSpec.from_dict(entry)
            if spec.id in templates:
                raise CatalogError(f"Template '{spec.id}' is declared more than once")
            templates[spec.id] = spec
        self._cache = templates
        return templates

    def iter_templates(self) -> Iterable[TemplateSpec]:
        return self._load().values()

    def get(self, template_id: str) -> TemplateSpec:
        try:
            return self._load()[template_id]
        except KeyError as exc:
            raise CatalogError(f"Unknown template id: {template_id}") from exc

    def find_by_workflow_file(self, filename: str) -> Optional[TemplateSpec]:
        stem = Path(filename).name
        for spec in self._load().values():
            if stem in (spec.workflow_file, f"{spec.id}.yaml"):
                return spec
        return None
