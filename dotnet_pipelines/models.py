from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import CatalogError

INPUT_TYPES = ("string", "boolean", "number")
TEMPLATE_KINDS = ("format", "coverage", "publish")
OUTPUT_KINDS = ("value", "artifact")


def _matches_type(value: Any, type_name: str) -> bool:
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, str)


@dataclass
class InputSpec:
    """A named, typed input accepted by a pipeline template."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    options: Tuple[str, ...] = ()
    path: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InputSpec":
        spec = cls(
            name=data["name"],
            type=data.get("type", "string"),
            description=data.get("description", ""),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            options=tuple(data.get("options", ())),
            path=bool(data.get("path", False)),
        )
        if spec.type not in INPUT_TYPES:
            raise CatalogError(f"Input '{spec.name}' has unknown type '{spec.type}'")
        if spec.default is not None and not _matches_type(spec.default, spec.type):
            raise CatalogError(f"Default for input '{spec.name}' is not a {spec.type}")
        if spec.options and spec.default is not None and spec.default not in spec.options:
            raise CatalogError(f"Default for input '{spec.name}' is not one of {list(spec.options)}")
        return spec

    def accepts(self, value: Any) -> bool:
        return _matches_type(value, self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "type": self.type, "required": self.required}
        if self.description:
            data["description"] = self.description
        if self.default is not None:
            data["default"] = self.default
        if self.options:
            data["options"] = list(self.options)
        if self.path:
            data["path"] = True
        return data


@dataclass
class SecretSpec:
    """A named secret; deprecated secrets may alias a current one."""

    name: str
    description: str = ""
    required: bool = False
    deprecated: bool = False
    alias_of: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecretSpec":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            required=bool(data.get("required", False)),
            deprecated=bool(data.get("deprecated", False)),
            alias_of=data.get("alias_of"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "required": self.required}
        if self.description:
            data["description"] = self.description
        if self.deprecated:
            data["deprecated"] = True
        if self.alias_of:
            data["alias_of"] = self.alias_of
        return data


@dataclass
class OutputSpec:
    name: str
    description: str = ""
    kind: str = "value"
    path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutputSpec":
        spec = cls(
            name=data["name"],
            description=data.get("description", ""),
            kind=data.get("kind", "value"),
            path=data.get("path"),
        )
        if spec.kind not in OUTPUT_KINDS:
            raise CatalogError(f"Output '{spec.name}' has unknown kind '{spec.kind}'")
        return spec

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "kind": self.kind}
        if self.description:
            data["description"] = self.description
        if self.path:
            data["path"] = self.path
        return data


@dataclass
class AuthPolicy:
    """Which secrets carry the alternative publish credentials."""

    api_key_secret: str
    oidc_secret: str
    prefer_oidc_input: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthPolicy":
        return cls(
            api_key_secret=data["api_key_secret"],
            oidc_secret=data["oidc_secret"],
            prefer_oidc_input=data.get("prefer_oidc_input"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"api_key_secret": self.api_key_secret, "oidc_secret": self.oidc_secret}
        if self.prefer_oidc_input:
            data["prefer_oidc_input"] = self.prefer_oidc_input
        return data


@dataclass
class TemplateSpec:
    """Public surface of one reusable pipeline template."""

    id: str
    kind: str
    description: str = ""
    inputs: List[InputSpec] = field(default_factory=list)
    secrets: List[SecretSpec] = field(default_factory=list)
    outputs: List[OutputSpec] = field(default_factory=list)
    auth: Optional[AuthPolicy] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateSpec":
        try:
            spec = cls(
                id=data["id"],
                kind=data["kind"],
                description=data.get("description", ""),
                inputs=[InputSpec.from_dict(entry) for entry in data.get("inputs", [])],
                secrets=[SecretSpec.from_dict(entry) for entry in data.get("secrets", [])],
                outputs=[OutputSpec.from_dict(entry) for entry in data.get("outputs", [])],
                auth=AuthPolicy.from_dict(data["auth"]) if data.get("auth") else None,
            )
        except KeyError as exc:
            raise CatalogError(f"Template entry is missing required field {exc}") from exc
        spec._check()
        return spec

    def _check(self) -> None:
        if self.kind not in TEMPLATE_KINDS:
            raise CatalogError(f"Template '{self.id}' has unknown kind '{self.kind}'")
        for label, names in (
            ("input", [entry.name for entry in self.inputs]),
            ("secret", [entry.name for entry in self.secrets]),
            ("output", [entry.name for entry in self.outputs]),
        ):
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise CatalogError(f"Template '{self.id}' declares duplicate {label}s: {duplicates}")
        secret_names = {secret.name for secret in self.secrets}
        for secret in self.secrets:
            if secret.alias_of and secret.alias_of not in secret_names:
                raise CatalogError(
                    f"Secret '{secret.name}' in template '{self.id}' aliases unknown secret '{secret.alias_of}'"
                )
        if self.auth is not None:
            for name in (self.auth.api_key_secret, self.auth.oidc_secret):
                if name not in secret_names:
                    raise CatalogError(f"Auth policy of template '{self.id}' names unknown secret '{name}'")
            if self.auth.prefer_oidc_input and self.input(self.auth.prefer_oidc_input) is None:
                raise CatalogError(
                    f"Auth policy of template '{self.id}' names unknown input '{self.auth.prefer_oidc_input}'"
                )
        if self.kind == "publish" and self.auth is None:
            raise CatalogError(f"Publish template '{self.id}' must declare an auth policy")

    def input(self, name: str) -> Optional[InputSpec]:
        for spec in self.inputs:
            if spec.name == name:
                return spec
        return None

    def secret(self, name: str) -> Optional[SecretSpec]:
        for spec in self.secrets:
            if spec.name == name:
                return spec
        return None

    def aliases_for(self, name: str) -> List[str]:
        return [secret.name for secret in self.secrets if secret.alias_of == name]

    @property
    def workflow_file(self) -> str:
        return f"{self.id}.yml"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "description": self.description,
            "inputs": [spec.to_dict() for spec in self.inputs],
            "secrets": [spec.to_dict() for spec in self.secrets],
            "outputs": [spec.to_dict() for spec in self.outputs],
        }
        if self.auth is not None:
            data["auth"] = self.auth.to_dict()
        return data


@dataclass
class StepResult:
    """Summary emitted by a locally executed template."""

    name: str
    status: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"template": self.name, "status": self.status, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            name=data.get("template", ""),
            status=data.get("status", "unknown"),
            details=data.get("details", {}),
        )
