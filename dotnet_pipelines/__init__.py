"""Reusable CI pipeline templates for .NET projects: generation, validation and local runs."""

from .auth import AuthMode, AuthSelection, CredentialSet, resolve_auth_mode
from .catalog import TemplateCatalog
from .runner import RunContext, TemplateRunner

__all__ = [
    "AuthMode",
    "AuthSelection",
    "CredentialSet",
    "resolve_auth_mode",
    "TemplateCatalog",
    "RunContext",
    "TemplateRunner",
]
