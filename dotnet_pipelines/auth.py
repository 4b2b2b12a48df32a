"""Publish authentication: credential collection and mode selection.

The publish templates accept two alternative credentials: a feed API key and
an account name registered for OIDC trusted publishing. Trusted publishing
binds the short-lived identity token to the workflow path that requested it,
so a workflow invoked from another repository can never satisfy the feed's
trust policy. Only the API key works there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from .errors import ConfigurationError, EnvironmentMismatchError
from .models import AuthPolicy, TemplateSpec

logger = logging.getLogger(__name__)


class AuthMode(str, Enum):
    API_KEY = "api-key"
    OIDC = "oidc"


@dataclass(frozen=True)
class AuthSelection:
    mode: AuthMode
    credential: str

    def __repr__(self) -> str:
        return f"AuthSelection(mode={self.mode.value!r}, credential='***')"


def missing_both_message(api_key_name: str, oidc_name: str) -> str:
    return (
        f"No publish credentials supplied: provide either the {api_key_name} secret "
        f"or the {oidc_name} secret for trusted publishing"
    )


def external_caller_message(api_key_name: str, oidc_name: str) -> str:
    return (
        f"Trusted publishing cannot be used when the workflow is called from another repository; "
        f"{oidc_name} is ignored and the {api_key_name} secret is required"
    )


def oidc_requested_message(oidc_name: str) -> str:
    return f"Trusted publishing was requested but the {oidc_name} secret is not set"


def _present(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_auth_mode(
    api_key: Optional[str],
    oidc_user: Optional[str],
    *,
    is_external_caller: bool = False,
    prefer_oidc: bool = False,
    api_key_name: str = "NUGET_API_KEY",
    oidc_name: str = "NUGET_USER",
) -> AuthSelection:
    """Select the publish authentication mode for the supplied credentials.

    Empty strings count as absent. An API key always wins unless the caller
    explicitly prefers OIDC from a context where OIDC can work.
    """

    api_key = _present(api_key)
    oidc_user = _present(oidc_user)

    if is_external_caller:
        if api_key is None:
            if oidc_user is None and not prefer_oidc:
                raise ConfigurationError(missing_both_message(api_key_name, oidc_name))
            raise EnvironmentMismatchError(external_caller_message(api_key_name, oidc_name))
        if prefer_oidc or oidc_user is not None:
            logger.warning("Called from another repository; publishing with %s instead of OIDC", api_key_name)
        return AuthSelection(AuthMode.API_KEY, api_key)

    if api_key is None and oidc_user is None:
        raise ConfigurationError(missing_both_message(api_key_name, oidc_name))
    if prefer_oidc:
        if oidc_user is None:
            raise ConfigurationError(oidc_requested_message(oidc_name))
        return AuthSelection(AuthMode.OIDC, oidc_user)
    if api_key is not None:
        return AuthSelection(AuthMode.API_KEY, api_key)
    return AuthSelection(AuthMode.OIDC, oidc_user)


def is_external_caller(caller_repository: Optional[str], template_repository: Optional[str]) -> bool:
    """True when the calling repository differs from the one hosting the templates.

    An unknown caller or template repository is not treated as external.
    """

    caller = (caller_repository or "").strip().lower()
    host = (template_repository or "").strip().lower()
    if not caller or not host:
        return False
    return caller != host


@dataclass
class CredentialSet:
    """Secrets supplied to one invocation, with deprecated aliases folded in."""

    values: Dict[str, str]

    @classmethod
    def from_mapping(cls, secrets: Mapping[str, Optional[str]], template: TemplateSpec) -> "CredentialSet":
        values: Dict[str, str] = {}
        for name, value in secrets.items():
            value = _present(value)
            if value is not None:
                values[name] = value

        for spec in template.secrets:
            if not spec.alias_of or spec.name not in values:
                continue
            alias_value = values.pop(spec.name)
            if spec.alias_of in values:
                logger.warning(
                    "Secret %s is deprecated and ignored because %s is also set", spec.name, spec.alias_of
                )
                continue
            logger.warning("Secret %s is deprecated, use %s instead", spec.name, spec.alias_of)
            values[spec.alias_of] = alias_value
        return cls(values=values)

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def has(self, name: str) -> bool:
        return name in self.values

    def names(self) -> list:
        return sorted(self.values)

    def resolve(self, policy: AuthPolicy, *, is_external_caller: bool = False, prefer_oidc: bool = False) -> AuthSelection:
        return resolve_auth_mode(
            self.get(policy.api_key_secret),
            self.get(policy.oidc_secret),
            is_external_caller=is_external_caller,
            prefer_oidc=prefer_oidc,
            api_key_name=policy.api_key_secret,
            oidc_name=policy.oidc_secret,
        )

    def __repr__(self) -> str:
        return f"CredentialSet(names={self.names()!r})"
