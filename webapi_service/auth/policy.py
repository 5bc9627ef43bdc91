"""Scope-based authorization policy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class Identity:
    """Caller identity established from a validated bearer token."""

    subject: str
    scopes: frozenset[str]
    claims: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class AuthorizationPolicy:
    """Every required scope must be granted to an authenticated caller.

    Scopes are kept verbatim and compared literally; what counts as a valid
    scope is decided by the token issuer.
    """

    required_scopes: Tuple[str, ...] = ()
    require_authenticated_user: bool = True

    def missing_scopes(self, granted: Iterable[str]) -> Tuple[str, ...]:
        granted_set = set(granted)
        return tuple(dict.fromkeys(s for s in self.required_scopes if s not in granted_set))

    def is_satisfied_by(self, identity: Optional[Identity]) -> bool:
        if identity is None:
            return not self.require_authenticated_user and not self.required_scopes
        return not self.missing_scopes(identity.scopes)


def build_scope_policy(required_scopes: Iterable[str]) -> AuthorizationPolicy:
    return AuthorizationPolicy(required_scopes=tuple(required_scopes))
