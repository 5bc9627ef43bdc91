"""Environment-selected authorization filter.

``select`` is evaluated once per process start. The returned filter is one of
two variants: ``Enforce(policy)`` inside the managed fabric, ``AllowAll``
otherwise. Per-request evaluation only reads the immutable filter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from fastapi import HTTPException, Request, status

from webapi_service.auth.policy import AuthorizationPolicy, Identity
from webapi_service.core.observability.metrics import increment_authorization_rejections


@dataclass(frozen=True)
class Enforce:
    policy: AuthorizationPolicy


@dataclass(frozen=True)
class AllowAll:
    pass


Filter = Union[Enforce, AllowAll]


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str = "ok"
    missing_scopes: Tuple[str, ...] = ()


def select(is_enforced: bool, policy: AuthorizationPolicy) -> Filter:
    if is_enforced:
        return Enforce(policy)
    return AllowAll()


def describe(filter_: Filter) -> str:
    return "enforce" if isinstance(filter_, Enforce) else "allow_all"


def evaluate(filter_: Filter, identity: Optional[Identity]) -> AuthorizationDecision:
    if isinstance(filter_, AllowAll):
        return AuthorizationDecision(allowed=True, reason="bypassed")

    policy = filter_.policy
    if identity is None:
        if policy.is_satisfied_by(None):
            return AuthorizationDecision(allowed=True)
        return AuthorizationDecision(allowed=False, reason="unauthenticated")

    missing = policy.missing_scopes(identity.scopes)
    if missing:
        return AuthorizationDecision(allowed=False, reason="insufficient_scope", missing_scopes=missing)
    return AuthorizationDecision(allowed=True)


def identity_from_request(request: Request) -> Optional[Identity]:
    user = request.scope.get("user")
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return getattr(user, "caller", None)


def authorization_dependency(filter_: Filter):
    """FastAPI dependency enforcing ``filter_`` on every route it guards."""

    async def _authorize(request: Request) -> None:
        decision = evaluate(filter_, identity_from_request(request))
        if decision.allowed:
            return
        increment_authorization_rejections(decision.reason)
        if decision.reason == "unauthenticated":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "unauthorized", "detail": "Bearer token missing or invalid"},
                headers={"WWW-Authenticate": "Bearer"},
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "forbidden",
                "detail": "Token lacks required scopes",
                "missing_scopes": list(decision.missing_scopes),
            },
            headers={"WWW-Authenticate": 'Bearer error="insufficient_scope"'},
        )

    return _authorize
