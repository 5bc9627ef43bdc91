from .bearer import (
    AuthenticationConfigurationError,
    BearerAuthenticationBackend,
    BearerAuthenticator,
    TokenError,
    parse_bearer,
)
from .gate import AllowAll, AuthorizationDecision, Enforce, Filter, authorization_dependency, evaluate, select
from .policy import AuthorizationPolicy, Identity, build_scope_policy

__all__ = [
    "AllowAll",
    "AuthenticationConfigurationError",
    "AuthorizationDecision",
    "AuthorizationPolicy",
    "BearerAuthenticationBackend",
    "BearerAuthenticator",
    "Enforce",
    "Filter",
    "Identity",
    "TokenError",
    "authorization_dependency",
    "build_scope_policy",
    "evaluate",
    "parse_bearer",
    "select",
]
