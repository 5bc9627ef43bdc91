"""Bearer token authentication.

Header format:
  Authorization: Bearer <JWT>

Tokens must be issued by the configured authority for the configured API
(``aud`` == ApiName). Symmetrically signed tokens (HS*) are verified with the
ApiSecret; asymmetric ones (RS*/ES*/PS*) with the authority's published JWKS.
Requests whose token is absent or fails validation stay anonymous; whether an
anonymous request may proceed is decided by the authorization gate.
"""

from __future__ import annotations

import re
from typing import Any, Optional

import jwt
from starlette.authentication import AuthCredentials, AuthenticationBackend, BaseUser
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection

from webapi_service.auth.policy import Identity
from webapi_service.core.config import ServiceConfigurationOptions
from webapi_service.core.observability.logging import logger
from webapi_service.core.observability.metrics import increment_token_rejections

_BEARER_RE = re.compile(r"^\s*Bearer\s+(?P<token>\S+)\s*$", re.IGNORECASE)

HMAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
)
JWKS_PATH = "/.well-known/openid-configuration/jwks"


class TokenError(Exception):
    kind: str

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


class AuthenticationConfigurationError(Exception):
    """Authentication options cannot be honoured (fatal at startup)."""


def parse_bearer(header_value: str | None) -> str:
    if not header_value or not isinstance(header_value, str):
        raise TokenError("missing", "Authorization header missing")

    m = _BEARER_RE.match(header_value)
    if not m:
        raise TokenError("malformed", "Expected 'Bearer <token>'")
    return m.group("token")


def scopes_from_claims(claims: dict[str, Any]) -> frozenset[str]:
    """Collect granted scopes from ``scope``/``scp`` (space separated or list)."""
    granted: set[str] = set()
    for claim in ("scope", "scp"):
        value = claims.get(claim)
        if isinstance(value, str):
            granted.update(value.split())
        elif isinstance(value, (list, tuple)):
            granted.update(str(v) for v in value)
    return frozenset(granted)


class BearerAuthenticator:
    """Validates JWT bearer tokens against one authority and API name."""

    def __init__(
        self,
        api_name: str,
        authority: str,
        api_secret: str = "",
        require_https_metadata: bool = True,
        jwks_client: Optional[jwt.PyJWKClient] = None,
        leeway: float = 0,
    ):
        if not api_name:
            raise AuthenticationConfigurationError("ApiName must not be empty")
        if not authority:
            raise AuthenticationConfigurationError("Authority must not be empty")
        if require_https_metadata and not authority.lower().startswith("https://"):
            raise AuthenticationConfigurationError(
                "The Authority must use HTTPS unless IsHttps is disabled"
            )
        self.api_name = api_name
        self.issuer = authority.rstrip("/")
        # Issuers are compared as configured, with or without a trailing slash
        self.accepted_issuers = tuple(dict.fromkeys((authority, self.issuer)))
        self.require_https_metadata = require_https_metadata
        self.leeway = leeway
        self._api_secret = api_secret
        self._jwks_client = jwks_client

    @classmethod
    def from_options(cls, options: ServiceConfigurationOptions) -> "BearerAuthenticator":
        return cls(
            api_name=options.api_name,
            authority=options.authority,
            api_secret=options.api_secret.get_secret_value(),
            require_https_metadata=options.is_https,
        )

    @property
    def jwks_uri(self) -> str:
        return self.issuer + JWKS_PATH

    def _jwks(self) -> jwt.PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(self.jwks_uri)
        return self._jwks_client

    def _signing_key(self, token: str, algorithm: str) -> Any:
        if algorithm in HMAC_ALGORITHMS:
            if not self._api_secret:
                raise TokenError("unsupported", "Symmetric tokens require an ApiSecret")
            return self._api_secret
        if algorithm in ASYMMETRIC_ALGORITHMS:
            try:
                return self._jwks().get_signing_key_from_jwt(token).key
            except jwt.PyJWTError as exc:
                raise TokenError("unknown_key", str(exc)) from exc
        raise TokenError("unsupported", f"Unsupported signing algorithm '{algorithm}'")

    def authenticate(self, token: str) -> Identity:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise TokenError("malformed", str(exc)) from exc

        algorithm = str(header.get("alg", ""))
        key = self._signing_key(token, algorithm)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self.api_name,
                issuer=self.accepted_issuers,
                leeway=self.leeway,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("expired", str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError("invalid", str(exc)) from exc

        subject = str(claims.get("sub") or claims.get("client_id") or "")
        return Identity(subject=subject, scopes=scopes_from_claims(claims), claims=claims)


class AuthenticatedUser(BaseUser):
    def __init__(self, caller: Identity):
        self.caller = caller

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return self.caller.subject

    @property
    def identity(self) -> str:
        return self.caller.subject


class BearerAuthenticationBackend(AuthenticationBackend):
    """Starlette backend; invalid tokens leave the connection anonymous."""

    def __init__(self, authenticator: BearerAuthenticator):
        self.authenticator = authenticator

    async def authenticate(self, conn: HTTPConnection):
        header = conn.headers.get("Authorization")
        if not header:
            return None
        try:
            token = parse_bearer(header)
            identity = await run_in_threadpool(self.authenticator.authenticate, token)
        except TokenError as exc:
            increment_token_rejections(exc.kind)
            logger.info("bearer_token_rejected", extra={"reason": exc.kind, "path": conn.url.path})
            return None
        return AuthCredentials(sorted(identity.scopes)), AuthenticatedUser(identity)
