import inspect
import socket
import time
from pathlib import Path

import jwt
import pytest
import yaml
from fastapi import APIRouter

from webapi_service.bootstrap import PipelineAssembler
from webapi_service.core.config import HostSettings
from webapi_service.core.observability.metrics import reset_metrics
from webapi_service.core.observability.telemetry import shutdown_telemetry

API_NAME = "orders.api"
AUTHORITY = "https://identity.example.com"
API_SECRET = "orders-api-secret-0123456789abcdef-0123456789"

VIOLATIONS = []


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Startup and token validation must never reach the network in tests."""
    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection

    def _caller() -> str:
        frame = inspect.stack()[2]
        return f"{frame.filename}:{frame.lineno}"

    def guard_getaddrinfo(host, *args, **kwargs):
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host), "caller": _caller()})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        VIOLATIONS.append({"fn": "create_connection", "address": str(address), "caller": _caller()})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    assert not VIOLATIONS, VIOLATIONS


@pytest.fixture(autouse=True)
def clean_process_state():
    reset_metrics()
    yield
    shutdown_telemetry()


class BrokenSink:
    """Telemetry sink whose backend is unreachable."""

    def __init__(self):
        self.attempts = 0

    def send(self, envelopes):
        self.attempts += 1
        raise ConnectionError("telemetry backend unreachable")


class ListSink:
    """Telemetry sink that keeps every envelope it receives."""

    def __init__(self):
        self.envelopes = []

    def send(self, envelopes):
        self.envelopes.extend(envelopes)

    @property
    def events(self):
        return [e["event"] for e in self.envelopes]

    def exceptions(self, fault_kind=None):
        return [
            e
            for e in self.events
            if e["type"] == "exception" and (fault_kind is None or e["fault_kind"] == fault_kind)
        ]


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def broken_sink():
    return BrokenSink()


@pytest.fixture
def write_config(tmp_path):
    """Write appsettings.yaml (and optionally an environment file) into tmp_path."""

    def _write(service=None, telemetry=None, environment=None, env_name="Test") -> Path:
        base_service = {
            "RequiredScopes": ["orders.read"],
            "ApiName": API_NAME,
            "ApiSecret": API_SECRET,
            "Authority": AUTHORITY,
            "IsHttps": True,
        }
        if service is not None:
            base_service.update(service)
            base_service = {k: v for k, v in base_service.items() if v is not None}
        data = {
            "Telemetry": telemetry if telemetry is not None else {"InstrumentationKey": "ikey-1", "InternalKey": "ikey-internal"},
            "ServiceConfigurationOptions": base_service,
        }
        (tmp_path / "appsettings.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")
        if environment is not None:
            (tmp_path / f"appsettings.{env_name}.yaml").write_text(yaml.safe_dump(environment), encoding="utf-8")
        return tmp_path

    return _write


@pytest.fixture
def token_factory():
    def _make(scopes=(), *, secret=API_SECRET, audience=API_NAME, issuer=AUTHORITY, expires_in=300, **claims) -> str:
        now = int(time.time())
        payload = {
            "sub": "client-42",
            "iss": issuer,
            "aud": audience,
            "iat": now,
            "exp": now + expires_in,
            "scope": list(scopes),
        }
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def orders_router():
    router = APIRouter(prefix="/api/v1/orders")

    @router.get("")
    def list_orders():
        return {"orders": []}

    @router.get("/boom")
    def explode():
        raise RuntimeError("order store unavailable")

    return router


@pytest.fixture
def make_assembler(write_config, sink, orders_router):
    def _make(
        scopes=("orders.read",), *, in_fabric=True, service=None, documentation_path="", environment=None, sinks=None
    ):
        svc = {"RequiredScopes": list(scopes)}
        if service:
            svc.update(service)
        root = write_config(service=svc, environment=environment)
        host = HostSettings(
            content_root=str(root),
            app_env="Test",
            is_in_fabric=in_fabric,
            documentation_path=str(documentation_path),
        )
        return PipelineAssembler(host, sinks=sinks or [sink], routers=[orders_router], environ={})

    return _make
