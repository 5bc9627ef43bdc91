"""Startup state machine that assembles the request pipeline.

    CREATED -> CONFIGURING_SERVICES -> CONFIGURING_PIPELINE -> RUNNING
                      |                        |
                      +------> FAILED_STARTUP <+

Bootstrap runs synchronously, once, before any request is accepted. A fault
while configuring is published to telemetry as a fatal exception event and
re-raised so the host aborts; a missing documentation artifact is the only
degradable fault.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware

from webapi_service.auth.bearer import BearerAuthenticationBackend, BearerAuthenticator
from webapi_service.auth.gate import Filter, authorization_dependency, describe, select
from webapi_service.auth.policy import AuthorizationPolicy, build_scope_policy
from webapi_service.core.config import (
    ConfigurationError,
    ConfigurationSource,
    HostSettings,
    ServiceConfigurationOptions,
    TelemetrySettings,
    settings,
)
from webapi_service.core.environment import RuntimeEnvironmentContext
from webapi_service.core.observability import init_observability
from webapi_service.core.observability.health import get_version
from webapi_service.core.observability.health import router as probe_router
from webapi_service.core.observability.logging import logger
from webapi_service.core.observability.metrics import increment_startup_faults, record_startup_duration
from webapi_service.core.observability.middleware import ExceptionEventMiddleware
from webapi_service.core.observability.telemetry import (
    FaultKind,
    TelemetryPublisher,
    TelemetrySink,
    install_publisher,
    shutdown_telemetry,
)
from webapi_service.docs.registrar import (
    NOT_ATTEMPTED,
    SERVICE_TITLE,
    DocumentationActivation,
    DocumentationActivationState,
    DocumentationRegistrar,
    default_artifact_path,
)


class StartupState(str, Enum):
    CREATED = "created"
    CONFIGURING_SERVICES = "configuring_services"
    CONFIGURING_PIPELINE = "configuring_pipeline"
    RUNNING = "running"
    FAILED_STARTUP = "failed_startup"


_ALLOWED = {
    StartupState.CREATED: {StartupState.CONFIGURING_SERVICES},
    StartupState.CONFIGURING_SERVICES: {StartupState.CONFIGURING_PIPELINE, StartupState.FAILED_STARTUP},
    StartupState.CONFIGURING_PIPELINE: {StartupState.RUNNING, StartupState.FAILED_STARTUP},
    StartupState.RUNNING: set(),
    StartupState.FAILED_STARTUP: set(),
}


def classify_fault(exc: BaseException) -> str:
    if isinstance(exc, ConfigurationError):
        return exc.kind
    return type(exc).__name__


class PipelineAssembler:
    """Builds the FastAPI application in a fixed, explicit order."""

    def __init__(
        self,
        host_settings: Optional[HostSettings] = None,
        *,
        environment: Optional[RuntimeEnvironmentContext] = None,
        sinks: Optional[Iterable[TelemetrySink]] = None,
        routers: Iterable[APIRouter] = (),
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.host_settings = host_settings or settings
        self.environment = environment or RuntimeEnvironmentContext.resolve(
            override=self.host_settings.is_in_fabric, environ=environ
        )
        self.routers = list(routers)
        self._sinks = sinks
        self._environ = environ

        self.state = StartupState.CREATED
        self.configuration: Optional[ConfigurationSource] = None
        self.publisher: Optional[TelemetryPublisher] = None
        self.options: Optional[ServiceConfigurationOptions] = None
        self.policy: Optional[AuthorizationPolicy] = None
        self.filter: Optional[Filter] = None
        self.documentation: DocumentationActivation = NOT_ATTEMPTED
        self.authenticator: Optional[BearerAuthenticator] = None

    def _transition(self, new_state: StartupState) -> None:
        if new_state not in _ALLOWED[self.state]:
            raise RuntimeError(f"Illegal startup transition {self.state.value} -> {new_state.value}")
        logger.info("startup_transition", extra={"from_state": self.state.value, "to_state": new_state.value})
        self.state = new_state

    def _fail(self, exc: BaseException) -> None:
        """Record ``exc`` as fatal; the caller re-raises it."""
        fault = classify_fault(exc)
        increment_startup_faults(fault)
        try:
            if self.publisher is not None:
                self.publisher.publish_exception(exc, FaultKind.FATAL, stage=self.state.value, fault=fault)
                self.publisher.flush()
        except Exception:
            logger.exception("startup_fault_not_published", extra={"stage": self.state.value, "fault": fault})
        finally:
            logger.critical("startup_failed", extra={"stage": self.state.value, "fault": fault}, exc_info=exc)
            self._transition(StartupState.FAILED_STARTUP)

    def documentation_path(self) -> Path:
        if self.host_settings.documentation_path:
            return Path(self.host_settings.documentation_path)
        return default_artifact_path(self.host_settings.content_root)

    def assemble(self) -> FastAPI:
        started = time.time()
        init_observability(self.host_settings.log_level)
        self.start_services()
        self.configure_services()
        app = self.configure_pipeline()
        record_startup_duration(started)
        return app

    def start_services(self) -> None:
        """CREATED -> CONFIGURING_SERVICES: configuration and telemetry."""
        self._transition(StartupState.CONFIGURING_SERVICES)
        try:
            self.configuration = ConfigurationSource.build(
                self.host_settings.content_root, self.host_settings.app_env, self._environ
            )
            telemetry_settings = self.configuration.bind("Telemetry", TelemetrySettings)
        except Exception as exc:
            # No publisher yet: the fault is only logged
            self._fail(exc)
            raise
        self.publisher = install_publisher(TelemetryPublisher.from_settings(telemetry_settings, sinks=self._sinks))
        logger.info(
            "configuration_loaded",
            extra={
                "environment": self.host_settings.app_env,
                "files": [str(p) for p in self.configuration.files],
                "in_fabric": self.environment.is_in_fabric,
            },
        )

    def configure_services(self) -> None:
        try:
            self.options = self.configuration.bind("ServiceConfigurationOptions", ServiceConfigurationOptions)
            self.policy = build_scope_policy(self.options.required_scopes)
            self.filter = select(self.environment.is_in_fabric, self.policy)
            self.documentation = DocumentationRegistrar(self.publisher).register(self.documentation_path())
            self.authenticator = BearerAuthenticator.from_options(self.options)
        except Exception as exc:
            self._fail(exc)
            raise
        # Startup events, such as a skipped documentation artifact, are visible before serving
        self.publisher.flush()
        logger.info(
            "services_configured",
            extra={
                "authorization": describe(self.filter),
                "required_scopes": list(self.policy.required_scopes),
                "documentation": self.documentation.state.value,
            },
        )
        self._transition(StartupState.CONFIGURING_PIPELINE)

    def configure_pipeline(self) -> FastAPI:
        try:
            app = self._build_app()
        except Exception as exc:
            self._fail(exc)
            raise
        self._transition(StartupState.RUNNING)
        app.state.startup_state = self.state
        logger.info("pipeline_running", extra={"pipeline_steps": app.state.pipeline_steps})
        return app

    def _build_app(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            yield
            shutdown_telemetry()

        app = FastAPI(
            title=SERVICE_TITLE,
            version=get_version(),
            openapi_url=None,
            docs_url=None,
            redoc_url=None,
            lifespan=lifespan,
        )
        steps: list[str] = []

        # user_middleware[0] is the outermost layer
        app.user_middleware.append(Middleware(ExceptionEventMiddleware, publisher=self.publisher))
        steps.append("exception_events")

        if self.documentation.state is DocumentationActivationState.ACTIVE:
            self.documentation.generator.install(app, [probe_router, *self.routers])
            steps.append("documentation")

        app.user_middleware.append(
            Middleware(AuthenticationMiddleware, backend=BearerAuthenticationBackend(self.authenticator))
        )
        steps.append("authentication")

        app.include_router(probe_router)
        steps.append("probe")

        guard = [Depends(authorization_dependency(self.filter))]
        for router in self.routers:
            app.include_router(router, dependencies=guard)
        steps.append("router")

        app.state.pipeline_steps = steps
        app.state.publisher = self.publisher
        app.state.authorization_filter = self.filter
        app.state.documentation_state = self.documentation.state
        app.state.environment = self.environment
        return app
