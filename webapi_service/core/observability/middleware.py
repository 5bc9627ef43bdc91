"""Outermost request middleware: request telemetry and exception-to-event translation."""

from __future__ import annotations

import time
import uuid

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from webapi_service.core.observability.logging import (
    logger,
    reset_request_id,
    reset_trace_id,
    set_request_id,
    set_trace_id,
)
from webapi_service.core.observability.metrics import record_request_duration
from webapi_service.core.observability.telemetry import FaultKind, TelemetryEvent, TelemetryPublisher

REQUEST_EVENT = "request"


class ExceptionEventMiddleware:
    """Publish a request event per HTTP request and translate unhandled exceptions.

    Must be the outermost user middleware so it wraps authentication and
    routing. An unhandled exception is published as a request fault and
    answered with a JSON 500; if the response has already started the
    exception is re-raised after publishing.
    """

    def __init__(self, app: ASGIApp, publisher: TelemetryPublisher):
        self.app = app
        self.publisher = publisher

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or str(uuid.uuid4())
        token = set_request_id(request_id)
        trace_token = set_trace_id(headers.get("x-trace-id") or request_id)
        started = time.time()
        response_started = False
        status_code = 500

        async def _send(message: Message) -> None:
            nonlocal response_started, status_code
            if message["type"] == "http.response.start":
                response_started = True
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, _send)
        except Exception as exc:
            self.publisher.publish_exception(
                exc,
                FaultKind.REQUEST,
                method=scope.get("method", ""),
                path=scope.get("path", ""),
                request_id=request_id,
            )
            logger.error(
                "unhandled_request_exception",
                extra={"path": scope.get("path", ""), "error": type(exc).__name__},
            )
            if response_started:
                raise
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "detail": "An unexpected error occurred",
                    "request_id": request_id,
                },
            )
            await response(scope, receive, send)
        finally:
            self._publish_request(scope, request_id, status_code, started)
            reset_request_id(token)
            reset_trace_id(trace_token)

    def _publish_request(self, scope: Scope, request_id: str, status_code: int, started: float) -> None:
        duration_ms = round((time.time() - started) * 1000, 3)
        record_request_duration(started, status_code)
        self.publisher.publish(
            TelemetryEvent(
                REQUEST_EVENT,
                {
                    "method": scope.get("method", ""),
                    "path": scope.get("path", ""),
                    "status_code": status_code,
                    "success": status_code < 400,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )
        )
