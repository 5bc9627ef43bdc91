"""Conditional API documentation (OpenAPI JSON + Swagger UI).

Documentation is generated only when the XML documentation artifact shipped
with the service is present. A missing artifact is reported to telemetry and
startup continues without documentation endpoints.

Artifact format::

    <doc>
      <members>
        <member name="M:orders.api.list_orders">
          <summary>List orders.</summary>
          <remarks>Optional longer description.</remarks>
        </member>
      </members>
    </doc>

Member names are ``M:<module>.<qualname>`` of the route endpoint function.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
from xml.etree import ElementTree as ET

from fastapi import FastAPI
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.routing import APIRoute
from starlette.requests import Request
from starlette.responses import JSONResponse

from webapi_service.core.observability.health import get_version
from webapi_service.core.observability.logging import logger
from webapi_service.core.observability.metrics import increment_documentation_skipped
from webapi_service.core.observability.telemetry import FaultKind, TelemetryPublisher

SERVICE_TITLE = "WebAPIService"
DOCUMENT_NAME = "v1"
SECURITY_SCHEME_NAME = "Bearer"

BEARER_SECURITY_SCHEME: Dict[str, Any] = {
    "type": "http",
    "description": "Please insert JWT with Bearer into field",
    "name": "Authorization",
    "in": "header",
    "scheme": "bearer",
    "bearerFormat": "JWT",
}

_WS_RE = re.compile(r"\s+")


class DocumentationActivationState(str, Enum):
    ACTIVE = "active"
    SKIPPED_MISSING_ARTIFACT = "skipped_missing_artifact"
    NOT_ATTEMPTED = "not_attempted"


class DocumentationArtifactMissing(FileNotFoundError):
    pass


class DocumentationArtifactError(Exception):
    """The artifact exists but is not a readable XML documentation file."""


@dataclass(frozen=True)
class MemberDoc:
    summary: str = ""
    remarks: str = ""


def _text(node: Optional[ET.Element]) -> str:
    if node is None:
        return ""
    return _WS_RE.sub(" ", "".join(node.itertext())).strip()


def load_xml_documentation(path: Path) -> Dict[str, MemberDoc]:
    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError) as exc:
        raise DocumentationArtifactError(f"Cannot read documentation artifact {path}: {exc}") from exc
    if root.tag != "doc":
        raise DocumentationArtifactError(f"Documentation artifact {path} has root <{root.tag}>, expected <doc>")

    members: Dict[str, MemberDoc] = {}
    for member in root.iter("member"):
        name = member.get("name")
        if not name:
            continue
        members[name] = MemberDoc(summary=_text(member.find("summary")), remarks=_text(member.find("remarks")))
    return members


def member_name(endpoint: Any) -> str:
    return f"M:{endpoint.__module__}.{endpoint.__qualname__}"


def iter_api_routes(routes: Iterable[Any]) -> Iterator[APIRoute]:
    """Yield every ``APIRoute`` below ``routes``, descending into nested routers."""
    for route in routes:
        if isinstance(route, APIRoute):
            yield route
            continue
        nested = getattr(route, "routes", None)
        if nested is None:
            nested = getattr(getattr(route, "router", None), "routes", None)
        if nested:
            yield from iter_api_routes(nested)


def default_artifact_path(content_root: str | Path) -> Path:
    return Path(content_root) / f"{__name__.split('.')[0]}.xml"


@dataclass
class DocumentationGenerator:
    members: Dict[str, MemberDoc]
    title: str = SERVICE_TITLE
    version: str = field(default_factory=get_version)
    document_name: str = DOCUMENT_NAME
    security_scheme: Dict[str, Any] = field(default_factory=lambda: dict(BEARER_SECURITY_SCHEME))

    @property
    def openapi_url(self) -> str:
        return f"/swagger/{self.document_name}/swagger.json"

    @property
    def docs_url(self) -> str:
        return "/swagger"

    def build_schema(self, app: FastAPI, routers: Iterable[Any] = ()) -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = get_openapi(title=self.title, version=self.version, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})[SECURITY_SCHEME_NAME] = dict(self.security_scheme)
        schema["security"] = [{SECURITY_SCHEME_NAME: []}]

        # Included routers may be kept as nodes in app.routes; walk both
        sources: List[Any] = list(app.routes)
        for router in routers:
            sources.extend(router.routes)

        paths = schema.get("paths", {})
        for route in iter_api_routes(sources):
            if not route.include_in_schema:
                continue
            doc = self.members.get(member_name(route.endpoint))
            if doc is None:
                continue
            for method in route.methods:
                operation = paths.get(route.path_format, {}).get(method.lower())
                if operation is None:
                    continue
                if doc.summary:
                    operation["summary"] = doc.summary
                if doc.remarks:
                    operation["description"] = doc.remarks

        app.openapi_schema = schema
        return schema

    def install(self, app: FastAPI, routers: Iterable[Any] = ()) -> None:
        """Serve the OpenAPI document and Swagger UI on ``app``.

        ``routers`` are the routers included on ``app``; their operations get
        the member summaries from the artifact.
        """
        included = list(routers)
        app.openapi = lambda: self.build_schema(app, included)  # type: ignore[method-assign]

        async def openapi_json(request: Request) -> JSONResponse:
            return JSONResponse(app.openapi())

        async def swagger_ui(request: Request):
            return get_swagger_ui_html(openapi_url=self.openapi_url, title=f"{self.title} - Swagger UI")

        app.add_route(self.openapi_url, openapi_json, include_in_schema=False)
        app.add_route(self.docs_url, swagger_ui, include_in_schema=False)


@dataclass(frozen=True)
class DocumentationActivation:
    state: DocumentationActivationState
    generator: Optional[DocumentationGenerator] = None
    artifact_path: Optional[Path] = None


NOT_ATTEMPTED = DocumentationActivation(DocumentationActivationState.NOT_ATTEMPTED)


class DocumentationRegistrar:
    def __init__(self, publisher: TelemetryPublisher):
        self.publisher = publisher

    def register(self, xml_artifact_path: str | Path) -> DocumentationActivation:
        path = Path(xml_artifact_path)
        if not path.is_file():
            # Not fatal: the service starts without documentation endpoints
            missing = DocumentationArtifactMissing(
                f"Swagger XML document has not been included in the project: {path}"
            )
            self.publisher.publish_exception(
                missing, FaultKind.DEGRADABLE, internal=True, artifact_path=str(path)
            )
            increment_documentation_skipped()
            logger.warning("documentation_skipped", extra={"artifact_path": str(path)})
            return DocumentationActivation(DocumentationActivationState.SKIPPED_MISSING_ARTIFACT, artifact_path=path)

        generator = DocumentationGenerator(members=load_xml_documentation(path))
        logger.info(
            "documentation_active",
            extra={"artifact_path": str(path), "documented_members": len(generator.members)},
        )
        return DocumentationActivation(DocumentationActivationState.ACTIVE, generator=generator, artifact_path=path)
