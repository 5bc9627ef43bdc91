from typing import Iterable, Optional

from fastapi import APIRouter, FastAPI

from webapi_service.bootstrap import PipelineAssembler
from webapi_service.core.config import HostSettings, settings


def create_app(routers: Iterable[APIRouter] = (), host_settings: Optional[HostSettings] = None) -> FastAPI:
    """Run the startup sequence and return the running application.

    Raises whatever fault aborted startup; the host must not serve requests.
    """
    return PipelineAssembler(host_settings or settings, routers=routers).assemble()
