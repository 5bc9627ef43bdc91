"""Run the service under uvicorn: ``python -m webapi_service``."""

import logging
import sys

import uvicorn

from webapi_service.app import create_app
from webapi_service.core.config import settings
from webapi_service.core.observability.telemetry import shutdown_telemetry


def main() -> None:
    try:
        app = create_app()
    except Exception:
        logging.getLogger("webapi_service").exception("startup_aborted")
        shutdown_telemetry()
        sys.exit(1)

    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
