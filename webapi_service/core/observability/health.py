"""Liveness probe endpoint."""

from importlib import metadata

from fastapi import APIRouter

DISTRIBUTION = "webapi-service"

router = APIRouter()


def get_version() -> str:
    """Get the service version from the installed distribution metadata."""
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        from webapi_service import __version__

        return __version__


@router.get("/probe", include_in_schema=False)
def liveness_probe() -> dict[str, str]:
    """Liveness endpoint - always Healthy if the pipeline is running."""
    return {"status": "Healthy"}
