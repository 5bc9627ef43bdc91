"""Observability for the service: JSON logging, telemetry, metrics and the liveness probe."""
from typing import Optional

from . import logging as logging_module
from . import health
from . import metrics
from . import telemetry


def init_observability(log_level: Optional[str] = None) -> None:
    """Initialize logging and start from clean metric counters."""
    logging_module.init_logging(log_level)
    metrics.reset_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "telemetry",
    "init_observability",
]
