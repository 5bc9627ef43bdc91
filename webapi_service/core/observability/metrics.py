"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from threading import Lock
from typing import Any

from webapi_service.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
_lock = Lock()


def _key(name: str, labels: dict[str, str] = None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 10:
            metrics["buckets"]["<10"] += 1
        elif value < 100:
            metrics["buckets"]["10-100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        else:
            metrics["buckets"][">=1000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement in milliseconds."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}

            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )

            result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Telemetry
def increment_telemetry_events(kind: str) -> None:
    increment_counter("telemetry_events_total", labels={"kind": kind})


# Startup
def increment_startup_faults(fault: str) -> None:
    increment_counter("startup_faults_total", labels={"fault": fault})


def increment_documentation_skipped() -> None:
    increment_counter("documentation_skipped_total")


def record_startup_duration(start_time: float) -> None:
    observe_duration(start_time, "startup_duration_ms")


# Authentication / authorization
def increment_token_rejections(reason: str) -> None:
    increment_counter("bearer_token_rejections_total", labels={"reason": reason})


def increment_authorization_rejections(reason: str) -> None:
    increment_counter("authorization_rejections_total", labels={"reason": reason})


# Requests
def record_request_duration(start_time: float, status_code: int) -> None:
    observe_duration(start_time, "request_duration_ms", labels={"status": str(status_code)})
