# termhist/monitoring.py
"""
Centralized monitoring: Prometheus metrics and structured JSON logging.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
"""

import os
import logging
import time
from typing import Tuple

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")


# --- Logger setup
def setup_logger(name: str = "termhist", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
            handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "termhist_http_requests_total",
    "Total HTTP requests served by the local history API",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "termhist_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint"],
)

STORE_OPS = Counter(
    "termhist_store_operations_total",
    "Remote history store operations",
    ["operation", "outcome"],
)

STORE_LATENCY = Histogram(
    "termhist_store_latency_seconds",
    "Remote history store round trip latency",
    ["operation"],
)

LIFECYCLE_TRANSITIONS = Counter(
    "termhist_lifecycle_transitions_total",
    "Entry status writes issued by the lifecycle manager",
    ["status", "outcome"],
)

SYNC_ENTRIES = Counter(
    "termhist_sync_entries_total",
    "Entries handled by batch sync",
    ["outcome"],
)

OFFLINE_MODE = Gauge(
    "termhist_offline_mode",
    "1 when the engine runs without a remote store",
)


# --- Helper wrappers (never crash the caller)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_store_op(start_ts: float, operation: str, outcome: str):
    try:
        STORE_LATENCY.labels(operation=operation).observe(time.time() - start_ts)
        STORE_OPS.labels(operation=operation, outcome=outcome).inc()
    except Exception:
        pass


def inc_transition(status: str, outcome: str):
    try:
        LIFECYCLE_TRANSITIONS.labels(status=status, outcome=outcome).inc()
    except Exception:
        pass


def inc_sync(outcome: str, n: int = 1):
    try:
        SYNC_ENTRIES.labels(outcome=outcome).inc(n)
    except Exception:
        pass


def set_offline(offline: bool):
    try:
        OFFLINE_MODE.set(1 if offline else 0)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
