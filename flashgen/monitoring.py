# flashgen/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from pythonjsonlogger import jsonlogger
from prometheus_client import (
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "flashgen", level: int = None) -> logging.Logger:
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

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "flashgen_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "flashgen_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

GENERATION_COUNTER = Counter(
    "flashgen_generations_total",
    "Flashcard generation attempts",
    ["outcome", "error_code"],
)

GENERATION_LATENCY = Histogram(
    "flashgen_generation_latency_seconds",
    "End-to-end flashcard generation latency",
)

CARDS_GENERATED = Counter(
    "flashgen_cards_generated_total",
    "Card drafts returned to callers",
)

GATEWAY_ATTEMPTS = Counter(
    "flashgen_gateway_attempts_total",
    "HTTP attempts made against the chat-completion endpoint",
    ["status"],
)

GATEWAY_RETRIES = Counter(
    "flashgen_gateway_retries_total",
    "Gateway retries scheduled after a retryable status",
    ["status"],
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_generation(start_ts: float, outcome: str, error_code: str = "", cards: int = 0):
    try:
        GENERATION_LATENCY.observe(time.time() - start_ts)
        GENERATION_COUNTER.labels(outcome=outcome, error_code=error_code).inc()
        if cards:
            CARDS_GENERATED.inc(cards)
    except Exception:
        pass


def inc_gateway_attempt(status: str):
    try:
        GATEWAY_ATTEMPTS.labels(status=status).inc()
    except Exception:
        pass


def inc_gateway_retry(status: str):
    try:
        GATEWAY_RETRIES.labels(status=status).inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
