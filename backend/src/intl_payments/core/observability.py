"""Observability helpers (structlog logging + Prometheus metrics)."""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from .config import Settings, load_settings

registry = CollectorRegistry()

PAYMENTS_CREATED = Counter(
    "intl_payments_created_total",
    "International payments created",
    labelnames=("currency",),
    registry=registry,
)

WORKFLOW_TRANSITIONS = Counter(
    "intl_payments_transitions_total",
    "Workflow transition attempts",
    labelnames=("transition", "outcome"),
    registry=registry,
)

VALIDATION_FAILURES = Counter(
    "intl_payments_validation_failures_total",
    "Field-level validation failures",
    labelnames=("field",),
    registry=registry,
)

FRAUD_SCORE = Histogram(
    "intl_payments_fraud_score",
    "Fraud score assigned at creation",
    buckets=(0, 10, 20, 35, 50, 75, 100),
    registry=registry,
)

PERSISTENCE_LATENCY = Histogram(
    "intl_payments_persistence_seconds",
    "Collaborator call latency",
    labelnames=("operation",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
    registry=registry,
)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Initialise structlog for JSON (or console) output."""

    settings = settings or load_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    logging.basicConfig(level=level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def mask_identifier(value: str | None) -> str | None:
    if not value:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"hash:{digest[:12]}"


def get_metrics() -> bytes:
    """Render the payment metrics in Prometheus exposition format."""
    return generate_latest(registry)


__all__ = [
    "configure_logging",
    "mask_identifier",
    "get_metrics",
    "registry",
    "PAYMENTS_CREATED",
    "WORKFLOW_TRANSITIONS",
    "VALIDATION_FAILURES",
    "FRAUD_SCORE",
    "PERSISTENCE_LATENCY",
]
