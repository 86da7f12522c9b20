"""
Prometheus Metrics for Observability

Tracks remote AI calls, asset state transitions and enhancement passes.
Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "etsyflow_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Remote AI calls (one per attempt)
remote_calls_total = Counter(
    "etsyflow_remote_calls_total",
    "Total remote AI service call attempts",
    labelnames=["service", "outcome"]
)

remote_retries_total = Counter(
    "etsyflow_remote_retries_total",
    "Remote calls retried after a transient failure",
    labelnames=["service"]
)

# Asset state machine
asset_transitions_total = Counter(
    "etsyflow_asset_transitions_total",
    "Asset state transitions",
    labelnames=["from_state", "to_state"]
)

# Enhancement passes
enhancement_passes_total = Counter(
    "etsyflow_enhancement_passes_total",
    "Batch enhancement passes by outcome",
    labelnames=["outcome"]
)

# Ingestion
ingested_files_total = Counter(
    "etsyflow_ingested_files_total",
    "Uploaded files by normalization outcome",
    labelnames=["outcome"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "etsyflow_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("analysis"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def record_remote_call(service: str, outcome: str):
    """Record one remote call attempt (success, transient, credential, ...)."""
    remote_calls_total.labels(service=service, outcome=outcome).inc()


def record_remote_retry(service: str):
    remote_retries_total.labels(service=service).inc()


def record_transition(from_state: str, to_state: str):
    asset_transitions_total.labels(from_state=from_state, to_state=to_state).inc()


def record_enhancement_pass(outcome: str):
    """Record a pass outcome: completed, halted or rejected."""
    enhancement_passes_total.labels(outcome=outcome).inc()


def record_ingestion(outcome: str):
    ingested_files_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
