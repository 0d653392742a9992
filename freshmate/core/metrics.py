"""
Prometheus Metrics for Observability

Tracks detection stage latency, inference API calls, rollbacks and the
calibrated confidence distribution. Exposes /metrics for Prometheus scraping.
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

# Detection Latency - Per Stage
detection_stage_latency_seconds = Histogram(
    "detection_stage_latency_seconds",
    "Time spent in each detection stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Detection Outcomes
detections_total = Counter(
    "ripeness_detections_total",
    "Total number of ripeness detections by outcome",
    labelnames=["outcome"]  # calibrated, inconclusive, service_unavailable, ...
)

# Inference Service Calls
inference_api_calls_total = Counter(
    "inference_api_calls_total",
    "Total number of inference service calls",
    labelnames=["endpoint", "status", "http_status"]
)

# Compensating deletes
rollbacks_total = Counter(
    "storage_rollbacks_total",
    "Compensating deletes of stored images after a failed detection",
    labelnames=["result"]  # deleted, missing, failed
)

# Calibrated confidence distribution
calibrated_confidence_histogram = Histogram(
    "calibrated_confidence",
    "Distribution of calibrated confidence by ripeness label",
    labelnames=["ripeness"],
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Application Info
app_info = Info(
    "freshmate_app",
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
        with track_stage_latency("predict"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        detection_stage_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_inference_call(endpoint: str, status: str, http_status: int = 0):
    """Record an inference service call."""
    inference_api_calls_total.labels(
        endpoint=endpoint,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_detection(outcome: str):
    """Record the outcome of one detection request."""
    detections_total.labels(outcome=outcome).inc()


def record_rollback(result: str):
    """Record a compensating delete."""
    rollbacks_total.labels(result=result).inc()


def record_calibrated_confidence(ripeness: str, confidence: float):
    """Record a calibrated confidence value."""
    calibrated_confidence_histogram.labels(ripeness=ripeness).observe(confidence)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
