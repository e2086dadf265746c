"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, remote enhancer calls and job outcomes.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
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
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[0.1, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Enhancer attempts (one per HTTP call or local resize)
enhancement_attempts_total = Counter(
    "enhancement_attempts_total",
    "Total number of enhancement attempts",
    labelnames=["mode", "outcome"]
)

tiles_enhanced_total = Counter(
    "tiles_enhanced_total",
    "Total number of tiles enhanced and merged"
)

# Jobs Counter
jobs_total = Counter(
    "upscale_jobs_total",
    "Total number of upscale jobs processed",
    labelnames=["status", "failure_stage"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "upscale_active_jobs",
    "Number of currently processing jobs"
)

final_pass_total = Counter(
    "final_pass_total",
    "Final consistency pass outcomes",
    labelnames=["outcome"]  # "applied" or "degraded"
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Application Info
app_info = Info(
    "tilescale_app",
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
        with track_stage_latency("merging"):
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
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_enhancement_attempt(mode: str, outcome: str):
    """Record one enhancement attempt (success, server_error, network_error, ...)."""
    enhancement_attempts_total.labels(mode=mode, outcome=outcome).inc()


def record_job_started():
    """Record a job entering the pipeline."""
    active_jobs_gauge.inc()


def record_job_completion(status: str, duration_seconds: float, failure_stage: str = "none"):
    """Record job completion."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_jobs_gauge.dec()


def record_final_pass(outcome: str):
    """Record the outcome of the final consistency pass."""
    final_pass_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def record_tile_enhanced():
    """Record one enhanced tile applied to the canvas."""
    tiles_enhanced_total.inc()
