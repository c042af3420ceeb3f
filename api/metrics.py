"""
Prometheus metrics for the PulseStream API and moderation pipeline.

Metrics are exposed at /metrics in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("pulse", "PulseStream application information")

# =============================================================================
# API Metrics
# =============================================================================

VIDEO_UPLOADS_TOTAL = Counter(
    "pulse_video_uploads_total",
    "Total video uploads",
    ["result", "backend"],  # result: success, failed. backend: s3, local
)

VIDEO_STREAMS_TOTAL = Counter(
    "pulse_video_streams_total",
    "Total stream requests",
    ["mode"],  # signed, unsigned, full, range
)

RESPONSE_CACHE_REQUESTS_TOTAL = Counter(
    "pulse_response_cache_requests_total",
    "Response cache lookups",
    ["result"],  # hit, miss
)

# =============================================================================
# Moderation Pipeline Metrics
# =============================================================================

PIPELINE_RUNS_TOTAL = Counter(
    "pulse_pipeline_runs_total",
    "Moderation pipeline runs by outcome",
    ["outcome"],  # safe, flagged, failed, fail_safe, abandoned
)

PIPELINE_ACTIVE = Gauge(
    "pulse_pipeline_active",
    "Number of moderation pipelines currently running",
)

MODERATION_JOB_DURATION_SECONDS = Histogram(
    "pulse_moderation_job_duration_seconds",
    "Time from job submission to a terminal status",
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 3600],
)

MODERATION_POLLS_TOTAL = Counter(
    "pulse_moderation_polls_total",
    "Moderation status polls",
    ["status"],  # IN_PROGRESS, SUCCEEDED, FAILED, error
)

# =============================================================================
# Event Channel Metrics
# =============================================================================

EVENTS_PUBLISHED_TOTAL = Counter(
    "pulse_events_published_total",
    "Progress events published",
    ["transport", "result"],  # transport: redis, local. result: delivered, dropped, failed
)

EVENT_SUBSCRIBERS_ACTIVE = Gauge(
    "pulse_event_subscribers_active",
    "Connected event stream subscribers",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    APP_INFO.info({"version": version, "app": "pulsestream"})
