"""Prometheus metrics definitions for the scan client."""
from prometheus_client import Counter, Gauge, Histogram, generate_latest, REGISTRY


# =============================================================================
# Counters (monotonically increasing)
# =============================================================================

sessions_total = Counter(
    "scan_client_sessions_total",
    "Total number of scan sessions by terminal status",
    ["status"]  # completed, failed, cancelled
)

stream_fallbacks_total = Counter(
    "scan_client_stream_fallbacks_total",
    "Times a session switched from stream to polling delivery",
    ["reason"]  # connect_failed, ended_without_terminal, disabled
)

malformed_frames_total = Counter(
    "scan_client_malformed_frames_total",
    "Stream frames that could not be decoded and were skipped"
)

poll_requests_total = Counter(
    "scan_client_poll_requests_total",
    "Status poll requests",
    ["result"]  # ok, error
)

events_dispatched_total = Counter(
    "scan_client_events_dispatched_total",
    "Progress events delivered to callbacks",
    ["source", "kind"]
)


# =============================================================================
# Gauges (can go up and down)
# =============================================================================

active_sessions = Gauge(
    "scan_client_active_sessions",
    "Number of scan sessions not yet in a terminal state"
)


# =============================================================================
# Histograms (distribution of values)
# =============================================================================

session_duration_seconds = Histogram(
    "scan_client_session_duration_seconds",
    "Time from session start to terminal state",
    buckets=[1, 5, 15, 30, 60, 300, 900, 1800, 3600]
)


# =============================================================================
# Metric Helpers
# =============================================================================

def metrics_response() -> bytes:
    """
    Generate Prometheus metrics response.

    Returns:
        Prometheus text format metrics
    """
    return generate_latest(REGISTRY)


def record_session_started():
    """Record a session leaving idle."""
    active_sessions.inc()


def record_session_finished(status: str, duration_seconds: float | None = None):
    """
    Record a session reaching a terminal state.

    Args:
        status: Terminal status (completed, failed, cancelled)
        duration_seconds: Seconds since start, None if never started
    """
    sessions_total.labels(status=status).inc()
    if duration_seconds is not None:
        active_sessions.dec()
        session_duration_seconds.observe(duration_seconds)


def record_fallback(reason: str):
    """
    Record a stream to polling fallback.

    Args:
        reason: connect_failed, ended_without_terminal or disabled
    """
    stream_fallbacks_total.labels(reason=reason).inc()


def record_malformed_frame():
    """Record a skipped frame."""
    malformed_frames_total.inc()


def record_poll(ok: bool):
    """Record one status poll."""
    poll_requests_total.labels(result="ok" if ok else "error").inc()


def record_event_dispatched(source: str, kind: str):
    """
    Record an event handed to callbacks.

    Args:
        source: stream or polling
        kind: progress, resource, completed, error
    """
    events_dispatched_total.labels(source=source, kind=kind).inc()
