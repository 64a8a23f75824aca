"""
Telemetry and monitoring utilities.
"""
import logging
import time

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

# HTTP metrics
request_count = Counter(
    'chatdesk_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'chatdesk_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Session lifecycle
sessions_started = Counter(
    'chatdesk_sessions_started_total',
    'Sessions resolved for a widget open',
    ['outcome']  # created, reactivated, reused
)

sessions_terminated = Counter(
    'chatdesk_sessions_terminated_total',
    'Session terminations',
    ['reason', 'success']
)

# Message reconciliation
duplicates_dropped = Counter(
    'chatdesk_duplicate_messages_dropped_total',
    'Messages discarded because their id was already rendered',
    ['channel']  # sync, push
)

reply_timeouts = Counter(
    'chatdesk_reply_timeouts_total',
    'User turns that got no reply within the bound'
)

responder_latency = Histogram(
    'chatdesk_responder_latency_seconds',
    'Automation webhook round-trip time'
)

agent_interventions = Counter(
    'chatdesk_agent_interventions_total',
    'Messages injected by human agents'
)

websocket_connections = Gauge(
    'chatdesk_websocket_connections_active',
    'Active WebSocket connections'
)


def setup_telemetry(app: FastAPI) -> None:
    """
    Expose /metrics and record request metrics.

    Args:
        app: FastAPI application instance
    """
    logger.info("Setting up telemetry...")

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def track_requests(request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        request_count.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()
        request_duration.labels(method=request.method, endpoint=endpoint).observe(duration)

        return response

    logger.info("Telemetry setup complete")


def track_session_started(outcome: str) -> None:
    sessions_started.labels(outcome=outcome).inc()


def track_session_terminated(reason: str, success: bool) -> None:
    sessions_terminated.labels(reason=reason, success=str(success)).inc()


def track_duplicate_dropped(channel: str) -> None:
    duplicates_dropped.labels(channel=channel).inc()


def track_reply_timeout() -> None:
    reply_timeouts.inc()


def track_responder_latency(duration: float) -> None:
    responder_latency.observe(duration)


def track_agent_intervention() -> None:
    agent_interventions.inc()


def update_websocket_connections(count: int) -> None:
    """Update WebSocket connections gauge."""
    websocket_connections.set(count)


__all__ = [
    'setup_telemetry',
    'track_session_started',
    'track_session_terminated',
    'track_duplicate_dropped',
    'track_reply_timeout',
    'track_responder_latency',
    'track_agent_intervention',
    'update_websocket_connections',
]
