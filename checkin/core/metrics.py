"""Prometheus metrics for the check-in service.

This module provides application metrics for:
- Request latency and throughput
- Token issuance, redemption outcomes and administrative expiry
- Manual attendance overrides

Metrics are exposed at /metrics endpoint for Prometheus scraping.
"""

import re
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest

from checkin.core.config import settings

# Application info
app_info = Info('qr_checkin_service', 'QR check-in service application info')
app_info.info({
    'version': settings.APP_VERSION,
    'environment': settings.ENVIRONMENT,
})

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Token lifecycle metrics
qr_tokens_issued_total = Counter(
    'qr_tokens_issued_total',
    'Total QR tokens issued',
    ['session_kind']
)

qr_redemptions_total = Counter(
    'qr_redemptions_total',
    'Total QR redemption attempts by outcome',
    ['outcome']  # scan_success, scan_expired, scan_already_used, ...
)

qr_redemption_duration_seconds = Histogram(
    'qr_redemption_duration_seconds',
    'Time spent in the redemption pipeline',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

qr_tokens_expired_total = Counter(
    'qr_tokens_expired_total',
    'Total QR tokens expired administratively'
)

manual_attendance_total = Counter(
    'manual_attendance_total',
    'Total manual attendance overrides',
    ['status']
)


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def track_request_metrics(method: str, endpoint: str, status: int, duration: float):
    """Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request endpoint path
        status: HTTP response status code
        duration: Request duration in seconds
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration)


def track_token_issued(session_kind: str):
    qr_tokens_issued_total.labels(session_kind=session_kind).inc()


def track_redemption(outcome: str, duration: float):
    """Track one redemption attempt.

    Args:
        outcome: Audit action value for the attempt
        duration: Seconds spent in the pipeline
    """
    qr_redemptions_total.labels(outcome=outcome).inc()
    qr_redemption_duration_seconds.observe(duration)


def track_token_expired():
    qr_tokens_expired_total.inc()


def track_manual_attendance(status: str):
    manual_attendance_total.labels(status=status).inc()


class MetricsMiddleware:
    """ASGI middleware for tracking request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Skip metrics endpoint itself
        path = scope.get("path", "")
        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        start_time = time.time()
        status_code = 500  # Default in case of error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            # Normalize path to avoid cardinality explosion
            normalized_path = self._normalize_path(path)
            track_request_metrics(method, normalized_path, status_code, duration)

    def _normalize_path(self, path: str) -> str:
        """Normalize path to avoid high cardinality.

        Replaces UUIDs and participant/session ids with placeholders.
        """
        path = re.sub(
            r'[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}',
            '{id}',
            path
        )

        # Path segments after these prefixes are caller-supplied ids
        path = re.sub(r'/(generate|attendance|audit)/(?!manual(?:/|$))[^/]+', r'/\1/{id}', path)

        path = re.sub(r'/\d+(?=/|$)', '/{id}', path)

        return path
