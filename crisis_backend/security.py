"""
crisis_backend.security — HTTP middleware for the neglect API.

Provides:
    - RequestIdMiddleware: attaches X-Request-ID and emits one structured
      JSON log line per request
    - SecurityHeadersMiddleware: OWASP response headers and per-path
      Cache-Control
    - ETagMiddleware: snapshot-derived weak ETag, 304 on If-None-Match

Every data response is a pure function of (published snapshot, path,
query string). The ETag is therefore computed from the snapshot hash
without buffering the response body, and changes exactly when a new
snapshot is published.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("crisis.security")

# Probes report live state; never cached or tagged
_DYNAMIC_PATHS = frozenset(("/health", "/ready"))

DATA_CACHE_CONTROL = "public, max-age=60, stale-while-revalidate=300"


# ---------------------------------------------------------------------------
# Request-ID middleware
# ---------------------------------------------------------------------------

class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request ID (client-supplied or generated) and log the request."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        _log_request(
            request,
            response.status_code,
            round((time.monotonic() - started) * 1000, 1),
            request_id,
        )
        return response


# ---------------------------------------------------------------------------
# Security headers middleware
# ---------------------------------------------------------------------------

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    OWASP response headers on every response. HSTS only when enabled
    (prod, TLS terminated upstream).

    Cache-Control:
      - /health, /ready      → no-store
      - everything else      → DATA_CACHE_CONTROL; snapshots are replaced
                               whole, so a short shared TTL is safe
    """

    def __init__(self, app: Any, *, enable_hsts: bool = False) -> None:
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        headers = response.headers

        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["Referrer-Policy"] = "no-referrer"
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        headers["Cross-Origin-Resource-Policy"] = "same-site"
        if self.enable_hsts:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        if request.url.path in _DYNAMIC_PATHS or response.status_code == 503:
            headers["Cache-Control"] = "no-store"
        else:
            headers["Cache-Control"] = DATA_CACHE_CONTROL
        return response


# ---------------------------------------------------------------------------
# ETag / conditional-GET middleware
# ---------------------------------------------------------------------------

def snapshot_etag(snapshot_hash: str, path: str, query: str = "") -> str:
    """Weak ETag for one URL under one published snapshot."""
    digest = hashlib.sha256(f"{snapshot_hash}\n{path}\n{query}".encode("utf-8")).hexdigest()
    return f'W/"{digest[:32]}"'


class ETagMiddleware(BaseHTTPMiddleware):
    """Tag 200 GET responses; answer a matching If-None-Match with 304.

    A match is answered before the endpoint runs. Nothing is tagged while
    no snapshot is published.
    """

    def __init__(self, app: Any, *, snapshot_hash: Callable[[], Optional[str]]) -> None:
        super().__init__(app)
        self._snapshot_hash = snapshot_hash

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        current = self._snapshot_hash()
        if request.method != "GET" or request.url.path in _DYNAMIC_PATHS or current is None:
            return await call_next(request)

        etag = snapshot_etag(current, request.url.path, request.url.query)
        if_none_match = request.headers.get("if-none-match", "")
        if etag in {t.strip() for t in if_none_match.split(",")}:
            return Response(status_code=304, headers={"ETag": etag})

        response = await call_next(request)
        if response.status_code == 200:
            response.headers["ETag"] = etag
        return response


# ---------------------------------------------------------------------------
# Structured request logging
# ---------------------------------------------------------------------------

def _mask_ip(ip: str | None) -> str:
    """First two IPv4 octets, or the first four IPv6 groups."""
    if not ip:
        return "unknown"
    if ":" in ip:
        return ":".join(ip.split(":")[:4]) + "::*"
    octets = ip.split(".")
    if len(octets) == 4:
        return f"{octets[0]}.{octets[1]}.*.*"
    return "unknown"


def _log_request(
    request: Request,
    status_code: int,
    latency_ms: float,
    request_id: str,
) -> None:
    log_data = {
        "event": "http_request",
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status": status_code,
        "latency_ms": latency_ms,
        "client_ip": _mask_ip(request.client.host if request.client else None),
        "request_id": request_id,
    }
    if status_code >= 500:
        logger.error(json.dumps(log_data))
    elif status_code >= 400:
        logger.warning(json.dumps(log_data))
    else:
        logger.info(json.dumps(log_data))
