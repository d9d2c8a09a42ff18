#!/usr/bin/env python3
"""
api.py — Neglect API Server

Read-only HTTP view over the currently published snapshot. All data is
served from the in-memory SnapshotStore; no request ever triggers an
aggregation run.

Endpoints:
    GET /                        → API metadata
    GET /health                  → Liveness probe
    GET /ready                   → Readiness probe
    GET /crises                  → Crisis summaries (name order)
    GET /crises/{crisis_id}      → One crisis with its country records
    GET /countries               → All country profiles
    GET /country/{iso3}          → One country profile plus its crisis records
    GET /anomalies               → Flattened anomaly list, most severe first
    GET /stats                   → Global roll-up statistics

Startup: load the newest verified snapshot under CRISIS_SNAPSHOT_DIR; if
there is none, aggregate the sources in CRISIS_DATA_DIR. If both fail the
API serves 503 on data endpoints (degraded), or exits when REQUIRE_DATA=1.

Environment variables:
    ENV                 : "dev" or "prod" (default: "prod")
    ALLOWED_ORIGINS     : Comma-separated CORS origins (default: none)
    ENABLE_DOCS         : "1" to force-enable /docs in prod
    REQUIRE_DATA        : "1" to hard-fail startup without a snapshot
    REDIS_URL           : Optional Redis URL for distributed rate limiting
    CRISIS_DATA_DIR     : Source exports directory
    CRISIS_SNAPSHOT_DIR : Materialized snapshot root
    CRISIS_TARGET_YEAR  : Year used when aggregating at startup

Requires: fastapi, uvicorn, slowapi
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Optional

try:
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.middleware.cors import CORSMiddleware
    from fastapi.responses import JSONResponse
    from starlette.middleware.gzip import GZipMiddleware
except ImportError:
    print(
        "FATAL: FastAPI not installed. Install with:\n"
        "  pip install -e .\n",
        file=sys.stderr,
    )
    sys.exit(1)

try:
    from slowapi import Limiter
    from slowapi.errors import RateLimitExceeded
    from slowapi.util import get_remote_address
except ImportError:
    print(
        "FATAL: slowapi not installed. Install with:\n"
        "  pip install -e .\n",
        file=sys.stderr,
    )
    sys.exit(1)

from crisis_backend.anomalies import METRIC_NAMES
from crisis_backend.constants import SEVERITY_CRITICAL, SNAPSHOT_VERSION, VALID_ANOMALY_SEVERITIES
from crisis_backend.export_snapshot import DATA_ROOT, DEFAULT_YEAR, SNAPSHOTS_ROOT
from crisis_backend.models import Snapshot
from crisis_backend.security import (
    ETagMiddleware,
    RequestIdMiddleware,
    SecurityHeadersMiddleware,
)
from crisis_backend.snapshot_store import SnapshotIntegrityError, SnapshotStore, latest_snapshot_dir
from crisis_backend.sources import CsvDataSources, SourceUnavailableError


# ---------------------------------------------------------------------------
# Logging configuration: structured JSON to stdout
# ---------------------------------------------------------------------------

_log_level = logging.DEBUG if os.getenv("ENV", "prod") == "dev" else logging.INFO
logging.basicConfig(
    level=_log_level,
    format="%(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("crisis.api")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

ENV = os.getenv("ENV", "prod").lower().strip()
ALLOWED_ORIGINS_RAW = os.getenv("ALLOWED_ORIGINS", "").strip()
ENABLE_DOCS = os.getenv("ENABLE_DOCS", "").strip() == "1"
REQUIRE_DATA = os.getenv("REQUIRE_DATA", "").strip() == "1"
REDIS_URL = os.getenv("REDIS_URL", "").strip() or None

API_VERSION = "0.1.0"

# Exactly 3 alpha characters
_ISO3_RE = re.compile(r"^[A-Za-z]{3}$")

_SEVERITY_ORDER = {SEVERITY_CRITICAL: 0}
_METRIC_ORDER = {name: i for i, name in enumerate(METRIC_NAMES)}

store = SnapshotStore()


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

_rate_storage: str = REDIS_URL if REDIS_URL else "memory://"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["120/minute"],
    storage_uri=_rate_storage,
    strategy="fixed-window",
)


# ---------------------------------------------------------------------------
# App construction
# ---------------------------------------------------------------------------

def _build_docs_kwargs() -> dict[str, Any]:
    """Determine docs/redoc/openapi URL availability."""
    if ENV == "prod" and not ENABLE_DOCS:
        return {"docs_url": None, "redoc_url": None, "openapi_url": None}
    return {"docs_url": "/docs", "redoc_url": "/redoc"}


def load_initial_snapshot(target: SnapshotStore = store) -> Optional[Snapshot]:
    """Publish the newest materialized snapshot, else aggregate the sources.

    Returns the published snapshot, or None when neither path worked.
    """
    snapshot_dir = latest_snapshot_dir(SNAPSHOTS_ROOT)
    if snapshot_dir is not None:
        try:
            return target.load_from_dir(snapshot_dir)
        except SnapshotIntegrityError as exc:
            for err in exc.errors:
                logger.error(json.dumps({"event": "manifest_error", "error": err}))

    try:
        return target.refresh(CsvDataSources(DATA_ROOT, target_year=DEFAULT_YEAR))
    except SourceUnavailableError as exc:
        logger.warning(json.dumps({"event": "source_unavailable", "error": str(exc)}))
    except (ValueError, OSError) as exc:
        logger.error(json.dumps({
            "event": "source_unreadable",
            "exception_type": type(exc).__name__,
            "error": str(exc),
        }))
    return None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle.

    Startup: publish a snapshot. If REQUIRE_DATA=1 and none could be
    published, exit immediately.
    """
    logger.info(json.dumps({
        "event": "startup",
        "env": ENV,
        "require_data": REQUIRE_DATA,
        "cors_origins": len(_CORS_ORIGINS),
        "docs_enabled": ENABLE_DOCS or ENV == "dev",
        "rate_limit_backend": "redis" if REDIS_URL else "memory",
    }))

    if store.get() is None:
        snapshot = load_initial_snapshot()
        if snapshot is None:
            if REQUIRE_DATA:
                logger.error(json.dumps({
                    "event": "startup_abort",
                    "reason": "REQUIRE_DATA=1 but no snapshot could be published",
                }))
                sys.exit(1)
            logger.warning(json.dumps({
                "event": "startup_degraded",
                "reason": "No snapshot published; data endpoints return 503",
            }))
        else:
            logger.info(json.dumps({
                "event": "snapshot_ready",
                "target_year": snapshot.target_year,
                "snapshot_hash": snapshot.snapshot_hash,
            }))

    yield

    logger.info(json.dumps({"event": "shutdown"}))


app = FastAPI(
    title="Crisis Neglect API",
    description="Humanitarian funding neglect and anomaly snapshot API",
    version=API_VERSION,
    lifespan=_lifespan,
    **_build_docs_kwargs(),
)

app.state.limiter = limiter


# ---------------------------------------------------------------------------
# CORS
#
# Strict allow-list from ALLOWED_ORIGINS plus the local dev frontend.
# Credentials disabled. Only GET + OPTIONS (preflight) permitted.
# ---------------------------------------------------------------------------

DEV_ORIGINS: list[str] = [
    "http://localhost:3000",
]

_CORS_ORIGINS: list[str] = list(DEV_ORIGINS)

if ALLOWED_ORIGINS_RAW:
    for _o in ALLOWED_ORIGINS_RAW.split(","):
        _o = _o.strip()
        if _o and _o not in _CORS_ORIGINS:
            _CORS_ORIGINS.append(_o)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

logger.info("CORS configured for: %s", _CORS_ORIGINS)


# ---------------------------------------------------------------------------
# Security & performance middleware (last registered = outermost)
# Execution order (outermost first): GZip → RequestId → SecurityHeaders → ETag → CORS
# SecurityHeaders wraps ETag so 304 replies carry the same headers.
# ---------------------------------------------------------------------------

def _current_snapshot_hash() -> Optional[str]:
    snapshot = store.get()
    return snapshot.snapshot_hash if snapshot else None


app.add_middleware(ETagMiddleware, snapshot_hash=_current_snapshot_hash)
app.add_middleware(SecurityHeadersMiddleware, enable_hsts=(ENV == "prod"))
app.add_middleware(RequestIdMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)


# ---------------------------------------------------------------------------
# Rate-limit error handler
# ---------------------------------------------------------------------------

@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Try again later."},
        headers={"Retry-After": "60"},
    )


# ---------------------------------------------------------------------------
# Global exception handler: never leak internals
# ---------------------------------------------------------------------------

@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(json.dumps({
        "event": "unhandled_exception",
        "exception_type": type(exc).__name__,
        "request_id": request_id,
        "path": request.url.path,
    }))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error."},
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_snapshot() -> Snapshot:
    snapshot = store.get()
    if snapshot is None:
        raise HTTPException(
            status_code=503,
            detail="No snapshot published. Run export_snapshot.py or provide source data.",
        )
    return snapshot


def _validate_iso3(code: str) -> str:
    """Validate and normalise an ISO3 code. Raises 400 if malformed."""
    code = code.strip().upper()
    if not _ISO3_RE.match(code):
        raise HTTPException(
            status_code=400,
            detail=f"Country code '{code}' is not a 3-letter ISO3 code.",
        )
    return code


def _wire(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request) -> dict:
    """API metadata."""
    snapshot = store.get()
    return {
        "name": "Crisis Neglect API",
        "version": API_VERSION,
        "snapshotVersion": SNAPSHOT_VERSION,
        "targetYear": snapshot.target_year if snapshot else None,
        "snapshotHash": snapshot.snapshot_hash if snapshot else None,
        "metrics": list(METRIC_NAMES),
        "endpoints": [
            "/crises", "/crises/{crisis_id}", "/countries",
            "/country/{iso3}", "/anomalies", "/stats",
        ],
    }


@app.get("/health", include_in_schema=False)
async def health(request: Request) -> JSONResponse:
    """Liveness probe. Always 200, no state reads."""
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "version": API_VERSION},
    )


@app.get("/ready")
@limiter.limit("60/minute")
async def ready(request: Request) -> JSONResponse:
    """Readiness probe, always 200. Business readiness is the 'ready' field."""
    info = store.info
    body = {
        "ready": info is not None,
        "status": "healthy" if info is not None else "degraded",
        "version": API_VERSION,
        "snapshot_hash": info.snapshot.snapshot_hash if info else None,
        "snapshot_source": info.source if info else None,
        "published_at": info.published_at if info else None,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return JSONResponse(status_code=200, content=body)


@app.get("/crises")
@limiter.limit("30/minute")
async def list_crises(request: Request) -> Any:
    """Crisis summaries in name order; countries listed most neglected first."""
    snapshot = _require_snapshot()
    return {
        "count": len(snapshot.crises),
        "crises": [
            {
                "crisisId": c.crisis_id,
                "crisisName": c.crisis_name,
                "categories": list(c.categories),
                "countryCount": len(c.countries),
                "countryCodes": [r.country_code for r in c.countries],
                "maxSeverityIndex": max((r.severity_index for r in c.countries), default=None),
                "anomalyCount": sum(len(r.anomalies) for r in c.countries),
            }
            for c in snapshot.crises
        ],
    }


@app.get("/crises/{crisis_id}")
@limiter.limit("30/minute")
async def get_crisis(crisis_id: str, request: Request) -> Any:
    """One crisis with its fully annotated country records."""
    snapshot = _require_snapshot()
    crisis = snapshot.crisis(crisis_id.strip())
    if crisis is None:
        raise HTTPException(status_code=404, detail=f"Crisis '{crisis_id}' not found.")
    return _wire(crisis)


@app.get("/countries")
@limiter.limit("30/minute")
async def list_countries(request: Request) -> Any:
    """All countries in crisis, ISO3 order."""
    snapshot = _require_snapshot()
    return {
        "count": len(snapshot.countries),
        "countries": [_wire(p) for p in snapshot.countries.values()],
    }


@app.get("/country/{iso3}")
@limiter.limit("30/minute")
async def get_country(iso3: str, request: Request) -> Any:
    """One country profile plus its record in every crisis it appears in."""
    code = _validate_iso3(iso3)
    snapshot = _require_snapshot()
    profile = snapshot.countries.get(code)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Country '{code}' not in snapshot.")

    records = [
        _wire(r)
        for c in snapshot.crises
        for r in c.countries
        if r.country_code == code
    ]
    return {**_wire(profile), "records": records}


@app.get("/anomalies")
@limiter.limit("30/minute")
async def list_anomalies(request: Request, severity: Optional[str] = None) -> Any:
    """Every flagged (country, metric) pair, most severe and most extreme first."""
    if severity is not None:
        severity = severity.strip().lower()
        if severity not in VALID_ANOMALY_SEVERITIES:
            raise HTTPException(
                status_code=400,
                detail=f"severity must be one of {sorted(VALID_ANOMALY_SEVERITIES)}.",
            )
    snapshot = _require_snapshot()

    flagged = [
        (profile, a)
        for profile in snapshot.countries.values()
        for a in profile.anomalies
        if severity is None or a.severity == severity
    ]
    flagged.sort(key=lambda pa: (
        _SEVERITY_ORDER.get(pa[1].severity, 1),
        pa[1].tail_distance,
        pa[0].country_code,
        _METRIC_ORDER.get(pa[1].metric, len(_METRIC_ORDER)),
    ))
    return {
        "count": len(flagged),
        "anomalies": [
            {"countryCode": p.country_code, "countryName": p.country_name, **_wire(a)}
            for p, a in flagged
        ],
    }


@app.get("/stats")
@limiter.limit("60/minute")
async def get_stats(request: Request) -> Any:
    """Global roll-up statistics."""
    snapshot = _require_snapshot()
    return {"targetYear": snapshot.target_year, **_wire(snapshot.stats)}


# ---------------------------------------------------------------------------
# Entry point (development only)
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    try:
        import uvicorn
    except ImportError:
        print("Install uvicorn: pip install uvicorn", file=sys.stderr)
        sys.exit(1)

    os.environ.setdefault("ENV", "dev")
    print(f"Crisis Neglect API {API_VERSION}: snapshots from {SNAPSHOTS_ROOT}, sources from {DATA_ROOT}")
    uvicorn.run(app, host="0.0.0.0", port=8000)  # noqa: S104
