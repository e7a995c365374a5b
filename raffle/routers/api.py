"""
raffle/routers/api.py — Read-only API endpoints
Endpoints: /api/status, /api/draws, /api/draws/{draw_id}, /api/health
Admin reads accept X-API-Key OR Basic Auth; health is public.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from raffle.clients.store_client import StoreClient, get_store
from raffle.config import get_settings
from raffle.core.auth import admin_auth
from raffle.core.rate_limiter import HTTP_RATE_LIMITS, limiter
from raffle.models import DrawDetail, DrawRecord, StatusReport
from raffle.services.archive import ArchiveWriter
from raffle.services.diagnostics import build_status_report
from raffle.utils.timezone import to_iso, utc_now

settings = get_settings()

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/status: cycle state, roster size, last draw
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/status", response_model=StatusReport)
def get_status(
    _auth: bool = Depends(admin_auth),
    store: StoreClient = Depends(get_store),
) -> StatusReport:
    """Same report as the `status` trigger action, without the draw secret."""
    return build_status_report(store)


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/draws: draw history, newest first
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/draws", response_model=list[DrawRecord])
def list_draws(
    limit: int = Query(10, ge=1, le=100),
    _auth: bool = Depends(admin_auth),
    store: StoreClient = Depends(get_store),
) -> list[DrawRecord]:
    return ArchiveWriter(store).recent(limit=limit)


@router.get("/draws/{draw_id}", response_model=DrawDetail)
def get_draw(
    draw_id: int,
    _auth: bool = Depends(admin_auth),
    store: StoreClient = Depends(get_store),
) -> DrawDetail:
    """One draw record together with its roster snapshot, in admission order."""
    detail = ArchiveWriter(store).get(draw_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draw not found.")
    return detail


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/health: public liveness plus store reachability
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/health")
@limiter.limit(HTTP_RATE_LIMITS["health"])
def health_check(
    request: Request,
    store: StoreClient = Depends(get_store),
) -> dict[str, Any]:
    """
    No auth required. Reports only whether the store answers, never the
    cycle state or roster contents.
    """
    store_ok = store.ping()
    return {
        "status": "healthy" if store_ok else "degraded",
        "store": "ok" if store_ok else "unreachable",
        "environment": settings.environment,
        "timestamp": to_iso(utc_now()),
    }
