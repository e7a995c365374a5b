"""
raffle/routers/entries.py — Public admission endpoints
Endpoints: /api/entries (GET, POST), /api/entries/batch, /api/rate-limit/check
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from raffle.clients.store_client import StoreClient, get_store
from raffle.core.errors import EntryValidationError
from raffle.core.rate_limiter import (
    HTTP_RATE_LIMITS,
    POLICY_BY_CALL_SITE,
    VERIFIABLE_OPERATIONS,
    SlidingWindowLimiter,
    client_identifier,
    limiter,
)
from raffle.models import (
    AdmissionResponse,
    BatchEntryRequest,
    EntryRequest,
    RateLimitCheckRequest,
)
from raffle.services.admission import AdmissionService
from raffle.services.roster import RosterStore

router = APIRouter()


def _request_metadata(request: Request) -> dict[str, Any]:
    return {
        "endpoint": request.url.path,
        "method": request.method,
        "user_agent": request.headers.get("user-agent", "")[:200],
    }


def _mask(identifier: str) -> str:
    return identifier[:8] + "***"


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/entries: public roster display, admission order
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/entries")
@limiter.limit(HTTP_RATE_LIMITS["public_read"])
def list_entries(
    request: Request,
    store: StoreClient = Depends(get_store),
) -> dict[str, Any]:
    entries = RosterStore(store).read_all(strict=False)
    return {
        "count": len(entries),
        "entries": [
            {
                "position": position,
                "display_name": e.display_name,
                "chosen_affiliate": e.chosen_affiliate,
                "reward_platform": e.reward_platform.value,
                "admitted_at": e.admitted_at,
            }
            for position, e in enumerate(entries, start=1)
        ],
    }


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/entries: one entrant
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/entries", response_model=AdmissionResponse)
def add_entry(
    request: Request,
    body: EntryRequest,
    store: StoreClient = Depends(get_store),
) -> AdmissionResponse:
    return AdmissionService(store).admit_one(
        body, client_identifier(request), metadata=_request_metadata(request),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/entries/batch: `count` identical entrants
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/entries/batch", response_model=AdmissionResponse)
def add_entries_batch(
    request: Request,
    body: BatchEntryRequest,
    store: StoreClient = Depends(get_store),
) -> AdmissionResponse:
    return AdmissionService(store).admit_many(
        body, body.count, client_identifier(request), metadata=_request_metadata(request),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/rate-limit/check: verification endpoint for sensitive flows
# Read-only peek; fails CLOSED when the store is unreachable.
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/rate-limit/check")
def check_rate_limit(
    request: Request,
    body: RateLimitCheckRequest,
    store: StoreClient = Depends(get_store),
) -> JSONResponse:
    if body.operation_type not in VERIFIABLE_OPERATIONS:
        raise EntryValidationError(
            f"Unknown operation type. Valid types: {', '.join(VERIFIABLE_OPERATIONS)}.",
            detail=f"operation_type={body.operation_type!r}",
        )

    identifier = client_identifier(request)
    decision = SlidingWindowLimiter(store).check(
        identifier,
        body.operation_type,
        policy=POLICY_BY_CALL_SITE["verification"],
        record=False,
    )

    if decision.allowed:
        status_code = status.HTTP_200_OK
    elif decision.degraded:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_429_TOO_MANY_REQUESTS

    headers = {}
    if decision.retry_after_seconds:
        headers["Retry-After"] = str(decision.retry_after_seconds)

    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            **decision.model_dump(mode="json"),
            "identifier": _mask(identifier),
            "timestamp": datetime.utcnow().isoformat() + "Z",
        },
    )
