"""
raffle/routers/triggers.py — Cycle trigger endpoints
Called by the scheduler and by operators, uncoordinated. Every action is
idempotent; correctness comes from the store-level state machine.
All protected by the draw secret (Authorization: Bearer ...).
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from raffle.clients.store_client import StoreClient, get_store
from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.auth import verify_draw_secret
from raffle.core.errors import EntryValidationError, PostDrawFailure
from raffle.core.rate_limiter import (
    OP_DRAW_TRIGGER,
    OP_STATUS_PROBE,
    POLICY_BY_CALL_SITE,
    SlidingWindowLimiter,
    client_identifier,
)
from raffle.models import (
    ACTION_ALIASES,
    CycleAction,
    CycleStepResult,
    DrawOutcome,
    TriggerRequest,
)
from raffle.services.diagnostics import build_status_report
from raffle.services.draw_engine import DrawEngine
from raffle.services.maintenance import run_maintenance
from raffle.services.reset import reset_cycle

settings = get_settings()

router = APIRouter()


def parse_action(raw: str) -> CycleAction:
    value = raw.strip().lower()
    if value in ACTION_ALIASES:
        return ACTION_ALIASES[value]
    try:
        return CycleAction(value)
    except ValueError:
        valid = [a.value for a in CycleAction] + list(ACTION_ALIASES)
        raise EntryValidationError(
            f"Invalid action. Use one of: {', '.join(valid)}.",
            detail=f"action={raw!r}",
        )


def _respond(result: CycleStepResult, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


# ──────────────────────────────────────────────────────────────────────────────
# POST /trigger/cycle: freeze | draw | reset | status
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/cycle")
def trigger_cycle(
    request: Request,
    body: TriggerRequest,
    _auth: bool = Depends(verify_draw_secret),
    store: StoreClient = Depends(get_store),
) -> JSONResponse:
    action = parse_action(body.action)
    operation_type = OP_STATUS_PROBE if action == CycleAction.STATUS else OP_DRAW_TRIGGER
    SlidingWindowLimiter(store).enforce(
        client_identifier(request), operation_type,
        policy=POLICY_BY_CALL_SITE["draw_trigger"],
        metadata={"action": action.value},
    )
    logger.info(f"Cycle trigger fired: {action.value}")

    if action == CycleAction.FREEZE:
        flag = DrawEngine(store).freeze()
        return _respond(CycleStepResult(
            success=True, action=action,
            message=f"List frozen (cycle is {flag.state.value}).",
        ))

    if action == CycleAction.RESET:
        removed, flag = reset_cycle(store, reason="operator_reset")
        return _respond(CycleStepResult(
            success=True, action=action,
            message=f"List reset: {removed} entries cleared, cycle is {flag.state.value}.",
        ))

    if action == CycleAction.STATUS:
        report = build_status_report(store)
        return _respond(CycleStepResult(
            success=report.store_reachable, action=action,
            message="Store reachable." if report.store_reachable else "Store unreachable.",
            status=report,
        ))

    return _run_draw(store)


def _run_draw(store: StoreClient) -> JSONResponse:
    try:
        outcome = DrawEngine(store).run_draw_sequence()
    except PostDrawFailure as exc:
        app_logging.log_error(
            "triggers", "draw_sequence", exc,
            context={"step": exc.step, "draw_id": getattr(exc.draw, "id", None)},
            critical=True,
        )
        errors = [f"{exc.step} failed"]
        if not settings.is_production:
            errors.append(exc.detail)
        outcome = DrawOutcome(
            realized=True,
            roster_size=exc.draw.roster_size,
            draw=exc.draw,
            archived=False,
            errors=errors,
        )
        return _respond(
            CycleStepResult(
                success=False, action=CycleAction.DRAW,
                message=(
                    f"Winner {exc.draw.winner_name} (#{exc.draw.sequence_number}) is recorded, "
                    f"but the {exc.step} step failed. The list was not reset."
                ),
                outcome=outcome,
            ),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if outcome.realized and outcome.draw is not None:
        message = (
            f"Draw held. Winner: {outcome.draw.winner_name} "
            f"(#{outcome.draw.sequence_number} of {outcome.roster_size})."
        )
        if not outcome.reset:
            message += " The list could not be reset; run a reset."
    else:
        message = outcome.reason or "The draw was not held."

    return _respond(CycleStepResult(
        success=not outcome.errors, action=CycleAction.DRAW, message=message, outcome=outcome,
    ))


# ──────────────────────────────────────────────────────────────────────────────
# POST /trigger/maintenance: prune rate-limit records and old archives
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/maintenance")
def trigger_maintenance(
    _auth: bool = Depends(verify_draw_secret),
    store: StoreClient = Depends(get_store),
) -> dict[str, Any]:
    report = run_maintenance(store)
    return {"success": not report["errors"], **report}
