"""
raffle/core/logging.py — loguru structured JSON logging setup
Every lifecycle event (admission, rate-limit decision, state transition,
draw, store call, error) is emitted as one JSON record on stdout.
"""
from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

from loguru import logger


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure loguru for structured JSON output to stdout.
    The hosting platform captures stdout; nothing is written to disk.
    """
    # Remove default loguru handler
    logger.remove()

    logger.add(
        sys.stdout,
        level=log_level.upper(),
        format="{message}",
        serialize=True,
        backtrace=True,
        diagnose=False,
        colorize=False,
    )


def _build_log_record(
    component: str,
    operation: str,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build a base structured log record."""
    record: dict[str, Any] = {
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "component": component,
        "operation": operation,
    }
    if extra:
        record.update(extra)
    return record


# ──────────────────────────────────────────────────────────────────────────────
# Mandatory log event helpers
# ──────────────────────────────────────────────────────────────────────────────

def log_admission(
    operation: str,  # single | batch
    identifier: str,
    requested: int,
    inserted: int,
    strategy: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Every admission attempt that reaches the roster is logged."""
    record = _build_log_record("admission", operation, {
        "identifier": identifier,
        "requested": requested,
        "inserted": inserted,
        "failed": requested - inserted,
        "strategy": strategy,
        "error": error,
    })
    logger.info(json.dumps(record))


def log_rate_limit(
    identifier: str,
    operation_type: str,
    allowed: bool,
    remaining: int,
    policy: str,
    degraded: bool = False,
    retry_after_seconds: Optional[int] = None,
) -> None:
    """Every limiter decision is logged; denials and degraded checks at WARNING."""
    record = _build_log_record("rate_limiter", "check", {
        "identifier": identifier,
        "operation_type": operation_type,
        "allowed": allowed,
        "remaining": remaining,
        "policy": policy,
        "degraded": degraded,
        "retry_after_seconds": retry_after_seconds,
    })
    if allowed and not degraded:
        logger.debug(json.dumps(record))
    else:
        logger.warning(json.dumps(record))


def log_state_transition(
    old_state: str,
    new_state: str,
    version: int,
    trigger_reason: str,
) -> None:
    """Every cycle state transition is logged."""
    record = _build_log_record("cycle_state", "state_transition", {
        "old_state": old_state,
        "new_state": new_state,
        "version": version,
        "trigger_reason": trigger_reason,
    })
    logger.info(json.dumps(record))


def log_draw(
    realized: bool,
    roster_size: int,
    draw_id: Optional[int] = None,
    sequence_number: Optional[int] = None,
    winner_name: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Every draw attempt is logged, realized or not."""
    record = _build_log_record("draw_engine", "draw", {
        "realized": realized,
        "roster_size": roster_size,
        "draw_id": draw_id,
        "sequence_number": sequence_number,
        "winner_name": winner_name,
        "reason": reason,
    })
    logger.info(json.dumps(record))


def log_store_call(
    target: str,
    operation: str,  # select | insert | update | upsert | delete | count
    success: bool,
    latency_ms: float,
    rows: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    """Every store round-trip is logged."""
    record = _build_log_record("store_client", operation, {
        "target": target,
        "success": success,
        "latency_ms": round(latency_ms, 2),
        "rows": rows,
        "error": error,
    })
    if success:
        logger.debug(json.dumps(record))
    else:
        logger.warning(json.dumps(record))


def log_error(
    component: str,
    operation: str,
    error: Exception,
    context: Optional[dict[str, Any]] = None,
    critical: bool = False,
) -> None:
    """Every error is logged with full context."""
    tb = traceback.format_exc()
    record = _build_log_record(component, operation, {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "stack_trace": tb[:2000] if tb else "",
        "context": context or {},
    })
    if critical:
        logger.critical(json.dumps(record))
    else:
        logger.error(json.dumps(record))
