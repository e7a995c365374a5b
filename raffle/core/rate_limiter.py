"""
raffle/core/rate_limiter.py — Rate limiting
Two layers:
  1. slowapi `limiter`: per-instance coarse HTTP throttle on public reads.
  2. SlidingWindowLimiter: store-backed admission control keyed by
     (identifier, operation_type). This is the one that deters entry
     stuffing, because its window is shared by every instance.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from fastapi import Request
from slowapi import Limiter

from raffle.clients.store_client import RATE_LIMIT_TABLE, StoreClient
from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import RateLimitedError, StoreUnavailableError
from raffle.models import FailurePolicy, RateLimitDecision
from raffle.utils.timezone import cutoff_before, parse_iso, to_iso, utc_now

settings = get_settings()

# ── Operation types ──────────────────────────────────────────────────────────
OP_ADMISSION_INDIVIDUAL = "admission_individual"
OP_ADMISSION_BATCH = "admission_batch"
OP_DRAW_TRIGGER = "draw_trigger"
OP_STATUS_PROBE = "status_probe"
OP_API_CALL = "api_call"

# Operation types a client may ask the verification endpoint about
VERIFIABLE_OPERATIONS = (OP_ADMISSION_INDIVIDUAL, OP_ADMISSION_BATCH)

# ── Failure policy per call site ─────────────────────────────────────────────
# General API calls prefer availability; the verification endpoint backs
# sensitive flows and prefers security.
POLICY_BY_CALL_SITE: dict[str, FailurePolicy] = {
    "admission": FailurePolicy.OPEN,
    "draw_trigger": FailurePolicy.OPEN,
    "verification": FailurePolicy.CLOSED,
}


def client_identifier(request: Request) -> str:
    """
    Network origin of the caller: first X-Forwarded-For hop, then X-Real-IP,
    then the socket peer. IPv4-mapped IPv6 prefixes are stripped.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    if not ip:
        ip = request.headers.get("x-real-ip", "").strip()
    if not ip and request.client:
        ip = request.client.host
    ip = ip or "unknown"
    if ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    return ip


# Single shared slowapi instance: imported by main.py and routers
limiter = Limiter(key_func=client_identifier, storage_uri=settings.http_limiter_storage_uri)

HTTP_RATE_LIMITS = {
    # Public roster display
    "public_read": "60/minute",
    "health": "30/minute",
    "ping": "60/minute",
}


class SlidingWindowLimiter:
    """
    Sliding-window limiter over the `rate_limit_records` table.
    Allowed checks append one record; denied checks write nothing, so a
    client hammering a closed window does not extend it.
    """

    def __init__(
        self,
        store: StoreClient,
        limits: Optional[dict[str, dict[str, int]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.limits = limits if limits is not None else settings.rate_limits
        self.clock = clock

    def limits_for(self, operation_type: str) -> dict[str, int]:
        """Unknown operation types fall back to the generic api_call limits."""
        return self.limits.get(operation_type) or self.limits[OP_API_CALL]

    def _window_records(
        self,
        identifier: str,
        operation_type: str,
        window_seconds: int,
        now: datetime,
    ) -> list[dict[str, Any]]:
        window_start = now - timedelta(seconds=window_seconds)
        return self.store.select(
            RATE_LIMIT_TABLE,
            filters={
                "identifier": f"eq.{identifier}",
                "operation_type": f"eq.{operation_type}",
                "observed_at": f"gte.{to_iso(window_start)}",
            },
            columns="observed_at",
            order="observed_at.asc",
        )

    def _degraded(
        self,
        identifier: str,
        operation_type: str,
        policy: FailurePolicy,
        max_requests: int,
    ) -> RateLimitDecision:
        if policy == FailurePolicy.OPEN:
            decision = RateLimitDecision(
                allowed=True, remaining=max_requests, operation_type=operation_type,
                policy=policy, degraded=True,
            )
        else:
            decision = RateLimitDecision(
                allowed=False, remaining=0, operation_type=operation_type,
                policy=policy, degraded=True,
                retry_after_seconds=settings.fail_closed_retry_seconds,
            )
        app_logging.log_rate_limit(
            identifier, operation_type, decision.allowed, decision.remaining,
            policy.value, degraded=True, retry_after_seconds=decision.retry_after_seconds,
        )
        return decision

    def check(
        self,
        identifier: str,
        operation_type: str,
        policy: FailurePolicy = FailurePolicy.OPEN,
        limits: Optional[dict[str, int]] = None,
        record: bool = True,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RateLimitDecision:
        """
        Count records for (identifier, operation_type) inside the window.
        Under the limit → allowed (and, when `record`, one record appended).
        At or over it → denied with retry_after from the oldest in-window record.
        Store failure → decided by `policy`.
        """
        limits = limits or self.limits_for(operation_type)
        max_requests = limits["max_requests"]
        window_seconds = limits["window_seconds"]
        now = self.clock()

        try:
            records = self._window_records(identifier, operation_type, window_seconds, now)
        except StoreUnavailableError:
            return self._degraded(identifier, operation_type, policy, max_requests)

        attempts = len(records)
        if attempts >= max_requests:
            oldest = parse_iso(records[0]["observed_at"])
            reset_at = oldest + timedelta(seconds=window_seconds)
            retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
            decision = RateLimitDecision(
                allowed=False, remaining=0, operation_type=operation_type,
                policy=policy, retry_after_seconds=retry_after,
            )
            app_logging.log_rate_limit(
                identifier, operation_type, False, 0, policy.value,
                retry_after_seconds=retry_after,
            )
            return decision

        remaining = max_requests - attempts
        if record:
            try:
                self.store.insert(
                    RATE_LIMIT_TABLE,
                    [{
                        "identifier": identifier,
                        "operation_type": operation_type,
                        "observed_at": to_iso(now),
                        "consecutive_attempts": attempts + 1,
                        "metadata": metadata or {},
                    }],
                    returning=False,
                )
            except StoreUnavailableError:
                return self._degraded(identifier, operation_type, policy, max_requests)
            remaining -= 1

        decision = RateLimitDecision(
            allowed=True, remaining=remaining, operation_type=operation_type, policy=policy,
        )
        app_logging.log_rate_limit(identifier, operation_type, True, remaining, policy.value)
        return decision

    def check_and_record(
        self,
        identifier: str,
        operation_type: str,
        policy: FailurePolicy = FailurePolicy.OPEN,
        limits: Optional[dict[str, int]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RateLimitDecision:
        return self.check(identifier, operation_type, policy, limits, record=True, metadata=metadata)

    def enforce(
        self,
        identifier: str,
        operation_type: str,
        policy: FailurePolicy = FailurePolicy.OPEN,
        metadata: Optional[dict[str, Any]] = None,
    ) -> RateLimitDecision:
        """check_and_record, raising RateLimitedError on denial."""
        decision = self.check_and_record(identifier, operation_type, policy, metadata=metadata)
        if not decision.allowed:
            raise RateLimitedError(
                retry_after_seconds=decision.retry_after_seconds or settings.fail_closed_retry_seconds,
                operation_type=operation_type,
            )
        return decision

    def prune(self, retention_days: Optional[int] = None) -> int:
        """Delete records older than the retention window. Independent of `check`."""
        days = retention_days if retention_days is not None else settings.rate_limit_retention_days
        cutoff = cutoff_before(days=days, now=self.clock())
        return self.store.delete(RATE_LIMIT_TABLE, {"observed_at": f"lt.{to_iso(cutoff)}"})
