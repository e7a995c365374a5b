"""
raffle/services/admission.py — Admitting entrants into the open cycle
Check order: sanitize → validate → frozen → rate limit → insert.
The frozen check runs before the limiter, so a closed list answers
"closed" whatever the caller's rate-limit state is.
"""
from __future__ import annotations

from typing import Any, Optional

from raffle.clients.store_client import StoreClient
from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import EntryValidationError, ListFrozenError, StoreUnavailableError
from raffle.core.rate_limiter import (
    OP_ADMISSION_BATCH,
    OP_ADMISSION_INDIVIDUAL,
    POLICY_BY_CALL_SITE,
    SlidingWindowLimiter,
)
from raffle.models import AdmissionResponse, CandidateEntry, EntryRequest
from raffle.services.cycle_state import CycleStateStore
from raffle.services.roster import RosterStore
from raffle.utils.sanitizer import sanitize

settings = get_settings()


def build_entry(request: EntryRequest) -> CandidateEntry:
    """Sanitize the free-text fields and reject anything left empty."""
    display_name = sanitize(request.display_name, settings.max_field_length)
    chosen_affiliate = sanitize(request.chosen_affiliate, settings.max_field_length)

    missing = [
        label for label, value in (("name", display_name), ("affiliate", chosen_affiliate))
        if not value
    ]
    if missing:
        raise EntryValidationError(
            f"Please fill in a valid {' and '.join(missing)}.",
            detail=f"empty after sanitizing: {missing}",
        )
    return CandidateEntry(
        display_name=display_name,
        chosen_affiliate=chosen_affiliate,
        reward_platform=request.reward_platform,
    )


class AdmissionService:
    def __init__(
        self,
        store: StoreClient,
        limiter: Optional[SlidingWindowLimiter] = None,
    ) -> None:
        self.cycle = CycleStateStore(store)
        self.roster = RosterStore(store)
        self.limiter = limiter or SlidingWindowLimiter(store)

    def _ensure_open(self) -> None:
        if self.cycle.is_frozen():
            raise ListFrozenError()

    def admit_one(
        self,
        request: EntryRequest,
        identifier: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AdmissionResponse:
        entry = build_entry(request)
        self._ensure_open()
        self.limiter.enforce(
            identifier, OP_ADMISSION_INDIVIDUAL,
            policy=POLICY_BY_CALL_SITE["admission"], metadata=metadata,
        )

        try:
            self.roster.add_one(entry)
        except StoreUnavailableError as exc:
            app_logging.log_admission("single", identifier, 1, 0, error=exc.detail)
            raise

        app_logging.log_admission("single", identifier, 1, 1)
        return AdmissionResponse(
            success=True,
            message=f"{entry.display_name} was added to the list.",
            requested=1,
            inserted=1,
        )

    def admit_many(
        self,
        request: EntryRequest,
        count: int,
        identifier: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AdmissionResponse:
        """`count` identical entries. Partial inserts are reported, not hidden."""
        if not 1 <= count <= settings.max_batch_size:
            raise EntryValidationError(
                f"You can add between 1 and {settings.max_batch_size} entries at once.",
                detail=f"batch count {count} out of range",
            )
        entry = build_entry(request)
        self._ensure_open()
        self.limiter.enforce(
            identifier, OP_ADMISSION_BATCH,
            policy=POLICY_BY_CALL_SITE["admission"], metadata=metadata,
        )

        try:
            result = self.roster.add_many(entry, count)
        except StoreUnavailableError as exc:
            app_logging.log_admission("batch", identifier, count, 0, error=exc.detail)
            raise

        app_logging.log_admission("batch", identifier, count, result.inserted, strategy=result.strategy)
        if result.failed:
            return AdmissionResponse(
                success=False,
                message=(
                    f"Only {result.inserted} of {count} entries were added. "
                    f"{result.failed} could not be saved."
                ),
                requested=count,
                inserted=result.inserted,
                failed=result.failed,
            )
        return AdmissionResponse(
            success=True,
            message=f"{count} entries added for {entry.display_name}.",
            requested=count,
            inserted=count,
        )
