"""
raffle/services/draw_engine.py — Cycle state machine: open → frozen → drawn → open
The only code allowed to move a cycle to `drawn`.

Transitions are idempotent so the scheduler, an operator and a retry can
all fire the same sequence without coordinating:
  - freeze on a frozen (or drawn) cycle is a no-op;
  - draw on an empty roster is a normal "not realized" outcome and leaves
    the cycle frozen;
  - draw on a cycle someone else already claimed is "already drawn", never
    a second winner;
  - reset is unconditional.

Single-read discipline: the roster list read before the claim is both the
selection pool and the archived snapshot. It is never re-queried in between.
"""
from __future__ import annotations

import secrets
from typing import Callable, Optional

from loguru import logger

from raffle.clients.store_client import StoreClient
from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import PostDrawFailure, StoreUnavailableError
from raffle.models import CycleFlag, CycleState, DrawOutcome, DrawRecord
from raffle.services.archive import ArchiveWriter
from raffle.services.cycle_state import CycleStateStore
from raffle.services.reset import reset_cycle
from raffle.services.roster import RosterStore
from raffle.utils.timezone import utc_now

settings = get_settings()

REASON_EMPTY = "There are no participants in the list. The draw was not held."
REASON_NOT_FROZEN = "The list is still open. Freeze it before drawing."
REASON_ALREADY_DRAWN = "A winner was already drawn for this cycle."
REASON_IN_FLIGHT = (
    "A draw for this cycle is in progress or stopped before recording a winner. "
    "Retry shortly; if it persists, reset the cycle."
)


class DrawEngine:
    def __init__(
        self,
        store: StoreClient,
        rng: Callable[[int], int] = secrets.randbelow,
    ) -> None:
        self.store = store
        self.cycle = CycleStateStore(store)
        self.roster = RosterStore(store)
        self.archive = ArchiveWriter(store)
        # rng(n) -> uniform int in [0, n)
        self.rng = rng

    # ──────────────────────────────────────────────────────────────────────────
    # Open → Frozen
    # ──────────────────────────────────────────────────────────────────────────

    def freeze(self) -> CycleFlag:
        """Close the list to admissions. No-op unless the cycle is open."""
        flag = self.cycle.read()
        if flag.state != CycleState.OPEN:
            logger.debug(f"Freeze skipped: cycle already {flag.state.value}.")
            return flag

        claimed = self.cycle.transition(flag, CycleState.FROZEN, reason="freeze")
        if claimed is not None:
            return claimed
        # Lost to a concurrent writer; whatever it did, report the current state
        return self.cycle.read()

    # ──────────────────────────────────────────────────────────────────────────
    # Frozen → Drawn
    # ──────────────────────────────────────────────────────────────────────────

    def draw(self, flag: Optional[CycleFlag] = None) -> DrawOutcome:
        """
        Select and archive one winner. Does not reset.

        Raises StoreUnavailableError if no winner could be recorded (the claim
        is handed back so the next trigger can retry), PostDrawFailure if the
        winner was recorded but the snapshot is incomplete.
        """
        flag = flag or self.cycle.read()
        if flag.state == CycleState.OPEN:
            return self._not_realized(REASON_NOT_FROZEN, 0)
        if flag.state == CycleState.DRAWN:
            return self._not_realized(REASON_ALREADY_DRAWN, 0)

        roster = self.roster.read_all()
        if not roster:
            return self._not_realized(REASON_EMPTY, 0)

        # Optimistic claim: only succeeds if the state row is unchanged since `flag`
        claimed = self.cycle.transition(flag, CycleState.DRAWN, reason="draw")
        if claimed is None:
            return self._not_realized(REASON_ALREADY_DRAWN, len(roster))

        index = self.rng(len(roster))
        winner = roster[index]
        record = DrawRecord(
            drawn_at=utc_now(),
            winner_name=winner.display_name,
            winner_affiliate=winner.chosen_affiliate,
            reward_platform=winner.reward_platform,
            sequence_number=index + 1,
            roster_size=len(roster),
            cycle_version=claimed.version,
        )

        try:
            record = self.archive.archive(record, roster)
        except StoreUnavailableError:
            self._release_claim(claimed)
            raise

        app_logging.log_draw(
            True, len(roster), draw_id=record.id,
            sequence_number=record.sequence_number, winner_name=record.winner_name,
        )
        return DrawOutcome(realized=True, roster_size=len(roster), draw=record, archived=True)

    def _release_claim(self, claimed: CycleFlag) -> None:
        """Nothing was recorded; hand the cycle back to `frozen` for a retry."""
        try:
            released = self.cycle.transition(claimed, CycleState.FROZEN, reason="draw_record_failed")
        except StoreUnavailableError as exc:
            app_logging.log_error("draw_engine", "release_claim", exc, critical=True)
            return
        if released is None:
            logger.warning("Could not hand back draw claim: cycle state changed underneath.")

    def _not_realized(self, reason: str, roster_size: int) -> DrawOutcome:
        app_logging.log_draw(False, roster_size, reason=reason)
        return DrawOutcome(realized=False, reason=reason, roster_size=roster_size)

    # ──────────────────────────────────────────────────────────────────────────
    # Drawn → Open
    # ──────────────────────────────────────────────────────────────────────────

    def reset(self, reason: str = "reset") -> CycleFlag:
        _, flag = reset_cycle(self.store, reason)
        return flag

    def _reset_after_draw(self, outcome: DrawOutcome) -> None:
        """A reset failure is logged but never undoes the recorded winner."""
        try:
            self.reset(reason="post_draw")
            outcome.reset = True
        except StoreUnavailableError as exc:
            app_logging.log_error(
                "draw_engine", "post_draw_reset", exc,
                context={"draw_id": outcome.draw.id if outcome.draw else None},
                critical=True,
            )
            outcome.errors.append(f"reset failed: {exc.detail}")

    # ──────────────────────────────────────────────────────────────────────────
    # Full sequence: Freeze → Draw → Archive → Reset
    # ──────────────────────────────────────────────────────────────────────────

    def run_draw_sequence(self) -> DrawOutcome:
        """
        One logical draw. Safe to re-invoke: a cycle left in `drawn` by an
        earlier partial failure is finished (snapshot completed, reset) instead
        of drawn again.
        """
        flag = self.freeze()

        if flag.state == CycleState.DRAWN:
            return self._resume(flag)

        outcome = self.draw(flag)
        if outcome.realized:
            self._reset_after_draw(outcome)
        return outcome

    def _resume(self, flag: CycleFlag) -> DrawOutcome:
        """Finish the bookkeeping of a draw that an earlier invocation started."""
        record = self.archive.find_by_cycle(flag.version)
        if record is None:
            return self._not_realized(REASON_IN_FLIGHT, 0)

        age = (utc_now() - record.drawn_at).total_seconds()
        if age < settings.draw_resume_grace_seconds:
            # The original invocation may still be writing its snapshot
            outcome = self._not_realized(REASON_ALREADY_DRAWN, record.roster_size)
            outcome.draw = record
            return outcome

        written = self.archive.complete_snapshot(record, self.roster.read_all)
        if written:
            logger.warning(f"Completed snapshot of draw {record.id}: {written} missing rows written.")

        outcome = DrawOutcome(
            realized=False,
            reason=REASON_ALREADY_DRAWN,
            roster_size=record.roster_size,
            draw=record,
            archived=True,
        )
        self._reset_after_draw(outcome)
        return outcome
