"""
raffle/models.py — All Pydantic data schemas
Persisted rows (roster, cycle state, draw records, snapshots, rate-limit
records), in-flight outcomes, and request/response bodies.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────────────────────
# Enumerations
# ──────────────────────────────────────────────────────────────────────────────

class RewardPlatform(str, Enum):
    TWITCH = "twitch"
    YOUTUBE = "youtube"
    STEAM = "steam"
    XBOX = "xbox"
    PLAYSTATION = "playstation"
    DISCORD = "discord"


class CycleState(str, Enum):
    OPEN = "open"
    FROZEN = "frozen"
    DRAWN = "drawn"


class FailurePolicy(str, Enum):
    # Store unreachable → allow (availability first)
    OPEN = "fail_open"
    # Store unreachable → deny (security first)
    CLOSED = "fail_closed"


class CycleAction(str, Enum):
    FREEZE = "freeze"
    DRAW = "draw"
    RESET = "reset"
    STATUS = "status"


# Operator-facing aliases accepted by the trigger endpoint
ACTION_ALIASES: dict[str, CycleAction] = {
    "congelar": CycleAction.FREEZE,
    "sorteio": CycleAction.DRAW,
    "resetar": CycleAction.RESET,
    "diagnostico": CycleAction.STATUS,
}


# ──────────────────────────────────────────────────────────────────────────────
# Persisted rows
# ──────────────────────────────────────────────────────────────────────────────

class CandidateEntry(BaseModel):
    id: Optional[int] = None
    display_name: str
    chosen_affiliate: str
    reward_platform: RewardPlatform = RewardPlatform.TWITCH
    admitted_at: Optional[datetime] = None

    def to_row(self) -> dict[str, Any]:
        return {
            "display_name": self.display_name,
            "chosen_affiliate": self.chosen_affiliate,
            "reward_platform": self.reward_platform.value,
        }


class CycleFlag(BaseModel):
    """The single `cycle_state` row. `frozen` is derived from `state`."""

    key: str = "cycle_state"
    state: CycleState = CycleState.OPEN
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def frozen(self) -> bool:
        return self.state != CycleState.OPEN


class DrawRecord(BaseModel):
    id: Optional[int] = None
    drawn_at: datetime
    winner_name: str
    winner_affiliate: str
    reward_platform: RewardPlatform
    # 1-based position of the winner in the roster read used for selection
    sequence_number: int = Field(ge=1)
    roster_size: int = Field(ge=1)
    # Cycle-state version claimed by this draw; links a record to its cycle
    cycle_version: int = 0


class RosterSnapshotEntry(BaseModel):
    draw_id: int
    display_name: str
    chosen_affiliate: str
    reward_platform: RewardPlatform
    original_position: int = Field(ge=1)


class RateLimitRecord(BaseModel):
    identifier: str
    operation_type: str
    observed_at: datetime
    consecutive_attempts: int = 1
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────────────────────
# In-flight results (not persisted)
# ──────────────────────────────────────────────────────────────────────────────

class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    operation_type: str
    policy: FailurePolicy
    retry_after_seconds: Optional[int] = None
    # True when the store could not be consulted and the policy decided
    degraded: bool = False


class InsertResult(BaseModel):
    requested: int
    inserted: int
    strategy: str

    @property
    def failed(self) -> int:
        return self.requested - self.inserted


class DrawOutcome(BaseModel):
    realized: bool
    reason: Optional[str] = None
    roster_size: int = 0
    draw: Optional[DrawRecord] = None
    archived: bool = False
    reset: bool = False
    errors: list[str] = []


class LastDrawSummary(BaseModel):
    id: int
    winner_name: str
    winner_affiliate: str
    reward_platform: RewardPlatform
    sequence_number: int
    drawn_at: datetime
    drawn_on_local: str
    snapshot_available: Optional[bool] = None


class StatusReport(BaseModel):
    # None when the store could not be read
    state: Optional[CycleState] = None
    frozen: Optional[bool] = None
    version: Optional[int] = None
    roster_size: Optional[int] = None
    last_draw: Optional[LastDrawSummary] = None
    store_reachable: bool
    environment: str
    checked_at: datetime


# ──────────────────────────────────────────────────────────────────────────────
# API request / response bodies
# ──────────────────────────────────────────────────────────────────────────────

class EntryRequest(BaseModel):
    display_name: str = Field(default="", max_length=200)
    chosen_affiliate: str = Field(default="", max_length=200)
    reward_platform: RewardPlatform = RewardPlatform.TWITCH


class BatchEntryRequest(EntryRequest):
    count: int = Field(ge=1, le=10)


class AdmissionResponse(BaseModel):
    success: bool
    message: str
    requested: int
    inserted: int
    failed: int = 0


class RateLimitCheckRequest(BaseModel):
    operation_type: str


class TriggerRequest(BaseModel):
    action: str


class CycleStepResult(BaseModel):
    success: bool
    action: CycleAction
    message: str
    outcome: Optional[DrawOutcome] = None
    status: Optional[StatusReport] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class DrawDetail(BaseModel):
    draw: DrawRecord
    snapshot: list[RosterSnapshotEntry]
    # False once retention pruned the snapshot, or if it was never completed
    snapshot_available: bool = True
