"""
tests/test_draw_engine.py — Unit tests for the cycle state machine
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from raffle.clients.store_client import CONFIG_TABLE, DRAWS_TABLE, ROSTER_TABLE, SNAPSHOT_TABLE
from raffle.core.errors import PostDrawFailure, StoreUnavailableError
from raffle.models import CycleState, DrawRecord, RewardPlatform
from raffle.services import draw_engine as draw_engine_module
from raffle.services.archive import ArchiveWriter
from raffle.services.cycle_state import CycleStateStore
from raffle.services.draw_engine import (
    REASON_ALREADY_DRAWN,
    REASON_EMPTY,
    REASON_IN_FLIGHT,
    REASON_NOT_FROZEN,
    DrawEngine,
)
from raffle.services.reset import reset_cycle
from raffle.utils.timezone import to_iso, utc_now


def _engine(store, pick=1):
    return DrawEngine(store, rng=lambda n: pick % n)


def _state(store):
    return CycleStateStore(store).read()


# ──────────────────────────────────────────────────────────────────────────────
# Freeze
# ──────────────────────────────────────────────────────────────────────────────

def test_missing_state_row_reads_open(store):
    flag = _state(store)
    assert flag.state == CycleState.OPEN
    assert flag.version == 0
    assert not flag.frozen


def test_freeze_creates_row_and_is_idempotent(store):
    engine = _engine(store)
    first = engine.freeze()
    second = engine.freeze()
    assert first.state == CycleState.FROZEN
    assert first.version == 1
    assert second.version == 1


def test_unknown_state_value_reads_frozen(store):
    store.tables[CONFIG_TABLE] = [{"key": "cycle_state", "value": "true", "version": 3}]
    assert _state(store).frozen


# ──────────────────────────────────────────────────────────────────────────────
# Draw
# ──────────────────────────────────────────────────────────────────────────────

def test_draw_requires_frozen(store):
    store.seed_roster("Ana")
    outcome = _engine(store).draw()
    assert not outcome.realized
    assert outcome.reason == REASON_NOT_FROZEN
    assert store.tables[DRAWS_TABLE] == []


def test_draw_archives_winner_and_full_snapshot(store):
    store.seed_roster("Ana", "Bia", "Caio", "Davi")
    engine = _engine(store, pick=2)
    engine.freeze()
    outcome = engine.draw()

    assert outcome.realized
    assert outcome.archived
    assert outcome.draw.winner_name == "Caio"
    assert outcome.draw.sequence_number == 3
    assert outcome.draw.roster_size == 4

    snapshot = sorted(store.tables[SNAPSHOT_TABLE], key=lambda r: r["original_position"])
    assert [r["original_position"] for r in snapshot] == [1, 2, 3, 4]
    assert [r["display_name"] for r in snapshot] == ["Ana", "Bia", "Caio", "Davi"]
    assert snapshot[outcome.draw.sequence_number - 1]["display_name"] == outcome.draw.winner_name
    assert _state(store).state == CycleState.DRAWN


def test_winner_index_comes_from_one_rng_call_over_roster_size(store):
    rng = MagicMock(return_value=0)
    store.seed_roster("Ana", "Bia", "Caio")
    engine = DrawEngine(store, rng=rng)
    engine.freeze()
    outcome = engine.draw()
    rng.assert_called_once_with(3)
    assert outcome.draw.sequence_number == 1
    assert outcome.draw.winner_name == "Ana"


def test_empty_roster_is_not_realized_and_stays_frozen(store):
    engine = _engine(store)
    engine.freeze()
    outcome = engine.draw()
    assert not outcome.realized
    assert outcome.reason == REASON_EMPTY
    assert store.tables[DRAWS_TABLE] == []
    assert _state(store).state == CycleState.FROZEN


def test_second_draw_on_same_cycle_is_already_drawn(store):
    store.seed_roster("Ana", "Bia")
    engine = _engine(store)
    engine.freeze()
    assert engine.draw().realized
    second = engine.draw()
    assert not second.realized
    assert second.reason == REASON_ALREADY_DRAWN
    assert len(store.tables[DRAWS_TABLE]) == 1


def test_concurrent_draws_award_one_winner(store):
    store.seed_roster("Ana", "Bia", "Caio")
    _engine(store).freeze()
    stale_flag = _state(store)

    first = _engine(store, pick=0).draw(stale_flag)
    second = _engine(store, pick=2).draw(stale_flag)

    assert first.realized
    assert not second.realized
    assert second.reason == REASON_ALREADY_DRAWN
    assert len(store.tables[DRAWS_TABLE]) == 1


def test_record_failure_releases_claim(store):
    store.seed_roster("Ana")
    engine = _engine(store)
    engine.freeze()
    store.fail(DRAWS_TABLE, "insert")

    with pytest.raises(StoreUnavailableError):
        engine.draw()
    assert _state(store).state == CycleState.FROZEN

    store.heal()
    assert engine.draw().realized


def test_snapshot_failure_keeps_record_and_raises(store):
    store.seed_roster("Ana", "Bia")
    engine = _engine(store)
    engine.freeze()
    store.fail(SNAPSHOT_TABLE, "insert")

    with pytest.raises(PostDrawFailure) as exc_info:
        engine.draw()
    assert exc_info.value.step == "archive"
    assert exc_info.value.draw.id is not None
    assert len(store.tables[DRAWS_TABLE]) == 1
    assert _state(store).state == CycleState.DRAWN


# ──────────────────────────────────────────────────────────────────────────────
# Reset
# ──────────────────────────────────────────────────────────────────────────────

def test_reset_is_idempotent(store):
    store.seed_roster("Ana", "Bia")
    store.set_state("frozen", 4)

    removed, flag = reset_cycle(store)
    assert removed == 2
    assert flag.state == CycleState.OPEN
    assert flag.version == 5

    removed, flag = reset_cycle(store)
    assert removed == 0
    assert flag.state == CycleState.OPEN
    assert store.tables[ROSTER_TABLE] == []


def test_reset_repairs_unknown_state(store):
    store.tables[CONFIG_TABLE] = [{"key": "cycle_state", "value": "garbage", "version": 2}]
    _, flag = reset_cycle(store)
    assert flag.state == CycleState.OPEN


# ──────────────────────────────────────────────────────────────────────────────
# Full sequence
# ──────────────────────────────────────────────────────────────────────────────

def test_sequence_draws_archives_and_resets(store):
    store.seed_roster("Ana", "Bia", "Caio")
    outcome = _engine(store).run_draw_sequence()

    assert outcome.realized
    assert outcome.archived
    assert outcome.reset
    assert outcome.errors == []
    assert store.tables[ROSTER_TABLE] == []
    assert _state(store).state == CycleState.OPEN
    assert len(store.tables[SNAPSHOT_TABLE]) == 3


def test_sequence_on_empty_roster_leaves_cycle_frozen(store):
    outcome = _engine(store).run_draw_sequence()
    assert not outcome.realized
    assert outcome.reason == REASON_EMPTY
    assert _state(store).state == CycleState.FROZEN


def test_sequence_reset_failure_is_reported_not_undone(store):
    store.seed_roster("Ana")
    store.fail(ROSTER_TABLE, "delete")
    outcome = _engine(store).run_draw_sequence()

    assert outcome.realized
    assert not outcome.reset
    assert outcome.errors
    assert len(store.tables[DRAWS_TABLE]) == 1


def _age_draws(store, seconds):
    for row in store.tables[DRAWS_TABLE]:
        row["drawn_at"] = to_iso(utc_now() - timedelta(seconds=seconds))


def test_sequence_resumes_interrupted_archive(store):
    store.seed_roster("Ana", "Bia", "Caio")
    engine = _engine(store)
    engine.freeze()
    store.fail(SNAPSHOT_TABLE, "insert")
    with pytest.raises(PostDrawFailure):
        engine.draw()
    store.heal()
    _age_draws(store, draw_engine_module.settings.draw_resume_grace_seconds + 5)

    outcome = engine.run_draw_sequence()

    assert not outcome.realized
    assert outcome.reason == REASON_ALREADY_DRAWN
    assert outcome.archived
    assert outcome.reset
    assert len(store.tables[DRAWS_TABLE]) == 1
    positions = sorted(r["original_position"] for r in store.tables[SNAPSHOT_TABLE])
    assert positions == [1, 2, 3]
    assert _state(store).state == CycleState.OPEN


def test_sequence_does_not_resume_inside_grace_period(store):
    store.seed_roster("Ana", "Bia")
    engine = _engine(store)
    engine.freeze()
    store.fail(SNAPSHOT_TABLE, "insert")
    with pytest.raises(PostDrawFailure):
        engine.draw()
    store.heal()

    outcome = engine.run_draw_sequence()
    assert outcome.reason == REASON_ALREADY_DRAWN
    assert not outcome.reset
    assert _state(store).state == CycleState.DRAWN
    assert len(store.tables[ROSTER_TABLE]) == 2


def test_sequence_reports_in_flight_when_no_record(store):
    store.set_state("drawn", 7)
    outcome = _engine(store).run_draw_sequence()
    assert not outcome.realized
    assert outcome.reason == REASON_IN_FLIGHT


def test_sequence_recovers_from_reset_that_stopped_after_clearing(store):
    store.seed_roster("Ana", "Bia", "Caio")
    store.set_state("open", 1)
    store.fail(CONFIG_TABLE, "upsert", times=1)
    engine = _engine(store)

    first = engine.run_draw_sequence()
    assert first.realized
    assert not first.reset
    assert store.tables[ROSTER_TABLE] == []
    assert _state(store).state == CycleState.DRAWN

    _age_draws(store, draw_engine_module.settings.draw_resume_grace_seconds + 5)
    second = engine.run_draw_sequence()

    assert second.reason == REASON_ALREADY_DRAWN
    assert second.archived
    assert second.reset
    assert second.errors == []
    assert _state(store).state == CycleState.OPEN
    assert len(store.tables[SNAPSHOT_TABLE]) == 3
    assert len(store.tables[DRAWS_TABLE]) == 1


def test_unreadable_roster_row_blocks_the_draw(store):
    store.seed_roster("Ana", "Bia")
    store.tables[ROSTER_TABLE].append({
        "id": 50, "display_name": "Caio", "chosen_affiliate": "streamer",
        "reward_platform": "myspace", "admitted_at": to_iso(utc_now()),
    })

    with pytest.raises(StoreUnavailableError):
        _engine(store).run_draw_sequence()

    assert store.tables[DRAWS_TABLE] == []
    assert len(store.tables[ROSTER_TABLE]) == 3
    assert _state(store).state == CycleState.FROZEN


# ──────────────────────────────────────────────────────────────────────────────
# Archive reads
# ──────────────────────────────────────────────────────────────────────────────

def test_archive_get_returns_snapshot_in_order(store):
    store.seed_roster("Ana", "Bia")
    outcome = _engine(store).run_draw_sequence()
    detail = ArchiveWriter(store).get(outcome.draw.id)
    assert detail is not None
    assert [s.original_position for s in detail.snapshot] == [1, 2]
    assert ArchiveWriter(store).get(999) is None


def test_archive_prune_keeps_latest_draw(store):
    store.seed_roster("Ana")
    _engine(store).run_draw_sequence()
    store.seed_roster("Bia")
    _engine(store).run_draw_sequence()
    _age_draws(store, 90 * 24 * 3600)

    result = ArchiveWriter(store).prune(snapshot_days=7, draw_days=60)

    assert result == {"snapshots_removed": 1, "draws_removed": 1}
    assert len(store.tables[DRAWS_TABLE]) == 1
    assert len(store.tables[SNAPSHOT_TABLE]) == 1


def test_pruned_snapshot_is_reported_unavailable(store):
    store.seed_roster("Ana", "Bia")
    older = _engine(store).run_draw_sequence().draw
    store.seed_roster("Caio")
    latest = _engine(store).run_draw_sequence().draw
    _age_draws(store, 30 * 24 * 3600)

    archive = ArchiveWriter(store)
    assert archive.prune(snapshot_days=7, draw_days=60) == {"snapshots_removed": 2, "draws_removed": 0}

    pruned = archive.get(older.id)
    assert pruned.snapshot == []
    assert pruned.snapshot_available is False
    assert not archive.snapshot_available(pruned.draw)
    assert archive.get(latest.id).snapshot_available is True


def test_complete_snapshot_needs_a_stored_draw(store):
    draw = DrawRecord(
        drawn_at=utc_now(), winner_name="Ana", winner_affiliate="streamer",
        reward_platform=RewardPlatform.TWITCH, sequence_number=1, roster_size=1,
    )
    with pytest.raises(ValueError):
        ArchiveWriter(store).complete_snapshot(draw, lambda: [])
