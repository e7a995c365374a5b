"""
raffle/services/archive.py — Draw records and roster snapshots
A draw is archived as one DrawRecord plus one snapshot row per entrant,
positions 1..N in the exact order used for selection. Records are never
updated after they are written.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from loguru import logger

from raffle.clients.store_client import DRAWS_TABLE, SNAPSHOT_TABLE, StoreClient
from raffle.core.errors import PostDrawFailure, StoreUnavailableError
from raffle.models import CandidateEntry, DrawDetail, DrawRecord, RosterSnapshotEntry
from raffle.services.roster import insert_rows_with_fallback
from raffle.utils.timezone import cutoff_before, parse_iso, to_iso
from raffle.utils.validators import parse_rows


def _row_to_draw(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    if isinstance(data.get("drawn_at"), str):
        data["drawn_at"] = parse_iso(data["drawn_at"])
    return data


def _draw_to_row(draw: DrawRecord) -> dict[str, Any]:
    return {
        "drawn_at": to_iso(draw.drawn_at),
        "winner_name": draw.winner_name,
        "winner_affiliate": draw.winner_affiliate,
        "reward_platform": draw.reward_platform.value,
        "sequence_number": draw.sequence_number,
        "roster_size": draw.roster_size,
        "cycle_version": draw.cycle_version,
    }


def _snapshot_rows(draw_id: int, roster: list[CandidateEntry]) -> list[dict[str, Any]]:
    return [
        {
            "draw_id": draw_id,
            "display_name": entry.display_name,
            "chosen_affiliate": entry.chosen_affiliate,
            "reward_platform": entry.reward_platform.value,
            "original_position": position,
        }
        for position, entry in enumerate(roster, start=1)
    ]


class ArchiveWriter:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    # ── Writes ───────────────────────────────────────────────────────────────

    def archive(self, draw: DrawRecord, roster: list[CandidateEntry]) -> DrawRecord:
        """
        Write the DrawRecord, then the full snapshot.

        Raises StoreUnavailableError if the record itself could not be written
        (nothing persisted). Raises PostDrawFailure if the record was written but
        the snapshot is incomplete; the record is kept either way.
        """
        rows = self.store.insert(DRAWS_TABLE, [_draw_to_row(draw)])
        saved = parse_rows(DrawRecord, rows, DRAWS_TABLE, mapper=_row_to_draw)
        if not saved or saved[0].id is None:
            raise StoreUnavailableError(detail=f"{DRAWS_TABLE}: insert returned no id")
        record = saved[0]

        self._write_snapshot(record, roster, _snapshot_rows(record.id, roster))
        return record

    def complete_snapshot(
        self,
        draw: DrawRecord,
        load_roster: Callable[[], list[CandidateEntry]],
    ) -> int:
        """
        Write whichever snapshot positions of `draw` are missing, rebuilding
        them from `load_roster()`. Used when a previous invocation recorded the
        winner but died before the snapshot finished. Returns rows written; 0
        when the snapshot is already whole, in which case the roster is never
        read.
        """
        if draw.id is None:
            raise ValueError("complete_snapshot needs a persisted draw")

        existing = self.store.select(
            SNAPSHOT_TABLE,
            filters={"draw_id": f"eq.{draw.id}"},
            columns="original_position",
        )
        present = {row["original_position"] for row in existing}
        if all(position in present for position in range(1, draw.roster_size + 1)):
            return 0

        roster = load_roster()
        if len(roster) < draw.roster_size:
            raise PostDrawFailure(
                "archive", draw,
                f"roster has {len(roster)} rows, draw saw {draw.roster_size}; cannot rebuild snapshot",
            )
        roster = roster[:draw.roster_size]
        winner = roster[draw.sequence_number - 1]
        if (winner.display_name, winner.chosen_affiliate) != (draw.winner_name, draw.winner_affiliate):
            raise PostDrawFailure(
                "archive", draw,
                f"roster position {draw.sequence_number} no longer holds the recorded winner",
            )

        missing = [
            row for row in _snapshot_rows(draw.id, roster)
            if row["original_position"] not in present
        ]
        self._write_snapshot(draw, roster, missing)
        return len(missing)

    def _write_snapshot(
        self,
        draw: DrawRecord,
        roster: list[CandidateEntry],
        rows: list[dict[str, Any]],
    ) -> None:
        try:
            result = insert_rows_with_fallback(
                self.store, SNAPSHOT_TABLE, rows, context=f"archive.snapshot[{draw.id}]",
            )
        except StoreUnavailableError as exc:
            raise PostDrawFailure("archive", draw, exc.detail) from exc
        if result.inserted < result.requested:
            raise PostDrawFailure(
                "archive", draw,
                f"snapshot incomplete: {result.inserted}/{result.requested} rows written",
            )
        logger.info(f"Archived draw {draw.id}: {len(roster)} entrants snapshotted ({result.strategy}).")

    # ── Reads ────────────────────────────────────────────────────────────────

    def find_by_cycle(self, cycle_version: int) -> Optional[DrawRecord]:
        rows = self.store.select(
            DRAWS_TABLE, filters={"cycle_version": f"eq.{cycle_version}"}, limit=1,
        )
        records = parse_rows(DrawRecord, rows, DRAWS_TABLE, mapper=_row_to_draw)
        return records[0] if records else None

    def recent(self, limit: int = 10) -> list[DrawRecord]:
        rows = self.store.select(DRAWS_TABLE, order="drawn_at.desc,id.desc", limit=limit)
        return parse_rows(DrawRecord, rows, DRAWS_TABLE, mapper=_row_to_draw)

    def last_draw(self) -> Optional[DrawRecord]:
        records = self.recent(limit=1)
        return records[0] if records else None

    def get(self, draw_id: int) -> Optional[DrawDetail]:
        rows = self.store.select(DRAWS_TABLE, filters={"id": f"eq.{draw_id}"}, limit=1)
        records = parse_rows(DrawRecord, rows, DRAWS_TABLE, mapper=_row_to_draw)
        if not records:
            return None
        snapshot_rows = self.store.select(
            SNAPSHOT_TABLE,
            filters={"draw_id": f"eq.{draw_id}"},
            order="original_position.asc",
        )
        snapshot = parse_rows(RosterSnapshotEntry, snapshot_rows, SNAPSHOT_TABLE)
        return DrawDetail(
            draw=records[0],
            snapshot=snapshot,
            snapshot_available=len(snapshot) == records[0].roster_size,
        )

    def snapshot_available(self, draw: DrawRecord) -> bool:
        """True while every snapshot position of `draw` is still stored."""
        if draw.id is None:
            return False
        return self.store.count(SNAPSHOT_TABLE, {"draw_id": f"eq.{draw.id}"}) == draw.roster_size

    # ── Retention ────────────────────────────────────────────────────────────

    def prune(self, snapshot_days: int, draw_days: int) -> dict[str, int]:
        """
        Delete snapshot rows of draws older than `snapshot_days` and draw records
        older than `draw_days`. The most recent draw is always kept whole.
        """
        latest = self.last_draw()
        keep_filter = {"id": f"neq.{latest.id}"} if latest and latest.id is not None else {}

        old_draws = self.store.select(
            DRAWS_TABLE,
            filters={"drawn_at": f"lt.{to_iso(cutoff_before(days=snapshot_days))}", **keep_filter},
            columns="id",
        )
        snapshots_removed = 0
        old_ids = [row["id"] for row in old_draws]
        if old_ids:
            id_list = ",".join(str(i) for i in old_ids)
            snapshots_removed = self.store.delete(SNAPSHOT_TABLE, {"draw_id": f"in.({id_list})"})

        draws_removed = self.store.delete(
            DRAWS_TABLE,
            {"drawn_at": f"lt.{to_iso(cutoff_before(days=draw_days))}", **keep_filter},
        )
        return {"snapshots_removed": snapshots_removed, "draws_removed": draws_removed}
