"""
raffle/services/roster.py — Candidate roster (the open cycle's entrants)
Add, bulk-add, read in admission order, clear. Frozen checks and rate
limiting are the admission service's job; this module only touches rows.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from raffle.clients.store_client import ROSTER_TABLE, StoreClient
from raffle.core.errors import StoreUnavailableError
from raffle.models import CandidateEntry, InsertResult
from raffle.utils.strategies import run_strategies
from raffle.utils.timezone import parse_iso
from raffle.utils.validators import parse_rows

# Identity column gives insertion order; admitted_at can tie within a bulk insert
ADMISSION_ORDER = "id.asc"
READ_PAGE_SIZE = 1000


def _row_to_entry(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    if isinstance(data.get("admitted_at"), str):
        data["admitted_at"] = parse_iso(data["admitted_at"])
    return data


def insert_rows_with_fallback(
    store: StoreClient,
    table: str,
    rows: list[dict[str, Any]],
    context: str,
) -> InsertResult:
    """
    Insert `rows` as one statement; if that fails, insert them one at a time,
    counting failures instead of aborting. Raises StoreUnavailableError only
    when not a single row could be written.
    """

    def bulk() -> InsertResult:
        store.insert(table, rows, returning=False)
        return InsertResult(requested=len(rows), inserted=len(rows), strategy="bulk")

    def row_by_row() -> InsertResult:
        inserted = 0
        last_error: StoreUnavailableError | None = None
        for row in rows:
            try:
                store.insert(table, [row], returning=False)
                inserted += 1
            except StoreUnavailableError as exc:
                last_error = exc
        if inserted == 0 and last_error is not None:
            raise last_error
        if inserted < len(rows):
            logger.warning(f"[{context}] row-by-row insert: {inserted}/{len(rows)} rows written")
        return InsertResult(requested=len(rows), inserted=inserted, strategy="row_by_row")

    return run_strategies([("bulk", bulk), ("row_by_row", row_by_row)], context=context)


class RosterStore:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    def add_one(self, entry: CandidateEntry) -> CandidateEntry:
        rows = self.store.insert(ROSTER_TABLE, [entry.to_row()])
        created = parse_rows(CandidateEntry, rows, ROSTER_TABLE, mapper=_row_to_entry)
        return created[0] if created else entry

    def add_many(self, entry: CandidateEntry, count: int) -> InsertResult:
        """`count` identical rows: one bulk insert, per-row fallback on failure."""
        rows = [entry.to_row() for _ in range(count)]
        return insert_rows_with_fallback(self.store, ROSTER_TABLE, rows, context="roster.add_many")

    def read_all(self, strict: bool = True) -> list[CandidateEntry]:
        """
        Full roster in admission order. This is the authoritative draw pool.
        Paged, since PostgREST caps a single response at its max-rows setting.

        With `strict`, a row that does not parse raises StoreUnavailableError
        instead of being skipped.
        """
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = self.store.select(
                ROSTER_TABLE, order=ADMISSION_ORDER, limit=READ_PAGE_SIZE, offset=offset,
            )
            rows.extend(page)
            if len(page) < READ_PAGE_SIZE:
                break
            offset += READ_PAGE_SIZE
        entries = parse_rows(CandidateEntry, rows, ROSTER_TABLE, mapper=_row_to_entry)
        if strict and len(entries) != len(rows):
            raise StoreUnavailableError(
                detail=f"{ROSTER_TABLE}: {len(rows) - len(entries)} of {len(rows)} rows unreadable",
            )
        return entries

    def count(self) -> int:
        return self.store.count(ROSTER_TABLE)

    def clear(self) -> int:
        """Delete every row. Idempotent; returns how many were removed."""
        return self.store.delete(ROSTER_TABLE, {"id": "not.is.null"})
