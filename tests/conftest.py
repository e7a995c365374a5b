"""
tests/conftest.py — Shared pytest fixtures
The environment is set before any `raffle` import, since settings are
read once at import time.
"""
from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SUPABASE_URL", "http://store.test")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("DRAW_SECRET", "test-draw-secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("ADMIN_PASS", "test-admin-pass")

import copy
import itertools
from collections import defaultdict
from typing import Any, Callable, Optional

import pytest

from raffle.clients.store_client import CONFIG_TABLE, ROSTER_TABLE
from raffle.core.errors import StoreUnavailableError
from raffle.models import CandidateEntry, RewardPlatform
from raffle.utils.timezone import parse_iso, to_iso, utc_now


# ──────────────────────────────────────────────────────────────────────────────
# In-memory store double
# Honours the PostgREST filter syntax the services use (eq, neq, gt, gte,
# lt, lte, in, is.null, not.is.null) and `col.asc,col2.desc` ordering.
# ──────────────────────────────────────────────────────────────────────────────

def _looks_like_timestamp(value: Any) -> bool:
    return isinstance(value, str) and len(value) >= 19 and value[4:5] == "-" and value[10:11] == "T"


def _coerce(value: Any, raw: str) -> tuple[Any, Any]:
    if isinstance(value, bool):
        return value, raw.lower() == "true"
    if isinstance(value, int):
        return value, int(raw)
    if _looks_like_timestamp(value):
        return parse_iso(value), parse_iso(raw)
    return str(value), raw


def _matches(row: dict[str, Any], column: str, expression: str) -> bool:
    value = row.get(column)
    if expression == "is.null":
        return value is None
    if expression == "not.is.null":
        return value is not None
    op, _, raw = expression.partition(".")
    if value is None:
        return False
    if op == "in":
        options = raw.strip("()").split(",")
        return any(_coerce(value, option)[0] == _coerce(value, option)[1] for option in options)
    left, right = _coerce(value, raw)
    return {
        "eq": lambda: left == right,
        "neq": lambda: left != right,
        "gt": lambda: left > right,
        "gte": lambda: left >= right,
        "lt": lambda: left < right,
        "lte": lambda: left <= right,
    }[op]()


def _sort_key(column: str) -> Callable[[dict[str, Any]], tuple]:
    def key(row: dict[str, Any]) -> tuple:
        value = row.get(column)
        if _looks_like_timestamp(value):
            value = parse_iso(value)
        return (value is None, value)
    return key


class FakeStore:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._ids: dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))
        self._failures: list[dict[str, Any]] = []
        self.calls: list[tuple[str, str]] = []

    # ── Fault injection ──────────────────────────────────────────────────────

    def fail(
        self,
        table: str,
        operation: str,
        when: Optional[Callable[[Any], bool]] = None,
        times: Optional[int] = None,
    ) -> None:
        """Make `operation` on `table` ("*" for any) raise StoreUnavailableError."""
        self._failures.append({"table": table, "operation": operation, "when": when, "times": times})

    def heal(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, table: str, operation: str, payload: Any = None) -> None:
        self.calls.append((table, operation))
        for rule in self._failures:
            if rule["table"] not in (table, "*") or rule["operation"] != operation:
                continue
            if rule["when"] is not None and not rule["when"](payload):
                continue
            if rule["times"] is not None:
                if rule["times"] <= 0:
                    continue
                rule["times"] -= 1
            raise StoreUnavailableError(detail=f"injected {operation} failure on {table}")

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _filter(self, table: str, filters: Optional[dict[str, str]]) -> list[dict[str, Any]]:
        rows = self.tables[table]
        for column, expression in (filters or {}).items():
            rows = [row for row in rows if _matches(row, column, expression)]
        return rows

    def _new_row(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", next(self._ids[table]))
        if table == ROSTER_TABLE:
            stored.setdefault("admitted_at", to_iso(utc_now()))
        return stored

    # ── StoreClient surface ──────────────────────────────────────────────────

    def select(
        self,
        table: str,
        filters: Optional[dict[str, str]] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        self._maybe_fail(table, "select", filters)
        rows = list(self._filter(table, filters))
        if order:
            for part in reversed(order.split(",")):
                column, _, direction = part.partition(".")
                rows.sort(key=_sort_key(column), reverse=direction == "desc")
        rows = rows[offset or 0:]
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            return [{c: row.get(c) for c in wanted} for row in rows]
        return copy.deepcopy(rows)

    def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        returning: bool = True,
    ) -> list[dict[str, Any]]:
        self._maybe_fail(table, "insert", rows)
        stored = [self._new_row(table, row) for row in rows]
        self.tables[table].extend(stored)
        return copy.deepcopy(stored) if returning else []

    def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: dict[str, str],
    ) -> list[dict[str, Any]]:
        self._maybe_fail(table, "update", values)
        matched = self._filter(table, filters)
        for row in matched:
            row.update(copy.deepcopy(values))
        return copy.deepcopy(matched)

    def upsert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> list[dict[str, Any]]:
        self._maybe_fail(table, "upsert", rows)
        result = []
        for row in rows:
            existing = [r for r in self.tables[table] if r.get(on_conflict) == row.get(on_conflict)]
            if existing:
                if ignore_duplicates:
                    continue
                existing[0].update(copy.deepcopy(row))
                result.append(copy.deepcopy(existing[0]))
            else:
                stored = self._new_row(table, row)
                self.tables[table].append(stored)
                result.append(copy.deepcopy(stored))
        return result

    def delete(self, table: str, filters: dict[str, str]) -> int:
        if not filters:
            raise ValueError("delete requires at least one filter")
        self._maybe_fail(table, "delete", filters)
        doomed = self._filter(table, filters)
        doomed_ids = {id(row) for row in doomed}
        self.tables[table] = [row for row in self.tables[table] if id(row) not in doomed_ids]
        return len(doomed)

    def count(self, table: str, filters: Optional[dict[str, str]] = None) -> int:
        self._maybe_fail(table, "count", filters)
        return len(self._filter(table, filters))

    def ping(self) -> bool:
        try:
            self.select(CONFIG_TABLE, columns="key", limit=1)
            return True
        except StoreUnavailableError:
            return False

    def close(self) -> None:
        pass

    # ── Test conveniences ────────────────────────────────────────────────────

    def seed_roster(self, *names: str, affiliate: str = "streamer") -> None:
        for name in names:
            self.insert(ROSTER_TABLE, [CandidateEntry(
                display_name=name, chosen_affiliate=affiliate, reward_platform=RewardPlatform.TWITCH,
            ).to_row()])

    def set_state(self, state: str, version: int) -> None:
        self.tables[CONFIG_TABLE] = [{
            "key": "cycle_state", "value": state, "version": version, "updated_at": to_iso(utc_now()),
        }]


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def client(store):
    from fastapi.testclient import TestClient

    from raffle.clients.store_client import get_store
    from raffle.core.rate_limiter import limiter
    from raffle.main import app

    limiter.reset()
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
