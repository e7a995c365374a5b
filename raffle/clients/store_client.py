"""
raffle/clients/store_client.py — Supabase (PostgREST) client over httpx
All durable state goes through this module: roster, cycle state, draw
records, roster snapshots, rate-limit records.
Every call is bounded by `store_timeout_seconds`; transport errors,
timeouts and HTTP >= 400 surface as StoreUnavailableError.
"""
from __future__ import annotations

import time
from functools import lru_cache
from typing import Any, Optional

import httpx

from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import StoreUnavailableError

# ──────────────────────────────────────────────────────────────────────────────
# Table layout
# ──────────────────────────────────────────────────────────────────────────────
ROSTER_TABLE = "roster_entries"
CONFIG_TABLE = "cycle_config"
DRAWS_TABLE = "draw_records"
SNAPSHOT_TABLE = "roster_snapshots"
RATE_LIMIT_TABLE = "rate_limit_records"

Filters = dict[str, str]


def _parse_count(response: httpx.Response) -> int:
    """Read the total from a `Content-Range: 0-9/42` (or `*/0`) header."""
    content_range = response.headers.get("content-range", "")
    total = content_range.rsplit("/", 1)[-1]
    if total.isdigit():
        return int(total)
    return 0


class StoreClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=f"{self.base_url}/rest/v1",
            timeout=timeout_s,
            transport=transport,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self.client.close()

    # ── Low-level request ────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        target: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        start = time.monotonic()
        try:
            response = self.client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            latency = (time.monotonic() - start) * 1000
            app_logging.log_store_call(target, operation, False, latency, error=str(exc))
            raise StoreUnavailableError(detail=f"{operation} {target}: {type(exc).__name__}: {exc}") from exc

        latency = (time.monotonic() - start) * 1000
        if response.status_code >= 400:
            body = response.text[:300]
            app_logging.log_store_call(
                target, operation, False, latency,
                error=f"HTTP {response.status_code}: {body}",
            )
            raise StoreUnavailableError(
                detail=f"{operation} {target}: HTTP {response.status_code}: {body}"
            )

        app_logging.log_store_call(target, operation, True, latency)
        return response

    # ── Table operations ─────────────────────────────────────────────────────

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """SELECT rows. `order` uses PostgREST syntax, e.g. `id.asc`."""
        params: dict[str, Any] = dict(filters or {})
        params["select"] = columns
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset:
            params["offset"] = offset
        response = self._request("GET", f"/{table}", table, "select", params=params)
        return response.json()

    def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        returning: bool = True,
    ) -> list[dict[str, Any]]:
        """INSERT one or many rows in a single statement."""
        prefer = "return=representation" if returning else "return=minimal"
        response = self._request("POST", f"/{table}", table, "insert", json=rows, prefer=prefer)
        return response.json() if returning else []

    def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Filters,
    ) -> list[dict[str, Any]]:
        """
        Conditional UPDATE. Returns the rows actually changed, so an empty list
        means the filter matched nothing (e.g. a lost compare-and-set).
        """
        response = self._request(
            "PATCH", f"/{table}", table, "update",
            params=dict(filters), json=values, prefer="return=representation",
        )
        return response.json()

    def upsert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        on_conflict: str,
        ignore_duplicates: bool = False,
    ) -> list[dict[str, Any]]:
        """
        INSERT ... ON CONFLICT. With `ignore_duplicates` an existing row is left
        untouched and comes back as an empty result.
        """
        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        response = self._request(
            "POST", f"/{table}", table, "upsert",
            params={"on_conflict": on_conflict}, json=rows,
            prefer=f"resolution={resolution},return=representation",
        )
        return response.json()

    def delete(self, table: str, filters: Filters) -> int:
        """DELETE matching rows; returns how many were removed."""
        if not filters:
            # PostgREST refuses unfiltered deletes; callers must be explicit
            raise ValueError("delete requires at least one filter")
        response = self._request(
            "DELETE", f"/{table}", table, "delete",
            params=dict(filters), prefer="return=minimal,count=exact",
        )
        return _parse_count(response)

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        response = self._request(
            "HEAD", f"/{table}", table, "count",
            params={**(filters or {}), "select": "*"}, prefer="count=exact",
        )
        return _parse_count(response)

    def ping(self) -> bool:
        """Lightweight connectivity check against the config table."""
        try:
            self.select(CONFIG_TABLE, columns="key", limit=1)
            return True
        except StoreUnavailableError:
            return False


@lru_cache()
def get_store() -> StoreClient:
    """Return the process-wide store client. Overridden in tests."""
    settings = get_settings()
    return StoreClient(
        base_url=settings.supabase_url,
        api_key=settings.supabase_service_key,
        timeout_s=settings.store_timeout_seconds,
    )
