"""
raffle/services/maintenance.py — Periodic pruning
Rate-limit records past their retention window, and archive rows past
theirs. Runs from the maintenance trigger, never from a request path.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from raffle.clients.store_client import StoreClient
from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import StoreUnavailableError
from raffle.core.rate_limiter import SlidingWindowLimiter
from raffle.services.archive import ArchiveWriter

settings = get_settings()


def prune_rate_limit_records(store: StoreClient, retention_days: int | None = None) -> int:
    """Delete rate-limit records older than the retention window."""
    removed = SlidingWindowLimiter(store).prune(retention_days)
    logger.info(f"Pruned {removed} rate-limit records.")
    return removed


def prune_archive(
    store: StoreClient,
    snapshot_days: int | None = None,
    draw_days: int | None = None,
) -> dict[str, int]:
    """Delete old snapshot rows and old draw records. The latest draw is kept."""
    result = ArchiveWriter(store).prune(
        snapshot_days if snapshot_days is not None else settings.snapshot_retention_days,
        draw_days if draw_days is not None else settings.draw_retention_days,
    )
    logger.info(
        f"Pruned archive: {result['snapshots_removed']} snapshot rows, "
        f"{result['draws_removed']} draw records."
    )
    return result


def run_maintenance(store: StoreClient) -> dict[str, Any]:
    """
    Run every pruning task. One task failing does not stop the others;
    failures are reported per task.
    """
    report: dict[str, Any] = {"errors": []}

    try:
        report["rate_limit_records_removed"] = prune_rate_limit_records(store)
    except StoreUnavailableError as exc:
        app_logging.log_error("maintenance", "prune_rate_limit_records", exc)
        report["errors"].append(f"rate limit pruning failed: {exc.detail}")

    try:
        report.update(prune_archive(store))
    except StoreUnavailableError as exc:
        app_logging.log_error("maintenance", "prune_archive", exc)
        report["errors"].append(f"archive pruning failed: {exc.detail}")

    return report
