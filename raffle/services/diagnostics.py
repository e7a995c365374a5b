"""
raffle/services/diagnostics.py — Read-only cycle status
Never mutates anything. Each probe degrades independently so a partly
reachable store still yields a partial report.
"""
from __future__ import annotations

from loguru import logger

from raffle.clients.store_client import StoreClient
from raffle.config import get_settings
from raffle.core.errors import StoreUnavailableError
from raffle.models import LastDrawSummary, StatusReport
from raffle.services.archive import ArchiveWriter
from raffle.services.cycle_state import CycleStateStore
from raffle.services.roster import RosterStore
from raffle.utils.timezone import local_date_str, utc_now

settings = get_settings()


def build_status_report(store: StoreClient) -> StatusReport:
    report = StatusReport(
        store_reachable=store.ping(),
        environment=settings.environment,
        checked_at=utc_now(),
    )
    if not report.store_reachable:
        return report

    try:
        flag = CycleStateStore(store).read()
        report.state = flag.state
        report.frozen = flag.frozen
        report.version = flag.version
    except StoreUnavailableError as exc:
        logger.warning(f"Status: cycle state unreadable: {exc.detail}")

    try:
        report.roster_size = RosterStore(store).count()
    except StoreUnavailableError as exc:
        logger.warning(f"Status: roster count failed: {exc.detail}")

    archive = ArchiveWriter(store)
    try:
        last = archive.last_draw()
        if last is not None and last.id is not None:
            report.last_draw = LastDrawSummary(
                id=last.id,
                winner_name=last.winner_name,
                winner_affiliate=last.winner_affiliate,
                reward_platform=last.reward_platform,
                sequence_number=last.sequence_number,
                drawn_at=last.drawn_at,
                drawn_on_local=local_date_str(last.drawn_at),
            )
    except StoreUnavailableError as exc:
        logger.warning(f"Status: last draw unreadable: {exc.detail}")

    if report.last_draw is not None:
        try:
            report.last_draw.snapshot_available = archive.snapshot_available(last)
        except StoreUnavailableError as exc:
            logger.warning(f"Status: snapshot count failed: {exc.detail}")

    return report
