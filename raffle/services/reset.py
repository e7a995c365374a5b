"""
raffle/services/reset.py — Reset: clear the roster, reopen the cycle
Terminal step of every realized draw, and the operator's recovery tool.
Safe to call in any state, any number of times.
"""
from __future__ import annotations

from loguru import logger

from raffle.clients.store_client import StoreClient
from raffle.models import CycleFlag
from raffle.services.cycle_state import CycleStateStore
from raffle.services.roster import RosterStore


def reset_cycle(store: StoreClient, reason: str = "reset") -> tuple[int, CycleFlag]:
    """
    Clear the roster, then reopen. The roster goes first so that a failure
    between the two calls leaves the list closed rather than open on stale rows.
    Returns (rows removed, new flag).
    """
    removed = RosterStore(store).clear()
    flag = CycleStateStore(store).force_open(reason)
    logger.info(f"Cycle reset ({reason}): {removed} entries cleared, state version {flag.version}.")
    return removed, flag
