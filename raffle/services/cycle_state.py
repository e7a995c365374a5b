"""
raffle/services/cycle_state.py — The cycle state row (open | frozen | drawn)
A single `cycle_config` row keyed `cycle_state` with an integer version.
Transitions are compare-and-set on (state, version): the conditional
UPDATE only matches if nobody moved the row since it was read, so the
caller that gets a row back is the one that won.
"""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from raffle.clients.store_client import CONFIG_TABLE, StoreClient
from raffle.core import logging as app_logging
from raffle.models import CycleFlag, CycleState
from raffle.utils.timezone import parse_iso, to_iso, utc_now

STATE_KEY = "cycle_state"


def _row_to_flag(row: dict[str, Any]) -> CycleFlag:
    try:
        state = CycleState(row.get("value", CycleState.OPEN.value))
    except ValueError:
        # Unreadable state keeps the list closed; an operator reset repairs the row
        logger.warning(f"Unknown cycle state {row.get('value')!r}; treating as frozen.")
        state = CycleState.FROZEN
    updated_at = row.get("updated_at")
    return CycleFlag(
        key=row.get("key", STATE_KEY),
        state=state,
        version=int(row.get("version") or 0),
        updated_at=parse_iso(updated_at) if updated_at else None,
    )


class CycleStateStore:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    def read(self) -> CycleFlag:
        """Current state. A missing row reads as open, version 0."""
        rows = self.store.select(CONFIG_TABLE, filters={"key": f"eq.{STATE_KEY}"}, limit=1)
        if not rows:
            return CycleFlag()
        return _row_to_flag(rows[0])

    def is_frozen(self) -> bool:
        return self.read().frozen

    def transition(
        self,
        current: CycleFlag,
        target: CycleState,
        reason: str,
    ) -> Optional[CycleFlag]:
        """
        Move `current.state@current.version` to `target@version+1`.
        Returns the new flag, or None if another caller changed the row first.
        """
        new_version = current.version + 1
        values = {"value": target.value, "version": new_version, "updated_at": to_iso(utc_now())}

        if current.version == 0:
            # No row yet (every write bumps the version to >= 1): insert-if-absent.
            rows = self.store.upsert(
                CONFIG_TABLE, [{"key": STATE_KEY, **values}],
                on_conflict="key", ignore_duplicates=True,
            )
        else:
            rows = self.store.update(
                CONFIG_TABLE,
                values,
                filters={
                    "key": f"eq.{STATE_KEY}",
                    "value": f"eq.{current.state.value}",
                    "version": f"eq.{current.version}",
                },
            )

        if not rows:
            logger.info(
                f"Cycle state CAS lost: {current.state.value}@{current.version} -> {target.value}"
            )
            return None

        flag = _row_to_flag(rows[0])
        app_logging.log_state_transition(current.state.value, flag.state.value, flag.version, reason)
        return flag

    def force_open(self, reason: str) -> CycleFlag:
        """Unconditionally reopen the cycle, bumping the version. Idempotent."""
        current = self.read()
        values = {
            "key": STATE_KEY,
            "value": CycleState.OPEN.value,
            "version": current.version + 1,
            "updated_at": to_iso(utc_now()),
        }
        rows = self.store.upsert(CONFIG_TABLE, [values], on_conflict="key")
        flag = _row_to_flag(rows[0]) if rows else CycleFlag(version=values["version"])
        app_logging.log_state_transition(current.state.value, flag.state.value, flag.version, reason)
        return flag
