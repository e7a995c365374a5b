"""
raffle/utils/strategies.py — Ordered fallback chains
A chain is a list of (name, callable) pairs tried in order. A strategy
that raises StoreUnavailableError hands over to the next one; the first
strategy that returns produces the result.
"""
from __future__ import annotations

from typing import Callable, Sequence, TypeVar

from loguru import logger

from raffle.core.errors import StoreUnavailableError

R = TypeVar("R")

Strategy = tuple[str, Callable[[], R]]


def run_strategies(strategies: Sequence[Strategy], context: str = "") -> R:
    """
    Run strategies in order and return the first successful result.
    Raises the last StoreUnavailableError if every strategy fails.
    """
    if not strategies:
        raise ValueError("run_strategies needs at least one strategy")

    last_error: StoreUnavailableError | None = None
    for name, strategy in strategies:
        try:
            return strategy()
        except StoreUnavailableError as exc:
            last_error = exc
            logger.warning(f"[{context}] strategy {name!r} failed, trying next: {exc.detail}")

    assert last_error is not None
    raise last_error
