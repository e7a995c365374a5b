"""
raffle/core/errors.py — Error taxonomy for the raffle lifecycle
Each error carries a user-facing message and an internal detail; the HTTP
layer decides whether the detail may leave the process.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import status


class RaffleError(Exception):
    """Base class. `public_message` is safe for clients, `detail` is not."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: str = "Internal server error."

    def __init__(
        self,
        public_message: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        if public_message is not None:
            self.public_message = public_message
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class EntryValidationError(RaffleError):
    """Bad or missing entrant fields. User-correctable."""

    status_code = status.HTTP_400_BAD_REQUEST
    public_message = "Invalid entry."


class ListFrozenError(RaffleError):
    """Admission attempted while the cycle is not open."""

    status_code = status.HTTP_409_CONFLICT
    public_message = "The list is closed! No more names can be added until the next draw."


class RateLimitedError(RaffleError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    public_message = "Too many requests. Please wait before trying again."

    def __init__(
        self,
        retry_after_seconds: int,
        operation_type: str,
        public_message: Optional[str] = None,
    ) -> None:
        self.retry_after_seconds = retry_after_seconds
        self.operation_type = operation_type
        super().__init__(
            public_message
            or f"Too many requests. Try again in {retry_after_seconds} seconds.",
            detail=f"rate limit exceeded for {operation_type}",
        )


class StoreUnavailableError(RaffleError):
    """The persistent store could not be reached or rejected the call."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    public_message = "Storage temporarily unavailable. Please try again."


class PostDrawFailure(RaffleError):
    """
    Archive or reset failed after a winner was already recorded.
    The recorded winner stands; only bookkeeping is incomplete.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Winner recorded, but post-draw bookkeeping failed."

    def __init__(self, step: str, draw: Any, detail: Optional[str] = None) -> None:
        self.step = step
        self.draw = draw
        super().__init__(detail=f"{step} failed after draw: {detail}")
