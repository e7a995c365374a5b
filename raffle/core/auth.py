"""
raffle/core/auth.py — Authentication
Draw secret (bearer) guards every mutating cycle trigger; failures look
like a missing route. The read-only admin surface accepts an API key or
HTTP Basic and never needs the draw secret.
"""
from __future__ import annotations

import base64
import binascii
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from raffle.config import get_settings

settings = get_settings()


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


# ──────────────────────────────────────────────────────────────────────────────
# Draw secret: scheduler and operator triggers
# ──────────────────────────────────────────────────────────────────────────────

async def verify_draw_secret(
    authorization: Optional[str] = Header(None),
) -> bool:
    """
    Validate `Authorization: Bearer <draw_secret>`.
    Any failure is a plain 404 so probes learn nothing about the endpoint.
    """
    if not settings.draw_secret:
        # No secret configured: triggers are disabled
        raise _not_found()
    if not authorization or not authorization.startswith("Bearer "):
        raise _not_found()
    token = authorization[len("Bearer "):].strip()
    if not secrets.compare_digest(token.encode("utf-8"), settings.draw_secret.encode("utf-8")):
        raise _not_found()
    return True


# ──────────────────────────────────────────────────────────────────────────────
# Admin read-only access: X-API-Key OR HTTP Basic
# ──────────────────────────────────────────────────────────────────────────────

def _check_api_key(api_key: Optional[str]) -> bool:
    if not api_key or not settings.admin_api_key:
        return False
    return secrets.compare_digest(api_key.encode("utf-8"), settings.admin_api_key.encode("utf-8"))


def _check_basic_auth_from_header(authorization: Optional[str]) -> bool:
    """Parse and validate Basic Auth from Authorization header string."""
    if not authorization or not authorization.startswith("Basic ") or not settings.admin_pass:
        return False
    try:
        decoded = base64.b64decode(authorization[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    username, _, password = decoded.partition(":")
    correct_username = secrets.compare_digest(
        username.encode("utf-8"),
        settings.admin_user.encode("utf-8"),
    )
    correct_password = secrets.compare_digest(
        password.encode("utf-8"),
        settings.admin_pass.encode("utf-8"),
    )
    return correct_username and correct_password


async def admin_auth(request: Request) -> bool:
    """Accept either the admin API key or HTTP Basic credentials."""
    if _check_api_key(request.headers.get("X-API-Key")):
        return True
    if _check_basic_auth_from_header(request.headers.get("Authorization")):
        return True

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide X-API-Key header or HTTP Basic Auth.",
        headers={"WWW-Authenticate": "Basic"},
    )
