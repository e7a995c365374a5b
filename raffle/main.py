"""
raffle/main.py — FastAPI application entry point
Includes: lifespan management, rate limiting, error rendering,
          security headers, startup validation, ping keep-alive endpoint.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from raffle.config import get_settings
from raffle.core import logging as app_logging
from raffle.core.errors import RaffleError, RateLimitedError
from raffle.core.logging import setup_logging
from raffle.core.rate_limiter import HTTP_RATE_LIMITS, limiter
from raffle.routers import api, entries, triggers
from raffle.utils.timezone import to_iso, utc_now

settings = get_settings()

VERSION = "1.0.0"


# ──────────────────────────────────────────────────────────────────────────────
# Application Lifespan
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan: startup → yield → shutdown.
    Startup: initialize logging, validate critical environment variables.
    """
    setup_logging(settings.log_level)
    logger.info("Raffle service starting up...")

    _validate_env()

    logger.info("Startup complete.")
    yield

    from raffle.clients.store_client import get_store
    if get_store.cache_info().currsize:
        get_store().close()
    logger.info("Shutting down raffle service.")


def _validate_env() -> None:
    """Log loudly on missing secrets; the app still starts."""
    required = [
        ("supabase_url", "SUPABASE_URL"),
        ("supabase_service_key", "SUPABASE_SERVICE_KEY"),
        ("draw_secret", "DRAW_SECRET"),
    ]
    missing = [env_name for attr, env_name in required if not getattr(settings, attr, None)]
    if not settings.admin_api_key and not settings.admin_pass:
        missing.append("ADMIN_API_KEY or ADMIN_PASS")

    if missing:
        logger.critical(f"Missing env vars: {', '.join(missing)}")
        logger.warning("App will start but affected features will be unavailable until credentials are set.")


# ──────────────────────────────────────────────────────────────────────────────
# FastAPI App
# ──────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Raffle Lifecycle Service",
    description=(
        "Weekly raffle: admit entrants, freeze the list, draw one winner, "
        "archive the cycle and reopen for the next one."
    ),
    version=VERSION,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    lifespan=lifespan,
)

# ── Rate limiting: fastapi/slowapi ───────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(
    RateLimitExceeded,
    lambda req, exc: JSONResponse(
        status_code=429,
        content={"success": False, "error": "Rate limit exceeded. Slow down.", "timestamp": to_iso(utc_now())},
    ),
)
app.add_middleware(SlowAPIMiddleware)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ── Error rendering ───────────────────────────────────────────────────────────
def _error_body(message: str, detail: str | None) -> dict:
    body = {"success": False, "error": message, "timestamp": to_iso(utc_now())}
    if detail and not settings.is_production:
        body["detail"] = detail
    return body


@app.exception_handler(RaffleError)
async def raffle_error_handler(request: Request, exc: RaffleError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code >= 500:
        app_logging.log_error("http", request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        headers=headers,
        content=_error_body(exc.public_message, exc.detail),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    app_logging.log_error("http", request.url.path, exc, critical=True)
    return JSONResponse(
        status_code=500,
        content=_error_body("Internal server error.", f"{type(exc).__name__}: {exc}"),
    )


# ── Security headers middleware ───────────────────────────────────────────────
@app.middleware("http")
async def add_security_headers(request: Request, call_next) -> Response:
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return response


# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(triggers.router, prefix="/trigger", tags=["triggers"])
app.include_router(api.router, prefix="/api", tags=["api"])
app.include_router(entries.router, prefix="/api", tags=["entries"])


# ── Ping keep-alive endpoint ──────────────────────────────────────────────────
@app.get("/api/ping", tags=["health"])
@limiter.limit(HTTP_RATE_LIMITS["ping"])
async def ping(request: Request):
    """Keep-alive for the hosting platform. Does NOT call the store."""
    return {"status": "ok", "version": VERSION}


def run() -> None:
    """Console entry point: serve the app with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("raffle.main:app", host="0.0.0.0", port=settings.port, log_config=None)
