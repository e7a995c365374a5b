"""
raffle/config.py — Pydantic BaseSettings configuration
Covers: store connection, trigger/admin secrets, entry limits,
rate-limit table, archive retention windows.
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ────────────────────────────────────────────────────────────
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 8000
    # Display timezone for local draw dates
    timezone: str = "America/Sao_Paulo"

    # ── Persistent store (Supabase / PostgREST) ───────────────────────────────
    supabase_url: str = ""
    supabase_service_key: str = ""
    # Every store call is bounded; nothing is allowed to hang
    store_timeout_seconds: float = 10.0

    # ── Authentication ────────────────────────────────────────────────────────
    # Bearer token for mutating cycle triggers (scheduler + operator)
    draw_secret: str = ""
    # Read-only admin surface: X-API-Key OR HTTP Basic
    admin_api_key: str = ""
    admin_user: str = "admin"
    admin_pass: str = ""

    # ── Entry limits ──────────────────────────────────────────────────────────
    max_field_length: int = 25
    max_batch_size: int = 10

    # ── Store-backed sliding-window limits, keyed by operation type ───────────
    rate_limits: dict[str, dict[str, int]] = {
        "admission_individual": {"max_requests": 10, "window_seconds": 60},
        "admission_batch": {"max_requests": 3, "window_seconds": 300},
        "draw_trigger": {"max_requests": 10, "window_seconds": 60},
        "status_probe": {"max_requests": 5, "window_seconds": 60},
        "api_call": {"max_requests": 60, "window_seconds": 60},
    }
    rate_limit_retention_days: int = 7
    # Retry hint returned when a fail-closed check cannot reach the store
    fail_closed_retry_seconds: int = 30

    # ── Per-instance HTTP throttle (slowapi) ──────────────────────────────────
    http_limiter_storage_uri: str = "memory://"

    # ── Draw sequence ─────────────────────────────────────────────────────────
    # A draw younger than this is assumed still in flight and is not resumed
    draw_resume_grace_seconds: int = 120

    # ── Archive retention ─────────────────────────────────────────────────────
    snapshot_retention_days: int = 7
    draw_retention_days: int = 60

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(cls, v: dict[str, dict[str, int]]) -> dict[str, dict[str, int]]:
        for op, limits in v.items():
            if limits.get("max_requests", 0) < 1 or limits.get("window_seconds", 0) < 1:
                raise ValueError(f"rate limit for {op!r} needs max_requests >= 1 and window_seconds >= 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache()
def get_settings() -> Settings:
    """Return cached Settings instance. Use this everywhere."""
    return Settings()
