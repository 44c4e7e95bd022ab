"""
Centralised configuration via Pydantic Settings.

Reads from .env in dev and from plain environment variables elsewhere.
Every value has a default so the engine can be constructed in tests without
any environment at all.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TRIAGE_",
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ── Remote store (server side) ──────────────────────────
    database_url: str = "sqlite+aiosqlite:///./triage.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def assemble_db_url(cls, v: str) -> str:
        """Hosted Postgres hands out postgres:// but SQLAlchemy needs postgresql+asyncpg://."""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://"):
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.database_url

    # ── Remote store (client side) ──────────────────────────
    remote_base_url: str = "http://localhost:8000/api/v1"
    remote_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Per-request timeout for the HTTP remote store"
    )

    # ── Security ────────────────────────────────────────────
    api_key: str = "change-me"

    # ── Engine tunables ─────────────────────────────────────
    reorder_debounce_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Delay before a reorder is submitted; a newer drag inside the window supersedes it",
    )
    refetch_on_invalidate: bool = Field(
        default=True, description="Refetch active cache keys in the background when invalidated"
    )
    queue_max_size: int = Field(default=100, ge=1, description="Most entries a reading queue may hold")


@lru_cache
def get_settings() -> Settings:
    return Settings()
