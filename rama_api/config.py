"""Service settings loaded from environment variables.

Every tunable of the job engine (concurrency ceiling, TTLs, timeouts) lives
here so it can be changed per deployment without touching code::

    MAX_CONCURRENCY=4 JOB_TTL_SECONDS=1200 python -m rama_api
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONSULTA_URL = "https://consultaprocesos.ramajudicial.gov.co/Procesos/NumeroRadicacion"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -----------------------------
    # Job engine
    # -----------------------------

    max_concurrency: int = Field(default=2, gt=0)
    """Ceiling on simultaneously running scrapes (all share one browser)."""

    execution_timeout_seconds: float = Field(default=90.0, gt=0)
    """Upper bound on a single scrape; past it the job is failed and its slot freed."""

    job_ttl_seconds: float = Field(default=600.0, gt=0)
    """Jobs older than this are dropped from the store, whatever their state."""

    sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # -----------------------------
    # Result cache
    # -----------------------------

    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=900.0, gt=0)

    # -----------------------------
    # Browser / upstream site
    # -----------------------------

    consulta_url: str = DEFAULT_CONSULTA_URL
    browser_headless: bool = True
    navigation_timeout_ms: int = Field(default=30_000, gt=0)
    result_wait_timeout_ms: int = Field(default=10_000, gt=0)
    tab_wait_timeout_ms: int = Field(default=5_000, gt=0)

    # -----------------------------
    # Process
    # -----------------------------

    host: str = "0.0.0.0"
    port: int = Field(default=3000, gt=0)
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, parsed once."""
    return Settings()
