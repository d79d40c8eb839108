"""Server settings, read from ``ARENA_*`` environment variables or a .env file."""
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # ── Server ───────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # ── Logging ──────────────────────────────────────────────────
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_DIR: str = Field(default="logs")

    # ── Background sweeps (seconds) ──────────────────────────────
    MATCHMAKING_INTERVAL_S: float = Field(default=2.0)
    REAPER_INTERVAL_S: float = Field(default=60.0)

    # ── Session freshness (seconds) ──────────────────────────────
    LOBBY_FRESHNESS_S: int = Field(default=300)  # listed in lobby for 5 min
    STALE_AFTER_S: int = Field(default=600)  # reaped after 10 min idle

    model_config = {
        "env_prefix": "ARENA_",
        "env_file": str(_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
