"""Configuration helpers for the bot."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime settings loaded from the environment."""

    discord_token: str
    database_path: str = "data/trades.db"
    cooldown_seconds: int = 45
    sweep_interval_seconds: int = 300
    guild_id: Optional[int] = None


def _int_from_env(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


def load_settings() -> Settings:
    """Load settings from environment variables.

    The function will read a local `.env` file when present. ``TRADER_DB_PATH``
    wins over the older ``DB_PATH`` name.
    """

    load_dotenv()
    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN is required to run the bot")

    db_path = os.getenv("TRADER_DB_PATH") or os.getenv("DB_PATH") or "data/trades.db"
    return Settings(
        discord_token=token,
        database_path=db_path,
        cooldown_seconds=_int_from_env("COOLDOWN_SECONDS", 45),
        sweep_interval_seconds=_int_from_env("SWEEP_INTERVAL_SECONDS", 300),
        guild_id=_int_from_env("GUILD_ID", None),
    )
