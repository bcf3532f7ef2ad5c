"""Configuration helpers for the bracket bot runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

log = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Invalid %s=%s; expected an integer", name, raw)
        return default


def env_str(name: str, *, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True)
class BracketBotConfig:
    discord_token: str | None
    table_name: str | None
    aws_region: str
    tournament_id: str
    tournament_code: str | None
    guild_id: int | None
    admin_role_id: int | None
    rating_lookup: bool

    def missing_required(self) -> list[str]:
        missing: list[str] = []
        if not self.discord_token:
            missing.append("DISCORD_TOKEN")
        if not self.table_name:
            missing.append("TOURNAMENT_TABLE_NAME")
        return missing


def read_config() -> BracketBotConfig:
    return BracketBotConfig(
        discord_token=env_str("DISCORD_TOKEN"),
        table_name=env_str("TOURNAMENT_TABLE_NAME"),
        aws_region=env_str("AWS_REGION", default="us-east-1") or "us-east-1",
        tournament_id=env_str("TOURNAMENT_ID", default="default") or "default",
        tournament_code=env_str("TOURNAMENT_CODE"),
        guild_id=env_int("TOURNAMENT_GUILD_ID"),
        admin_role_id=env_int("TOURNAMENT_ADMIN_ROLE_ID"),
        rating_lookup=env_bool("RATING_LOOKUP", default=True),
    )


__all__ = ["BracketBotConfig", "env_bool", "env_int", "env_str", "read_config"]
