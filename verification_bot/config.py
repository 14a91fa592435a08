"""Environment-backed configuration helpers for the rank verification bot."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_RANKS_PATH = PACKAGE_DIR / "data" / "ranks.json"

_TRUTHY = {"1", "true", "yes", "on"}


def _split_ints(value: str) -> Set[int]:
    ints: Set[int] = set()
    for chunk in (value or "").replace(";", ",").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ints.add(int(chunk))
        except ValueError:
            continue
    return ints


def _first_env(*names: str) -> str:
    for name in names:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return ""


def _optional_int(*names: str) -> Optional[int]:
    raw = _first_env(*names)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass(slots=True)
class VerificationBotConfig:
    discord_token: str = ""
    rank_channel_id: Optional[int] = None
    evidence_channel_id: Optional[int] = None
    owner_ids: Set[int] = field(default_factory=set)
    test_guild_ids: Set[int] = field(default_factory=set)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    mock_mode: bool = False
    ranks_path: str = str(DEFAULT_RANKS_PATH)
    ranks_reload_seconds: float = 30.0
    database_path: str = "data/verification.db"
    cache_dir: str = "tmp/vision-cache"
    temp_dir: str = "tmp"
    metrics_path: str = "logs/metrics.json"
    error_log_path: str = "logs/verification_errors.log"
    max_image_bytes: int = 20 * 1024 * 1024
    download_timeout: float = 10.0
    extraction_timeout: float = 30.0
    dm_delete_after_minutes: float = 30.0
    dm_cleanup_per_minute: int = 10
    fuzzy_threshold: float = 0.6
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, require_token: bool = False) -> "VerificationBotConfig":
        token = os.getenv("DISCORD_TOKEN", "").strip()
        if require_token and not token:
            raise RuntimeError("DISCORD_TOKEN is required to run the bot")

        defaults = cls()
        return cls(
            discord_token=token,
            rank_channel_id=_optional_int("VERIFICATION_RANK_CHANNEL_ID", "RANK_CHANNEL_ID"),
            evidence_channel_id=_optional_int(
                "VERIFICATION_STAFF_EVIDENCE_CHANNEL_ID", "STAFF_EVIDENCE_CHANNEL_ID"
            ),
            owner_ids=_split_ints(os.getenv("OWNER_IDS", "")),
            test_guild_ids=_split_ints(os.getenv("TEST_GUILDS", "")),
            # Support both OPENAI_API_KEY and legacy OPEN_AI_API_KEY
            openai_api_key=_first_env("OPENAI_API_KEY", "OPEN_AI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_VISION_MODEL", defaults.openai_model).strip() or defaults.openai_model,
            mock_mode=os.getenv("VERIFICATION_MOCK_MODE", "").strip().lower() in _TRUTHY,
            ranks_path=_first_env("RANKS_CONFIG_PATH") or defaults.ranks_path,
            ranks_reload_seconds=_float_env("RANKS_RELOAD_SECONDS", defaults.ranks_reload_seconds),
            database_path=_first_env("VERIFICATION_DATABASE_PATH") or defaults.database_path,
            cache_dir=_first_env("VISION_CACHE_DIR") or defaults.cache_dir,
            temp_dir=_first_env("VERIFICATION_TEMP_DIR") or defaults.temp_dir,
            metrics_path=_first_env("METRICS_PATH") or defaults.metrics_path,
            error_log_path=_first_env("ERROR_LOG_PATH") or defaults.error_log_path,
            max_image_bytes=_int_env("MAX_IMAGE_BYTES", defaults.max_image_bytes),
            download_timeout=_float_env("DOWNLOAD_TIMEOUT_SECONDS", defaults.download_timeout),
            extraction_timeout=_float_env("EXTRACTION_TIMEOUT_SECONDS", defaults.extraction_timeout),
            dm_delete_after_minutes=_float_env("DM_DELETE_AFTER_MINUTES", defaults.dm_delete_after_minutes),
            dm_cleanup_per_minute=_int_env("DM_CLEANUP_PER_MINUTE", defaults.dm_cleanup_per_minute),
            fuzzy_threshold=_float_env("FUZZY_MATCH_THRESHOLD", defaults.fuzzy_threshold),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
        )


__all__ = ["VerificationBotConfig", "DEFAULT_RANKS_PATH"]
