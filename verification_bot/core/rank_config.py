"""
Hot-reloadable rank taxonomy.

The active set of ranks is an immutable tuple swapped in one assignment, so
readers never observe a half-loaded taxonomy.  A failed reload keeps the last
good set; only the very first load is allowed to fail loudly.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, FrozenSet, List, Optional, Tuple

from verification_bot.core.errors import RankConfigError
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import RankDefinition

logger = get_logger("rank_config")


def parse_rank_config(payload: Any) -> Tuple[RankDefinition, ...]:
    """Validate the JSON payload and convert it into rank definitions."""
    if not isinstance(payload, list):
        raise RankConfigError("Rank configuration must be an array.")

    ranks: List[RankDefinition] = []
    seen_tokens = set()
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise RankConfigError(f"Invalid rank configuration entry at index {index}.")
        role_id = entry.get("role_id")
        rank_name = entry.get("rank_name")
        level_min = entry.get("level_min")
        level_max = entry.get("level_max")
        if (
            not isinstance(role_id, str) or not role_id.strip()
            or not isinstance(rank_name, str) or not rank_name.strip()
            or not isinstance(level_min, int) or isinstance(level_min, bool)
            or not isinstance(level_max, int) or isinstance(level_max, bool)
        ):
            raise RankConfigError(f"Invalid rank configuration entry at index {index}.")
        if level_min > level_max:
            raise RankConfigError(f"Invalid level range for rank {rank_name!r}.")
        token = role_id.strip()
        if token in seen_tokens:
            raise RankConfigError(f"Duplicate role id {token} in rank configuration.")
        seen_tokens.add(token)
        ranks.append(
            RankDefinition(
                token=token,
                display_name=rank_name.strip(),
                level_min=level_min,
                level_max=level_max,
            )
        )
    return tuple(ranks)


class RankConfigProvider:
    """Serves the current rank taxonomy and reloads it from disk."""

    def __init__(self, path: str | Path, *, reload_seconds: float = 30.0) -> None:
        self.path = Path(path)
        self.reload_seconds = reload_seconds
        self._ranks: Tuple[RankDefinition, ...] = ()
        self._loaded_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def last_loaded_at(self) -> Optional[float]:
        return self._loaded_at

    def get_current(self) -> Tuple[RankDefinition, ...]:
        """Return the active taxonomy. Empty until the first successful load."""
        return self._ranks

    def role_tokens(self) -> FrozenSet[str]:
        return frozenset(rank.token for rank in self._ranks)

    def reload(self) -> Tuple[RankDefinition, ...]:
        """
        Re-read the configuration file.

        On any read/parse/validation failure the previous taxonomy stays
        active.  Raises RankConfigError only when there is nothing to fall
        back to.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
            ranks = parse_rank_config(json.loads(raw))
        except (OSError, ValueError, RankConfigError) as exc:
            if self._loaded_at is None:
                raise RankConfigError(f"Failed to load rank configuration from {self.path}: {exc}") from exc
            logger.error("Failed to reload rank configuration, keeping last good set: %s", exc)
            return self._ranks

        self._ranks = ranks
        self._loaded_at = time.time()
        logger.info("Rank configuration loaded (%d ranks) from %s", len(ranks), self.path)
        return ranks

    def start_auto_reload(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._reload_loop())

    async def _reload_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reload_seconds)
            logger.debug("Refreshing rank configuration (scheduled)")
            try:
                self.reload()
            except RankConfigError as exc:
                logger.error("Scheduled rank reload failed: %s", exc)

    def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


__all__ = ["RankConfigProvider", "parse_rank_config"]
