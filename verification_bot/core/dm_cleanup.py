"""
DM cleanup engine.

Deletes the bot's own verification DMs after a delay and can sweep older bot
DMs in bulk, throttled by a per-minute user budget.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

import discord

from verification_bot.core.logging_utils import get_logger
from verification_bot.core.metrics import MetricsService
from verification_bot.core.rate_limiter import FixedWindowBudget

logger = get_logger("dm_cleanup")

HISTORY_LIMIT = 50


@dataclass
class DMCleanupReport:
    processed_users: int = 0
    deleted_messages: int = 0
    skipped_inactive: int = 0
    skipped_rate_limit: int = 0
    errors: int = 0


class DMCleanupEngine:
    """Engine for removing bot-authored direct messages."""

    def __init__(
        self,
        bot: discord.Client,
        metrics: MetricsService,
        *,
        delete_after_minutes: float = 30.0,
        budget: Optional[FixedWindowBudget] = None,
        delete_delay: float = 0.2,
    ) -> None:
        self.bot = bot
        self.metrics = metrics
        self.delete_after_minutes = delete_after_minutes
        self.budget = budget or FixedWindowBudget(10, 60.0)
        self.delete_delay = delete_delay
        self._scheduled: Dict[int, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Scheduled deletion
    # ------------------------------------------------------------------
    def schedule_deletion(self, message: discord.Message) -> bool:
        """Delete ``message`` after the configured delay. Only DMs are scheduled."""
        if message.guild is not None:
            return False
        self.cancel_deletion(message.id)
        task = asyncio.get_running_loop().create_task(self._delete_later(message))
        self._scheduled[message.id] = task
        logger.debug("DM %s scheduled for deletion in %.1f min", message.id, self.delete_after_minutes)
        return True

    def cancel_deletion(self, message_id: int) -> None:
        task = self._scheduled.pop(message_id, None)
        if task is not None:
            task.cancel()

    @property
    def pending(self) -> int:
        return len(self._scheduled)

    async def _delete_later(self, message: discord.Message) -> None:
        try:
            await asyncio.sleep(self.delete_after_minutes * 60)
            await message.delete()
            self.metrics.increment_dm_cleanup()
            logger.info("Scheduled DM %s deleted", message.id)
        except discord.NotFound:
            logger.debug("Scheduled DM %s was already gone", message.id)
        except discord.HTTPException as exc:
            logger.warning("Failed to delete scheduled DM %s: %s", message.id, exc)
        finally:
            if self._scheduled.get(message.id) is asyncio.current_task():
                self._scheduled.pop(message.id, None)

    def shutdown(self) -> None:
        for task in self._scheduled.values():
            task.cancel()
        self._scheduled.clear()

    # ------------------------------------------------------------------
    # Bulk cleanup
    # ------------------------------------------------------------------
    async def cleanup_bot_dms(
        self,
        users: Iterable[discord.abc.User],
        *,
        max_users: Optional[int] = None,
        active_within_minutes: Optional[float] = None,
    ) -> DMCleanupReport:
        """
        Delete bot-authored messages from the DM channels of ``users``.

        Each processed user consumes one budget token.  When the budget runs
        out the sweep stops and a rate-limit hit is recorded.
        """
        report = DMCleanupReport()
        bot_user = self.bot.user
        if bot_user is None:
            logger.warning("Bot user not available for DM cleanup")
            return report

        limit = max_users if max_users is not None else self.budget.limit
        active_since = None
        if active_within_minutes is not None:
            active_since = datetime.now(timezone.utc) - timedelta(minutes=active_within_minutes)

        logger.info("Starting DM cleanup (max_users=%s, active_within=%s)", limit, active_within_minutes)
        for user in users:
            if report.processed_users >= limit:
                break
            if user.bot:
                continue
            if not self.budget.try_consume():
                report.skipped_rate_limit += 1
                logger.warning("DM cleanup rate limit reached; retry in %.0fs", self.budget.retry_after())
                self.metrics.increment_rate_limit_hits()
                break

            try:
                channel = user.dm_channel or await user.create_dm()
                messages = [message async for message in channel.history(limit=HISTORY_LIMIT)]
            except discord.HTTPException as exc:
                report.errors += 1
                logger.debug("Failed to access DM channel for %s: %s", user.id, exc)
                continue

            if not messages:
                report.skipped_inactive += 1
                continue
            if active_since is not None and max(m.created_at for m in messages) < active_since:
                report.skipped_inactive += 1
                continue

            report.processed_users += 1
            for message in messages:
                if message.author.id != bot_user.id:
                    continue
                try:
                    await message.delete()
                except discord.NotFound:
                    continue
                except discord.HTTPException as exc:
                    report.errors += 1
                    logger.debug("Failed to delete DM %s: %s", message.id, exc)
                    continue
                report.deleted_messages += 1
                if self.delete_delay:
                    await asyncio.sleep(self.delete_delay)

        if report.deleted_messages:
            self.metrics.increment_dm_cleanup(report.deleted_messages)
        logger.info(
            "DM cleanup completed: users=%d deleted=%d inactive=%d rate_limited=%d errors=%d",
            report.processed_users,
            report.deleted_messages,
            report.skipped_inactive,
            report.skipped_rate_limit,
            report.errors,
        )
        return report


__all__ = ["DMCleanupEngine", "DMCleanupReport"]
