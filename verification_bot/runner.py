"""Async bootstrapper for the rank verification bot."""

from __future__ import annotations

import asyncio
import os

import discord
from discord.ext import commands
from dotenv import load_dotenv

from verification_bot.cogs.verification_cog import VerificationCog
from verification_bot.config import VerificationBotConfig
from verification_bot.core.audit_trail import AuditTrail
from verification_bot.core.cache_manager import DiskCache, LayeredCache, MemoryCache
from verification_bot.core.dm_cleanup import DMCleanupEngine
from verification_bot.core.error_engine import ErrorEngine
from verification_bot.core.image_ingestor import ImageIngestor
from verification_bot.core.logging_utils import configure_logging, get_logger
from verification_bot.core.metrics import MetricsService
from verification_bot.core.pipeline import VerificationPipeline
from verification_bot.core.profile_extractor import ProfileExtractor
from verification_bot.core.rank_config import RankConfigProvider
from verification_bot.core.rank_matcher import MatcherSettings, RankMatcher
from verification_bot.core.rate_limiter import FixedWindowBudget
from verification_bot.core.role_manager import RoleAssignmentStateMachine
from verification_bot.core.screenshot_lock import IdentityLockService
from verification_bot.core.storage_engine import StorageEngine


logger = get_logger("runner")


class VerificationBotRunner:
    """Full lifecycle manager for the discord.py bot instance."""

    def __init__(self) -> None:
        load_dotenv()
        self.config = VerificationBotConfig.from_env(require_token=True)
        configure_logging(level=self.config.log_level)
        self.error_engine = ErrorEngine(self.config.error_log_path)
        self.error_engine.catch_uncaught()

        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        intents.guilds = True

        self.bot = commands.Bot(
            command_prefix=os.getenv("BOT_PREFIX", "!"),
            intents=intents,
            help_command=None,
        )

        config = self.config
        self.storage = StorageEngine(db_path=config.database_path)
        self.metrics = MetricsService(config.metrics_path)
        self.rank_config = RankConfigProvider(config.ranks_path, reload_seconds=config.ranks_reload_seconds)
        self.dm_cleanup = DMCleanupEngine(
            self.bot,
            self.metrics,
            delete_after_minutes=config.dm_delete_after_minutes,
            budget=FixedWindowBudget(config.dm_cleanup_per_minute, 60.0),
        )
        self.pipeline = VerificationPipeline(
            ingestor=ImageIngestor(
                max_bytes=config.max_image_bytes,
                timeout_seconds=config.download_timeout,
                temp_dir=config.temp_dir,
            ),
            extractor=ProfileExtractor(
                cache=LayeredCache(MemoryCache(), DiskCache(config.cache_dir)),
                api_key=config.openai_api_key,
                model=config.openai_model,
                timeout_seconds=config.extraction_timeout,
                mock_mode=config.mock_mode,
            ),
            matcher=RankMatcher(MatcherSettings(fuzzy_threshold=config.fuzzy_threshold)),
            rank_config=self.rank_config,
            locks=IdentityLockService(self.storage),
            roles=RoleAssignmentStateMachine(self.rank_config.role_tokens),
            audit=AuditTrail(
                self.storage,
                self.metrics,
                bot=self.bot,
                evidence_channel_id=config.evidence_channel_id,
            ),
            storage=self.storage,
            metrics=self.metrics,
            error_engine=self.error_engine,
        )

        async def setup_hook() -> None:
            await self.storage.initialize()
            self.rank_config.reload()
            self.rank_config.start_auto_reload()

            await self.bot.add_cog(VerificationCog(self.bot, self.config, self.pipeline, self.dm_cleanup))
            try:
                if self.config.test_guild_ids:
                    for gid in self.config.test_guild_ids:
                        guild = discord.Object(id=gid)
                        self.bot.tree.copy_global_to(guild=guild)
                        await self.bot.tree.sync(guild=guild)
                else:
                    await self.bot.tree.sync()
                logger.info("Slash commands synced")
            except discord.HTTPException as exc:
                logger.warning("Failed to sync slash commands: %s", exc)

        self.bot.setup_hook = setup_hook  # type: ignore[assignment]

        @self.bot.event  # type: ignore[misc]
        async def on_ready() -> None:
            guild_names = ", ".join(guild.name for guild in self.bot.guilds)
            bot_user = self.bot.user
            user_id = bot_user.id if bot_user else "unknown"
            logger.info("VerificationBot connected as %s (%s) in %s", bot_user, user_id, guild_names)
            if self.config.rank_channel_id is None:
                logger.warning("Rank channel not configured; screenshots will be ignored")

    async def start(self) -> None:
        await self.bot.start(self.config.discord_token)

    async def close(self) -> None:
        self.rank_config.shutdown()
        self.dm_cleanup.shutdown()
        self.metrics.flush()
        await self.bot.close()


def run_verification_bot() -> None:
    runner = VerificationBotRunner()

    async def _main() -> None:
        try:
            await runner.start()
        finally:
            await runner.close()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("VerificationBot interrupted by user")


__all__ = ["VerificationBotRunner", "run_verification_bot"]
