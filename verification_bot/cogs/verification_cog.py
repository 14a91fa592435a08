"""Discord cog for screenshot rank verification and its staff commands."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, cast

import discord
from discord import app_commands
from discord.ext import commands

from verification_bot.config import VerificationBotConfig
from verification_bot.core.dm_cleanup import DMCleanupEngine
from verification_bot.core.errors import RankConfigError
from verification_bot.core.image_ingestor import is_probably_image
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import ImageSource, MetricsSnapshot, VerificationResult, format_unique_id
from verification_bot.core.pipeline import VerificationPipeline


logger = get_logger("verification_cog")


def build_result_embed(result: VerificationResult) -> discord.Embed:
    if result.succeeded and result.rank is not None:
        level = f" (Level {result.level})" if result.level is not None else ""
        embed = discord.Embed(
            title="✅ Rank Verification Successful",
            description=(
                f"Your rank has been verified as **{result.rank.display_name}**{level}.\n\n"
                "Your Discord role has been updated successfully."
            ),
            color=discord.Color.teal(),
        )
        unique_id = format_unique_id(result.unique_id)
        if unique_id:
            embed.add_field(name="Unique ID", value=f"`{unique_id}`", inline=False)
        return embed

    return discord.Embed(
        title="❌ Rank Verification Failed",
        description=result.user_message or "Verification could not be completed.",
        color=discord.Color.red(),
    )


def build_metrics_embed(snapshot: MetricsSnapshot) -> discord.Embed:
    embed = discord.Embed(title="Verification Metrics", color=discord.Color.blurple())
    embed.add_field(name="Total", value=str(snapshot.total_verifications), inline=True)
    embed.add_field(name="Success", value=str(snapshot.success_count), inline=True)
    embed.add_field(name="Failure", value=str(snapshot.failure_count), inline=True)
    embed.add_field(name="Manual review", value=str(snapshot.manual_review_count), inline=True)
    embed.add_field(
        name="Avg confidence",
        value=f"{snapshot.average_confidence * 100:.1f}% ({snapshot.confidence_samples} samples)",
        inline=True,
    )
    embed.add_field(name="DMs cleaned", value=str(snapshot.dm_cleanup_count), inline=True)
    embed.add_field(name="Rate limit hits", value=str(snapshot.rate_limit_hits), inline=True)
    embed.set_footer(text=f"Last updated {snapshot.last_updated}")
    return embed


def build_history_embed(owner_id: int, events: List[Dict[str, Any]]) -> discord.Embed:
    embed = discord.Embed(title="Verification History", description=f"<@{owner_id}>", color=discord.Color.blurple())
    if not events:
        embed.description += "\nNo verification attempts recorded."
        return embed
    for event in events:
        metadata = event["metadata"]
        details = [event["status"].value.replace("_", " ")]
        if metadata.get("rank"):
            details.append(str(metadata["rank"]))
        unique_id = format_unique_id(event["unique_id"])
        if unique_id:
            details.append(unique_id)
        if event["confidence"] is not None:
            details.append(f"{round(event['confidence'] * 100)}%")
        embed.add_field(name=event["timestamp"], value=" · ".join(details), inline=False)
    return embed


class VerificationCog(commands.Cog):
    """Verifies profile screenshots posted in the rank channel."""

    def __init__(
        self,
        bot: commands.Bot,
        config: VerificationBotConfig,
        pipeline: VerificationPipeline,
        dm_cleanup: DMCleanupEngine,
    ) -> None:
        self.bot = bot
        self.config = config
        self.pipeline = pipeline
        self.dm_cleanup = dm_cleanup

    # --------------------------------------------------------------
    # Events
    # --------------------------------------------------------------

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if not message.guild or message.author.bot:
            return
        if self.config.rank_channel_id is None or message.channel.id != self.config.rank_channel_id:
            return

        source = self._first_image(message)
        if source is None:
            return

        member = cast(discord.Member, message.author)
        result = await self.pipeline.process_and_verify(source, member)
        await self._notify(member, result)

        try:
            await message.delete()
        except discord.HTTPException as exc:
            logger.warning("Failed to delete verification message %s: %s", message.id, exc)

    @staticmethod
    def _first_image(message: discord.Message) -> Optional[ImageSource]:
        for attachment in message.attachments:
            source = ImageSource.from_attachment(attachment)
            if is_probably_image(source):
                return source
        return None

    async def _notify(self, member: discord.Member, result: VerificationResult) -> None:
        try:
            dm = await member.send(embed=build_result_embed(result))
        except discord.Forbidden:
            logger.info("Cannot DM %s (DMs disabled)", member.id)
            return
        except discord.HTTPException as exc:
            logger.warning("Failed to DM verification result to %s: %s", member.id, exc)
            return
        self.dm_cleanup.schedule_deletion(dm)

    # --------------------------------------------------------------
    # Staff commands
    # --------------------------------------------------------------

    def _is_authorized(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id in self.config.owner_ids:
            return True
        permissions = getattr(interaction.user, "guild_permissions", None)
        return bool(permissions and permissions.administrator)

    async def _deny(self, interaction: discord.Interaction) -> None:
        await interaction.response.send_message("You are not allowed to use this command.", ephemeral=True)

    @app_commands.command(name="unlink-screenshot", description="Remove a screenshot lock by unique ID or hash")
    @app_commands.describe(
        unique_id="In-game unique ID to unlink",
        screenshot_hash="SHA-256 screenshot hash to unlink",
    )
    async def unlink_screenshot(
        self,
        interaction: discord.Interaction,
        unique_id: Optional[str] = None,
        screenshot_hash: Optional[str] = None,
    ) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        if not unique_id and not screenshot_hash:
            await interaction.response.send_message(
                "Provide either a unique ID or a screenshot hash.", ephemeral=True
            )
            return

        removed = 0
        if unique_id:
            removed += await self.pipeline.unlink_by_unique_id(unique_id)
        if screenshot_hash:
            removed += await self.pipeline.unlink_by_hash(screenshot_hash)
        logger.info("Unlink by %s removed %d lock(s)", interaction.user.id, removed)
        await interaction.response.send_message(f"Removed {removed} screenshot lock(s).", ephemeral=True)

    @app_commands.command(name="reload-ranks", description="Reload the rank configuration file")
    async def reload_ranks(self, interaction: discord.Interaction) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        try:
            ranks = self.pipeline.rank_config.reload()
        except RankConfigError as exc:
            await interaction.response.send_message(f"Rank reload failed: {exc}", ephemeral=True)
            return
        await interaction.response.send_message(f"Loaded {len(ranks)} rank(s).", ephemeral=True)

    @app_commands.command(name="verification-metrics", description="Show verification counters")
    async def verification_metrics(self, interaction: discord.Interaction) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        embed = build_metrics_embed(self.pipeline.get_metrics_snapshot())
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="set-primary-account", description="Choose which verified game account is primary")
    @app_commands.describe(member="Member who owns the account", unique_id="Verified in-game unique ID")
    async def set_primary_account(self, interaction: discord.Interaction, member: discord.User, unique_id: str) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        canonical = format_unique_id(unique_id)
        if canonical is None:
            await interaction.response.send_message("That is not a valid unique ID.", ephemeral=True)
            return
        changed = await self.pipeline.storage.set_primary_account(str(member.id), canonical)
        if not changed:
            await interaction.response.send_message(
                f"<@{member.id}> has no verified account `{canonical}`.", ephemeral=True
            )
            return
        logger.info("Primary account for %s set to %s by %s", member.id, canonical, interaction.user.id)
        await interaction.response.send_message(
            f"Primary account for <@{member.id}> is now `{canonical}`.", ephemeral=True
        )

    @app_commands.command(name="verification-history", description="Show a member's recent verification attempts")
    @app_commands.describe(member="Member to look up", limit="Number of attempts to show")
    async def verification_history(
        self,
        interaction: discord.Interaction,
        member: discord.User,
        limit: app_commands.Range[int, 1, 25] = 10,
    ) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        events = await self.pipeline.storage.list_events(str(member.id), limit=limit)
        await interaction.response.send_message(embed=build_history_embed(member.id, events), ephemeral=True)

    @app_commands.command(name="cleanup-dms", description="Delete old bot DMs for server members")
    @app_commands.describe(max_users="Maximum number of members to process")
    async def cleanup_dms(self, interaction: discord.Interaction, max_users: Optional[int] = None) -> None:
        if not self._is_authorized(interaction):
            await self._deny(interaction)
            return
        if interaction.guild is None:
            await interaction.response.send_message("This command only works in a server.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        report = await self.dm_cleanup.cleanup_bot_dms(interaction.guild.members, max_users=max_users)
        await interaction.followup.send(
            f"Processed {report.processed_users} user(s), deleted {report.deleted_messages} message(s), "
            f"skipped {report.skipped_inactive} inactive, {report.skipped_rate_limit} rate limited, "
            f"{report.errors} error(s).",
            ephemeral=True,
        )


async def setup(bot: commands.Bot) -> None:  # pragma: no cover - dynamic loading guard
    raise RuntimeError("Use VerificationBotRunner to load VerificationCog")
