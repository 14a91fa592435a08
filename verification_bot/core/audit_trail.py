from __future__ import annotations

import asyncio
import io
from typing import Optional

import aiohttp
import aiosqlite
import discord

from verification_bot.core.logging_utils import get_logger
from verification_bot.core.metrics import MetricsService
from verification_bot.core.models import DownloadedImage, VerificationEvent, VerificationStatus, format_unique_id
from verification_bot.core.storage_engine import StorageEngine

logger = get_logger("audit_trail")

_STATUS_STYLE = {
    VerificationStatus.SUCCESS: ("✅", discord.Color.green()),
    VerificationStatus.FAILURE: ("❌", discord.Color.red()),
    VerificationStatus.MANUAL_REVIEW: ("⚠️", discord.Color.gold()),
}


def build_evidence_embed(event: VerificationEvent, image: Optional[DownloadedImage] = None) -> discord.Embed:
    emoji, color = _STATUS_STYLE[event.status]
    embed = discord.Embed(title="Verification Event", color=color, timestamp=event.timestamp)
    embed.add_field(name="User", value=f"<@{event.owner_identity}> ({event.owner_identity})", inline=False)
    embed.add_field(name="Status", value=f"{emoji} {event.status.value.replace('_', ' ')}", inline=True)

    unique_id = format_unique_id(event.unique_id)
    if unique_id:
        embed.add_field(name="Unique ID", value=unique_id, inline=True)
    if event.confidence is not None:
        embed.add_field(name="Confidence", value=f"{round(event.confidence * 100)}%", inline=True)

    metadata = event.metadata
    if metadata.get("rank"):
        embed.add_field(name="Rank", value=str(metadata["rank"]), inline=True)
    if metadata.get("level") is not None:
        embed.add_field(name="Level", value=str(metadata["level"]), inline=True)
    if metadata.get("notes"):
        embed.add_field(name="Notes", value=str(metadata["notes"])[:1024], inline=False)
    if metadata.get("processing_ms") is not None:
        embed.set_footer(text=f"Processing time: {metadata['processing_ms']}ms")

    if image is not None:
        embed.set_image(url=f"attachment://{image.filename}")
    return embed


class AuditTrail:
    """
    Records every verification attempt.

    The event row and the metrics update come first; the staff evidence post
    is best effort.  Nothing raised here reaches the caller.
    """

    def __init__(
        self,
        storage: StorageEngine,
        metrics: MetricsService,
        *,
        bot: Optional[discord.Client] = None,
        evidence_channel_id: Optional[int] = None,
    ) -> None:
        self.storage = storage
        self.metrics = metrics
        self.bot = bot
        self.evidence_channel_id = evidence_channel_id
        if evidence_channel_id is None:
            logger.warning("Evidence channel not configured; staff evidence logging will be skipped")

    async def record(self, event: VerificationEvent, evidence: Optional[DownloadedImage] = None) -> None:
        try:
            await self.storage.insert_event(event)
        except (aiosqlite.Error, OSError, ValueError) as exc:
            logger.error("Failed to persist verification event for %s: %s", event.owner_identity, exc)
        try:
            self.metrics.record_verification(event.status, event.confidence)
        except (TypeError, ValueError, KeyError, OSError) as exc:
            logger.error("Failed to update verification metrics for %s: %s", event.owner_identity, exc)
        await self._publish(event, evidence)

    async def _resolve_channel(self) -> Optional[discord.abc.Messageable]:
        if self.bot is None or self.evidence_channel_id is None:
            return None
        channel = self.bot.get_channel(self.evidence_channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(self.evidence_channel_id)
        return channel

    async def _publish(self, event: VerificationEvent, evidence: Optional[DownloadedImage]) -> None:
        try:
            channel = await self._resolve_channel()
            if channel is None or not hasattr(channel, "send"):
                if self.evidence_channel_id is not None:
                    logger.warning("Evidence channel %s not found or not text based", self.evidence_channel_id)
                return
            embed = build_evidence_embed(event, evidence)
            if evidence is not None:
                attachment = discord.File(io.BytesIO(evidence.data), filename=evidence.filename)
                await channel.send(embed=embed, file=attachment)
            else:
                await channel.send(embed=embed)
            logger.debug("Posted %s evidence for %s", event.status.value, event.owner_identity)
        except (discord.DiscordException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to send evidence embed to %s: %s", self.evidence_channel_id, exc)


__all__ = ["AuditTrail", "build_evidence_embed"]
