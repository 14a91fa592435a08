import asyncio
import hashlib
import types
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import aiosqlite
import discord
import pytest

from verification_bot.core.audit_trail import AuditTrail, build_evidence_embed
from verification_bot.core.models import DownloadedImage, VerificationEvent, VerificationStatus


def _event(status=VerificationStatus.SUCCESS, **overrides):
    fields = dict(
        owner_identity="7",
        status=status,
        confidence=0.95,
        unique_id="1826254746",
        screenshot_hash="ab" * 32,
        metadata={"rank": "Master", "level": 350, "processing_ms": 1200, "notes": "ok"},
    )
    fields.update(overrides)
    return VerificationEvent(**fields)


def _image(png_bytes):
    return DownloadedImage(
        data=png_bytes,
        sha256=hashlib.sha256(png_bytes).hexdigest(),
        filename="profile.png",
        content_type="image/png",
    )


def _bot(channel=None, fetched=None):
    return types.SimpleNamespace(
        get_channel=MagicMock(return_value=channel),
        fetch_channel=AsyncMock(return_value=fetched),
    )


def test_evidence_embed_fields(png_bytes):
    embed = build_evidence_embed(_event(), _image(png_bytes))
    fields = {field.name: field.value for field in embed.fields}

    assert fields["Unique ID"] == "182-625-474-6"
    assert fields["Confidence"] == "95%"
    assert fields["Rank"] == "Master"
    assert fields["Level"] == "350"
    assert "SUCCESS" in fields["Status"]
    assert embed.image.url == "attachment://profile.png"
    assert embed.footer.text == "Processing time: 1200ms"


def test_failure_embed_omits_missing_fields():
    embed = build_evidence_embed(_event(VerificationStatus.FAILURE, confidence=None, unique_id=None, metadata={}))
    names = [field.name for field in embed.fields]

    assert names == ["User", "Status"]
    assert embed.color == discord.Color.red()


@pytest.mark.asyncio
async def test_record_persists_counts_and_posts(storage, metrics, png_bytes):
    channel = types.SimpleNamespace(send=AsyncMock())
    audit = AuditTrail(storage, metrics, bot=_bot(channel), evidence_channel_id=20)

    await audit.record(_event(), _image(png_bytes))

    assert len(await storage.list_events("7")) == 1
    assert metrics.snapshot().success_count == 1
    kwargs = channel.send.await_args.kwargs
    assert isinstance(kwargs["file"], discord.File)
    assert kwargs["embed"].title == "Verification Event"


@pytest.mark.asyncio
async def test_channel_is_fetched_when_not_cached(storage, metrics):
    channel = types.SimpleNamespace(send=AsyncMock())
    bot = _bot(None, channel)
    audit = AuditTrail(storage, metrics, bot=bot, evidence_channel_id=20)

    await audit.record(_event(VerificationStatus.FAILURE))

    bot.fetch_channel.assert_awaited_once_with(20)
    assert "file" not in channel.send.await_args.kwargs


@pytest.mark.asyncio
async def test_publish_failures_are_swallowed(storage, metrics):
    error = discord.HTTPException(MagicMock(status=500, reason="Server Error"), "boom")
    channel = types.SimpleNamespace(send=AsyncMock(side_effect=error))
    audit = AuditTrail(storage, metrics, bot=_bot(channel), evidence_channel_id=20)

    await audit.record(_event())

    assert len(await storage.list_events()) == 1


@pytest.mark.asyncio
async def test_missing_channel_is_skipped(storage, metrics):
    bot = _bot(None, None)
    bot.fetch_channel.side_effect = discord.NotFound(MagicMock(status=404, reason="Not Found"), "gone")
    audit = AuditTrail(storage, metrics, bot=bot, evidence_channel_id=20)

    await audit.record(_event())

    assert metrics.snapshot().total_verifications == 1


@pytest.mark.asyncio
async def test_storage_failure_still_counts(metrics):
    storage = types.SimpleNamespace(insert_event=AsyncMock(side_effect=aiosqlite.OperationalError("locked")))
    audit = AuditTrail(storage, metrics)

    await audit.record(_event(VerificationStatus.MANUAL_REVIEW))

    assert metrics.snapshot().manual_review_count == 1


@pytest.mark.asyncio
async def test_invalid_channel_payload_is_swallowed(storage, metrics):
    bot = _bot(None, None)
    bot.fetch_channel.side_effect = discord.InvalidData("bad payload")
    audit = AuditTrail(storage, metrics, bot=bot, evidence_channel_id=20)

    await audit.record(_event())

    assert len(await storage.list_events("7")) == 1
    assert metrics.snapshot().success_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError()])
async def test_transport_errors_while_posting_are_swallowed(storage, metrics, error):
    channel = types.SimpleNamespace(send=AsyncMock(side_effect=error))
    audit = AuditTrail(storage, metrics, bot=_bot(channel), evidence_channel_id=20)

    await audit.record(_event())

    channel.send.assert_awaited_once()
    assert len(await storage.list_events()) == 1


@pytest.mark.asyncio
async def test_metrics_failure_does_not_block_event_or_evidence(storage):
    metrics = MagicMock()
    metrics.record_verification.side_effect = TypeError("can only concatenate str")
    channel = types.SimpleNamespace(send=AsyncMock())
    audit = AuditTrail(storage, metrics, bot=_bot(channel), evidence_channel_id=20)

    await audit.record(_event())

    assert len(await storage.list_events("7")) == 1
    channel.send.assert_awaited_once()
