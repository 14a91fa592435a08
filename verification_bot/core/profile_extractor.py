"""Vision-model extraction of profile fields from screenshot bytes.

Results are cached by the SHA-256 of the image so a re-submitted screenshot
never triggers a second model call.  Any failure degrades to the all-UNKNOWN
profile; such failures are not cached so a later attempt can still succeed.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import io
import json
import logging
import re
from typing import Any, Dict, Optional

from openai import AsyncOpenAI, OpenAIError
from PIL import Image, UnidentifiedImageError

from verification_bot.core.cache_manager import Cache, LayeredCache, MemoryCache
from verification_bot.core.errors import ExtractionError
from verification_bot.core.logging_utils import get_logger, timed
from verification_bot.core.models import UNKNOWN, ExtractedProfile

logger = get_logger("profile_extractor")

MOCK_PROFILE = ExtractedProfile(level=618, rank_name="Galactic Overlord", unique_id="182-625-474-6")

SYSTEM_PROMPT = """You extract structured data from game profile screenshots.
Return ONLY a JSON object with: level, rank, uniqueId.

Extraction rules:
1. Level: the number inside the star icon in the Level progress section (any star colour). It is a 1-4 digit number such as 5, 42 or 618.
2. Rank: the text shown after 'Rank:', for example 'Galactic Overlord', 'Master' or 'Professional'.
3. Unique ID: the number below the country flag, formatted with hyphens such as '182-625-474-6'.

If any value is unreadable or not present, return 'UNKNOWN' for that field.
Output ONLY valid JSON, no explanation, no markdown, no code blocks.
Format: {"level": 618, "rank": "Galactic Overlord", "uniqueId": "182-625-474-6"}"""

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")


def _coerce_level(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        level = value
    elif isinstance(value, float) and value.is_integer():
        level = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        level = int(value.strip())
    else:
        return None
    return level if level > 0 else None


def _coerce_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or text.upper() == UNKNOWN:
        return None
    return text


def profile_from_payload(payload: Dict[str, Any]) -> ExtractedProfile:
    """Type-check a wire-form dict. Invalid fields become UNKNOWN."""
    return ExtractedProfile(
        level=_coerce_level(payload.get("level")),
        rank_name=_coerce_text(payload.get("rank")),
        unique_id=_coerce_text(payload.get("uniqueId")),
    )


def parse_vision_response(content: str) -> ExtractedProfile:
    """Parse the model's reply, tolerating code fences. Raises ExtractionError."""
    cleaned = (content or "").strip()
    if not cleaned:
        raise ExtractionError("Vision response was empty", code="empty_response")
    if cleaned.startswith("```"):
        cleaned = _FENCE_END.sub("", _FENCE_START.sub("", cleaned))
    try:
        parsed = json.loads(cleaned)
    except ValueError as exc:
        raise ExtractionError(f"Vision response was not JSON: {exc}", code="malformed_response") from exc
    if not isinstance(parsed, dict):
        raise ExtractionError("Vision response was not a JSON object", code="malformed_response")
    return profile_from_payload(parsed)


def sniff_mime_type(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format or "", "image/png")
    except (UnidentifiedImageError, OSError):
        return "image/png"


def to_data_uri(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{sniff_mime_type(data)};base64,{encoded}"


class ProfileExtractor:
    def __init__(
        self,
        *,
        cache: Optional[Cache] = None,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        timeout_seconds: float = 30.0,
        mock_mode: bool = False,
    ) -> None:
        self.cache: Cache = cache if cache is not None else LayeredCache(MemoryCache())
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.mock_mode = mock_mode
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        if mock_mode:
            logger.warning("Verification mock mode enabled; vision calls are bypassed")

    async def extract(self, data: bytes, content_hash: Optional[str] = None) -> ExtractedProfile:
        """Return the profile fields for ``data``. Never raises."""
        key = content_hash or hashlib.sha256(data).hexdigest()

        cached = await self._cache_get(key)
        if cached is not None:
            logger.info("Using cached profile data for %s", key[:16])
            return cached

        if self.mock_mode:
            logger.info("Mock mode: returning canned profile for %s", key[:16])
            await self._cache_set(key, MOCK_PROFILE)
            return MOCK_PROFILE

        try:
            with timed(logger, "vision-extraction", level=logging.DEBUG, extra={"hash": key[:16]}):
                profile = await asyncio.wait_for(self._call_vision(data), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Vision extraction timed out after %.1fs for %s", self.timeout_seconds, key[:16])
            return ExtractedProfile.unknown()
        except (OpenAIError, ExtractionError) as exc:
            logger.warning("Vision extraction failed for %s: %s", key[:16], exc)
            return ExtractedProfile.unknown()
        except Exception:
            logger.exception("Unexpected vision extraction failure for %s", key[:16])
            return ExtractedProfile.unknown()

        await self._cache_set(key, profile)
        logger.info(
            "Profile extracted for %s: level=%s rank=%s uniqueId=%s",
            key[:16],
            profile.level,
            profile.rank_name,
            profile.unique_id,
        )
        return profile

    async def _call_vision(self, data: bytes) -> ExtractedProfile:
        if self._client is None:
            raise ExtractionError("OpenAI client is not configured", code="no_api_key")
        completion = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Here is the screenshot."},
                        {"type": "image_url", "image_url": {"url": to_data_uri(data)}},
                    ],
                },
            ],
            max_tokens=200,
            temperature=0,
        )
        if not completion.choices:
            raise ExtractionError("Vision response had no choices", code="empty_response")
        content = getattr(completion.choices[0].message, "content", "") or ""
        return parse_vision_response(content)

    async def _cache_get(self, key: str) -> Optional[ExtractedProfile]:
        try:
            payload = await self.cache.get(key)
        except (OSError, ValueError) as exc:
            logger.warning("Cache lookup failed for %s: %s", key[:16], exc)
            return None
        if payload is None:
            return None
        return profile_from_payload(payload)

    async def _cache_set(self, key: str, profile: ExtractedProfile) -> None:
        try:
            await self.cache.set(key, profile.to_wire())
        except (OSError, ValueError) as exc:
            logger.warning("Failed to cache profile for %s: %s", key[:16], exc)


__all__ = [
    "MOCK_PROFILE",
    "ProfileExtractor",
    "parse_vision_response",
    "profile_from_payload",
    "to_data_uri",
]
