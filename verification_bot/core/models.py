"""
Data model for screenshot-based rank verification.

Plain dataclasses shared by the engines; no Discord imports so the matcher,
storage and pipeline stay testable without a gateway connection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from verification_bot.core.errors import FailureReason

UNKNOWN = "UNKNOWN"

_NON_DIGITS = re.compile(r"\D")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_unique_id(raw: Optional[str]) -> Optional[str]:
    """
    Canonical, human readable form of an in-game unique id.

    Digits are regrouped in threes with a trailing single digit, regardless of
    how the extractor spaced them: ``"1826254746"`` and ``"182 625 474 6"``
    both become ``"182-625-474-6"``.  Returns None when no digits remain.
    """
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    if len(digits) <= 3:
        return digits

    groups = []
    index = 0
    while len(digits) - index > 4:
        groups.append(digits[index:index + 3])
        index += 3
    remaining = len(digits) - index
    if remaining == 4:
        groups.append(digits[index:index + 3])
        groups.append(digits[index + 3:])
    else:
        groups.append(digits[index:])
    return "-".join(groups)


@dataclass(frozen=True)
class RankDefinition:
    """One rank tier: Discord role token, display name and inclusive level range."""

    token: str
    display_name: str
    level_min: int
    level_max: int

    def contains(self, level: Optional[int]) -> bool:
        return level is not None and self.level_min <= level <= self.level_max


@dataclass(frozen=True)
class ExtractedProfile:
    """Fields read from one screenshot. ``None`` stands for UNKNOWN."""

    level: Optional[int] = None
    rank_name: Optional[str] = None
    unique_id: Optional[str] = None

    @classmethod
    def unknown(cls) -> "ExtractedProfile":
        return cls()

    @property
    def is_unknown(self) -> bool:
        return self.level is None and self.rank_name is None and self.unique_id is None

    def to_wire(self) -> Dict[str, Any]:
        """Wire/disk form matching the vision contract."""
        return {
            "level": self.level if self.level is not None else UNKNOWN,
            "rank": self.rank_name if self.rank_name is not None else UNKNOWN,
            "uniqueId": self.unique_id if self.unique_id is not None else UNKNOWN,
        }


@dataclass(frozen=True)
class MatchedRank:
    rank: RankDefinition
    confidence: float
    level_detected: Optional[int] = None

    @property
    def rank_name(self) -> str:
        return self.rank.display_name


@dataclass(frozen=True)
class ImageSource:
    """Reference to a submitted image as announced by the chat surface."""

    url: str
    size: Optional[int] = None
    content_type: Optional[str] = None
    filename: Optional[str] = None

    @classmethod
    def from_attachment(cls, attachment: Any) -> "ImageSource":
        return cls(
            url=attachment.url,
            size=getattr(attachment, "size", None),
            content_type=getattr(attachment, "content_type", None),
            filename=getattr(attachment, "filename", None),
        )


@dataclass(frozen=True)
class DownloadedImage:
    data: bytes
    sha256: str
    filename: str
    content_type: str


@dataclass(frozen=True)
class ScreenshotLock:
    screenshot_hash: str
    owner_identity: str
    unique_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class Account:
    owner_identity: str
    unique_id: str
    level: Optional[int]
    rank_name: str
    verified_at: str
    is_primary: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class VerificationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass(frozen=True)
class VerificationEvent:
    """Append-only audit record of one verification attempt."""

    owner_identity: str
    status: VerificationStatus
    confidence: Optional[float] = None
    unique_id: Optional[str] = None
    screenshot_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MetricsSnapshot:
    total_verifications: int
    success_count: int
    failure_count: int
    manual_review_count: int
    average_confidence: float
    confidence_samples: int
    dm_cleanup_count: int
    rate_limit_hits: int
    last_updated: str


@dataclass
class VerificationResult:
    """Outcome returned to the chat surface by the pipeline."""

    status: VerificationStatus
    confidence: float = 0.0
    rank: Optional[RankDefinition] = None
    level: Optional[int] = None
    unique_id: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    screenshot_hash: Optional[str] = None
    error: Optional[BaseException] = None
    processing_ms: int = 0
    image: Optional[DownloadedImage] = None

    @property
    def succeeded(self) -> bool:
        return self.status is VerificationStatus.SUCCESS

    @property
    def user_message(self) -> Optional[str]:
        return self.failure_reason.user_message if self.failure_reason else None


__all__ = [
    "UNKNOWN",
    "format_unique_id",
    "utcnow",
    "RankDefinition",
    "ExtractedProfile",
    "MatchedRank",
    "ImageSource",
    "DownloadedImage",
    "ScreenshotLock",
    "Account",
    "VerificationStatus",
    "VerificationEvent",
    "MetricsSnapshot",
    "VerificationResult",
]
