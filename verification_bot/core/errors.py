"""Domain exceptions and user-facing failure categories for rank verification."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class VerificationError(RuntimeError):
    """Base exception for verification pipeline operations."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class DownloadFailure(str, Enum):
    TIMEOUT = "timeout"
    OVERSIZE = "oversize"
    NOT_IMAGE = "non_image"
    NETWORK = "network"


class DownloadError(VerificationError):
    """Raised when the submitted image cannot be ingested."""

    def __init__(self, reason: DownloadFailure, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message, code=reason.value)
        self.reason = reason
        self.status = status


class ExtractionError(VerificationError):
    """Vision service failure. Absorbed by the extractor, never seen by callers."""


class NoMatchError(VerificationError):
    """Raised when no rank cleared its confidence threshold."""

    def __init__(self, message: str = "No rank matched the extracted profile.") -> None:
        super().__init__(message, code="no_match")


class LockReason(str, Enum):
    HASH_CONFLICT = "HASH_CONFLICT"
    UNIQUE_ID_CONFLICT = "UNIQUE_ID_CONFLICT"


class LockConflictError(VerificationError):
    """Raised when a screenshot hash or unique id already belongs to another identity."""

    def __init__(self, reason: LockReason, conflict_owner: str) -> None:
        if reason is LockReason.HASH_CONFLICT:
            message = "Screenshot hash already linked to another user"
        else:
            message = "Unique ID already linked to another user"
        super().__init__(message, code=reason.value)
        self.reason = reason
        self.conflict_owner = conflict_owner


class RankConfigError(VerificationError):
    """Raised when the rank taxonomy cannot be loaded and no previous copy exists."""


class RoleAssignmentError(VerificationError):
    """Base exception for rank role transitions."""


class RoleConfigError(RoleAssignmentError):
    """Raised when the target rank role is missing or misconfigured in the guild."""

    def __init__(self, role_token: str, rank_name: str) -> None:
        super().__init__(f"Rank role {role_token} for {rank_name!r} not found in guild.", code="role_config")
        self.role_token = role_token
        self.rank_name = rank_name


class RolePermissionError(RoleAssignmentError):
    """Raised when the bot lacks permission to manage roles. Not retried."""


class FailureReason(str, Enum):
    NOT_PROFILE = "not_profile"
    IMAGE_UNAVAILABLE = "image_unavailable"
    RANK_NOT_RECOGNIZED = "rank_not_recognized"
    ALREADY_CLAIMED = "already_claimed"
    INTERNAL_ERROR = "internal_error"

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES = {
    FailureReason.NOT_PROFILE: (
        "Invalid format. Please upload a screenshot of your **Profile** screen "
        "(showing your level, rank, and stats), not the main menu or other screens."
    ),
    FailureReason.IMAGE_UNAVAILABLE: (
        "I couldn't download your screenshot. Please upload a PNG or JPEG image under the size limit."
    ),
    FailureReason.RANK_NOT_RECOGNIZED: (
        "I couldn't read your screenshot clearly. Please upload a clearer image of your profile "
        "showing your level and rank."
    ),
    FailureReason.ALREADY_CLAIMED: (
        "This screenshot or game ID is already linked to another Discord user."
    ),
    FailureReason.INTERNAL_ERROR: (
        "An internal error occurred while verifying your screenshot. Please try again later "
        "or contact a staff member."
    ),
}


def failure_for_download(error: DownloadError) -> FailureReason:
    if error.reason is DownloadFailure.NOT_IMAGE:
        return FailureReason.NOT_PROFILE
    return FailureReason.IMAGE_UNAVAILABLE


__all__ = [
    "VerificationError",
    "DownloadFailure",
    "DownloadError",
    "ExtractionError",
    "NoMatchError",
    "LockReason",
    "LockConflictError",
    "RankConfigError",
    "RoleAssignmentError",
    "RoleConfigError",
    "RolePermissionError",
    "FailureReason",
    "failure_for_download",
]
