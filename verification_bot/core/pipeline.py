"""
End-to-end screenshot verification.

``process_and_verify`` runs ingest, extract, match, lock check, role
transition and lock commit in that order and always returns a
:class:`VerificationResult`; every outcome is written to the audit trail.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional, Sequence

import aiosqlite
import discord

from verification_bot.core.audit_trail import AuditTrail
from verification_bot.core.error_engine import ErrorEngine
from verification_bot.core.errors import (
    DownloadError,
    FailureReason,
    LockConflictError,
    NoMatchError,
    RoleAssignmentError,
    failure_for_download,
)
from verification_bot.core.image_ingestor import ImageIngestor
from verification_bot.core.logging_utils import (
    get_logger,
    log_exception,
    reset_correlation_id,
    set_correlation_id,
)
from verification_bot.core.metrics import MetricsService
from verification_bot.core.models import (
    DownloadedImage,
    ExtractedProfile,
    ImageSource,
    MatchedRank,
    MetricsSnapshot,
    RankDefinition,
    VerificationEvent,
    VerificationResult,
    VerificationStatus,
    format_unique_id,
)
from verification_bot.core.profile_extractor import ProfileExtractor
from verification_bot.core.rank_config import RankConfigProvider
from verification_bot.core.rank_matcher import RankMatcher
from verification_bot.core.role_manager import RoleAssignmentStateMachine
from verification_bot.core.screenshot_lock import IdentityLockService
from verification_bot.core.storage_engine import StorageEngine

logger = get_logger("pipeline")


class VerificationPipeline:
    def __init__(
        self,
        *,
        ingestor: ImageIngestor,
        extractor: ProfileExtractor,
        matcher: RankMatcher,
        rank_config: RankConfigProvider,
        locks: IdentityLockService,
        roles: RoleAssignmentStateMachine,
        audit: AuditTrail,
        storage: StorageEngine,
        metrics: MetricsService,
        error_engine: Optional[ErrorEngine] = None,
    ) -> None:
        self.ingestor = ingestor
        self.extractor = extractor
        self.matcher = matcher
        self.rank_config = rank_config
        self.locks = locks
        self.roles = roles
        self.audit = audit
        self.storage = storage
        self.metrics = metrics
        self.error_engine = error_engine

    async def process_and_verify(self, source: ImageSource, member: discord.Member) -> VerificationResult:
        cid = uuid.uuid4().hex[:12]
        token = set_correlation_id(cid)
        started = time.perf_counter()
        try:
            logger.info("Verification started for %s (%s)", member.id, source.filename or source.url)
            try:
                result, image, notes = await self._run(source, member)
            except Exception as exc:
                self._log_internal(exc, "process_and_verify")
                result, image, notes = self._failure(FailureReason.INTERNAL_ERROR, error=exc), None, "Internal error"
            result.processing_ms = int((time.perf_counter() - started) * 1000)
            result.image = image
            await self._record(member, result, image, notes, cid)
            logger.info(
                "Verification finished for %s: %s (%s) in %dms",
                member.id,
                result.status.value,
                result.failure_reason.value if result.failure_reason else result.rank and result.rank.display_name,
                result.processing_ms,
            )
            return result
        finally:
            reset_correlation_id(token)

    async def _run(
        self, source: ImageSource, member: discord.Member
    ) -> tuple[VerificationResult, Optional[DownloadedImage], Optional[str]]:
        owner = str(member.id)

        try:
            image = await self.ingestor.fetch(source)
        except DownloadError as exc:
            logger.warning("Image ingest failed (%s): %s", exc.reason.value, exc)
            return self._failure(failure_for_download(exc), error=exc), None, f"Download failed: {exc.reason.value}"

        profile = await self.extractor.extract(image.data, image.sha256)
        unique_id = format_unique_id(profile.unique_id)

        try:
            matched = self._match(profile, self.rank_config.get_current())
        except NoMatchError as exc:
            return (
                self._failure(
                    FailureReason.RANK_NOT_RECOGNIZED,
                    error=exc,
                    screenshot_hash=image.sha256,
                    unique_id=unique_id,
                    level=profile.level,
                ),
                image,
                f"Extracted rank={profile.rank_name} level={profile.level}",
            )

        try:
            await self.locks.verify_lock(owner, image.sha256, unique_id)
        except LockConflictError as exc:
            return self._conflict(exc, matched, image, unique_id), image, self._conflict_note(exc)
        except aiosqlite.Error as exc:
            self._log_internal(exc, "verify_lock")
            return self._failure(FailureReason.INTERNAL_ERROR, error=exc, screenshot_hash=image.sha256), image, None

        try:
            transition = await self.roles.assign(member, matched.rank)
        except RoleAssignmentError as exc:
            self._log_internal(exc, "role_assignment")
            result = VerificationResult(
                status=VerificationStatus.MANUAL_REVIEW,
                confidence=matched.confidence,
                rank=matched.rank,
                level=matched.level_detected,
                unique_id=unique_id,
                failure_reason=FailureReason.INTERNAL_ERROR,
                screenshot_hash=image.sha256,
                error=exc,
            )
            return result, image, f"Role assignment failed: {exc}"

        try:
            await self.locks.upsert_lock(owner, image.sha256, unique_id)
        except LockConflictError as exc:
            await self.roles.revert(member, transition)
            return self._conflict(exc, matched, image, unique_id), image, self._conflict_note(exc)
        except aiosqlite.Error as exc:
            await self.roles.revert(member, transition)
            self._log_internal(exc, "upsert_lock")
            return self._failure(FailureReason.INTERNAL_ERROR, error=exc, screenshot_hash=image.sha256), image, None

        if unique_id:
            try:
                await self.storage.upsert_account(
                    owner,
                    unique_id,
                    level=matched.level_detected,
                    rank_name=matched.rank_name,
                    metadata={"screenshot_hash": image.sha256},
                )
            except aiosqlite.Error as exc:
                self._log_internal(exc, "upsert_account")

        result = VerificationResult(
            status=VerificationStatus.SUCCESS,
            confidence=matched.confidence,
            rank=matched.rank,
            level=matched.level_detected,
            unique_id=unique_id,
            screenshot_hash=image.sha256,
        )
        return result, image, None

    def _match(self, profile: ExtractedProfile, ranks: Sequence[RankDefinition]) -> MatchedRank:
        if profile.is_unknown:
            raise NoMatchError("Vision extraction returned no usable fields.")
        matched = self.matcher.match_profile(profile, ranks)
        if matched is None:
            logger.warning("No rank matched (rank=%r, level=%s)", profile.rank_name, profile.level)
            raise NoMatchError()
        return matched

    @staticmethod
    def _failure(reason: FailureReason, **fields: Any) -> VerificationResult:
        return VerificationResult(status=VerificationStatus.FAILURE, failure_reason=reason, **fields)

    @staticmethod
    def _conflict(
        exc: LockConflictError, matched: MatchedRank, image: DownloadedImage, unique_id: Optional[str]
    ) -> VerificationResult:
        logger.warning("Identity lock conflict (%s) owned by %s", exc.reason.value, exc.conflict_owner)
        return VerificationResult(
            status=VerificationStatus.FAILURE,
            confidence=matched.confidence,
            rank=matched.rank,
            level=matched.level_detected,
            unique_id=unique_id,
            failure_reason=FailureReason.ALREADY_CLAIMED,
            screenshot_hash=image.sha256,
            error=exc,
        )

    @staticmethod
    def _conflict_note(exc: LockConflictError) -> str:
        return f"{exc.reason.value}: already linked to <@{exc.conflict_owner}>"

    def _log_internal(self, exc: BaseException, context: str) -> None:
        log_exception(logger, exc, context=f"pipeline.{context}")
        if self.error_engine is not None:
            self.error_engine.log_exception(exc, context=f"VerificationPipeline.{context}")

    async def _record(
        self,
        member: discord.Member,
        result: VerificationResult,
        image: Optional[DownloadedImage],
        notes: Optional[str],
        correlation_id: str,
    ) -> None:
        metadata: Dict[str, Any] = {
            "correlation_id": correlation_id,
            "processing_ms": result.processing_ms,
            "level": result.level,
            "rank": result.rank.display_name if result.rank else None,
            "failure_reason": result.failure_reason.value if result.failure_reason else None,
        }
        if notes:
            metadata["notes"] = notes
        event = VerificationEvent(
            owner_identity=str(member.id),
            status=result.status,
            confidence=result.confidence if result.rank is not None else None,
            unique_id=result.unique_id,
            screenshot_hash=result.screenshot_hash,
            metadata=metadata,
        )
        await self.audit.record(event, image)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------
    async def unlink_by_hash(self, screenshot_hash: str) -> int:
        return await self.locks.unlink_by_hash(screenshot_hash.strip().lower())

    async def unlink_by_unique_id(self, unique_id: str) -> int:
        return await self.locks.unlink_by_unique_id(unique_id)

    def get_metrics_snapshot(self) -> MetricsSnapshot:
        return self.metrics.snapshot()


__all__ = ["VerificationPipeline"]
