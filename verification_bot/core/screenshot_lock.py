"""Identity locks binding a screenshot hash and a game unique id to one owner."""

from __future__ import annotations

from typing import Optional

import aiosqlite

from verification_bot.core.errors import LockConflictError, LockReason
from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import ScreenshotLock, format_unique_id, utcnow
from verification_bot.core.storage_engine import StorageEngine

logger = get_logger("screenshot_lock")

_SELECT_BY_HASH = "SELECT * FROM screenshot_locks WHERE screenshot_hash = ?"
_SELECT_BY_UNIQUE_ID = "SELECT * FROM screenshot_locks WHERE unique_id = ?"


def _row_to_lock(row: aiosqlite.Row) -> ScreenshotLock:
    return ScreenshotLock(
        screenshot_hash=row["screenshot_hash"],
        owner_identity=row["owner_identity"],
        unique_id=row["unique_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class IdentityLockService:
    """
    Prevents two owners from claiming the same screenshot or game account.

    ``verify_lock`` is a read-only pre-check.  ``upsert_lock`` is the commit
    point: it re-checks inside a write transaction and relies on the table's
    UNIQUE constraints, so two concurrent claims can never both succeed.
    """

    def __init__(self, storage: StorageEngine) -> None:
        self.storage = storage

    async def get_by_hash(self, screenshot_hash: str) -> Optional[ScreenshotLock]:
        row = await self.storage.fetch_one(_SELECT_BY_HASH, (screenshot_hash,))
        return _row_to_lock(row) if row else None

    async def get_by_unique_id(self, unique_id: str) -> Optional[ScreenshotLock]:
        canonical = format_unique_id(unique_id)
        if canonical is None:
            return None
        row = await self.storage.fetch_one(_SELECT_BY_UNIQUE_ID, (canonical,))
        return _row_to_lock(row) if row else None

    async def verify_lock(self, owner: str, screenshot_hash: str, unique_id: Optional[str] = None) -> None:
        existing = await self.get_by_hash(screenshot_hash)
        if existing and existing.owner_identity != owner:
            raise LockConflictError(LockReason.HASH_CONFLICT, existing.owner_identity)

        if unique_id:
            existing = await self.get_by_unique_id(unique_id)
            if existing and existing.owner_identity != owner:
                raise LockConflictError(LockReason.UNIQUE_ID_CONFLICT, existing.owner_identity)

    async def upsert_lock(
        self, owner: str, screenshot_hash: str, unique_id: Optional[str] = None
    ) -> ScreenshotLock:
        canonical = format_unique_id(unique_id)
        now = utcnow().isoformat()
        try:
            async with self.storage.transaction() as db:
                lock = await self._upsert_in_transaction(db, owner, screenshot_hash, canonical, now)
        except aiosqlite.IntegrityError as exc:
            conflict = await self._find_conflict(owner, screenshot_hash, canonical)
            if conflict is None:
                raise
            logger.warning(
                "Lock race lost for %s (%s held by %s)", owner, conflict.reason.value, conflict.conflict_owner
            )
            raise conflict from exc
        logger.debug("Lock upserted: owner=%s hash=%s unique_id=%s", owner, screenshot_hash[:12], canonical)
        return lock

    async def _upsert_in_transaction(
        self,
        db: aiosqlite.Connection,
        owner: str,
        screenshot_hash: str,
        unique_id: Optional[str],
        now: str,
    ) -> ScreenshotLock:
        async with db.execute(_SELECT_BY_HASH, (screenshot_hash,)) as cursor:
            by_hash = await cursor.fetchone()
        if by_hash and by_hash["owner_identity"] != owner:
            raise LockConflictError(LockReason.HASH_CONFLICT, by_hash["owner_identity"])

        by_unique = None
        if unique_id:
            async with db.execute(_SELECT_BY_UNIQUE_ID, (unique_id,)) as cursor:
                by_unique = await cursor.fetchone()
            if by_unique and by_unique["owner_identity"] != owner:
                raise LockConflictError(LockReason.UNIQUE_ID_CONFLICT, by_unique["owner_identity"])

        if by_hash:
            if by_unique and by_unique["id"] != by_hash["id"]:
                # same owner: the unique id moves to the re-submitted screenshot
                await db.execute(
                    "UPDATE screenshot_locks SET unique_id = NULL, updated_at = ? WHERE id = ?",
                    (now, by_unique["id"]),
                )
            await db.execute(
                "UPDATE screenshot_locks SET unique_id = COALESCE(?, unique_id), updated_at = ? WHERE id = ?",
                (unique_id, now, by_hash["id"]),
            )
            row_id = by_hash["id"]
        elif by_unique:
            await db.execute(
                "UPDATE screenshot_locks SET screenshot_hash = ?, updated_at = ? WHERE id = ?",
                (screenshot_hash, now, by_unique["id"]),
            )
            row_id = by_unique["id"]
        else:
            cursor = await db.execute(
                """
                INSERT INTO screenshot_locks (screenshot_hash, unique_id, owner_identity, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (screenshot_hash, unique_id, owner, now, now),
            )
            row_id = cursor.lastrowid

        async with db.execute("SELECT * FROM screenshot_locks WHERE id = ?", (row_id,)) as cursor:
            return _row_to_lock(await cursor.fetchone())

    async def _find_conflict(
        self, owner: str, screenshot_hash: str, unique_id: Optional[str]
    ) -> Optional[LockConflictError]:
        existing = await self.get_by_hash(screenshot_hash)
        if existing and existing.owner_identity != owner:
            return LockConflictError(LockReason.HASH_CONFLICT, existing.owner_identity)
        if unique_id:
            existing = await self.get_by_unique_id(unique_id)
            if existing and existing.owner_identity != owner:
                return LockConflictError(LockReason.UNIQUE_ID_CONFLICT, existing.owner_identity)
        return None

    async def verify_and_upsert(
        self, owner: str, screenshot_hash: str, unique_id: Optional[str] = None
    ) -> ScreenshotLock:
        await self.verify_lock(owner, screenshot_hash, unique_id)
        return await self.upsert_lock(owner, screenshot_hash, unique_id)

    async def unlink_by_hash(self, screenshot_hash: str) -> int:
        count = await self.storage.execute(
            "DELETE FROM screenshot_locks WHERE screenshot_hash = ?", (screenshot_hash,)
        )
        if count > 0:
            logger.info("Screenshot lock removed by hash override (%s, %d rows)", screenshot_hash[:12], count)
        return count

    async def unlink_by_unique_id(self, unique_id: str) -> int:
        canonical = format_unique_id(unique_id)
        if canonical is None:
            return 0
        count = await self.storage.execute("DELETE FROM screenshot_locks WHERE unique_id = ?", (canonical,))
        if count > 0:
            logger.info("Screenshot lock removed by admin command (%s, %d rows)", canonical, count)
        return count


__all__ = ["IdentityLockService"]
