"""
Asynchronous SQLite storage for verification state.

Key features:
 - Async API using `aiosqlite`, one connection per operation
 - Schema bootstrapped on `initialize()`
 - UNIQUE constraints on screenshot hash and unique id are the source of truth
   for identity locks; multi-step writes run inside `BEGIN IMMEDIATE`
 - Append-only verification event log and per-owner game accounts
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import Account, VerificationEvent, VerificationStatus, utcnow

logger = get_logger("storage_engine")

SCHEMA = """
CREATE TABLE IF NOT EXISTS screenshot_locks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    screenshot_hash TEXT NOT NULL UNIQUE,
    unique_id TEXT UNIQUE,
    owner_identity TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_screenshot_locks_owner ON screenshot_locks(owner_identity);

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_identity TEXT NOT NULL,
    unique_id TEXT NOT NULL,
    level INTEGER,
    rank_name TEXT NOT NULL,
    verified_at TEXT NOT NULL,
    is_primary INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    UNIQUE (owner_identity, unique_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_primary
    ON accounts(owner_identity) WHERE is_primary = 1;

CREATE TABLE IF NOT EXISTS verification_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_identity TEXT NOT NULL,
    status TEXT NOT NULL,
    confidence REAL,
    unique_id TEXT,
    screenshot_hash TEXT,
    timestamp TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_verification_events_owner ON verification_events(owner_identity);
"""


def _now_iso() -> str:
    return utcnow().isoformat()


def _row_to_account(row: aiosqlite.Row) -> Account:
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except ValueError:
        metadata = {}
    return Account(
        owner_identity=row["owner_identity"],
        unique_id=row["unique_id"],
        level=row["level"],
        rank_name=row["rank_name"],
        verified_at=row["verified_at"],
        is_primary=bool(row["is_primary"]),
        metadata=metadata,
    )


class StorageEngine:
    """
    Unified asynchronous persistence layer.

    Parameters:
        db_path: path to SQLite database file.
    """

    def __init__(self, *, db_path: str = "data/verification.db") -> None:
        self.db_path = db_path
        self._lock = asyncio.Lock()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        """Ensure database exists and schema is present."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode=WAL;")
                await db.execute("PRAGMA synchronous=NORMAL;")
                await db.executescript(SCHEMA)
                await db.commit()
        logger.info("Storage initialised at %s", self.db_path)

    # ------------------------------------------------------------------
    # Core query helpers
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialised write transaction.

        ``BEGIN IMMEDIATE`` takes the database write lock up front so the
        read-then-write sequences inside cannot interleave with another
        process.  Any exception rolls the transaction back and propagates.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                else:
                    await db.execute("COMMIT")

    async def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a single write query and return the affected row count."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(query, tuple(params))
                await db.commit()
                return cursor.rowcount

    async def fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(query, tuple(params)) as cursor:
                    return list(await cursor.fetchall())

    async def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetch_all(query, params)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Verification events
    # ------------------------------------------------------------------
    async def insert_event(self, event: VerificationEvent) -> None:
        await self.execute(
            """
            INSERT INTO verification_events
                (owner_identity, status, confidence, unique_id, screenshot_hash, timestamp, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.owner_identity,
                event.status.value,
                event.confidence,
                event.unique_id,
                event.screenshot_hash,
                event.timestamp.isoformat(),
                json.dumps(event.metadata, default=str),
            ),
        )

    async def list_events(self, owner_identity: Optional[str] = None, *, limit: int = 50) -> List[Dict[str, Any]]:
        if owner_identity is None:
            rows = await self.fetch_all(
                "SELECT * FROM verification_events ORDER BY id DESC LIMIT ?", (limit,)
            )
        else:
            rows = await self.fetch_all(
                "SELECT * FROM verification_events WHERE owner_identity = ? ORDER BY id DESC LIMIT ?",
                (owner_identity, limit),
            )
        events = []
        for row in rows:
            record = dict(row)
            record["status"] = VerificationStatus(record["status"])
            record["metadata"] = json.loads(record["metadata"] or "{}")
            events.append(record)
        return events

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    async def upsert_account(
        self,
        owner_identity: str,
        unique_id: str,
        *,
        level: Optional[int],
        rank_name: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Account:
        """Insert or refresh an account; an owner's first account becomes primary."""
        verified_at = _now_iso()
        payload = json.dumps(metadata or {}, default=str)
        async with self.transaction() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM accounts WHERE owner_identity = ? AND is_primary = 1",
                (owner_identity,),
            ) as cursor:
                (primary_count,) = await cursor.fetchone()
            await db.execute(
                """
                INSERT INTO accounts
                    (owner_identity, unique_id, level, rank_name, verified_at, is_primary, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_identity, unique_id) DO UPDATE SET
                    level = excluded.level,
                    rank_name = excluded.rank_name,
                    verified_at = excluded.verified_at,
                    metadata = excluded.metadata
                """,
                (owner_identity, unique_id, level, rank_name, verified_at, 1 if primary_count == 0 else 0, payload),
            )
            async with db.execute(
                "SELECT * FROM accounts WHERE owner_identity = ? AND unique_id = ?",
                (owner_identity, unique_id),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_account(row)

    async def list_accounts(self, owner_identity: str) -> List[Account]:
        rows = await self.fetch_all(
            "SELECT * FROM accounts WHERE owner_identity = ? ORDER BY is_primary DESC, verified_at DESC",
            (owner_identity,),
        )
        return [_row_to_account(row) for row in rows]

    async def set_primary_account(self, owner_identity: str, unique_id: str) -> bool:
        """Make ``unique_id`` the owner's primary account. False if the owner has no such account."""
        async with self.transaction() as db:
            async with db.execute(
                "SELECT 1 FROM accounts WHERE owner_identity = ? AND unique_id = ?",
                (owner_identity, unique_id),
            ) as cursor:
                if await cursor.fetchone() is None:
                    return False
            await db.execute("UPDATE accounts SET is_primary = 0 WHERE owner_identity = ?", (owner_identity,))
            await db.execute(
                "UPDATE accounts SET is_primary = 1 WHERE owner_identity = ? AND unique_id = ?",
                (owner_identity, unique_id),
            )
        return True


__all__ = ["StorageEngine", "SCHEMA"]
