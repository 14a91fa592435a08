import aiosqlite
import pytest

from verification_bot.core.models import VerificationEvent, VerificationStatus


@pytest.mark.asyncio
async def test_initialize_is_idempotent(storage):
    await storage.initialize()
    rows = await storage.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
    names = {row["name"] for row in rows}
    assert {"screenshot_locks", "accounts", "verification_events"} <= names


@pytest.mark.asyncio
async def test_first_account_becomes_primary(storage):
    first = await storage.upsert_account("7", "182-625-474-6", level=618, rank_name="Galactic Overlord")
    second = await storage.upsert_account("7", "111-222-333-4", level=42, rank_name="Rookie")

    assert first.is_primary
    assert not second.is_primary
    accounts = await storage.list_accounts("7")
    assert [account.unique_id for account in accounts] == ["182-625-474-6", "111-222-333-4"]


@pytest.mark.asyncio
async def test_upsert_account_refreshes_existing_row(storage):
    await storage.upsert_account("7", "182-625-474-6", level=500, rank_name="Grand Master", metadata={"a": 1})
    updated = await storage.upsert_account("7", "182-625-474-6", level=618, rank_name="Galactic Overlord")

    assert updated.level == 618
    assert updated.rank_name == "Galactic Overlord"
    assert updated.is_primary
    assert updated.metadata == {}
    assert len(await storage.list_accounts("7")) == 1


@pytest.mark.asyncio
async def test_set_primary_account_switches_flag(storage):
    await storage.upsert_account("7", "182-625-474-6", level=618, rank_name="Galactic Overlord")
    await storage.upsert_account("7", "111-222-333-4", level=42, rank_name="Rookie")

    assert await storage.set_primary_account("7", "111-222-333-4") is True
    primaries = [account.unique_id for account in await storage.list_accounts("7") if account.is_primary]
    assert primaries == ["111-222-333-4"]

    assert await storage.set_primary_account("7", "999-999-999-9") is False
    assert await storage.set_primary_account("8", "111-222-333-4") is False


@pytest.mark.asyncio
async def test_events_are_appended_and_listed_newest_first(storage):
    await storage.insert_event(VerificationEvent(owner_identity="7", status=VerificationStatus.FAILURE))
    await storage.insert_event(
        VerificationEvent(
            owner_identity="7",
            status=VerificationStatus.SUCCESS,
            confidence=0.95,
            unique_id="182-625-474-6",
            screenshot_hash="ab" * 32,
            metadata={"rank": "Master"},
        )
    )
    await storage.insert_event(VerificationEvent(owner_identity="8", status=VerificationStatus.MANUAL_REVIEW))

    events = await storage.list_events("7")
    assert [event["status"] for event in events] == [VerificationStatus.SUCCESS, VerificationStatus.FAILURE]
    assert events[0]["metadata"] == {"rank": "Master"}
    assert events[0]["confidence"] == pytest.approx(0.95)
    assert len(await storage.list_events()) == 3
    assert len(await storage.list_events(limit=1)) == 1


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(storage):
    with pytest.raises(aiosqlite.IntegrityError):
        async with storage.transaction() as db:
            await db.execute(
                "INSERT INTO screenshot_locks (screenshot_hash, unique_id, owner_identity, created_at, updated_at)"
                " VALUES ('h1', NULL, '7', 'now', 'now')"
            )
            await db.execute(
                "INSERT INTO screenshot_locks (screenshot_hash, unique_id, owner_identity, created_at, updated_at)"
                " VALUES ('h1', NULL, '8', 'now', 'now')"
            )

    assert await storage.fetch_all("SELECT * FROM screenshot_locks") == []
