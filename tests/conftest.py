import io
import types
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from PIL import Image

from verification_bot.config import DEFAULT_RANKS_PATH, VerificationBotConfig
from verification_bot.core.metrics import MetricsService
from verification_bot.core.rank_config import RankConfigProvider
from verification_bot.core.storage_engine import StorageEngine


def make_png(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture()
def rank_provider() -> RankConfigProvider:
    provider = RankConfigProvider(DEFAULT_RANKS_PATH)
    provider.reload()
    return provider


@pytest.fixture()
def ranks(rank_provider: RankConfigProvider):
    return rank_provider.get_current()


@pytest.fixture()
def sample_config(tmp_path) -> VerificationBotConfig:
    return VerificationBotConfig(
        discord_token="testing-token",
        rank_channel_id=10,
        evidence_channel_id=20,
        owner_ids={1},
        test_guild_ids={2},
        database_path=str(tmp_path / "verification.db"),
        cache_dir=str(tmp_path / "cache"),
        temp_dir=str(tmp_path / "tmp"),
        metrics_path=str(tmp_path / "metrics.json"),
        error_log_path=str(tmp_path / "errors.log"),
    )


@pytest_asyncio.fixture()
async def storage(tmp_path) -> StorageEngine:
    engine = StorageEngine(db_path=str(tmp_path / "verification.db"))
    await engine.initialize()
    return engine


@pytest.fixture()
def metrics(tmp_path) -> MetricsService:
    return MetricsService(tmp_path / "metrics.json", debounce_seconds=0.01)


# ----------------------------------------------------------------------
# Discord stubs
# ----------------------------------------------------------------------


class StubRole:
    def __init__(self, role_id: int, name: str = "") -> None:
        self.id = role_id
        self.name = name or f"role-{role_id}"

    def __repr__(self) -> str:
        return f"StubRole({self.id})"


class StubGuild:
    def __init__(self, roles: Optional[List[StubRole]] = None) -> None:
        self.id = 123
        self._roles: Dict[int, StubRole] = {role.id: role for role in roles or []}

    def get_role(self, role_id: int) -> Optional[StubRole]:
        return self._roles.get(role_id)


class StubMember:
    def __init__(self, member_id: int, guild: StubGuild, roles: Optional[List[StubRole]] = None) -> None:
        self.id = member_id
        self.guild = guild
        self.bot = False
        self.roles: List[StubRole] = list(roles or [])
        self.add_roles = AsyncMock(side_effect=self._add)
        self.remove_roles = AsyncMock(side_effect=self._remove)
        self.send = AsyncMock(return_value=types.SimpleNamespace(id=555, guild=None))

    async def _add(self, *roles, reason=None):
        for role in roles:
            if role not in self.roles:
                self.roles.append(role)

    async def _remove(self, *roles, reason=None):
        self.roles = [role for role in self.roles if role not in roles]


@pytest.fixture()
def rank_roles(ranks) -> Dict[str, StubRole]:
    return {rank.display_name: StubRole(int(rank.token), rank.display_name) for rank in ranks}


@pytest.fixture()
def guild(rank_roles) -> StubGuild:
    return StubGuild(list(rank_roles.values()) + [StubRole(42, "member")])


# ----------------------------------------------------------------------
# aiohttp stubs
# ----------------------------------------------------------------------


class FakeContent:
    def __init__(self, chunks: List[bytes], error: Optional[BaseException] = None) -> None:
        self.chunks = chunks
        self.error = error
        self.consumed = 0

    async def iter_chunked(self, _size: int):
        for chunk in self.chunks:
            self.consumed += 1
            yield chunk
        if self.error is not None:
            raise self.error


class FakeResponse:
    def __init__(
        self,
        chunks: List[bytes],
        *,
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.status = status
        self.headers = headers or {}
        self.content = FakeContent(chunks, error)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[BaseException] = None) -> None:
        self.response = response
        self.error = error
        self.calls: List[str] = []

    def get(self, url: str, timeout=None):
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.response
