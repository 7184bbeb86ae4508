"""
Test configuration for courseweb.

Environment is pinned BEFORE courseweb is imported, because
courseweb.config builds its settings singleton at import time:
  - SQLite via aiosqlite instead of PostgreSQL
  - known JWT secret and admin password
  - no Alembic run (tables come from Base.metadata.create_all per test)

Redis is never contacted: get_redis is overridden with FakeRedis, and
ASGITransport does not run the lifespan that would open the real pool.
"""
import os
import tempfile
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + str(
    Path(tempfile.gettempdir()) / "courseweb-test.db"
)
os.environ["RUN_MIGRATIONS"] = "false"
os.environ["JWT_SECRET"] = "test-secret-0123456789abcdef0123456789abcdef"
os.environ["ADMIN_PASSWORD"] = "letmein"
os.environ["ADMIN_TOKEN_TTL"] = "24h"
os.environ["STATS_DEBOUNCE_SECONDS"] = "0.05"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import courseweb.models  # noqa: E402,F401
from courseweb.auth.token_codec import TokenCodec  # noqa: E402
from courseweb.cache import get_redis  # noqa: E402
from courseweb.config import settings  # noqa: E402
from courseweb.database import Base, get_db  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite file and schema for every test."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'courseweb.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakePipeline:
    """Queues commands; execute() runs them back to back like MULTI/EXEC."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._commands.clear()

    def __getattr__(self, name: str):
        def queue(*args, **kwargs) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self) -> list:
        commands, self._commands = self._commands, []
        # No await between commands, so no other task can interleave.
        return [self._redis.run(name, *args, **kwargs) for name, args, kwargs in commands]


class FakeRedis:
    """
    In-memory stand-in for the slice of redis.asyncio the app uses: sorted
    sets and hashes for presence, publish/pubsub for the feeds. Set `error`
    to make every data command raise it.
    """

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.error: Optional[Exception] = None
        self.publish = AsyncMock(return_value=1)
        self.pubsub = MagicMock()

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def run(self, name: str, *args, **kwargs):
        if self.error is not None:
            raise self.error
        return getattr(self, f"_{name}")(*args, **kwargs)

    # --- sorted sets ---

    def _zadd(self, name, mapping, xx=False, ch=False):
        zset = self.zsets.setdefault(name, {})
        added = changed = 0
        for member, score in mapping.items():
            if member in zset:
                if zset[member] != score:
                    zset[member] = score
                    changed += 1
            elif not xx:
                zset[member] = score
                added += 1
        return added + changed if ch else added

    def _zscore(self, name, member):
        return self.zsets.get(name, {}).get(member)

    def _zrem(self, name, *members):
        zset = self.zsets.get(name, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    def _zrangebyscore(self, name, min, max):
        lo, hi = float(min), float(max)
        ordered = sorted(self.zsets.get(name, {}).items(), key=lambda item: item[1])
        return [member for member, score in ordered if lo <= score <= hi]

    def _zremrangebyscore(self, name, min, max):
        members = self._zrangebyscore(name, min, max)
        return self._zrem(name, *members)

    # --- hashes ---

    def _hset(self, name, key, value):
        h = self.hashes.setdefault(name, {})
        created = key not in h
        h[key] = value
        return int(created)

    def _hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    def _hmget(self, name, keys):
        h = self.hashes.get(name, {})
        return [h.get(k) for k in keys]

    def _hdel(self, name, *keys):
        h = self.hashes.get(name, {})
        return sum(1 for k in keys if h.pop(k, None) is not None)

    async def zadd(self, *args, **kwargs):
        return self.run("zadd", *args, **kwargs)

    async def zrangebyscore(self, *args, **kwargs):
        return self.run("zrangebyscore", *args, **kwargs)

    async def hmget(self, *args, **kwargs):
        return self.run("hmget", *args, **kwargs)

    async def hget(self, *args, **kwargs):
        return self.run("hget", *args, **kwargs)


@pytest.fixture
def fake_redis() -> FakeRedis:
    """pubsub() is synchronous on the real client, hence MagicMock."""
    return FakeRedis()


# ---------------------------------------------------------------------------
# App + client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory, fake_redis):
    from courseweb.main import app as fastapi_app

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    fastapi_app.dependency_overrides[get_db] = _get_test_db
    fastapi_app.dependency_overrides[get_redis] = lambda: fake_redis
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    """Async httpx client using ASGI transport, no live server needed."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def admin_token() -> str:
    return TokenCodec(settings.jwt_secret).issue({"role": "admin"}, ttl="1h")


@pytest.fixture
def admin_headers(admin_token: str) -> dict:
    return {"Authorization": f"Bearer {admin_token}"}
