"""Tests for session store backends — memory, file, SQL — and the factory."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import StoreConfig
from database.session import _is_memory_sqlite, engine_kwargs, to_async_url
from database.store import SqlSessionStore
from database.store_factory import create_store, get_store, reset_store
from database.store_file import FileSessionStore
from database.store_memory import InMemorySessionStore
from models.schemas import ContextVariable, MessageRole, Session, SessionStatus

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _session(agent_id: str = "support", **kwargs) -> Session:
    s = Session(agent_id=agent_id, created_at=NOW, updated_at=NOW, last_activity_at=NOW, **kwargs)
    s.context.append_message(MessageRole.USER, "hello")
    s.context.variables["order_id"] = ContextVariable(name="order_id", value="A-1", confidence=0.9)
    return s


class StoreContract:
    """Behaviour every backend shares. Subclasses provide a `store` fixture."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        s = _session()
        await store.save(s)
        loaded = await store.load(s.id)
        assert loaded == s
        assert loaded is not s

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        assert await store.load("nope") is None

    @pytest.mark.asyncio
    async def test_save_is_idempotent_upsert(self, store):
        s = _session()
        await store.save(s)
        await store.save(s)
        s.context.append_message(MessageRole.ASSISTANT, "hi there")
        await store.save(s)
        assert len(await store.list()) == 1
        assert len((await store.load(s.id)).context.messages) == 2

    @pytest.mark.asyncio
    async def test_returned_session_is_detached(self, store):
        s = _session()
        await store.save(s)
        loaded = await store.load(s.id)
        loaded.context.append_message(MessageRole.USER, "local only")
        assert len((await store.load(s.id)).context.messages) == 1

    @pytest.mark.asyncio
    async def test_delete(self, store):
        s = _session()
        await store.save(s)
        assert await store.delete(s.id)
        assert not await store.delete(s.id)
        assert await store.load(s.id) is None

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        a = _session("support")
        b = _session("billing", status=SessionStatus.IDLE)
        await store.save(a)
        await store.save(b)
        assert {s.id for s in await store.list()} == {a.id, b.id}
        assert [s.id for s in await store.list(agent_id="billing")] == [b.id]
        assert [s.id for s in await store.list(status=SessionStatus.ACTIVE)] == [a.id]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, store):
        live = _session()
        dead = _session(status=SessionStatus.EXPIRED)
        past = _session(expires_at=NOW - timedelta(seconds=1))
        future = _session(expires_at=NOW + timedelta(hours=1))
        for s in (live, dead, past, future):
            await store.save(s)
        assert await store.cleanup_expired(NOW) == 2
        assert {s.id for s in await store.list()} == {live.id, future.id}


class TestInMemoryStore(StoreContract):
    @pytest.fixture
    def store(self):
        return InMemorySessionStore()

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.save(_session())
        stats = store.stats()
        assert stats["backend"] == "memory"
        assert stats["by_status"] == {"active": 1}


class TestFileStore(StoreContract):
    @pytest.fixture
    def store(self, tmp_path):
        return FileSessionStore(data_dir=str(tmp_path / "sessions"))

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        data_dir = str(tmp_path / "durable")
        s = _session()
        await FileSessionStore(data_dir=data_dir).save(s)
        reopened = FileSessionStore(data_dir=data_dir)
        assert await reopened.load(s.id) == s

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / "sessions.json").write_text("{not json")
        store = FileSessionStore(data_dir=str(tmp_path))
        assert store.stats()["sessions"] == 0


class TestSqlStore(StoreContract):
    @pytest_asyncio.fixture
    async def store(self, tmp_path):
        store = SqlSessionStore(url=f"sqlite:///{tmp_path / 'sessions.db'}")
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_in_memory_sqlite(self):
        store = SqlSessionStore(url="sqlite:///:memory:")
        s = _session()
        await store.save(s)
        assert await store.load(s.id) == s
        stats = await store.stats()
        assert stats["dialect"] == "sqlite"
        assert stats["sessions"] == 1
        await store.close()


class TestEngineHelpers:
    def test_async_urls(self):
        assert to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert to_async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"
        assert to_async_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
        assert to_async_url("sqlite+aiosqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"

    def test_memory_sqlite_detection(self):
        assert _is_memory_sqlite("sqlite+aiosqlite:///:memory:")
        assert _is_memory_sqlite("sqlite+aiosqlite://")
        assert not _is_memory_sqlite("sqlite+aiosqlite:///./x.db")
        assert "poolclass" in engine_kwargs("sqlite+aiosqlite:///:memory:")
        assert "pool_size" in engine_kwargs("postgresql+asyncpg://h/db")


class TestStoreFactory:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_backend(self):
        assert isinstance(create_store(StoreConfig(backend="memory")), InMemorySessionStore)

    def test_file_backend(self, tmp_path):
        store = create_store(StoreConfig(backend="file", file_dir=str(tmp_path)))
        assert isinstance(store, FileSessionStore)

    def test_sql_backend(self, tmp_path):
        store = create_store(StoreConfig(backend="sql", url=f"sqlite:///{tmp_path / 's.db'}"))
        assert isinstance(store, SqlSessionStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown store backend"):
            create_store(StoreConfig(backend="redis"))

    def test_singleton(self):
        first = get_store()
        assert get_store() is first
        reset_store()
        assert get_store() is not first
