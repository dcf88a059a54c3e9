"""Tests for session persistence and per-key serialization."""

import asyncio

import pytest
import pytest_asyncio
from fakeredis import aioredis

from flowbot.session import DialogSession, FileSessionStore, RedisSessionStore, SessionManager


@pytest_asyncio.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


class TestDialogSession:

    def test_apply_and_update_round_trip_through_event(self, event):
        session = DialogSession(key=event.session_key, user={"name": "Ada"}, context={"currentNode": "entry"})

        session.apply_to(event)
        event.state.user["name"] = "Grace"
        assert session.user["name"] == "Ada"

        session.update_from(event.state)
        assert session.user["name"] == "Grace"
        assert session.context == {"currentNode": "entry"}

    def test_workflow_variables_always_present(self, event):
        DialogSession(key="k", workflow={}).apply_to(event)
        assert event.state.workflow == {"variables": {}}


class TestFileSessionStore:

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = FileSessionStore(tmp_path)
        session = DialogSession(key="bot-1:web:user-1", session={"lastMessages": [{"eventId": "e1"}]})

        await store.save(session)
        loaded = await store.load("bot-1:web:user-1")

        assert loaded.key == "bot-1:web:user-1"
        assert loaded.session == {"lastMessages": [{"eventId": "e1"}]}
        assert await store.list_keys() == ["bot-1:web:user-1"]

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, tmp_path):
        store = FileSessionStore(tmp_path)
        assert await store.load("nope") is None

        await store.save(DialogSession(key="k"))
        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_corrupt_file_is_ignored(self, tmp_path):
        store = FileSessionStore(tmp_path)
        (tmp_path / "broken.jsonl").write_text("{not json\n")

        assert await store.load("broken") is None

    @pytest.mark.asyncio
    async def test_interrupted_save_keeps_previous_file(self, tmp_path, monkeypatch):
        store = FileSessionStore(tmp_path)
        await store.save(DialogSession(key="k", user={"name": "Ada"}))

        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("flowbot.session.store.os.replace", failing_replace)
        with pytest.raises(OSError):
            await store.save(DialogSession(key="k", user={"name": "Grace"}))

        loaded = await store.load("k")
        assert loaded.user == {"name": "Ada"}
        assert sorted(p.name for p in tmp_path.iterdir()) == ["k.jsonl"]


class TestRedisSessionStore:

    @pytest.mark.asyncio
    async def test_save_load_delete(self, redis_client):
        store = RedisSessionStore(redis_client, key_prefix="test:")
        await store.save(DialogSession(key="bot:web:u", temp={"x": 1}))

        loaded = await store.load("bot:web:u")
        assert loaded.temp == {"x": 1}
        assert await redis_client.exists("test:bot:web:u")
        assert await store.list_keys() == ["bot:web:u"]

        assert await store.delete("bot:web:u") is True
        assert await store.load("bot:web:u") is None


class TestSessionManager:

    @pytest.mark.asyncio
    async def test_transaction_saves_on_success(self, tmp_path):
        manager = SessionManager(FileSessionStore(tmp_path))

        async with manager.transaction("k") as session:
            session.user["visits"] = 1

        assert (await manager.store.load("k")).user == {"visits": 1}

    @pytest.mark.asyncio
    async def test_transaction_skips_save_on_error(self, tmp_path):
        manager = SessionManager(FileSessionStore(tmp_path))

        with pytest.raises(RuntimeError):
            async with manager.transaction("k") as session:
                session.user["visits"] = 1
                raise RuntimeError("turn failed")

        assert await manager.store.load("k") is None
        assert not manager.is_locked("k")

    @pytest.mark.asyncio
    async def test_concurrent_turns_do_not_lose_updates(self, redis_client):
        manager = SessionManager(RedisSessionStore(redis_client))

        async def turn():
            async with manager.transaction("bot:web:u") as session:
                count = session.session.get("count", 0)
                await asyncio.sleep(0.01)
                session.session["count"] = count + 1

        await asyncio.gather(*(turn() for _ in range(5)))

        assert (await manager.store.load("bot:web:u")).session["count"] == 5
