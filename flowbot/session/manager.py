"""会话管理模块。

同一会话键的多个轮次可能并发到达；SessionManager 为每个键维护一把 asyncio.Lock，
transaction() 在 读取 -> 修改 -> 保存 的整个过程中持有它，避免丢失更新。

使用示例：
    async with manager.transaction(event.session_key) as session:
        session.apply_to(event)
        await engine.process_event(event)
        session.update_from(event.state)
    # 正常退出时自动保存；块内抛出异常则不保存
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger

from flowbot.config.schema import Config
from flowbot.session.state import DialogSession
from flowbot.session.store import FileSessionStore, RedisSessionStore, SessionStore


class SessionManager:
    """会话管理器。

    Attributes:
        store: 存储后端
    """

    def __init__(self, store: SessionStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}
        # 正在使用或等待某把锁的协程数，归零时回收锁
        self._waiters: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: Config) -> "SessionManager":
        if config.sessions.backend == "redis":
            store: SessionStore = RedisSessionStore.from_url(config.sessions.redis_url, config.sessions.key_prefix)
        else:
            store = FileSessionStore(config.sessions_path)
        return cls(store)

    async def get_or_create(self, key: str) -> DialogSession:
        """读取会话，不存在则创建（未保存）。"""
        session = await self.store.load(key)
        if session is None:
            logger.debug(f"Creating dialog session {key}")
            session = DialogSession(key=key)
        return session

    async def save(self, session: DialogSession) -> None:
        await self.store.save(session)

    async def delete(self, key: str) -> bool:
        async with self.lock(key):
            return await self.store.delete(key)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """持有会话键的互斥锁。"""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                self._locks.pop(key, None)

    @asynccontextmanager
    async def transaction(self, key: str) -> AsyncIterator[DialogSession]:
        """在锁内读取会话，块正常结束后保存。"""
        async with self.lock(key):
            session = await self.get_or_create(key)
            yield session
            await self.store.save(session)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
