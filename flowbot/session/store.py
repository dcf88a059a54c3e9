"""会话存储后端。

- FileSessionStore: 每个会话一个 JSONL 文件（metadata 行 + state 行）
- RedisSessionStore: 每个会话一个 JSON 字符串键

存储层只负责读写；同一会话键的读-改-写互斥由 SessionManager 保证。
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import redis.asyncio as redis
from loguru import logger

from flowbot.session.state import DialogSession
from flowbot.utils.helpers import ensure_dir, safe_filename


class SessionStore(ABC):
    """会话存储接口。"""

    @abstractmethod
    async def load(self, key: str) -> DialogSession | None:
        """读取会话，不存在时返回 None。"""
        pass

    @abstractmethod
    async def save(self, session: DialogSession) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """删除会话，返回是否确实存在。"""
        pass

    @abstractmethod
    async def list_keys(self) -> list[str]:
        pass


class FileSessionStore(SessionStore):
    """JSONL 文件存储。

    文件格式：
    ```
    {"_type": "metadata", "key": "...", "created_at": "...", "updated_at": "...", "metadata": {...}}
    {"_type": "state", "user": {...}, "context": {...}, "session": {...}, "temp": {...}, "workflow": {...}}
    ```
    """

    def __init__(self, directory: Path):
        self.directory = ensure_dir(directory)

    def _get_session_path(self, key: str) -> Path:
        safe_key = safe_filename(key.replace(":", "_"))
        return self.directory / f"{safe_key}.jsonl"

    async def load(self, key: str) -> DialogSession | None:
        path = self._get_session_path(key)
        if not path.exists():
            return None

        data: dict[str, Any] = {"key": key}
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    record = json.loads(line)
                    record_type = record.pop("_type", None)
                    if record_type in ("metadata", "state"):
                        data.update(record)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load session {key}: {e}")
            return None

        data["key"] = key
        return DialogSession.from_dict(data)

    async def save(self, session: DialogSession) -> None:
        path = self._get_session_path(session.key)
        metadata_line = {
            "_type": "metadata",
            "key": session.key,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "metadata": session.metadata,
        }
        state_line = {"_type": "state", **session.state_dict()}

        # 写入临时文件后原子替换，旧文件在替换前保持完整
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(json.dumps(metadata_line, ensure_ascii=False) + "\n")
                f.write(json.dumps(state_line, ensure_ascii=False, default=str) + "\n")
            os.replace(tmp_path, path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    async def delete(self, key: str) -> bool:
        path = self._get_session_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    async def list_keys(self) -> list[str]:
        keys = []
        for path in self.directory.glob("*.jsonl"):
            try:
                with open(path, encoding="utf-8") as f:
                    first_line = f.readline().strip()
                data = json.loads(first_line) if first_line else {}
            except (OSError, json.JSONDecodeError):
                continue
            if data.get("_type") == "metadata" and data.get("key"):
                keys.append(data["key"])
        return sorted(keys)


class RedisSessionStore(SessionStore):
    """Redis 存储：键为 key_prefix + 会话键，值为 JSON。"""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "flowbot:session:"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "flowbot:session:") -> "RedisSessionStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), key_prefix)

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def load(self, key: str) -> DialogSession | None:
        raw = await self.redis.get(self._redis_key(key))
        if raw is None:
            return None
        try:
            return DialogSession.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            logger.warning(f"Failed to load session {key}: {e}")
            return None

    async def save(self, session: DialogSession) -> None:
        await self.redis.set(
            self._redis_key(session.key),
            json.dumps(session.to_dict(), ensure_ascii=False, default=str),
        )

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(self._redis_key(key)))

    async def list_keys(self) -> list[str]:
        keys = []
        async for redis_key in self.redis.scan_iter(match=f"{self.key_prefix}*"):
            if isinstance(redis_key, bytes):
                redis_key = redis_key.decode("utf-8")
            keys.append(redis_key[len(self.key_prefix):])
        return sorted(keys)

    async def close(self) -> None:
        await self.redis.aclose()
