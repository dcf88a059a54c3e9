"""会话模块：对话会话状态与持久化。"""

from flowbot.session.manager import SessionManager
from flowbot.session.state import DialogSession
from flowbot.session.store import FileSessionStore, RedisSessionStore, SessionStore

__all__ = ["DialogSession", "FileSessionStore", "RedisSessionStore", "SessionManager", "SessionStore"]
