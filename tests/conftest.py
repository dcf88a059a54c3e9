"""Shared fixtures for flowbot tests."""

from unittest.mock import AsyncMock, Mock

import pytest

from flowbot.actions.registry import ActionRegistry
from flowbot.bus.events import Event, EventDirection
from flowbot.bus.queue import MessageBus
from flowbot.config.schema import Config
from flowbot.content.renderer import ContentRenderer
from flowbot.dialog.strategy import ActionStrategy


@pytest.fixture
def make_event():
    """Factory for incoming text events."""

    def _make(text: str = "hi", **kwargs) -> Event:
        fields = {
            "bot_id": "bot-1",
            "channel": "web",
            "target": "user-1",
            "type": "text",
            "direction": EventDirection.INCOMING,
            "payload": {"text": text},
        }
        fields.update(kwargs)
        return Event(**fields)

    return _make


@pytest.fixture
def event(make_event):
    return make_event()


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def config(tmp_path):
    """Config pointing flows and sessions at a temporary directory."""
    return Config(
        dialog={"flows_dir": str(tmp_path / "flows"), "sandbox_timeout_ms": 5000},
        sessions={"backend": "file", "directory": str(tmp_path / "sessions")},
    )


@pytest.fixture
def renderer():
    """Renderer that echoes the output type and instruction args."""
    mock = Mock(spec=ContentRenderer)

    async def render(content_type, args, destination):
        return [{"type": "text", "contentType": content_type, "text": args.get("text", "")}]

    mock.render_element = AsyncMock(side_effect=render)
    return mock


@pytest.fixture
def event_engine():
    mock = Mock()
    mock.reply_to_event = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def actions():
    return ActionRegistry()


@pytest.fixture
def action_strategy(actions, renderer, event_engine):
    return ActionStrategy(actions=actions, renderer=renderer, event_engine=event_engine)
