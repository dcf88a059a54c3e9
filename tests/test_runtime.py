"""End-to-end tests for the bot runtime."""

import asyncio

import pytest

from flowbot.dialog.flow import FlowLoader
from flowbot.runtime import BotRuntime
from flowbot.session import FileSessionStore, SessionManager

GREETING_FLOW = {
    "startNode": "ask",
    "nodes": [
        {
            "name": "ask",
            "onEnter": ['say #text {"text": "Hi! What should I call you?"}'],
            "onReceive": [{"fn": "rememberName", "args": {"name": "{{ event.payload.text }}"}}],
            "next": [{"condition": "user.name", "node": "welcome"}],
        },
        {
            "name": "welcome",
            "onEnter": ['say #text {"text": "Welcome, {{ user.name }}"}'],
            "onReceive": [],
        },
    ],
}


@pytest.fixture
def runtime(config, tmp_path):
    flows = FlowLoader()
    flows.add_flow("main.flow.json", GREETING_FLOW)
    runtime = BotRuntime(config, sessions=SessionManager(FileSessionStore(tmp_path / "sessions")), flows=flows)

    @runtime.actions.action("rememberName")
    def remember_name(event, args):
        event.state.user["name"] = args["name"]

    return runtime


async def drain(bus):
    events = []
    while bus.outbound_size:
        events.append(await bus.outbound.get())
    return events


class TestProcessEvent:

    @pytest.mark.asyncio
    async def test_conversation_state_persists_between_turns(self, runtime, make_event):
        assert await runtime.process_event(make_event("hello"))
        first = await drain(runtime.bus)
        assert [e.payload["text"] for e in first] == ["Hi! What should I call you?"]

        assert await runtime.process_event(make_event("Ada"))
        second = await drain(runtime.bus)
        assert [e.payload["text"] for e in second] == ["Welcome, Ada"]

        session = await runtime.sessions.store.load("bot-1:web:user-1")
        assert session.user == {"name": "Ada"}
        assert session.context == {"currentFlow": "main.flow.json", "currentNode": "welcome"}
        assert [m["replyPreview"] for m in session.session["lastMessages"]] == ["#text", "#text"]

    @pytest.mark.asyncio
    async def test_outgoing_middleware_sees_replies(self, runtime, make_event):
        seen = []

        def tag(event, next_):
            seen.append(event.payload["text"])
            event.payload["tagged"] = True
            next_()

        runtime.engine.handle("audit").register("audit.tag", tag, direction="outgoing")

        await runtime.process_event(make_event("hello"))
        outgoing = await drain(runtime.bus)

        assert seen == ["Hi! What should I call you?"]
        assert outgoing[0].payload["tagged"] is True

    @pytest.mark.asyncio
    async def test_swallowed_event_does_not_reach_dialog(self, runtime, make_event):
        runtime.engine.handle("filter").register("filter.drop", lambda event, next_: next_(swallow=True))

        assert await runtime.process_event(make_event("hello"))

        assert runtime.bus.outbound_size == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, config, tmp_path, make_event):
        runtime = BotRuntime(config, sessions=SessionManager(FileSessionStore(tmp_path / "s")), flows=FlowLoader())

        assert await runtime.process_event(make_event("hello")) is False
        assert await runtime.sessions.store.load("bot-1:web:user-1") is None

    @pytest.mark.asyncio
    async def test_same_conversation_turns_are_serialized(self, runtime, make_event):
        order = []

        async def slow(event, next_):
            order.append(f"start:{event.payload['text']}")
            await asyncio.sleep(0.02)
            order.append(f"end:{event.payload['text']}")
            next_()

        runtime.engine.handle("slow").register("slow", slow)

        await asyncio.gather(
            runtime.process_event(make_event("one")),
            runtime.process_event(make_event("two")),
        )

        assert order == ["start:one", "end:one", "start:two", "end:two"]


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_inbound_event_is_answered_on_its_channel(self, runtime, make_event):
        delivered = asyncio.Queue()

        async def web_sender(event):
            await delivered.put(event)

        runtime.bus.subscribe_outbound("web", web_sender)
        loop_task = asyncio.create_task(runtime.run())

        await runtime.bus.publish_inbound(make_event("hello"))
        reply = await asyncio.wait_for(delivered.get(), timeout=5)

        assert reply.payload["text"] == "Hi! What should I call you?"
        assert reply.target == "user-1"

        runtime.stop()
        await asyncio.wait_for(loop_task, timeout=5)
