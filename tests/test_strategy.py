"""Tests for the action and transition instruction strategies."""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from flowbot.actions.registry import ActionRegistry
from flowbot.actions.servers import ActionServer, ActionServersService
from flowbot.dialog.evaluator import SandboxPolicy, SandboxTimeoutError
from flowbot.dialog.instructions import (
    Instruction,
    InstructionParseError,
    InstructionType,
    TransitionInstruction,
)
from flowbot.dialog.result import ProcessingResult
from flowbot.dialog.strategy import ActionStrategy, TransitionStrategy


def on_enter(fn, args=None):
    return Instruction(type=InstructionType.ON_ENTER, fn=fn, args=args)


def transition(condition, node="next"):
    return Instruction(type=InstructionType.TRANSITION, fn=condition, node=node)


class TestSay:

    @pytest.mark.asyncio
    async def test_say_records_history_and_replies(self, action_strategy, event_engine, renderer, event):
        result = await action_strategy.process_instruction("bot-1", on_enter('say #text {"text": "Hello"}'), event)

        assert result == ProcessingResult.none()
        history = event.state.session["lastMessages"]
        assert len(history) == 1
        assert history[0]["eventId"] == event.id
        assert history[0]["incomingPreview"] == "hi"
        assert history[0]["replyPreview"] == "#text"
        assert history[0]["replySource"] == "dialogManager"
        assert history[0]["replyConfidence"] == 1.0

        event_engine.reply_to_event.assert_awaited_once()
        destination, elements, incoming_id = event_engine.reply_to_event.await_args.args
        assert destination == event.destination
        assert elements[0]["text"] == "Hello"
        assert incoming_id == event.id

    @pytest.mark.asyncio
    async def test_history_is_capped(self, actions, renderer, event_engine, event):
        strategy = ActionStrategy(actions, renderer, event_engine, last_messages_limit=2)

        for output in ("#one", "#two", "#three"):
            await strategy.process_instruction("bot-1", on_enter(f"say {output}"), event)

        previews = [item["replyPreview"] for item in event.state.session["lastMessages"]]
        assert previews == ["#two", "#three"]

    @pytest.mark.asyncio
    async def test_invalid_json_propagates(self, action_strategy, event):
        with pytest.raises(InstructionParseError):
            await action_strategy.process_instruction("bot-1", on_enter("say #text {oops"), event)


class TestAction:

    @pytest.mark.asyncio
    async def test_runs_local_action_with_rendered_args(self, action_strategy, actions, event):
        received = {}

        @actions.action("greet")
        async def greet(event, args):
            received.update(args)

        event.state.user["firstName"] = "Ada"
        result = await action_strategy.process_instruction(
            "bot-1", on_enter('greet {"name": "{{ user.firstName }}", "count": 2}'), event
        )

        assert result == ProcessingResult.none()
        assert received == {"name": "Ada", "count": 2}

    @pytest.mark.asyncio
    async def test_failure_redirects_to_configured_flow(self, action_strategy, actions, event):
        @actions.action("explode")
        def explode(event, args):
            raise RuntimeError("database down")

        event.state.temp["onErrorFlowTo"] = "custom.flow.json"

        result = await action_strategy.process_instruction("bot-1", on_enter("explode"), event)

        assert result == ProcessingResult.transition("custom.flow.json")
        assert event.state.temp["__error"]["actionName"] == "explode"

    @pytest.mark.asyncio
    async def test_missing_action_redirects_to_error_flow(self, action_strategy, event):
        result = await action_strategy.process_instruction("bot-1", on_enter("doesNotExist"), event)

        assert result == ProcessingResult.transition("error.flow.json")

    @pytest.mark.asyncio
    async def test_invalid_arguments_redirect(self, action_strategy, actions, event):
        @actions.action("setAge", parameters={"type": "object", "properties": {"age": {"type": "integer"}}})
        def set_age(event, args):
            event.state.user["age"] = args["age"]

        result = await action_strategy.process_instruction("bot-1", on_enter('setAge {"age": "old"}'), event)

        assert result.transition_to == "error.flow.json"
        assert "age" not in event.state.user

    @pytest.mark.asyncio
    async def test_missing_action_server_is_skipped(self, renderer, event_engine, event):
        actions = ActionRegistry(ActionServersService())
        actions.run_action = AsyncMock()
        strategy = ActionStrategy(actions, renderer, event_engine)

        result = await strategy.process_instruction("bot-1", on_enter("nowhere:fetchOrder"), event)

        assert result == ProcessingResult.none()
        actions.run_action.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_action_merges_returned_state(self, renderer, event_engine, event):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"incomingEvent": {"state": {"temp": {"orderStatus": "shipped"}}}},
            )

        servers = ActionServersService(
            [ActionServer(id="remote", base_url="http://actions.local")],
            transport=httpx.MockTransport(handler),
        )
        strategy = ActionStrategy(ActionRegistry(servers), renderer, event_engine)

        result = await strategy.process_instruction("bot-1", on_enter('remote:fetchOrder {"id": 7}'), event)

        assert result == ProcessingResult.none()
        assert event.state.temp["orderStatus"] == "shipped"
        assert str(requests[0].url) == "http://actions.local/action/run"

    @pytest.mark.asyncio
    async def test_remote_http_error_redirects(self, renderer, event_engine, event):
        servers = ActionServersService(
            [ActionServer(id="remote", base_url="http://actions.local")],
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        strategy = ActionStrategy(ActionRegistry(servers), renderer, event_engine)

        result = await strategy.process_instruction("bot-1", on_enter("remote:fetchOrder"), event)

        assert result == ProcessingResult.transition("error.flow.json")


class TestTransition:

    @pytest.fixture
    def strategy(self):
        return TransitionStrategy()

    @pytest.mark.asyncio
    async def test_true_always_transitions(self, strategy, event):
        result = await strategy.process_instruction("bot-1", transition("true", "default"), event)
        assert result == ProcessingResult.transition("default")

    @pytest.mark.asyncio
    async def test_last_node_with_single_entry_is_false(self, strategy, event):
        event.state.stacktrace = [{"flow": "main.flow.json", "node": "entry"}]

        result = await strategy.process_instruction("bot-1", transition("lastNode=entry"), event)

        assert result == ProcessingResult.none()

    @pytest.mark.asyncio
    async def test_last_node_compares_previous_entry(self, strategy, event):
        event.state.stacktrace = [
            {"flow": "main.flow.json", "node": "ask"},
            {"flow": "main.flow.json", "node": "confirm"},
        ]

        assert (await strategy.process_instruction("bot-1", transition("lastNode=ask"), event)).is_transition
        assert not (await strategy.process_instruction("bot-1", transition("lastNode=confirm"), event)).is_transition

    @pytest.mark.asyncio
    async def test_workflow_variable(self, strategy, event):
        event.state.workflow["variables"] = {"foo": 1}

        result = await strategy.process_instruction("bot-1", transition("$foo == 1"), event)

        assert result == ProcessingResult.transition("next")

    @pytest.mark.asyncio
    async def test_this_node_reads_namespaced_temp(self, strategy, event):
        event.state.context.update({"currentFlow": "main.flow.json", "currentNode": "entry"})
        event.state.temp["main/entry"] = {"done": True}

        result = await strategy.process_instruction("bot-1", transition("thisNode.done"), event)

        assert result.is_transition

    @pytest.mark.asyncio
    async def test_this_node_without_temp_entry_is_empty_object(self, strategy, event):
        event.state.context.update({"currentFlow": "main.flow.json", "currentNode": "entry"})

        result = await strategy.process_instruction("bot-1", transition("!thisNode.visited", "greet"), event)

        assert result == ProcessingResult.transition("greet")

    @pytest.mark.asyncio
    async def test_this_node_visited_flag(self, strategy, event):
        event.state.context.update({"currentFlow": "main.flow.json", "currentNode": "entry"})
        event.state.temp["main/entry"] = {"visited": True}

        result = await strategy.process_instruction("bot-1", transition("!thisNode.visited", "greet"), event)

        assert result == ProcessingResult.none()

    @pytest.mark.asyncio
    async def test_type_error_means_no_transition(self, strategy, event):
        result = await strategy.process_instruction("bot-1", transition("temp.missing.deep === 'x'"), event)

        assert result == ProcessingResult.none()

    @pytest.mark.asyncio
    async def test_accepts_parsed_instruction(self, strategy, event):
        parsed = TransitionInstruction(source="temp.ok", expression="temp.ok", target_node="done")
        event.state.temp["ok"] = True

        result = await strategy.process_instruction("bot-1", parsed, event)

        assert result == ProcessingResult.transition("done")

    @pytest.mark.asyncio
    async def test_unsafe_expression_uses_isolated_tier(self, event):
        fast = Mock(tier="fast", evaluate=AsyncMock(return_value=True))
        isolated = Mock(tier="isolated", evaluate=AsyncMock(return_value=True))
        strategy = TransitionStrategy(SandboxPolicy(disable_sandbox=True), fast=fast, isolated=isolated)

        await strategy.process_instruction("bot-1", transition("len(temp) > 0"), event)

        isolated.evaluate.assert_awaited_once()
        fast.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sandbox_timeout_propagates(self, event):
        isolated = Mock(tier="isolated", evaluate=AsyncMock(side_effect=SandboxTimeoutError("too slow")))
        strategy = TransitionStrategy(isolated=isolated)

        with pytest.raises(SandboxTimeoutError):
            await strategy.process_instruction("bot-1", transition("len(temp) > 0"), event)
