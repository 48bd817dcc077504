"""End-to-end tests for ChatSession tool rounds, authorization and aborts."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
import itertools
import json
import unittest

from mcp_chat.authorization import AuthorizationGate, AuthorizationPolicy
from mcp_chat.exceptions import ProviderConnectionError, ToolInvocationError
from mcp_chat.fsm import MessageModel, MessageState
from mcp_chat.options import ConfiguredServerDirectory, OptionComposer
from mcp_chat.provider_adapters import AUTHORIZATION_DENIED
from mcp_chat.segments import TextSegment, ToolCallStatus, ToolCardSegment, render_text
from mcp_chat.session import (
    REJECTED_BY_USER,
    ROUND_LIMIT_REACHED,
    TOOL_CALL_CANCELLED,
    ChatSession,
)
from mcp_chat.stream_handler import StreamEvent

SEARCH_CALL = '<tool_call>{"server": "web", "tool": "search", "args": {"q": "x"}}</tool_call>'

SEARCH_TOOL = {
    "name": "search",
    "description": "Search the web",
    "inputSchema": {
        "type": "object",
        "properties": {"q": {"type": "string", "description": "Query"}},
        "required": ["q"],
    },
}


class FakeProvider:
    """Plays back one scripted list of events per provider call."""

    def __init__(self, turns: list[list[StreamEvent]]) -> None:
        self.turns = turns
        self.calls: list[list] = []

    async def stream(self, messages, options) -> AsyncGenerator[StreamEvent, None]:
        self.calls.append(list(messages))
        index = min(len(self.calls), len(self.turns)) - 1
        for event in self.turns[index]:
            await asyncio.sleep(0)
            yield event


class HangingProvider:
    """Yields one token, then blocks until cancelled."""

    async def stream(self, messages, options) -> AsyncGenerator[StreamEvent, None]:
        yield StreamEvent("content_token", "partial")
        await asyncio.Event().wait()


class FailingProvider:
    async def stream(self, messages, options) -> AsyncGenerator[StreamEvent, None]:
        yield StreamEvent("content_token", "half")
        raise ProviderConnectionError("connection dropped")


class FakeInvoker:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, str, dict]] = []

    async def list_tools(self, server: str) -> list[dict]:
        return [SEARCH_TOOL] if server == "web" else []

    async def call_tool(self, server: str, tool: str, args: dict):
        self.calls.append((server, tool, args))
        if self.error is not None:
            raise self.error
        return self.result


class HangingInvoker(FakeInvoker):
    """Blocks inside the tool call until cancelled."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def call_tool(self, server: str, tool: str, args: dict):
        self.calls.append((server, tool, args))
        self.started.set()
        await asyncio.Event().wait()


class Recorder:
    def __init__(self) -> None:
        self.payloads: list[str] = []

    async def __call__(self, content: str) -> None:
        self.payloads.append(content)


def _ids() -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"card-{next(counter)}"


def _text(*chunks: str) -> list[StreamEvent]:
    return [StreamEvent("content_token", chunk) for chunk in chunks]


def _cards(model: MessageModel) -> list[ToolCardSegment]:
    return [segment for segment in model.segments if isinstance(segment, ToolCardSegment)]


async def _wait_for(predicate: Callable[[], bool]) -> None:
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class ChatSessionTests(unittest.IsolatedAsyncioTestCase):
    """Validate the send loop against scripted providers and tools."""

    def _session(self, provider, invoker=None, **kwargs) -> ChatSession:
        kwargs.setdefault("policy", AuthorizationPolicy(server_overrides={"web": True}))
        return ChatSession(
            provider,
            OptionComposer(ConfiguredServerDirectory({"enabled_servers": ["web"]})),
            model="llama3.2",
            system_prompt="Be brief.",
            invoker=invoker,
            id_factory=_ids(),
            **kwargs,
        )

    async def test_plain_answer_completes(self) -> None:
        provider = FakeProvider([_text("Hello", " there")])
        model = await self._session(provider, FakeInvoker()).send("m1", None, "hi")

        self.assertEqual(model.fsm, MessageState.COMPLETE)
        self.assertEqual(render_text(model.segments).strip(), "Hello there")
        self.assertEqual(len(provider.calls), 1)
        first = provider.calls[0]
        self.assertEqual(first[0].role, "system")
        self.assertEqual(first[0].content, "Be brief.")
        self.assertIn("- web", first[1].content)
        self.assertIn("search: Search the web", first[1].content)
        self.assertEqual(first[-1].role, "user")
        self.assertEqual(first[-1].content, "hi")

    async def test_tool_result_is_reinjected(self) -> None:
        provider = FakeProvider([_text("Checking. ", SEARCH_CALL), _text("The answer is 42.")])
        invoker = FakeInvoker(result={"answer": 42})
        model = await self._session(provider, invoker).send("m1", None, "what is it?")

        self.assertEqual(invoker.calls, [("web", "search", {"q": "x"})])
        cards = _cards(model)
        self.assertEqual(len(cards), 1)
        self.assertEqual(cards[0].id, "card-1")
        self.assertEqual(cards[0].status, ToolCallStatus.SUCCESS)
        self.assertEqual(cards[0].result_preview, json.dumps({"answer": 42}))
        self.assertEqual(model.fsm, MessageState.COMPLETE)
        self.assertIn("The answer is 42.", render_text(model.segments))
        self.assertEqual(model.segments[0], TextSegment("Checking."))
        self.assertNotIn("<tool_call>", render_text(model.segments))

        self.assertEqual(len(provider.calls), 2)
        assistant, follow_up = provider.calls[1][-2:]
        self.assertEqual(assistant.role, "assistant")
        self.assertIn("<tool_call>", assistant.content)
        self.assertEqual(follow_up.role, "user")
        self.assertIn("Original user question: what is it?", follow_up.content)
        self.assertIn("Result of calling web.search", follow_up.content)

    async def test_rejected_authorization_produces_error_card(self) -> None:
        gate = AuthorizationGate()
        provider = FakeProvider([_text(SEARCH_CALL), _text("Understood.")])
        invoker = FakeInvoker(result="unused")
        session = self._session(
            provider, invoker, gate=gate, policy=AuthorizationPolicy()
        )

        task = asyncio.create_task(session.send("m1", None, "search x"))
        await _wait_for(lambda: bool(gate.pending))
        pending = gate.pending[0]
        self.assertEqual((pending.server, pending.tool), ("web", "search"))
        self.assertEqual(
            _cards(session.model_for("m1"))[0].status, ToolCallStatus.PENDING_AUTH
        )

        self.assertTrue(gate.reject_authorization(pending.id))
        model = await task

        card = _cards(model)[0]
        self.assertEqual(card.status, ToolCallStatus.ERROR)
        self.assertEqual(card.error_message, REJECTED_BY_USER)
        self.assertEqual(invoker.calls, [])
        self.assertIn(AUTHORIZATION_DENIED, provider.calls[1][-1].content)
        self.assertEqual(gate.pending, [])

    async def test_approved_authorization_runs_tool(self) -> None:
        gate = AuthorizationGate()
        provider = FakeProvider([_text(SEARCH_CALL), _text("Done.")])
        invoker = FakeInvoker(result="found")
        session = self._session(provider, invoker, gate=gate, policy=AuthorizationPolicy())

        task = asyncio.create_task(session.send("m1", None, "search x"))
        await _wait_for(lambda: bool(gate.pending))
        gate.approve_authorization(gate.pending[0].id)
        model = await task

        self.assertEqual(len(invoker.calls), 1)
        self.assertEqual(_cards(model)[0].status, ToolCallStatus.SUCCESS)

    async def test_missing_tool_lists_available_tools(self) -> None:
        call = '<tool_call>{"server": "web", "tool": "fetch", "args": {}}</tool_call>'
        provider = FakeProvider([_text(call), _text("Sorry.")])
        invoker = FakeInvoker(result="unused")
        model = await self._session(provider, invoker).send("m1", None, "fetch it")

        card = _cards(model)[0]
        self.assertEqual(card.status, ToolCallStatus.ERROR)
        self.assertIn("Available tools: search", card.error_message)
        self.assertEqual(invoker.calls, [])
        self.assertIn("does not exist", provider.calls[1][-1].content)

    async def test_tool_failure_carries_schema_hint(self) -> None:
        provider = FakeProvider([_text(SEARCH_CALL), _text("It failed.")])
        invoker = FakeInvoker(error=ToolInvocationError("bad args"))
        with self.assertLogs("mcp_chat.session", level="WARNING") as logs:
            model = await self._session(provider, invoker).send("m1", None, "search")

        card = _cards(model)[0]
        self.assertEqual(card.status, ToolCallStatus.ERROR)
        self.assertEqual(card.error_message, "bad args")
        self.assertTrue(card.schema_hint.startswith("Expected arguments for search:"))
        self.assertIn("- q: string (required) - Query", card.schema_hint)
        self.assertIn('"error": "bad args"', provider.calls[1][-1].content)
        self.assertTrue(any("session.tool.failed" in line for line in logs.output))
        self.assertEqual(model.fsm, MessageState.COMPLETE)

    async def test_round_limit_stops_tool_loop(self) -> None:
        provider = FakeProvider([_text(SEARCH_CALL)])
        invoker = FakeInvoker(result="again")
        model = await self._session(provider, invoker, max_tool_rounds=1).send(
            "m1", None, "loop"
        )

        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(len(invoker.calls), 1)
        cards = _cards(model)
        self.assertEqual(len(cards), 2)
        self.assertEqual(cards[0].status, ToolCallStatus.SUCCESS)
        self.assertEqual(cards[1].status, ToolCallStatus.ERROR)
        self.assertEqual(cards[1].error_message, ROUND_LIMIT_REACHED)
        self.assertEqual(model.fsm, MessageState.COMPLETE)

    async def test_stop_aborts_and_flushes_saver(self) -> None:
        recorder = Recorder()
        seen: list[MessageModel] = []
        session = self._session(
            HangingProvider(),
            save_factory=lambda message_id: recorder,
            on_change=seen.append,
        )

        task = session.start("m1", None, "hi")
        self.assertIn("m1", session.tasks)
        await _wait_for(lambda: bool(seen))

        self.assertTrue(await session.stop("m1"))
        self.assertTrue(task.cancelled())
        self.assertIsNone(session.model_for("m1"))
        self.assertEqual(seen[-1].fsm, MessageState.COMPLETE)
        self.assertTrue(recorder.payloads)
        self.assertIn("partial", recorder.payloads[-1])
        self.assertFalse(await session.stop("m1"))

    async def test_abort_while_pending_cancels_card(self) -> None:
        gate = AuthorizationGate()
        seen: list[MessageModel] = []
        provider = FakeProvider([_text(SEARCH_CALL)])
        session = self._session(
            provider,
            FakeInvoker(result="unused"),
            gate=gate,
            policy=AuthorizationPolicy(),
            on_change=seen.append,
        )

        session.start("m1", None, "search")
        await _wait_for(lambda: bool(gate.pending))
        await session.stop("m1")

        self.assertEqual(gate.pending, [])
        final = seen[-1]
        self.assertEqual(final.fsm, MessageState.COMPLETE)
        card = _cards(final)[0]
        self.assertEqual(card.status, ToolCallStatus.ERROR)
        self.assertEqual(card.error_message, TOOL_CALL_CANCELLED)

    async def test_stop_during_tool_call_marks_card_cancelled(self) -> None:
        recorder = Recorder()
        seen: list[MessageModel] = []
        invoker = HangingInvoker()
        session = self._session(
            FakeProvider([_text(SEARCH_CALL)]),
            invoker,
            save_factory=lambda message_id: recorder,
            on_change=seen.append,
        )

        session.start("m1", None, "search")
        await asyncio.wait_for(invoker.started.wait(), timeout=1)
        self.assertTrue(await session.stop("m1"))

        card = _cards(seen[-1])[0]
        self.assertEqual(seen[-1].fsm, MessageState.COMPLETE)
        self.assertEqual(card.status, ToolCallStatus.ERROR)
        self.assertEqual(card.error_message, TOOL_CALL_CANCELLED)
        stored = json.loads(recorder.payloads[-1])
        self.assertEqual(stored[-1]["status"], "error")

    async def test_provider_error_aborts_and_propagates(self) -> None:
        seen: list[MessageModel] = []
        session = self._session(FailingProvider(), on_change=seen.append)

        with self.assertRaises(ProviderConnectionError):
            await session.send("m1", None, "hi")

        self.assertEqual(seen[-1].fsm, MessageState.COMPLETE)
        self.assertIn("half", render_text(seen[-1].segments))


if __name__ == "__main__":
    unittest.main()
