"""Tests for routing stream events into the message model."""

from __future__ import annotations

import itertools
import json
import unittest
from unittest.mock import patch

from mcp_chat.autosave import MessageAutoSaver
from mcp_chat.fsm import MessageState, StreamEnd, ToolResult
from mcp_chat.segments import TextSegment, ThinkSegment, ToolCardSegment
from mcp_chat.stream_handler import DetectedToolCall, StreamEvent, StreamEventHandler


class _Clock:
    def __init__(self) -> None:
        self.now = 10.0

    def __call__(self) -> float:
        return self.now


def _ids():
    counter = itertools.count(1)
    return lambda: f"card-{next(counter)}"


class StreamEventHandlerTests(unittest.IsolatedAsyncioTestCase):
    """Validate tokenizer, detector and FSM wiring."""

    async def test_tagged_thinking_and_text(self) -> None:
        handler = StreamEventHandler("m1")
        for chunk in ("<thi", "nk>plan</think>", "Answer"):
            handler.handle(StreamEvent("token", chunk))
        self.assertIsNone(handler.end_turn())
        handler.dispatch(StreamEnd())

        segments = handler.model.segments
        self.assertIsInstance(segments[0], ThinkSegment)
        self.assertEqual(segments[0].text, "plan")
        self.assertEqual(segments[-1], TextSegment("Answer"))
        self.assertEqual(handler.model.fsm, MessageState.COMPLETE)
        self.assertEqual(handler.snapshot.thinking_content, "plan")
        self.assertEqual(handler.turn_text, "Answer")

    async def test_native_thinking_events(self) -> None:
        handler = StreamEventHandler("m1")
        handler.handle(StreamEvent("thinking_token", "hmm"))
        handler.handle(StreamEvent("thinking_token", " ok"))
        handler.handle(StreamEvent("content_token", "Done"))
        segments = handler.model.segments
        self.assertEqual(segments[0].text, "hmm ok")
        self.assertIsNotNone(segments[0].duration)
        self.assertEqual(segments[-1], TextSegment("Done"))

    async def test_native_thinking_feeds_snapshot(self) -> None:
        clock = _Clock()
        with patch("mcp_chat.stream_parser.time.monotonic", clock):
            handler = StreamEventHandler("m1")
            handler.handle(StreamEvent("thinking_token", "pl"))
            self.assertTrue(handler.snapshot.is_thinking)
            clock.now += 2.5
            handler.handle(StreamEvent("thinking_token", "an"))
            handler.handle(StreamEvent("thinking_end"))
            handler.handle(StreamEvent("content_token", "answer"))
            snapshot = handler.snapshot

        self.assertEqual(snapshot.thinking_content, "plan")
        self.assertEqual(snapshot.regular_content, "answer")
        self.assertFalse(snapshot.is_thinking)
        self.assertAlmostEqual(snapshot.elapsed_time, 2.5)

    async def test_stop_closes_native_thinking_timer(self) -> None:
        handler = StreamEventHandler("m1")
        handler.handle(StreamEvent("thinking_token", "hmm"))
        handler.parser.force_stop()
        self.assertFalse(handler.snapshot.is_thinking)
        self.assertEqual(handler.snapshot.thinking_content, "hmm")

    async def test_persisted_text_omits_directive(self) -> None:
        handler = StreamEventHandler("m1", id_factory=_ids())
        handler.handle(
            StreamEvent("token", 'Looking. <tool_call>{"server": "fs", "tool": "read"}</tool_call>')
        )
        self.assertIsNotNone(handler.end_turn())
        stored = json.loads(handler.serialized())
        self.assertEqual(stored[0], {"kind": "text", "text": "Looking."})
        self.assertEqual(stored[1]["kind"], "toolCard")
        self.assertIn("<tool_call>", handler.turn_text)

    async def test_tool_hit_inserts_one_card(self) -> None:
        handler = StreamEventHandler("m1", id_factory=_ids())
        directive = '<tool_call>{"server": "web", "tool": "search", "args": {"q": "x"}}</tool_call>'
        for index in range(0, len(directive), 7):
            handler.handle(StreamEvent("raw", directive[index : index + 7]))
        handler.handle(StreamEvent("raw", " and more text"))

        detected = handler.end_turn()
        self.assertEqual(
            detected, DetectedToolCall(card_id="card-1", server="web", tool="search", args={"q": "x"})
        )
        cards = [s for s in handler.model.segments if isinstance(s, ToolCardSegment)]
        self.assertEqual(len(cards), 1)
        self.assertEqual(handler.model.fsm, MessageState.TOOL_RUNNING)

    async def test_follow_up_turn_can_detect_again(self) -> None:
        handler = StreamEventHandler("m1", id_factory=_ids())
        handler.handle(StreamEvent("token", '{"server": "a", "tool": "x"}'))
        first = handler.end_turn()
        handler.dispatch(ToolResult(server="a", tool="x", ok=True, card_id=first.card_id))
        handler.begin_turn()
        handler.handle(StreamEvent("token", '{"server": "b", "tool": "y"}'))
        second = handler.end_turn()
        self.assertEqual(second.card_id, "card-2")
        card_ids = [s.id for s in handler.model.segments if isinstance(s, ToolCardSegment)]
        self.assertEqual(card_ids, ["card-1", "card-2"])

    async def test_terminal_model_ignores_events(self) -> None:
        handler = StreamEventHandler("m1")
        handler.handle(StreamEvent("token", "hi"))
        handler.end_turn()
        handler.dispatch(StreamEnd())
        handler.handle(StreamEvent("token", '{"server": "a", "tool": "x"}'))
        self.assertIsNone(handler.detected)
        self.assertEqual(handler.model.segments, [TextSegment("hi")])

    async def test_segment_changes_are_mirrored_to_saver(self) -> None:
        saved: list[str] = []

        async def _save(content: str) -> None:
            saved.append(content)

        saver = MessageAutoSaver(_save, 1.0)
        changes: list[int] = []
        handler = StreamEventHandler(
            "m1", saver=saver, on_change=lambda model: changes.append(len(model.segments))
        )
        handler.handle(StreamEvent("token", "Hel"))
        handler.handle(StreamEvent("token", "lo"))
        await saver.flush()
        self.assertEqual(len(saved), 1)
        self.assertEqual(json.loads(saved[0]), [{"kind": "text", "text": "Hello"}])
        self.assertEqual(changes, [1, 1])
        saver.stop()


if __name__ == "__main__":
    unittest.main()
