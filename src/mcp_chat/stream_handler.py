"""Route provider stream events through tokenizer, detector and FSM."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import json
import logging
from typing import Any, Literal
from uuid import uuid4

from .autosave import MessageAutoSaver
from .fsm import (
    MessageAction,
    MessageModel,
    ThinkAppend,
    ThinkEnd,
    ThinkStart,
    TokenAppend,
    ToolHit,
    TurnStart,
    reduce,
)
from .segments import serialize_segments
from .stream_parser import MessageStreamParser, StreamedMessage
from .think_tokenizer import ThinkEvent, ThinkStreamTokenizer
from .tool_detector import StreamingToolDetector, ToolCallHit

LOGGER = logging.getLogger(__name__)

StreamEventKind = Literal["token", "content_token", "thinking_token", "thinking_end", "raw"]


@dataclass(frozen=True)
class StreamEvent:
    """One ordered unit delivered by a provider stream."""

    kind: StreamEventKind
    text: str = ""


@dataclass(frozen=True)
class DetectedToolCall:
    """A tool hit already dispatched to the FSM, awaiting execution."""

    card_id: str
    server: str
    tool: str
    args: dict[str, Any] | None


class StreamEventHandler:
    """Own one message's model and feed it from stream events.

    Every change to the segment list is mirrored into the optional saver as
    serialized JSON. At most one tool call is taken per turn: once a hit has
    been dispatched the detector is not consulted again until
    :meth:`begin_turn`.
    """

    def __init__(
        self,
        message_id: str,
        *,
        saver: MessageAutoSaver | None = None,
        parser: MessageStreamParser | None = None,
        detector: StreamingToolDetector | None = None,
        on_change: Callable[[MessageModel], None] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.model = MessageModel.new(message_id)
        self.tokenizer = ThinkStreamTokenizer()
        self.parser = parser or MessageStreamParser()
        self.detector = detector or StreamingToolDetector()
        self._saver = saver
        self._on_change = on_change
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._native_thinking = False
        self.detected: DetectedToolCall | None = None
        self._turn_text: list[str] = []

    @property
    def turn_text(self) -> str:
        """Plain text streamed during the current turn."""
        return "".join(self._turn_text)

    @property
    def snapshot(self) -> StreamedMessage:
        return self.parser.snapshot()

    def dispatch(self, action: MessageAction) -> MessageModel:
        """Reduce ``action`` and publish the result if the model changed."""
        previous = self.model
        self.model = reduce(previous, action)
        if self.model is not previous:
            if self._saver is not None and self.model.segments != previous.segments:
                self._saver.update(self.serialized())
            if self._on_change is not None:
                self._on_change(self.model)
        return self.model

    def serialized(self) -> str:
        return json.dumps(serialize_segments(self.model.segments), ensure_ascii=False)

    def begin_turn(self) -> None:
        """Prepare for a follow-up provider turn on the same message."""
        self.tokenizer.reset()
        self.detector.reset()
        self._native_thinking = False
        self.detected = None
        self._turn_text = []
        self.dispatch(TurnStart())

    def handle(self, event: StreamEvent) -> None:
        if self.model.is_terminal:
            return
        match event.kind:
            case "token" | "content_token" | "raw":
                if self._native_thinking:
                    self._close_native_thinking()
                self.parser.process(event.text)
                self._apply(self.tokenizer.push(event.text))
            case "thinking_token":
                if not self._native_thinking:
                    self._native_thinking = True
                    self.dispatch(ThinkStart())
                self.parser.append_thinking(event.text)
                self.dispatch(ThinkAppend(event.text))
            case "thinking_end":
                if self._native_thinking:
                    self._close_native_thinking()

    def end_turn(self) -> DetectedToolCall | None:
        """Release held fragments and return the turn's tool call, if any."""
        if self._native_thinking:
            self._close_native_thinking()
        if not self.model.is_terminal:
            self._apply(self.tokenizer.flush())
        return self.detected

    def _close_native_thinking(self) -> None:
        self._native_thinking = False
        self.parser.end_thinking()
        self.dispatch(ThinkEnd())

    def _apply(self, events: list[ThinkEvent]) -> None:
        for event in events:
            match event.kind:
                case "text":
                    self._turn_text.append(event.chunk)
                    self.dispatch(TokenAppend(event.chunk))
                    self._detect(event.chunk)
                case "think_start":
                    self.dispatch(ThinkStart())
                case "think_chunk":
                    self.dispatch(ThinkAppend(event.chunk))
                case "think_end":
                    self.dispatch(ThinkEnd())

    def _detect(self, text: str) -> None:
        if self.detected is not None or self.model.is_terminal:
            return
        hit = self.detector.push(text)
        if hit is not None:
            self._take_hit(hit)

    def _take_hit(self, hit: ToolCallHit) -> None:
        card_id = self._id_factory()
        args = dict(hit.args) if hit.args is not None else None
        tool = hit.tool
        before = self.model
        self.dispatch(ToolHit(card_id=card_id, server=hit.server, tool=tool, args=args))
        if self.model is before:
            return
        self.detected = DetectedToolCall(
            card_id=card_id, server=hit.server, tool=tool, args=args
        )
        LOGGER.info(
            "stream.tool.detected",
            extra={
                "event": "stream.tool.detected",
                "message_id": self.model.id,
                "server": hit.server,
                "tool": tool,
                "card_id": card_id,
            },
        )
