"""Per-message finite state machine over the segment list.

``reduce`` is the only way a :class:`MessageModel` changes. Transitions::

    STREAMING            --TOKEN_APPEND-->  STREAMING
    STREAMING/TOOL_DONE/TOOL_ERROR --TOOL_HIT--> TOOL_RUNNING
    TOOL_RUNNING         --TOOL_RESULT ok-->   TOOL_DONE
    TOOL_RUNNING         --TOOL_RESULT fail--> TOOL_ERROR
    TOOL_DONE/TOOL_ERROR --TURN_START or TOKEN_APPEND--> STREAMING
    STREAMING            --STREAM_END-->    COMPLETE
    any                  --ABORT-->         COMPLETE

Actions that are not legal in the current state leave the model unchanged.
``COMPLETE`` is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from typing import Any, Union, assert_never

from .segments import (
    CardMatch,
    Segment,
    ToolCallStatus,
    append_text,
    append_think_text,
    ensure_text_tail,
    finish_last_think,
    insert_running_card,
    rewrite_text_tail,
    update_card_status,
)
from .tool_detector import clean_tool_call_instructions

LOGGER = logging.getLogger(__name__)


class MessageState(str, Enum):
    STREAMING = "STREAMING"
    TOOL_RUNNING = "TOOL_RUNNING"
    TOOL_DONE = "TOOL_DONE"
    TOOL_ERROR = "TOOL_ERROR"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class TokenAppend:
    chunk: str


@dataclass(frozen=True)
class ThinkStart:
    pass


@dataclass(frozen=True)
class ThinkAppend:
    chunk: str


@dataclass(frozen=True)
class ThinkEnd:
    pass


@dataclass(frozen=True)
class ToolHit:
    card_id: str
    server: str
    tool: str
    args: dict[str, Any] | None = field(default=None, hash=False)


@dataclass(frozen=True)
class ToolPendingAuth:
    server: str
    tool: str
    card_id: str | None = None


@dataclass(frozen=True)
class ToolResult:
    server: str
    tool: str
    ok: bool
    card_id: str | None = None
    result_preview: str | None = None
    error_message: str | None = None
    schema_hint: str | None = None


@dataclass(frozen=True)
class TurnStart:
    pass


@dataclass(frozen=True)
class StreamEnd:
    pass


@dataclass(frozen=True)
class Abort:
    reason: str = ""


MessageAction = Union[
    TokenAppend,
    ThinkStart,
    ThinkAppend,
    ThinkEnd,
    ToolHit,
    ToolPendingAuth,
    ToolResult,
    TurnStart,
    StreamEnd,
    Abort,
]

_RESUMABLE = (MessageState.TOOL_DONE, MessageState.TOOL_ERROR)


@dataclass(frozen=True)
class MessageModel:
    """Segments and control state of one assistant message."""

    id: str
    segments: list[Segment] = field(default_factory=list, hash=False)
    fsm: MessageState = MessageState.STREAMING
    in_think: bool = False

    @classmethod
    def new(cls, message_id: str, segments: list[Segment] | None = None) -> MessageModel:
        return cls(id=message_id, segments=list(segments or []))

    @property
    def is_terminal(self) -> bool:
        return self.fsm == MessageState.COMPLETE


def reduce(model: MessageModel, action: MessageAction) -> MessageModel:
    """Return the model that results from applying ``action``."""
    if model.is_terminal:
        return model

    match action:
        case TokenAppend(chunk=chunk):
            if model.in_think:
                return replace(model, segments=append_think_text(model.segments, chunk))
            fsm = model.fsm
            if fsm in _RESUMABLE and chunk:
                fsm = MessageState.STREAMING
            return replace(model, segments=append_text(model.segments, chunk), fsm=fsm)
        case ThinkStart():
            return replace(model, in_think=True)
        case ThinkAppend(chunk=chunk):
            return replace(
                model,
                segments=append_think_text(model.segments, chunk),
                in_think=True,
            )
        case ThinkEnd():
            segments = ensure_text_tail(finish_last_think(model.segments))
            return replace(model, segments=segments, in_think=False)
        case ToolHit():
            if model.fsm not in (MessageState.STREAMING, *_RESUMABLE):
                _log_ignored(model, action)
                return model
            # Prior text stays its own segment ahead of the card, minus the
            # directive the card now stands for.
            segments = finish_last_think(model.segments)
            segments = ensure_text_tail(segments)
            segments = rewrite_text_tail(segments, clean_tool_call_instructions)
            segments = insert_running_card(
                segments,
                card_id=action.card_id,
                server=action.server,
                tool=action.tool,
                message_id=model.id,
                args=action.args,
            )
            return replace(
                model, segments=segments, fsm=MessageState.TOOL_RUNNING, in_think=False
            )
        case ToolPendingAuth():
            if model.fsm != MessageState.TOOL_RUNNING:
                _log_ignored(model, action)
                return model
            segments = update_card_status(
                model.segments,
                CardMatch(server=action.server, tool=action.tool, id=action.card_id),
                status=ToolCallStatus.PENDING_AUTH,
            )
            return replace(model, segments=segments)
        case ToolResult():
            if model.fsm != MessageState.TOOL_RUNNING:
                _log_ignored(model, action)
                return model
            match_ = CardMatch(server=action.server, tool=action.tool, id=action.card_id)
            if action.ok:
                segments = update_card_status(
                    model.segments,
                    match_,
                    status=ToolCallStatus.SUCCESS,
                    result_preview=action.result_preview,
                )
                return replace(model, segments=segments, fsm=MessageState.TOOL_DONE)
            segments = update_card_status(
                model.segments,
                match_,
                status=ToolCallStatus.ERROR,
                error_message=action.error_message,
                schema_hint=action.schema_hint,
            )
            return replace(model, segments=segments, fsm=MessageState.TOOL_ERROR)
        case TurnStart():
            if model.fsm in _RESUMABLE:
                return replace(model, fsm=MessageState.STREAMING)
            return model
        case StreamEnd():
            if model.fsm != MessageState.STREAMING:
                return model
            return replace(
                model,
                segments=finish_last_think(model.segments),
                fsm=MessageState.COMPLETE,
                in_think=False,
            )
        case Abort():
            LOGGER.info(
                "fsm.abort",
                extra={"event": "fsm.abort", "message_id": model.id, "reason": action.reason},
            )
            return replace(
                model,
                segments=finish_last_think(model.segments),
                fsm=MessageState.COMPLETE,
                in_think=False,
            )
        case _:
            assert_never(action)


def reduce_all(model: MessageModel, actions: list[MessageAction]) -> MessageModel:
    for action in actions:
        model = reduce(model, action)
    return model


def _log_ignored(model: MessageModel, action: MessageAction) -> None:
    LOGGER.debug(
        "fsm.action.ignored",
        extra={
            "event": "fsm.action.ignored",
            "message_id": model.id,
            "state": model.fsm.value,
            "action": type(action).__name__,
        },
    )
