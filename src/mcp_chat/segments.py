"""Message segment model and pure list reducers.

A message renders as an ordered list of segments. Every function here returns
a new list and never mutates segments in place; segments themselves are
frozen dataclasses.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
import time
from typing import Any, ClassVar, Union, assert_never

SEGMENT_SCHEMA_VERSION = 1


class ToolCallStatus(str, Enum):
    RUNNING = "running"
    PENDING_AUTH = "pending_auth"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_resolved(self) -> bool:
        return self in (ToolCallStatus.SUCCESS, ToolCallStatus.ERROR)


@dataclass(frozen=True)
class TextSegment:
    kind: ClassVar[str] = "text"
    text: str = ""


@dataclass(frozen=True)
class ThinkSegment:
    kind: ClassVar[str] = "think"
    text: str = ""
    started_at: float | None = None
    duration: float | None = None


@dataclass(frozen=True)
class ToolCardSegment:
    kind: ClassVar[str] = "toolCard"
    id: str
    server: str
    tool: str
    message_id: str
    status: ToolCallStatus = ToolCallStatus.RUNNING
    args: dict[str, Any] | None = field(default=None, hash=False)
    result_preview: str | None = None
    error_message: str | None = None
    schema_hint: str | None = None


Segment = Union[TextSegment, ThinkSegment, ToolCardSegment]


@dataclass(frozen=True)
class CardMatch:
    """Selects a card by ``id`` when given, otherwise by server and tool."""

    server: str
    tool: str
    id: str | None = None

    def matches(self, card: ToolCardSegment) -> bool:
        if self.id and card.id != self.id:
            return False
        return card.server == self.server and card.tool == self.tool


def ensure_text_tail(segments: Sequence[Segment], seed: str = "") -> list[Segment]:
    out = list(segments)
    if not out or not isinstance(out[-1], TextSegment):
        out.append(TextSegment(seed))
    return out


def rewrite_text_tail(
    segments: Sequence[Segment], rewrite: Callable[[str], str]
) -> list[Segment]:
    """Replace the text of a trailing text segment with ``rewrite(text)``."""
    out = list(segments)
    if out and isinstance(out[-1], TextSegment):
        out[-1] = TextSegment(rewrite(out[-1].text))
    return out


def append_text(segments: Sequence[Segment], chunk: str) -> list[Segment]:
    if not chunk:
        return list(segments)
    out = list(segments)
    if out and isinstance(out[-1], TextSegment):
        out[-1] = TextSegment(out[-1].text + chunk)
    else:
        out.append(TextSegment(chunk))
    return out


def append_think_text(
    segments: Sequence[Segment], chunk: str, now: float | None = None
) -> list[Segment]:
    if not chunk:
        return list(segments)
    out = list(segments)
    tail = out[-1] if out else None
    if isinstance(tail, ThinkSegment) and tail.duration is None:
        started_at = tail.started_at if tail.started_at is not None else _now(now)
        out[-1] = replace(tail, text=tail.text + chunk, started_at=started_at)
    else:
        out.append(ThinkSegment(text=chunk, started_at=_now(now)))
    return out


def finish_last_think(
    segments: Sequence[Segment], now: float | None = None
) -> list[Segment]:
    """Record the duration (seconds, one decimal) of a trailing open think span."""
    out = list(segments)
    tail = out[-1] if out else None
    if (
        isinstance(tail, ThinkSegment)
        and tail.started_at is not None
        and tail.duration is None
    ):
        elapsed = max(0.0, _now(now) - tail.started_at)
        out[-1] = replace(tail, duration=round(elapsed, 1))
    return out


def insert_running_card(
    segments: Sequence[Segment],
    *,
    card_id: str,
    server: str,
    tool: str,
    message_id: str,
    args: dict[str, Any] | None = None,
) -> list[Segment]:
    """Append a running card. Callers must supply a fresh ``card_id``."""
    out = list(segments)
    out.append(
        ToolCardSegment(
            id=card_id,
            server=server,
            tool=tool,
            message_id=message_id,
            status=ToolCallStatus.RUNNING,
            args=dict(args) if args is not None else None,
        )
    )
    return out


def update_card_status(
    segments: Sequence[Segment], match: CardMatch, **patch: Any
) -> list[Segment]:
    """Patch the first unresolved card selected by ``match``.

    Cards already in ``success`` or ``error`` are never selected, so a repeated
    result for the same call cannot overwrite a finished card.
    """
    if "status" in patch:
        patch["status"] = ToolCallStatus(patch["status"])
    out = list(segments)
    for index, segment in enumerate(out):
        if not isinstance(segment, ToolCardSegment):
            continue
        if segment.status.is_resolved or not match.matches(segment):
            continue
        out[index] = replace(segment, **patch)
        break
    return out


def find_card(segments: Sequence[Segment], card_id: str) -> ToolCardSegment | None:
    for segment in segments:
        if isinstance(segment, ToolCardSegment) and segment.id == card_id:
            return segment
    return None


def render_text(segments: Sequence[Segment]) -> str:
    """Concatenate the plain text of a message, skipping thinking and cards."""
    return "".join(s.text for s in segments if isinstance(s, TextSegment))


def segment_to_dict(segment: Segment) -> dict[str, Any]:
    match segment:
        case TextSegment():
            return {"kind": "text", "text": segment.text}
        case ThinkSegment():
            payload: dict[str, Any] = {"kind": "think", "text": segment.text}
            if segment.started_at is not None:
                payload["startTime"] = segment.started_at
            if segment.duration is not None:
                payload["duration"] = segment.duration
            return payload
        case ToolCardSegment():
            card: dict[str, Any] = {
                "kind": "toolCard",
                "id": segment.id,
                "server": segment.server,
                "tool": segment.tool,
                "status": segment.status.value,
                "messageId": segment.message_id,
            }
            for key, value in (
                ("args", segment.args),
                ("resultPreview", segment.result_preview),
                ("errorMessage", segment.error_message),
                ("schemaHint", segment.schema_hint),
            ):
                if value is not None:
                    card[key] = value
            return card
        case _:
            assert_never(segment)


def segment_from_dict(payload: dict[str, Any]) -> Segment:
    kind = payload.get("kind")
    if kind == "text":
        return TextSegment(str(payload.get("text", "")))
    if kind == "think":
        return ThinkSegment(
            text=str(payload.get("text", "")),
            started_at=payload.get("startTime"),
            duration=payload.get("duration"),
        )
    if kind == "toolCard":
        args = payload.get("args")
        return ToolCardSegment(
            id=str(payload["id"]),
            server=str(payload["server"]),
            tool=str(payload["tool"]),
            message_id=str(payload.get("messageId", "")),
            status=ToolCallStatus(payload.get("status", ToolCallStatus.RUNNING.value)),
            args=args if isinstance(args, dict) else None,
            result_preview=payload.get("resultPreview"),
            error_message=payload.get("errorMessage"),
            schema_hint=payload.get("schemaHint"),
        )
    raise ValueError(f"Unknown segment kind {kind!r}.")


def serialize_segments(segments: Sequence[Segment]) -> list[dict[str, Any]]:
    return [segment_to_dict(segment) for segment in segments]


def deserialize_segments(payload: Sequence[dict[str, Any]]) -> list[Segment]:
    return [segment_from_dict(item) for item in payload]


def _now(now: float | None) -> float:
    return time.time() if now is None else now
