"""Incremental splitter for ``<think>...</think>`` spans in a token stream."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

THINK_START_TAG = "<think>"
THINK_END_TAG = "</think>"

ThinkEventKind = Literal["text", "think_start", "think_chunk", "think_end"]


@dataclass(frozen=True)
class ThinkEvent:
    """A single tokenizer event; ``chunk`` is empty for start/end markers."""

    kind: ThinkEventKind
    chunk: str = ""


def partial_marker_length(text: str, marker: str) -> int:
    """Return the length of the longest suffix of ``text`` that starts ``marker``.

    Only proper prefixes count: a complete marker is found by ``str.find``.
    """
    longest = min(len(marker) - 1, len(text))
    for size in range(longest, 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class ThinkStreamTokenizer:
    """Split pushed tokens into plain-text and thinking events.

    Tags may be split across any number of ``push`` calls. Only a trailing
    fragment that could still become a tag is held back between calls;
    everything else is emitted immediately. Call :meth:`flush` at the end of
    the stream to release that fragment.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_think = False

    @property
    def in_think(self) -> bool:
        return self._in_think

    def push(self, token: str) -> list[ThinkEvent]:
        self._buffer += token or ""
        events: list[ThinkEvent] = []
        while self._buffer:
            marker = THINK_END_TAG if self._in_think else THINK_START_TAG
            index = self._buffer.find(marker)
            if index == -1:
                held = partial_marker_length(self._buffer, marker)
                ready = self._buffer[: len(self._buffer) - held]
                if ready:
                    events.append(self._content_event(ready))
                self._buffer = self._buffer[len(ready) :]
                break
            if index > 0:
                events.append(self._content_event(self._buffer[:index]))
            events.append(
                ThinkEvent("think_end" if self._in_think else "think_start")
            )
            self._buffer = self._buffer[index + len(marker) :]
            self._in_think = not self._in_think
        return events

    def flush(self) -> list[ThinkEvent]:
        """Emit any held-back fragment as content of the current span."""
        if not self._buffer:
            return []
        remainder, self._buffer = self._buffer, ""
        return [self._content_event(remainder)]

    def reset(self) -> None:
        self._buffer = ""
        self._in_think = False

    def _content_event(self, chunk: str) -> ThinkEvent:
        return ThinkEvent("think_chunk" if self._in_think else "text", chunk)
