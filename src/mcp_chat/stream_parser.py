"""Snapshot-style stream parser with a wall-clock thinking timer.

Unlike :class:`~mcp_chat.think_tokenizer.ThinkStreamTokenizer`, which emits
discrete events, this parser keeps running totals and returns a full
:class:`StreamedMessage` after every chunk.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import time

from .think_tokenizer import THINK_END_TAG, THINK_START_TAG, partial_marker_length


class ThinkingTimer:
    """Measure the elapsed duration of a thinking span in seconds."""

    def __init__(self) -> None:
        self._started_at: float | None = None
        self._elapsed = 0.0

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        if self._started_at is None:
            self._started_at = time.monotonic()

    def stop(self) -> None:
        if self._started_at is None:
            return
        self._elapsed += time.monotonic() - self._started_at
        self._started_at = None

    def reset(self) -> None:
        self._started_at = None
        self._elapsed = 0.0

    def get_elapsed_time(self) -> float:
        """Return the live delta while running, the frozen delta once stopped."""
        if self._started_at is not None:
            return self._elapsed + (time.monotonic() - self._started_at)
        return self._elapsed


@dataclass(frozen=True)
class StreamedMessage:
    """Aggregate view of a message at one point of the stream."""

    thinking_content: str
    regular_content: str
    is_thinking: bool
    elapsed_time: float
    is_finished: bool


class ParsingState(str, Enum):
    IDLE = "IDLE"
    IN_REGULAR = "IN_REGULAR"
    IN_THINK = "IN_THINK"


class MessageStreamParser:
    """Accumulate thinking and regular content from raw text chunks."""

    def __init__(self, timer: ThinkingTimer | None = None) -> None:
        self._timer = timer or ThinkingTimer()
        self._state = ParsingState.IDLE
        self._buffer = ""
        self._thinking_content = ""
        self._regular_content = ""
        self._finished = False

    @property
    def state(self) -> ParsingState:
        return self._state

    def process(self, chunk: str | None) -> StreamedMessage:
        """Feed one chunk; ``None`` marks the end of the stream."""
        if chunk is None:
            self.force_stop()
            return self.snapshot()
        if not self._finished:
            self._buffer += chunk
            self._parse_buffer()
        return self.snapshot()

    def append_thinking(self, chunk: str) -> StreamedMessage:
        """Record thinking text delivered outside of think tags."""
        if not self._finished and chunk:
            if not self._timer.is_running and self._timer.get_elapsed_time() == 0:
                self._timer.start()
            self._thinking_content += chunk
        return self.snapshot()

    def end_thinking(self) -> StreamedMessage:
        self._timer.stop()
        return self.snapshot()

    def force_stop(self) -> None:
        """Close the thinking timer and mark the stream finished."""
        if self._timer.is_running:
            self._timer.stop()
        self._finished = True

    def reset(self) -> None:
        self._timer.reset()
        self._state = ParsingState.IDLE
        self._buffer = ""
        self._thinking_content = ""
        self._regular_content = ""
        self._finished = False

    def snapshot(self) -> StreamedMessage:
        thinking = self._thinking_content
        regular = self._regular_content
        # Held-back tag fragments belong to the content once the stream is over.
        if self._finished and self._buffer:
            if self._state == ParsingState.IN_THINK:
                thinking += self._buffer
            else:
                regular += self._buffer
        return StreamedMessage(
            thinking_content=thinking,
            regular_content=regular,
            is_thinking=self._timer.is_running,
            elapsed_time=self._timer.get_elapsed_time(),
            is_finished=self._finished,
        )

    def _parse_buffer(self) -> None:
        while self._buffer:
            if self._state == ParsingState.IN_THINK:
                index = self._buffer.find(THINK_END_TAG)
                if index == -1:
                    self._thinking_content += self._take_ready(THINK_END_TAG)
                    return
                self._thinking_content += self._buffer[:index]
                self._buffer = self._buffer[index + len(THINK_END_TAG) :]
                self._state = ParsingState.IN_REGULAR
                self._timer.stop()
                continue

            index = self._buffer.find(THINK_START_TAG)
            if index == -1:
                self._regular_content += self._take_ready(THINK_START_TAG)
                self._state = ParsingState.IN_REGULAR
                return
            self._regular_content += self._buffer[:index]
            self._buffer = self._buffer[index + len(THINK_START_TAG) :]
            self._state = ParsingState.IN_THINK
            # Only the first thinking span of a message is timed.
            if not self._timer.is_running and self._timer.get_elapsed_time() == 0:
                self._timer.start()

    def _take_ready(self, marker: str) -> str:
        held = partial_marker_length(self._buffer, marker)
        ready = self._buffer[: len(self._buffer) - held]
        self._buffer = self._buffer[len(ready) :]
        return ready
