"""Debounced persistence of evolving message content.

Both savers accept updates synchronously, write from background asyncio
tasks, always write the latest content known at write time, and allow at
most one write in flight per message. Save failures are logged and never
propagate; the next update or flush retries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

SaveFunction = Callable[[str], Awaitable[None]]

DEFAULT_AUTOSAVE_INTERVAL_SECONDS = 1.0
MIN_AUTOSAVE_INTERVAL_SECONDS = 0.2
# Consecutive failures double the retry delay up to 2**MAX_BACKOFF_EXPONENT.
MAX_BACKOFF_EXPONENT = 5


def backoff_delay(base_seconds: float, failures: int) -> float:
    return base_seconds * 2 ** min(max(0, failures), MAX_BACKOFF_EXPONENT)


class MessageAutoSaver:
    """Throttle saves of one message to at most one per interval."""

    def __init__(
        self,
        save_fn: SaveFunction,
        interval_seconds: float = DEFAULT_AUTOSAVE_INTERVAL_SECONDS,
        *,
        name: str = "",
    ) -> None:
        self._save_fn = save_fn
        self.interval_seconds = max(MIN_AUTOSAVE_INTERVAL_SECONDS, interval_seconds)
        self.name = name
        self._timer: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._latest = ""
        self._revision = 0
        self._saved_revision = 0
        self._failures = 0
        self._stopped = False

    @property
    def has_unsaved_content(self) -> bool:
        return self._revision != self._saved_revision

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def retry_delay_seconds(self) -> float:
        """Delay before the next scheduled save; grows while saves keep failing."""
        return backoff_delay(self.interval_seconds, self._failures)

    def update(self, content: str) -> None:
        """Record ``content`` and make sure a save is scheduled."""
        if self._stopped:
            return
        self._latest = content
        self._revision += 1
        self._schedule()

    async def flush(self) -> None:
        """Cancel the pending timer and write the latest content now."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        await self._save_latest()

    def stop(self) -> None:
        """Disable all further saves, including any scheduled one."""
        self._stopped = True
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    async def close(self) -> None:
        """Flush outstanding content, then stop."""
        await self.flush()
        self.stop()

    def _schedule(self) -> None:
        if self._stopped or self._timer is not None:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())

    async def _run_timer(self) -> None:
        await asyncio.sleep(self.retry_delay_seconds)
        self._timer = None
        await self._save_latest()
        # Content that arrived while writing gets one more pass.
        if self.has_unsaved_content:
            self._schedule()

    async def _save_latest(self) -> None:
        async with self._lock:
            if self._stopped or not self.has_unsaved_content:
                return
            content, revision = self._latest, self._revision
            try:
                await self._save_fn(content)
            except Exception as exc:
                self._failures += 1
                LOGGER.warning(
                    "autosave.save.failed",
                    extra={
                        "event": "autosave.save.failed",
                        "saver": self.name,
                        "failures": self._failures,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                return
            self._failures = 0
            self._saved_revision = revision


@dataclass
class PendingUpdate:
    """Latest accepted content of one message awaiting a batch save."""

    content: str
    timestamp: float
    update_count: int = 1


class MessageUpdateManager:
    """Coalesce content updates for many messages into batched saves.

    Accepted updates notify the UI callback immediately. An update whose size
    changed by less than ``content_change_threshold`` characters within
    ``max_update_frequency_seconds`` of the last accepted one skips the UI
    callback but still replaces the pending content, so the batch save writes
    the true latest value.
    """

    UPDATE_DELAY_SECONDS = 0.1
    CONTENT_CHANGE_THRESHOLD = 50
    MAX_UPDATE_FREQUENCY_SECONDS = 0.5

    def __init__(
        self,
        *,
        update_delay_seconds: float = UPDATE_DELAY_SECONDS,
        content_change_threshold: int = CONTENT_CHANGE_THRESHOLD,
        max_update_frequency_seconds: float = MAX_UPDATE_FREQUENCY_SECONDS,
    ) -> None:
        self.update_delay_seconds = max(0.0, update_delay_seconds)
        self.content_change_threshold = max(0, content_change_threshold)
        self.max_update_frequency_seconds = max(0.0, max_update_frequency_seconds)
        self._pending: dict[str, PendingUpdate] = {}
        self._update_callbacks: dict[str, Callable[[str], None]] = {}
        self._save_callbacks: dict[str, SaveFunction] = {}
        self._save_locks: dict[str, asyncio.Lock] = {}
        self._save_failures: dict[str, int] = {}
        self._timer: asyncio.Task[None] | None = None
        self._closed = False

    def register_update_callback(
        self, message_id: str, callback: Callable[[str], None]
    ) -> None:
        self._update_callbacks[message_id] = callback

    def register_save_callback(self, message_id: str, callback: SaveFunction) -> None:
        self._save_callbacks[message_id] = callback

    def unregister(self, message_id: str) -> None:
        self._update_callbacks.pop(message_id, None)
        self._save_callbacks.pop(message_id, None)
        self._pending.pop(message_id, None)
        self._save_locks.pop(message_id, None)
        self._save_failures.pop(message_id, None)

    def update_message(self, message_id: str, content: str) -> bool:
        """Queue ``content``; returns True when the update was accepted."""
        if self._closed:
            return False
        loop = asyncio.get_running_loop()
        now = loop.time()
        existing = self._pending.get(message_id)
        if existing is not None:
            change = abs(len(content) - len(existing.content))
            if (
                change < self.content_change_threshold
                and now - existing.timestamp < self.max_update_frequency_seconds
            ):
                existing.content = content
                return False
            existing.content = content
            existing.timestamp = now
            existing.update_count += 1
        else:
            self._pending[message_id] = PendingUpdate(content=content, timestamp=now)

        self._notify_ui(message_id, content)
        self._schedule_save()
        return True

    async def flush_updates(self) -> None:
        """Write every pending update now."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        await self._perform_batch_save()

    def cleanup(self) -> None:
        """Drop pending state and callbacks; the manager accepts no more updates."""
        self._closed = True
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
        self._pending.clear()
        self._update_callbacks.clear()
        self._save_callbacks.clear()
        self._save_locks.clear()
        self._save_failures.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending_count": len(self._pending),
            "total_updates": sum(item.update_count for item in self._pending.values()),
            "callback_count": len(self._update_callbacks),
            "failing_count": len(self._save_failures),
        }

    def _notify_ui(self, message_id: str, content: str) -> None:
        callback = self._update_callbacks.get(message_id)
        if callback is None:
            return
        try:
            callback(content)
        except Exception as exc:
            LOGGER.error(
                "update_manager.ui_callback.failed",
                extra={
                    "event": "update_manager.ui_callback.failed",
                    "message_id": message_id,
                    "error": str(exc),
                },
            )

    def _schedule_save(self) -> None:
        if self._timer is not None or self._closed:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())

    async def _run_timer(self) -> None:
        failures = max(self._save_failures.values(), default=0)
        await asyncio.sleep(backoff_delay(self.update_delay_seconds, failures))
        self._timer = None
        await self._perform_batch_save()

    async def _perform_batch_save(self) -> None:
        updates = list(self._pending.items())
        self._pending.clear()
        if updates:
            await asyncio.gather(
                *(self._save_one(message_id, item) for message_id, item in updates)
            )
        if self._pending:
            self._schedule_save()

    async def _save_one(self, message_id: str, item: PendingUpdate) -> None:
        callback = self._save_callbacks.get(message_id)
        if callback is None:
            return
        lock = self._save_locks.setdefault(message_id, asyncio.Lock())
        async with lock:
            try:
                await callback(item.content)
            except Exception as exc:
                failures = self._save_failures.get(message_id, 0) + 1
                self._save_failures[message_id] = failures
                # Retry the failed content unless a newer update replaced it.
                if not self._closed and message_id not in self._pending:
                    self._pending[message_id] = item
                LOGGER.warning(
                    "update_manager.save.failed",
                    extra={
                        "event": "update_manager.save.failed",
                        "message_id": message_id,
                        "failures": failures,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
            else:
                self._save_failures.pop(message_id, None)
