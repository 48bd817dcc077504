"""Per-message lifecycle tracking for in-flight send tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class MessageTaskManager:
    """Track one asyncio task per message id."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def __contains__(self, message_id: object) -> bool:
        task = self._tasks.get(message_id)  # type: ignore[arg-type]
        return task is not None and not task.done()

    def add(self, message_id: str, task: asyncio.Task[Any]) -> None:
        """Register ``task`` for ``message_id``.

        A prior task under the same id is replaced but not cancelled. The
        entry removes itself once the task finishes.
        """
        self._tasks[message_id] = task
        task.add_done_callback(lambda done: self._on_done(message_id, done))

    def _on_done(self, message_id: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(message_id) is task:
            del self._tasks[message_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.message.exception",
                extra={
                    "event": "task.message.exception",
                    "message_id": message_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, message_id: str) -> asyncio.Task[Any] | None:
        """Return the task for ``message_id`` or ``None`` if not registered."""
        return self._tasks.get(message_id)

    def active(self) -> list[str]:
        return [message_id for message_id, task in self._tasks.items() if not task.done()]

    async def cancel(self, message_id: str) -> bool:
        """Cancel a message's task and await its completion."""
        task = self._tasks.pop(message_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001 - failures are logged by the done callback.
            pass
        return True

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001 - failures are logged by the done callback.
                pass
