"""Tests for the per-message task registry."""

from __future__ import annotations

import asyncio
import unittest

from mcp_chat.task_manager import MessageTaskManager


async def _sleeper(cancelled: list[bool]) -> None:
    try:
        await asyncio.sleep(9999)
    except asyncio.CancelledError:
        cancelled.append(True)
        raise


class MessageTaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate add, lookup and cancellation."""

    async def test_add_and_cancel_by_message_id(self) -> None:
        tm = MessageTaskManager()
        cancelled: list[bool] = []
        task = asyncio.create_task(_sleeper(cancelled))
        tm.add("m1", task)
        await asyncio.sleep(0)

        self.assertIn("m1", tm)
        self.assertIs(tm.get("m1"), task)
        self.assertEqual(tm.active(), ["m1"])

        self.assertTrue(await tm.cancel("m1"))
        self.assertTrue(task.done())
        self.assertTrue(cancelled)
        self.assertNotIn("m1", tm)
        self.assertIsNone(tm.get("m1"))

    async def test_cancel_unknown_returns_false(self) -> None:
        tm = MessageTaskManager()
        self.assertFalse(await tm.cancel("missing"))

    async def test_finished_task_removes_itself(self) -> None:
        tm = MessageTaskManager()

        async def _quick() -> str:
            return "done"

        task = asyncio.create_task(_quick())
        tm.add("m1", task)
        await task
        await asyncio.sleep(0)
        self.assertIsNone(tm.get("m1"))

    async def test_failed_task_is_logged(self) -> None:
        tm = MessageTaskManager()

        async def _boom() -> None:
            raise RuntimeError("boom")

        task = asyncio.create_task(_boom())
        with self.assertLogs("mcp_chat.task_manager", level="WARNING") as logs:
            tm.add("m1", task)
            with self.assertRaises(RuntimeError):
                await task
            await asyncio.sleep(0)
        self.assertTrue(any("task.message.exception" in line for line in logs.output))

    async def test_cancel_all(self) -> None:
        tm = MessageTaskManager()
        cancelled: list[bool] = []
        tasks = [asyncio.create_task(_sleeper(cancelled)) for _ in range(3)]
        for index, task in enumerate(tasks):
            tm.add(f"m{index}", task)
        await asyncio.sleep(0)

        await tm.cancel_all()
        self.assertTrue(all(task.done() for task in tasks))
        self.assertEqual(len(cancelled), 3)
        self.assertEqual(tm.active(), [])


if __name__ == "__main__":
    unittest.main()
