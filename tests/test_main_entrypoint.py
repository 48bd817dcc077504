"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

import contextlib
import io
import json
from pathlib import Path
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from mcp_chat.__main__ import main, replay_transcript
from mcp_chat.fsm import MessageState


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def _run(self, argv: list[str]) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_version_flag(self) -> None:
        code, out, _ = self._run(["--version"])
        self.assertEqual(code, 0)
        self.assertTrue(out.startswith("mcpchat "))

    def test_replay_prints_segments(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "transcript.txt"
            path.write_text("<think>plan</think>Answer", encoding="utf-8")
            code, out, _ = self._run(["replay", str(path), "--chunk-size", "3"])

        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(payload["state"], "COMPLETE")
        kinds = [segment["kind"] for segment in payload["segments"]]
        self.assertEqual(kinds[0], "think")
        self.assertEqual(payload["segments"][0]["text"], "plan")
        self.assertEqual(payload["segments"][-1]["text"], "Answer")

    def test_replay_missing_file_fails(self) -> None:
        code, _, err = self._run(["replay", "/nonexistent/transcript.txt"])
        self.assertEqual(code, 1)
        self.assertIn("cannot read", err)

    def test_chat_loads_config_and_runs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / "config.toml"
            with patch("mcp_chat.__main__.configure_logging") as logging_mock, patch(
                "mcp_chat.__main__._run_chat", new=AsyncMock(return_value=0)
            ) as run_mock:
                code = main(["--config", str(config_path), "chat", "hello"])

        self.assertEqual(code, 0)
        logging_mock.assert_called_once()
        run_mock.assert_awaited_once()
        self.assertEqual(run_mock.await_args.args[1], "hello")

    def test_replay_detects_tool_call(self) -> None:
        model = replay_transcript(
            'Sure. <tool_call>{"server": "web", "tool": "search", "args": {"q": "x"}}</tool_call>',
            chunk_size=5,
        )
        cards = [segment for segment in model.segments if segment.kind == "toolCard"]
        self.assertEqual(len(cards), 1)
        self.assertEqual(cards[0].server, "web")
        # The card never resolves, so the message stays in the tool state.
        self.assertEqual(model.fsm, MessageState.TOOL_RUNNING)


if __name__ == "__main__":
    unittest.main()
