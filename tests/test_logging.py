"""Tests for logging setup and structured log events."""

from __future__ import annotations

from collections.abc import AsyncGenerator
import json
import logging
from pathlib import Path
import tempfile
import unittest

from mcp_chat.logging_utils import app_only_filter, configure_logging
from mcp_chat.options import ComposedOptions
from mcp_chat.provider import OllamaStreamProvider
from mcp_chat.provider_adapters import ProviderMessage


class RetryClient:
    """Fails once, then streams a single chunk."""

    def __init__(self) -> None:
        self.calls = 0

    async def chat(self, **kwargs) -> AsyncGenerator[dict, None]:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("temporary")

        async def _stream() -> AsyncGenerator[dict, None]:
            yield {"message": {"content": "ok"}}

        return _stream()


class StructuredEventTests(unittest.IsolatedAsyncioTestCase):
    """Validate log events emitted by the pipeline."""

    async def test_provider_retry_emits_event(self) -> None:
        provider = OllamaStreamProvider(
            host="http://localhost:11434",
            retries=1,
            retry_backoff_seconds=0.0,
            client=RetryClient(),
        )
        options = ComposedOptions(provider="ollama", model="llama3.2")
        with self.assertLogs("mcp_chat.provider", level="WARNING") as logs:
            events = [
                event async for event in provider.stream([ProviderMessage("user", "hi")], options)
            ]

        self.assertEqual([event.text for event in events], ["ok"])
        self.assertTrue(any("provider.request.retry" in line for line in logs.output))


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        # Preserve root logger state so tests do not pollute each other.
        root = logging.getLogger()
        self._original_level = root.level
        self._original_handlers = list(root.handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._original_handlers:
                handler.close()
        root.setLevel(self._original_level)
        root.handlers.clear()
        root.handlers.extend(self._original_handlers)

    def test_configure_logging_sets_root_level_and_stderr_handler(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        root = logging.getLogger()
        self.assertEqual(root.level, logging.DEBUG)
        stream_handlers = [
            h
            for h in root.handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]
        self.assertEqual(len(stream_handlers), 1)
        self.assertEqual(stream_handlers[0].level, logging.WARNING)

    def test_configure_logging_noisy_loggers_set_to_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        for name in ("httpx", "httpcore", "ollama"):
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_structured_file_output_is_json_with_extra_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "app.log"
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            logging.getLogger("mcp_chat.test").info(
                "session.message.started",
                extra={"event": "session.message.started", "message_id": "m1"},
            )
            for handler in logging.getLogger().handlers:
                handler.flush()

            lines = log_path.read_text(encoding="utf-8").strip().splitlines()
            data = json.loads(lines[-1])
            self.assertEqual(data["event"], "session.message.started")
            self.assertEqual(data["message_id"], "m1")
            self.assertEqual(data["logger"], "mcp_chat.test")
            self.assertEqual(data["level"], "info")
            self.assertIn("timestamp", data)

    def test_app_only_filter(self) -> None:
        def record(name: str) -> logging.LogRecord:
            return logging.LogRecord(name, logging.WARNING, __file__, 1, "x", (), None)

        self.assertTrue(app_only_filter(record("mcp_chat.session")))
        self.assertFalse(app_only_filter(record("httpx")))


if __name__ == "__main__":
    unittest.main()
