"""Provider stream collaborators.

A provider turns a list of :class:`ProviderMessage` into an ordered async
stream of :class:`StreamEvent`. :class:`OllamaStreamProvider` is the bundled
implementation on top of ``ollama.AsyncClient``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
import logging
from typing import Any, Protocol

import httpx
from ollama import AsyncClient

from .exceptions import (
    McpChatError,
    ModelNotFoundError,
    ProviderConnectionError,
    StreamingError,
)
from .options import ComposedOptions
from .provider_adapters import ProviderMessage
from .stream_handler import StreamEvent

LOGGER = logging.getLogger(__name__)

# Composed parameters that are top-level chat() arguments rather than
# entries of Ollama's ``options`` mapping.
_TOP_LEVEL_PARAMS = frozenset({"think", "keep_alive", "format"})


class StreamProvider(Protocol):
    """Anything that can stream one assistant turn."""

    def stream(
        self,
        messages: Sequence[ProviderMessage],
        options: ComposedOptions,
    ) -> AsyncIterator[StreamEvent]: ...


class OllamaStreamProvider:
    """Stream chat turns from an Ollama server."""

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client = client if client is not None else AsyncClient(host=host, timeout=timeout)

    async def stream(
        self,
        messages: Sequence[ProviderMessage],
        options: ComposedOptions,
    ) -> AsyncIterator[StreamEvent]:
        """Yield stream events; failures are retried only before the first event."""
        for attempt in range(self.retries + 1):
            yielded = False
            try:
                async for event in self._stream_once(messages, options):
                    yielded = True
                    yield event
                return
            except asyncio.CancelledError:
                LOGGER.info(
                    "provider.request.cancelled",
                    extra={"event": "provider.request.cancelled", "model": options.model},
                )
                raise
            except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
                mapped_exc = self._map_exception(exc, options.model)
                LOGGER.warning(
                    "provider.request.retry",
                    extra={
                        "event": "provider.request.retry",
                        "attempt": attempt + 1,
                        "error_type": mapped_exc.__class__.__name__,
                        "partial": yielded,
                    },
                )
                if yielded or attempt >= self.retries:
                    raise mapped_exc from exc
                await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))

    async def _stream_once(
        self,
        messages: Sequence[ProviderMessage],
        options: ComposedOptions,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": options.model,
            "messages": [message.to_dict() for message in messages],
            "stream": True,
        }
        model_options: dict[str, Any] = {}
        for key, value in options.params.items():
            if key in _TOP_LEVEL_PARAMS:
                kwargs[key] = value
            elif isinstance(value, (str, int, float, bool)):
                model_options[key] = value
        if model_options:
            kwargs["options"] = model_options

        thinking = False
        stream = await self._client.chat(**kwargs)
        async for chunk in stream:
            thinking_text = self._extract_text(chunk, "thinking")
            if thinking_text:
                thinking = True
                yield StreamEvent("thinking_token", thinking_text)

            content_text = self._extract_text(chunk, "content")
            if content_text:
                if thinking:
                    thinking = False
                    yield StreamEvent("thinking_end")
                yield StreamEvent("content_token", content_text)
        if thinking:
            yield StreamEvent("thinking_end")

    @staticmethod
    def _extract_from_chunk(chunk: Any, field: str) -> Any:
        """Extract ``message.<field>`` from an SDK object or a plain dict chunk."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None:
            value = getattr(message_obj, field, None)
            if value is not None:
                return value

        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                value = message.get(field)
                if value is not None:
                    return value
            # Top-level fallback (e.g. generate endpoint).
            return chunk.get(field)
        return None

    @classmethod
    def _extract_text(cls, chunk: Any, field: str) -> str:
        value = cls._extract_from_chunk(chunk, field)
        if field == "content" and not value:
            value = cls._extract_from_chunk(chunk, "response")
        return value if isinstance(value, str) else ""

    def _map_exception(self, exc: Exception, model: str) -> McpChatError:
        if isinstance(exc, McpChatError):
            return exc

        lower_message = str(exc).lower()

        if isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.NetworkError,
            ),
        ):
            return ProviderConnectionError(f"Unable to connect to Ollama host {self.host}.")

        if "model" in lower_message and "not found" in lower_message:
            return ModelNotFoundError(f"Model {model!r} was not found on {self.host}.")
        if "404" in lower_message and "model" in lower_message:
            return ModelNotFoundError(f"Model {model!r} was not found on {self.host}.")

        return StreamingError(f"Failed to stream response from Ollama at {self.host}: {exc}")
