"""Fluent builder for provider-facing conversation turns."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from .provider_adapters import ProviderMessage
from .segments import deserialize_segments, render_text


def _content_of(message: Mapping[str, Any]) -> str:
    """Plain text of a UI message, preferring its rendered segments."""
    segments = message.get("segments")
    if isinstance(segments, list) and segments:
        try:
            return render_text(deserialize_segments(segments))
        except (KeyError, ValueError):
            pass
    content = message.get("content")
    return content if isinstance(content, str) else ""


class HistoryBuilder:
    """Collect turns in order; ``take`` hands them over and resets the builder."""

    def __init__(self) -> None:
        self._messages: list[ProviderMessage] = []

    def __len__(self) -> int:
        return len(self._messages)

    def add_system(self, content: str | None) -> HistoryBuilder:
        if content and content.strip():
            self._messages.append(ProviderMessage(role="system", content=content.strip()))
        return self

    def add_user(
        self, content: str, document_context: str | None = None
    ) -> HistoryBuilder:
        text = content or ""
        if document_context and document_context.strip():
            text = f"{text}\n\n[Document context]\n{document_context.strip()}"
        self._messages.append(ProviderMessage(role="user", content=text))
        return self

    def add_assistant(self, content: str) -> HistoryBuilder:
        self._messages.append(ProviderMessage(role="assistant", content=content or ""))
        return self

    def add_many(self, messages: Iterable[Mapping[str, Any]]) -> HistoryBuilder:
        """Append UI messages; unknown roles and empty assistant turns are skipped."""
        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = _content_of(message)
            if role == "system":
                self.add_system(content)
            elif role == "user":
                context = message.get("document_context")
                self.add_user(content, context if isinstance(context, str) else None)
            elif role == "assistant" and content.strip():
                self.add_assistant(content)
        return self

    def take(self) -> list[ProviderMessage]:
        messages, self._messages = self._messages, []
        return messages
