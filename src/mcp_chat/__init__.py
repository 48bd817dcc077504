"""Top-level package for mcp-chat."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .authorization import AuthorizationGate, AuthorizationPolicy, PendingAuthorization
    from .autosave import MessageAutoSaver, MessageUpdateManager
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        ConfigValidationError,
        McpChatError,
        ModelNotFoundError,
        PersistenceError,
        ProviderConnectionError,
        StreamingError,
        ToolInvocationError,
    )
    from .fsm import MessageModel, MessageState, reduce
    from .history import HistoryBuilder
    from .normalizer import ArgumentNormalizer, normalize_args
    from .options import OptionComposer, compose_chat_options
    from .persistence import MessageSegmentStore
    from .provider_adapters import ProviderMessage, tool_result_to_next_message
    from .session import ChatSession
    from .stream_parser import MessageStreamParser, ThinkingTimer
    from .think_tokenizer import ThinkStreamTokenizer
    from .tool_detector import StreamingToolDetector

_EXPORTS: dict[str, str] = {
    "ArgumentNormalizer": "normalizer",
    "AuthorizationGate": "authorization",
    "AuthorizationPolicy": "authorization",
    "ChatSession": "session",
    "ConfigValidationError": "exceptions",
    "HistoryBuilder": "history",
    "McpChatError": "exceptions",
    "MessageAutoSaver": "autosave",
    "MessageSegmentStore": "persistence",
    "MessageModel": "fsm",
    "MessageState": "fsm",
    "MessageStreamParser": "stream_parser",
    "MessageUpdateManager": "autosave",
    "ModelNotFoundError": "exceptions",
    "OptionComposer": "options",
    "PendingAuthorization": "authorization",
    "PersistenceError": "exceptions",
    "ProviderConnectionError": "exceptions",
    "ProviderMessage": "provider_adapters",
    "StreamingError": "exceptions",
    "StreamingToolDetector": "tool_detector",
    "ThinkStreamTokenizer": "think_tokenizer",
    "ThinkingTimer": "stream_parser",
    "ToolInvocationError": "exceptions",
    "compose_chat_options": "options",
    "ensure_config_dir": "config",
    "load_config": "config",
    "normalize_args": "normalizer",
    "reduce": "fsm",
    "tool_result_to_next_message": "provider_adapters",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import mcp_chat`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f".{module_name}", __name__), name)
