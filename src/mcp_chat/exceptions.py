"""Domain exception hierarchy for the MCP chat client."""

from __future__ import annotations


class McpChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ProviderConnectionError(McpChatError):
    """Raised when the model provider host cannot be reached."""


class ModelNotFoundError(McpChatError):
    """Raised when the configured model is unavailable."""


class StreamingError(McpChatError):
    """Raised when streaming fails for non-connectivity reasons."""


class ConfigValidationError(McpChatError):
    """Raised when configuration cannot be validated safely."""


class ToolInvocationError(McpChatError):
    """Raised when an MCP tool cannot be invoked or reports a failure."""


class PersistenceError(McpChatError):
    """Raised when message persistence operations fail."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""
