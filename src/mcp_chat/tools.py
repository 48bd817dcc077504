"""Tool invocation seam between the chat pipeline and MCP servers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import json
import logging
from typing import Any, Protocol, runtime_checkable

from .exceptions import ToolInvocationError

LOGGER = logging.getLogger(__name__)

SCHEMA_HINT_LIMIT = 2_000


@runtime_checkable
class ToolInvoker(Protocol):
    """Executes tools on MCP servers."""

    async def call_tool(
        self, server: str, tool: str, args: dict[str, Any]
    ) -> Any: ...


@runtime_checkable
class ToolCatalog(Protocol):
    """Optional invoker capability: list a server's tools."""

    async def list_tools(self, server: str) -> list[dict[str, Any]]: ...


class UnavailableToolInvoker:
    """Invoker used when no MCP transport is wired in."""

    async def call_tool(self, server: str, tool: str, args: dict[str, Any]) -> Any:
        raise ToolInvocationError(
            f"No MCP transport is configured; cannot call {server}.{tool}."
        )


def find_tool(
    tools: Sequence[Mapping[str, Any]] | None, name: str
) -> Mapping[str, Any] | None:
    for tool in tools or []:
        if tool.get("name") == name:
            return tool
    return None


def build_schema_hint(tool: Mapping[str, Any] | None) -> str | None:
    """Describe a tool's expected arguments for an error card.

    Returns ``None`` when the tool has no usable input schema.
    """
    if tool is None:
        return None
    schema = tool.get("inputSchema") or tool.get("input_schema")
    if not isinstance(schema, dict):
        return None
    properties = schema.get("properties")
    if not isinstance(properties, dict) or not properties:
        return None
    required = set(schema.get("required") or [])
    lines = [f"Expected arguments for {tool.get('name', 'tool')}:"]
    for name, spec in properties.items():
        spec = spec if isinstance(spec, dict) else {}
        type_name = spec.get("type", "any")
        marker = " (required)" if name in required else ""
        description = spec.get("description")
        line = f"- {name}: {type_name}{marker}"
        if description:
            line += f" - {description}"
        lines.append(line)
    return "\n".join(lines)[:SCHEMA_HINT_LIMIT]


def missing_tool_message(server: str, tool: str, available: Sequence[str]) -> str:
    """Error text for a tool the server does not expose."""
    listing = ", ".join(available) if available else "none"
    template = (
        f"<use_mcp_tool><server_name>{server}</server_name>"
        "<tool_name>TOOL</tool_name><arguments>{}</arguments></use_mcp_tool>"
    )
    return (
        f"Tool {tool!r} does not exist on server {server!r}. "
        f"Available tools: {listing}. Retry with one of them, for example: {template}"
    )


def preview_result(result: Any, limit: int = 500) -> str:
    """Short text form of a tool result for the card."""
    if isinstance(result, str):
        text = result
    else:
        text = json.dumps(result, ensure_ascii=False, default=str)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


async def list_server_tools(
    invoker: ToolInvoker, server: str
) -> list[dict[str, Any]] | None:
    """Return the server's tool listing, or ``None`` when it cannot be listed."""
    if not isinstance(invoker, ToolCatalog):
        return None
    try:
        tools = await invoker.list_tools(server)
    except Exception as exc:
        LOGGER.warning(
            "tools.list.failed",
            extra={
                "event": "tools.list.failed",
                "server": server,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        return None
    return [tool for tool in tools or [] if isinstance(tool, dict)]
