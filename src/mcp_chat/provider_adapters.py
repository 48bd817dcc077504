"""Provider-facing message shapes and tool-result reinjection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
import json
import re
from typing import Any, Literal

TOOL_RESULT_LIMIT = 12_000
WEB_SEARCH_PREVIEW_RESULTS = 3
WEB_SEARCH_SNIPPET_LIMIT = 500

USE_MCP_TOOL_TEMPLATE = (
    "<use_mcp_tool><server_name>{server}</server_name>"
    "<tool_name>{tool}</tool_name><arguments>{arguments}</arguments></use_mcp_tool>"
)

_MARKDOWN_IMAGE_RE = re.compile(r"!\[\]\([^)]+\)")
_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")
_EXCESS_SPACES_RE = re.compile(r"[ \t]{3,}")


@dataclass(frozen=True)
class ProviderMessage:
    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class ProviderToolSpec:
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


def mcp_tools_to_provider_spec(
    provider: str, tools: Iterable[Mapping[str, Any]] | None
) -> list[ProviderToolSpec]:
    """Map MCP tool listings to a minimal provider tool spec."""
    specs: list[ProviderToolSpec] = []
    for tool in tools or []:
        name = tool.get("name")
        if not isinstance(name, str) or not name:
            continue
        schema = tool.get("inputSchema") or tool.get("input_schema")
        specs.append(
            ProviderToolSpec(
                name=name,
                description=tool.get("description") or None,
                parameters=schema if isinstance(schema, dict) else None,
            )
        )
    return specs


def format_web_search_result(result: Any) -> str:
    """Summarize the first few web search hits as title, link and snippet."""
    if not isinstance(result, list) or not result:
        return _serialize(result)
    entries: list[str] = []
    for index, item in enumerate(result[:WEB_SEARCH_PREVIEW_RESULTS], start=1):
        item = item if isinstance(item, Mapping) else {}
        title = item.get("source_title") or item.get("title") or "Untitled"
        url = item.get("url") or ""
        snippet = str(item.get("snippet") or "")
        snippet = _MARKDOWN_IMAGE_RE.sub("", snippet)
        snippet = _MARKDOWN_LINK_RE.sub(r"\1", snippet)
        snippet = _EXCESS_NEWLINES_RE.sub("\n\n", snippet)
        snippet = _EXCESS_SPACES_RE.sub(" ", snippet)[:WEB_SEARCH_SNIPPET_LIMIT]
        link = f"Link: {url}\n" if url else ""
        entries.append(f"{index}. {title}\n{link}Summary: {snippet}\n")
    shown = min(WEB_SEARCH_PREVIEW_RESULTS, len(result))
    body = "\n---\n\n".join(entries)
    return f"Search returned {len(result)} results; the first {shown}:\n\n{body}"


def tool_result_to_next_message(
    provider: str,
    server: str,
    tool: str,
    result: Any,
    original_user_content: str | None = None,
) -> ProviderMessage:
    """Turn a raw tool result into the user turn that continues the exchange."""
    if server == "web_search" and tool == "search":
        formatted = format_web_search_result(result)
    else:
        formatted = _serialize(result)
    text = formatted[:TOOL_RESULT_LIMIT]
    question = (
        f"Original user question: {original_user_content}\n\n"
        if original_user_content
        else ""
    )
    directive = USE_MCP_TOOL_TEMPLATE.format(server="...", tool="...", arguments="{...}")
    content = (
        f"{question}Result of calling {server}.{tool} (may be truncated):\n"
        f"{text}\n\n"
        "Read the result carefully, then:\n"
        "1. If it is sufficient, answer the user's question directly and completely.\n"
        "2. If it looks wrong (an error, an empty result, a malformed value), "
        "retry the tool with corrected arguments or try another tool.\n"
        "3. If more information is still needed, call further tools.\n"
        f"4. To call a tool, reply with {directive}\n\n"
        "Make sure the user's original question ends up fully answered."
    )
    return ProviderMessage(role="user", content=content)


def build_tool_instructions(
    servers: Sequence[str],
    tools_by_server: Mapping[str, Sequence[Mapping[str, Any]]] | None = None,
) -> str:
    """System prompt section describing the enabled servers and call format."""
    if not servers:
        return ""
    lines = ["You can call tools on these MCP servers:"]
    for server in servers:
        lines.append(f"- {server}")
        for tool in (tools_by_server or {}).get(server, []):
            name = tool.get("name")
            if not name:
                continue
            description = tool.get("description")
            lines.append(f"  - {name}: {description}" if description else f"  - {name}")
    lines.append("")
    lines.append("To call a tool, reply with exactly one directive:")
    lines.append(
        USE_MCP_TOOL_TEMPLATE.format(
            server="server", tool="tool", arguments='{"key": "value"}'
        )
    )
    return "\n".join(lines)


AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"


def authorization_denied_message(
    server: str, tool: str, original_user_content: str | None = None
) -> ProviderMessage:
    """Follow-up turn telling the model the user refused a tool call."""
    question = (
        f"Original user question: {original_user_content}\n\n"
        if original_user_content
        else ""
    )
    return ProviderMessage(
        role="user",
        content=(
            f"{question}{AUTHORIZATION_DENIED}: the user rejected the call to "
            f"{server}.{tool}. Do not call it again. Answer as well as you can "
            "without it, or explain what you would need."
        ),
    )


def _serialize(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)
