"""Incremental detection of tool-call directives embedded in streamed text.

Recognized encodings, tried in this order on every push:

1. XML-wrapped JSON: ``<tool_call>{...}</tool_call>``, plus the outbound
   ``<use_mcp_tool><server_name>..</server_name><tool_name>..</tool_name>
   <arguments>{...}</arguments></use_mcp_tool>`` form.
2. Fenced or tail-anchored JSON containing ``"type": "tool_call"``; the tail
   starts at the last code fence or covers the last ``tail_window`` chars.
3. The first bare balanced JSON object with ``type == "tool_call"`` or a
   ``tool``/``tool_name`` field.

Malformed candidates are dropped silently and detection retries on the next
push. A detected directive is never reported twice: scanning resumes after the
end of the last hit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any

LOGGER = logging.getLogger(__name__)

DEFAULT_TAIL_WINDOW = 8000
CODE_FENCE = "```"

SERVER_KEYS = ("server", "mcp", "provider")
TOOL_KEYS = ("tool", "tool_name", "name")
ARGS_KEYS = ("args", "parameters", "params")

_XML_TOOL_CALL_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>", re.IGNORECASE)
_USE_MCP_TOOL_RE = re.compile(
    r"<use_mcp_tool>\s*<server_name>([\s\S]*?)</server_name>\s*"
    r"<tool_name>([\s\S]*?)</tool_name>\s*"
    r"(?:<arguments>([\s\S]*?)</arguments>\s*)?</use_mcp_tool>",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")
_USE_MCP_BLOCK_RE = re.compile(r"<use_mcp_tool>[\s\S]*?</use_mcp_tool>", re.IGNORECASE)
_UNFINISHED_DIRECTIVE_RE = re.compile(r"<(?:use_mcp_tool|tool_call)>[\s\S]*$", re.IGNORECASE)
_EMPTY_FENCE_RE = re.compile(r"```[A-Za-z]*\s*```")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ToolCallHit:
    """A complete tool-call directive: target server, tool name, arguments."""

    server: str
    tool: str
    args: dict[str, Any] | None = field(default=None)


def extract_balanced_json(text: str, start: int = 0) -> tuple[int, int] | None:
    """Return ``(begin, end)`` of the first balanced ``{...}`` span in ``text``.

    Braces inside JSON string literals (including escaped quotes) do not
    count towards the depth. Returns ``None`` when the first object opened
    after ``start`` is not yet closed.
    """
    depth = 0
    begin = -1
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if begin == -1:
            if char == "{":
                begin = index
                depth = 1
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return begin, index + 1
    return None


def _first_present(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def pick_tool_call(payload: Any) -> ToolCallHit | None:
    """Build a hit from a parsed payload, or ``None`` if server/tool are missing."""
    if not isinstance(payload, dict):
        return None
    server = _first_present(payload, SERVER_KEYS)
    tool = _first_present(payload, TOOL_KEYS)
    if not isinstance(server, str) or not isinstance(tool, str):
        return None
    server = server.strip()
    tool = tool.strip()
    if not server or not tool:
        return None
    args = _first_present(payload, ARGS_KEYS)
    if not isinstance(args, dict):
        args = None if args is None else {"value": args}
    return ToolCallHit(server=server, tool=tool, args=args)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_tool_call_object(payload: Any) -> bool:
    return isinstance(payload, dict) and bool(
        str(payload.get("type") or "").lower() == "tool_call"
        or payload.get("tool")
        or payload.get("tool_name")
    )


def clean_tool_call_instructions(text: str) -> str:
    """Remove tool-call directives so only the surrounding prose remains.

    Complete ``<use_mcp_tool>``/``<tool_call>`` blocks, tool-call JSON objects
    and a trailing unfinished XML directive are dropped. Text without any
    directive is returned unchanged.
    """
    if not text:
        return ""
    cleaned = _USE_MCP_BLOCK_RE.sub("", text)
    cleaned = _XML_TOOL_CALL_RE.sub("", cleaned)

    parts: list[str] = []
    position = 0
    while True:
        span = extract_balanced_json(cleaned, position)
        if span is None:
            break
        begin, end = span
        parts.append(cleaned[position:begin])
        candidate = cleaned[begin:end]
        payload = _loads(candidate)
        if not (_is_tool_call_object(payload) and pick_tool_call(payload) is not None):
            parts.append(candidate)
        position = end
    parts.append(cleaned[position:])
    cleaned = "".join(parts)

    cleaned = _UNFINISHED_DIRECTIVE_RE.sub("", cleaned)
    if cleaned == text:
        return text
    cleaned = _EMPTY_FENCE_RE.sub("", cleaned)
    return _BLANK_LINES_RE.sub("\n\n", cleaned).rstrip()


class StreamingToolDetector:
    """Scan an accumulating text buffer for complete tool-call directives."""

    def __init__(self, tail_window: int = DEFAULT_TAIL_WINDOW) -> None:
        self.tail_window = max(1, tail_window)
        self._buffer = ""
        self._last_fence = -1
        # Nothing before this offset is scanned again.
        self._scan_from = 0
        # Bare objects before this offset were complete and rejected.
        self._bare_from = 0

    @property
    def buffer(self) -> str:
        return self._buffer

    def push(self, chunk: str) -> ToolCallHit | None:
        if not chunk:
            return None
        self._buffer += chunk

        for strategy in (self._match_xml, self._match_tail, self._match_bare):
            found = strategy()
            if found is not None:
                hit, end, name = found
                self._scan_from = end
                self._bare_from = max(self._bare_from, end)
                LOGGER.debug(
                    "detector.hit",
                    extra={
                        "event": "detector.hit",
                        "strategy": name,
                        "server": hit.server,
                        "tool": hit.tool,
                    },
                )
                return hit
        return None

    def reset(self) -> None:
        self._buffer = ""
        self._last_fence = -1
        self._scan_from = 0
        self._bare_from = 0

    def _match_xml(self) -> tuple[ToolCallHit, int, str] | None:
        for match in _XML_TOOL_CALL_RE.finditer(self._buffer, self._scan_from):
            hit = pick_tool_call(_loads(match.group(1).strip()))
            if hit is not None:
                return hit, match.end(), "xml"
        for match in _USE_MCP_TOOL_RE.finditer(self._buffer, self._scan_from):
            server = match.group(1).strip()
            tool = match.group(2).strip()
            raw_args = (match.group(3) or "").strip()
            args = _loads(raw_args) if raw_args else {}
            if server and tool and isinstance(args, dict):
                return ToolCallHit(server=server, tool=tool, args=args), match.end(), "use_mcp_tool"
        return None

    def _match_tail(self) -> tuple[ToolCallHit, int, str] | None:
        fence = self._buffer.rfind(CODE_FENCE)
        if fence != -1:
            self._last_fence = fence
        if self._last_fence >= self._scan_from:
            tail_start = self._last_fence
        else:
            tail_start = max(self._scan_from, len(self._buffer) - self.tail_window)
        tail = self._buffer[tail_start:]
        if '"type"' not in tail or '"tool_call"' not in _WHITESPACE_RE.sub("", tail):
            return None
        span = extract_balanced_json(tail)
        if span is None:
            return None
        hit = pick_tool_call(_loads(tail[span[0] : span[1]]))
        if hit is None:
            return None
        return hit, tail_start + span[1], "fenced"

    def _match_bare(self) -> tuple[ToolCallHit, int, str] | None:
        span = extract_balanced_json(self._buffer, self._bare_from)
        if span is None:
            return None
        begin, end = span
        payload = _loads(self._buffer[begin:end])
        hit = pick_tool_call(payload) if _is_tool_call_object(payload) else None
        if hit is None:
            # A closed object never changes; later pushes look past it.
            self._bare_from = end
            return None
        return hit, end, "bare"
