"""Per-server canonicalization of tool names and arguments before dispatch."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

ArgumentRule = Callable[[dict[str, Any]], dict[str, Any]]

PATH_FIELDS = ("path", "source", "destination")


def forward_slash_paths(args: dict[str, Any]) -> dict[str, Any]:
    """Rewrite backslash separators in string path fields to forward slashes."""
    for key in PATH_FIELDS:
        value = args.get(key)
        if isinstance(value, str):
            args[key] = value.replace("\\", "/")
    paths = args.get("paths")
    if isinstance(paths, list):
        args["paths"] = [
            item.replace("\\", "/") if isinstance(item, str) else item for item in paths
        ]
    return args


DEFAULT_ARGUMENT_RULES: dict[str, list[ArgumentRule]] = {
    "filesystem": [forward_slash_paths],
}

# (server, requested tool) -> tool actually exposed by the server.
DEFAULT_TOOL_ALIASES: dict[tuple[str, str], str] = {
    ("filesystem", "list"): "dir",
}


class ArgumentNormalizer:
    """Apply registered rules for a server; unknown servers pass through."""

    def __init__(
        self,
        rules: Mapping[str, list[ArgumentRule]] | None = None,
        tool_aliases: Mapping[tuple[str, str], str] | None = None,
    ) -> None:
        source = DEFAULT_ARGUMENT_RULES if rules is None else rules
        self._rules: dict[str, list[ArgumentRule]] = {
            server: list(server_rules) for server, server_rules in source.items()
        }
        self._aliases = dict(DEFAULT_TOOL_ALIASES if tool_aliases is None else tool_aliases)

    def register(self, server: str, rule: ArgumentRule) -> None:
        self._rules.setdefault(server, []).append(rule)

    def normalize_args(
        self, server: str, args: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        normalized = dict(args or {})
        for rule in self._rules.get(server, []):
            normalized = rule(normalized)
        return normalized

    def normalize_tool(self, server: str, tool: str) -> str:
        return self._aliases.get((server, tool), tool)


_DEFAULT_NORMALIZER = ArgumentNormalizer()


def normalize_args(server: str, args: Mapping[str, Any] | None) -> dict[str, Any]:
    """Normalize ``args`` with the built-in rule set."""
    return _DEFAULT_NORMALIZER.normalize_args(server, args)
