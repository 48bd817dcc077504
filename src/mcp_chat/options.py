"""Outbound request options: parameter policy plus MCP server resolution."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
import logging
import re
from types import MappingProxyType
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"@([a-zA-Z0-9_-]{1,64})")

ParameterPatch = dict[str, Any]
StrategyResolver = Callable[[str, str], str | None]


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        elif isinstance(value, list):
            merged[key] = list(value)
        else:
            merged[key] = deepcopy(value)
    return merged


@dataclass(frozen=True)
class ParameterRule:
    """Patch request parameters for matching provider/model names.

    Rules run in ascending ``priority``; a later rule can override what an
    earlier one injected.
    """

    id: str
    apply: Callable[[ParameterPatch], ParameterPatch]
    provider: re.Pattern[str] | None = None
    model: re.Pattern[str] | None = None
    priority: int = 0
    description: str = ""

    def matches(self, provider: str, model: str) -> bool:
        if self.provider is not None and not self.provider.search(provider):
            return False
        if self.model is not None and not self.model.search(model):
            return False
        return True


def _gemini_thinking_budget(base: ParameterPatch) -> ParameterPatch:
    generation = base.get("generationConfig") or {}
    thinking = generation.get("thinkingConfig") or {}
    patch: dict[str, Any] = {}
    max_tokens = (
        base.get("maxOutputTokens") or base.get("maxTokens") or generation.get("maxOutputTokens")
    )
    if max_tokens:
        patch["maxOutputTokens"] = max_tokens
    stop = base.get("stop") or generation.get("stopSequences")
    if stop:
        patch["stopSequences"] = stop
    budget = thinking.get("thinkingBudget")
    patch["thinkingConfig"] = {
        "thinkingBudget": budget if isinstance(budget, int) and budget > 0 else 1024
    }
    return _deep_merge(base, {"generationConfig": patch})


BUILTIN_RULES: tuple[ParameterRule, ...] = (
    ParameterRule(
        id="google-gemini-thinking-required",
        priority=100,
        description="Inject a non-zero thinking budget for thinking-only Gemini models.",
        provider=re.compile(r"^(google\s*ai)$", re.IGNORECASE),
        model=re.compile(
            r"^(gemini-2\.5-(pro|flash-thinking)(?:-[a-z]+)?"
            r"|gemini-1\.5-.*-thinking|gemini-2\.0-.*-thinking|.*-thinking)$",
            re.IGNORECASE,
        ),
        apply=_gemini_thinking_budget,
    ),
)


class ParameterPolicyEngine:
    """Apply built-in and user rules to base request options."""

    def __init__(self, rules: Iterable[ParameterRule] = BUILTIN_RULES) -> None:
        self._builtin = sorted(rules, key=lambda rule: rule.priority)
        self._user_rules: list[ParameterRule] = []

    def set_user_rules(self, rules: Iterable[ParameterRule]) -> None:
        self._user_rules = sorted(rules, key=lambda rule: rule.priority)

    def apply(
        self, provider: str, model: str, base_options: Mapping[str, Any] | None = None
    ) -> ParameterPatch:
        merged: ParameterPatch = deepcopy(dict(base_options or {}))
        for rule in [*self._builtin, *self._user_rules]:
            if rule.matches(provider, model):
                merged = rule.apply(merged) or merged
        return merged


class ServerDirectory(Protocol):
    """Source of MCP server names at the scopes the composer consults."""

    async def enabled_for_conversation(self, conversation_id: str) -> list[str]: ...

    async def global_enabled(self) -> list[str]: ...

    async def connected(self) -> list[str]: ...

    async def all_configured(self) -> list[str]: ...


class ConfiguredServerDirectory:
    """Server directory backed by the ``[mcp]`` config section."""

    def __init__(
        self,
        mcp_config: Mapping[str, Any],
        connected: Callable[[], Sequence[str]] | None = None,
    ) -> None:
        self._servers = list(mcp_config.get("servers") or [])
        self._global = list(mcp_config.get("enabled_servers") or [])
        self._per_conversation = {
            key: list(value)
            for key, value in (mcp_config.get("conversation_servers") or {}).items()
        }
        self._connected = connected

    async def enabled_for_conversation(self, conversation_id: str) -> list[str]:
        return list(self._per_conversation.get(conversation_id, []))

    async def global_enabled(self) -> list[str]:
        return list(self._global)

    async def connected(self) -> list[str]:
        if self._connected is None:
            return []
        return list(self._connected())

    async def all_configured(self) -> list[str]:
        return list(self._servers)


@dataclass(frozen=True)
class ComposedOptions:
    """Request parameters for one send; never mutated after creation."""

    provider: str
    model: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    mcp_servers: tuple[str, ...] = ()
    policy_provider: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = deepcopy(dict(self.params))
        payload["mcpServers"] = list(self.mcp_servers)
        return payload


def extract_mentions(user_content: str) -> list[str]:
    """Return ``@name`` mentions in order of first appearance."""
    mentioned: list[str] = []
    for match in MENTION_PATTERN.finditer(user_content or ""):
        name = match.group(1)
        if name not in mentioned:
            mentioned.append(name)
    return mentioned


def _dedupe(names: Iterable[str]) -> list[str]:
    ordered: list[str] = []
    for name in names:
        if name and name not in ordered:
            ordered.append(name)
    return ordered


class OptionComposer:
    """Build :class:`ComposedOptions` for a provider call."""

    def __init__(
        self,
        servers: ServerDirectory,
        policy: ParameterPolicyEngine | None = None,
        strategy_resolver: StrategyResolver | None = None,
    ) -> None:
        self._servers = servers
        self._policy = policy or ParameterPolicyEngine()
        self._strategy_resolver = strategy_resolver

    async def compose_chat_options(
        self,
        provider: str,
        model: str,
        base_options: Mapping[str, Any] | None,
        conversation_id: str | None,
        user_content: str,
    ) -> ComposedOptions:
        policy_provider = provider
        if self._strategy_resolver is not None:
            policy_provider = self._strategy_resolver(provider, model) or provider
        params = self._policy.apply(policy_provider, model, base_options)

        try:
            mcp_servers = await self.resolve_servers(conversation_id, user_content)
        except Exception as exc:
            LOGGER.warning(
                "options.mcp_servers.unavailable",
                extra={
                    "event": "options.mcp_servers.unavailable",
                    "conversation_id": conversation_id,
                    "error": str(exc),
                },
            )
            mcp_servers = []

        return ComposedOptions(
            provider=provider,
            model=model,
            params=MappingProxyType(params),
            mcp_servers=tuple(mcp_servers),
            policy_provider=policy_provider,
        )

    async def resolve_servers(
        self, conversation_id: str | None, user_content: str
    ) -> list[str]:
        """Conversation servers, else global, else connected; mentions first."""
        enabled: list[str] = []
        if conversation_id:
            enabled = await self._servers.enabled_for_conversation(conversation_id)
        if not enabled:
            enabled = await self._servers.global_enabled()
        if not enabled:
            enabled = await self._servers.connected()

        mentioned = extract_mentions(user_content)
        if mentioned:
            configured = {
                name.lower(): name for name in await self._servers.all_configured()
            }
            promoted = [
                configured[name.lower()] for name in mentioned if name.lower() in configured
            ]
            if promoted:
                enabled = [*promoted, *enabled]
        return _dedupe(enabled)


async def compose_chat_options(
    provider: str,
    model: str,
    base_options: Mapping[str, Any] | None,
    conversation_id: str | None,
    user_content: str,
    *,
    servers: ServerDirectory,
    policy: ParameterPolicyEngine | None = None,
    strategy_resolver: StrategyResolver | None = None,
) -> ComposedOptions:
    """One-shot form of :meth:`OptionComposer.compose_chat_options`."""
    composer = OptionComposer(servers, policy=policy, strategy_resolver=strategy_resolver)
    return await composer.compose_chat_options(
        provider, model, base_options, conversation_id, user_content
    )
