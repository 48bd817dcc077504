"""Human-in-the-loop authorization gate for tool execution.

The gate is a plain service object: whoever raises approval requests and
whoever resolves them share one instance. Tool execution awaits
:meth:`AuthorizationGate.request` until an approval UI calls
``approve_authorization`` or ``reject_authorization``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import logging
import time
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class PendingAuthorization:
    """One tool call waiting for a human decision."""

    id: str
    message_id: str
    server: str
    tool: str
    on_approve: Callable[[], None]
    on_reject: Callable[[], None]
    args: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)


class AuthorizationGate:
    """Registry of pending authorizations keyed by id."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingAuthorization] = {}

    @property
    def pending(self) -> list[PendingAuthorization]:
        """Pending requests, oldest first."""
        return sorted(self._pending.values(), key=lambda item: item.created_at)

    def add_pending_authorization(self, auth: PendingAuthorization) -> None:
        self._pending[auth.id] = auth
        LOGGER.info(
            "authorization.pending",
            extra={
                "event": "authorization.pending",
                "authorization_id": auth.id,
                "message_id": auth.message_id,
                "server": auth.server,
                "tool": auth.tool,
            },
        )

    def get_pending_authorization(self, auth_id: str) -> PendingAuthorization | None:
        return self._pending.get(auth_id)

    def has_pending_authorization(self, auth_id: str) -> bool:
        return auth_id in self._pending

    def approve_authorization(self, auth_id: str) -> bool:
        """Run the approve callback; unknown ids are a no-op returning False."""
        auth = self._pending.get(auth_id)
        if auth is None:
            return False
        self._resolve(auth, auth.on_approve, "authorization.approved")
        return True

    def reject_authorization(self, auth_id: str) -> bool:
        """Run the reject callback; unknown ids are a no-op returning False."""
        auth = self._pending.get(auth_id)
        if auth is None:
            return False
        self._resolve(auth, auth.on_reject, "authorization.rejected")
        return True

    def remove_authorization(self, auth_id: str) -> None:
        self._pending.pop(auth_id, None)

    def reject_for_message(self, message_id: str) -> int:
        """Reject every request raised by ``message_id``; returns the count."""
        ids = [auth.id for auth in self.pending if auth.message_id == message_id]
        for auth_id in ids:
            self.reject_authorization(auth_id)
        return len(ids)

    async def request(
        self,
        auth_id: str,
        message_id: str,
        server: str,
        tool: str,
        args: dict[str, Any] | None = None,
        on_decision: Callable[[bool], None] | None = None,
    ) -> bool:
        """Register a request and wait for the decision; True means approved.

        ``on_decision`` runs inside the approve or reject callback, before the
        waiting coroutine resumes.
        """
        loop = asyncio.get_running_loop()
        decision: asyncio.Future[bool] = loop.create_future()

        def _settle(value: bool) -> None:
            if decision.done():
                return
            decision.set_result(value)
            if on_decision is not None:
                on_decision(value)

        self.add_pending_authorization(
            PendingAuthorization(
                id=auth_id,
                message_id=message_id,
                server=server,
                tool=tool,
                args=dict(args) if args is not None else None,
                on_approve=lambda: _settle(True),
                on_reject=lambda: _settle(False),
            )
        )
        try:
            return await decision
        finally:
            self.remove_authorization(auth_id)

    def _resolve(
        self,
        auth: PendingAuthorization,
        callback: Callable[[], None],
        event: str,
    ) -> None:
        try:
            callback()
        except Exception as exc:
            LOGGER.error(
                "authorization.callback.failed",
                extra={
                    "event": "authorization.callback.failed",
                    "authorization_id": auth.id,
                    "error": str(exc),
                },
            )
        finally:
            self.remove_authorization(auth.id)
        LOGGER.info(
            event,
            extra={
                "event": event,
                "authorization_id": auth.id,
                "server": auth.server,
                "tool": auth.tool,
            },
        )


class AuthorizationPolicy:
    """Decide whether a server's tool calls skip the human gate."""

    def __init__(
        self,
        default_auto_authorize: bool = False,
        server_overrides: Mapping[str, bool | None] | None = None,
    ) -> None:
        self.default_auto_authorize = default_auto_authorize
        self._overrides = {
            name: value
            for name, value in (server_overrides or {}).items()
            if value is not None
        }

    @classmethod
    def from_config(cls, mcp_config: Mapping[str, Any]) -> AuthorizationPolicy:
        policies = mcp_config.get("server_policies") or {}
        return cls(
            default_auto_authorize=bool(mcp_config.get("default_auto_authorize", False)),
            server_overrides={
                name: (policy or {}).get("auto_authorize")
                for name, policy in policies.items()
            },
        )

    def should_auto_authorize(self, server: str) -> bool:
        return self._overrides.get(server, self.default_auto_authorize)
