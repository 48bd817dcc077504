"""End-to-end orchestration of one assistant message.

``ChatSession.send`` composes the request, streams provider turns through a
:class:`StreamEventHandler`, executes the tool call a turn ends on (after
normalization and authorization), reinjects the result and streams the
follow-up turn, until a turn ends without a tool call or the round limit is
reached.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
import logging
from typing import Any

from .authorization import AuthorizationGate, AuthorizationPolicy
from .autosave import DEFAULT_AUTOSAVE_INTERVAL_SECONDS, MessageAutoSaver, SaveFunction
from .fsm import Abort, MessageModel, MessageState, StreamEnd, ToolPendingAuth, ToolResult
from .history import HistoryBuilder
from .normalizer import ArgumentNormalizer
from .options import ComposedOptions, OptionComposer
from .provider import StreamProvider
from .provider_adapters import (
    ProviderMessage,
    authorization_denied_message,
    build_tool_instructions,
    tool_result_to_next_message,
)
from .stream_handler import DetectedToolCall, StreamEventHandler
from .task_manager import MessageTaskManager
from .tools import (
    ToolInvoker,
    UnavailableToolInvoker,
    build_schema_hint,
    find_tool,
    list_server_tools,
    missing_tool_message,
    preview_result,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 5
REJECTED_BY_USER = "Tool call was rejected by the user."
ROUND_LIMIT_REACHED = "Tool call limit reached for this message."
TOOL_CALL_CANCELLED = "Tool call was cancelled before it finished."

SaveFactory = Callable[[str], SaveFunction]


class ChatSession:
    """Run assistant messages against a provider with MCP tool support."""

    def __init__(
        self,
        provider: StreamProvider,
        composer: OptionComposer,
        *,
        provider_name: str = "ollama",
        model: str,
        base_options: Mapping[str, Any] | None = None,
        system_prompt: str = "",
        invoker: ToolInvoker | None = None,
        gate: AuthorizationGate | None = None,
        policy: AuthorizationPolicy | None = None,
        normalizer: ArgumentNormalizer | None = None,
        save_factory: SaveFactory | None = None,
        autosave_interval_seconds: float = DEFAULT_AUTOSAVE_INTERVAL_SECONDS,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        on_change: Callable[[MessageModel], None] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.provider = provider
        self.composer = composer
        self.provider_name = provider_name
        self.model = model
        self.base_options = dict(base_options or {})
        self.system_prompt = system_prompt
        self.invoker = invoker or UnavailableToolInvoker()
        self.gate = gate or AuthorizationGate()
        self.policy = policy or AuthorizationPolicy()
        self.normalizer = normalizer or ArgumentNormalizer()
        self.save_factory = save_factory
        self.autosave_interval_seconds = autosave_interval_seconds
        self.max_tool_rounds = max(1, max_tool_rounds)
        self.tasks = MessageTaskManager()
        self._on_change = on_change
        self._id_factory = id_factory
        self._handlers: dict[str, StreamEventHandler] = {}

    def model_for(self, message_id: str) -> MessageModel | None:
        """Current model of an in-flight message."""
        handler = self._handlers.get(message_id)
        return handler.model if handler is not None else None

    def start(
        self,
        message_id: str,
        conversation_id: str | None,
        user_content: str,
        history: Iterable[Mapping[str, Any]] = (),
    ) -> asyncio.Task[MessageModel]:
        """Run :meth:`send` as a tracked background task."""
        task = asyncio.get_running_loop().create_task(
            self.send(message_id, conversation_id, user_content, history)
        )
        self.tasks.add(message_id, task)
        return task

    async def stop(self, message_id: str) -> bool:
        """Cancel a running message; returns False when nothing was running."""
        return await self.tasks.cancel(message_id)

    async def send(
        self,
        message_id: str,
        conversation_id: str | None,
        user_content: str,
        history: Iterable[Mapping[str, Any]] = (),
        document_context: str | None = None,
    ) -> MessageModel:
        options = await self.composer.compose_chat_options(
            self.provider_name,
            self.model,
            self.base_options,
            conversation_id,
            user_content,
        )
        messages = await self._build_messages(
            options, user_content, history, document_context
        )

        saver: MessageAutoSaver | None = None
        if self.save_factory is not None:
            saver = MessageAutoSaver(
                self.save_factory(message_id),
                self.autosave_interval_seconds,
                name=message_id,
            )
        handler = StreamEventHandler(
            message_id,
            saver=saver,
            on_change=self._on_change,
            id_factory=self._id_factory,
        )
        self._handlers[message_id] = handler
        LOGGER.info(
            "session.message.started",
            extra={
                "event": "session.message.started",
                "message_id": message_id,
                "model": options.model,
                "mcp_servers": list(options.mcp_servers),
            },
        )

        try:
            rounds = 0
            while True:
                await self._stream_turn(handler, messages, options)
                detected = handler.end_turn()
                if detected is None:
                    break
                if rounds >= self.max_tool_rounds:
                    handler.dispatch(
                        ToolResult(
                            server=detected.server,
                            tool=detected.tool,
                            ok=False,
                            card_id=detected.card_id,
                            error_message=ROUND_LIMIT_REACHED,
                        )
                    )
                    handler.begin_turn()
                    break
                rounds += 1
                follow_up = await self._run_tool(
                    handler, detected, options, user_content
                )
                messages = [
                    *messages,
                    ProviderMessage(role="assistant", content=handler.turn_text),
                    follow_up,
                ]
                handler.begin_turn()
            handler.parser.force_stop()
            handler.dispatch(StreamEnd())
        except (asyncio.CancelledError, Exception) as exc:
            self._abort(handler, exc)
            raise
        finally:
            self._handlers.pop(message_id, None)
            if saver is not None:
                await saver.flush()
                saver.stop()

        LOGGER.info(
            "session.message.completed",
            extra={
                "event": "session.message.completed",
                "message_id": message_id,
                "tool_rounds": rounds,
            },
        )
        return handler.model

    async def _build_messages(
        self,
        options: ComposedOptions,
        user_content: str,
        history: Iterable[Mapping[str, Any]],
        document_context: str | None,
    ) -> list[ProviderMessage]:
        tools_by_server: dict[str, list[dict[str, Any]]] = {}
        for server in options.mcp_servers:
            tools = await list_server_tools(self.invoker, server)
            if tools:
                tools_by_server[server] = tools
        builder = HistoryBuilder()
        builder.add_system(self.system_prompt)
        builder.add_system(build_tool_instructions(options.mcp_servers, tools_by_server))
        builder.add_many(history)
        builder.add_user(user_content, document_context)
        return builder.take()

    async def _stream_turn(
        self,
        handler: StreamEventHandler,
        messages: Sequence[ProviderMessage],
        options: ComposedOptions,
    ) -> None:
        async for event in self.provider.stream(messages, options):
            handler.handle(event)

    async def _run_tool(
        self,
        handler: StreamEventHandler,
        detected: DetectedToolCall,
        options: ComposedOptions,
        user_content: str,
    ) -> ProviderMessage:
        """Execute the detected call and return the follow-up turn."""
        server = detected.server
        tool = self.normalizer.normalize_tool(server, detected.tool)
        args = self.normalizer.normalize_args(server, detected.args)

        def fail(error: str, schema_hint: str | None = None) -> None:
            handler.dispatch(
                ToolResult(
                    server=server,
                    tool=detected.tool,
                    ok=False,
                    card_id=detected.card_id,
                    error_message=error,
                    schema_hint=schema_hint,
                )
            )

        tools = await list_server_tools(self.invoker, server)
        if tools is not None and find_tool(tools, tool) is None:
            error = missing_tool_message(
                server, tool, [str(item.get("name")) for item in tools if item.get("name")]
            )
            fail(error)
            return tool_result_to_next_message(
                options.provider, server, tool, {"error": error}, user_content
            )

        if not self.policy.should_auto_authorize(server):
            handler.dispatch(
                ToolPendingAuth(server=server, tool=detected.tool, card_id=detected.card_id)
            )

            def on_decision(approved: bool) -> None:
                if not approved:
                    fail(REJECTED_BY_USER)

            approved = await self.gate.request(
                detected.card_id,
                handler.model.id,
                server,
                tool,
                args,
                on_decision=on_decision,
            )
            if not approved:
                return authorization_denied_message(server, tool, user_content)

        try:
            result = await self.invoker.call_tool(server, tool, args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - tool servers can fail in many ways.
            LOGGER.warning(
                "session.tool.failed",
                extra={
                    "event": "session.tool.failed",
                    "message_id": handler.model.id,
                    "server": server,
                    "tool": tool,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            fail(str(exc) or type(exc).__name__, build_schema_hint(find_tool(tools, tool)))
            return tool_result_to_next_message(
                options.provider,
                server,
                tool,
                {"error": str(exc) or type(exc).__name__},
                user_content,
            )

        handler.dispatch(
            ToolResult(
                server=server,
                tool=detected.tool,
                ok=True,
                card_id=detected.card_id,
                result_preview=preview_result(result),
            )
        )
        return tool_result_to_next_message(
            options.provider, server, tool, result, user_content
        )

    def _abort(self, handler: StreamEventHandler, exc: BaseException) -> None:
        message_id = handler.model.id
        handler.parser.force_stop()
        rejected = self.gate.reject_for_message(message_id)
        reason = "cancelled" if isinstance(exc, asyncio.CancelledError) else type(exc).__name__
        detected = handler.detected
        if detected is not None and handler.model.fsm == MessageState.TOOL_RUNNING:
            handler.dispatch(
                ToolResult(
                    server=detected.server,
                    tool=detected.tool,
                    ok=False,
                    card_id=detected.card_id,
                    error_message=TOOL_CALL_CANCELLED,
                )
            )
        handler.dispatch(Abort(reason=reason))
        LOGGER.warning(
            "session.message.aborted",
            extra={
                "event": "session.message.aborted",
                "message_id": message_id,
                "reason": reason,
                "rejected_authorizations": rejected,
            },
        )
