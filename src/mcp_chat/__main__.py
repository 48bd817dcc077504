"""CLI entrypoint for mcp-chat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import json
from pathlib import Path
import sys
from typing import Any
from uuid import uuid4

from .authorization import AuthorizationGate, AuthorizationPolicy
from .config import ensure_config_dir, load_config
from .exceptions import McpChatError
from .fsm import MessageModel, StreamEnd
from .logging_utils import configure_logging
from .options import ConfiguredServerDirectory, OptionComposer
from .persistence import MessageSegmentStore
from .provider import OllamaStreamProvider
from .segments import ToolCardSegment, render_text, serialize_segments
from .session import ChatSession
from .stream_handler import StreamEvent, StreamEventHandler


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpchat",
        description="mcp-chat - streaming chat client with MCP tool calls",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a config.toml (defaults to ~/.config/mcpchat/config.toml)",
    )
    subcommands = parser.add_subparsers(dest="command")

    replay = subcommands.add_parser(
        "replay", help="Feed a transcript through the stream pipeline"
    )
    replay.add_argument("file", type=Path, help="Transcript file to replay")
    replay.add_argument(
        "--chunk-size",
        type=int,
        default=16,
        help="Characters per simulated stream chunk",
    )

    chat = subcommands.add_parser("chat", help="Send one prompt to the configured model")
    chat.add_argument("prompt", help="User message")
    chat.add_argument("--conversation", default=None, help="Conversation id")
    return parser


def replay_transcript(text: str, chunk_size: int) -> MessageModel:
    """Run ``text`` through tokenizer, detector and FSM in fixed-size chunks."""
    size = max(1, chunk_size)
    handler = StreamEventHandler(f"replay-{uuid4().hex[:8]}")
    for start in range(0, len(text), size):
        handler.handle(StreamEvent("raw", text[start : start + size]))
    handler.end_turn()
    handler.parser.force_stop()
    handler.dispatch(StreamEnd())
    return handler.model


def _print_model(model: MessageModel) -> None:
    payload = {
        "message_id": model.id,
        "state": model.fsm.value,
        "segments": serialize_segments(model.segments),
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def _console_authorizer(gate: AuthorizationGate) -> None:
    """Prompt on the terminal for every pending authorization."""
    while True:
        for auth in gate.pending:
            answer = await asyncio.to_thread(
                input,
                f"Allow {auth.server}.{auth.tool} with {json.dumps(auth.args or {})}? [y/N] ",
            )
            if answer.strip().lower() in {"y", "yes"}:
                gate.approve_authorization(auth.id)
            else:
                gate.reject_authorization(auth.id)
        await asyncio.sleep(0.1)


async def _run_chat(config: dict[str, Any], prompt: str, conversation_id: str | None) -> int:
    provider_config = config["provider"]
    mcp_config = config["mcp"]
    persistence_config = config["persistence"]

    store: MessageSegmentStore | None = None
    if persistence_config["enabled"]:
        store = MessageSegmentStore(persistence_config["directory"])

    gate = AuthorizationGate()
    session = ChatSession(
        OllamaStreamProvider(
            host=provider_config["host"],
            timeout=provider_config["timeout"],
            retries=provider_config["retries"],
            retry_backoff_seconds=provider_config["retry_backoff_seconds"],
        ),
        OptionComposer(ConfiguredServerDirectory(mcp_config)),
        provider_name=provider_config["name"],
        model=provider_config["model"],
        base_options=provider_config["options"],
        system_prompt=provider_config["system_prompt"],
        gate=gate,
        policy=AuthorizationPolicy.from_config(mcp_config),
        save_factory=store.saver_for if store is not None else None,
        autosave_interval_seconds=persistence_config["autosave_interval_seconds"],
        max_tool_rounds=mcp_config["max_tool_rounds"],
    )

    authorizer = asyncio.create_task(_console_authorizer(gate))
    try:
        model = await session.send(uuid4().hex, conversation_id, prompt)
    except McpChatError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        authorizer.cancel()
        try:
            await authorizer
        except asyncio.CancelledError:
            pass

    for segment in model.segments:
        if isinstance(segment, ToolCardSegment):
            detail = segment.result_preview or segment.error_message or ""
            print(f"[{segment.server}.{segment.tool}: {segment.status.value}] {detail}")
    print(render_text(model.segments).strip())
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Handle CLI flags and dispatch subcommands."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("mcp-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"mcpchat {version}")
        return 0

    if args.command == "replay":
        try:
            text = args.file.read_text(encoding="utf-8")
        except OSError as exc:
            print(f"error: cannot read {args.file}: {exc}", file=sys.stderr)
            return 1
        _print_model(replay_transcript(text, args.chunk_size))
        return 0

    if args.command == "chat":
        if args.config is None:
            ensure_config_dir()
        config = load_config(args.config)
        configure_logging(config["logging"])
        return asyncio.run(_run_chat(config, args.prompt, args.conversation))

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
