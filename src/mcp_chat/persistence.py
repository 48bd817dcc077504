"""File-backed storage for message segment lists."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import json
import os
from pathlib import Path
import re
from typing import Any

from .autosave import SaveFunction
from .exceptions import PersistenceError, PersistenceFormatError
from .segments import SEGMENT_SCHEMA_VERSION, Segment, deserialize_segments

_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


class MessageSegmentStore:
    """Store one JSON record per message under ``directory``.

    Records look like ``{"message_id", "schema_version", "updated_at",
    "segments"}`` where ``segments`` is the serialized segment array.
    """

    def __init__(self, directory: str | Path, enabled: bool = True) -> None:
        self.enabled = enabled
        self.directory = Path(directory).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; silently ignores failures."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            pass

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.directory, 0o700)

    def path_for(self, message_id: str) -> Path:
        safe = _SAFE_ID_RE.sub("_", message_id.strip())
        if not safe or safe in {".", ".."}:
            raise PersistenceError(f"Invalid message id: {message_id!r}")
        return self.directory / f"{safe}.json"

    def write(self, message_id: str, serialized_segments: str) -> Path | None:
        """Write the serialized segment array for ``message_id``.

        Returns ``None`` when the store is disabled.
        """
        if not self.enabled:
            return None
        try:
            segments = json.loads(serialized_segments)
        except json.JSONDecodeError as exc:
            raise PersistenceFormatError("Segment payload is not valid JSON.") from exc
        if not isinstance(segments, list):
            raise PersistenceFormatError("Segment payload must be a JSON array.")

        self._ensure_directory()
        target = self.path_for(message_id)
        payload: dict[str, Any] = {
            "message_id": message_id,
            "schema_version": SEGMENT_SCHEMA_VERSION,
            "updated_at": datetime.now(UTC).isoformat(),
            "segments": segments,
        }
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            self._enforce_permissions(tmp)
            tmp.replace(target)
        except OSError as exc:
            raise PersistenceError(f"Unable to write {target}: {exc}") from exc
        return target

    def load_record(self, message_id: str) -> dict[str, Any] | None:
        target = self.path_for(message_id)
        if not target.exists():
            return None
        try:
            payload = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceFormatError(f"Unable to read {target}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("segments"), list):
            raise PersistenceFormatError("Message record is invalid.")
        version = payload.get("schema_version", SEGMENT_SCHEMA_VERSION)
        if not isinstance(version, int) or version > SEGMENT_SCHEMA_VERSION:
            raise PersistenceFormatError(
                f"Unsupported segment schema version: {version!r}"
            )
        return payload

    def load_segments(self, message_id: str) -> list[Segment] | None:
        """Return the stored segments, or ``None`` when nothing is stored."""
        record = self.load_record(message_id)
        if record is None:
            return None
        try:
            return deserialize_segments(record["segments"])
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceFormatError(f"Stored segments are invalid: {exc}") from exc

    def delete(self, message_id: str) -> bool:
        target = self.path_for(message_id)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    def saver_for(self, message_id: str) -> SaveFunction:
        """Return an async save function bound to ``message_id``."""

        async def _save(serialized_segments: str) -> None:
            await asyncio.to_thread(self.write, message_id, serialized_segments)

        return _save
