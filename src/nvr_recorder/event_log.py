"""Persistent log of segment and group lifecycle events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecordingEvent:
    """A recorder event such as a finalised segment or a flushed group."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class RecordingEventLog:
    """Append-only event log shared by the writers of a session.

    Entries are kept in a bounded in-memory ring and, when ``path`` is given,
    appended to a JSON-lines file. Persistence failures are logged and never
    interrupt recording.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[RecordingEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> RecordingEvent:
        """Append a new event and return the stored entry."""

        entry = RecordingEvent(
            timestamp=time.time(),
            category=category.strip() or "recording",
            event=event,
            message=message,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[RecordingEvent]:
        """Return the most recent entries, optionally filtered by category."""

        with self._lock:
            entries: Iterable[RecordingEvent] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category]
        entries = list(entries)
        if limit is not None and len(entries) > max(1, int(limit)):
            entries = entries[-max(1, int(limit)) :]
        return entries

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> RecordingEvent | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        metadata = payload.get("metadata")
        return RecordingEvent(
            timestamp=timestamp,
            category=category if isinstance(category, str) else "recording",
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def _append_persistent(self, entry: RecordingEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)

    @staticmethod
    def _clean_metadata(metadata: dict[str, object | None] | None) -> dict[str, object] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["RecordingEvent", "RecordingEventLog"]
