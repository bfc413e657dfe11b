"""Persistent log of the notifications broadcast by the recording service."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Deque

from .events import Notification

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only JSONL record of :class:`Notification` payloads.

    The most recent ``max_entries`` payloads are kept in memory and reloaded
    from disk on construction so the HTTP surface can show history across
    restarts.
    """

    def __init__(self, path: Path | str | None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[dict[str, object | None]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def __call__(self, notification: Notification) -> None:
        self.record(notification)

    def record(self, notification: Notification) -> dict[str, object | None]:
        payload = notification.to_dict()
        with self._lock:
            self._entries.append(payload)
            self._append(payload)
        return payload

    def tail(
        self, limit: int | None = None, *, camera_id: int | None = None
    ) -> list[dict[str, object | None]]:
        """Return the newest payloads, oldest first."""

        with self._lock:
            entries = list(self._entries)
        if camera_id is not None:
            entries = [entry for entry in entries if entry.get("camera_id") == camera_id]
        if limit is not None:
            limit_value = max(1, int(limit))
            entries = entries[-limit_value:]
        return entries

    # ------------------------------------------------------------------
    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            if isinstance(payload, dict) and "camera_id" in payload:
                self._entries.append(payload)

    def _append(self, payload: dict[str, object | None]) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["EventLog"]
