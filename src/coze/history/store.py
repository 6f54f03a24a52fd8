"""Append-only prompt/reply history persisted as JSON Lines."""
from __future__ import annotations

import enum
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from ..errors import HistoryLoadError, HistoryWriteError

logger = logging.getLogger(__name__)

FIELDS = ("id", "timestamp", "prompt", "reply")


@dataclass(frozen=True)
class HistoryEntry:
    id: int
    timestamp: str
    prompt: str
    reply: str
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Direction(enum.Enum):
    OLDER = "older"
    NEWER = "newer"


def _parse_line(line: str, lineno: int, path: str) -> HistoryEntry:
    try:
        raw = json.loads(line)
    except json.JSONDecodeError as exc:
        raise HistoryLoadError(f"{path}:{lineno}: invalid JSON ({exc.msg})") from exc
    if not isinstance(raw, dict):
        raise HistoryLoadError(f"{path}:{lineno}: expected an object")
    missing = [name for name in FIELDS if name not in raw]
    if missing:
        raise HistoryLoadError(f"{path}:{lineno}: missing {', '.join(missing)}")
    entry_id = raw["id"]
    if not isinstance(entry_id, int) or isinstance(entry_id, bool):
        raise HistoryLoadError(f"{path}:{lineno}: id must be an integer")
    for name in ("timestamp", "prompt", "reply"):
        if not isinstance(raw[name], str):
            raise HistoryLoadError(f"{path}:{lineno}: {name} must be a string")
    model = raw.get("model")
    if model is not None and not isinstance(model, str):
        raise HistoryLoadError(f"{path}:{lineno}: model must be a string")
    return HistoryEntry(
        id=entry_id,
        timestamp=raw["timestamp"],
        prompt=raw["prompt"],
        reply=raw["reply"],
        model=model,
    )


class HistoryStore:
    """History loaded fully in memory, with every append fsync'ed to disk.

    The store is the only writer of its file. Ids continue from the
    highest persisted id so they are never reused across restarts.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)
        self._entries: list[HistoryEntry] = []
        self._lock = threading.Lock()
        self._load()
        self._next_id = self._entries[-1].id + 1 if self._entries else 1

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except (OSError, UnicodeDecodeError) as exc:
            raise HistoryLoadError(f"Unable to read history {self.path}: {exc}") from exc

        last_id = 0
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            entry = _parse_line(line, lineno, self.path)
            if entry.id <= last_id:
                raise HistoryLoadError(f"{self.path}:{lineno}: id {entry.id} is not increasing")
            last_id = entry.id
            self._entries.append(entry)
        logger.info("Loaded %d history entries from %s", len(self._entries), self.path)

    def append(self, prompt: str, reply: str, model: str | None = None) -> int:
        with self._lock:
            entry = HistoryEntry(
                id=self._next_id,
                timestamp=datetime.now().astimezone().isoformat(timespec="milliseconds"),
                prompt=prompt,
                reply=reply,
                model=model,
            )
            # Ids are never reused, even after a failed write.
            self._next_id += 1
            line = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
            size: int | None = None
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as handle:
                    size = handle.tell()
                    handle.write(line)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                if size is not None:
                    self._truncate(size)
                logger.error("Failed to persist history entry %d: %s", entry.id, exc)
                raise HistoryWriteError(f"Unable to write history {self.path}: {exc}") from exc
            self._entries.append(entry)
            return entry.id

    def _truncate(self, size: int) -> None:
        try:
            os.truncate(self.path, size)
        except OSError:
            logger.warning("Could not roll back partial history write in %s", self.path, exc_info=True)

    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, index: int) -> HistoryEntry:
        return self._entries[index]

    def last(self) -> HistoryEntry | None:
        return self._entries[-1] if self._entries else None

    def navigate(self, direction: Direction, from_index: int | None) -> HistoryEntry | None:
        """Step through prompts one at a time.

        ``from_index`` is a position in :meth:`entries`, or ``None`` for the
        fresh draft that sits after the newest entry. Returns ``None`` when
        there is no earlier (or later) entry; never wraps around.
        """
        count = len(self._entries)
        if count == 0:
            return None
        if from_index is None or from_index >= count:
            position = count
        elif from_index < 0:
            position = -1
        else:
            position = from_index

        target = position - 1 if direction is Direction.OLDER else position + 1
        if 0 <= target < count:
            return self._entries[target]
        return None
