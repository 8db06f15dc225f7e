"""Bounded per-project conversation memory.

Turns are kept oldest-first. Appending past ``max_turns`` evicts from the
head. ``extend`` commits several turns under one lock so a question and its
answer are never observed half-written.
"""

from __future__ import annotations

import json
import re
import threading
from collections import deque

from qarag.models import ConversationTurn

_FORMAT_VERSION = 1

# "login page", "checkout flow", "payment module" ...
_FEATURE_RE = re.compile(
    r"\b([a-z][a-z0-9\-]*(?:\s[a-z][a-z0-9\-]*)?)\s+(?:feature|module|page|flow|screen|functionality)\b",
    re.IGNORECASE,
)
_FEATURE_STOPWORDS = frozenset({"the", "this", "that", "a", "an", "same", "each", "every", "new"})


class ConversationMemory:
    def __init__(self, project_id: str, max_turns: int = 10) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.project_id = project_id
        self.max_turns = max_turns
        self._turns: deque[ConversationTurn] = deque(maxlen=max_turns)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)

    def append(self, turn: ConversationTurn) -> None:
        with self._lock:
            self._turns.append(turn)

    def extend(self, turns: list[ConversationTurn]) -> None:
        """Append several turns atomically."""
        with self._lock:
            self._turns.extend(turns)

    def turns(self) -> list[ConversationTurn]:
        """All retained turns, oldest first."""
        with self._lock:
            return list(self._turns)

    def recent_context(self, max_turns: int) -> list[ConversationTurn]:
        """The last *max_turns* turns, oldest first."""
        if max_turns <= 0:
            return []
        with self._lock:
            return list(self._turns)[-max_turns:]

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "version": _FORMAT_VERSION,
            "project_id": self.project_id,
            "max_turns": self.max_turns,
            "turns": [t.to_dict() for t in self.turns()],
        }

    @classmethod
    def from_dict(cls, data: dict, max_turns: int | None = None) -> ConversationMemory:
        version = data.get("version")
        if version != _FORMAT_VERSION:
            raise ValueError(f"Unsupported memory format version: {version!r}")
        memory = cls(str(data["project_id"]), max_turns or int(data.get("max_turns", 10)))
        memory.extend([ConversationTurn.from_dict(t) for t in data.get("turns", [])])
        return memory

    def serialize(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes, max_turns: int | None = None) -> ConversationMemory:
        return cls.from_dict(json.loads(data.decode("utf-8")), max_turns)


def discussed_features(turns: list[ConversationTurn]) -> list[str]:
    """Feature names mentioned in user turns, in first-mention order."""
    seen: dict[str, None] = {}
    for turn in turns:
        if turn.role != "user":
            continue
        for m in _FEATURE_RE.finditer(turn.content):
            words = [w for w in m.group(1).lower().split() if w not in _FEATURE_STOPWORDS]
            if words:
                seen.setdefault(" ".join(words), None)
    return list(seen)
