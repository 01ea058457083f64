"""Per-connection session state.

A :class:`Session` is created when a WebSocket opens and discarded when it
closes.  It is owned by that connection's handler and passed by reference into
the workflow; it is never stored globally and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

HISTORY_DISPLAY_LIMIT = 5

NO_HISTORY_TEXT = "No prediction history yet. Try selecting a crypto pair to get started!"


@dataclass(frozen=True)
class PredictionHistoryEntry:
    pair: str
    direction: str
    confidence: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Session:
    """Ordered, append-only prediction history for one connection."""

    connection_id: str
    history: List[PredictionHistoryEntry] = field(default_factory=list)

    def record(self, pair: str, direction: str, confidence: int) -> PredictionHistoryEntry:
        entry = PredictionHistoryEntry(pair=pair, direction=direction, confidence=int(confidence))
        self.history.append(entry)
        return entry

    def reset(self) -> None:
        """Clear the history in place (``new_session``)."""

        self.history.clear()

    def recent(self, limit: int = HISTORY_DISPLAY_LIMIT) -> List[PredictionHistoryEntry]:
        if limit <= 0:
            return []
        return list(self.history[-limit:])


def format_history(session: Session, limit: int = HISTORY_DISPLAY_LIMIT) -> str:
    """Render the most recent ``limit`` predictions, oldest first and 1-indexed."""

    recent = session.recent(limit)
    if not recent:
        return NO_HISTORY_TEXT
    lines = [f"Last {len(recent)} Predictions:", ""]
    for index, entry in enumerate(recent, start=1):
        lines.append(f"{index}. {entry.pair} - {entry.direction} ({entry.confidence}%)")
    return "\n".join(lines) + "\n"


__all__ = [
    "HISTORY_DISPLAY_LIMIT",
    "NO_HISTORY_TEXT",
    "PredictionHistoryEntry",
    "Session",
    "format_history",
]
