"""Lifecycle journal for encoder sessions.

Every launch, exit, stop request and finalisation is recorded as a
:class:`LifecycleEvent` keyed by the session it concerns, so ``/api/events``
can answer "what happened to camera 1's sub stream" without grepping logs.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """One transition of a session, or of the service itself."""

    recorded_at: datetime
    category: str
    event: str
    message: str
    key: str | None = None
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "recorded_at": self.recorded_at.isoformat(),
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.key is not None:
            payload["key"] = self.key
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class LifecycleLog:
    """Bounded in-memory ring of :class:`LifecycleEvent`, optionally journalled.

    The journal is a JSONL file that is only ever appended to. Once a write
    fails the journal is switched off and the ring keeps working.
    """

    def __init__(self, journal: Path | str | None = None, *, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._journal = Path(journal) if journal is not None else None
        self._events: deque[LifecycleEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def journal(self) -> Path | None:
        return self._journal

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        key: str | None = None,
        **details: object,
    ) -> LifecycleEvent:
        entry = LifecycleEvent(
            recorded_at=datetime.now(timezone.utc),
            category=category,
            event=event,
            message=message,
            key=key,
            details={name: value for name, value in details.items() if value is not None},
        )
        with self._lock:
            self._events.append(entry)
            if self._journal is not None:
                self._write_journal(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        key: str | None = None,
    ) -> list[LifecycleEvent]:
        """Return the newest matching events, oldest first."""

        with self._lock:
            events = list(self._events)
        if category:
            events = [entry for entry in events if entry.category == category]
        if key:
            events = [entry for entry in events if entry.key == key]
        if limit is not None:
            events = events[-max(1, int(limit)):]
        return events

    def _write_journal(self, entry: LifecycleEvent) -> None:
        line = json.dumps(entry.to_dict(), default=str, separators=(",", ":"))
        try:
            self._journal.parent.mkdir(parents=True, exist_ok=True)
            with self._journal.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Disabling lifecycle journal %s: %s", self._journal, exc)
            self._journal = None


__all__ = ["DEFAULT_CAPACITY", "LifecycleEvent", "LifecycleLog"]
