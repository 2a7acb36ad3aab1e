"""Notification events (run created, endpoint updated)."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from utils.io import append_jsonl

logger = logging.getLogger(__name__)

RUN_CREATED = "run_created"
ENDPOINT_UPDATED = "endpoint_updated"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Event:
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=_utc_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "ts": self.ts, **self.fields}


class EventLog:
    """Keeps emitted events in memory and, optionally, appends them to a JSONL file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def emit(self, name: str, **fields: Any) -> Event:
        event = Event(name=name, fields=fields)
        with self._lock:
            self._events.append(event)
            if self.path:
                append_jsonl(self.path, event.to_dict())
        logger.info("event %s %s", name, fields)
        return event

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def named(self, name: str) -> List[Event]:
        return [e for e in self.events if e.name == name]
