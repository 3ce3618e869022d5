from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, List

Event = Dict[str, Any]


class EventBus:
    """Bounded, sequenced log of engine notifications (state changes, results, auto-play status)."""

    def __init__(self, history: int = 1000) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._history: Deque[Event] = deque(maxlen=history)

    def publish(self, kind: str, /, **data: Any) -> Event:
        with self._lock:
            self._seq += 1
            event = {"seq": self._seq, "type": kind, **data}
            self._history.append(event)
        return event

    def history(self, since: int = 0, kind: str | None = None) -> List[Event]:
        with self._lock:
            events = list(self._history)
        return [e for e in events if e["seq"] > since and (kind is None or e["type"] == kind)]
