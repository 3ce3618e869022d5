"""Single FIFO event queue that serializes every trigger source.

UI events, timer expirations, settlement messages and render callbacks are
all posted here and handled one at a time. Posting while a drain is in
progress appends to the queue; handlers never run re-entrantly.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("MC.Dispatch")

DEFAULT_MAX_DEPTH = 1000

Handler = Callable[..., Any]


@dataclass
class QueuedEvent:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0


class EventQueue:
    def __init__(self, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.max_depth = max(1, int(max_depth))
        self._q: Deque[QueuedEvent] = deque()
        self._handlers: Dict[str, Handler] = {}
        self._error_handlers: List[Callable[[QueuedEvent, BaseException], None]] = []
        self._draining = False
        self._seq = 0
        self.stats: Dict[str, Any] = {
            "posted": 0,
            "processed": 0,
            "rejected": defaultdict(int),
            "failed": defaultdict(int),
        }

    def register(self, kind: str, handler: Handler) -> None:
        self._handlers[kind] = handler

    def add_error_handler(self, handler: Callable[[QueuedEvent, BaseException], None]) -> None:
        if handler not in self._error_handlers:
            self._error_handlers.append(handler)

    @property
    def draining(self) -> bool:
        return self._draining

    def __len__(self) -> int:
        return len(self._q)

    def post(self, kind: str, /, **payload: Any) -> bool:
        """Enqueue an event and drain unless a drain is already running."""
        if not self.enqueue(kind, **payload):
            return False
        self.drain()
        return True

    def enqueue(self, kind: str, /, **payload: Any) -> bool:
        if kind not in self._handlers:
            self.stats["rejected"]["unknown_kind"] += 1
            logger.warning("Dropping event with no handler: %s", kind)
            return False
        if len(self._q) >= self.max_depth:
            self.stats["rejected"]["queue_full"] += 1
            logger.warning("Event queue full (%d); dropping %s", self.max_depth, kind)
            return False
        self._seq += 1
        self._q.append(QueuedEvent(kind, dict(payload), self._seq))
        self.stats["posted"] += 1
        return True

    def drain(self, limit: Optional[int] = None) -> int:
        if self._draining:
            return 0
        self._draining = True
        processed = 0
        try:
            while self._q and (limit is None or processed < limit):
                event = self._q.popleft()
                handler = self._handlers[event.kind]
                try:
                    handler(**event.payload)
                except Exception as exc:
                    self.stats["failed"][event.kind] += 1
                    logger.exception("Handler for %s failed", event.kind)
                    for on_error in list(self._error_handlers):
                        try:
                            on_error(event, exc)
                        except Exception:
                            logger.exception("Event error handler failed")
                processed += 1
                self.stats["processed"] += 1
        finally:
            self._draining = False
        return processed

    def clear(self) -> int:
        dropped = len(self._q)
        self._q.clear()
        return dropped
