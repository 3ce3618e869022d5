"""Cooperative timers and cancellation tokens.

Two timer categories exist so that a reveal-pacing timer can never gate a
correctness-critical transition:

* ``PACING``: UI feel (reveal stagger, flip durations).
* ``CADENCE``: selection latency and the auto-play reset delay.

Cancelling one category never touches the other. Callbacks that outlive their
purpose are guarded by :class:`CancelToken` identity checks at the receiver.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

PACING = "pacing"
CADENCE = "cadence"
CATEGORIES = (PACING, CADENCE)


class CancelToken:
    """Identity-only token; two tokens are never equal unless they are the same object."""

    __slots__ = ("label",)

    _ids = itertools.count(1)

    def __init__(self, label: str = "") -> None:
        self.label = label or f"tok-{next(self._ids)}"

    def __repr__(self) -> str:
        return f"<CancelToken {self.label}>"


@dataclass(order=True)
class TimerHandle:
    due: float
    order: int
    callback: Callable[[], None] = field(compare=False)
    category: str = field(default=CADENCE, compare=False)
    cancelled: bool = field(default=False, compare=False)
    fired: bool = field(default=False, compare=False)
    _native: Any = field(default=None, compare=False, repr=False)
    _live: Optional[Set["TimerHandle"]] = field(default=None, compare=False, repr=False)

    def __hash__(self) -> int:
        return id(self)

    def cancel(self) -> None:
        self.cancelled = True
        if self._native is not None:
            self._native.cancel()
        if self._live is not None:
            self._live.discard(self)

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


class Scheduler(ABC):
    """Single-threaded timer source."""

    def __init__(self) -> None:
        self._order = itertools.count(1)
        self._live: Dict[str, Set[TimerHandle]] = {c: set() for c in CATEGORIES}

    @abstractmethod
    def now(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def _arm(self, handle: TimerHandle, delay: float) -> None:
        raise NotImplementedError

    def call_later(
        self,
        delay: float,
        callback: Callable[[], None],
        *,
        category: str = CADENCE,
    ) -> TimerHandle:
        if category not in self._live:
            raise ValueError(f"unknown timer category: {category}")
        delay = max(0.0, float(delay))
        live = self._live[category]
        handle = TimerHandle(self.now() + delay, next(self._order), callback, category, _live=live)
        live.add(handle)
        self._arm(handle, delay)
        return handle

    def cancel_category(self, category: str) -> int:
        """Cancel every live timer in ``category``; returns how many were cancelled."""
        handles = self._live.get(category, set())
        count = 0
        for handle in list(handles):
            if handle.active:
                handle.cancel()
                count += 1
        handles.clear()
        return count

    def pending(self, category: Optional[str] = None) -> int:
        cats = [category] if category else list(CATEGORIES)
        return sum(1 for c in cats for h in self._live.get(c, ()) if h.active)

    def _fire(self, handle: TimerHandle) -> None:
        self._live.get(handle.category, set()).discard(handle)
        if not handle.active:
            return
        handle.fired = True
        handle.callback()


class ManualClock(Scheduler):
    """Virtual clock; time only moves when :meth:`advance` is called."""

    def __init__(self, start: float = 0.0) -> None:
        super().__init__()
        self._now = float(start)
        self._heap: List[TimerHandle] = []

    def now(self) -> float:
        return self._now

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        heapq.heappush(self._heap, handle)

    def advance(self, seconds: float) -> int:
        """Move time forward, firing due timers in (due, creation) order.

        Timers armed by callbacks fire in the same call when they fall due
        before the target time.
        """
        return self.advance_to(self._now + max(0.0, float(seconds)))

    def advance_to(self, target: float) -> int:
        target = max(self._now, float(target))
        fired = 0
        while self._heap and self._heap[0].due <= target:
            handle = heapq.heappop(self._heap)
            if not handle.active:
                self._live[handle.category].discard(handle)
                continue
            self._now = max(self._now, handle.due)
            self._fire(handle)
            fired += 1
        self._now = target
        return fired

    def run_until_idle(self, limit: float = 3600.0) -> int:
        """Advance to each next due timer until nothing is pending or ``limit`` seconds pass."""
        start = self._now
        fired = 0
        while True:
            live = [h for h in self._heap if h.active]
            if not live:
                break
            nxt = min(live).due
            if nxt - start > limit:
                break
            fired += self.advance_to(nxt)
        return fired


class AsyncioScheduler(Scheduler):
    """Real-time scheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        super().__init__()
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        if self._loop is None:
            # the default loop clock is monotonic; matches before the loop starts
            return time.monotonic()
        return self._loop.time()

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        handle._native = self.loop.call_later(delay, self._fire, handle)
