"""
surfaces.py: contracts for the rendering layer and the on-screen controls.

Both surfaces are external collaborators: the engine never lets them touch
round state. A RenderSurface reveals what it is told and reports completion
through callbacks; a ControlSurface exposes setters and emits discrete UI
events. Headless implementations are provided for tests, the CLI simulator
and the HTTP harness.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .timers import PACING, Scheduler, TimerHandle

logger = logging.getLogger("MC.Surface")

RevealCallback = Callable[[int, Any], None]
RoundCallback = Callable[[Any], None]
UIListener = Callable[[str, Dict[str, Any]], None]

PLAY_MANUAL = "manual"
PLAY_AUTO = "auto"

BUTTON_ENABLED = "enabled"
BUTTON_DISABLED = "disabled"

AUTO_START = "start"
AUTO_STOP = "stop"
AUTO_FINISHING = "finishing"

UI_EVENTS = (
    "bet",
    "cashout",
    "modechange",
    "startautobet",
    "selectionchange",
    "pick",
    "revealall",
    "betvaluechange",
    "mineschange",
    "demomodechange",
)


# ---------------------------------------------------------------------------
# Render surface
# ---------------------------------------------------------------------------


class RenderSurface(ABC):
    """Board renderer contract. Callbacks may fire later than the call that caused them."""

    def __init__(self) -> None:
        self._on_reveal_complete: Optional[RevealCallback] = None
        self._on_round_complete: Optional[RoundCallback] = None

    def bind(self, on_reveal_complete: RevealCallback, on_round_complete: RoundCallback) -> None:
        self._on_reveal_complete = on_reveal_complete
        self._on_round_complete = on_round_complete

    def unbind(self) -> None:
        self._on_reveal_complete = None
        self._on_round_complete = None

    def _emit_reveal_complete(self, cell: int, content: Any) -> None:
        if self._on_reveal_complete is not None:
            self._on_reveal_complete(cell, content)

    def _emit_round_complete(self, result: Any) -> None:
        if self._on_round_complete is not None:
            self._on_round_complete(result)

    @abstractmethod
    def set_round(self, assignment: Any, *, cell_count: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def reveal_cell(self, cell: int, content: Any) -> bool:
        """Start revealing one cell; ``False`` when the cell cannot animate now."""
        raise NotImplementedError

    @abstractmethod
    def reveal_all(self, outcomes: Mapping[int, Any], options: Dict[str, Any]) -> None:
        """Reveal every cell in ``outcomes`` then fire ``on_round_complete(options['result'])``."""
        raise NotImplementedError

    @abstractmethod
    def reset(self, options: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class HeadlessRenderSurface(RenderSurface):
    """Timer-driven board with no visuals.

    Reveals take ``reveal_duration`` seconds on the PACING timer category;
    ``reveal_all`` staggers cells by ``reveal_stagger`` unless told not to.
    With no scheduler every reveal completes synchronously.
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        *,
        reveal_duration: float = 0.0,
        reveal_stagger: float = 0.0,
    ) -> None:
        super().__init__()
        self.scheduler = scheduler
        self.reveal_duration = float(reveal_duration)
        self.reveal_stagger = float(reveal_stagger)
        self.cell_count = 0
        self.assignment: Any = None
        self.revealed: Dict[int, Any] = {}
        self.animating: Set[int] = set()
        self.rounds_set = 0
        self.resets = 0
        self.reveal_all_calls: List[Dict[str, Any]] = []
        self._timers: List[TimerHandle] = []
        self._pending_result: Any = None
        self._awaiting_round_complete = False

    def set_round(self, assignment: Any, *, cell_count: int) -> None:
        self._cancel_timers()
        self.assignment = assignment
        self.cell_count = int(cell_count)
        self.revealed = {}
        self.animating = set()
        self.rounds_set += 1
        self._awaiting_round_complete = False
        self._pending_result = None

    def reveal_cell(self, cell: int, content: Any) -> bool:
        if cell in self.revealed or cell in self.animating:
            return False
        if not 0 <= cell < self.cell_count:
            return False
        self._start(cell, content, self.reveal_duration)
        return True

    def reveal_all(self, outcomes: Mapping[int, Any], options: Dict[str, Any]) -> None:
        opts = dict(options or {})
        self.reveal_all_calls.append({"cells": sorted(outcomes), **opts})
        stagger = self.reveal_stagger if opts.get("stagger", True) else 0.0
        if opts.get("immediate"):
            self._cancel_timers()
            self.animating.clear()
            self._awaiting_round_complete = False
            self._pending_result = None
            for cell, content in outcomes.items():
                self.revealed[cell] = content
            return
        idx = 0
        for cell in sorted(outcomes):
            if cell in self.revealed or cell in self.animating:
                continue
            self._start(cell, outcomes[cell], stagger * idx + self.reveal_duration)
            idx += 1
        self._pending_result = opts.get("result")
        self._awaiting_round_complete = True
        self._maybe_round_complete()

    def reset(self, options: Optional[Dict[str, Any]] = None) -> None:
        self._cancel_timers()
        self.revealed = {}
        self.animating = set()
        self.assignment = None
        self.resets += 1
        self._awaiting_round_complete = False
        self._pending_result = None

    # ------------------------------------------------------------------ internals
    def _start(self, cell: int, content: Any, delay: float) -> None:
        self.animating.add(cell)
        if self.scheduler is None or delay <= 0:
            self._finish(cell, content)
            return
        handle = self.scheduler.call_later(delay, lambda: self._finish(cell, content), category=PACING)
        self._timers.append(handle)

    def _finish(self, cell: int, content: Any) -> None:
        if cell not in self.animating:
            return
        self.animating.discard(cell)
        self.revealed[cell] = content
        self._emit_reveal_complete(cell, content)
        self._maybe_round_complete()

    def _maybe_round_complete(self) -> None:
        if self._awaiting_round_complete and not self.animating:
            self._awaiting_round_complete = False
            result, self._pending_result = self._pending_result, None
            self._emit_round_complete(result)

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers = []


# ---------------------------------------------------------------------------
# Control surface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ControlState:
    bet_button: str
    bet_label: str
    cashout_available: bool
    auto_button_mode: str
    remaining_bets: Optional[int]
    reveal_all_available: bool = False


def derive_control_state(
    round_state: str,
    *,
    play_mode: str,
    cashout_eligible: bool,
    cashout_pending: bool = False,
    auto_running: bool = False,
    auto_finishing: bool = False,
    bets_remaining: Optional[int] = None,
    match_variant: bool = False,
) -> ControlState:
    """Pure mapping from engine state to every control's state."""
    idle = round_state == "idle"
    active = round_state == "round_active"

    if play_mode == PLAY_AUTO:
        if auto_running and auto_finishing:
            button, label, auto_mode = BUTTON_DISABLED, "Finishing", AUTO_FINISHING
        elif auto_running:
            button, label, auto_mode = BUTTON_ENABLED, "Stop Autobet", AUTO_STOP
        else:
            button = BUTTON_ENABLED if idle else BUTTON_DISABLED
            label, auto_mode = "Start Autobet", AUTO_START
    else:
        button = BUTTON_ENABLED if idle else BUTTON_DISABLED
        label, auto_mode = "Bet", AUTO_START

    manual = play_mode == PLAY_MANUAL
    return ControlState(
        bet_button=button,
        bet_label=label,
        cashout_available=bool(manual and active and cashout_eligible and not cashout_pending),
        auto_button_mode=auto_mode,
        remaining_bets=bets_remaining,
        reveal_all_available=bool(manual and active and match_variant),
    )


class ControlSurface(ABC):
    """On-screen controls: setters in, discrete UI events out."""

    def __init__(self) -> None:
        self._listener: Optional[UIListener] = None

    def bind(self, listener: UIListener) -> None:
        self._listener = listener

    def unbind(self) -> None:
        self._listener = None

    def emit(self, name: str, /, **detail: Any) -> bool:
        if name not in UI_EVENTS:
            logger.warning("Ignoring unknown UI event %r", name)
            return False
        if self._listener is None:
            return False
        self._listener(name, detail)
        return True

    @abstractmethod
    def set_bet_button_state(self, state: str, label: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_cashout_available(self, available: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_auto_button_mode(self, mode: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_remaining_bets(self, remaining: Optional[int]) -> None:
        raise NotImplementedError

    def set_reveal_all_available(self, available: bool) -> None:
        pass

    def set_total_profit(self, value: str) -> None:
        pass

    def set_multiplier(self, value: str) -> None:
        pass

    def apply(self, state: ControlState, previous: Optional[ControlState] = None) -> int:
        """Push ``state`` through the setters, skipping values unchanged since ``previous``."""
        calls = 0
        if previous is None or (state.bet_button, state.bet_label) != (previous.bet_button, previous.bet_label):
            self.set_bet_button_state(state.bet_button, state.bet_label)
            calls += 1
        if previous is None or state.cashout_available != previous.cashout_available:
            self.set_cashout_available(state.cashout_available)
            calls += 1
        if previous is None or state.auto_button_mode != previous.auto_button_mode:
            self.set_auto_button_mode(state.auto_button_mode)
            calls += 1
        if previous is None or state.remaining_bets != previous.remaining_bets:
            self.set_remaining_bets(state.remaining_bets)
            calls += 1
        if previous is None or state.reveal_all_available != previous.reveal_all_available:
            self.set_reveal_all_available(state.reveal_all_available)
            calls += 1
        return calls


class RecordingControlSurface(ControlSurface):
    """Keeps the latest value of every control plus an ordered call log."""

    def __init__(self) -> None:
        super().__init__()
        self.bet_button: Tuple[str, str] = (BUTTON_ENABLED, "Bet")
        self.cashout_available = False
        self.auto_button_mode = AUTO_START
        self.remaining_bets: Optional[int] = None
        self.reveal_all_available = False
        self.total_profit = "0.00000000"
        self.multiplier = "0.00"
        self.calls: List[Tuple[str, Any]] = []

    def set_bet_button_state(self, state: str, label: str) -> None:
        self.bet_button = (state, label)
        self.calls.append(("bet_button", (state, label)))

    def set_cashout_available(self, available: bool) -> None:
        self.cashout_available = bool(available)
        self.calls.append(("cashout_available", bool(available)))

    def set_auto_button_mode(self, mode: str) -> None:
        self.auto_button_mode = mode
        self.calls.append(("auto_button_mode", mode))

    def set_remaining_bets(self, remaining: Optional[int]) -> None:
        self.remaining_bets = remaining
        self.calls.append(("remaining_bets", remaining))

    def set_reveal_all_available(self, available: bool) -> None:
        self.reveal_all_available = bool(available)
        self.calls.append(("reveal_all_available", bool(available)))

    def set_total_profit(self, value: str) -> None:
        self.total_profit = value
        self.calls.append(("total_profit", value))

    def set_multiplier(self, value: str) -> None:
        self.multiplier = value
        self.calls.append(("multiplier", value))
