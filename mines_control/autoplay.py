"""
autoplay.py: repeated rounds from a stored cell selection.

Each cycle submits a wager with the stored selection, lets the controller
settle the whole batch, and after the previous round's FINALIZING waits
``auto_reset_delay`` before starting the next one. Bet counts and profit/loss
thresholds are checked when a cycle finalizes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from .config import EngineConfig, coerce_bet_count, coerce_optional_number
from .relay import RelayBridge
from .round_controller import RoundController, RoundResult, RoundState
from .timers import CADENCE, CancelToken, Scheduler, TimerHandle

logger = logging.getLogger("MC.AutoPlay")

STOP_USER = "user"
STOP_SERVER = "server"
STOP_BETS_EXHAUSTED = "bets_exhausted"
STOP_PROFIT = "profit_target"
STOP_LOSS = "loss_limit"
STOP_MODE_SWITCH = "mode_switch"
STOP_WAGER_REJECTED = "wager_rejected"


@dataclass
class AutoPlaySession:
    selected_cells: FrozenSet[int]
    amount: float
    mines: int
    bets_remaining: Optional[int] = None
    stop_on_profit: Optional[float] = None
    stop_on_loss: Optional[float] = None
    running: bool = True
    finishing: bool = False
    net_profit: float = 0.0
    cycles_completed: int = 0
    stop_reason: Optional[str] = None
    results: List[RoundResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_cells": sorted(self.selected_cells),
            "amount": self.amount,
            "mines": self.mines,
            "bets_remaining": self.bets_remaining,
            "stop_on_profit": self.stop_on_profit,
            "stop_on_loss": self.stop_on_loss,
            "running": self.running,
            "finishing": self.finishing,
            "net_profit": round(self.net_profit, 8),
            "cycles_completed": self.cycles_completed,
            "stop_reason": self.stop_reason,
        }


class AutoPlayOrchestrator:
    def __init__(
        self,
        controller: RoundController,
        relay: RelayBridge,
        scheduler: Scheduler,
        config: EngineConfig,
        *,
        post: Callable[..., Any],
    ) -> None:
        self.controller = controller
        self.relay = relay
        self.scheduler = scheduler
        self.config = config
        self._post = post
        self.session: Optional[AutoPlaySession] = None
        self.last_session: Optional[AutoPlaySession] = None
        self.stored_selection: FrozenSet[int] = frozenset()
        self._in_flight = False
        self._timer: Optional[TimerHandle] = None
        self._cycle_token: Optional[CancelToken] = None
        self._listeners: List[Callable[[Optional[AutoPlaySession]], None]] = []

    def add_listener(self, listener: Callable[[Optional[AutoPlaySession]], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.session)

    @property
    def running(self) -> bool:
        return self.session is not None and self.session.running

    @property
    def finishing(self) -> bool:
        return self.running and self.session.finishing

    # ------------------------------------------------------------------ selection
    def set_selection(self, cells: Iterable[Any]) -> bool:
        if self.running:
            logger.info("Selection is fixed while auto-play runs")
            return False
        try:
            chosen = frozenset(int(c) for c in cells)
        except (TypeError, ValueError):
            logger.info("Ignoring malformed selection %r", cells)
            return False
        problem = self._selection_problem(chosen, self.controller.mines)
        if problem:
            logger.info("Ignoring selection: %s", problem)
            return False
        self.stored_selection = chosen
        return True

    def _selection_problem(self, cells: FrozenSet[int], mines: int) -> Optional[str]:
        count = self.controller.cell_count
        if any(not 0 <= c < count for c in cells):
            return "cell off the board"
        if not self.controller.match_variant and len(cells) > count - mines:
            return f"at most {count - mines} cells can be selected with {mines} mines"
        return None

    # ------------------------------------------------------------------ lifecycle
    def start(
        self,
        cells: Optional[Iterable[Any]] = None,
        *,
        bets: Any = None,
        stop_on_profit: Any = None,
        stop_on_loss: Any = None,
        amount: Optional[float] = None,
        mines: Optional[int] = None,
    ) -> bool:
        if self.running:
            logger.info("Auto-play already running")
            return False
        if self.controller.state != RoundState.IDLE:
            logger.info("Auto-play needs an idle board (state=%s)", self.controller.state.value)
            return False
        if cells is not None and not self.set_selection(cells):
            return False
        if not self.stored_selection:
            logger.info("Auto-play refused: no cells selected")
            return False

        defaults = self.config.autoplay
        count = self.config.board.mines if mines is None else int(mines)
        problem = self._selection_problem(self.stored_selection, count)
        if problem:
            logger.info("Auto-play refused: %s", problem)
            return False
        self.session = AutoPlaySession(
            selected_cells=self.stored_selection,
            amount=self.config.wager.default if amount is None else float(amount),
            mines=count,
            bets_remaining=coerce_bet_count(defaults.bets if bets is None else bets),
            stop_on_profit=_threshold(defaults.stop_on_profit if stop_on_profit is None else stop_on_profit),
            stop_on_loss=_threshold(defaults.stop_on_loss if stop_on_loss is None else stop_on_loss),
        )
        logger.info(
            "Auto-play started: cells=%s bets=%s",
            sorted(self.session.selected_cells),
            self.session.bets_remaining if self.session.bets_remaining is not None else "unbounded",
        )
        self.relay.start_autobet(self.session.selected_cells, self.session.bets_remaining, self.session.amount, count)
        self._notify()
        self._begin_cycle()
        return self.running

    def _begin_cycle(self) -> None:
        self._timer = None
        self._cycle_token = None
        session = self.session
        if session is None or not session.running:
            return
        if self.controller.state == RoundState.FINALIZING:
            self.controller.reset()
        self._in_flight = True
        ok = self.controller.submit_wager(
            session.amount, session.mines, auto=True, selection=session.selected_cells
        )
        if not ok:
            self._in_flight = False
            self._stop(STOP_WAGER_REJECTED)

    def handle_next(self, token: CancelToken) -> bool:
        if token is not self._cycle_token:
            logger.debug("Dropping stale auto-play cycle timer")
            return False
        self._begin_cycle()
        return True

    def on_cycle_finalized(self, result: RoundResult) -> bool:
        """Book a finished cycle; ``True`` means another cycle is scheduled."""
        session = self.session
        if session is None or not session.running or not result.auto or not self._in_flight:
            return False
        self._in_flight = False
        session.cycles_completed += 1
        session.net_profit = round(session.net_profit + result.net, 8)
        session.results.append(result)
        if session.bets_remaining is not None:
            session.bets_remaining -= 1

        reason = None
        if session.bets_remaining is not None and session.bets_remaining <= 0:
            reason = STOP_BETS_EXHAUSTED
        elif session.stop_on_profit is not None and session.net_profit >= session.stop_on_profit:
            reason = STOP_PROFIT
        elif session.stop_on_loss is not None and -session.net_profit >= session.stop_on_loss:
            reason = STOP_LOSS
        elif session.finishing:
            reason = session.stop_reason or STOP_USER
        if reason:
            self._stop(reason)
            return False

        token = CancelToken(f"cycle-{session.cycles_completed + 1}")
        self._cycle_token = token
        self._timer = self.scheduler.call_later(
            self.config.timing.auto_reset_delay,
            lambda: self._post("autoplay_next", token=token),
            category=CADENCE,
        )
        self._notify()
        return True

    def request_stop(self, source: str = STOP_USER) -> bool:
        session = self.session
        if session is None or not session.running:
            return False
        if self._in_flight:
            if session.finishing:
                return False
            session.finishing = True
            session.stop_reason = source
            logger.info("Auto-play finishing current cycle (%s)", source)
            self.relay.stop_autobet(source)
            self._notify()
            return True
        self._cancel_timer()
        self.controller.reset()
        self._stop(source)
        return True

    def abort(self, reason: str = STOP_MODE_SWITCH) -> bool:
        """Hard stop: finalize any in-flight round now and discard the session."""
        session = self.session
        if session is None:
            return False
        session.running = False
        self._cancel_timer()
        if self._in_flight:
            self._in_flight = False
            self.controller.force_finalize(reason)
        else:
            self.controller.reset()
        self._stop(reason)
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._cycle_token = None

    def _stop(self, reason: str) -> None:
        session = self.session
        if session is None:
            return
        self._cancel_timer()
        self._in_flight = False
        was_finishing = session.finishing
        session.running = False
        session.finishing = False
        session.stop_reason = reason
        self.last_session = session
        self.session = None
        logger.info(
            "Auto-play stopped (%s) after %d cycles, net %.8f",
            reason, session.cycles_completed, session.net_profit,
        )
        if not was_finishing:
            self.relay.stop_autobet(reason)
        self._notify()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "finishing": self.finishing,
            "stored_selection": sorted(self.stored_selection),
            "session": None if self.session is None else self.session.to_dict(),
            "last_session": None if self.last_session is None else self.last_session.to_dict(),
        }


def _threshold(value: Any) -> Optional[float]:
    number = coerce_optional_number(value)
    if number is None or number <= 0:
        return None
    return number
