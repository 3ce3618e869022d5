"""
round_controller.py: the round lifecycle state machine.

One controller owns one board. Every mutation arrives through a public
method called from the event queue; stale callbacks are recognised by
``CancelToken`` identity and dropped. Illegal actions raise
``InvalidTransition`` internally and are logged and ignored at the boundary.

States::

    IDLE -> AWAITING_BET -> ROUND_ACTIVE <-> SELECTION_PENDING -> AWAITING_SETTLEMENT
    ROUND_ACTIVE -> GAME_OVER | CASHOUT -> FINALIZING -> IDLE
"""

from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import VARIANT_MATCH, EngineConfig, clamp_mines
from .errors import InvalidTransition
from .outcomes import MINE, RESULT_LOST, RESULT_WIN, Assignment, cell_id, complete_mine_layout
from .payouts import mines_multiplier, payout_for
from .relay import MODE_DEMO, RelayBridge
from .surfaces import RenderSurface
from .timers import CancelToken

logger = logging.getLogger("MC.Round")

OUTCOME_WIN = RESULT_WIN
OUTCOME_LOST = RESULT_LOST
OUTCOME_CASHOUT = "cashout"
OUTCOME_ABORTED = "aborted"


class RoundState(str, Enum):
    IDLE = "idle"
    AWAITING_BET = "awaiting_bet"
    SELECTION_PENDING = "selection_pending"
    ROUND_ACTIVE = "round_active"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    CASHOUT = "cashout"
    GAME_OVER = "game_over"
    FINALIZING = "finalizing"


_TRANSITIONS: Dict[RoundState, Set[RoundState]] = {
    RoundState.IDLE: {RoundState.AWAITING_BET},
    RoundState.AWAITING_BET: {RoundState.ROUND_ACTIVE, RoundState.FINALIZING},
    RoundState.ROUND_ACTIVE: {
        RoundState.SELECTION_PENDING,
        RoundState.GAME_OVER,
        RoundState.CASHOUT,
        RoundState.FINALIZING,
    },
    RoundState.SELECTION_PENDING: {RoundState.AWAITING_SETTLEMENT, RoundState.FINALIZING},
    RoundState.AWAITING_SETTLEMENT: {RoundState.ROUND_ACTIVE, RoundState.FINALIZING},
    RoundState.GAME_OVER: {RoundState.FINALIZING},
    RoundState.CASHOUT: {RoundState.FINALIZING},
    RoundState.FINALIZING: {RoundState.IDLE},
}

# a round that has settled its result; nothing may change it any more
_SETTLED = {RoundState.GAME_OVER, RoundState.CASHOUT, RoundState.FINALIZING}


@dataclass(frozen=True)
class Wager:
    amount: float
    mines: int
    placed_at: float = 0.0
    auto: bool = False


@dataclass
class Selection:
    """Cells awaiting settlement. Lives from the pick until its result is applied."""

    cells: Tuple[int, ...]
    mode: str
    token: CancelToken = field(default_factory=CancelToken)
    batch: bool = False


@dataclass
class RoundResult:
    round_id: int
    outcome: str
    wager: float
    payout: float
    multiplier: float
    revealed: Dict[int, Any]
    mode: str
    auto: bool = False
    mines: int = 0
    reason: Optional[str] = None

    @property
    def net(self) -> float:
        return round(self.payout - self.wager, 8)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_id": self.round_id,
            "outcome": self.outcome,
            "wager": self.wager,
            "payout": self.payout,
            "multiplier": self.multiplier,
            "net": self.net,
            "revealed": {str(c): v for c, v in sorted(self.revealed.items())},
            "mode": self.mode,
            "auto": self.auto,
            "mines": self.mines,
            "reason": self.reason,
        }


Listener = Callable[[RoundState, RoundState], None]
FinalizingHook = Callable[[RoundResult], bool]


class RoundController:
    def __init__(
        self,
        config: EngineConfig,
        relay: RelayBridge,
        render: RenderSurface,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config
        self.relay = relay
        self.render = render
        self.rng = rng or random.Random()
        self._clock = clock or (lambda: 0.0)
        self.state = RoundState.IDLE
        self.round_id = 0
        self.stats: Dict[str, Any] = {"rejected": defaultdict(int), "stale": defaultdict(int), "mismatch": 0}
        self._listeners: List[Listener] = []
        self._finalizing_hook: Optional[FinalizingHook] = None
        self._clear_round()

    def _clear_round(self) -> None:
        self.wager: Optional[Wager] = None
        self.assignment: Optional[Assignment] = None
        self.selection: Optional[Selection] = None
        self.result: Optional[RoundResult] = None
        self.revealed: Dict[int, Any] = {}
        self.animating: Set[int] = set()
        self.revealed_safe = 0
        self.cashout_pending = False
        self.auto_cells: Tuple[int, ...] = ()
        self._round_token: Optional[CancelToken] = None
        self._round_mode = self.relay.mode

    # ------------------------------------------------------------------ wiring
    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def set_finalizing_hook(self, hook: Optional[FinalizingHook]) -> None:
        """``hook(result)`` returns ``True`` to keep the board in FINALIZING for a follow-up cycle."""
        self._finalizing_hook = hook

    def _transition(self, new: RoundState) -> None:
        old = self.state
        if new not in _TRANSITIONS.get(old, set()):
            raise InvalidTransition(f"-> {new.value}", old)
        self._set_state(new)

    def _set_state(self, new: RoundState) -> None:
        old, self.state = self.state, new
        logger.debug("round %s: %s -> %s", self.round_id, old.value, new.value)
        for listener in list(self._listeners):
            listener(old, new)

    def _changed(self) -> None:
        """Notify listeners of a change that is not a state transition."""
        for listener in list(self._listeners):
            listener(self.state, self.state)

    def _reject(self, action: str, reason: str) -> bool:
        self.stats["rejected"][action] += 1
        logger.info("Rejected %s in %s: %s", action, self.state.value, reason)
        return False

    def _stale(self, action: str) -> bool:
        self.stats["stale"][action] += 1
        logger.debug("Dropped stale %s in %s", action, self.state.value)
        return False

    # ------------------------------------------------------------------ properties
    @property
    def cell_count(self) -> int:
        return self.config.board.cell_count

    @property
    def match_variant(self) -> bool:
        return self.config.board.variant == VARIANT_MATCH

    @property
    def mines(self) -> int:
        return self.wager.mines if self.wager else self.config.board.mines

    @property
    def cashout_eligible(self) -> bool:
        return (
            self.state == RoundState.ROUND_ACTIVE
            and not self.match_variant
            and self.revealed_safe > 0
            and not self.wager.auto
            and MINE not in self.revealed.values()
        )

    def current_multiplier(self) -> float:
        if self.wager is None or self.match_variant:
            return 0.0
        return mines_multiplier(
            self.cell_count, self.wager.mines, self.revealed_safe, house_edge=self.config.payout.house_edge
        )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "round_id": self.round_id,
            "mode": self._round_mode,
            "wager": None if self.wager is None else {"amount": self.wager.amount, "mines": self.wager.mines, "auto": self.wager.auto},
            "revealed": {str(c): v for c, v in sorted(self.revealed.items())},
            "revealed_safe": self.revealed_safe,
            "animating": sorted(self.animating),
            "selection": None if self.selection is None else list(self.selection.cells),
            "cashout_eligible": self.cashout_eligible,
            "cashout_pending": self.cashout_pending,
            "multiplier": self.current_multiplier(),
            "result": None if self.result is None else self.result.to_dict(),
        }

    # ------------------------------------------------------------------ round start
    def submit_wager(
        self,
        amount: Any,
        mines: Any = None,
        *,
        auto: bool = False,
        selection: Iterable[int] = (),
    ) -> bool:
        if self.state != RoundState.IDLE:
            return self._reject("bet", "round already in progress")
        try:
            value = float(amount)
        except (TypeError, ValueError):
            return self._reject("bet", f"bad amount {amount!r}")
        limits = self.config.wager
        if value <= 0 or value < limits.min or value > limits.max:
            return self._reject("bet", f"amount {value} outside [{limits.min}, {limits.max}]")
        cells = tuple(sorted({int(c) for c in selection}))
        if auto and not cells:
            return self._reject("bet", "auto round without a selection")

        count = clamp_mines(self.config.board.mines if mines is None else mines, self.cell_count)
        self._clear_round()
        self.round_id += 1
        self.wager = Wager(value, count, self._clock(), bool(auto))
        self.auto_cells = cells
        self._round_token = CancelToken(f"round-{self.round_id}")
        self._round_mode = self.relay.mode
        self._transition(RoundState.AWAITING_BET)
        logger.info("round %s: wager %.8f mines=%s mode=%s%s", self.round_id, value, count, self._round_mode, " auto" if auto else "")
        self.relay.request_round(self.wager, self._round_token, auto_cells=cells if auto else None)
        return True

    def apply_assignment(self, token: CancelToken, assignment: Optional[Assignment], source: str = MODE_DEMO) -> bool:
        if token is not self._round_token or self.state != RoundState.AWAITING_BET:
            return self._stale("assignment")
        self.assignment = assignment
        self.revealed = {}
        self.animating = set()
        self.revealed_safe = 0
        self.render.set_round(assignment, cell_count=self.cell_count)
        self._transition(RoundState.ROUND_ACTIVE)
        if self.wager.auto:
            self._start_batch()
        return True

    def _start_batch(self) -> None:
        cells = tuple(c for c in self.auto_cells if c not in self.revealed)
        self.selection = Selection(cells, self._round_mode, CancelToken(f"batch-{self.round_id}"), batch=True)
        self._transition(RoundState.SELECTION_PENDING)
        self.relay.submit_selection(self.selection, self._round_token, self.assignment)

    # ------------------------------------------------------------------ picks
    def pick(self, cell: Any = None, *, row: Any = None, col: Any = None) -> bool:
        """Pick by cell id, or by ``row``/``col`` on the grid."""
        try:
            if cell is None and row is not None and col is not None:
                cell = cell_id(row, col, self.config.board.grid)
            cell = int(cell)
        except (TypeError, ValueError):
            return self._reject("pick", f"bad cell {cell!r} (row={row!r}, col={col!r})")
        if self.state != RoundState.ROUND_ACTIVE:
            return self._reject("pick", "no active round accepting picks")
        if self.wager.auto:
            return self._reject("pick", "auto round owns the board")
        if self.cashout_pending:
            return self._reject("pick", "cashout pending")
        if not 0 <= cell < self.cell_count:
            return self._reject("pick", f"cell {cell} off the board")
        if cell in self.revealed or cell in self.animating:
            return self._reject("pick", f"cell {cell} already revealed")
        try:
            self.selection = Selection((cell,), self._round_mode, CancelToken(f"pick-{self.round_id}-{cell}"))
            self._transition(RoundState.SELECTION_PENDING)
        except InvalidTransition as exc:
            self.selection = None
            return self._reject("pick", str(exc))
        self.relay.submit_selection(self.selection, self._round_token, self.assignment)
        return True

    def reveal_remaining(self) -> bool:
        """Match variant: open every card still face down as one selection."""
        if not self.match_variant:
            return self._reject("revealall", "only the match variant reveals all")
        if self.state != RoundState.ROUND_ACTIVE or self.wager.auto:
            return self._reject("revealall", "no active manual round")
        cells = tuple(c for c in range(self.cell_count) if c not in self.revealed and c not in self.animating)
        if not cells:
            return self._reject("revealall", "nothing left to reveal")
        self.selection = Selection(cells, self._round_mode, CancelToken(f"all-{self.round_id}"))
        self._transition(RoundState.SELECTION_PENDING)
        self.relay.submit_selection(self.selection, self._round_token, self.assignment)
        return True

    def mark_dispatched(self, token: CancelToken) -> bool:
        if self.selection is None or token is not self.selection.token:
            return self._stale("dispatch")
        if self.state != RoundState.SELECTION_PENDING:
            return self._stale("dispatch")
        self._transition(RoundState.AWAITING_SETTLEMENT)
        return True

    def apply_settlement(
        self,
        token: CancelToken,
        results: Dict[int, Any],
        payout: Any = None,
        multiplier: Any = None,
    ) -> bool:
        selection = self.selection
        if selection is None or token is not selection.token:
            return self._stale("settlement")
        if self.state == RoundState.SELECTION_PENDING:
            self._transition(RoundState.AWAITING_SETTLEMENT)
        if self.state != RoundState.AWAITING_SETTLEMENT:
            return self._stale("settlement")
        self.selection = None

        triggered = None
        for cell in selection.cells:
            content = self._resolve(cell, results.get(cell, MINE))
            self.revealed[cell] = content
            if self.match_variant:
                continue
            if content == MINE:
                triggered = cell if triggered is None else triggered
            else:
                self.revealed_safe += 1
        self._transition(RoundState.ROUND_ACTIVE)
        for cell in selection.cells:
            self.animating.add(cell)
            if not self.render.reveal_cell(cell, self.revealed[cell]):
                self.animating.discard(cell)

        if self.match_variant:
            if selection.batch or len(self.revealed) >= self.cell_count:
                self._finish(self.assignment.result, payout=payout, multiplier=multiplier)
            return True
        if triggered is not None:
            self._finish(OUTCOME_LOST, triggered=triggered, payout=payout, multiplier=multiplier)
        elif selection.batch or self.revealed_safe >= self.cell_count - self.wager.mines:
            self._finish(OUTCOME_WIN, payout=payout, multiplier=multiplier)
        return True

    def _resolve(self, cell: int, reported: Any) -> Any:
        """Committed layout wins; a disagreeing report is logged for diagnostics."""
        if self.assignment is None:
            return reported
        committed = self.assignment.content(cell)
        if not self.match_variant and committed != reported:
            self.stats["mismatch"] += 1
            logger.warning(
                "round %s: settlement says %s for cell %s, committed layout has %s",
                self.round_id, reported, cell, committed,
            )
        return committed

    def on_reveal_complete(self, cell: int, content: Any = None) -> bool:
        if cell not in self.animating:
            return self._stale("reveal_complete")
        self.animating.discard(cell)
        return True

    # ------------------------------------------------------------------ cashout
    def request_cashout(self) -> bool:
        if self.state != RoundState.ROUND_ACTIVE:
            return self._reject("cashout", "no active round")
        if not self.cashout_eligible:
            return self._reject("cashout", "nothing revealed yet")
        if self.cashout_pending:
            return self._reject("cashout", "cashout already requested")
        self.cashout_pending = True
        self._changed()
        self.relay.request_cashout(self._round_token, self.wager, self.revealed_safe, mode=self._round_mode)
        return True

    def apply_cashout(self, token: CancelToken, payout: Any = None, multiplier: Any = None) -> bool:
        if token is not self._round_token or not self.cashout_pending:
            return self._stale("cashout")
        if self.state != RoundState.ROUND_ACTIVE:
            return self._stale("cashout")
        self.cashout_pending = False
        self._finish(OUTCOME_CASHOUT, payout=payout, multiplier=multiplier, state=RoundState.CASHOUT)
        return True

    # ------------------------------------------------------------------ round end
    def _settle_amounts(self, outcome: str, payout: Any, multiplier: Any) -> Tuple[float, float]:
        amount = self.wager.amount
        if outcome in (OUTCOME_LOST,):
            mult = 0.0
        elif self.match_variant:
            mult = self.config.payout.match_multiplier if outcome == OUTCOME_WIN else 0.0
        else:
            mult = self.current_multiplier()
        try:
            if multiplier is not None:
                mult = float(multiplier)
        except (TypeError, ValueError):
            logger.warning("Ignoring bad multiplier %r", multiplier)
        paid = payout_for(amount, mult)
        try:
            if payout is not None:
                paid = round(float(payout), 8)
        except (TypeError, ValueError):
            logger.warning("Ignoring bad payout %r", payout)
        return paid, mult

    def _commit_layout(self) -> Assignment:
        if self.assignment is None:
            self.assignment = complete_mine_layout(self.cell_count, self.wager.mines, self.revealed, rng=self.rng)
        return self.assignment

    def _finish(
        self,
        outcome: str,
        *,
        triggered: Optional[int] = None,
        payout: Any = None,
        multiplier: Any = None,
        state: RoundState = RoundState.GAME_OVER,
        reason: Optional[str] = None,
    ) -> None:
        paid, mult = self._settle_amounts(outcome, payout, multiplier)
        assignment = self._commit_layout()
        self.result = RoundResult(
            round_id=self.round_id,
            outcome=outcome,
            wager=self.wager.amount,
            payout=paid,
            multiplier=mult,
            revealed=dict(self.revealed),
            mode=self._round_mode,
            auto=self.wager.auto,
            mines=self.wager.mines,
            reason=reason,
        )
        self._transition(state)
        logger.info("round %s: %s payout=%.8f x%s", self.round_id, outcome, paid, mult)
        remaining = {c: assignment.content(c) for c in assignment.cells if c not in self.revealed}
        self.render.reveal_all(
            remaining,
            {"stagger": not self.wager.auto, "result": self.result, "triggered": triggered},
        )

    def on_round_complete(self, result: Any = None) -> bool:
        if self.state not in (RoundState.GAME_OVER, RoundState.CASHOUT):
            return self._stale("round_complete")
        if result is not None and result is not self.result:
            return self._stale("round_complete")
        self._transition(RoundState.FINALIZING)
        self._finalize()
        return True

    def _finalize(self) -> None:
        result = self.result
        held = False
        if self._finalizing_hook is not None and result is not None:
            held = bool(self._finalizing_hook(result))
        if held:
            return
        self._settle_idle()

    def _settle_idle(self) -> None:
        self._clear_round()
        self._transition(RoundState.IDLE)

    def force_finalize(self, reason: str = "aborted", *, payout: Any = None) -> Optional[RoundResult]:
        """End the round now, skipping animation. No-op when idle."""
        if self.state == RoundState.IDLE:
            return None
        self.relay.cancel_pending()
        self.selection = None
        self.cashout_pending = False
        if self.state == RoundState.FINALIZING:
            self._settle_idle()
            return None
        if self.state not in (RoundState.GAME_OVER, RoundState.CASHOUT):
            if self.revealed_safe > 0:
                outcome = OUTCOME_CASHOUT
                paid, mult = self._settle_amounts(outcome, payout, None)
            elif self.revealed:
                outcome, paid, mult = OUTCOME_LOST, 0.0, 0.0
            else:
                # nothing was revealed: the wager is void and returned
                outcome, mult, paid = OUTCOME_ABORTED, 0.0, self.wager.amount
                if payout is not None:
                    paid, _ = self._settle_amounts(outcome, payout, None)
            if self.assignment is not None or not self.match_variant:
                assignment = self._commit_layout()
                remaining = {c: assignment.content(c) for c in assignment.cells if c not in self.revealed}
                self.render.reveal_all(remaining, {"stagger": False, "immediate": True, "result": None})
            self.result = RoundResult(
                round_id=self.round_id,
                outcome=outcome,
                wager=self.wager.amount,
                payout=paid,
                multiplier=mult,
                revealed=dict(self.revealed),
                mode=self._round_mode,
                auto=self.wager.auto,
                mines=self.wager.mines,
                reason=reason,
            )
            logger.info("round %s: forced %s (%s)", self.round_id, outcome, reason)
        result = self.result
        self.animating.clear()
        self._set_state(RoundState.FINALIZING)
        self._finalize()
        return result

    def reset(self) -> bool:
        """Drop the current round and return to IDLE. Idempotent."""
        if self.state == RoundState.IDLE:
            return False
        self.relay.cancel_pending()
        self._clear_round()
        self.render.reset({})
        self._set_state(RoundState.IDLE)
        return True
