"""
session.py: GameSession: one board, its surfaces and its settlement relay.

The session owns the single event queue. UI events, timer callbacks,
settlement messages and render callbacks are all posted there, so round
state is only ever touched by one handler at a time. Control state is
recomputed once per notification and pushed to the ControlSurface.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Optional

from .autoplay import STOP_MODE_SWITCH, STOP_SERVER, STOP_USER, AutoPlayOrchestrator
from .config import EngineConfig, clamp_mines, coerce_flag, coerce_optional_number
from .dispatch import EventQueue, QueuedEvent
from .event_bus import EventBus
from .journal import RoundJournal
from .payouts import format_amount
from .relay import RelayBridge, SettlementChannel
from .round_controller import RoundController, RoundResult, RoundState
from .surfaces import (
    PLAY_AUTO,
    PLAY_MANUAL,
    ControlState,
    ControlSurface,
    HeadlessRenderSurface,
    RecordingControlSurface,
    RenderSurface,
    derive_control_state,
)
from .timers import CATEGORIES, ManualClock, Scheduler

logger = logging.getLogger("MC.Session")


class GameSession:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        channel: Optional[SettlementChannel] = None,
        render: Optional[RenderSurface] = None,
        control: Optional[ControlSurface] = None,
        scheduler: Optional[Scheduler] = None,
        rng: Optional[random.Random] = None,
        journal: Optional[RoundJournal] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.scheduler = scheduler or ManualClock()
        self.rng = rng or random.Random(self.config.demo.seed)
        self.queue = EventQueue()
        self.bus = EventBus()
        timing = self.config.timing
        self.render = render or HeadlessRenderSurface(
            self.scheduler,
            reveal_duration=timing.reveal_duration,
            reveal_stagger=timing.reveal_stagger,
        )
        self.control = control or RecordingControlSurface()
        self.relay = RelayBridge(
            self.config,
            channel,
            post=self.queue.post,
            scheduler=self.scheduler,
            rng=self.rng,
        )
        self.controller = RoundController(
            self.config, self.relay, self.render, rng=self.rng, clock=self.scheduler.now
        )
        self.autoplay = AutoPlayOrchestrator(
            self.controller, self.relay, self.scheduler, self.config, post=self.queue.post
        )
        if journal is None and self.config.journal_path:
            journal = RoundJournal(self.config.journal_path)
        self.journal = journal

        self.play_mode = PLAY_MANUAL
        self.bet_value = self.config.wager.default
        self.mines = self.config.board.mines
        self.total_profit = 0.0
        self.server_profit: Optional[float] = None
        self.server_multiplier: Optional[float] = None
        self.history: list[RoundResult] = []
        self._control_state: Optional[ControlState] = None
        self._initialized = False

    # ------------------------------------------------------------------ lifecycle
    def init(self) -> "GameSession":
        if self._initialized:
            return self
        q = self.queue
        q.register("ui", self._handle_ui)
        q.register("assignment_ready", self.controller.apply_assignment)
        q.register("selection_dispatched", self.controller.mark_dispatched)
        q.register("selection_settled", self.controller.apply_settlement)
        q.register("cashout_confirmed", self.controller.apply_cashout)
        q.register("reveal_complete", self.controller.on_reveal_complete)
        q.register("round_complete", self.controller.on_round_complete)
        q.register("relay_inbound", self._handle_inbound)
        q.register("server_stop_autobet", self._handle_server_stop)
        q.register("server_finalize", self._handle_server_finalize)
        q.register("profit_update", self._handle_profit)
        q.register("autoplay_next", self.autoplay.handle_next)
        q.add_error_handler(self._on_handler_error)

        self.render.bind(
            lambda cell, content: q.post("reveal_complete", cell=cell, content=content),
            lambda result: q.post("round_complete", result=result),
        )
        self.control.bind(lambda name, detail: q.post("ui", name=name, detail=detail))
        self.controller.add_listener(self._on_round_state)
        self.controller.set_finalizing_hook(self._on_finalizing)
        self.autoplay.add_listener(self._on_autoplay)
        self.relay.attach()
        self._initialized = True
        self.refresh_controls()
        logger.info(
            "Session ready: variant=%s cells=%d mode=%s",
            self.config.board.variant, self.config.board.cell_count, self.relay.mode,
        )
        return self

    def dispose(self) -> None:
        if not self._initialized:
            return
        if self.autoplay.running:
            self.autoplay.abort("dispose")
        self.controller.reset()
        for category in CATEGORIES:
            self.scheduler.cancel_category(category)
        self.queue.clear()
        self.relay.detach()
        self.render.unbind()
        self.control.unbind()
        self._initialized = False
        logger.info("Session disposed")

    # ------------------------------------------------------------------ entry points
    def ui(self, name: str, /, **detail: Any) -> bool:
        """Post a UI event as if the ControlSurface had emitted it."""
        return self.queue.post("ui", name=name, detail=detail)

    def _handle_ui(self, name: str, detail: Dict[str, Any]) -> None:
        handler = getattr(self, f"_ui_{name}", None)
        if handler is None:
            logger.warning("Unhandled UI event %r", name)
            return
        handler(**{k: v for k, v in (detail or {}).items() if k != "self"})

    def _ui_bet(self, **_: Any) -> None:
        if self.play_mode == PLAY_AUTO:
            if self.autoplay.running:
                self.autoplay.request_stop(STOP_USER)
            else:
                self._ui_startautobet()
            return
        self.controller.submit_wager(self.bet_value, self.mines)

    def _ui_cashout(self, **_: Any) -> None:
        self.controller.request_cashout()

    def _ui_pick(self, cell: Any = None, row: Any = None, col: Any = None, **_: Any) -> None:
        self.controller.pick(cell, row=row, col=col)

    def _ui_revealall(self, **_: Any) -> None:
        self.controller.reveal_remaining()

    def _ui_modechange(self, mode: str = PLAY_MANUAL, **_: Any) -> None:
        self.set_play_mode(mode)

    def _ui_selectionchange(self, cells: Any = (), **_: Any) -> None:
        self.autoplay.set_selection(cells or ())

    def _ui_startautobet(
        self,
        bets: Any = None,
        stop_on_profit: Any = None,
        stop_on_loss: Any = None,
        cells: Any = None,
        **_: Any,
    ) -> None:
        if self.play_mode != PLAY_AUTO:
            logger.info("startautobet ignored in %s mode", self.play_mode)
            return
        self.autoplay.start(
            cells,
            bets=bets,
            stop_on_profit=stop_on_profit,
            stop_on_loss=stop_on_loss,
            amount=self.bet_value,
            mines=self.mines,
        )

    def _ui_betvaluechange(self, value: Any = None, **_: Any) -> None:
        number = coerce_optional_number(value)
        limits = self.config.wager
        if number is None or number <= 0:
            logger.info("Ignoring bet value %r", value)
            return
        self.bet_value = min(max(number, limits.min), limits.max)
        self.relay.publish_config(bet_value=self.bet_value)

    def _ui_mineschange(self, value: Any = None, **_: Any) -> None:
        if self.controller.state != RoundState.IDLE or self.autoplay.running:
            logger.info("Mine count is fixed while a round is in play")
            return
        self.mines = clamp_mines(value, self.config.board.cell_count)
        self.relay.publish_config(mines=self.mines)
        self.refresh_controls()

    def _ui_demomodechange(self, enabled: Any = None, **_: Any) -> None:
        flag, ok = coerce_flag(enabled)
        if not ok or flag is None:
            logger.info("Ignoring demo mode value %r", enabled)
            return
        self.set_demo_mode(flag)

    # ------------------------------------------------------------------ modes
    def set_play_mode(self, mode: str) -> bool:
        mode = str(mode or "").strip().lower()
        if mode not in (PLAY_MANUAL, PLAY_AUTO):
            logger.info("Unknown play mode %r", mode)
            return False
        if mode == self.play_mode:
            return False
        if self.autoplay.running:
            self.autoplay.abort(STOP_MODE_SWITCH)
        elif self.controller.state != RoundState.IDLE:
            logger.info("Finish the current round before switching to %s", mode)
            self.refresh_controls()
            return False
        self.play_mode = mode
        self.bus.publish("play_mode", mode=mode)
        self.refresh_controls()
        return True

    def set_demo_mode(self, enabled: bool) -> bool:
        changed = self.relay.set_demo_mode(enabled)
        if not changed:
            return False
        if self.autoplay.running:
            self.autoplay.request_stop(STOP_MODE_SWITCH)
        self.bus.publish("demo_mode", enabled=self.relay.demo)
        return True

    # ------------------------------------------------------------------ relay handlers
    def _handle_inbound(self, envelope: Any) -> None:
        with self.relay.handling_inbound():
            self.relay.handle_inbound(envelope)

    def _handle_server_stop(self, reason: str = STOP_SERVER) -> None:
        with self.relay.handling_inbound():
            self.autoplay.request_stop(STOP_SERVER)

    def _handle_server_finalize(self, payout: Any = None) -> None:
        with self.relay.handling_inbound():
            self.controller.force_finalize("server", payout=payout)

    def _handle_profit(self, target: str, value: Any) -> None:
        number = coerce_optional_number(value)
        if number is None:
            logger.warning("Ignoring %s profit update %r", target, value)
            return
        if target == "total":
            self.server_profit = number
            self.control.set_total_profit(format_amount(number))
        else:
            self.server_multiplier = number
            self.control.set_multiplier(f"{number:.2f}")

    # ------------------------------------------------------------------ notifications
    def _on_round_state(self, old: RoundState, new: RoundState) -> None:
        if old != new:
            self.bus.publish("round_state", old=old.value, new=new.value, round_id=self.controller.round_id)
        if new == RoundState.ROUND_ACTIVE and self.controller.wager and not self.controller.wager.auto:
            self.control.set_multiplier(f"{self.controller.current_multiplier():.2f}")
        self.refresh_controls()

    def _on_autoplay(self, session: Any) -> None:
        self.bus.publish("autoplay", **self.autoplay.snapshot())
        self.refresh_controls()

    def _on_finalizing(self, result: RoundResult) -> bool:
        self.history.append(result)
        self.total_profit = round(self.total_profit + result.net, 8)
        if self.server_profit is None:
            self.control.set_total_profit(format_amount(self.total_profit))
        self.bus.publish("round_result", **result.to_dict())
        if self.journal is not None:
            session = self.autoplay.session
            self.journal.append(
                result,
                net_total=self.total_profit,
                cycle=session.cycles_completed + 1 if session is not None and result.auto else None,
            )
        return self.autoplay.on_cycle_finalized(result)

    def refresh_controls(self) -> ControlState:
        session = self.autoplay.session
        if session is not None:
            remaining = session.bets_remaining
        else:
            remaining = self.config.autoplay.bets
        state = derive_control_state(
            self.controller.state.value,
            play_mode=self.play_mode,
            cashout_eligible=self.controller.cashout_eligible,
            cashout_pending=self.controller.cashout_pending,
            auto_running=self.autoplay.running,
            auto_finishing=self.autoplay.finishing,
            bets_remaining=remaining,
            match_variant=self.controller.match_variant,
        )
        self.control.apply(state, self._control_state)
        self._control_state = state
        return state

    def _on_handler_error(self, event: QueuedEvent, exc: BaseException) -> None:
        """Settle whatever round is in play and return to an idle board after a handler failure."""
        logger.error("Recovering from failed %s handler: %s", event.kind, exc)
        if self.autoplay.running:
            self.autoplay.abort("error")
        else:
            self.controller.force_finalize("error")
        if self.controller.state != RoundState.IDLE:
            self.controller.reset()
        self.refresh_controls()

    # ------------------------------------------------------------------ views
    def snapshot(self) -> Dict[str, Any]:
        return {
            "play_mode": self.play_mode,
            "settlement_mode": self.relay.mode,
            "bet_value": self.bet_value,
            "mines": self.mines,
            "total_profit": self.total_profit,
            "server_profit": self.server_profit,
            "round": self.controller.snapshot(),
            "autoplay": self.autoplay.snapshot(),
            "controls": None if self._control_state is None else dict(self._control_state.__dict__),
            "queue": {
                "depth": len(self.queue),
                "posted": self.queue.stats["posted"],
                "processed": self.queue.stats["processed"],
                "failed": dict(self.queue.stats["failed"]),
            },
            "relay": {**self.relay.stats, "busy": self.relay.busy},
            "rounds_played": len(self.history),
        }
