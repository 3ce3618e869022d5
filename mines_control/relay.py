"""
relay.py: RelayBridge and the settlement channels behind it.

The bridge is the only component that talks to the settlement service. In
demo mode it settles locally from the committed layout after a simulated
latency; in live mode it sends envelopes over a ``SettlementChannel`` and
turns inbound messages into queue events.

Outbound messages sent while an inbound message is being handled are tagged
``suppressed`` so a loopback channel never feeds them back in.
"""

from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .config import VARIANT_MATCH, EngineConfig
from .errors import MalformedEnvelope
from .events import (
    DIRECTION_IN,
    DIRECTION_OUT,
    IN_AUTO_BET_RESULT,
    IN_BET_RESULT,
    IN_CASHOUT,
    IN_FINALIZE_BET,
    IN_PROFIT_MULTIPLIER,
    IN_PROFIT_TOTAL,
    IN_STOP_AUTOBET,
    INBOUND_TYPES,
    OUT_BET,
    OUT_BET_VALUE,
    OUT_CASHOUT,
    OUT_MANUAL_SELECTION,
    OUT_MINES,
    OUT_START_AUTOBET,
    OUT_STOP_AUTOBET,
    RelayEnvelope,
    make_envelope,
)
from .outcomes import (
    GEM,
    MINE,
    RESULT_LOST,
    RESULT_WIN,
    Assignment,
    build_match_round,
    build_mines_round,
    cell_coords,
    cell_id,
    generate_losing_layout,
    generate_mine_layout,
    generate_winning_layout,
    mines_assignment,
)
from .timers import CADENCE, CancelToken, Scheduler, TimerHandle

logger = logging.getLogger("MC.Relay")

MODE_DEMO = "demo"
MODE_LIVE = "live"

Deliver = Callable[[str, Dict[str, Any]], None]
Post = Callable[..., Any]

_SAFE_WORDS = {"win", "won", "safe", "gem", "diamond"}
_UNSAFE_WORDS = {"lost", "lose", "loss", "mine", "bomb"}


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class SettlementChannel(ABC):
    """Transport between the bridge and the settlement service."""

    #: loopback channels deliver their own traffic back and must skip suppressed sends
    loopback = False

    def __init__(self) -> None:
        self._deliver: Optional[Deliver] = None

    def attach(self, deliver: Deliver) -> None:
        self._deliver = deliver

    def detach(self) -> None:
        self._deliver = None

    @property
    def attached(self) -> bool:
        return self._deliver is not None

    def deliver(self, msg_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Hand an inbound message to whoever is attached."""
        if self._deliver is None:
            logger.debug("Channel detached; dropping inbound %s", msg_type)
            return
        self._deliver(msg_type, dict(payload or {}))

    @abstractmethod
    def send(self, envelope: RelayEnvelope) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.detach()


class RecordingChannel(SettlementChannel):
    """Keeps every outbound envelope; tests push inbound traffic by hand."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: List[RelayEnvelope] = []

    def send(self, envelope: RelayEnvelope) -> None:
        self.sent.append(envelope)

    def types(self) -> List[str]:
        return [e.type for e in self.sent]

    def last(self, msg_type: Optional[str] = None) -> Optional[RelayEnvelope]:
        for env in reversed(self.sent):
            if msg_type is None or env.type == msg_type:
                return env
        return None


class EchoChannel(SettlementChannel):
    """Loopback that re-delivers each outbound message as an inbound one of the same type."""

    loopback = True

    def __init__(self, mapping: Optional[Dict[str, str]] = None) -> None:
        super().__init__()
        self.mapping = dict(mapping or {OUT_STOP_AUTOBET: IN_STOP_AUTOBET})
        self.sent: List[RelayEnvelope] = []
        self.echoed = 0

    def send(self, envelope: RelayEnvelope) -> None:
        self.sent.append(envelope)
        if envelope.suppressed:
            return
        reply = self.mapping.get(envelope.type)
        if reply:
            self.echoed += 1
            self.deliver(reply, envelope.payload)


class LoopbackSettlement(SettlementChannel):
    """In-process stand-in for the settlement service.

    Holds its own layout per bet and answers after ``latency`` seconds on the
    CADENCE timer category. ``force`` scripts the next results: a list of
    ``"win"``/``"lost"`` consumed one per settled pick (or per match round).
    With ``publish_layout`` the mine list rides along on the bet
    acknowledgement, otherwise it is never disclosed.
    """

    loopback = True

    def __init__(
        self,
        config: EngineConfig,
        scheduler: Optional[Scheduler] = None,
        *,
        latency: float = 0.0,
        rng: Optional[random.Random] = None,
        publish_layout: bool = False,
        force: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.scheduler = scheduler
        self.latency = float(latency)
        self.rng = rng or random.Random()
        self.publish_layout = publish_layout
        self.forced: Deque[str] = deque(force or ())
        self.received: List[RelayEnvelope] = []
        self.bet_id = 0
        self._mines: frozenset = frozenset()
        self._picked: Dict[int, str] = {}
        self._timers: List[TimerHandle] = []

    def send(self, envelope: RelayEnvelope) -> None:
        self.received.append(envelope)
        if envelope.suppressed:
            return
        handler = {
            OUT_BET: self._on_bet,
            OUT_MANUAL_SELECTION: self._on_selection,
            OUT_CASHOUT: self._on_cashout,
            OUT_STOP_AUTOBET: self._on_stop,
        }.get(envelope.type)
        if handler is not None:
            handler(dict(envelope.payload))

    def close(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers = []
        super().close()

    # ------------------------------------------------------------------ replies
    def _reply(self, msg_type: str, payload: Dict[str, Any]) -> None:
        if self.scheduler is None or self.latency <= 0:
            self.deliver(msg_type, payload)
            return
        handle = self.scheduler.call_later(
            self.latency, lambda: self.deliver(msg_type, payload), category=CADENCE
        )
        self._timers.append(handle)

    def _next_forced(self) -> Optional[str]:
        return self.forced.popleft() if self.forced else None

    def _on_bet(self, payload: Dict[str, Any]) -> None:
        self.bet_id += 1
        board = self.config.board
        if board.variant == VARIANT_MATCH:
            forced = self._next_forced()
            assignment = build_match_round(
                board.card_types,
                board.cell_count,
                win_probability=self.config.demo.win_probability,
                forced_result=forced,
                rng=self.rng,
            )
            self._reply(
                IN_BET_RESULT,
                {
                    "bet_id": self.bet_id,
                    "result": assignment.result,
                    "winningCardTypeId": assignment.winning_type,
                },
            )
            return

        mines = int(payload.get("mines") or board.mines)
        self._mines = generate_mine_layout(board.cell_count, mines, rng=self.rng)
        self._picked = {}
        selection = payload.get("selection")
        if payload.get("auto") and isinstance(selection, list):
            results = []
            for cell in selection:
                content = self._settle(int(cell), mines)
                results.append({"cell": int(cell), "result": "lost" if content == MINE else "win"})
            reply: Dict[str, Any] = {"bet_id": self.bet_id, "results": results}
            if self.publish_layout:
                reply["mines"] = sorted(self._mines)
            self._reply(IN_AUTO_BET_RESULT, reply)
            return
        reply = {"bet_id": self.bet_id, "status": "started"}
        if self.publish_layout:
            reply["mines"] = sorted(self._mines)
        self._reply(IN_BET_RESULT, reply)

    def _settle(self, cell: int, mines: int) -> str:
        """Resolve one pick, honouring a scripted result by moving a mine if needed."""
        forced = self._next_forced()
        if forced == RESULT_LOST and cell not in self._mines:
            moved = sorted(c for c in self._mines if c not in self._picked)
            if moved:
                self._mines = (self._mines - {moved[0]}) | {cell}
        elif forced == RESULT_WIN and cell in self._mines:
            free = sorted(
                c
                for c in range(self.config.board.cell_count)
                if c not in self._mines and c not in self._picked and c != cell
            )
            if free:
                self._mines = (self._mines - {cell}) | {free[0]}
        content = MINE if cell in self._mines else GEM
        self._picked[cell] = content
        return content

    def _on_selection(self, payload: Dict[str, Any]) -> None:
        cell = payload.get("cell")
        if cell is None:
            return
        content = self._settle(int(cell), len(self._mines))
        self._reply(
            IN_BET_RESULT,
            {"bet_id": self.bet_id, "cell": int(cell), "result": "lost" if content == MINE else "win"},
        )

    def _on_cashout(self, payload: Dict[str, Any]) -> None:
        self._reply(IN_CASHOUT, {"bet_id": self.bet_id})

    def _on_stop(self, payload: Dict[str, Any]) -> None:
        self._reply(IN_STOP_AUTOBET, {"reason": "acknowledged"})


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


def normalize_result(value: Any) -> Tuple[str, bool]:
    """Map a service result word onto cell content; unknown words count as unsafe."""
    text = str(value or "").strip().lower()
    if text in _SAFE_WORDS:
        return GEM, True
    if text in _UNSAFE_WORDS:
        return MINE, True
    return MINE, False


class RelayBridge:
    def __init__(
        self,
        config: EngineConfig,
        channel: Optional[SettlementChannel] = None,
        *,
        post: Post,
        scheduler: Scheduler,
        rng: Optional[random.Random] = None,
        demo: Optional[bool] = None,
        log_size: Optional[int] = None,
    ) -> None:
        self.config = config
        self.channel = channel
        self._post = post
        self.scheduler = scheduler
        self.rng = rng or random.Random(config.demo.seed)
        self.demo = config.demo.enabled if demo is None else bool(demo)
        self.log: Deque[RelayEnvelope] = deque(maxlen=log_size or config.relay_log_size)
        self.stats: Dict[str, Any] = defaultdict(int)
        self._seq = 0
        self._inbound_depth = 0
        self._listeners: List[Callable[[RelayEnvelope], None]] = []

        self._pending_round: Optional[Dict[str, Any]] = None
        self._pending_selection: Optional[Any] = None
        self._pending_selection_round: Optional[CancelToken] = None
        self._pending_cashout: Optional[CancelToken] = None
        self._buffered_batch: Optional[Dict[str, Any]] = None
        self._latency_timer: Optional[TimerHandle] = None

    # ------------------------------------------------------------------ mode
    @property
    def mode(self) -> str:
        return MODE_DEMO if self.demo else MODE_LIVE

    def set_demo_mode(self, enabled: bool) -> bool:
        """Switch settlement mode; returns ``True`` when it changed."""
        enabled = bool(enabled)
        if enabled == self.demo:
            return False
        self.demo = enabled
        logger.info("Settlement mode -> %s", self.mode)
        return True

    # ------------------------------------------------------------------ wiring
    def attach(self) -> None:
        if self.channel is not None:
            self.channel.attach(self.deliver)

    def detach(self) -> None:
        if self.channel is not None:
            self.channel.detach()

    def add_listener(self, listener: Callable[[RelayEnvelope], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    @contextmanager
    def handling_inbound(self):
        self._inbound_depth += 1
        try:
            yield
        finally:
            self._inbound_depth -= 1

    def _record(self, envelope: RelayEnvelope) -> RelayEnvelope:
        self._seq += 1
        envelope.seq = self._seq
        self.log.append(envelope)
        for listener in list(self._listeners):
            listener(envelope)
        return envelope

    def send(self, msg_type: str, payload: Optional[Dict[str, Any]] = None) -> RelayEnvelope:
        env = self._record(
            make_envelope(DIRECTION_OUT, msg_type, payload, suppressed=self._inbound_depth > 0)
        )
        self.stats["sent"] += 1
        if env.suppressed:
            self.stats["suppressed"] += 1
        logger.debug("-> %s %s%s", msg_type, env.payload, " (suppressed)" if env.suppressed else "")
        if self.channel is None:
            logger.warning("No settlement channel; %s not transmitted", msg_type)
        else:
            self.channel.send(env)
        return env

    def deliver(self, msg_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Entry point for inbound traffic; queues it for ordered handling."""
        env = self._record(make_envelope(DIRECTION_IN, msg_type, payload))
        self.stats["received"] += 1
        logger.debug("<- %s %s", msg_type, env.payload)
        return bool(self._post("relay_inbound", envelope=env))

    # ------------------------------------------------------------------ outbound ops
    def request_round(
        self,
        wager: Any,
        token: CancelToken,
        *,
        auto_cells: Optional[Iterable[int]] = None,
    ) -> None:
        """Ask for a new round. Demo commits a layout right away."""
        self._buffered_batch = None
        board = self.config.board
        cells = sorted(int(c) for c in auto_cells) if auto_cells is not None else None
        if self.demo:
            if board.variant == VARIANT_MATCH:
                assignment = build_match_round(
                    board.card_types,
                    board.cell_count,
                    win_probability=self.config.demo.win_probability,
                    rng=self.rng,
                )
            else:
                assignment = build_mines_round(board.cell_count, wager.mines, rng=self.rng)
            self._post("assignment_ready", token=token, assignment=assignment, source=MODE_DEMO)
            return

        self._pending_round = {"token": token, "wager": wager, "auto": cells is not None}
        payload: Dict[str, Any] = {
            "amount": wager.amount,
            "mines": wager.mines,
            "variant": board.variant,
            "auto": cells is not None,
        }
        if cells is not None:
            payload["selection"] = cells
        self.send(OUT_BET, payload)

    def submit_selection(self, selection: Any, round_token: CancelToken, assignment: Optional[Assignment]) -> None:
        """Settle ``selection`` in the mode it was created in."""
        self._pending_selection = selection
        self._pending_selection_round = round_token
        local = selection.mode == MODE_DEMO or (
            assignment is not None and assignment.variant == VARIANT_MATCH
        )
        if local and assignment is not None:
            if self._latency_timer is not None:
                self._latency_timer.cancel()
            self._latency_timer = self.scheduler.call_later(
                self.config.timing.selection_latency,
                lambda: self._settle_locally(selection, assignment),
                category=CADENCE,
            )
            return

        if selection.batch:
            self._post("selection_dispatched", token=selection.token)
            buffered = self._buffered_batch
            if buffered is not None and buffered["round"] is round_token:
                self._buffered_batch = None
                self._post_batch(selection, buffered)
            return

        cell = selection.cells[0]
        grid = self.config.board.grid
        row, col = cell_coords(cell, grid)
        self.send(OUT_MANUAL_SELECTION, {"cell": cell, "row": row, "col": col})
        self._post("selection_dispatched", token=selection.token)

    def _settle_locally(self, selection: Any, assignment: Assignment) -> None:
        self._latency_timer = None
        if selection is not self._pending_selection:
            self.stats["stale"] += 1
            return
        self._pending_selection = None
        self._post("selection_dispatched", token=selection.token)
        results = {cell: assignment.content(cell) for cell in selection.cells}
        self._post("selection_settled", token=selection.token, results=results)

    def request_cashout(self, round_token: CancelToken, wager: Any, revealed_safe: int, *, mode: str) -> None:
        if mode == MODE_DEMO:
            self._post("cashout_confirmed", token=round_token)
            return
        self._pending_cashout = round_token
        self.send(OUT_CASHOUT, {"amount": wager.amount, "revealed": revealed_safe})

    def start_autobet(self, cells: Iterable[int], bets: Optional[int], amount: float, mines: int) -> None:
        if self.demo:
            return
        self.send(
            OUT_START_AUTOBET,
            {"selection": sorted(cells), "bets": bets or 0, "amount": amount, "mines": mines},
        )

    def stop_autobet(self, reason: str) -> None:
        if self.demo:
            return
        self.send(OUT_STOP_AUTOBET, {"reason": reason})

    def publish_config(self, *, mines: Optional[int] = None, bet_value: Optional[float] = None) -> None:
        if self.demo:
            return
        if mines is not None:
            self.send(OUT_MINES, {"value": int(mines)})
        if bet_value is not None:
            self.send(OUT_BET_VALUE, {"value": float(bet_value)})

    def cancel_pending(self) -> None:
        """Forget every outstanding request; late answers become stale."""
        if self._latency_timer is not None:
            self._latency_timer.cancel()
            self._latency_timer = None
        self._pending_round = None
        self._pending_selection = None
        self._pending_selection_round = None
        self._pending_cashout = None
        self._buffered_batch = None

    @property
    def busy(self) -> bool:
        return any(
            x is not None
            for x in (self._pending_round, self._pending_selection, self._pending_cashout)
        )

    # ------------------------------------------------------------------ inbound
    def handle_inbound(self, envelope: RelayEnvelope) -> None:
        """Turn one inbound envelope into controller events."""
        handler = {
            IN_BET_RESULT: self._on_bet_result,
            IN_AUTO_BET_RESULT: self._on_auto_bet_result,
            IN_CASHOUT: self._on_cashout,
            IN_STOP_AUTOBET: self._on_stop_autobet,
            IN_FINALIZE_BET: self._on_finalize,
            IN_PROFIT_TOTAL: self._on_profit,
            IN_PROFIT_MULTIPLIER: self._on_profit,
        }.get(envelope.type)
        try:
            if handler is None:
                raise MalformedEnvelope(envelope.type, "unknown message type")
            handler(envelope)
        except MalformedEnvelope as exc:
            self.stats["malformed"] += 1
            logger.warning("Malformed settlement message: %s", exc)

    def _on_bet_result(self, env: RelayEnvelope) -> None:
        payload = env.payload
        pending = self._pending_round
        if pending is not None and not pending["auto"]:
            self._pending_round = None
            assignment = self._assignment_from(payload, pending["wager"])
            self._post("assignment_ready", token=pending["token"], assignment=assignment, source=MODE_LIVE)
            return

        selection = self._pending_selection
        if selection is not None and not selection.batch:
            cell = self._cell_from(env.type, payload, selection.cells[0])
            if cell != selection.cells[0]:
                self.stats["stale"] += 1
                logger.info("bet-result for cell %s while cell %s is pending", cell, selection.cells[0])
                return
            content, known = normalize_result(payload.get("result"))
            if not known:
                self.stats["malformed"] += 1
                logger.warning("Unrecognised result %r for cell %s; treating as unsafe", payload.get("result"), cell)
            self._pending_selection = None
            self._post("selection_settled", token=selection.token, results={cell: content})
            return

        self.stats["stale"] += 1
        logger.info("Ignoring bet-result with nothing pending")

    def _on_auto_bet_result(self, env: RelayEnvelope) -> None:
        payload = env.payload
        raw = payload.get("results")
        if not isinstance(raw, list):
            raise MalformedEnvelope(env.type, "results must be a list")
        results: Dict[int, str] = {}
        for item in raw:
            try:
                cell = int(item["cell"])
            except (KeyError, TypeError, ValueError):
                # dropped entries settle as unsafe via the missing-cell rule
                self.stats["malformed"] += 1
                logger.warning("Skipping auto-bet-result entry %r", item)
                continue
            content, known = normalize_result(item.get("result"))
            if not known:
                self.stats["malformed"] += 1
            results[cell] = content
        batch = {
            "results": results,
            "payout": payload.get("payout"),
            "multiplier": payload.get("multiplier"),
        }

        pending = self._pending_round
        if pending is not None and pending["auto"]:
            self._pending_round = None
            batch["round"] = pending["token"]
            self._buffered_batch = batch
            assignment = self._assignment_from(payload, pending["wager"])
            self._post("assignment_ready", token=pending["token"], assignment=assignment, source=MODE_LIVE)
            return

        selection = self._pending_selection
        if selection is not None and selection.batch:
            self._post_batch(selection, batch)
            return

        self.stats["stale"] += 1
        logger.info("Ignoring auto-bet-result with nothing pending")

    def _post_batch(self, selection: Any, batch: Dict[str, Any]) -> None:
        self._pending_selection = None
        results = batch["results"]
        missing = [c for c in selection.cells if c not in results]
        if missing:
            self.stats["malformed"] += 1
            logger.warning("auto-bet-result missing cells %s; treating as unsafe", missing)
        settled = {c: results.get(c, MINE) for c in selection.cells}
        self._post(
            "selection_settled",
            token=selection.token,
            results=settled,
            payout=batch.get("payout"),
            multiplier=batch.get("multiplier"),
        )

    def _on_cashout(self, env: RelayEnvelope) -> None:
        token = self._pending_cashout
        if token is None:
            self.stats["stale"] += 1
            logger.info("Ignoring cashout with nothing pending")
            return
        self._pending_cashout = None
        self._post(
            "cashout_confirmed",
            token=token,
            payout=env.payload.get("payout"),
            multiplier=env.payload.get("multiplier"),
        )

    def _on_stop_autobet(self, env: RelayEnvelope) -> None:
        self._post("server_stop_autobet", reason=str(env.payload.get("reason") or "server"))

    def _on_finalize(self, env: RelayEnvelope) -> None:
        self._post("server_finalize", payout=env.payload.get("payout"))

    def _on_profit(self, env: RelayEnvelope) -> None:
        payload = env.payload
        value = payload.get("numericValue", payload.get("value"))
        if value is None:
            raise MalformedEnvelope(env.type, "missing value")
        target = "total" if env.type == IN_PROFIT_TOTAL else "multiplier"
        self._post("profit_update", target=target, value=value)

    # ------------------------------------------------------------------ parsing
    def _cell_from(self, msg_type: str, payload: Dict[str, Any], default: int) -> int:
        try:
            if payload.get("cell") is not None:
                return int(payload["cell"])
            if payload.get("row") is not None and payload.get("col") is not None:
                return cell_id(payload["row"], payload["col"], self.config.board.grid)
        except (TypeError, ValueError):
            raise MalformedEnvelope(msg_type, "cell, row and col must be integers") from None
        return default

    def _assignment_from(self, payload: Dict[str, Any], wager: Any) -> Optional[Assignment]:
        """Layout carried by a bet acknowledgement, if any."""
        board = self.config.board
        if board.variant == VARIANT_MATCH:
            content, known = normalize_result(payload.get("result"))
            if not known:
                self.stats["malformed"] += 1
            if content == GEM:
                layout = generate_winning_layout(
                    board.cell_count, board.card_types, payload.get("winningCardTypeId"), rng=self.rng
                )
            else:
                layout = generate_losing_layout(board.cell_count, board.card_types, rng=self.rng)
            return layout.to_assignment()

        mines = payload.get("mines")
        if mines is None:
            return None
        try:
            cells = {int(c) for c in mines}
        except (TypeError, ValueError):
            self.stats["malformed"] += 1
            logger.warning("Unusable mine list %r; settling pick by pick", mines)
            return None
        if len(cells) != wager.mines or any(not 0 <= c < board.cell_count for c in cells):
            self.stats["malformed"] += 1
            logger.warning("Mine list %r does not fit the board; settling pick by pick", sorted(cells))
            return None
        return mines_assignment(board.cell_count, cells)
