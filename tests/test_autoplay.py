import random

import pytest

from mines_control.autoplay import (
    STOP_BETS_EXHAUSTED,
    STOP_LOSS,
    STOP_MODE_SWITCH,
    STOP_PROFIT,
    STOP_USER,
)
from mines_control.outcomes import MINE
from mines_control.relay import MODE_DEMO, MODE_LIVE, LoopbackSettlement
from mines_control.round_controller import OUTCOME_ABORTED, OUTCOME_WIN, RoundResult, RoundState
from mines_control.surfaces import AUTO_FINISHING, AUTO_START, AUTO_STOP, BUTTON_DISABLED, BUTTON_ENABLED

from tests import make_config, make_session


def _auto_session(cells=(0, 1), **kwargs):
    s = make_session(**kwargs)
    assert s.ui("modechange", mode="auto")
    assert s.ui("selectionchange", cells=list(cells))
    return s


def test_three_bets_run_three_cycles_then_stop():
    s = _auto_session()
    s.ui("startautobet", bets=3)
    assert s.autoplay.running
    assert s.controller.wager.auto
    assert s.control.bet_button == (BUTTON_ENABLED, "Stop Autobet")
    assert s.control.auto_button_mode == AUTO_STOP

    s.scheduler.run_until_idle()

    assert not s.autoplay.running
    assert s.autoplay.last_session.stop_reason == STOP_BETS_EXHAUSTED
    assert s.autoplay.last_session.cycles_completed == 3
    assert len(s.history) == 3
    assert all(r.auto for r in s.history)
    assert s.controller.state == RoundState.IDLE
    assert ("remaining_bets", 2) in s.control.calls
    assert ("remaining_bets", 1) in s.control.calls
    assert s.control.auto_button_mode == AUTO_START
    assert s.control.bet_button == (BUTTON_ENABLED, "Start Autobet")


def test_each_cycle_settles_the_whole_selection_at_once():
    s = _auto_session(cells=(3, 7, 11))
    s.ui("startautobet", bets=1)
    assert s.controller.selection.cells == (3, 7, 11)
    assert s.controller.selection.batch
    s.scheduler.run_until_idle()
    assert set(s.history[0].revealed) == {3, 7, 11}


def test_auto_rounds_are_never_cashout_eligible():
    s = _auto_session()
    s.ui("startautobet", bets=1)
    s.scheduler.advance(0.4)
    assert not s.controller.cashout_eligible
    assert s.control.cashout_available is False


def test_mode_switch_mid_cycle_aborts_and_keeps_selection():
    s = _auto_session()
    s.ui("startautobet")
    assert s.controller.state == RoundState.SELECTION_PENDING

    s.ui("modechange", mode="manual")

    assert s.play_mode == "manual"
    assert not s.autoplay.running
    assert s.autoplay.last_session.stop_reason == STOP_MODE_SWITCH
    assert s.autoplay.stored_selection == frozenset({0, 1})
    assert s.controller.state == RoundState.IDLE
    assert s.history[-1].outcome == OUTCOME_ABORTED
    assert s.history[-1].payout == 1.0

    s.scheduler.advance(5.0)
    assert s.controller.state == RoundState.IDLE
    assert len(s.history) == 1


def test_stop_during_cycle_finishes_that_cycle_first():
    s = _auto_session()
    s.ui("startautobet")
    s.ui("bet")

    assert s.autoplay.finishing
    assert s.control.bet_button == (BUTTON_DISABLED, "Finishing")
    assert s.control.auto_button_mode == AUTO_FINISHING

    s.scheduler.run_until_idle()
    assert not s.autoplay.running
    assert s.autoplay.last_session.stop_reason == STOP_USER
    assert len(s.history) == 1
    assert s.controller.state == RoundState.IDLE


def test_stop_between_cycles_cancels_the_next_one():
    s = _auto_session()
    s.ui("startautobet")
    s.scheduler.advance(0.4)
    s.scheduler.advance(1.0)
    assert s.controller.state == RoundState.FINALIZING
    assert s.autoplay.running

    s.ui("bet")
    assert not s.autoplay.running
    assert s.autoplay.last_session.stop_reason == STOP_USER
    assert s.controller.state == RoundState.IDLE

    s.scheduler.advance(5.0)
    assert len(s.history) == 1
    assert s.controller.state == RoundState.IDLE


def test_settlement_mode_toggle_stops_gracefully_and_keeps_round_mode():
    s = _auto_session()
    s.ui("startautobet")
    s.ui("demomodechange", enabled=False)

    assert s.relay.mode == MODE_LIVE
    assert s.autoplay.finishing
    s.scheduler.run_until_idle()

    assert s.autoplay.last_session.stop_reason == STOP_MODE_SWITCH
    assert s.history[-1].mode == MODE_DEMO
    assert s.controller.state == RoundState.IDLE


def test_loss_limit_stops_after_threshold():
    data = {"board": {"grid": 5, "mines": 5}}
    config = make_config(data, demo=False)
    channel = LoopbackSettlement(config, rng=random.Random(1), force=["lost"] * 10)
    s = _auto_session(data=data, demo=False, channel=channel)

    s.ui("startautobet", stop_on_loss=2)
    s.scheduler.run_until_idle()

    session = s.autoplay.last_session
    assert session.stop_reason == STOP_LOSS
    assert session.cycles_completed == 2
    assert session.net_profit == pytest.approx(-2.0)
    assert all(r.revealed == {0: MINE, 1: MINE} for r in s.history)
    assert "control:start-autobet" in [e.type for e in channel.received]
    assert "action:stop-autobet" in [e.type for e in channel.received]
    assert s.controller.state == RoundState.IDLE


def test_profit_target_is_checked_when_a_cycle_finalizes():
    s = _auto_session()
    s.ui("startautobet", stop_on_profit=0.5)
    result = RoundResult(
        round_id=s.controller.round_id,
        outcome=OUTCOME_WIN,
        wager=1.0,
        payout=2.0,
        multiplier=2.0,
        revealed={},
        mode=MODE_DEMO,
        auto=True,
    )
    assert s.autoplay.on_cycle_finalized(result) is False
    assert s.autoplay.last_session.stop_reason == STOP_PROFIT
    assert s.autoplay.last_session.net_profit == pytest.approx(1.0)


def test_non_positive_thresholds_mean_no_limit():
    s = _auto_session()
    s.ui("startautobet", bets=0, stop_on_profit=0, stop_on_loss=-5)
    session = s.autoplay.session
    assert session.bets_remaining is None
    assert session.stop_on_profit is None
    assert session.stop_on_loss is None
    s.autoplay.request_stop()
    s.scheduler.run_until_idle()


def test_start_is_refused_without_a_usable_selection():
    s = make_session()
    s.ui("modechange", mode="auto")
    s.ui("startautobet")
    assert not s.autoplay.running
    assert not s.autoplay.set_selection(range(21))
    assert not s.autoplay.set_selection([25])
    assert s.autoplay.set_selection(range(20))
    assert s.controller.state == RoundState.IDLE


def test_selection_is_fixed_while_running():
    s = _auto_session()
    s.ui("startautobet")
    assert not s.autoplay.set_selection([4])
    assert s.autoplay.stored_selection == frozenset({0, 1})


def test_play_mode_switch_is_refused_during_a_manual_round():
    s = make_session()
    s.ui("bet")
    assert s.controller.state == RoundState.ROUND_ACTIVE
    s.ui("modechange", mode="auto")
    assert s.play_mode == "manual"
