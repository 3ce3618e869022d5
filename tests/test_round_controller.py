import pytest

from mines_control.errors import InvalidTransition
from mines_control.outcomes import GEM, MINE
from mines_control.payouts import mines_multiplier
from mines_control.round_controller import (
    OUTCOME_ABORTED,
    OUTCOME_CASHOUT,
    OUTCOME_LOST,
    OUTCOME_WIN,
    RoundState,
)
from mines_control.surfaces import BUTTON_DISABLED, BUTTON_ENABLED
from mines_control.timers import CancelToken

from tests import make_session, mine_cells, safe_cells


def _start_round(session):
    assert session.ui("bet")
    assert session.controller.state == RoundState.ROUND_ACTIVE
    return session.controller.assignment


def test_bet_commits_layout_and_activates_round():
    s = make_session()
    assignment = _start_round(s)
    assert assignment.cell_count == 25
    assert len(assignment.mine_cells) == 5
    assert s.render.rounds_set == 1
    assert s.control.bet_button == (BUTTON_DISABLED, "Bet")
    assert s.control.cashout_available is False


def test_safe_pick_then_cashout_pays_current_multiplier():
    s = make_session()
    assignment = _start_round(s)
    cell = safe_cells(assignment)[0]

    assert s.ui("pick", cell=cell)
    assert s.controller.state == RoundState.SELECTION_PENDING
    s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.ROUND_ACTIVE
    assert s.controller.revealed == {cell: GEM}
    assert s.controller.cashout_eligible
    assert s.control.cashout_available is True
    assert s.control.multiplier == f"{mines_multiplier(25, 5, 1):.2f}"

    s.scheduler.advance(0.3)
    assert s.controller.animating == set()

    s.ui("cashout")
    assert s.controller.state == RoundState.CASHOUT
    assert s.control.cashout_available is False
    s.scheduler.run_until_idle()

    assert s.controller.state == RoundState.IDLE
    result = s.history[-1]
    assert result.outcome == OUTCOME_CASHOUT
    assert result.payout == pytest.approx(1.2375)
    assert s.total_profit == pytest.approx(0.2375)
    assert s.control.total_profit == "0.23750000"
    assert s.control.bet_button == (BUTTON_ENABLED, "Bet")


def test_mine_pick_ends_round_and_reveals_the_rest():
    s = make_session()
    assignment = _start_round(s)
    cell = mine_cells(assignment)[0]

    s.ui("pick", cell=cell)
    s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.GAME_OVER
    assert s.control.cashout_available is False
    last = s.render.reveal_all_calls[-1]
    assert last["triggered"] == cell
    assert cell not in last["cells"]
    assert len(last["cells"]) == 24

    s.scheduler.run_until_idle()
    assert s.controller.state == RoundState.IDLE
    assert s.history[-1].outcome == OUTCOME_LOST
    assert s.history[-1].payout == 0.0
    assert s.total_profit == pytest.approx(-1.0)


def test_pick_by_row_and_column():
    s = make_session()
    assignment = _start_round(s)
    cell = safe_cells(assignment)[-1]
    row, col = divmod(cell, 5)
    s.ui("pick", row=row, col=col)
    assert s.controller.selection.cells == (cell,)


def test_second_pick_while_pending_is_rejected():
    s = make_session()
    assignment = _start_round(s)
    first, second = safe_cells(assignment)[:2]
    s.ui("pick", cell=first)
    s.ui("pick", cell=second)
    assert s.controller.stats["rejected"]["pick"] == 1
    assert s.controller.selection.cells == (first,)
    s.scheduler.advance(0.4)
    assert set(s.controller.revealed) == {first}


def test_already_revealed_and_off_board_picks_are_rejected():
    s = make_session()
    assignment = _start_round(s)
    cell = safe_cells(assignment)[0]
    s.ui("pick", cell=cell)
    s.scheduler.advance(1.0)
    assert not s.controller.pick(cell)
    assert not s.controller.pick(25)
    assert not s.controller.pick("nope")
    assert s.controller.stats["rejected"]["pick"] == 3


def test_bet_during_round_and_cashout_before_reveal_are_rejected():
    s = make_session()
    _start_round(s)
    round_id = s.controller.round_id
    s.ui("bet")
    s.ui("cashout")
    assert s.controller.stats["rejected"]["bet"] == 1
    assert s.controller.stats["rejected"]["cashout"] == 1
    assert s.controller.round_id == round_id
    assert s.controller.state == RoundState.ROUND_ACTIVE


def test_wager_outside_limits_is_rejected():
    s = make_session({"wager": {"min": 1, "max": 10}})
    assert not s.controller.submit_wager(0.5)
    assert not s.controller.submit_wager(11)
    assert not s.controller.submit_wager("lots")
    assert s.controller.state == RoundState.IDLE


def test_stale_tokens_are_dropped():
    s = make_session()
    _start_round(s)
    c = s.controller
    assert not c.apply_assignment(CancelToken(), None)
    assert not c.apply_settlement(CancelToken(), {0: GEM})
    assert not c.mark_dispatched(CancelToken())
    assert not c.apply_cashout(CancelToken())
    assert c.stats["stale"]["settlement"] == 1
    assert c.state == RoundState.ROUND_ACTIVE


def test_illegal_transition_raises_internally():
    s = make_session()
    with pytest.raises(InvalidTransition):
        s.controller._transition(RoundState.GAME_OVER)


def test_reset_is_idempotent_and_cancels_pending_settlement():
    s = make_session()
    assignment = _start_round(s)
    s.ui("pick", cell=safe_cells(assignment)[0])
    assert s.controller.reset() is True
    assert s.controller.reset() is False
    s.scheduler.advance(5.0)
    assert s.controller.state == RoundState.IDLE
    assert s.controller.revealed == {}
    assert s.history == []
    assert s.render.resets == 1


def test_revealing_every_safe_cell_wins():
    s = make_session({"board": {"grid": 3, "mines": 7}})
    assignment = _start_round(s)
    for cell in safe_cells(assignment):
        s.ui("pick", cell=cell)
        s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.GAME_OVER
    s.scheduler.run_until_idle()
    result = s.history[-1]
    assert result.outcome == OUTCOME_WIN
    assert result.multiplier == pytest.approx(mines_multiplier(9, 7, 2))
    assert result.payout == pytest.approx(mines_multiplier(9, 7, 2))


def test_force_finalize_with_nothing_revealed_refunds_the_wager():
    s = make_session()
    _start_round(s)
    result = s.controller.force_finalize("test")
    assert result.outcome == OUTCOME_ABORTED
    assert result.payout == 1.0
    assert result.net == 0.0
    assert s.controller.state == RoundState.IDLE
    assert s.history == [result]


def test_force_finalize_after_safe_reveal_cashes_out():
    s = make_session()
    assignment = _start_round(s)
    s.ui("pick", cell=safe_cells(assignment)[0])
    s.scheduler.advance(0.4)
    result = s.controller.force_finalize("test")
    assert result.outcome == OUTCOME_CASHOUT
    assert result.payout == pytest.approx(1.2375)
    assert s.render.reveal_all_calls[-1]["immediate"] is True
    s.scheduler.run_until_idle()
    assert s.controller.state == RoundState.IDLE
    assert len(s.history) == 1


def test_force_finalize_when_idle_is_a_noop():
    s = make_session()
    assert s.controller.force_finalize("test") is None
    assert s.history == []


def test_late_reveal_completion_after_reset_is_stale():
    s = make_session()
    assignment = _start_round(s)
    cell = safe_cells(assignment)[0]
    s.ui("pick", cell=cell)
    s.scheduler.advance(0.4)
    s.controller.reset()
    assert not s.controller.on_reveal_complete(cell, GEM)
    assert not s.controller.on_round_complete(None)


def test_layout_is_fixed_before_any_pick():
    s = make_session()
    assignment = _start_round(s)
    mine = mine_cells(assignment)[0]
    s.ui("pick", cell=mine)
    s.scheduler.run_until_idle()
    assert s.history[-1].revealed == {mine: MINE}
