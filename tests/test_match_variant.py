import pytest

from mines_control.outcomes import type_counts
from mines_control.relay import RecordingChannel
from mines_control.round_controller import OUTCOME_LOST, OUTCOME_WIN, RoundState

from tests import make_session


def _match(win_probability, **kwargs):
    return make_session(
        {"board": {"variant": "match", "card_types": 6}, "demo": {"win_probability": win_probability}},
        **kwargs,
    )


def test_winning_round_pays_match_multiplier():
    s = _match(1.0)
    s.ui("bet")
    assignment = s.controller.assignment
    assert assignment.cell_count == 9
    assert type_counts(assignment.outcomes)[assignment.winning_type] == 3
    assert s.control.reveal_all_available is True
    assert not s.controller.cashout_eligible

    s.ui("revealall")
    s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.GAME_OVER
    s.scheduler.run_until_idle()

    result = s.history[-1]
    assert result.outcome == OUTCOME_WIN
    assert result.payout == pytest.approx(5.0)
    assert len(result.revealed) == 9


def test_losing_round_pays_nothing():
    s = _match(0.0)
    s.ui("bet")
    assert s.controller.assignment.winning_type is None
    s.ui("revealall")
    s.scheduler.run_until_idle()
    assert s.history[-1].outcome == OUTCOME_LOST
    assert s.history[-1].payout == 0.0


def test_single_cards_reveal_until_the_board_is_open():
    s = _match(1.0)
    s.ui("bet")
    s.ui("pick", cell=0)
    s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.ROUND_ACTIVE
    assert set(s.controller.revealed) == {0}
    assert s.controller.revealed_safe == 0

    for cell in range(1, 9):
        s.ui("pick", cell=cell)
        s.scheduler.advance(0.4)
    assert s.controller.state == RoundState.GAME_OVER
    s.scheduler.run_until_idle()
    assert s.history[-1].outcome == OUTCOME_WIN


def test_reveal_all_is_rejected_on_a_mines_board():
    s = make_session()
    s.ui("bet")
    s.ui("revealall")
    assert s.controller.stats["rejected"]["revealall"] == 1
    assert s.controller.state == RoundState.ROUND_ACTIVE


def test_live_match_round_is_built_from_the_service_result():
    channel = RecordingChannel()
    s = _match(0.0, demo=False, channel=channel)
    s.ui("bet")
    channel.deliver("bet-result", {"bet_id": 1, "result": "win", "winningCardTypeId": 2})
    assignment = s.controller.assignment
    assert assignment.winning_type == 2

    s.ui("revealall")
    s.scheduler.advance(0.4)
    assert "game:manual-selection" not in channel.types()
    s.scheduler.run_until_idle()
    assert s.history[-1].outcome == OUTCOME_WIN
