# tests/test_cli.py
import json
import subprocess
import sys

import pytest

from mines_control import __version__
from mines_control.cli import main


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


BOARD_YAML = """\
board:
  variant: mines
  grid: 5
  mines: 3
wager:
  default: 1
timing:
  selection_latency: 0.2
  reveal_duration: 0.1
  reveal_stagger: 0.01
  auto_reset_delay: 0.5
demo:
  enabled: true
  seed: 11
"""


def test_cli_validate_ok(tmp_path):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    res = subprocess.run(
        [sys.executable, "-m", "mines_control", "validate", path],
        capture_output=True,
        text=True,
    )
    assert res.returncode == 0, res.stderr
    assert "OK:" in res.stdout


def test_cli_validate_errors(tmp_path):
    path = _write(tmp_path, "bad.yaml", "board:\n  grid: 5\n  mines: 30\nsurprise: {}\n")
    res = subprocess.run(
        [sys.executable, "-m", "mines_control", "validate", path],
        capture_output=True,
        text=True,
    )
    assert res.returncode == 2
    assert "failed validation" in res.stderr.lower()
    assert "board.mines must leave at least one safe cell (max 24)" in res.stderr
    assert "Unknown section: 'surprise'" in res.stderr


def test_validate_missing_file(tmp_path, capsys):
    assert main(["validate", str(tmp_path / "nope.yaml")]) == 2
    assert "failed validation" in capsys.readouterr().err


def test_simulate_manual_rounds(tmp_path, capsys):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    assert main(["simulate", path, "--rounds", "4", "--picks", "2", "--seed", "3"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["version"] == __version__
    assert summary["settlement_mode"] == "demo"
    assert summary["rounds"] == 4
    assert sum(summary["outcomes"].values()) == 4
    assert set(summary["outcomes"]) <= {"cashout", "lost"}
    assert summary["wagered"] == 4.0
    assert summary["net"] == pytest.approx(summary["paid"] - summary["wagered"])
    assert summary["final_state"] == "idle"


def test_simulate_is_reproducible_with_a_seed(tmp_path, capsys):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    main(["simulate", path, "--rounds", "3", "--seed", "9"])
    first = json.loads(capsys.readouterr().out)
    main(["simulate", path, "--rounds", "3", "--seed", "9"])
    second = json.loads(capsys.readouterr().out)
    assert first == second


def test_simulate_auto_play(tmp_path, capsys):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    assert main(["simulate", path, "--auto", "--rounds", "3", "--picks", "2"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["rounds"] == 3
    assert summary["autoplay_stop_reason"] == "bets_exhausted"
    assert set(summary["outcomes"]) <= {"win", "lost"}
    assert summary["final_state"] == "idle"


def test_simulate_through_loopback_service(tmp_path, capsys):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    assert main(["simulate", path, "--loopback", "--rounds", "2", "--seed", "4"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["settlement_mode"] == "live"
    assert summary["rounds"] == 2
    assert summary["relay"]["sent"] >= 2
    assert summary["relay"]["received"] >= 2
    assert summary["final_state"] == "idle"


def test_simulate_match_variant(tmp_path, capsys):
    path = _write(tmp_path, "match.yaml", "board:\n  variant: match\n  card_types: 6\ndemo:\n  seed: 2\n")
    assert main(["simulate", path, "--rounds", "3"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["variant"] == "match"
    assert summary["rounds"] == 3
    assert set(summary["outcomes"]) <= {"win", "lost"}


def test_simulate_writes_a_journal_the_journal_command_reads(tmp_path, capsys):
    path = _write(tmp_path, "board.yaml", BOARD_YAML)
    journal = tmp_path / "out" / "rounds.jsonl"
    assert main(["simulate", path, "--rounds", "3", "--journal", str(journal)]) == 0
    simulated = json.loads(capsys.readouterr().out)

    assert main(["journal", str(journal)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["rounds"] == 3
    assert summary["outcomes"] == simulated["outcomes"]
    assert summary["net"] == pytest.approx(simulated["net"])


def test_journal_errors(tmp_path, capsys):
    assert main(["journal", str(tmp_path / "missing.jsonl")]) == 2
    bad = _write(tmp_path, "bad.jsonl", '{"schema": "0.1"}\n')
    assert main(["journal", bad]) == 2
    assert "journal_schema_mismatch" in capsys.readouterr().err


def test_no_subcommand_prints_help(capsys):
    assert main([]) == 1
    assert "mines-ctl" in capsys.readouterr().out


def test_serve_hands_the_app_to_uvicorn(tmp_path, monkeypatch):
    import uvicorn
    from fastapi import FastAPI

    from mines_control.timers import AsyncioScheduler, ManualClock

    calls = []

    def fake_run(app, **kwargs):
        calls.append((app, kwargs))

    monkeypatch.setattr(uvicorn, "run", fake_run)
    path = _write(tmp_path, "board.yaml", BOARD_YAML)

    assert main(["serve", path, "--port", "9011"]) == 0
    app, kwargs = calls[-1]
    assert isinstance(app, FastAPI)
    assert kwargs["port"] == 9011
    assert kwargs["host"] == "127.0.0.1"
    assert isinstance(app.state.session.scheduler, AsyncioScheduler)

    assert main(["serve", path, "--virtual-clock", "--loopback"]) == 0
    session = calls[-1][0].state.session
    assert isinstance(session.scheduler, ManualClock)
    assert session.relay.mode == "live"


def test_serve_rejects_an_invalid_config(tmp_path, monkeypatch, capsys):
    import uvicorn

    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: pytest.fail("should not serve"))
    path = _write(tmp_path, "bad.yaml", "board:\n  grid: 1\n")
    assert main(["serve", path]) == 2
    assert "failed validation" in capsys.readouterr().err
