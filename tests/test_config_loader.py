from pathlib import Path

import pytest

from mines_control.config import (
    VARIANT_MATCH,
    VARIANT_MINES,
    EngineConfig,
    clamp_mines,
    coerce_bet_count,
    coerce_flag,
)
from mines_control.errors import ConfigError
from mines_control.spec_loader import load_config_file, load_config_text, normalize_legacy_keys
from mines_control.spec_validation import assert_valid_config, is_valid_config, validate_config


def test_defaults_describe_a_five_by_five_board():
    cfg = EngineConfig.from_dict({})
    assert cfg.board.variant == VARIANT_MINES
    assert cfg.board.cell_count == 25
    assert cfg.board.mines == 5
    assert cfg.demo.enabled is True
    assert cfg.autoplay.bets is None
    assert cfg.timing.auto_reset_delay == pytest.approx(1.5)


def test_match_variant_uses_match_cells():
    cfg = EngineConfig.from_dict({"board": {"variant": "match", "match_cells": 12, "card_types": 7}})
    assert cfg.board.variant == VARIANT_MATCH
    assert cfg.board.cell_count == 12
    assert cfg.board.card_types == 7


def test_mines_are_clamped_to_leave_a_safe_cell():
    assert EngineConfig.from_dict({"board": {"mines": 30}}).board.mines == 24
    assert clamp_mines(0, 25) == 1
    assert clamp_mines("junk", 25) == 5


def test_loose_flags_and_bet_counts():
    assert coerce_flag("yes") == (True, True)
    assert coerce_flag("off") == (False, True)
    assert coerce_flag("maybe") == (None, False)
    assert coerce_flag("default", default=True) == (True, True)
    assert coerce_bet_count(None) is None
    assert coerce_bet_count(0) is None
    assert coerce_bet_count("12") == 12
    assert coerce_bet_count("lots") is None


def test_demo_flag_string_is_coerced():
    cfg = EngineConfig.from_dict({"demo": {"enabled": "off", "seed": 3}})
    assert cfg.demo.enabled is False
    assert cfg.demo.seed == 3


def test_validate_accepts_full_config():
    config = {
        "board": {"variant": "mines", "grid": 5, "mines": 3},
        "wager": {"default": 1, "min": 0.1, "max": 100},
        "payout": {"house_edge": 0.01, "match_multiplier": 5},
        "timing": {"selection_latency": 0.2, "auto_reset_delay": 1.5},
        "demo": {"enabled": True, "win_probability": 0.4, "seed": None},
        "autoplay": {"bets": 10, "stop_on_profit": None, "stop_on_loss": 5},
        "run": {"journal": {"path": "rounds.jsonl"}, "relay_log_size": 100},
    }
    assert validate_config(config) == []
    assert is_valid_config(config)


def test_validate_reports_each_problem():
    errors = validate_config(
        {
            "board": {"variant": "hex", "grid": 5, "mines": 25},
            "wager": {"min": 5, "max": 1},
            "demo": {"enabled": "sometimes", "win_probability": 2},
            "autoplay": {"bets": 1.5},
            "extras": {},
        }
    )
    assert "Unknown section: 'extras'" in errors
    assert any(e.startswith("board.variant must be one of") for e in errors)
    assert "board.mines must leave at least one safe cell (max 24)" in errors
    assert "wager.min must not exceed wager.max" in errors
    assert "demo.enabled must be a boolean" in errors
    assert "demo.win_probability must be <= 1" in errors
    assert "autoplay.bets must be an integer" in errors


def test_validate_rejects_non_mapping_root_and_sections():
    assert validate_config([]) == ["config root must be a mapping"]
    assert "Section 'board' must be a mapping" in validate_config({"board": 5})
    with pytest.raises(ConfigError) as exc:
        assert_valid_config({"timing": {"reveal_duration": -1}})
    assert exc.value.errors == ["timing.reveal_duration must be >= 0"]


def test_legacy_front_end_keys_are_migrated():
    config, records = normalize_legacy_keys(
        {"timing": {"autoResetDelayMs": 1500, "flipDuration": 300}, "board": {"cardTypes": 6}}
    )
    assert config["timing"]["auto_reset_delay"] == pytest.approx(1.5)
    assert config["timing"]["reveal_duration"] == pytest.approx(0.3)
    assert config["board"]["card_types"] == 6
    assert {r["action"] for r in records} == {"migrated"}


def test_legacy_key_loses_to_new_spelling():
    config, records = normalize_legacy_keys({"timing": {"flipDuration": 300, "reveal_duration": 0.5}})
    assert config["timing"] == {"reveal_duration": 0.5}
    assert records[0]["action"] == "kept_new_dropped_old"


def test_load_yaml_and_json_files(tmp_path: Path):
    yml = tmp_path / "cfg.yaml"
    yml.write_text("board:\n  grid: 4\n  mines: 2\n", encoding="utf-8")
    config, _ = load_config_file(yml)
    assert config["board"] == {"grid": 4, "mines": 2}

    js = tmp_path / "cfg.json"
    js.write_text('{"demo": {"winProbability": 0.3}}', encoding="utf-8")
    config, records = load_config_file(js)
    assert config["demo"] == {"win_probability": 0.3}
    assert records[0]["old"] == "demo.winProbability"


def test_loader_errors_are_config_errors(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config_file(tmp_path / "missing.yaml")
    with pytest.raises(ConfigError):
        load_config_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config_text("{not json", fmt="json")
