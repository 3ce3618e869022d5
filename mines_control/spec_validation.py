from __future__ import annotations

from typing import Any, Dict, List

from .config import CARD_TYPES_MIN, VARIANTS, coerce_flag
from .errors import ConfigError

_KNOWN_SECTIONS = ("board", "wager", "payout", "timing", "demo", "autoplay", "run")


def is_valid_config(config: Dict[str, Any]) -> bool:
    return len(validate_config(config)) == 0


def assert_valid_config(config: Dict[str, Any]) -> None:
    errs = validate_config(config)
    if errs:
        raise ConfigError(errs)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_number(
    errors: List[str],
    blk: Dict[str, Any],
    section: str,
    key: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    integer: bool = False,
    allow_none: bool = False,
) -> None:
    if key not in blk:
        return
    value = blk[key]
    if value is None and allow_none:
        return
    if not _is_number(value) or (integer and float(value) != int(value)):
        kind = "an integer" if integer else "a number"
        errors.append(f"{section}.{key} must be {kind}")
        return
    if minimum is not None and value < minimum:
        errors.append(f"{section}.{key} must be >= {minimum}")
    if maximum is not None and value > maximum:
        errors.append(f"{section}.{key} must be <= {maximum}")


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Return a flat list of hard validation errors (no warnings).

    Every section is optional; only the keys present are checked. Mines are
    range-checked against the grid because the engine clamps silently and a
    clamped config is almost always a typo.
    """
    errors: List[str] = []
    if not isinstance(config, dict):
        return ["config root must be a mapping"]

    for name in config:
        if name not in _KNOWN_SECTIONS:
            errors.append(f"Unknown section: '{name}'")
    for name in _KNOWN_SECTIONS:
        if name in config and not isinstance(config[name], dict):
            errors.append(f"Section '{name}' must be a mapping")

    def blk(name: str) -> Dict[str, Any]:
        value = config.get(name)
        return value if isinstance(value, dict) else {}

    board = blk("board")
    if "variant" in board and str(board["variant"]).lower() not in VARIANTS:
        errors.append(f"board.variant must be one of {list(VARIANTS)}")
    _check_number(errors, board, "board", "grid", minimum=2, maximum=12, integer=True)
    _check_number(errors, board, "board", "card_types", minimum=CARD_TYPES_MIN, integer=True)
    _check_number(errors, board, "board", "match_cells", minimum=3, integer=True)
    _check_number(errors, board, "board", "mines", minimum=1, integer=True)
    grid = board.get("grid", 5)
    if _is_number(board.get("mines")) and _is_number(grid) and board["mines"] > grid * grid - 1:
        errors.append(f"board.mines must leave at least one safe cell (max {int(grid * grid - 1)})")

    wager = blk("wager")
    for key in ("default", "min", "max"):
        _check_number(errors, wager, "wager", key, minimum=0)
    if all(_is_number(wager.get(k)) for k in ("min", "max")) and wager["min"] > wager["max"]:
        errors.append("wager.min must not exceed wager.max")

    payout = blk("payout")
    _check_number(errors, payout, "payout", "house_edge", minimum=0, maximum=0.5)
    _check_number(errors, payout, "payout", "match_multiplier", minimum=1)

    timing = blk("timing")
    for key in ("selection_latency", "reveal_duration", "reveal_stagger", "auto_reset_delay"):
        _check_number(errors, timing, "timing", key, minimum=0)

    demo = blk("demo")
    if "enabled" in demo:
        _, ok = coerce_flag(demo["enabled"])
        if not ok:
            errors.append("demo.enabled must be a boolean")
    _check_number(errors, demo, "demo", "win_probability", minimum=0, maximum=1)
    _check_number(errors, demo, "demo", "seed", integer=True, allow_none=True)

    autoplay = blk("autoplay")
    _check_number(errors, autoplay, "autoplay", "bets", minimum=0, integer=True, allow_none=True)
    _check_number(errors, autoplay, "autoplay", "stop_on_profit", minimum=0, allow_none=True)
    _check_number(errors, autoplay, "autoplay", "stop_on_loss", minimum=0, allow_none=True)

    run = blk("run")
    journal = run.get("journal")
    if journal is not None and not isinstance(journal, dict):
        errors.append("run.journal must be a mapping")
    _check_number(errors, run, "run", "relay_log_size", minimum=1, integer=True)

    return errors
