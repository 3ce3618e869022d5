"""Runtime configuration defaults and normalization helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

VARIANT_MINES = "mines"
VARIANT_MATCH = "match"
VARIANTS = (VARIANT_MINES, VARIANT_MATCH)

GRID_DEFAULT: int = 5
MINES_DEFAULT: int = 5
CARD_TYPES_DEFAULT: int = 6
CARD_TYPES_MIN: int = 5
MATCH_CELLS_DEFAULT: int = 9

WAGER_DEFAULT: float = 1.0
WAGER_MIN_DEFAULT: float = 0.00000001
WAGER_MAX_DEFAULT: float = 1000.0

HOUSE_EDGE_DEFAULT: float = 0.01
MATCH_MULTIPLIER_DEFAULT: float = 5.0

SELECTION_LATENCY_DEFAULT: float = 0.4
REVEAL_DURATION_DEFAULT: float = 0.3
REVEAL_STAGGER_DEFAULT: float = 0.04
AUTO_RESET_DELAY_DEFAULT: float = 1.5

DEMO_ENABLED_DEFAULT: bool = True
WIN_PROBABILITY_DEFAULT: float = 0.45
RELAY_LOG_SIZE_DEFAULT: int = 500

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}
_DEFAULT_STRINGS = {"default", "auto", "inherit"}


def coerce_flag(value: Any, *, default: Optional[bool] = None) -> Tuple[Optional[bool], bool]:
    """Coerce a loosely-typed flag value into ``True``/``False``/``None``.

    ``default`` is returned when ``value`` is ``None`` or explicitly requests
    inheritance (``"default"``/``"auto"``). The boolean in the return tuple
    indicates whether the coercion succeeded.
    """

    if isinstance(value, bool):
        return value, True
    if value is None:
        return default, True
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True, True
        if text in _FALSE_STRINGS:
            return False, True
        if default is not None and text in _DEFAULT_STRINGS:
            return default, True
        return None, False
    if isinstance(value, (int, float)):
        if value == 1:
            return True, True
        if value == 0:
            return False, True
        return None, False
    return None, False


def coerce_optional_number(value: Any) -> Optional[float]:
    """``None``/blank/non-numeric → ``None``; otherwise a float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def coerce_bet_count(value: Any) -> Optional[int]:
    """Auto-play bet count; ``None``, ``0`` or garbage means unbounded."""
    number = coerce_optional_number(value)
    if number is None or number <= 0:
        return None
    return int(number)


def clamp_mines(mines: Any, cell_count: int) -> int:
    """Keep at least one mine and at least one safe cell on the board."""
    try:
        value = int(mines)
    except (TypeError, ValueError):
        value = MINES_DEFAULT
    return max(1, min(value, cell_count - 1))


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    blk = data.get(key) if isinstance(data, dict) else None
    return blk if isinstance(blk, dict) else {}


@dataclass
class BoardConfig:
    variant: str = VARIANT_MINES
    grid: int = GRID_DEFAULT
    mines: int = MINES_DEFAULT
    card_types: int = CARD_TYPES_DEFAULT
    match_cells: int = MATCH_CELLS_DEFAULT

    @property
    def cell_count(self) -> int:
        if self.variant == VARIANT_MATCH:
            return self.match_cells
        return self.grid * self.grid


@dataclass
class WagerConfig:
    default: float = WAGER_DEFAULT
    min: float = WAGER_MIN_DEFAULT
    max: float = WAGER_MAX_DEFAULT


@dataclass
class PayoutConfig:
    house_edge: float = HOUSE_EDGE_DEFAULT
    match_multiplier: float = MATCH_MULTIPLIER_DEFAULT


@dataclass
class TimingConfig:
    selection_latency: float = SELECTION_LATENCY_DEFAULT
    reveal_duration: float = REVEAL_DURATION_DEFAULT
    reveal_stagger: float = REVEAL_STAGGER_DEFAULT
    auto_reset_delay: float = AUTO_RESET_DELAY_DEFAULT


@dataclass
class DemoConfig:
    enabled: bool = DEMO_ENABLED_DEFAULT
    win_probability: float = WIN_PROBABILITY_DEFAULT
    seed: Optional[int] = None


@dataclass
class AutoPlayDefaults:
    bets: Optional[int] = None
    stop_on_profit: Optional[float] = None
    stop_on_loss: Optional[float] = None


@dataclass
class EngineConfig:
    board: BoardConfig = field(default_factory=BoardConfig)
    wager: WagerConfig = field(default_factory=WagerConfig)
    payout: PayoutConfig = field(default_factory=PayoutConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    demo: DemoConfig = field(default_factory=DemoConfig)
    autoplay: AutoPlayDefaults = field(default_factory=AutoPlayDefaults)
    journal_path: Optional[str] = None
    relay_log_size: int = RELAY_LOG_SIZE_DEFAULT

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """Build a typed config from a loaded YAML/JSON mapping.

        Values are assumed to have passed ``validate_config``; anything still
        unusable falls back to its default instead of raising.
        """
        data = data or {}
        board_blk = _section(data, "board")
        variant = str(board_blk.get("variant", VARIANT_MINES)).strip().lower()
        if variant not in VARIANTS:
            variant = VARIANT_MINES
        board = BoardConfig(
            variant=variant,
            grid=int(board_blk.get("grid", GRID_DEFAULT) or GRID_DEFAULT),
            card_types=max(CARD_TYPES_MIN, int(board_blk.get("card_types", CARD_TYPES_DEFAULT) or CARD_TYPES_DEFAULT)),
            match_cells=int(board_blk.get("match_cells", MATCH_CELLS_DEFAULT) or MATCH_CELLS_DEFAULT),
        )
        board.mines = clamp_mines(board_blk.get("mines", MINES_DEFAULT), board.grid * board.grid)

        wager_blk = _section(data, "wager")
        wager = WagerConfig(
            default=float(wager_blk.get("default", WAGER_DEFAULT)),
            min=float(wager_blk.get("min", WAGER_MIN_DEFAULT)),
            max=float(wager_blk.get("max", WAGER_MAX_DEFAULT)),
        )

        payout_blk = _section(data, "payout")
        payout = PayoutConfig(
            house_edge=float(payout_blk.get("house_edge", HOUSE_EDGE_DEFAULT)),
            match_multiplier=float(payout_blk.get("match_multiplier", MATCH_MULTIPLIER_DEFAULT)),
        )

        timing_blk = _section(data, "timing")
        timing = TimingConfig(
            selection_latency=float(timing_blk.get("selection_latency", SELECTION_LATENCY_DEFAULT)),
            reveal_duration=float(timing_blk.get("reveal_duration", REVEAL_DURATION_DEFAULT)),
            reveal_stagger=float(timing_blk.get("reveal_stagger", REVEAL_STAGGER_DEFAULT)),
            auto_reset_delay=float(timing_blk.get("auto_reset_delay", AUTO_RESET_DELAY_DEFAULT)),
        )

        demo_blk = _section(data, "demo")
        enabled, ok = coerce_flag(demo_blk.get("enabled"), default=DEMO_ENABLED_DEFAULT)
        seed_raw = demo_blk.get("seed")
        demo = DemoConfig(
            enabled=bool(enabled) if ok and enabled is not None else DEMO_ENABLED_DEFAULT,
            win_probability=float(demo_blk.get("win_probability", WIN_PROBABILITY_DEFAULT)),
            seed=int(seed_raw) if seed_raw is not None else None,
        )

        auto_blk = _section(data, "autoplay")
        autoplay = AutoPlayDefaults(
            bets=coerce_bet_count(auto_blk.get("bets")),
            stop_on_profit=coerce_optional_number(auto_blk.get("stop_on_profit")),
            stop_on_loss=coerce_optional_number(auto_blk.get("stop_on_loss")),
        )

        run_blk = _section(data, "run")
        journal_blk = _section(run_blk, "journal")
        journal_path = journal_blk.get("path") or None

        return cls(
            board=board,
            wager=wager,
            payout=payout,
            timing=timing,
            demo=demo,
            autoplay=autoplay,
            journal_path=str(journal_path) if journal_path else None,
            relay_log_size=int(run_blk.get("relay_log_size", RELAY_LOG_SIZE_DEFAULT) or RELAY_LOG_SIZE_DEFAULT),
        )
