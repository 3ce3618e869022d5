"""
outcomes.py: constrained random layouts for a round.

Two board variants share this module:

* grid-mine: ``mines`` distinct cells hold a mine, every other cell a gem.
* match-type: every cell holds a card type id; a winning layout contains
  exactly three cells of the winning type, a losing layout never repeats a
  type more than twice.

Every generator takes an optional ``random.Random`` so a round can be
reproduced exactly from a seed.
"""

from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .config import VARIANT_MATCH, VARIANT_MINES

MINE = "mine"
GEM = "gem"

WINNING_MATCH_SIZE = 3
TYPE_CAP = 2

RESULT_WIN = "win"
RESULT_LOST = "lost"


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Assignment:
    """Committed cell → content mapping for one round. Never mutated."""

    outcomes: Mapping[int, Any]
    variant: str = VARIANT_MINES
    winning_type: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcomes", MappingProxyType(dict(self.outcomes)))

    @property
    def cells(self) -> Tuple[int, ...]:
        return tuple(sorted(self.outcomes))

    @property
    def cell_count(self) -> int:
        return len(self.outcomes)

    @property
    def mine_cells(self) -> FrozenSet[int]:
        return frozenset(c for c, v in self.outcomes.items() if v == MINE)

    @property
    def safe_count(self) -> int:
        return self.cell_count - len(self.mine_cells)

    @property
    def result(self) -> Optional[str]:
        """Pre-committed result of a match layout; ``None`` for mines."""
        if self.variant != VARIANT_MATCH:
            return None
        return RESULT_WIN if self.winning_type is not None else RESULT_LOST

    def content(self, cell: int) -> Any:
        return self.outcomes[cell]

    def is_unsafe(self, cell: int) -> bool:
        return self.outcomes.get(cell) == MINE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "winning_type": self.winning_type,
            "outcomes": {str(c): v for c, v in sorted(self.outcomes.items())},
        }


@dataclass(frozen=True)
class MatchLayout:
    assignment: Dict[int, int]
    winning_type: Optional[int] = None

    def to_assignment(self) -> Assignment:
        return Assignment(self.assignment, variant=VARIANT_MATCH, winning_type=self.winning_type)


def cell_id(row: int, col: int, grid: int) -> int:
    return int(row) * int(grid) + int(col)


def cell_coords(cell: int, grid: int) -> Tuple[int, int]:
    return divmod(int(cell), int(grid))


def _rng(rng: Optional[random.Random]) -> random.Random:
    return rng if rng is not None else random.Random()


# ---------------------------------------------------------------------------
# Match-type variant
# ---------------------------------------------------------------------------


def generate_winning_layout(
    cell_count: int,
    type_count: int,
    forced_winning_type: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> MatchLayout:
    """Exactly three cells of the winning type; other types capped at two.

    When every non-winning type has reached the cap (possible once
    ``type_count * 2 < cell_count - 3``) the winning type fills the cell.
    That fallback is deliberate and keeps generation total.
    """
    if type_count < 1:
        raise ValueError("type_count must be >= 1")
    if cell_count < WINNING_MATCH_SIZE:
        raise ValueError(f"cell_count must be >= {WINNING_MATCH_SIZE}")
    r = _rng(rng)

    if forced_winning_type is None:
        winning = r.randrange(type_count)
    else:
        winning = max(0, min(type_count - 1, int(forced_winning_type)))

    positions = list(range(cell_count))
    r.shuffle(positions)

    counts = [0] * type_count
    layout: Dict[int, int] = {}
    for pos in positions[:WINNING_MATCH_SIZE]:
        layout[pos] = winning
    counts[winning] = WINNING_MATCH_SIZE

    for pos in positions[WINNING_MATCH_SIZE:]:
        candidates = [t for t in range(type_count) if t != winning and counts[t] < TYPE_CAP]
        choice = r.choice(candidates) if candidates else winning
        layout[pos] = choice
        counts[choice] += 1

    return MatchLayout(layout, winning)


def generate_losing_layout(
    cell_count: int,
    type_count: int,
    rng: Optional[random.Random] = None,
) -> MatchLayout:
    """No type appears more than twice while the cap can be honoured.

    Past ``type_count * 2`` cells the least-used type is taken (ties broken
    by the random source) rather than raising.
    """
    if type_count < 1:
        raise ValueError("type_count must be >= 1")
    r = _rng(rng)
    counts = [0] * type_count
    layout: Dict[int, int] = {}
    for pos in range(cell_count):
        candidates = [t for t in range(type_count) if counts[t] < TYPE_CAP]
        if not candidates:
            low = min(counts)
            candidates = [t for t in range(type_count) if counts[t] == low]
        choice = r.choice(candidates)
        layout[pos] = choice
        counts[choice] += 1
    return MatchLayout(layout, None)


def build_match_round(
    type_count: int,
    cell_count: int,
    *,
    win_probability: float,
    forced_result: Optional[str] = None,
    forced_winning_type: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> Assignment:
    """Demo round for the match variant; the result is drawn first."""
    r = _rng(rng)
    result = forced_result
    if result not in (RESULT_WIN, RESULT_LOST):
        result = RESULT_WIN if r.random() < win_probability else RESULT_LOST
    if result == RESULT_WIN:
        layout = generate_winning_layout(cell_count, type_count, forced_winning_type, rng=r)
    else:
        layout = generate_losing_layout(cell_count, type_count, rng=r)
    return layout.to_assignment()


def type_counts(assignment: Mapping[int, Any]) -> Counter:
    return Counter(assignment.values())


# ---------------------------------------------------------------------------
# Grid-mine variant
# ---------------------------------------------------------------------------


def generate_mine_layout(
    cell_count: int,
    mines: int,
    exclude: Iterable[int] = (),
    rng: Optional[random.Random] = None,
) -> FrozenSet[int]:
    """``mines`` distinct cells drawn uniformly from cells not in ``exclude``."""
    excluded = set(exclude)
    pool = [c for c in range(cell_count) if c not in excluded]
    if mines < 0 or mines > len(pool):
        raise ValueError(f"cannot place {mines} mines in {len(pool)} free cells")
    return frozenset(_rng(rng).sample(pool, mines))


def mines_assignment(cell_count: int, mine_cells: Iterable[int]) -> Assignment:
    mined = set(mine_cells)
    return Assignment({c: (MINE if c in mined else GEM) for c in range(cell_count)})


def build_mines_round(
    cell_count: int,
    mines: int,
    rng: Optional[random.Random] = None,
) -> Assignment:
    return mines_assignment(cell_count, generate_mine_layout(cell_count, mines, rng=rng))


def complete_mine_layout(
    cell_count: int,
    mines: int,
    known: Mapping[int, str],
    rng: Optional[random.Random] = None,
) -> Assignment:
    """Commit a full layout consistent with cells already settled.

    Used when the settlement service resolved picks one by one without
    publishing its layout: known mines are kept, the rest are drawn from the
    cells nobody has seen. Extra known mines beyond ``mines`` are kept too;
    the settled outcome always wins over the configured count.
    """
    known_mines = {c for c, v in known.items() if v == MINE}
    remaining = max(0, mines - len(known_mines))
    free = cell_count - len(known)
    extra = generate_mine_layout(cell_count, min(remaining, free), exclude=known.keys(), rng=rng)
    return mines_assignment(cell_count, known_mines | extra)
