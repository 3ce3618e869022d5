from __future__ import annotations

from typing import Optional

from .config import HOUSE_EDGE_DEFAULT

# Payout values are rounded the way the control panel displays them
DISPLAY_DECIMALS = 8


def mines_multiplier(
    cell_count: int,
    mines: int,
    safe_reveals: int,
    *,
    house_edge: float = HOUSE_EDGE_DEFAULT,
) -> float:
    """Fair odds of surviving ``safe_reveals`` picks, less the house edge.

    Zero reveals pay nothing (multiplier 0.0), which is what makes an
    untouched round ineligible for cashout.
    """
    safe_total = cell_count - mines
    if safe_reveals <= 0:
        return 0.0
    if safe_reveals > safe_total:
        raise ValueError("more safe reveals than safe cells")
    fair = 1.0
    for i in range(safe_reveals):
        fair *= (cell_count - i) / (safe_total - i)
    return round(fair * (1.0 - house_edge), DISPLAY_DECIMALS)


def payout_for(amount: float, multiplier: Optional[float]) -> float:
    if not multiplier:
        return 0.0
    return round(float(amount) * float(multiplier), DISPLAY_DECIMALS)


def format_amount(value: float) -> str:
    return f"{float(value):.{DISPLAY_DECIMALS}f}"
