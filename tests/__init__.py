from __future__ import annotations

import copy
import random
from typing import Any, Dict, Optional

from mines_control.config import EngineConfig
from mines_control.session import GameSession
from mines_control.timers import ManualClock


def make_config(data: Optional[Dict[str, Any]] = None, *, demo: bool = True, seed: int = 7) -> EngineConfig:
    raw = copy.deepcopy(data or {})
    raw.setdefault("demo", {}).setdefault("seed", seed)
    config = EngineConfig.from_dict(raw)
    config.demo.enabled = demo
    return config


def make_session(
    data: Optional[Dict[str, Any]] = None,
    *,
    demo: bool = True,
    channel=None,
    seed: int = 7,
    journal=None,
) -> GameSession:
    """Initialized session on a virtual clock with a recording control surface."""
    config = make_config(data, demo=demo, seed=seed)
    return GameSession(
        config,
        channel=channel,
        scheduler=ManualClock(),
        rng=random.Random(seed),
        journal=journal,
    ).init()


def safe_cells(assignment):
    return [c for c in assignment.cells if not assignment.is_unsafe(c)]


def mine_cells(assignment):
    return sorted(assignment.mine_cells)
