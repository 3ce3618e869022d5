# mines_control/__init__.py
"""
Mines Control: round lifecycle, settlement relay and auto-play engine for a
tile-reveal wagering board.
"""

from .config import EngineConfig
from .errors import ConfigError, InvalidTransition, MalformedEnvelope, MinesControlError
from .outcomes import Assignment, generate_losing_layout, generate_mine_layout, generate_winning_layout
from .relay import LoopbackSettlement, RecordingChannel, RelayBridge, SettlementChannel
from .round_controller import RoundController, RoundResult, RoundState
from .autoplay import AutoPlayOrchestrator, AutoPlaySession
from .session import GameSession
from .surfaces import ControlSurface, RenderSurface, derive_control_state
from .timers import AsyncioScheduler, CancelToken, ManualClock

__version__ = "1.0.0"

__all__ = [
    "EngineConfig",
    # Errors
    "ConfigError",
    "InvalidTransition",
    "MalformedEnvelope",
    "MinesControlError",
    # Outcomes
    "Assignment",
    "generate_losing_layout",
    "generate_mine_layout",
    "generate_winning_layout",
    # Relay
    "LoopbackSettlement",
    "RecordingChannel",
    "RelayBridge",
    "SettlementChannel",
    # Rounds and auto-play
    "RoundController",
    "RoundResult",
    "RoundState",
    "AutoPlayOrchestrator",
    "AutoPlaySession",
    "GameSession",
    # Surfaces
    "ControlSurface",
    "RenderSurface",
    "derive_control_state",
    # Timers
    "AsyncioScheduler",
    "CancelToken",
    "ManualClock",
    "__version__",
]
