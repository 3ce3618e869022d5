"""
events.py: settlement message taxonomy and the relay envelope.

Outbound (engine → settlement service) and inbound (service → engine) types
are fixed strings shared with the service; ``RelayEnvelope`` is the only shape
that crosses the channel.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

DIRECTION_IN = "in"
DIRECTION_OUT = "out"

# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

OUT_BET = "action:bet"
OUT_MANUAL_SELECTION = "game:manual-selection"
OUT_START_AUTOBET = "control:start-autobet"
OUT_STOP_AUTOBET = "action:stop-autobet"
OUT_CASHOUT = "action:cashout"
OUT_MINES = "control:mines"
OUT_BET_VALUE = "control:bet-value"

OUTBOUND_TYPES: Set[str] = {
    OUT_BET,
    OUT_MANUAL_SELECTION,
    OUT_START_AUTOBET,
    OUT_STOP_AUTOBET,
    OUT_CASHOUT,
    OUT_MINES,
    OUT_BET_VALUE,
}

# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

IN_BET_RESULT = "bet-result"
IN_AUTO_BET_RESULT = "auto-bet-result"
IN_STOP_AUTOBET = "stop-autobet"
IN_FINALIZE_BET = "finalize-bet"
IN_CASHOUT = "cashout"
IN_PROFIT_TOTAL = "profit:update-total"
IN_PROFIT_MULTIPLIER = "profit:update-multiplier"

INBOUND_TYPES: Set[str] = {
    IN_BET_RESULT,
    IN_AUTO_BET_RESULT,
    IN_STOP_AUTOBET,
    IN_FINALIZE_BET,
    IN_CASHOUT,
    IN_PROFIT_TOTAL,
    IN_PROFIT_MULTIPLIER,
}


@dataclass
class RelayEnvelope:
    direction: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    suppressed: bool = False
    ts: float = field(default_factory=time.time)
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "ts": self.ts,
            "direction": self.direction,
            "type": self.type,
            "payload": dict(self.payload),
            "suppressed": self.suppressed,
        }


def make_envelope(
    direction: str,
    msg_type: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    suppressed: bool = False,
) -> RelayEnvelope:
    """Build an envelope, copying the payload so later mutation cannot leak."""
    if direction not in (DIRECTION_IN, DIRECTION_OUT):
        raise ValueError(f"bad direction: {direction!r}")
    body = dict(payload) if isinstance(payload, dict) else {}
    return RelayEnvelope(direction, str(msg_type or ""), body, bool(suppressed))
