"""Round journal: one JSON line per finalized round."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

JOURNAL_SCHEMA_VERSION = "1.0"


class RoundJournal:
    def __init__(self, path: str | Path, *, session_id: Optional[str] = None) -> None:
        self.path = str(path)
        self.session_id = session_id or time.strftime("%Y%m%d-%H%M%S")
        self.seq = 0

    def append(self, result: Any, *, net_total: Optional[float] = None, cycle: Optional[int] = None) -> Dict[str, Any]:
        self.seq += 1
        payload: Dict[str, Any] = {
            "schema": JOURNAL_SCHEMA_VERSION,
            "ts": time.time(),
            "session_id": self.session_id,
            "journal_seq": self.seq,
        }
        payload.update(result.to_dict() if hasattr(result, "to_dict") else dict(result))
        if net_total is not None:
            payload["net_total"] = round(float(net_total), 8)
        if cycle is not None:
            payload["auto_cycle"] = cycle

        dest = Path(self.path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with dest.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload) + "\n")
        return payload


def iter_journal(path: str | Path) -> Iterator[Dict[str, Any]]:
    """Yield journal rows, skipping blank lines. Schema mismatches raise ``ValueError``."""
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            row = json.loads(line)
            schema = row.get("schema")
            if schema != JOURNAL_SCHEMA_VERSION:
                raise ValueError(f"journal_schema_mismatch:{schema}")
            yield row


def summarize_journal(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    outcomes: Dict[str, int] = {}
    wagered = paid = 0.0
    for row in rows:
        outcomes[row.get("outcome", "?")] = outcomes.get(row.get("outcome", "?"), 0) + 1
        wagered += float(row.get("wager") or 0.0)
        paid += float(row.get("payout") or 0.0)
    return {
        "rounds": len(rows),
        "outcomes": outcomes,
        "wagered": round(wagered, 8),
        "paid": round(paid, 8),
        "net": round(paid - wagered, 8),
    }
