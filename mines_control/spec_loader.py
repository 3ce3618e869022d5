"""Config file loading and legacy-key normalization."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from .errors import ConfigError

# Front-end style keys accepted for compatibility with older board configs.
# (section, old key) -> (new key, scale applied to the value)
LEGACY_KEY_MAP: Dict[Tuple[str, str], Tuple[str, float]] = {
    ("board", "cardTypes"): ("card_types", 1.0),
    ("board", "matchCells"): ("match_cells", 1.0),
    ("timing", "autoResetDelayMs"): ("auto_reset_delay", 0.001),
    ("timing", "revealAllIntervalDelay"): ("reveal_stagger", 0.001),
    ("timing", "flipDuration"): ("reveal_duration", 0.001),
    ("demo", "winProbability"): ("win_probability", 1.0),
}


def normalize_legacy_keys(config: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Dict[str, str]]]:
    """Rename legacy keys in place.

    Returns the (possibly mutated) config alongside one record per legacy key
    encountered. When both spellings are present the new one wins.
    """

    records: List[Dict[str, str]] = []
    for (section, old_key), (new_key, scale) in LEGACY_KEY_MAP.items():
        blk = config.get(section)
        if not isinstance(blk, dict) or old_key not in blk:
            continue
        old_value = blk.pop(old_key)
        if new_key in blk:
            action = "kept_new_dropped_old"
        else:
            value = old_value
            if scale != 1.0 and isinstance(old_value, (int, float)) and not isinstance(old_value, bool):
                value = float(old_value) * scale
            blk[new_key] = value
            action = "migrated"
        records.append(
            {
                "old": f"{section}.{old_key}",
                "new": f"{section}.{new_key}",
                "action": action,
            }
        )
    return config, records


def load_config_text(text: str, *, fmt: str = "yaml") -> Dict[str, Any]:
    if fmt == "json":
        try:
            data: Any = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON: {exc}") from exc
    else:
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def load_config_file(path: str | Path) -> Tuple[Dict[str, Any], List[Dict[str, str]]]:
    """Load a config from YAML or JSON, applying legacy key normalization."""

    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"file not found: {p}") from exc

    fmt = "json" if p.suffix.lower() == ".json" else "yaml"
    data = load_config_text(text, fmt=fmt)
    return normalize_legacy_keys(data)
