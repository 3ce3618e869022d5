"""
Module entrypoint:

  python -m mines_control validate path/to/config.yaml
  python -m mines_control simulate path/to/config.yaml --rounds 20 --auto
"""
from __future__ import annotations

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
