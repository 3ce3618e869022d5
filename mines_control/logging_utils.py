from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

# Engine loggers all live under this prefix (MC.Round, MC.Relay, ...)
ENGINE_LOGGER = "MC"

_LEVELS_BY_VERBOSE = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def level_for(verbose_count: int) -> int:
    if verbose_count < 0:
        return logging.ERROR
    return _LEVELS_BY_VERBOSE.get(verbose_count, logging.DEBUG)


def setup_logging(
    verbose_count: int = 0,
    logger_name: Optional[str] = None,
    *,
    log_file: Optional[str | Path] = None,
) -> logging.Logger:
    """
    Configure the root (or a named) logger from a -v count.

    default → WARNING, -v → INFO, -vv → DEBUG. ``log_file`` adds a second
    handler that always records at DEBUG so a quiet console can still be
    paired with a full round trace on disk.

    Calling this again only adjusts levels; handlers are attached once.
    """
    level = level_for(verbose_count)
    logger = logging.getLogger(logger_name or "")
    logger.setLevel(logging.DEBUG if log_file else level)

    handlers = {getattr(h, "_mines_ctl_handler", None): h for h in logger.handlers}
    console = handlers.get("console")
    if console is None:
        console = logging.StreamHandler(stream=sys.stderr)
        console._mines_ctl_handler = "console"  # type: ignore[attr-defined]
        console.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(console)
    console.setLevel(level)

    if log_file and "file" not in handlers:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler._mines_ctl_handler = "file"  # type: ignore[attr-defined]
        file_handler.setFormatter(logging.Formatter(fmt=_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    # The HTTP harness pulls these in; keep them quiet unless DEBUG
    if level > logging.DEBUG:
        for noisy in ("httpx", "asyncio", "fastapi"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
