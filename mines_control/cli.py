from __future__ import annotations

import argparse
import json
import logging
import random
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__ as MC_VERSION
from .config import VARIANT_MATCH, EngineConfig
from .errors import ConfigError
from .journal import iter_journal, summarize_journal
from .logging_utils import setup_logging
from .relay import LoopbackSettlement
from .round_controller import RoundState
from .session import GameSession
from .spec_loader import load_config_file
from .spec_validation import validate_config
from .timers import AsyncioScheduler, ManualClock, Scheduler

log = logging.getLogger("mines-ctl")

# virtual seconds a simulated session may run before it is declared stuck
SIMULATION_TIME_LIMIT = 24 * 3600.0


def _load(path: str | Path) -> Dict[str, Any]:
    config, records = load_config_file(path)
    for rec in records:
        log.info("config key %s -> %s (%s)", rec["old"], rec["new"], rec["action"])
    return config


# ------------------------------- Commands ----------------------------------- #


def _cmd_validate(args: argparse.Namespace) -> int:
    path = Path(args.config)
    try:
        config = _load(path)
    except ConfigError as e:
        print(f"failed validation:\n- {e}", file=sys.stderr)
        return 2

    errors = validate_config(config)
    if errors:
        print("failed validation:", file=sys.stderr)
        for e in errors:
            print(f"- {e}", file=sys.stderr)
        return 2
    print(f"OK: {path}")
    return 0


def _simulate_manual(session: GameSession, clock: ManualClock, rounds: int, picks: int, rng: random.Random) -> None:
    controller = session.controller
    for _ in range(rounds):
        if not session.ui("bet") or controller.state != RoundState.ROUND_ACTIVE:
            clock.run_until_idle(SIMULATION_TIME_LIMIT)
        if controller.state != RoundState.ROUND_ACTIVE:
            log.warning("Round did not start (state=%s); stopping", controller.state.value)
            return
        if controller.match_variant:
            session.ui("revealall")
        else:
            cells = list(range(controller.cell_count))
            rng.shuffle(cells)
            for cell in cells[:picks]:
                if controller.state != RoundState.ROUND_ACTIVE:
                    break
                session.ui("pick", cell=cell)
                clock.run_until_idle(SIMULATION_TIME_LIMIT)
            if controller.state == RoundState.ROUND_ACTIVE:
                session.ui("cashout")
        clock.run_until_idle(SIMULATION_TIME_LIMIT)


def _simulate_auto(session: GameSession, clock: ManualClock, rounds: int, picks: int, rng: random.Random) -> None:
    cells = list(range(session.controller.cell_count))
    rng.shuffle(cells)
    session.ui("modechange", mode="auto")
    session.ui("selectionchange", cells=sorted(cells[:picks]))
    session.ui("startautobet", bets=rounds)
    clock.run_until_idle(SIMULATION_TIME_LIMIT)


def _load_engine_config(path: str) -> Optional[EngineConfig]:
    """Load and validate; report problems on stderr and return None."""
    try:
        raw = _load(path)
    except ConfigError as e:
        print(f"failed validation:\n- {e}", file=sys.stderr)
        return None
    errors = validate_config(raw)
    if errors:
        print("failed validation:", file=sys.stderr)
        for e in errors:
            print(f"- {e}", file=sys.stderr)
        return None
    return EngineConfig.from_dict(raw)


def _cmd_simulate(args: argparse.Namespace) -> int:
    config = _load_engine_config(args.config)
    if config is None:
        return 2
    if args.seed is not None:
        config.demo.seed = args.seed
    if args.journal:
        config.journal_path = args.journal
    rng = random.Random(config.demo.seed)
    clock = ManualClock()
    channel = None
    if args.loopback:
        config.demo.enabled = False
        channel = LoopbackSettlement(
            config, clock, latency=config.timing.selection_latency, rng=random.Random(config.demo.seed)
        )
    session = GameSession(config, channel=channel, scheduler=clock, rng=rng).init()

    rounds = max(1, int(args.rounds))
    picks = max(1, int(args.picks))
    if config.board.variant != VARIANT_MATCH:
        picks = min(picks, config.board.cell_count - session.mines)
    try:
        if args.auto:
            _simulate_auto(session, clock, rounds, picks, rng)
        else:
            _simulate_manual(session, clock, rounds, picks, rng)
        summary = _summary(session, clock)
    finally:
        session.dispose()
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


def _summary(session: GameSession, clock: ManualClock) -> Dict[str, Any]:
    outcomes = Counter(r.outcome for r in session.history)
    last = session.autoplay.last_session
    return {
        "version": MC_VERSION,
        "variant": session.config.board.variant,
        "settlement_mode": session.relay.mode,
        "rounds": len(session.history),
        "outcomes": dict(outcomes),
        "wagered": round(sum(r.wager for r in session.history), 8),
        "paid": round(sum(r.payout for r in session.history), 8),
        "net": session.total_profit,
        "final_state": session.controller.state.value,
        "virtual_seconds": round(clock.now(), 3),
        "autoplay_stop_reason": None if last is None else last.stop_reason,
        "relay": dict(session.relay.stats),
    }


def _cmd_serve(args: argparse.Namespace) -> int:
    config = _load_engine_config(args.config)
    if config is None:
        return 2

    import uvicorn

    from .http_api import create_app

    scheduler: Scheduler = ManualClock() if args.virtual_clock else AsyncioScheduler()
    channel = None
    if args.loopback:
        config.demo.enabled = False
        channel = LoopbackSettlement(config, scheduler, latency=config.timing.selection_latency)
    session = GameSession(config, channel=channel, scheduler=scheduler)
    app = create_app(session)
    log.info("Serving harness on http://%s:%d (clock=%s)", args.host, args.port, type(scheduler).__name__)
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
    finally:
        session.dispose()
    return 0


def _cmd_journal(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if not path.exists():
        print(f"journal not found: {path}", file=sys.stderr)
        return 2
    try:
        rows = list(iter_journal(path))
    except ValueError as e:
        print(f"unreadable journal: {e}", file=sys.stderr)
        return 2
    print(json.dumps(summarize_journal(rows), indent=2, sort_keys=True))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mines-ctl",
        description="Mines Control - validate configs, simulate rounds and serve the harness",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="increase verbosity (use -vv for debug)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {MC_VERSION}")
    sub = parser.add_subparsers(dest="subcommand")

    p_val = sub.add_parser("validate", help="Validate an engine config (YAML or JSON)")
    p_val.add_argument("config", help="Path to config file")
    p_val.set_defaults(func=_cmd_validate)

    p_sim = sub.add_parser("simulate", help="Play headless rounds on a virtual clock")
    p_sim.add_argument("config", help="Path to config file")
    p_sim.add_argument("--rounds", type=int, default=10, help="Rounds (or auto-play bets) to play")
    p_sim.add_argument("--picks", type=int, default=3, help="Cells picked per round")
    p_sim.add_argument("--auto", action="store_true", help="Use auto-play with a random selection")
    p_sim.add_argument("--seed", type=int, help="Seed RNG for reproducibility")
    p_sim.add_argument(
        "--loopback",
        action="store_true",
        help="Settle through the in-process loopback service instead of demo mode",
    )
    p_sim.add_argument("--journal", help="Append finalized rounds to this JSONL file")
    p_sim.set_defaults(func=_cmd_simulate)

    p_srv = sub.add_parser("serve", help="Run the HTTP harness around one session")
    p_srv.add_argument("config", help="Path to config file")
    p_srv.add_argument("--host", default="127.0.0.1")
    p_srv.add_argument("--port", type=int, default=8089)
    p_srv.add_argument(
        "--virtual-clock",
        action="store_true",
        help="Drive timers through POST /clock/advance instead of real time",
    )
    p_srv.add_argument("--loopback", action="store_true", help="Settle through the loopback service")
    p_srv.set_defaults(func=_cmd_serve)

    p_jr = sub.add_parser("journal", help="Summarize a round journal")
    p_jr.add_argument("path", help="Path to journal JSONL")
    p_jr.set_defaults(func=_cmd_journal)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    if not hasattr(args, "func") or args.func is None:
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
