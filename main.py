import argparse
import dataclasses
import os
import sys
from typing import Dict, Optional, Sequence

import chess

from chess_logic import GameOutcome
from config import (
    COLOR_NAME,
    DEFAULT_CANCEL_GRACE,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_MOVETIME_MS,
    EngineConfig,
    HarnessConfig,
    SeatConfig,
    load_config,
)
from errors import ConfigurationError
from engine_match import DEFAULT_GAMES_PER_POSITION, load_fens, play_out, require_engine_seats, run_match
from orchestrator import SessionOrchestrator
from time_control import TimeControl
from utils import ReportingLevel, debug_text, info_text, report, set_reporting_level, warning_text

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_ENGINE = os.path.join(SCRIPT_DIR, "engines", "stub_engine.py")
HEADLESS_POLL_INTERVAL = 0.01


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Play UCI engines against each other or against a human"
    )
    parser.add_argument(
        "engines",
        nargs="*",
        help="Engine executables or .py scripts; the first plays White when two are given",
    )
    parser.add_argument("-fen", help="Set the initial board state to the given FEN string")
    parser.add_argument("-dev", action="store_true", help="Enable debug mode (verbose protocol logging)")
    parser.add_argument("--quiet", action="store_true", help="Suppress console reporting")
    parser.add_argument("--config", help="Load seats and timeouts from a JSON file")
    parser.add_argument(
        "--human-color",
        choices=("white", "black"),
        default="white",
        help="Colour played by the human when a single engine is given",
    )
    limits = parser.add_mutually_exclusive_group()
    limits.add_argument("--movetime", type=int, help="Fixed milliseconds per engine move")
    limits.add_argument("--depth", type=int, help="Fixed search depth per engine move")
    limits.add_argument("--clock", type=float, help="Clock game: minutes per side")
    parser.add_argument("--increment", type=float, default=0.0, help="Clock increment in seconds")
    parser.add_argument(
        "--handshake-timeout",
        type=float,
        default=DEFAULT_HANDSHAKE_TIMEOUT,
        help="Seconds an engine may take to answer uci/isready",
    )
    parser.add_argument(
        "--cancel-grace",
        type=float,
        default=DEFAULT_CANCEL_GRACE,
        help="Seconds to wait for bestmove after stop",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run an engine-vs-engine game without the GUI and exit",
    )
    parser.add_argument("--pgn", help="Write the finished game (or every match game) to this PGN file")
    parser.add_argument(
        "--fens",
        metavar="FILE",
        help="Play a headless match over the positions in FILE, one FEN per line",
    )
    parser.add_argument(
        "--games-per-position",
        type=int,
        default=DEFAULT_GAMES_PER_POSITION,
        help="Games played from each match position; colours swap after every game",
    )
    return parser.parse_args(argv)


def build_time_control(args: argparse.Namespace) -> TimeControl:
    if args.depth is not None:
        return TimeControl.fixed_depth(args.depth)
    if args.clock is not None:
        return TimeControl.clock(int(args.clock * 60000), int(args.increment * 1000))
    if args.movetime is not None:
        return TimeControl.fixed_time(args.movetime)
    return TimeControl.fixed_time(DEFAULT_MOVETIME_MS)


def reporting_level_for(args: argparse.Namespace) -> ReportingLevel:
    if args.quiet:
        return ReportingLevel.QUIET
    if args.dev:
        return ReportingLevel.VERBOSE
    return ReportingLevel.BASIC


def build_config(args: argparse.Namespace) -> HarnessConfig:
    if args.config:
        config = load_config(args.config)
        if args.fen:
            config = dataclasses.replace(config, start_fen=args.fen)
        return config.validate()

    if len(args.engines) > 2:
        raise ConfigurationError("At most two engines can be seated")
    time_control = build_time_control(args)
    engines = [EngineConfig(path=os.path.abspath(path)) for path in args.engines]
    seats: Dict[bool, SeatConfig] = {}
    if len(engines) == 2:
        seats[chess.WHITE] = SeatConfig(engines[0], time_control)
        seats[chess.BLACK] = SeatConfig(engines[1], time_control)
    else:
        if not engines and not os.path.exists(DEFAULT_ENGINE):
            raise ConfigurationError(f"No engine given and the stub engine is missing ({DEFAULT_ENGINE})")
        engine = engines[0] if engines else EngineConfig(path=DEFAULT_ENGINE)
        human = chess.WHITE if args.human_color == "white" else chess.BLACK
        seats[human] = SeatConfig(None, time_control)
        seats[not human] = SeatConfig(engine, time_control)

    config = HarnessConfig(
        seats=seats,
        start_fen=args.fen,
        handshake_timeout=args.handshake_timeout,
        cancel_grace=args.cancel_grace,
        reporting_level=reporting_level_for(args),
    )
    return config.validate()


def write_pgn(orchestrator: SessionOrchestrator, path: str) -> None:
    with open(path, "w", encoding="utf-8") as pgn_file:
        pgn_file.write(orchestrator.export_pgn())
    report(info_text(f"PGN written -> {path}"))


def run_headless(
    orchestrator: SessionOrchestrator,
    *,
    pgn_path: Optional[str] = None,
    poll_interval: float = HEADLESS_POLL_INTERVAL,
) -> Optional[GameOutcome]:
    """Play until the game ends or halts on an offline seat."""
    require_engine_seats(orchestrator)

    orchestrator.start()
    try:
        play_out(orchestrator, poll_interval)
    except KeyboardInterrupt:
        report(info_text("Game interrupted by user"))
    finally:
        orchestrator.shutdown()

    if pgn_path:
        write_pgn(orchestrator, pgn_path)
    return orchestrator.outcome


def run_gui(orchestrator: SessionOrchestrator, args: argparse.Namespace) -> int:
    # Local import keeps headless runs free of the Qt requirement.
    from PySide6.QtWidgets import QApplication

    from gui import ChessGUI

    app = QApplication.instance() or QApplication(sys.argv)
    orchestrator.start()
    gui = ChessGUI(orchestrator, dev=args.dev)
    gui.show()
    try:
        return app.exec()
    finally:
        orchestrator.shutdown()
        if args.pgn:
            write_pgn(orchestrator, args.pgn)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except (ConfigurationError, ValueError) as exc:
        report(debug_text(f"Configuration error: {exc}"))
        return 2

    set_reporting_level(config.reporting_level)
    orchestrator = SessionOrchestrator(config)
    for color, bound in orchestrator.bind_configured().items():
        if not bound:
            report(warning_text(f"{COLOR_NAME[color]} engine unavailable: {orchestrator.last_error}"))

    if args.fens:
        try:
            fens = load_fens(args.fens)
            result = run_match(orchestrator, fens, games_per_position=args.games_per_position, pgn_path=args.pgn)
        except ConfigurationError as exc:
            orchestrator.shutdown()
            report(debug_text(f"Configuration error: {exc}"))
            return 2
        return 0 if result.completed else 1

    if args.headless:
        try:
            outcome = run_headless(orchestrator, pgn_path=args.pgn)
        except ConfigurationError as exc:
            orchestrator.shutdown()
            report(debug_text(f"Configuration error: {exc}"))
            return 2
        if outcome is None:
            return 1
        report(info_text(f"Result: {outcome.result} ({outcome.describe()})"))
        return 0

    return run_gui(orchestrator, args)


if __name__ == "__main__":
    sys.exit(main())
