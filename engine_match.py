"""Engine-vs-engine matches over a list of start positions.

Every position is played ``games_per_position`` times and the engines
swap colours after each game, so with the default of two games each
engine plays every position once with White and once with Black.
"""
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import chess

from chess_logic import GameOutcome
from config import COLOR_NAME
from errors import ConfigurationError
from orchestrator import SessionOrchestrator
import utils

DEFAULT_GAMES_PER_POSITION = 2
POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class MatchGame:
    number: int
    start_fen: str
    white: str
    black: str
    swapped: bool
    outcome: Optional[GameOutcome]
    pgn: str

    @property
    def result(self) -> str:
        return self.outcome.result if self.outcome is not None else "*"

    def points(self) -> Tuple[float, float]:
        """Points for the (first, second) engine; the first starts as White."""
        if self.outcome is None:
            return 0.0, 0.0
        if self.outcome.winner is None:
            return 0.5, 0.5
        first_won = (self.outcome.winner == chess.WHITE) != self.swapped
        return (1.0, 0.0) if first_won else (0.0, 1.0)


@dataclass
class MatchResult:
    first: str
    second: str
    games: List[MatchGame] = field(default_factory=list)
    completed: bool = True

    def score(self) -> Tuple[float, float]:
        first = sum(game.points()[0] for game in self.games)
        second = sum(game.points()[1] for game in self.games)
        return first, second

    def summary(self) -> str:
        first, second = self.score()
        return f"{self.first} {first:g} - {second:g} {self.second} ({len(self.games)} games)"

    def pgn(self) -> str:
        return "\n\n".join(game.pgn.strip() for game in self.games) + "\n"


def load_fens(path: Union[str, Path]) -> List[str]:
    """Read one FEN per line; blank lines and ``#`` comments are skipped."""
    try:
        with open(path, encoding="utf-8") as fen_file:
            lines = fen_file.read().splitlines()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read positions from {path}: {exc}") from exc

    fens = []
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            board = chess.Board(line)
        except ValueError as exc:
            raise ConfigurationError(f"{path}:{number}: invalid FEN ({exc})") from exc
        if not board.is_valid():
            raise ConfigurationError(f"{path}:{number}: invalid FEN {line!r}")
        fens.append(board.fen())
    if not fens:
        raise ConfigurationError(f"No positions found in {path}")
    return fens


def require_engine_seats(orchestrator: SessionOrchestrator) -> None:
    snapshot = orchestrator.snapshot()
    if any(seat.is_human for seat in snapshot.seats.values()):
        raise ConfigurationError("Headless play needs an engine in both seats")


def play_out(orchestrator: SessionOrchestrator, poll_interval: float = POLL_INTERVAL) -> Optional[GameOutcome]:
    """Poll a started game until it ends; ``None`` when a seat went offline."""
    while orchestrator.outcome is None:
        orchestrator.poll()
        on_turn = orchestrator.on_turn()
        if on_turn is not None and orchestrator.is_offline(on_turn):
            utils.report(
                utils.warning_text(f"Game halted: {COLOR_NAME[on_turn]} is offline ({orchestrator.last_error})")
            )
            return None
        time.sleep(poll_interval)
    return orchestrator.outcome


def run_match(
    orchestrator: SessionOrchestrator,
    fens: Sequence[str],
    *,
    games_per_position: int = DEFAULT_GAMES_PER_POSITION,
    pgn_path: Optional[str] = None,
    poll_interval: float = POLL_INTERVAL,
) -> MatchResult:
    """Play every position in *fens*, swapping colours after each game.

    The match stops early when a game halts on an offline engine.  The
    orchestrator is shut down before returning.
    """
    if games_per_position < 1:
        raise ConfigurationError("games_per_position must be at least 1")
    if not fens:
        raise ConfigurationError("A match needs at least one start position")
    require_engine_seats(orchestrator)

    result = MatchResult(first=orchestrator.seat_label(chess.WHITE), second=orchestrator.seat_label(chess.BLACK))
    swapped = False
    try:
        for fen in fens:
            for _ in range(games_per_position):
                number = len(result.games) + 1
                utils.report(
                    utils.info_text(
                        f"Game {number}: {orchestrator.seat_label(chess.WHITE)} vs {orchestrator.seat_label(chess.BLACK)}"
                    )
                )
                orchestrator.start(fen)
                outcome = play_out(orchestrator, poll_interval)
                result.games.append(
                    MatchGame(
                        number=number,
                        start_fen=fen,
                        white=orchestrator.seat_label(chess.WHITE),
                        black=orchestrator.seat_label(chess.BLACK),
                        swapped=swapped,
                        outcome=outcome,
                        pgn=orchestrator.export_pgn(event=f"Engine match, game {number}"),
                    )
                )
                if outcome is None:
                    result.completed = False
                    return result
                utils.report(utils.info_text(f"Game {number}: {outcome.result} ({outcome.describe()})"))
                orchestrator.swap_seats()
                swapped = not swapped
    except KeyboardInterrupt:
        result.completed = False
        utils.report(utils.info_text("Match interrupted by user"))
    finally:
        orchestrator.shutdown()
        if pgn_path and result.games:
            with open(pgn_path, "w", encoding="utf-8") as pgn_file:
                pgn_file.write(result.pgn())
            utils.report(utils.info_text(f"PGN written -> {pgn_path}"))
        utils.report(utils.info_text(f"Match: {result.summary()}"))
    return result
