import json
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import chess
import chess.pgn

from errors import IllegalMove, NoHistory


@dataclass(frozen=True)
class Position:
    """Immutable snapshot of a game: the start position plus the moves played."""

    start_fen: str = chess.STARTING_FEN
    moves: Tuple[str, ...] = ()
    fen: str = chess.STARTING_FEN

    @classmethod
    def from_board(cls, board: chess.Board, start_fen: str) -> "Position":
        return cls(
            start_fen=start_fen,
            moves=tuple(move.uci() for move in board.move_stack),
            fen=board.fen(),
        )

    def board(self) -> chess.Board:
        board = chess.Board(self.start_fen)
        for uci in self.moves:
            board.push_uci(uci)
        return board

    @property
    def turn(self) -> bool:
        return self.fen.split()[1] == "w"

    @property
    def castling_rights(self) -> str:
        """Castling field of the FEN, e.g. ``KQkq`` or ``-``."""
        return self.fen.split()[2]

    @property
    def en_passant_square(self) -> Optional[chess.Square]:
        field = self.fen.split()[3]
        return None if field == "-" else chess.parse_square(field)

    @property
    def halfmove_clock(self) -> int:
        return int(self.fen.split()[4])

    @property
    def fullmove_number(self) -> int:
        return int(self.fen.split()[5])

    def piece_at(self, square: chess.Square) -> Optional[chess.Piece]:
        return chess.Board(self.fen).piece_at(square)

    def pieces(self) -> Tuple[Optional[chess.Piece], ...]:
        board = chess.Board(self.fen)
        return tuple(board.piece_at(square) for square in chess.SQUARES)


@dataclass(frozen=True)
class GameOutcome:
    winner: Optional[bool]
    reason: str

    @property
    def result(self) -> str:
        if self.winner is None:
            return "1/2-1/2"
        return "1-0" if self.winner == chess.WHITE else "0-1"

    def describe(self) -> str:
        if self.winner is None:
            return f"Draw by {self.reason}"
        side = "White" if self.winner == chess.WHITE else "Black"
        return f"{side} wins by {self.reason}"


_TERMINATION_REASONS = {
    chess.Termination.CHECKMATE: "checkmate",
    chess.Termination.STALEMATE: "stalemate",
    chess.Termination.INSUFFICIENT_MATERIAL: "insufficient material",
    chess.Termination.SEVENTYFIVE_MOVES: "75-move rule",
    chess.Termination.FIVEFOLD_REPETITION: "fivefold repetition",
    chess.Termination.FIFTY_MOVES: "fifty-move rule",
    chess.Termination.THREEFOLD_REPETITION: "threefold repetition",
}


class BoardModel:
    """Canonical game state: a start position and the append-only move history.

    The current position is always the start position with every move of
    the history applied in order.  ``apply`` validates before it mutates
    and ``undo`` rebuilds from the start, so a failed call never leaves a
    half-updated board behind.
    """

    def __init__(self, start_fen: Optional[str] = None) -> None:
        self._start_fen = chess.STARTING_FEN
        self._history: List[chess.Move] = []
        self._board = chess.Board()
        self.reset(start_fen)

    def reset(self, start_fen: Optional[str] = None) -> Position:
        fen = start_fen or chess.STARTING_FEN
        board = chess.Board(fen)
        if not board.is_valid():
            raise ValueError(f"Invalid start position: {fen}")
        self._start_fen = board.fen()
        self._board = board
        self._history = []
        return self.position

    @property
    def start_fen(self) -> str:
        return self._start_fen

    @property
    def position(self) -> Position:
        return Position.from_board(self._board, self._start_fen)

    @property
    def history(self) -> Tuple[chess.Move, ...]:
        return tuple(self._history)

    @property
    def turn(self) -> bool:
        return self._board.turn

    def board(self) -> chess.Board:
        """A private copy of the current board for read-only use."""
        return self._board.copy()

    def legal_moves(self, position: Optional[Position] = None) -> List[chess.Move]:
        board = position.board() if position is not None else self._board
        return list(board.legal_moves)

    def is_legal(self, move: chess.Move) -> bool:
        return move in self._board.legal_moves

    def apply(self, move: chess.Move) -> Position:
        if not self.is_legal(move):
            raise IllegalMove(f"{move.uci()} is not legal in {self._board.fen()}")
        self._board.push(move)
        self._history.append(move)
        return self.position

    def undo(self) -> Position:
        if not self._history:
            raise NoHistory("No moves to undo")
        self._history.pop()
        self._board = self.replay()
        return self.position

    def replay(self) -> chess.Board:
        """Rebuild the board by applying the history to the start position."""
        return replay_moves(self._start_fen, self._history)

    def outcome(self) -> Optional[GameOutcome]:
        """Adjudicate the game; claimable draws are applied automatically."""
        outcome = self._board.outcome()
        if outcome is not None:
            reason = _TERMINATION_REASONS.get(outcome.termination, outcome.termination.name.lower())
            return GameOutcome(outcome.winner, reason)
        if self._board.is_fifty_moves():
            return GameOutcome(None, "fifty-move rule")
        if self._board.is_repetition(3):
            return GameOutcome(None, "threefold repetition")
        return None

    def is_game_over(self) -> bool:
        return self.outcome() is not None


def is_valid_move(board: chess.Board, move: chess.Move) -> bool:
    return move in board.legal_moves


def is_pawn_promotion_attempt(board: chess.Board, move: chess.Move) -> bool:
    piece = board.piece_at(move.from_square)
    if piece is None or piece.piece_type != chess.PAWN:
        return False

    candidate = chess.Move(move.from_square, move.to_square, promotion=chess.QUEEN)
    if not is_valid_move(board, candidate):
        return False

    rank = chess.square_rank(move.to_square)
    return (piece.color == chess.WHITE and rank == 7) or (piece.color == chess.BLACK and rank == 0)


def parse_move(text: str, position: Position) -> chess.Move:
    """Parse *text* as UCI or SAN against *position*."""
    board = position.board()
    text = text.strip()
    try:
        return board.parse_uci(text)
    except ValueError:
        pass
    try:
        return board.parse_san(text)
    except ValueError as exc:
        raise IllegalMove(f"Cannot parse move {text!r}: {exc}") from exc


def export_move_history_uci(board: chess.Board) -> str:
    """Exports the move history of a chess game in Universal Chess Interface (UCI) format."""
    moves_uci = [move.uci() for move in board.move_stack]
    return ' '.join(moves_uci)


def export_move_history_san(board: chess.Board) -> str:
    moves_san = []
    temp_board = board.root()

    for move in board.move_stack:
        moves_san.append(temp_board.san(move))
        temp_board.push(move)

    return ' '.join(moves_san)


def export_pgn(
    position: Position,
    *,
    white: str = "White",
    black: str = "Black",
    outcome: Optional[GameOutcome] = None,
    event: str = "Engine match",
) -> str:
    board = position.board()
    game = chess.pgn.Game.from_board(board)
    game.headers["Event"] = event
    game.headers["Site"] = "?"
    game.headers["Date"] = time.strftime("%Y.%m.%d", time.localtime())
    game.headers["White"] = white
    game.headers["Black"] = black
    game.headers["Result"] = outcome.result if outcome is not None else "*"
    if outcome is not None:
        game.headers["Termination"] = outcome.reason
    exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False)
    return game.accept(exporter) + "\n"


def export_game_state(position: Position, players: Optional[Dict[bool, str]] = None) -> str:
    board = position.board()
    game_state = {
        "export-time": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(time.time())),
        "fen-init": position.start_fen,
        "fen-final": position.fen,
        "san": export_move_history_san(board),
        "uci": export_move_history_uci(board),
    }
    if players:
        game_state["white"] = players.get(chess.WHITE, "")
        game_state["black"] = players.get(chess.BLACK, "")
    return json.dumps(game_state)


def replay_moves(start_fen: str, moves: Sequence[chess.Move]) -> chess.Board:
    board = chess.Board(start_fen)
    for move in moves:
        board.push(move)
    return board
