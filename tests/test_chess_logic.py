import json

import chess
import pytest

import chess_logic
from chess_logic import BoardModel, GameOutcome, Position
from errors import IllegalMove, NoHistory

FOOLS_MATE = ("f2f3", "e7e5", "g2g4", "d8h4")


def play(model: BoardModel, *moves: str) -> Position:
    position = model.position
    for uci in moves:
        position = model.apply(chess.Move.from_uci(uci))
    return position


def test_new_model_starts_from_initial_position() -> None:
    model = BoardModel()
    assert model.position == Position()
    assert model.history == ()
    assert model.turn == chess.WHITE


def test_apply_records_history_and_position() -> None:
    model = BoardModel()
    position = play(model, "e2e4", "e7e5", "g1f3")
    assert position.moves == ("e2e4", "e7e5", "g1f3")
    assert position.turn == chess.BLACK
    assert position.piece_at(chess.F3) == chess.Piece(chess.KNIGHT, chess.WHITE)
    assert [move.uci() for move in model.history] == ["e2e4", "e7e5", "g1f3"]


def test_position_equals_replayed_history() -> None:
    model = BoardModel("r3k2r/8/8/8/8/8/8/R3K2R w KQkq - 0 1")
    play(model, "e1g1", "e8c8", "a1a8")
    assert model.replay().fen() == model.position.fen
    assert model.position.board().fen() == model.position.fen


def test_illegal_move_leaves_model_unchanged() -> None:
    model = BoardModel()
    play(model, "e2e4")
    before = model.position
    with pytest.raises(IllegalMove):
        model.apply(chess.Move.from_uci("e4e6"))
    assert model.position == before
    assert len(model.history) == 1


def test_undo_restores_previous_position() -> None:
    model = BoardModel()
    first = play(model, "d2d4")
    play(model, "d7d5")
    assert model.undo() == first
    assert model.undo() == Position()
    with pytest.raises(NoHistory):
        model.undo()


def test_reset_rejects_invalid_start_position() -> None:
    model = BoardModel()
    with pytest.raises(ValueError):
        model.reset("8/8/8/8/8/8/8/8 w - - 0 1")


def test_board_copy_does_not_leak_mutations() -> None:
    model = BoardModel()
    board = model.board()
    board.push_uci("e2e4")
    assert model.history == ()


def test_outcome_checkmate_and_stalemate() -> None:
    model = BoardModel()
    play(model, *FOOLS_MATE)
    assert model.outcome() == GameOutcome(chess.BLACK, "checkmate")
    assert model.is_game_over()

    stalemate = BoardModel("7k/5Q2/6K1/8/8/8/8/8 b - - 0 1")
    outcome = stalemate.outcome()
    assert outcome.winner is None
    assert outcome.reason == "stalemate"
    assert outcome.result == "1/2-1/2"

    assert BoardModel().outcome() is None


def test_threefold_repetition_is_adjudicated() -> None:
    model = BoardModel()
    play(model, "g1f3", "g8f6", "f3g1", "f6g8", "g1f3", "g8f6", "f3g1", "f6g8")
    assert model.outcome() == GameOutcome(None, "threefold repetition")


def test_game_outcome_describe() -> None:
    assert GameOutcome(chess.WHITE, "checkmate").describe() == "White wins by checkmate"
    assert GameOutcome(chess.WHITE, "checkmate").result == "1-0"
    assert GameOutcome(None, "stalemate").describe() == "Draw by stalemate"


def test_legal_moves_for_current_and_given_position() -> None:
    model = BoardModel()
    assert len(model.legal_moves()) == 20
    after_e4 = play(model, "e2e4")
    assert chess.Move.from_uci("e7e5") in model.legal_moves(after_e4)
    assert len(model.legal_moves(Position())) == 20


def test_position_pieces_cover_all_squares() -> None:
    pieces = Position().pieces()
    assert len(pieces) == 64
    assert pieces[chess.E1] == chess.Piece(chess.KING, chess.WHITE)
    assert pieces[chess.E4] is None


def test_pawn_promotion_detection() -> None:
    board = chess.Board("8/5P2/8/8/8/8/8/6k1 w - - 0 1")
    assert chess_logic.is_pawn_promotion_attempt(board, chess.Move.from_uci("f7f8")) is True
    assert chess_logic.is_pawn_promotion_attempt(board, chess.Move.from_uci("e2e4")) is False


@pytest.mark.parametrize("text, uci", [("e2e4", "e2e4"), ("Nf3", "g1f3"), (" e4 ", "e2e4")])
def test_parse_move_accepts_uci_and_san(text, uci) -> None:
    assert chess_logic.parse_move(text, Position()) == chess.Move.from_uci(uci)


@pytest.mark.parametrize("text", ["e2e5", "Ke2", "nonsense", ""])
def test_parse_move_rejects_illegal_input(text) -> None:
    with pytest.raises(IllegalMove):
        chess_logic.parse_move(text, Position())


def test_export_move_history() -> None:
    model = BoardModel()
    position = play(model, "e2e4", "e7e5", "g1f3")
    board = position.board()
    assert chess_logic.export_move_history_uci(board) == "e2e4 e7e5 g1f3"
    assert chess_logic.export_move_history_san(board) == "e4 e5 Nf3"


def test_export_game_state_json() -> None:
    model = BoardModel()
    position = play(model, "e2e4", "c7c5")
    state = json.loads(chess_logic.export_game_state(position, {chess.WHITE: "Human", chess.BLACK: "StubEngine"}))
    assert state["fen-init"] == chess.STARTING_FEN
    assert state["fen-final"] == position.fen
    assert state["san"] == "e4 c5"
    assert state["uci"] == "e2e4 c7c5"
    assert state["black"] == "StubEngine"


def test_export_pgn_headers_and_moves() -> None:
    model = BoardModel()
    position = play(model, *FOOLS_MATE)
    pgn = chess_logic.export_pgn(
        position,
        white="Alice",
        black="StubEngine",
        outcome=model.outcome(),
    )
    assert '[White "Alice"]' in pgn
    assert '[Black "StubEngine"]' in pgn
    assert '[Result "0-1"]' in pgn
    assert '[Termination "checkmate"]' in pgn
    assert "1. f3 e5 2. g4 Qh4# 0-1" in pgn


def test_export_pgn_from_custom_start_sets_fen() -> None:
    fen = "4k3/8/8/8/8/8/4P3/4K3 w - - 0 1"
    model = BoardModel(fen)
    pgn = chess_logic.export_pgn(play(model, "e2e4"))
    assert f'[FEN "{fen}"]' in pgn
    assert '[Result "*"]' in pgn


def test_position_exposes_fen_fields() -> None:
    start = Position()
    assert start.castling_rights == "KQkq"
    assert start.en_passant_square is None
    assert start.halfmove_clock == 0
    assert start.fullmove_number == 1

    model = BoardModel()
    position = play(model, "e2e4", "g8f6", "e4e5", "d7d5")
    assert position.en_passant_square == chess.D6
    assert position.fullmove_number == 3

    position = play(model, "g1f3", "h8g8")
    assert position.en_passant_square is None
    assert position.halfmove_clock == 2
    assert position.castling_rights == "KQq"
