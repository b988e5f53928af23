import chess
import pytest

from config import EngineConfig, HarnessConfig, SeatConfig
from engine_fakes import FakeEngineFactory, FakeEngineProcess, ManualClock, failing_factory, first_legal_move, wait_for
from engine_session import EngineSession, SessionState
from errors import ConfigurationError, IllegalMove, NoHistory, NotYourTurn
from orchestrator import HUMAN, SessionOrchestrator
from time_control import TimeControl

DEPTH_1 = TimeControl.fixed_depth(1)


def make_orchestrator(seats, *, time_control=DEPTH_1, now=None, cancel_grace=0.2, start_fen=None):
    """Build an orchestrator whose engine seats are backed by fakes.

    *seats* maps a colour to ``None`` (human), one fake, or a list of fakes
    handed out on successive spawns.
    """
    factories = {}
    seat_configs = {}
    for color, fakes in seats.items():
        if fakes is None:
            seat_configs[color] = SeatConfig(None, time_control)
            continue
        path = f"fake-{'white' if color else 'black'}"
        if isinstance(fakes, FakeEngineProcess):
            fakes = [fakes]
        factories[path] = fakes if callable(fakes) else FakeEngineFactory(fakes)
        seat_configs[color] = SeatConfig(EngineConfig(path=path), time_control)

    config = HarnessConfig(
        seats=seat_configs,
        start_fen=start_fen,
        handshake_timeout=1.0,
        cancel_grace=cancel_grace,
    )

    def session_factory(engine: EngineConfig) -> EngineSession:
        return EngineSession(
            engine,
            handshake_timeout=config.handshake_timeout,
            cancel_grace=config.cancel_grace,
            process_factory=factories[engine.path],
        )

    kwargs = {"now": now} if now is not None else {}
    orchestrator = SessionOrchestrator(config, session_factory=session_factory, **kwargs)
    orchestrator.bind_configured()
    return orchestrator


def poll_until(orchestrator: SessionOrchestrator, predicate, timeout: float = 2.0) -> bool:
    return wait_for(lambda: (orchestrator.poll(), predicate())[1], timeout)


@pytest.fixture()
def human_vs_engine():
    fake = FakeEngineProcess()
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: fake})
    orchestrator.start()
    yield orchestrator, fake
    orchestrator.shutdown()


def test_human_move_then_engine_reply(human_vs_engine) -> None:
    orchestrator, fake = human_vs_engine
    moves = []
    orchestrator.events.on_move.append(lambda color, move, position: moves.append((color, move.uci())))

    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)

    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 2)
    assert orchestrator.position.turn == chess.WHITE
    assert orchestrator.on_turn() == chess.WHITE
    assert moves[0] == (chess.WHITE, "e2e4")
    assert moves[1][0] == chess.BLACK
    assert fake.commands("go") == ["go depth 1"]
    assert "position startpos moves e2e4" in fake.sent


def test_submit_move_accepts_san_and_uci_text(human_vs_engine) -> None:
    orchestrator, _ = human_vs_engine
    orchestrator.submit_move("Nf3", chess.WHITE)
    assert orchestrator.history == (chess.Move.from_uci("g1f3"),)


def test_submit_move_from_seat_not_on_turn_is_rejected(human_vs_engine) -> None:
    orchestrator, _ = human_vs_engine
    before = orchestrator.position
    with pytest.raises(NotYourTurn):
        orchestrator.submit_move(chess.Move.from_uci("e7e5"), chess.BLACK)
    assert orchestrator.position == before
    assert orchestrator.history == ()


def test_engine_seat_rejects_external_moves() -> None:
    fake = FakeEngineProcess(answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()
    with pytest.raises(NotYourTurn):
        orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    assert orchestrator.history == ()
    orchestrator.shutdown()


def test_illegal_human_move_leaves_board_unchanged(human_vs_engine) -> None:
    orchestrator, fake = human_vs_engine
    with pytest.raises(IllegalMove):
        orchestrator.submit_move(chess.Move.from_uci("e2e5"), chess.WHITE)
    with pytest.raises(IllegalMove):
        orchestrator.submit_move("Ke4", chess.WHITE)
    assert orchestrator.history == ()
    assert fake.commands("go") == []


def test_engine_vs_engine_alternates_turns() -> None:
    white, black = FakeEngineProcess(name="W"), FakeEngineProcess(name="B")
    orchestrator = make_orchestrator({chess.WHITE: white, chess.BLACK: black})
    orchestrator.start()

    assert poll_until(orchestrator, lambda: len(orchestrator.history) >= 6)
    orchestrator.pause()
    board = chess.Board()
    for move in orchestrator.history:
        assert move in board.legal_moves
        board.push(move)
    assert len(white.commands("go")) >= 3
    assert len(black.commands("go")) >= 3
    orchestrator.shutdown()


def test_start_without_seats_is_a_configuration_error() -> None:
    orchestrator = SessionOrchestrator(HarnessConfig())
    with pytest.raises(ConfigurationError):
        orchestrator.start()


def test_spawn_failure_marks_only_that_seat_offline() -> None:
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: failing_factory})

    assert orchestrator.is_offline(chess.BLACK)
    orchestrator.start()
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)

    assert len(orchestrator.history) == 1
    assert orchestrator.snapshot().seats[chess.BLACK].offline
    assert orchestrator.snapshot().seats[chess.WHITE].offline is False
    assert "not found" in orchestrator.snapshot().seats[chess.BLACK].error


def test_crash_mid_search_marks_seat_offline_and_stops_searching() -> None:
    fake = FakeEngineProcess(answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: fake})
    states = []
    errors = []
    orchestrator.events.on_session_state.append(lambda seat, old, new: states.append((seat, new)))
    orchestrator.events.on_seat_error.append(lambda seat, message: errors.append((seat, message)))
    orchestrator.start()
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    assert fake.searching

    fake.exit()

    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.BLACK))
    assert orchestrator.session(chess.BLACK).current_state() == SessionState.CRASHED
    assert (chess.BLACK, SessionState.CRASHED) in states
    assert errors and errors[0][0] == chess.BLACK
    assert orchestrator.outcome is None

    # The game halts instead of resigning; the human can still take back and move.
    orchestrator.poll()
    assert len(fake.commands("go")) == 1
    orchestrator.undo()
    orchestrator.submit_move(chess.Move.from_uci("d2d4"), chess.WHITE)
    orchestrator.poll()
    assert orchestrator.history == (chess.Move.from_uci("d2d4"),)
    assert len(fake.commands("go")) == 1
    orchestrator.shutdown()


def test_restart_engine_after_crash() -> None:
    crashing = FakeEngineProcess(answer_go=False)
    replacement = FakeEngineProcess()
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: [crashing, replacement]})
    orchestrator.start()
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    crashing.exit()
    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.BLACK))

    assert orchestrator.restart_engine(chess.BLACK) is True
    assert not orchestrator.is_offline(chess.BLACK)
    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 2)
    assert "ucinewgame" in replacement.sent
    orchestrator.shutdown()


def test_switch_to_human_after_crash() -> None:
    fake = FakeEngineProcess(answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: fake})
    orchestrator.start()
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    fake.exit()
    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.BLACK))

    orchestrator.switch_to_human(chess.BLACK)
    orchestrator.submit_move(chess.Move.from_uci("e7e5"), chess.BLACK)

    snapshot = orchestrator.snapshot()
    assert snapshot.seats[chess.BLACK].is_human
    assert snapshot.seats[chess.BLACK].offline is False
    assert len(snapshot.history) == 2


def test_illegal_engine_answer_is_retried_once_then_offline() -> None:
    fake = FakeEngineProcess(move_picker=lambda board: "a1a8")
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()

    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.WHITE))
    assert len(fake.commands("go")) == 2
    assert orchestrator.history == ()
    assert "illegal move a1a8" in orchestrator.last_error
    orchestrator.shutdown()


def test_empty_engine_answer_counts_as_failure() -> None:
    fake = FakeEngineProcess(move_picker=lambda board: None)
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()

    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.WHITE))
    assert "no move" in orchestrator.last_error
    orchestrator.shutdown()


def test_unreadable_engine_answer_is_retried() -> None:
    answers = iter(["e2e9"])
    fake = FakeEngineProcess(move_picker=lambda board: next(answers, None) or first_legal_move(board))
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: fake})
    orchestrator.start()

    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)

    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 2)
    assert len(fake.commands("go")) == 2
    assert not orchestrator.is_offline(chess.BLACK)
    assert orchestrator.session(chess.BLACK).protocol_violations == 1
    orchestrator.shutdown()


def test_always_unreadable_answers_take_seat_offline() -> None:
    fake = FakeEngineProcess(move_picker=lambda board: "e2e9")
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()

    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.WHITE))
    assert len(fake.commands("go")) == 2
    assert "invalid best move 'e2e9'" in orchestrator.last_error
    assert orchestrator.history == ()
    orchestrator.shutdown()


class _AnswersFromSecondGo(FakeEngineProcess):
    def respond(self, text):
        if text.split()[0] == "go" and len(self.commands("go")) >= 2:
            self.answer_go = True
        return super().respond(text)


def test_engine_that_drops_abandoned_search_keeps_playing() -> None:
    fake = _AnswersFromSecondGo(answer_go=False, answer_stop=False)
    orchestrator = make_orchestrator(
        {chess.WHITE: fake, chess.BLACK: None},
        time_control=TimeControl.fixed_time(20),
        cancel_grace=0.05,
    )
    orchestrator.start()

    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 1, timeout=3.0)
    assert fake.commands("go") == ["go movetime 20", "go movetime 20"]
    assert not orchestrator.is_offline(chess.WHITE)
    orchestrator.shutdown()


def test_search_overrun_is_stopped_then_abandoned() -> None:
    fake = FakeEngineProcess(answer_go=False, answer_stop=False)
    orchestrator = make_orchestrator(
        {chess.WHITE: fake, chess.BLACK: None},
        time_control=TimeControl.fixed_time(20),
        cancel_grace=0.05,
    )
    orchestrator.start()

    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.WHITE), timeout=3.0)
    assert fake.commands("go") == ["go movetime 20", "go movetime 20"]
    assert fake.commands("stop")
    assert "ignored stop" in orchestrator.last_error
    orchestrator.shutdown()


def test_overrunning_engine_that_honours_stop_still_moves() -> None:
    fake = FakeEngineProcess(answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None}, time_control=TimeControl.fixed_time(20))
    orchestrator.start()

    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 1)
    assert fake.commands("stop") == ["stop"]
    assert not orchestrator.is_offline(chess.WHITE)
    orchestrator.shutdown()


def test_pause_holds_results_until_resume() -> None:
    fake = FakeEngineProcess()
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()
    orchestrator.pause()

    session = orchestrator.session(chess.WHITE)
    assert poll_until(orchestrator, lambda: session.current_state() == SessionState.IDLE)
    assert orchestrator.history == ()
    assert orchestrator.snapshot().paused

    orchestrator.resume()
    assert len(orchestrator.history) == 1
    orchestrator.shutdown()


def test_cancel_search_pauses_until_resumed() -> None:
    fake = FakeEngineProcess(answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: fake, chess.BLACK: None})
    orchestrator.start()

    orchestrator.cancel_search()

    assert orchestrator.paused
    assert orchestrator.session(chess.WHITE).current_state() == SessionState.IDLE
    orchestrator.poll()
    assert orchestrator.history == ()

    orchestrator.resume()
    assert len(fake.commands("go")) == 2
    assert orchestrator.session(chess.WHITE).current_state() == SessionState.SEARCHING
    orchestrator.shutdown()


def test_undo_restores_position_and_reprompts_engine() -> None:
    fake = FakeEngineProcess()
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: fake})
    orchestrator.start()
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 2)

    position = orchestrator.undo(2)
    assert position.moves == ()
    assert orchestrator.on_turn() == chess.WHITE

    with pytest.raises(NoHistory):
        orchestrator.undo()
    with pytest.raises(ValueError):
        orchestrator.undo(0)
    orchestrator.shutdown()


def test_checkmate_ends_game_once() -> None:
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: None})
    outcomes = []
    orchestrator.events.on_game_over.append(outcomes.append)
    orchestrator.start()
    plies = [(chess.WHITE, "f2f3"), (chess.BLACK, "e7e5"), (chess.WHITE, "g2g4"), (chess.BLACK, "d8h4")]
    for color, uci in plies:
        orchestrator.submit_move(chess.Move.from_uci(uci), color)

    assert len(outcomes) == 1
    assert outcomes[0].winner == chess.BLACK
    assert outcomes[0].result == "0-1"
    assert orchestrator.on_turn() is None
    with pytest.raises(NotYourTurn):
        orchestrator.submit_move(chess.Move.from_uci("a2a3"), chess.WHITE)
    assert "Result \"0-1\"" in orchestrator.export_pgn()


def test_start_position_already_over_is_adjudicated() -> None:
    orchestrator = make_orchestrator({chess.WHITE: None, chess.BLACK: None}, start_fen="8/8/8/4k3/8/8/8/4K3 w - - 0 1")
    orchestrator.start()
    assert orchestrator.outcome is not None
    assert orchestrator.outcome.winner is None
    assert orchestrator.outcome.reason == "insufficient material"


def test_clock_is_charged_and_incremented() -> None:
    clock = ManualClock()
    orchestrator = make_orchestrator(
        {chess.WHITE: None, chess.BLACK: None},
        time_control=TimeControl.clock(60000, 1000),
        now=clock,
    )
    orchestrator.start()
    clock.advance(5.0)
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    clock.advance(2.0)

    readings = orchestrator.snapshot().clock
    assert readings[chess.WHITE] == pytest.approx(56000)
    assert readings[chess.BLACK] == pytest.approx(58000)


def test_flag_fall_loses_on_time() -> None:
    clock = ManualClock()
    orchestrator = make_orchestrator(
        {chess.WHITE: None, chess.BLACK: None},
        time_control=TimeControl.clock(1000),
        now=clock,
    )
    outcomes = []
    orchestrator.events.on_game_over.append(outcomes.append)
    orchestrator.start()
    clock.advance(1.5)

    orchestrator.poll()

    assert len(outcomes) == 1
    assert outcomes[0].winner == chess.BLACK
    assert outcomes[0].reason == "time forfeit"
    with pytest.raises(NotYourTurn):
        orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)


def test_new_game_resets_board_and_engines(human_vs_engine) -> None:
    orchestrator, fake = human_vs_engine
    orchestrator.submit_move(chess.Move.from_uci("e2e4"), chess.WHITE)
    assert poll_until(orchestrator, lambda: len(orchestrator.history) == 2)

    orchestrator.new_game()

    assert orchestrator.history == ()
    assert fake.sent.count("ucinewgame") == 2


def test_snapshot_reports_seats(human_vs_engine) -> None:
    orchestrator, _ = human_vs_engine
    snapshot = orchestrator.snapshot()
    assert snapshot.on_turn == chess.WHITE
    assert snapshot.seats[chess.WHITE].is_human
    assert snapshot.seats[chess.BLACK].label == "FakeEngine"
    assert snapshot.seats[chess.BLACK].state == SessionState.IDLE
    assert snapshot.clock is None
    assert snapshot.outcome is None


def test_bind_rejects_unknown_seat_and_value() -> None:
    orchestrator = SessionOrchestrator(HarnessConfig())
    with pytest.raises(ConfigurationError):
        orchestrator.bind(HUMAN, "green")
    with pytest.raises(ConfigurationError):
        orchestrator.bind(42, chess.WHITE)


def test_shutdown_terminates_every_engine() -> None:
    white, black = FakeEngineProcess(answer_go=False), FakeEngineProcess()
    orchestrator = make_orchestrator({chess.WHITE: white, chess.BLACK: black})
    orchestrator.start()
    orchestrator.shutdown()
    assert white.terminated and black.terminated
    assert orchestrator.session(chess.WHITE).current_state() == SessionState.STOPPED


def test_swap_seats_exchanges_colours_and_keeps_crash_handling() -> None:
    first = FakeEngineProcess(name="First", answer_go=False)
    second = FakeEngineProcess(name="Second", answer_go=False)
    orchestrator = make_orchestrator({chess.WHITE: first, chess.BLACK: second})

    orchestrator.swap_seats()
    orchestrator.start()

    assert orchestrator.seat_label(chess.WHITE) == "Second"
    assert orchestrator.seat_label(chess.BLACK) == "First"
    assert second.commands("go") == ["go depth 1"]
    assert first.commands("go") == []

    second.exit()
    assert poll_until(orchestrator, lambda: orchestrator.is_offline(chess.WHITE))
    assert not orchestrator.is_offline(chess.BLACK)
    orchestrator.shutdown()
