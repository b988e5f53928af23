"""Coordinates up to two seats (humans or engine sessions) over one board.

The orchestrator is the only writer of the :class:`BoardModel`.  It runs on
a single control thread: the presentation layer calls :meth:`poll` from its
render loop and :meth:`submit_move` for human input, and neither blocks.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import chess

from chess_logic import BoardModel, GameOutcome, Position, export_pgn, parse_move
from config import COLOR_NAME, SEAT_NAMES, EngineConfig, HarnessConfig
from engine_session import EngineSession, SearchRequest, SearchResult, SessionState
from errors import ConfigurationError, NoHistory, NotYourTurn, SessionBusy, SessionCrashed, SpawnFailed
from time_control import GameClock, TimeControl, search_deadline
import utils

HUMAN = "human"
MAX_RETRIES = 1

SessionFactory = Callable[[EngineConfig], EngineSession]


@dataclass
class OrchestratorEvents:
    on_move: List[Callable[[bool, chess.Move, Position], None]] = field(default_factory=list)
    on_session_state: List[Callable[[bool, SessionState, SessionState], None]] = field(default_factory=list)
    on_seat_error: List[Callable[[bool, str], None]] = field(default_factory=list)
    on_game_over: List[Callable[[GameOutcome], None]] = field(default_factory=list)


@dataclass(frozen=True)
class SeatStatus:
    color: bool
    label: str
    is_human: bool
    state: Optional[SessionState] = None
    offline: bool = False
    thinking: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class OrchestratorSnapshot:
    position: Position
    history: Tuple[chess.Move, ...]
    turn: bool
    on_turn: Optional[bool]
    seats: Mapping[bool, SeatStatus]
    outcome: Optional[GameOutcome] = None
    clock: Optional[Mapping[bool, float]] = None
    paused: bool = False
    last_error: Optional[str] = None


class _Seat:
    def __init__(self, color: bool, engine: Optional[EngineConfig], time_control: TimeControl) -> None:
        self.color = color
        self.engine = engine
        self.time_control = time_control
        self.session: Optional[EngineSession] = None
        self.request: Optional[SearchRequest] = None
        self.held: Optional[SearchResult] = None
        self.stop_requested_at: Optional[float] = None
        self.retries = 0
        self.offline = False
        self.error: Optional[str] = None

    @property
    def is_human(self) -> bool:
        return self.engine is None

    @property
    def label(self) -> str:
        if self.engine is None:
            return f"Human ({COLOR_NAME[self.color]})"
        if self.session is not None:
            return self.session.label
        return self.engine.display_name

    def live_session(self) -> Optional[EngineSession]:
        if self.offline or self.session is None:
            return None
        return self.session


class SessionOrchestrator:
    """Turn ownership, search scheduling and failure handling for one game."""

    def __init__(
        self,
        config: HarnessConfig,
        *,
        session_factory: Optional[SessionFactory] = None,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.events = OrchestratorEvents()
        self._now = now
        self._session_factory = session_factory or self._default_session_factory
        self._board = BoardModel(config.start_fen)
        self._seats: Dict[bool, _Seat] = {}
        self._clock: Optional[GameClock] = None
        self._outcome: Optional[GameOutcome] = None
        self._started = False
        self._paused = False
        self.last_error: Optional[str] = None

    def _default_session_factory(self, engine: EngineConfig) -> EngineSession:
        return EngineSession(
            engine,
            handshake_timeout=self.config.handshake_timeout,
            cancel_grace=self.config.cancel_grace,
            terminate_timeout=self.config.terminate_timeout,
            now=self._now,
        )

    # ---------- Read-only views ----------

    @property
    def position(self) -> Position:
        return self._board.position

    @property
    def history(self) -> Tuple[chess.Move, ...]:
        return self._board.history

    @property
    def outcome(self) -> Optional[GameOutcome]:
        return self._outcome

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def clock(self) -> Optional[GameClock]:
        return self._clock

    def on_turn(self) -> Optional[bool]:
        if self._outcome is not None:
            return None
        return self._board.turn

    def session(self, seat: bool) -> Optional[EngineSession]:
        slot = self._seats.get(seat)
        return slot.session if slot is not None else None

    def seat_label(self, seat: bool) -> str:
        slot = self._seats.get(seat)
        return slot.label if slot is not None else COLOR_NAME[seat]

    def is_offline(self, seat: bool) -> bool:
        slot = self._seats.get(seat)
        return slot is not None and slot.offline

    def snapshot(self) -> OrchestratorSnapshot:
        seats = {}
        for color in chess.COLORS:
            slot = self._seats.get(color)
            if slot is None:
                seats[color] = SeatStatus(color, COLOR_NAME[color], is_human=True)
                continue
            session = slot.session
            seats[color] = SeatStatus(
                color=color,
                label=slot.label,
                is_human=slot.is_human,
                state=session.state if session is not None else None,
                offline=slot.offline,
                thinking=session is not None and session.state == SessionState.SEARCHING,
                error=slot.error,
            )
        return OrchestratorSnapshot(
            position=self._board.position,
            history=self._board.history,
            turn=self._board.turn,
            on_turn=self.on_turn(),
            seats=seats,
            outcome=self._outcome,
            clock=self._clock.readings() if self._clock is not None else None,
            paused=self._paused,
            last_error=self.last_error,
        )

    def export_pgn(self, event: str = "Engine match") -> str:
        return export_pgn(
            self._board.position,
            white=self.seat_label(chess.WHITE),
            black=self.seat_label(chess.BLACK),
            outcome=self._outcome,
            event=event,
        )

    # ---------- Seats ----------

    def bind(self, engine: Union[EngineConfig, str, None], seat: bool) -> bool:
        """Give *seat* to an engine or to a human.

        Binding an engine spawns it and completes the handshake.  Returns
        ``False`` when the engine could not be brought up; the seat is then
        offline and the other seat is unaffected.
        """
        if seat not in SEAT_NAMES:
            raise ConfigurationError(f"Unknown seat: {seat!r}")
        previous = self._seats.get(seat)
        if previous is not None:
            self._release(previous)

        time_control = self.config.seat(seat).time_control
        if engine is None or engine == HUMAN:
            self._seats[seat] = _Seat(seat, None, time_control)
            return True
        if not isinstance(engine, EngineConfig):
            raise ConfigurationError(f"Cannot bind {engine!r} to a seat")
        slot = _Seat(seat, engine, time_control)
        self._seats[seat] = slot
        launched = self._launch(slot)
        if launched:
            self._prompt()
        return launched

    def bind_configured(self) -> Dict[bool, bool]:
        """Bind every seat named in the configuration."""
        return {color: self.bind(seat.engine or HUMAN, color) for color, seat in self.config.seats.items()}

    def handle_crash(self, seat: bool) -> None:
        slot = self._seats.get(seat)
        if slot is None or slot.session is None or slot.offline:
            return
        reason = slot.session.last_error or "engine crashed"
        self._mark_offline(slot, f"{slot.label} crashed: {reason}")

    def restart_engine(self, seat: bool) -> bool:
        slot = self._seats.get(seat)
        if slot is None or slot.engine is None:
            raise ConfigurationError(f"{SEAT_NAMES[seat]} seat has no engine to restart")
        self._release(slot)
        launched = self._launch(slot)
        if launched:
            self._prompt()
        return launched

    def switch_to_human(self, seat: bool) -> None:
        slot = self._seats.get(seat)
        if slot is None:
            self._seats[seat] = _Seat(seat, None, self.config.seat(seat).time_control)
            return
        self._release(slot)
        slot.engine = None
        slot.offline = False
        slot.error = None
        utils.report(utils.info_text(f"{COLOR_NAME[seat]} is now played by a human"))
        self._prompt()

    def swap_seats(self) -> None:
        """Exchange colours between the seats; engines keep running.

        Each seat keeps its own time control.  Takes effect from the next
        :meth:`start`.
        """
        self._cancel_all()
        white, black = self._seats.get(chess.WHITE), self._seats.get(chess.BLACK)
        for color, slot in ((chess.WHITE, black), (chess.BLACK, white)):
            if slot is None:
                self._seats[color] = _Seat(color, None, self.config.seat(color).time_control)
                continue
            slot.color = color
            self._seats[color] = slot
        self._started = False
        utils.report(
            utils.info_text(f"Seats swapped: {self.seat_label(chess.WHITE)} now plays White"),
            utils.ReportingLevel.VERBOSE,
        )

    # ---------- Game flow ----------

    def start(self, fen: Optional[str] = None) -> Position:
        if not self._seats:
            raise ConfigurationError("No seats bound")
        self._cancel_all()
        for color in chess.COLORS:
            if color not in self._seats:
                self._seats[color] = _Seat(color, None, self.config.seat(color).time_control)
        if fen is not None:
            self._board.reset(fen)
        else:
            self._board.reset(self._board.start_fen)

        self._outcome = None
        self._paused = False
        self._clock = GameClock.for_seats(
            {color: slot.time_control for color, slot in self._seats.items()},
            now=self._now,
        )
        position = self._board.position
        for slot in self._seats.values():
            slot.retries = 0
            slot.held = None
            session = slot.live_session()
            if session is None:
                continue
            try:
                session.new_game()
                session.set_position(position)
            except SessionCrashed:
                self.handle_crash(slot.color)
        self._started = True
        utils.report(utils.info_text(f"New game: {self.seat_label(chess.WHITE)} vs {self.seat_label(chess.BLACK)}"))
        self._check_outcome()
        self._prompt()
        return position

    def new_game(self, fen: Optional[str] = None) -> Position:
        return self.start(fen)

    def submit_move(self, move: Union[chess.Move, str], seat: bool) -> Position:
        """Apply an externally supplied move for *seat*.

        Only the seat on turn may move, and only human seats accept moves
        from outside; engine moves arrive through :meth:`poll`.
        """
        self._check_flag()
        if self._outcome is not None:
            raise NotYourTurn(f"Game is over: {self._outcome.describe()}")
        if seat != self._board.turn:
            raise NotYourTurn(f"{COLOR_NAME[seat]} is not on turn")
        slot = self._seats.get(seat)
        if slot is not None and not slot.is_human:
            raise NotYourTurn(f"{COLOR_NAME[seat]} is played by {slot.label}")
        if not isinstance(move, chess.Move):
            move = parse_move(str(move), self._board.position)
        return self._commit(seat, move)

    def poll(self) -> List[chess.Move]:
        """Apply whatever the engines have finished; never blocks."""
        applied = []
        for color in chess.COLORS:
            slot = self._seats.get(color)
            if slot is None:
                continue
            session = slot.live_session()
            if session is None:
                continue
            result = session.poll_result()
            if slot.offline:
                continue
            if result is None:
                self._check_overrun(slot)
                continue
            if self._paused:
                slot.held = result
                continue
            move = self._accept_result(slot, result)
            if move is not None:
                applied.append(move)
        self._check_flag()
        return applied

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        if self._clock is not None:
            self._clock.stop()
        utils.report(utils.info_text("Game paused"))

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        utils.report(utils.info_text("Game resumed"))
        for slot in list(self._seats.values()):
            held, slot.held = slot.held, None
            if held is not None:
                self._accept_result(slot, held)
        self._prompt()

    def cancel_search(self, seat: Optional[bool] = None) -> None:
        """Abandon running searches; the game stays paused until resumed."""
        colors = chess.COLORS if seat is None else [seat]
        cancelled = False
        for color in colors:
            slot = self._seats.get(color)
            if slot is None:
                continue
            session = slot.live_session()
            if session is not None and session.state == SessionState.SEARCHING:
                session.cancel_search()
                cancelled = True
            slot.request = None
            slot.held = None
            slot.stop_requested_at = None
        if cancelled:
            self.pause()

    def undo(self, plies: int = 1) -> Position:
        if plies < 1:
            raise ValueError("plies must be positive")
        if len(self._board.history) < plies:
            raise NoHistory(f"Cannot undo {plies} plies; only {len(self._board.history)} played")
        self._cancel_all()
        if self._clock is not None:
            self._clock.stop()
        for _ in range(plies):
            self._board.undo()
        self._outcome = None
        position = self._board.position
        for slot in self._seats.values():
            slot.retries = 0
            self._push_position(slot, position)
        self._prompt()
        return position

    def shutdown(self) -> None:
        for slot in self._seats.values():
            if slot.session is not None:
                slot.session.shutdown()
            slot.request = None
        if self._clock is not None:
            self._clock.stop()
        self._started = False
        utils.report(utils.info_text("All engines shut down"), utils.ReportingLevel.VERBOSE)

    # ---------- Internals ----------

    def _launch(self, slot: _Seat) -> bool:
        session = self._session_factory(slot.engine)
        slot.session = session
        slot.request = None
        slot.held = None
        slot.stop_requested_at = None
        slot.retries = 0
        slot.offline = False
        slot.error = None
        session.add_listener(self._on_session_state)
        try:
            session.start()
        except (SpawnFailed, SessionCrashed) as exc:
            self._mark_offline(slot, str(exc))
            return False
        if self._started:
            try:
                session.new_game()
                self._push_position(slot, self._board.position)
            except SessionCrashed:
                self.handle_crash(slot.color)
                return False
        return True

    def _on_session_state(self, session: EngineSession, old: SessionState, new: SessionState) -> None:
        slot = next((slot for slot in self._seats.values() if slot.session is session), None)
        if slot is None:
            return
        self._emit(self.events.on_session_state, slot.color, old, new)
        if new == SessionState.CRASHED:
            self.handle_crash(slot.color)

    def _release(self, slot: _Seat) -> None:
        if slot.session is not None:
            slot.session.shutdown()
        slot.session = None
        slot.request = None
        slot.held = None
        slot.stop_requested_at = None

    def _mark_offline(self, slot: _Seat, message: str) -> None:
        if slot.offline:
            return
        slot.offline = True
        slot.error = message
        slot.request = None
        slot.held = None
        slot.stop_requested_at = None
        self.last_error = message
        if self._clock is not None and self._clock.running == slot.color:
            self._clock.stop()
        utils.report(utils.warning_text(f"{COLOR_NAME[slot.color]} offline: {message}"))
        self._emit(self.events.on_seat_error, slot.color, message)

    def _push_position(self, slot: _Seat, position: Position) -> None:
        session = slot.live_session()
        if session is not None and session.state == SessionState.IDLE:
            session.set_position(position)

    def _commit(self, color: bool, move: chess.Move) -> Position:
        position = self._board.apply(move)
        if self._clock is not None:
            self._clock.stop()
            self._clock.add_increment(color)
        utils.report(utils.info_text(f"{COLOR_NAME[color]} plays {move.uci()}"), utils.ReportingLevel.VERBOSE)
        for slot in self._seats.values():
            try:
                self._push_position(slot, position)
            except SessionCrashed:
                self.handle_crash(slot.color)
        self._emit(self.events.on_move, color, move, position)
        self._check_outcome()
        self._prompt()
        return position

    def _prompt(self) -> None:
        """Start the clock for the seat on turn and ask its engine to search."""
        if not self._started or self._paused or self._outcome is not None:
            return
        color = self._board.turn
        slot = self._seats.get(color)
        if slot is None or slot.offline:
            return
        if self._clock is not None and self._clock.running != color:
            self._clock.start(color)
        session = slot.live_session()
        if session is None or session.state != SessionState.IDLE:
            return
        try:
            slot.request = session.request_search(slot.time_control, self._board.position, clock=self._clock)
        except SessionBusy:
            return
        except SessionCrashed:
            self.handle_crash(color)
            return
        slot.stop_requested_at = None

    def _accept_result(self, slot: _Seat, result: SearchResult) -> Optional[chess.Move]:
        slot.request = None
        slot.stop_requested_at = None
        self._check_flag()
        if self._outcome is not None or not self._started:
            return None
        if slot.color != self._board.turn:
            utils.report(utils.debug_text(f"{slot.label} answered out of turn; ignored"))
            return None
        move = result.move
        if move is None:
            self._engine_failure(slot, result.error or "returned no move")
            return None
        if not self._board.is_legal(move):
            self._engine_failure(slot, f"returned illegal move {move.uci()}")
            return None
        slot.retries = 0
        self._commit(slot.color, move)
        return move

    def _engine_failure(self, slot: _Seat, reason: str) -> None:
        slot.retries += 1
        if slot.retries > MAX_RETRIES:
            self._mark_offline(slot, f"{slot.label} {reason}")
            return
        utils.report(utils.warning_text(f"{slot.label} {reason}; asking again"))
        self._prompt()

    def _check_overrun(self, slot: _Seat) -> None:
        request = slot.request
        session = slot.live_session()
        if request is None or session is None or session.state != SessionState.SEARCHING:
            return
        if slot.time_control.is_clock:
            return
        limit = search_deadline(slot.time_control)
        if limit is None:
            return
        now = self._now()
        if slot.stop_requested_at is None:
            if now - request.issued_at > limit:
                utils.report(utils.debug_text(f"{slot.label} overran {limit:g}s; sending stop"))
                session.request_stop()
                slot.stop_requested_at = now
        elif now - slot.stop_requested_at > self.config.cancel_grace:
            session.cancel_search(grace=0)
            slot.request = None
            slot.stop_requested_at = None
            self._engine_failure(slot, "ignored stop")

    def _check_flag(self) -> None:
        if self._clock is None or self._outcome is not None:
            return
        color = self._clock.running
        if color is None or not self._clock.flag_fallen(color):
            return
        self._clock.stop()
        if self._board.board().has_insufficient_material(not color):
            outcome = GameOutcome(None, "timeout vs insufficient material")
        else:
            outcome = GameOutcome(not color, "time forfeit")
        self._finish(outcome)

    def _check_outcome(self) -> None:
        outcome = self._board.outcome()
        if outcome is not None:
            self._finish(outcome)

    def _finish(self, outcome: GameOutcome) -> None:
        if self._outcome is not None:
            return
        self._outcome = outcome
        if self._clock is not None:
            self._clock.stop()
        for slot in self._seats.values():
            session = slot.live_session()
            if session is not None and session.state == SessionState.SEARCHING:
                session.cancel_search(grace=0)
            slot.request = None
            slot.held = None
        utils.report(utils.info_text(f"Game over: {outcome.describe()} ({outcome.result})"))
        self._emit(self.events.on_game_over, outcome)

    def _cancel_all(self) -> None:
        for slot in self._seats.values():
            session = slot.live_session()
            if session is not None and session.state == SessionState.SEARCHING:
                session.cancel_search()
            slot.request = None
            slot.held = None
            slot.stop_requested_at = None

    @staticmethod
    def _emit(callbacks, *args) -> None:
        for callback in list(callbacks):
            callback(*args)
