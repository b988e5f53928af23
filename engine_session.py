"""One engine subprocess speaking UCI, wrapped in an explicit state machine.

A dedicated reader thread turns engine output into decoded messages and
pushes them onto a queue.  Everything else, including every state
transition, happens on the thread that owns the session (the
orchestrator's control thread), which drains that queue without blocking.
"""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import chess

from chess_logic import Position
from config import DEFAULT_CANCEL_GRACE, DEFAULT_HANDSHAKE_TIMEOUT, DEFAULT_TERMINATE_TIMEOUT, EngineConfig
from engine_comm import EngineProcess
from errors import PipeClosed, ProtocolViolation, SessionBusy, SessionCrashed, SpawnError, SpawnFailed
from time_control import GameClock, TimeControl, build_go_command
from uci_codec import (
    BestMove,
    Command,
    IdInfo,
    IsReady,
    NewGame,
    OptionDeclaration,
    ReadyOk,
    SearchInfo,
    SetOption,
    SetPosition,
    Stop,
    Uci,
    UciOk,
    Unparseable,
    decode,
    encode,
)
import utils


class SessionState(Enum):
    STARTING = "starting"
    HANDSHAKE = "handshake"
    IDLE = "idle"
    SEARCHING = "searching"
    CRASHED = "crashed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CRASHED, SessionState.STOPPED)


@dataclass(frozen=True)
class EngineIdentity:
    path: str
    name: str
    author: Optional[str] = None
    options: Mapping[str, OptionDeclaration] = field(default_factory=dict)

    @property
    def supports_ponder(self) -> bool:
        return "ponder" in self._option_keys()

    @property
    def supports_multipv(self) -> bool:
        return "multipv" in self._option_keys()

    @property
    def supports_limit_strength(self) -> bool:
        return "uci_limitstrength" in self._option_keys()

    def _option_keys(self):
        return {name.lower() for name in self.options}


@dataclass(frozen=True)
class SearchRequest:
    seq: int
    position: Position
    time_control: TimeControl
    issued_at: float


@dataclass(frozen=True)
class SearchResult:
    seq: int
    move: Optional[chess.Move]
    ponder: Optional[chess.Move] = None
    info: Optional[SearchInfo] = None
    error: Optional[str] = None

    @property
    def score_cp(self) -> Optional[int]:
        return self.info.score_cp if self.info is not None else None

    @property
    def mate(self) -> Optional[int]:
        return self.info.mate if self.info is not None else None


class _ReaderExit:
    def __init__(self, reason: str) -> None:
        self.reason = reason


class _HandshakeTimeout(Exception):
    pass


StateListener = Callable[["EngineSession", SessionState, SessionState], None]
ProcessFactory = Callable[..., EngineProcess]


class EngineSession:
    """Drives one engine through handshake, searches and shutdown.

    UCI answers every ``go`` with exactly one ``bestmove``, so the session
    counts the ``go`` commands still unanswered.  A ``bestmove`` answers
    the oldest of them; only the answer to the current request becomes a
    :class:`SearchResult`, every other one is stale and dropped.

    A search that is forced idle after an ignored ``stop`` is abandoned: the
    engine may still answer it, or may never do so.  While such answers are
    owed, a ``bestmove`` for the current request is held for one
    ``cancel_grace``.  A second ``bestmove`` shows the held one was the late
    answer; otherwise the held one is taken and the pairing starts afresh.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        process_factory: Optional[ProcessFactory] = None,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.handshake_timeout = handshake_timeout
        self.cancel_grace = cancel_grace
        self.terminate_timeout = terminate_timeout
        self._process_factory = process_factory or EngineProcess.spawn
        self._now = now

        self._state = SessionState.STARTING
        self._listeners: List[StateListener] = []
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._process: Optional[EngineProcess] = None
        self._reader: Optional[threading.Thread] = None

        self._position: Optional[Position] = None
        self._request: Optional[SearchRequest] = None
        self._seq = 0
        self._unanswered = 0
        self._abandoned = 0
        self._held: Optional[Tuple[BestMove, Optional[str], float]] = None
        self._stop_sent = False

        self.identity: Optional[EngineIdentity] = None
        self.last_info: Optional[SearchInfo] = None
        self.last_error: Optional[str] = None
        self.protocol_violations = 0
        self.last_violation: Optional[ProtocolViolation] = None

    # ---------- Introspection ----------

    @property
    def state(self) -> SessionState:
        return self._state

    def current_state(self) -> SessionState:
        return self._state

    @property
    def label(self) -> str:
        if self.identity is not None:
            return self.identity.name
        return self.config.display_name

    @property
    def outstanding_request(self) -> Optional[SearchRequest]:
        return self._request

    @property
    def position(self) -> Optional[Position]:
        return self._position

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # ---------- Lifecycle ----------

    def start(self) -> EngineIdentity:
        """Spawn the engine and complete the handshake (blocks, bounded)."""
        if self._state != SessionState.STARTING:
            raise RuntimeError(f"{self.label} already started ({self._state.value})")
        try:
            self._process = self._process_factory(
                self.config.path,
                args=self.config.args,
                workdir=self.config.workdir,
                label=self.config.display_name,
            )
        except SpawnError as exc:
            self.last_error = str(exc)
            self._set_state(SessionState.CRASHED)
            raise SpawnFailed(str(exc)) from exc

        self._set_state(SessionState.HANDSHAKE)
        self._reader = threading.Thread(
            target=self._reader_loop,
            args=(self._process,),
            name=f"{self.config.display_name}-reader",
            daemon=True,
        )
        self._reader.start()

        try:
            self.identity = self._handshake()
        except _HandshakeTimeout:
            self._crash(f"handshake timed out after {self.handshake_timeout:g}s")
            raise SessionCrashed(f"{self.label}: {self.last_error}") from None
        self._set_state(SessionState.IDLE)
        utils.report(utils.info_text(f"{self.label} ready ({self.config.path})"))
        return self.identity

    def new_game(self) -> None:
        if self._state == SessionState.SEARCHING:
            self.cancel_search()
        if self._state != SessionState.IDLE:
            return
        self._send(NewGame())
        self._send(IsReady())

    def shutdown(self) -> None:
        if self._state == SessionState.STOPPED:
            return
        self._request = None
        self._held = None
        self._set_state(SessionState.STOPPED)
        self._release_process()

    # ---------- Searching ----------

    def set_position(self, position: Position) -> None:
        self._position = position
        if self._state == SessionState.IDLE:
            self._send(SetPosition(fen=position.start_fen, moves=position.moves))

    def request_search(
        self,
        time_control: TimeControl,
        position: Optional[Position] = None,
        *,
        clock: Optional[GameClock] = None,
    ) -> SearchRequest:
        if self._state == SessionState.SEARCHING:
            raise SessionBusy(f"{self.label} is already searching")
        self._drain()
        if self._state == SessionState.CRASHED:
            raise SessionCrashed(f"{self.label} cannot search: {self.last_error}")
        if self._state != SessionState.IDLE:
            raise SessionBusy(f"{self.label} cannot search while {self._state.value}")
        position = position or self._position
        if position is None:
            raise ValueError("No position to search")

        go = build_go_command(time_control, clock=clock, turn=position.turn)
        self._position = position
        self._send(SetPosition(fen=position.start_fen, moves=position.moves))
        self._send(go)
        self._seq += 1
        self._unanswered += 1
        self._request = SearchRequest(self._seq, position, time_control, self._now())
        self._stop_sent = False
        self.last_info = None
        self._set_state(SessionState.SEARCHING)
        return self._request

    def poll_result(self) -> Optional[SearchResult]:
        """Drain already-received output; never blocks."""
        if self._state.is_terminal:
            return None
        return self._drain()

    def request_stop(self) -> None:
        """Ask the engine to finish now; its answer is still a valid result."""
        if self._state != SessionState.SEARCHING or self._stop_sent:
            return
        self._stop_sent = True
        try:
            self._send(Stop())
        except SessionCrashed:
            return

    def cancel_search(self, grace: Optional[float] = None) -> None:
        """Stop the current search and discard its answer.

        Returns to Idle within *grace* seconds (default ``cancel_grace``)
        whether or not the engine acknowledges the stop.  A grace of zero
        only consumes output that has already arrived.
        """
        if grace is None:
            grace = self.cancel_grace
        if self._state != SessionState.SEARCHING:
            return
        if self._held is not None:
            # Owed to an abandoned search or to this one; both are discarded.
            self._held = None
            self._abandoned -= 1
        try:
            self._send(Stop())
        except SessionCrashed:
            return
        deadline = self._now() + grace
        while self._state == SessionState.SEARCHING:
            remaining = deadline - self._now()
            try:
                if remaining > 0:
                    item = self._queue.get(timeout=remaining)
                else:
                    item = self._queue.get_nowait()
            except queue.Empty:
                break
            self._handle(item)

        if self._state == SessionState.SEARCHING:
            utils.report(
                utils.warning_text(
                    f"{self.label} did not answer stop within {grace:g}s; forcing idle"
                )
            )
            self._request = None
            if self._held is not None:
                self._held = None
                self._abandoned -= 1
            self._abandoned += self._unanswered
            self._unanswered = 0
            self._set_state(SessionState.IDLE)

    # ---------- Internals ----------

    def _reader_loop(self, process: EngineProcess) -> None:
        try:
            while True:
                line = process.read_line()
                if line is None:
                    break
                message = decode(line)
                if message is not None:
                    self._queue.put(message)
        except (OSError, ValueError) as exc:
            self._queue.put(_ReaderExit(f"read failed: {exc}"))
            return
        self._queue.put(_ReaderExit("engine process exited"))

    def _handshake(self) -> EngineIdentity:
        deadline = self._now() + self.handshake_timeout
        name: Optional[str] = None
        author: Optional[str] = None
        declared: Dict[str, OptionDeclaration] = {}

        self._send(Uci())
        while True:
            message = self._wait_message(deadline)
            if isinstance(message, IdInfo):
                if message.key == "name":
                    name = message.value
                elif message.key == "author":
                    author = message.value
            elif isinstance(message, OptionDeclaration):
                declared[message.name] = message
            elif isinstance(message, UciOk):
                break

        by_key = {option_name.lower(): option_name for option_name in declared}
        for option_name, value in self.config.options.items():
            engine_name = by_key.get(option_name.lower())
            if engine_name is None:
                utils.report(utils.warning_text(f"{self.config.display_name} has no option {option_name!r}; skipped"))
                continue
            self._send(SetOption(engine_name, value))

        self._send(IsReady())
        while not isinstance(self._wait_message(deadline), ReadyOk):
            pass

        return EngineIdentity(
            path=self.config.path,
            name=self.config.name or name or self.config.display_name,
            author=author,
            options=declared,
        )

    def _wait_message(self, deadline: float) -> object:
        remaining = deadline - self._now()
        if remaining <= 0:
            raise _HandshakeTimeout()
        try:
            item = self._queue.get(timeout=remaining)
        except queue.Empty:
            raise _HandshakeTimeout() from None
        if isinstance(item, _ReaderExit):
            self._crash(item.reason)
            raise SessionCrashed(f"{self.label}: {item.reason}")
        if isinstance(item, Unparseable):
            self._note_violation(item)
        return item

    def _drain(self) -> Optional[SearchResult]:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return self._release_held()
            result = self._handle(item)
            if result is not None:
                return result
            if self._state.is_terminal:
                return None

    def _handle(self, item: object) -> Optional[SearchResult]:
        if isinstance(item, _ReaderExit):
            if not self._state.is_terminal:
                self._crash(item.reason)
            return None
        if isinstance(item, Unparseable):
            self._note_violation(item)
            if item.keyword == "bestmove":
                return self._resolve(BestMove(move=None), f"sent {item.reason}")
            return None
        if isinstance(item, SearchInfo):
            if self._state == SessionState.SEARCHING and (item.depth is not None or item.score_cp is not None or item.mate is not None):
                self.last_info = item
            return None
        if isinstance(item, BestMove):
            return self._resolve(item)
        return None

    def _resolve(self, message: BestMove, error: Optional[str] = None) -> Optional[SearchResult]:
        if self._unanswered == 0:
            if self._abandoned:
                self._abandoned -= 1
                utils.report(
                    utils.debug_text(f"{self.label} late answer to an abandoned search dropped"),
                    utils.ReportingLevel.VERBOSE,
                )
                return None
            self.protocol_violations += 1
            utils.report(utils.debug_text(f"{self.label} sent an unsolicited bestmove"))
            return None
        if self._abandoned and self._state == SessionState.SEARCHING:
            if self._held is not None:
                # A second answer arrived, so the held one was owed to an abandoned search.
                self._held = None
                self._abandoned -= 1
            if self._abandoned:
                self._held = (message, error, self._now())
                return None
        return self._answer(message, error)

    def _release_held(self) -> Optional[SearchResult]:
        if self._held is None or self._state != SessionState.SEARCHING:
            return None
        message, error, held_at = self._held
        if self._now() - held_at < self.cancel_grace:
            return None
        self._held = None
        utils.report(
            utils.debug_text(f"{self.label} never answered {self._abandoned} abandoned search(es); pairing reset"),
            utils.ReportingLevel.VERBOSE,
        )
        self._abandoned = 0
        return self._answer(message, error)

    def _answer(self, message: BestMove, error: Optional[str]) -> Optional[SearchResult]:
        self._unanswered -= 1
        answered_seq = self._seq - self._unanswered
        request = self._request
        if request is None or answered_seq != request.seq or self._state != SessionState.SEARCHING:
            utils.report(
                utils.debug_text(f"{self.label} stale bestmove for request #{answered_seq} dropped"),
                utils.ReportingLevel.VERBOSE,
            )
            return None
        self._request = None
        self._set_state(SessionState.IDLE)
        return SearchResult(
            seq=request.seq,
            move=message.move,
            ponder=message.ponder,
            info=self.last_info,
            error=error,
        )

    def _note_violation(self, message: Unparseable) -> None:
        self.protocol_violations += 1
        self.last_violation = ProtocolViolation(f"{message.reason}: {message.line!r}")
        utils.report(
            utils.debug_text(f"{self.label} unparseable output: {message.line}"),
            utils.ReportingLevel.VERBOSE,
        )

    def _send(self, command: Command) -> None:
        if self._process is None:
            raise SessionCrashed(f"{self.label} has no process")
        try:
            self._process.write_line(encode(command))
        except PipeClosed as exc:
            self._crash(str(exc))
            raise SessionCrashed(f"{self.label}: {exc}") from exc

    def _crash(self, reason: str) -> None:
        if self._state.is_terminal:
            return
        self.last_error = reason
        self._request = None
        self._held = None
        utils.report(utils.debug_text(f"{self.label} crashed: {reason}"))
        self._set_state(SessionState.CRASHED)
        self._release_process()

    def _release_process(self) -> None:
        if self._process is None:
            return
        self._process.terminate(timeout=self.terminate_timeout)
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)
        self._process.close()

    def _set_state(self, state: SessionState) -> None:
        old = self._state
        if old == state:
            return
        self._state = state
        utils.report(
            utils.info_text(f"{self.label}: {old.value} -> {state.value}"),
            utils.ReportingLevel.VERBOSE,
        )
        for listener in list(self._listeners):
            listener(self, old, state)
