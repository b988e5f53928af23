"""Scripted UCI engine that always plays the first legal move.

Used as a deterministic opponent and as a misbehaving one: flags make it
crash mid-search, ignore ``stop``, skip the handshake or answer with
illegal moves.
"""

import argparse
import io
import sys
import time
from typing import Callable, Dict, List, Optional, Sequence

import chess


class StubEngine:
    def __init__(
        self,
        *,
        name: str = "StubEngine",
        crash_after: Optional[int] = None,
        wait_for_stop: bool = False,
        ignore_stop: bool = False,
        silent: bool = False,
        illegal: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.crash_after = crash_after
        self.wait_for_stop = wait_for_stop
        self.ignore_stop = ignore_stop
        self.silent = silent
        self.illegal = illegal
        self.delay = delay
        self.board = chess.Board()
        self.running = True
        self.options: Dict[str, str] = {}
        self.searches = 0
        self._searching = False
        self._handlers: Dict[str, Callable[[str], None]] = {
            "uci": self.handle_uci,
            "isready": self.handle_isready,
            "setoption": self.handle_setoption,
            "ucinewgame": self.handle_ucinewgame,
            "position": self.handle_position,
            "go": self.handle_go,
            "stop": self.handle_stop,
            "quit": self.handle_quit,
        }

    def start(self) -> None:
        _ensure_line_buffered_stdout()
        while self.running:
            command = sys.stdin.readline()
            if not command:
                break
            self.handle_line(command)
            sys.stdout.flush()

    def handle_line(self, command: str) -> None:
        command = command.strip()
        if not command:
            return
        parts = command.split(" ", 1)
        name = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""
        handler = self._handlers.get(name, self.handle_unknown)
        handler(args)

    def handle_uci(self, _: str) -> None:
        if self.silent:
            return
        print(f"id name {self.name}")
        print("id author Harness tests")
        print("option name Hash type spin default 16 min 1 max 1024")
        print("option name Ponder type check default false")
        print("uciok")

    def handle_isready(self, _: str) -> None:
        if self.silent:
            return
        print("readyok")

    def handle_setoption(self, args: str) -> None:
        tokens = args.split()
        if "name" not in tokens:
            return
        start = tokens.index("name") + 1
        if "value" in tokens:
            end = tokens.index("value")
            value = " ".join(tokens[end + 1 :])
        else:
            end = len(tokens)
            value = ""
        self.options[" ".join(tokens[start:end])] = value

    def handle_ucinewgame(self, _: str) -> None:
        self.board.reset()

    def handle_position(self, args: str) -> None:
        tokens = args.split()
        if not tokens:
            return
        move_tokens: List[str] = []
        if "moves" in tokens:
            move_index = tokens.index("moves")
            move_tokens = tokens[move_index + 1 :]
            tokens = tokens[:move_index]

        if tokens[0] == "startpos":
            board = chess.Board()
        elif tokens[0] == "fen":
            try:
                board = chess.Board(" ".join(tokens[1:7]))
            except ValueError:
                print(f"info string invalid fen {' '.join(tokens[1:7])}")
                return
        else:
            print(f"info string unsupported position command: {args}")
            return

        for move_text in move_tokens:
            try:
                board.push_uci(move_text)
            except ValueError:
                print(f"info string illegal move in position: {move_text}")
                return
        self.board = board

    def handle_go(self, _: str) -> None:
        self.searches += 1
        if self.crash_after is not None and self.searches > self.crash_after:
            sys.stdout.flush()
            sys.exit(3)
        self._searching = True
        print(f"info depth 1 score cp 0 nodes {self.board.legal_moves.count()}")
        if self.wait_for_stop or self.ignore_stop:
            return
        if self.delay:
            time.sleep(self.delay)
        self._answer()

    def handle_stop(self, _: str) -> None:
        if self._searching and not self.ignore_stop:
            self._answer()

    def handle_quit(self, _: str) -> None:
        self.running = False

    def handle_unknown(self, args: str) -> None:
        print(f"info string unknown command {args}")

    def select_move(self) -> Optional[chess.Move]:
        for move in self.board.legal_moves:
            return move
        return None

    def _answer(self) -> None:
        self._searching = False
        if self.illegal:
            print("bestmove a1a8")
            return
        move = self.select_move()
        print(f"bestmove {move.uci()}" if move is not None else "bestmove (none)")


def _ensure_line_buffered_stdout() -> None:
    stdout = sys.stdout
    if isinstance(stdout, io.TextIOBase) and getattr(stdout, "line_buffering", False):
        return
    buffer = getattr(stdout, "buffer", None)
    if buffer is None:
        return
    sys.stdout = io.TextIOWrapper(buffer, line_buffering=True)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--name", default="StubEngine")
    parser.add_argument("--crash-after", type=int, help="Exit when asked for search number N+1")
    parser.add_argument("--wait-for-stop", action="store_true", help="Answer go only after stop")
    parser.add_argument("--ignore-stop", action="store_true", help="Never answer a search")
    parser.add_argument("--silent", action="store_true", help="Never complete the handshake")
    parser.add_argument("--illegal", action="store_true", help="Answer every search with an illegal move")
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to think before answering")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    StubEngine(
        name=args.name,
        crash_after=args.crash_after,
        wait_for_stop=args.wait_for_stop,
        ignore_stop=args.ignore_stop,
        silent=args.silent,
        illegal=args.illegal,
        delay=args.delay,
    ).start()


if __name__ == "__main__":
    main()
