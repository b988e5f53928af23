import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

import chess

from uci_codec import Go

DEPTH = "depth"
MOVETIME = "movetime"
CLOCK = "clock"
INFINITE = "infinite"
KINDS = (DEPTH, MOVETIME, CLOCK, INFINITE)


@dataclass(frozen=True)
class TimeControl:
    """How long a search request may run.

    Build instances with the ``fixed_depth``, ``fixed_time``, ``clock`` and
    ``infinite`` constructors rather than by hand.
    """

    kind: str
    depth: Optional[int] = None
    movetime_ms: Optional[int] = None
    initial_ms: Optional[int] = None
    increment_ms: int = 0
    moves_to_go: int = 0

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise ValueError(f"Unknown time control kind: {self.kind}")
        if self.kind == DEPTH and (self.depth is None or self.depth < 1):
            raise ValueError("Depth time control needs depth >= 1")
        if self.kind == MOVETIME and (self.movetime_ms is None or self.movetime_ms < 1):
            raise ValueError("Movetime time control needs movetime_ms >= 1")
        if self.kind == CLOCK and (self.initial_ms is None or self.initial_ms < 1):
            raise ValueError("Clock time control needs initial_ms >= 1")
        if self.increment_ms < 0 or self.moves_to_go < 0:
            raise ValueError("Increment and moves-to-go must not be negative")

    @classmethod
    def fixed_depth(cls, depth: int) -> "TimeControl":
        return cls(DEPTH, depth=int(depth))

    @classmethod
    def fixed_time(cls, movetime_ms: int) -> "TimeControl":
        return cls(MOVETIME, movetime_ms=int(movetime_ms))

    @classmethod
    def clock(cls, initial_ms: int, increment_ms: int = 0, moves_to_go: int = 0) -> "TimeControl":
        return cls(CLOCK, initial_ms=int(initial_ms), increment_ms=int(increment_ms), moves_to_go=int(moves_to_go))

    @classmethod
    def infinite(cls) -> "TimeControl":
        return cls(INFINITE)

    @property
    def is_clock(self) -> bool:
        return self.kind == CLOCK

    def describe(self) -> str:
        if self.kind == DEPTH:
            return f"depth {self.depth}"
        if self.kind == MOVETIME:
            return f"{self.movetime_ms} ms/move"
        if self.kind == CLOCK:
            minutes = self.initial_ms / 60000
            if self.increment_ms:
                return f"{minutes:g}m+{self.increment_ms / 1000:g}s"
            return f"{minutes:g}m"
        return "infinite"

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"kind": self.kind}
        for key in ("depth", "movetime_ms", "initial_ms"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.increment_ms:
            data["increment_ms"] = self.increment_ms
        if self.moves_to_go:
            data["moves_to_go"] = self.moves_to_go
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "TimeControl":
        known = {"kind", "depth", "movetime_ms", "initial_ms", "increment_ms", "moves_to_go"}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown time control fields: {', '.join(sorted(unknown))}")
        return cls(**data)


class GameClock:
    """Remaining thinking time per colour, in milliseconds."""

    def __init__(
        self,
        initial_ms: Mapping[bool, float],
        increment_ms: Optional[Mapping[bool, float]] = None,
        *,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self._remaining: Dict[bool, float] = {color: float(initial_ms[color]) for color in chess.COLORS}
        self._increment: Dict[bool, float] = {
            color: float((increment_ms or {}).get(color, 0)) for color in chess.COLORS
        }
        self._now = now
        self._running: Optional[bool] = None
        self._started_at = 0.0

    @classmethod
    def for_seats(
        cls,
        time_controls: Mapping[bool, TimeControl],
        *,
        now: Callable[[], float] = time.monotonic,
    ) -> Optional["GameClock"]:
        """Build a clock if any seat plays on the clock; other seats get unlimited time."""
        if not any(tc.is_clock for tc in time_controls.values()):
            return None
        initial = {}
        increment = {}
        for color in chess.COLORS:
            tc = time_controls.get(color)
            if tc is not None and tc.is_clock:
                initial[color] = tc.initial_ms
                increment[color] = tc.increment_ms
            else:
                initial[color] = float("inf")
                increment[color] = 0
        return cls(initial, increment, now=now)

    @property
    def running(self) -> Optional[bool]:
        return self._running

    def start(self, color: bool) -> None:
        if self._running is not None:
            self.stop()
        self._running = color
        self._started_at = self._now()

    def stop(self) -> float:
        if self._running is None:
            return 0.0
        elapsed = (self._now() - self._started_at) * 1000.0
        self._remaining[self._running] -= elapsed
        self._running = None
        return elapsed

    def add_increment(self, color: bool) -> None:
        self._remaining[color] += self._increment[color]

    def remaining(self, color: bool) -> float:
        value = self._remaining[color]
        if self._running == color:
            value -= (self._now() - self._started_at) * 1000.0
        return max(0.0, value)

    def flag_fallen(self, color: bool) -> bool:
        return self.remaining(color) <= 0

    def readings(self) -> Dict[bool, float]:
        return {color: self.remaining(color) for color in chess.COLORS}


def build_go_command(
    time_control: TimeControl,
    *,
    clock: Optional[GameClock] = None,
    turn: bool = chess.WHITE,
) -> Go:
    """Construct the ``go`` command for *time_control*."""
    if time_control.kind == DEPTH:
        return Go(depth=time_control.depth)
    if time_control.kind == MOVETIME:
        return Go(movetime=time_control.movetime_ms)
    if time_control.kind == INFINITE:
        return Go(infinite=True)

    own = clock.remaining(turn) if clock is not None else float(time_control.initial_ms)
    other = clock.remaining(not turn) if clock is not None else float(time_control.initial_ms)
    if other == float("inf"):
        other = own
    times = {turn: own, not turn: other}
    return Go(
        wtime=int(times[chess.WHITE]),
        btime=int(times[chess.BLACK]),
        winc=time_control.increment_ms or None,
        binc=time_control.increment_ms or None,
        movestogo=time_control.moves_to_go or None,
    )


def search_deadline(
    time_control: TimeControl,
    *,
    clock: Optional[GameClock] = None,
    turn: bool = chess.WHITE,
) -> Optional[float]:
    """Seconds a search may take before it counts as overrunning."""
    if time_control.kind == MOVETIME:
        return time_control.movetime_ms / 1000.0
    if time_control.kind == CLOCK:
        remaining = clock.remaining(turn) if clock is not None else time_control.initial_ms
        return remaining / 1000.0
    return None
