"""Encoding and decoding of the UCI line protocol.

Commands are small dataclasses turned into single text lines by
:func:`encode`.  Engine output is decoded line by line by :func:`decode`
into typed messages.  Decoding is permissive: unknown leading tokens are
skipped, unknown ``info`` keys are ignored and anything that still cannot
be understood becomes :class:`Unparseable` instead of raising.
"""
from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

import chess

STARTPOS_FEN = chess.STARTING_FEN


# ---------- Commands (harness -> engine) ----------


@dataclass(frozen=True)
class Uci:
    pass


@dataclass(frozen=True)
class IsReady:
    pass


@dataclass(frozen=True)
class SetOption:
    name: str
    value: Optional[str] = None


@dataclass(frozen=True)
class NewGame:
    pass


@dataclass(frozen=True)
class SetPosition:
    fen: Optional[str] = None
    moves: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Go:
    depth: Optional[int] = None
    movetime: Optional[int] = None
    wtime: Optional[int] = None
    btime: Optional[int] = None
    winc: Optional[int] = None
    binc: Optional[int] = None
    movestogo: Optional[int] = None
    infinite: bool = False


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Quit:
    pass


Command = Union[Uci, IsReady, SetOption, NewGame, SetPosition, Go, Stop, Quit]


def _option_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode(command: Command) -> str:
    """Return the protocol line for *command*, without a line terminator."""
    if isinstance(command, Uci):
        return "uci"
    if isinstance(command, IsReady):
        return "isready"
    if isinstance(command, NewGame):
        return "ucinewgame"
    if isinstance(command, Stop):
        return "stop"
    if isinstance(command, Quit):
        return "quit"
    if isinstance(command, SetOption):
        line = f"setoption name {command.name}"
        if command.value is not None:
            line += f" value {_option_value(command.value)}"
        return line
    if isinstance(command, SetPosition):
        if command.fen is None or command.fen == STARTPOS_FEN:
            line = "position startpos"
        else:
            line = f"position fen {command.fen}"
        if command.moves:
            line += " moves " + " ".join(command.moves)
        return line
    if isinstance(command, Go):
        parts = ["go"]
        for key in ("depth", "movetime", "wtime", "btime", "winc", "binc", "movestogo"):
            value = getattr(command, key)
            if value is not None:
                parts.append(f"{key} {max(0, int(value))}")
        if command.infinite or len(parts) == 1:
            parts.append("infinite")
        return " ".join(parts)
    raise TypeError(f"Unknown command: {command!r}")


# ---------- Messages (engine -> harness) ----------


@dataclass(frozen=True)
class UciOk:
    pass


@dataclass(frozen=True)
class ReadyOk:
    pass


@dataclass(frozen=True)
class IdInfo:
    key: str
    value: str


@dataclass(frozen=True)
class OptionDeclaration:
    name: str
    type: str
    default: Optional[str] = None
    min: Optional[int] = None
    max: Optional[int] = None
    choices: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BestMove:
    move: Optional[chess.Move]
    ponder: Optional[chess.Move] = None


@dataclass(frozen=True)
class SearchInfo:
    depth: Optional[int] = None
    seldepth: Optional[int] = None
    multipv: Optional[int] = None
    score_cp: Optional[int] = None
    mate: Optional[int] = None
    bound: Optional[str] = None
    nodes: Optional[int] = None
    nps: Optional[int] = None
    time: Optional[int] = None
    pv: Tuple[str, ...] = ()
    string: Optional[str] = None


@dataclass(frozen=True)
class Unparseable:
    line: str
    reason: str = ""
    keyword: Optional[str] = None


Message = Union[UciOk, ReadyOk, IdInfo, OptionDeclaration, BestMove, SearchInfo, Unparseable]

_KEYWORDS = ("id", "uciok", "readyok", "bestmove", "info", "option")
_NO_MOVE = ("(none)", "0000", "none")
_INFO_INT_KEYS = (
    "depth",
    "seldepth",
    "multipv",
    "nodes",
    "nps",
    "time",
    "hashfull",
    "tbhits",
    "cpuload",
    "currmovenumber",
)
_OPTION_KEYS = ("name", "type", "default", "min", "max", "var")


def _parse_move(token: str) -> Optional[chess.Move]:
    if token in _NO_MOVE:
        return None
    move = chess.Move.from_uci(token)
    if not move:
        return None
    return move


def _to_int(token: str) -> Optional[int]:
    try:
        return int(token)
    except ValueError:
        return None


def _decode_bestmove(line: str, tokens: List[str]) -> Message:
    if len(tokens) < 2:
        return BestMove(move=None)
    try:
        move = _parse_move(tokens[1])
    except ValueError:
        return Unparseable(line, f"invalid best move {tokens[1]!r}", keyword="bestmove")
    ponder = None
    if len(tokens) >= 4 and tokens[2] == "ponder":
        try:
            ponder = _parse_move(tokens[3])
        except ValueError:
            ponder = None
    return BestMove(move=move, ponder=ponder)


def _decode_id(line: str, tokens: List[str]) -> Message:
    if len(tokens) < 3:
        return Unparseable(line, "empty id")
    return IdInfo(key=tokens[1], value=" ".join(tokens[2:]))


def _decode_option(line: str, tokens: List[str]) -> Message:
    fields: Dict[str, List[str]] = {}
    choices: List[str] = []
    current: Optional[str] = None
    for token in tokens[1:]:
        if token in _OPTION_KEYS:
            current = token
            if token == "var":
                choices.append("")
            else:
                fields[token] = []
            continue
        if current is None:
            continue
        if current == "var":
            choices[-1] = f"{choices[-1]} {token}".strip()
        else:
            fields[current].append(token)

    name = " ".join(fields.get("name", []))
    option_type = " ".join(fields.get("type", []))
    if not name or not option_type:
        return Unparseable(line, "option without name or type")
    default = " ".join(fields["default"]) if "default" in fields else None
    if default == "<empty>":
        default = ""
    return OptionDeclaration(
        name=name,
        type=option_type,
        default=default,
        min=_to_int(" ".join(fields.get("min", []))) if "min" in fields else None,
        max=_to_int(" ".join(fields.get("max", []))) if "max" in fields else None,
        choices=tuple(choices),
    )


def _decode_info(tokens: List[str]) -> Message:
    values: Dict[str, object] = {}
    pv: List[str] = []
    i = 1
    while i < len(tokens):
        key = tokens[i]
        if key == "string":
            values["string"] = " ".join(tokens[i + 1 :])
            break
        if key == "pv":
            i += 1
            while i < len(tokens):
                try:
                    chess.Move.from_uci(tokens[i])
                except ValueError:
                    break
                pv.append(tokens[i])
                i += 1
            continue
        if key == "score":
            i += 1
            while i < len(tokens):
                kind = tokens[i]
                if kind in ("cp", "mate") and i + 1 < len(tokens):
                    parsed = _to_int(tokens[i + 1])
                    values["score_cp" if kind == "cp" else "mate"] = parsed
                    i += 2
                elif kind in ("lowerbound", "upperbound"):
                    values["bound"] = kind
                    i += 1
                else:
                    break
            continue
        if key in _INFO_INT_KEYS and i + 1 < len(tokens):
            parsed = _to_int(tokens[i + 1])
            if parsed is not None:
                values[key] = parsed
                i += 2
                continue
        # Unknown key: skip it, and its value too when that value is numeric.
        if i + 1 < len(tokens) and _to_int(tokens[i + 1]) is not None:
            i += 2
        else:
            i += 1

    return SearchInfo(
        depth=values.get("depth"),
        seldepth=values.get("seldepth"),
        multipv=values.get("multipv"),
        score_cp=values.get("score_cp"),
        mate=values.get("mate"),
        bound=values.get("bound"),
        nodes=values.get("nodes"),
        nps=values.get("nps"),
        time=values.get("time"),
        pv=tuple(pv),
        string=values.get("string"),
    )


def decode(line: str) -> Optional[Message]:
    """Decode one line of engine output.

    Returns ``None`` for blank lines and :class:`Unparseable` for lines
    that carry no recognised keyword.
    """
    tokens = line.split()
    if not tokens:
        return None

    start = next((i for i, token in enumerate(tokens) if token in _KEYWORDS), None)
    if start is None:
        return Unparseable(line.strip(), "no known keyword")
    tokens = tokens[start:]
    keyword = tokens[0]

    if keyword == "uciok":
        return UciOk()
    if keyword == "readyok":
        return ReadyOk()
    if keyword == "bestmove":
        return _decode_bestmove(line.strip(), tokens)
    if keyword == "id":
        return _decode_id(line.strip(), tokens)
    if keyword == "option":
        return _decode_option(line.strip(), tokens)
    return _decode_info(tokens)


class LineBuffer:
    """Accumulates raw output chunks and yields complete lines.

    A trailing partial line is held back until its terminator arrives or
    :meth:`flush` is called at end of stream.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        rest = (self._pending + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._pending = ""
        return [rest] if rest else []

    @property
    def pending(self) -> str:
        return self._pending
