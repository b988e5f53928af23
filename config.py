"""Static harness configuration.

Built once (from the command line or a JSON file) and handed to the
orchestrator at construction; nothing here is reloaded mid-session.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import chess

from errors import ConfigurationError
from time_control import TimeControl
from utils import ReportingLevel

DEFAULT_HANDSHAKE_TIMEOUT = 5.0
DEFAULT_CANCEL_GRACE = 2.0
DEFAULT_TERMINATE_TIMEOUT = 2.0
DEFAULT_MOVETIME_MS = 1000

SEAT_NAMES = {chess.WHITE: "white", chess.BLACK: "black"}
COLOR_NAME = {chess.WHITE: "White", chess.BLACK: "Black"}


@dataclass(frozen=True)
class EngineConfig:
    path: str
    name: Optional[str] = None
    options: Mapping[str, Any] = field(default_factory=dict)
    workdir: Optional[str] = None
    args: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or Path(self.path).stem


@dataclass(frozen=True)
class SeatConfig:
    """One seat; ``engine=None`` means the seat is played by a human."""

    engine: Optional[EngineConfig] = None
    time_control: TimeControl = field(default_factory=lambda: TimeControl.fixed_time(DEFAULT_MOVETIME_MS))

    @property
    def is_human(self) -> bool:
        return self.engine is None


@dataclass(frozen=True)
class HarnessConfig:
    seats: Mapping[bool, SeatConfig] = field(default_factory=dict)
    start_fen: Optional[str] = None
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    cancel_grace: float = DEFAULT_CANCEL_GRACE
    terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT
    reporting_level: ReportingLevel = ReportingLevel.BASIC

    def validate(self) -> "HarnessConfig":
        if not self.seats:
            raise ConfigurationError("No seats bound")
        for seat in self.seats:
            if seat not in SEAT_NAMES:
                raise ConfigurationError(f"Unknown seat: {seat!r}")
        for name in ("handshake_timeout", "cancel_grace", "terminate_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.start_fen is not None:
            try:
                board = chess.Board(self.start_fen)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid start FEN: {exc}") from exc
            if not board.is_valid():
                raise ConfigurationError(f"Invalid start FEN: {self.start_fen}")
        return self

    def seat(self, color: bool) -> SeatConfig:
        return self.seats.get(color, SeatConfig())

    def engines(self) -> Dict[bool, EngineConfig]:
        return {color: seat.engine for color, seat in self.seats.items() if seat.engine is not None}


def _engine_from_dict(data: Mapping[str, Any], base_dir: Path) -> EngineConfig:
    if "path" not in data:
        raise ConfigurationError("Engine entry without 'path'")
    path = str(data["path"])
    if not os.path.isabs(path) and (base_dir / path).exists():
        path = str(base_dir / path)
    return EngineConfig(
        path=path,
        name=data.get("name"),
        options=dict(data.get("options", {})),
        workdir=data.get("workdir"),
        args=tuple(str(arg) for arg in data.get("args", ())),
    )


def _seat_from_dict(data: Union[str, Mapping[str, Any]], base_dir: Path) -> SeatConfig:
    if data == "human":
        return SeatConfig()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Invalid seat entry: {data!r}")
    engine_data = data.get("engine")
    engine = _engine_from_dict(engine_data, base_dir) if engine_data else None
    try:
        time_control = (
            TimeControl.from_dict(data["time_control"])
            if "time_control" in data
            else TimeControl.fixed_time(DEFAULT_MOVETIME_MS)
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid time control: {exc}") from exc
    return SeatConfig(engine=engine, time_control=time_control)


def config_from_dict(data: Mapping[str, Any], base_dir: Union[str, Path] = ".") -> HarnessConfig:
    base_dir = Path(base_dir)
    seats_data = data.get("seats", {})
    seats = {}
    for color, name in SEAT_NAMES.items():
        if name in seats_data:
            seats[color] = _seat_from_dict(seats_data[name], base_dir)
    unknown = set(seats_data) - set(SEAT_NAMES.values())
    if unknown:
        raise ConfigurationError(f"Unknown seats: {', '.join(sorted(unknown))}")

    level = data.get("reporting_level", "basic")
    try:
        reporting_level = ReportingLevel[str(level).upper()]
    except KeyError as exc:
        raise ConfigurationError(f"Unknown reporting level: {level}") from exc

    config = HarnessConfig(
        seats=seats,
        start_fen=data.get("start_fen"),
        handshake_timeout=float(data.get("handshake_timeout", DEFAULT_HANDSHAKE_TIMEOUT)),
        cancel_grace=float(data.get("cancel_grace", DEFAULT_CANCEL_GRACE)),
        terminate_timeout=float(data.get("terminate_timeout", DEFAULT_TERMINATE_TIMEOUT)),
        reporting_level=reporting_level,
    )
    return config.validate()


def load_config(path: Union[str, Path]) -> HarnessConfig:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as config_file:
            data = json.load(config_file)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
    return config_from_dict(data, base_dir=path.parent)
