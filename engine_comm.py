"""Ownership of one spawned engine subprocess and its pipes."""
import atexit
import os
import subprocess
import sys
import threading
import weakref
from collections import deque
from typing import Deque, List, Optional, Sequence

from errors import PipeClosed, SpawnError
from uci_codec import LineBuffer, Quit, encode
import utils

_LIVE_PROCESSES: "weakref.WeakSet[EngineProcess]" = weakref.WeakSet()


def _terminate_live_processes() -> None:
    for process in list(_LIVE_PROCESSES):
        process.terminate(timeout=0.5)
        process.close()


atexit.register(_terminate_live_processes)


def build_command(path: str, args: Sequence[str] = ()) -> List[str]:
    """Script engines run under the current interpreter, binaries run directly."""
    if path.endswith(".py"):
        return [sys.executable, path, *args]
    return [path, *args]


class EngineProcess:
    """Line-oriented wrapper around an engine subprocess.

    ``read_line`` is meant to be called from a single reader thread;
    ``write_line`` may be called from any thread.
    """

    READ_CHUNK = 4096

    def __init__(self, proc: subprocess.Popen, path: str, label: Optional[str] = None) -> None:
        self.path = path
        self.label = label or os.path.basename(path)
        self._proc = proc
        self._write_lock = threading.Lock()
        self._buffer = LineBuffer()
        self._lines: Deque[str] = deque()
        self._eof = False
        self._terminated = False
        _LIVE_PROCESSES.add(self)

    @classmethod
    def spawn(
        cls,
        path: str,
        *,
        args: Sequence[str] = (),
        workdir: Optional[str] = None,
        label: Optional[str] = None,
    ) -> "EngineProcess":
        if not path:
            raise SpawnError("No engine executable configured")
        if path.endswith(".py") and not os.path.exists(path):
            raise SpawnError(f"Engine script not found: {path}")
        try:
            proc = subprocess.Popen(
                build_command(path, args),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
                cwd=workdir,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to start engine {path}: {exc}") from exc
        process = cls(proc, path, label)
        utils.report(utils.info_text(f"{process.label} started (pid {proc.pid})"))
        return process

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    def write_line(self, text: str) -> None:
        with self._write_lock:
            stdin = self._proc.stdin
            if stdin is None or stdin.closed or self._proc.poll() is not None:
                raise PipeClosed(f"{self.label} is not running")
            utils.report(utils.sending_text(f"{self.label} {text}"), utils.ReportingLevel.VERBOSE)
            try:
                stdin.write((text + "\n").encode())
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise PipeClosed(f"{self.label} closed its input: {exc}") from exc

    def read_line(self) -> Optional[str]:
        """Block until a full line is available; ``None`` marks end of stream."""
        while not self._lines:
            if self._eof:
                return None
            stdout = self._proc.stdout
            chunk = stdout.read(self.READ_CHUNK) if stdout is not None else b""
            if not chunk:
                self._eof = True
                self._lines.extend(self._buffer.flush())
                continue
            self._lines.extend(self._buffer.feed(chunk))
        line = self._lines.popleft()
        utils.report(utils.recieved_text(f"{self.label} {line}"), utils.ReportingLevel.VERBOSE)
        return line

    def terminate(self, timeout: float = 2.0) -> Optional[int]:
        """Ask the engine to quit, then escalate to terminate and kill."""
        if self._terminated:
            return self._proc.poll()
        self._terminated = True
        if self.is_alive():
            try:
                self.write_line(encode(Quit()))
            except PipeClosed:
                pass
        with self._write_lock:
            if self._proc.stdin is not None:
                try:
                    self._proc.stdin.close()
                except OSError:
                    pass
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            utils.report(utils.debug_text(f"{self.label} unresponsive; forcing termination"))
            self._proc.terminate()
            try:
                self._proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                try:
                    self._proc.wait(timeout=1.0)
                except subprocess.TimeoutExpired:
                    pass
        _LIVE_PROCESSES.discard(self)
        return self._proc.poll()

    def close(self) -> None:
        """Release the output pipe once the reader no longer needs it."""
        if self._proc.stdout is not None and not self._proc.stdout.closed:
            try:
                self._proc.stdout.close()
            except OSError:
                pass
