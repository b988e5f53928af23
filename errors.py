"""Error taxonomy shared by the engine session layer.

Errors local to one seat are recorded on that seat by the orchestrator;
only ``ConfigurationError`` (and explicit shutdown) is fatal to it.
"""


class HarnessError(Exception):
    """Base class for every error raised by the harness."""


class SpawnError(HarnessError):
    """The engine executable could not be launched."""


class SpawnFailed(HarnessError):
    """Session-level spawn failure; terminal for the seat that owns it."""


class PipeClosed(HarnessError):
    """A write was attempted after the engine process exited."""


class ProtocolViolation(HarnessError):
    """An engine emitted a line that could not be decoded.

    Never fatal: sessions log and count these instead of raising them.
    """


class SessionBusy(HarnessError, RuntimeError):
    """A search was requested while another one is still outstanding."""


class SessionCrashed(HarnessError):
    """The engine process exited or its pipes failed."""


class IllegalMove(HarnessError, ValueError):
    """The move is not legal in the current position."""


class NoHistory(HarnessError):
    """Undo was requested with an empty move history."""


class NotYourTurn(HarnessError):
    """A move arrived from a seat that is not on turn."""


class ConfigurationError(HarnessError, ValueError):
    """The harness configuration cannot be used."""
