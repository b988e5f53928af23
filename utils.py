import sys
from enum import IntEnum


class ReportingLevel(IntEnum):
    QUIET = 0
    BASIC = 1
    VERBOSE = 2


_reporting_level = ReportingLevel.BASIC


def set_reporting_level(level: ReportingLevel) -> None:
    global _reporting_level
    _reporting_level = ReportingLevel(level)


def get_reporting_level() -> ReportingLevel:
    return _reporting_level


def report(text: str, level: ReportingLevel = ReportingLevel.BASIC) -> None:
    """Print *text* if the current reporting level includes *level*."""
    if level == ReportingLevel.QUIET or _reporting_level < level:
        return
    print(text, file=sys.stdout, flush=True)


def color_text(text, color_code):
    return f"\033[{color_code}m{text}\033[0m"

def debug_text(text):
    return f"{color_text('DEBUG', '31')} {text}"

def info_text(text):
    return f"{color_text('INFO', '34')}  {text}"

def warning_text(text):
    return f"{color_text('WARN', '33')}  {text}"

def sending_text(text):
    return f"{color_text('SENDING  ', '32')} {text}"

def recieved_text(text):
    return f"{color_text('RECIEVED ', '35')} {text}"


def get_piece_unicode(piece):
    piece_unicode = {
        'K': '♔', 'Q': '♕', 'R': '♖', 'B': '♗', 'N': '♘', 'P': '♙',
        'k': '♚', 'q': '♛', 'r': '♜', 'b': '♝', 'n': '♞', 'p': '♟'
    }
    return piece_unicode[piece.symbol()]


def format_millis(ms) -> str:
    if ms is None:
        return "--:--"
    if ms == float("inf"):
        return "∞"
    total = max(0, int(ms)) // 1000
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d}"
