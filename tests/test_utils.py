import chess
import pytest

import utils
from utils import ReportingLevel


@pytest.fixture(autouse=True)
def restore_reporting_level():
    previous = utils.get_reporting_level()
    yield
    utils.set_reporting_level(previous)


def test_color_text_wraps_ansi() -> None:
    text = utils.color_text("hello", "32")
    assert text.startswith("\033[32m")
    assert text.endswith("\033[0m")


def test_level_prefixes() -> None:
    assert "INFO" in utils.info_text("ready")
    assert utils.warning_text("late").endswith("late")
    assert "DEBUG" in utils.debug_text("x")


def test_get_piece_unicode_values() -> None:
    white_queen = chess.Piece(chess.QUEEN, chess.WHITE)
    black_knight = chess.Piece(chess.KNIGHT, chess.BLACK)
    assert utils.get_piece_unicode(white_queen) == "♕"
    assert utils.get_piece_unicode(black_knight) == "♞"


def test_report_respects_reporting_level(capsys) -> None:
    utils.set_reporting_level(ReportingLevel.BASIC)
    utils.report("basic line")
    utils.report("verbose line", ReportingLevel.VERBOSE)
    out = capsys.readouterr().out
    assert "basic line" in out
    assert "verbose line" not in out

    utils.set_reporting_level(ReportingLevel.VERBOSE)
    utils.report("verbose line", ReportingLevel.VERBOSE)
    assert "verbose line" in capsys.readouterr().out


def test_quiet_level_silences_everything(capsys) -> None:
    utils.set_reporting_level(ReportingLevel.QUIET)
    utils.report("anything")
    assert capsys.readouterr().out == ""


@pytest.mark.parametrize(
    "ms, expected",
    [(None, "--:--"), (float("inf"), "∞"), (0, "00:00"), (-50, "00:00"), (59999, "00:59"), (61000, "01:01")],
)
def test_format_millis(ms, expected) -> None:
    assert utils.format_millis(ms) == expected
