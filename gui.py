# GUI
import os
import time
from typing import Optional

import chess

from PySide6.QtCore import Qt, QSize, QTimer
from PySide6.QtGui import QFont, QColor, QPalette
from PySide6.QtWidgets import (
    QApplication,
    QMainWindow,
    QWidget,
    QGridLayout,
    QPushButton,
    QLabel,
    QVBoxLayout,
    QMessageBox,
    QHBoxLayout,
    QDialog,
    QComboBox,
)

import chess_logic
from chess_logic import GameOutcome
from errors import ConfigurationError, IllegalMove, NoHistory, NotYourTurn
from orchestrator import OrchestratorSnapshot, SessionOrchestrator
import utils

POLL_INTERVAL_MS = 50
GAMESTATES_FOLDER = "gamestates"


def center_on_screen(window):
    screen = QApplication.primaryScreen()
    if screen is None:
        return
    screen_geometry = screen.geometry()
    window_size = window.size()
    x = (screen_geometry.width() - window_size.width()) // 2 + screen_geometry.left()
    y = (screen_geometry.height() - window_size.height()) // 2 + screen_geometry.top()
    window.move(x, y)


class PromotionDialog(QDialog):
    def __init__(self, parent=None):
        super().__init__(parent)
        self.setWindowTitle("Pawn Promotion")
        self.setMinimumWidth(220)
        self.setStyleSheet(
            """
            QDialog { background-color: #1f232a; color: #f6f7fb; }
            QComboBox {
                background-color: #2d333d;
                color: #f6f7fb;
                border-radius: 6px;
                padding: 6px 8px;
                border: 1px solid #3a414d;
            }
            QPushButton {
                background-color: #5865f2;
                color: #ffffff;
                border: none;
                border-radius: 6px;
                padding: 6px 12px;
                font-weight: 600;
            }
            QPushButton:hover { background-color: #4752c4; }
            """
        )
        layout = QVBoxLayout(self)
        layout.setContentsMargins(18, 18, 18, 18)
        layout.setSpacing(12)

        self.combo = QComboBox()
        self.combo.addItems(["Queen", "Rook", "Bishop", "Knight"])
        layout.addWidget(self.combo)

        button = QPushButton("OK")
        button.setCursor(Qt.PointingHandCursor)
        button.clicked.connect(self.accept)
        layout.addWidget(button)

    def get_promotion_piece(self):
        return self.combo.currentText().lower()


class ChessGUI(QMainWindow):
    """Board view over a :class:`SessionOrchestrator`.

    The window never touches engines or the board model directly: a timer
    polls the orchestrator and every redraw reads a fresh snapshot.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        dev: bool = False,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        show_dialogs: bool = True,
    ):
        super().__init__()
        self.orchestrator = orchestrator
        self.dev = dev
        self.show_dialogs = show_dialogs
        self.selected_square: Optional[chess.Square] = None
        self.square_font = QFont("Segoe UI Symbol", 28)
        self.control_button_font = QFont("Segoe UI", 11)
        self._snapshot: OrchestratorSnapshot = orchestrator.snapshot()
        self._board = self._snapshot.position.board()
        self.apply_theme()

        orchestrator.events.on_seat_error.append(self._on_seat_error)
        orchestrator.events.on_game_over.append(self._on_game_over)
        if self.dev:
            utils.report(utils.debug_text("Debug Mode ENABLED"))

        self.init_ui()
        self.poll_timer = QTimer(self)
        self.poll_timer.timeout.connect(self.on_tick)
        self.poll_timer.start(poll_interval_ms)

    @property
    def board(self) -> chess.Board:
        return self._board

    def apply_theme(self):
        app = QApplication.instance()
        if app and app.style().objectName().lower() != "fusion":
            QApplication.setStyle("Fusion")

        palette = QPalette()
        palette.setColor(QPalette.Window, QColor("#1c1f24"))
        palette.setColor(QPalette.WindowText, QColor("#f5f7fb"))
        palette.setColor(QPalette.Base, QColor("#1c1f24"))
        palette.setColor(QPalette.Text, QColor("#f5f7fb"))
        palette.setColor(QPalette.Button, QColor("#2b3038"))
        palette.setColor(QPalette.ButtonText, QColor("#f5f7fb"))
        palette.setColor(QPalette.Highlight, QColor("#5865f2"))
        if app:
            app.setPalette(palette)

        self.setStyleSheet(
            """
            QMainWindow { background-color: #1c1f24; }
            QLabel#turnIndicator { font-size: 18px; font-weight: 600; }
            QLabel#infoIndicator { color: #b0b7c3; font-size: 12px; }
            QLabel[seat="status"] { color: #d5d9e3; font-size: 12px; }
            QLabel[offline="true"] { color: #d75d5d; }
            QWidget#boardContainer {
                background-color: #171a1f;
                border-radius: 12px;
                padding: 6px;
            }
            QPushButton[panel="control"] {
                background-color: #2d333c;
                color: #f5f7fb;
                border: 1px solid #3a414d;
                border-radius: 8px;
                padding: 6px 10px;
            }
            """
        )

    def style_control_button(self, button):
        button.setProperty("panel", "control")
        button.setFont(self.control_button_font)
        button.setCursor(Qt.PointingHandCursor)
        button.setFocusPolicy(Qt.NoFocus)
        button.setMinimumWidth(72)

    def init_ui(self):
        self.setWindowTitle("UCI Harness")
        self.setMinimumSize(450, 700)

        central_widget = QWidget(self)
        self.setCentralWidget(central_widget)
        main_layout = QVBoxLayout(central_widget)
        main_layout.setContentsMargins(8, 8, 8, 8)
        main_layout.setSpacing(6)

        self.turn_indicator = QLabel("White's turn")
        self.turn_indicator.setObjectName("turnIndicator")
        self.turn_indicator.setAlignment(Qt.AlignCenter)
        self.turn_indicator.setFont(QFont("Segoe UI Semibold", 20))
        main_layout.addWidget(self.turn_indicator)

        self.info_indicator = QLabel("Game Started")
        self.info_indicator.setObjectName("infoIndicator")
        self.info_indicator.setAlignment(Qt.AlignCenter)
        main_layout.addWidget(self.info_indicator)

        self.seat_labels = {}
        seats_row = QHBoxLayout()
        for color in (chess.WHITE, chess.BLACK):
            label = QLabel("")
            label.setProperty("seat", "status")
            label.setAlignment(Qt.AlignCenter)
            seats_row.addWidget(label)
            self.seat_labels[color] = label
        main_layout.addLayout(seats_row)

        board_widget = QWidget()
        board_widget.setObjectName("boardContainer")
        grid_layout = QGridLayout(board_widget)
        grid_layout.setContentsMargins(0, 0, 0, 0)
        grid_layout.setSpacing(0)
        main_layout.addWidget(board_widget)

        label_font = QFont("Segoe UI", 11)
        label_font.setBold(True)
        files = "abcdefgh"
        for i in range(8):
            file_label = QLabel(files[i])
            file_label.setAlignment(Qt.AlignCenter)
            file_label.setFont(label_font)
            grid_layout.addWidget(file_label, 8, i + 1)

            rank_label = QLabel(str(8 - i))
            rank_label.setAlignment(Qt.AlignCenter)
            rank_label.setFont(label_font)
            grid_layout.addWidget(rank_label, i, 0)

        self.squares = {}
        for row in range(8):
            for col in range(8):
                button = QPushButton("")
                button.setFixedSize(QSize(48, 48))
                button.setFont(self.square_font)
                button.setCursor(Qt.PointingHandCursor)
                button.setFocusPolicy(Qt.NoFocus)
                button.clicked.connect(self.on_square_clicked)
                grid_layout.addWidget(button, row, col + 1)
                self.squares[chess.square(col, 7 - row)] = button

        button_layout = QHBoxLayout()
        button_layout.setSpacing(10)
        button_layout.setContentsMargins(0, 12, 0, 0)
        main_layout.addLayout(button_layout)

        for text, slot in (
            ("Undo", self.undo_move),
            ("Export", self.export_game),
            ("New game", self.reset_game),
        ):
            button = QPushButton(text)
            button.clicked.connect(slot)
            self.style_control_button(button)
            button_layout.addWidget(button)
        button_layout.addStretch(1)

        engine_row = QHBoxLayout()
        engine_row.setSpacing(10)
        main_layout.addLayout(engine_row)

        self.pause_button = QPushButton("Pause")
        self.pause_button.clicked.connect(self.toggle_pause)
        self.style_control_button(self.pause_button)
        engine_row.addWidget(self.pause_button)

        self.restart_engine_button = QPushButton("Restart Engine")
        self.restart_engine_button.clicked.connect(self.restart_engine)
        self.style_control_button(self.restart_engine_button)
        engine_row.addWidget(self.restart_engine_button)

        self.human_control_button = QPushButton("Human Control")
        self.human_control_button.clicked.connect(self.take_human_control)
        self.style_control_button(self.human_control_button)
        engine_row.addWidget(self.human_control_button)
        engine_row.addStretch(1)

        self.update_board()
        center_on_screen(self)

    # ---------- Refresh ----------

    def on_tick(self):
        moves = self.orchestrator.poll()
        if moves or self._needs_redraw():
            self.update_board()

    def _needs_redraw(self) -> bool:
        snapshot = self.orchestrator.snapshot()
        return (
            snapshot.clock is not None
            or snapshot.seats != self._snapshot.seats
            or snapshot.paused != self._snapshot.paused
        )

    def update_board(self, info_text=None):
        self._snapshot = self.orchestrator.snapshot()
        self._board = self._snapshot.position.board()
        last_move = self._snapshot.history[-1] if self._snapshot.history else None

        for square, button in self.squares.items():
            piece = self._board.piece_at(square)
            button.setText(utils.get_piece_unicode(piece) if piece else "")
            button.setStyleSheet(self.get_square_style(square, last_move))

        if self._snapshot.outcome is not None:
            self.turn_indicator.setText(self._snapshot.outcome.describe())
        else:
            self.turn_indicator.setText("White's turn" if self._board.turn == chess.WHITE else "Black's turn")

        for color, label in self.seat_labels.items():
            label.setText(self._seat_text(color))
            status = self._snapshot.seats[color]
            label.setProperty("offline", "true" if status.offline else "false")
            label.style().unpolish(label)
            label.style().polish(label)

        self.pause_button.setText("Resume" if self._snapshot.paused else "Pause")
        if info_text:
            self.set_info_message(info_text)

    def _seat_text(self, color: bool) -> str:
        status = self._snapshot.seats[color]
        text = f"{'White' if color else 'Black'}: {status.label}"
        if self._snapshot.clock is not None:
            text += f"  {utils.format_millis(self._snapshot.clock[color])}"
        if status.offline:
            text += "  [offline]"
        elif status.thinking:
            text += "  [thinking]"
        return text

    def get_square_style(self, square, last_move=None):
        square_style = {
            "light_square": "#d2b48c",
            "dark_square": "#8e6336",
            "selected_color": "#4f6f52",
            "prev_moved_color": "#6b8f71",
            "attacked_color": "#d75d5d",
        }
        is_light = (chess.square_rank(square) + chess.square_file(square)) % 2 == 1
        square_color = square_style["light_square"] if is_light else square_style["dark_square"]
        piece = self._board.piece_at(square)
        text_color = "#2b2626"
        if piece:
            text_color = "#f9f6f2" if piece.color == chess.WHITE else "#2b2626"

        if square == self.selected_square:
            square_color = square_style["selected_color"]
        elif piece and piece.piece_type == chess.KING and self._board.is_attacked_by(not piece.color, square):
            square_color = square_style["attacked_color"]
        elif last_move is not None and square in (last_move.from_square, last_move.to_square):
            square_color = square_style["prev_moved_color"]

        return (
            f"background-color: {square_color}; color: {text_color}; "
            f"border-radius: 10px; border: 1px solid rgba(0, 0, 0, 0.2);"
        )

    def set_info_message(self, message: str) -> None:
        self.info_indicator.setText(message)

    # ---------- Input ----------

    def human_on_turn(self) -> bool:
        on_turn = self._snapshot.on_turn
        return on_turn is not None and self._snapshot.seats[on_turn].is_human

    def on_square_clicked(self):
        clicked_button = self.sender()
        clicked_square = next(square for square, button in self.squares.items() if button == clicked_button)
        if not self.human_on_turn():
            return

        piece = self._board.piece_at(clicked_square)
        if self.selected_square == clicked_square:
            self.selected_square = None
        elif piece is not None and piece.color == self._board.turn:
            self.selected_square = clicked_square
            if self.dev:
                utils.report(utils.debug_text(f"{chess.square_name(clicked_square)} Selected"))
        elif self.selected_square is not None:
            self.attempt_move(chess.Move(self.selected_square, clicked_square))
            self.selected_square = None
        self.update_board()

    def attempt_move(self, move: chess.Move) -> bool:
        if chess_logic.is_pawn_promotion_attempt(self._board, move):
            promotion_choice = self.get_promotion_choice()
            if not promotion_choice:
                return False
            move = chess.Move(move.from_square, move.to_square, promotion=promotion_choice)

        try:
            self.orchestrator.submit_move(move, self._board.turn)
        except (IllegalMove, NotYourTurn) as exc:
            utils.report(utils.info_text(f"{move} {utils.color_text('Invalid Move', '31')}: {exc}"))
            self.set_info_message(f"Invalid move: {move}")
            return False
        utils.report(utils.info_text(f"{move} {utils.color_text('Valid Move', '32')}"))
        return True

    def get_promotion_choice(self):
        dialog = PromotionDialog(self)
        if dialog.exec():
            piece = dialog.get_promotion_piece()
            return {
                "queen": chess.QUEEN,
                "rook": chess.ROOK,
                "bishop": chess.BISHOP,
                "knight": chess.KNIGHT,
            }[piece]
        return None

    # ---------- Buttons ----------

    def undo_move(self):
        snapshot = self.orchestrator.snapshot()
        plies = 1
        opponent = not snapshot.turn
        if not snapshot.seats[opponent].is_human and len(snapshot.history) >= 2:
            plies = 2
        try:
            self.orchestrator.undo(plies)
        except NoHistory:
            self.update_board(info_text="Nothing to undo")
            return
        self.selected_square = None
        self.update_board(info_text=f"Undid {plies} {'ply' if plies == 1 else 'plies'}")

    def reset_game(self):
        utils.report(utils.info_text("Resetting game..."))
        self.selected_square = None
        self.orchestrator.new_game(self.orchestrator.position.start_fen)
        self.update_board(info_text="Game Reset")

    def export_game(self):
        utils.report(utils.info_text("---EXPORTING GAME---"))
        position = self.orchestrator.position
        players = {color: self.orchestrator.seat_label(color) for color in chess.COLORS}
        stamp = time.strftime("%Y-%m-%d_%H-%M-%S", time.localtime())
        os.makedirs(GAMESTATES_FOLDER, exist_ok=True)
        json_path = os.path.join(GAMESTATES_FOLDER, f"chess_game_{stamp}.json")
        pgn_path = os.path.join(GAMESTATES_FOLDER, f"chess_game_{stamp}.pgn")
        with open(json_path, "w", encoding="utf-8") as outfile:
            outfile.write(chess_logic.export_game_state(position, players))
        with open(pgn_path, "w", encoding="utf-8") as outfile:
            outfile.write(self.orchestrator.export_pgn())
        utils.report(utils.info_text(f"FEN: {position.fen}"))
        utils.report(utils.info_text(f"UCI: {' '.join(position.moves)}"))
        self.set_info_message(f"Exported to {pgn_path}")
        return json_path, pgn_path

    def toggle_pause(self):
        if self.orchestrator.paused:
            self.orchestrator.resume()
        else:
            self.orchestrator.pause()
        self.update_board()

    def _engine_seat_for_action(self) -> Optional[bool]:
        seats = self._snapshot.seats
        for color in chess.COLORS:
            if seats[color].offline:
                return color
        on_turn = self._snapshot.on_turn
        if on_turn is not None and not seats[on_turn].is_human:
            return on_turn
        return next((color for color in chess.COLORS if not seats[color].is_human), None)

    def restart_engine(self):
        seat = self._engine_seat_for_action()
        if seat is None:
            self.set_info_message("No engine to restart")
            return
        try:
            restarted = self.orchestrator.restart_engine(seat)
        except ConfigurationError as exc:
            self.set_info_message(str(exc))
            return
        self.update_board(info_text="Engine restarted" if restarted else "Engine restart failed")

    def take_human_control(self):
        seat = self._engine_seat_for_action()
        if seat is None:
            self.set_info_message("Both seats are already human")
            return
        self.orchestrator.switch_to_human(seat)
        self.update_board(info_text=f"{'White' if seat else 'Black'} is now human-controlled")

    # ---------- Orchestrator events ----------

    def _on_seat_error(self, seat: bool, message: str) -> None:
        self.set_info_message(message)

    def _on_game_over(self, outcome: GameOutcome) -> None:
        message = f"{outcome.describe()} ({outcome.result})"
        self.set_info_message(message)
        if self.show_dialogs:
            QMessageBox.information(self, "Game Over", message)

    def closeEvent(self, event):
        self.poll_timer.stop()
        self.orchestrator.shutdown()
        super().closeEvent(event)
