"""
Adapter around python-chess.

The oracle is the only component that knows chess rules. The services ask it whether a move is legal,
what the resulting position is and whether the game has ended; they never re-derive any of it.
"""

from dataclasses import dataclass
from typing import Optional, Self

import chess
import chess.pgn

from src.core.models import STARTING_FEN
from src.core.shared_types import Color

PROMOTION_PIECES = {"q", "r", "b", "n"}


@dataclass(frozen=True)
class OracleMove:
    """Verbose description of a move, as reported by the oracle."""

    from_square: str
    to_square: str
    piece: str
    color: Color
    san: str
    uci: str
    captured: Optional[str] = None
    promotion: Optional[str] = None


def build_uci(from_square: str, to_square: str, promotion: Optional[str] = None) -> str:
    """Glue algebraic squares (and an optional promotion letter) into UCI notation."""
    uci = f"{from_square.lower()}{to_square.lower()}"
    if promotion:
        uci += promotion.lower()[0]
    return uci


class RulesOracle:
    """One live chess position, exclusively owned by a single game session."""

    def __init__(self, board: Optional[chess.Board] = None) -> None:
        self._board = board if board is not None else chess.Board(STARTING_FEN)

    # --- factories ---
    @classmethod
    def reconstruct(cls, position: str) -> Self:
        """Build an oracle from a FEN string. Raises ValueError for malformed FEN."""
        return cls(chess.Board(position))

    @classmethod
    def replay(cls, moves_uci: list[str], starting_position: str = STARTING_FEN) -> Self:
        """
        Build an oracle by replaying a move list from the starting position.
        ----
        Unlike reconstruct() this keeps the move stack, so repetition detection sees the full game.
        Raises ValueError if any move in the list is illegal in sequence.
        """
        board = chess.Board(starting_position)
        for uci in moves_uci:
            board.push_uci(uci)
        return cls(board)

    # --- mutation ---
    def apply_move(
        self, from_square: str, to_square: str, promotion: Optional[str] = None
    ) -> Optional[OracleMove]:
        """Play the move if it is legal. Returns None (and leaves the position alone) otherwise."""
        if promotion is not None and promotion.lower()[:1] not in PROMOTION_PIECES:
            return None
        try:
            move = chess.Move.from_uci(build_uci(from_square, to_square, promotion))
        except ValueError:
            return None
        if not self._board.is_legal(move):
            return None

        described = _describe(self._board, move)
        self._board.push(move)
        return described

    def load_position(self, position: str) -> None:
        self._board = chess.Board(position)

    # --- queries ---
    @property
    def position(self) -> str:
        return self._board.fen()

    @property
    def side_to_move(self) -> Color:
        return Color.WHITE if self._board.turn == chess.WHITE else Color.BLACK

    def in_check(self) -> bool:
        return self._board.is_check()

    def is_checkmate(self) -> bool:
        return self._board.is_checkmate()

    def is_stalemate(self) -> bool:
        return self._board.is_stalemate()

    def is_threefold_repetition(self) -> bool:
        return self._board.is_repetition(3)

    def is_insufficient_material(self) -> bool:
        return self._board.is_insufficient_material()

    def is_draw_by_rule(self) -> bool:
        """Fifty-move rule: 100 half-moves without a capture or pawn move."""
        return self._board.halfmove_clock >= 100

    def is_terminal(self) -> bool:
        return (
            self.is_checkmate()
            or self.is_stalemate()
            or self.is_threefold_repetition()
            or self.is_insufficient_material()
            or self.is_draw_by_rule()
        )

    def legal_moves(self) -> list[OracleMove]:
        return [_describe(self._board, move) for move in self._board.legal_moves]

    def legal_move_map(self) -> dict[str, list[str]]:
        """Group the legal moves by origin square. Promotions collapse into a single destination."""
        moves_map: dict[str, list[str]] = {}
        for move in self._board.legal_moves:
            origin = chess.square_name(move.from_square)
            destination = chess.square_name(move.to_square)
            destinations = moves_map.setdefault(origin, [])
            if destination not in destinations:
                destinations.append(destination)
        return moves_map

    def move_history(self) -> list[OracleMove]:
        """Verbose description of every move played since the root position."""
        board = self._board.root()
        history = []
        for move in self._board.move_stack:
            history.append(_describe(board, move))
            board.push(move)
        return history

    def pgn(self) -> str:
        """Portable game text (movetext only)."""
        game = chess.pgn.Game.from_board(self._board)
        exporter = chess.pgn.StringExporter(
            headers=False, variations=False, comments=False
        )
        return game.accept(exporter)


def _describe(board: chess.Board, move: chess.Move) -> OracleMove:
    """Snapshot of a move BEFORE it is pushed on the board."""
    piece = board.piece_at(move.from_square)
    if piece is None:
        raise ValueError(f"No piece on the origin square of {move.uci()}")

    if board.is_en_passant(move):
        captured: Optional[str] = chess.piece_symbol(chess.PAWN)
    else:
        target = board.piece_at(move.to_square)
        captured = chess.piece_symbol(target.piece_type) if target else None

    return OracleMove(
        from_square=chess.square_name(move.from_square),
        to_square=chess.square_name(move.to_square),
        piece=chess.piece_symbol(piece.piece_type),
        color=Color.WHITE if piece.color == chess.WHITE else Color.BLACK,
        san=board.san(move),
        uci=move.uci(),
        captured=captured,
        promotion=chess.piece_symbol(move.promotion) if move.promotion else None,
    )
