"""Board wrapper over python-chess: the single owner of the live game position."""

import enum
from typing import List, Optional

import chess


class MoveFlag(enum.Flag):
    NONE = 0
    CAPTURE = enum.auto()
    EN_PASSANT = enum.auto()
    KINGSIDE_CASTLE = enum.auto()
    QUEENSIDE_CASTLE = enum.auto()
    PROMOTION = enum.auto()


class ChessBoard:
    def __init__(self, fen: str = None):
        """Initialize from FEN or the standard starting position."""
        self.board = chess.Board(fen) if fen else chess.Board()

    def reset(self):
        """Reset to the initial position."""
        self.board.reset()

    def load_position(self, fen: str):
        """Replace the position with a FEN. Raises ValueError on bad FEN."""
        self.board = chess.Board(fen)

    def serialize_position(self) -> str:
        """Return the current FEN."""
        return self.board.fen()

    def turn(self) -> chess.Color:
        return self.board.turn

    def legal_moves(self, square: Optional[chess.Square] = None) -> List[chess.Move]:
        """Legal moves, optionally only those leaving `square`."""
        if square is None:
            return list(self.board.legal_moves)
        return list(self.board.generate_legal_moves(from_mask=chess.BB_SQUARES[square]))

    def move_flags(self, move: chess.Move, board: Optional[chess.Board] = None) -> MoveFlag:
        """Describe a move that is legal in `board` (the current position by default)."""
        board = self.board if board is None else board
        flags = MoveFlag.NONE
        if board.is_capture(move):
            flags |= MoveFlag.CAPTURE
        if board.is_en_passant(move):
            flags |= MoveFlag.EN_PASSANT
        if board.is_kingside_castling(move):
            flags |= MoveFlag.KINGSIDE_CASTLE
        if board.is_queenside_castling(move):
            flags |= MoveFlag.QUEENSIDE_CASTLE
        if move.promotion:
            flags |= MoveFlag.PROMOTION
        return flags

    def last_move_flags(self) -> MoveFlag:
        """Flags of the last played move, judged in the position it was played from."""
        if not self.board.move_stack:
            return MoveFlag.NONE
        before = self.copy_board()
        move = before.pop()
        return self.move_flags(move, before)

    def apply_move(self, move: chess.Move) -> Optional[chess.Move]:
        """Push a move if legal. Returns the move, or None when rejected."""
        if move not in self.board.legal_moves:
            return None
        self.board.push(move)
        return move

    def apply_uci(self, move_str: str, auto_queen: bool = False) -> Optional[chess.Move]:
        """Push a UCI move (e.g. 'e2e4', 'e7e8q'). Returns None for garbage or illegal input."""
        try:
            move = chess.Move.from_uci(move_str)
        except (ValueError, TypeError):
            return None
        if auto_queen and move.promotion is None:
            piece = self.board.piece_at(move.from_square)
            if (piece is not None and piece.piece_type == chess.PAWN
                    and chess.square_rank(move.to_square) in (0, 7)):
                move = chess.Move(move.from_square, move.to_square, promotion=chess.QUEEN)
        return self.apply_move(move)

    def undo(self) -> Optional[chess.Move]:
        """Pop the last move, if any."""
        if self.board.move_stack:
            return self.board.pop()
        return None

    def is_game_over(self) -> bool:
        return self.board.is_game_over()

    def result(self) -> Optional[str]:
        return self.board.result() if self.board.is_game_over() else None

    def history_uci(self) -> List[str]:
        return [m.uci() for m in self.board.move_stack]

    def copy_board(self) -> chess.Board:
        """Private copy for searches; the live board is never handed out."""
        return self.board.copy()
