"""Material + piece-square static evaluator."""

import chess
from sparring.config import CONFIG


class Evaluator:
    def __init__(self, cfg=None):
        self.cfg = cfg or CONFIG.eval
        # Resolve the config tables once; evaluate() runs at every leaf.
        self._values = {}
        self._tables = {}
        for pt in chess.PIECE_TYPES:
            p_name = chess.piece_name(pt).upper()
            self._values[pt] = self.cfg.piece_values.get(p_name, 0)
            self._tables[pt] = self.cfg.pst.get(p_name) or [0] * 64

    def evaluate(self, board: chess.Board) -> int:
        """Return static eval in centipawns, positive favors White."""
        score = 0
        for sq, piece in board.piece_map().items():
            pt = piece.piece_type
            if piece.color == chess.WHITE:
                # Tables are printed from a8, python-chess counts from a1.
                score += self._values[pt] + self._tables[pt][sq ^ 56]
            else:
                # Mirrored square for Black lands back on `sq` after the flip.
                score -= self._values[pt] + self._tables[pt][sq]
        return score

    def evaluate_relative(self, board: chess.Board) -> int:
        """Same score, signed for the side to move (negamax convention)."""
        score = self.evaluate(board)
        return score if board.turn == chess.WHITE else -score
