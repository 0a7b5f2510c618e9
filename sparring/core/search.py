import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import chess

from sparring.config import CONFIG
from sparring.core.evaluator import Evaluator

logger = logging.getLogger(__name__)

INF = 1000000
MATE_SCORE = 900000


@dataclass
class SearchResult:
    score: int = 0            # centipawns, side to move
    best_move: Optional[chess.Move] = None
    depth: int = 0            # deepest completed iteration, 0 if none
    nodes: int = 0
    pv: List[chess.Move] = field(default_factory=list)
    elapsed_ms: int = 0


@dataclass
class DepthInfo:
    depth: int
    score: int
    nodes: int
    elapsed_ms: int
    pv: List[chess.Move]


class SearchAborted(Exception):
    """Raised inside the tree when the clock runs out or a stop is requested."""


class SearchEngine:
    def __init__(self, evaluator: Optional[Evaluator] = None, depth: int = 4, cfg=None,
                 rng: Optional[random.Random] = None):
        self.evaluator = evaluator or Evaluator()
        self.max_depth = depth
        self.cfg = cfg or CONFIG.search
        self.rng = rng or random.Random(self.cfg.random_seed)

        self._stop_event: Optional[threading.Event] = None  # the running search's event
        self._deadline: Optional[float] = None
        self._pv: List[List[chess.Move]] = []
        self.nodes = 0

    def search(self, board: chess.Board, time_budget_ms: Optional[int] = None,
               depth_budget: Optional[int] = None,
               stop_event: Optional[threading.Event] = None,
               on_depth: Optional[Callable[[DepthInfo], None]] = None) -> SearchResult:
        """Iterative deepening negamax. Never raises; `board` is left untouched.

        time_budget_ms=None means no clock. A depth only counts once it has
        completed; if none did, a random legal move is returned instead.
        """
        start = time.monotonic()
        self.nodes = 0
        self._stop_event = stop_event or threading.Event()
        self._deadline = None if time_budget_ms is None else start + time_budget_ms / 1000.0
        depth_budget = max(1, depth_budget or self.max_depth)

        try:
            result = self._iterate(board.copy(), depth_budget, start, on_depth)
        except Exception:
            logger.exception("search failed for fen=%s", board.fen())
            result = SearchResult(nodes=self.nodes)
        result.nodes = self.nodes
        result.elapsed_ms = int((time.monotonic() - start) * 1000)
        return result

    def _iterate(self, search_board: chess.Board, depth_budget: int, start: float,
                 on_depth: Optional[Callable[[DepthInfo], None]]) -> SearchResult:
        legal = list(search_board.legal_moves)
        if not legal:
            return SearchResult(score=self._terminal_score(search_board, 0))

        best: Optional[SearchResult] = None
        for d in range(1, depth_budget + 1):
            if self._should_abort():
                break
            self._pv = [[] for _ in range(d + 2)]
            try:
                score = self._negamax(search_board, d, -INF, INF, 0)
            except SearchAborted:
                logger.debug("depth %d aborted after %d nodes", d, self.nodes)
                break

            pv = list(self._pv[0])
            best = SearchResult(score=score, best_move=pv[0] if pv else None, depth=d, pv=pv)
            if on_depth:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                on_depth(DepthInfo(d, score, self.nodes, elapsed_ms, pv))
            if abs(score) > MATE_SCORE - 1000:
                break  # forced mate found, deeper iterations cannot shorten it

        if best is None or best.best_move is None:
            move = self.rng.choice(legal)
            logger.info("no completed depth, falling back to random move %s", move.uci())
            return SearchResult(best_move=move, pv=[move])
        return best

    def _should_abort(self) -> bool:
        if self._stop_event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _terminal_score(self, board: chess.Board, ply: int) -> Optional[int]:
        outcome = board.outcome()
        if outcome is None:
            return None
        if outcome.termination == chess.Termination.CHECKMATE:
            return -(MATE_SCORE - ply)
        return 0

    def _negamax(self, board: chess.Board, depth: int, alpha: int, beta: int, ply: int) -> int:
        self.nodes += 1
        self._pv[ply] = []
        if self.nodes % self.cfg.time_check_nodes == 0 and self._should_abort():
            raise SearchAborted()

        # The root always has moves here (checked by _iterate); only claim draws below it.
        terminal = self._terminal_score(board, ply) if ply > 0 else None
        if terminal is not None:
            return terminal
        if depth <= 0:
            return self.evaluator.evaluate_relative(board)

        best_score = -INF
        for move in self._order_moves(board):
            board.push(move)
            try:
                score = -self._negamax(board, depth - 1, -beta, -alpha, ply + 1)
            finally:
                board.pop()

            if score > best_score:
                best_score = score
                if score > alpha:
                    alpha = score
                    self._pv[ply] = [move] + self._pv[ply + 1]
            if alpha >= beta:
                break
        return best_score

    def _order_moves(self, board: chess.Board) -> List[chess.Move]:
        # Stable sort: captures first, otherwise generation order.
        return sorted(board.legal_moves, key=lambda m: 0 if board.is_capture(m) else 1)
