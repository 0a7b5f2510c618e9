"""Turn-taking glue between the live game and the active engine adapter.

The orchestrator is the only thing that mutates the game. Every state change
funnels into on_game_state_changed(), which (re)arms a short debounce timer
when it is the engine's turn. When the timer fires the request runs on a
single worker thread, so the caller never blocks and at most one request is
in flight. Results are re-validated before being applied:

    IDLE -> PENDING (timer armed) -> IN_FLIGHT (request running) -> IDLE
"""

import enum
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

import chess

from sparring.adapters import EngineInitError, EngineNotReadyError, create_adapter
from sparring.config import CONFIG, Difficulty
from sparring.core.board import ChessBoard
from sparring.models import EngineKind, EngineOptions, Recommendation

logger = logging.getLogger(__name__)


class RequestPhase(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class Orchestrator:
    def __init__(self, board: Optional[ChessBoard] = None, adapter_factory=create_adapter,
                 cfg=None, on_change: Optional[Callable[[], None]] = None):
        self.board = board or ChessBoard()
        self.cfg = cfg or CONFIG.orchestrator
        self.adapter_factory = adapter_factory
        self.on_change = on_change

        self.adapter = None
        self.engine_kind: Optional[EngineKind] = None
        self.options = EngineOptions(difficulty=Difficulty(self.cfg.default_difficulty))
        self.engine_side: Optional[chess.Color] = None
        self.last_recommendation: Optional[Recommendation] = None
        self.phase = RequestPhase.IDLE
        self.requests_started = 0

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._timer: Optional[threading.Timer] = None
        self._timer_token = 0
        self._epoch = 0               # bumped whenever in-flight results must be dropped
        self._request_id = 0
        self._active_request: Optional[int] = None
        self._future: Optional[Future] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sparring-engine")

    # ── scheduling ────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        """Held while the board is mutated; hold it to read a consistent position."""
        return self._lock

    @property
    def engine_active(self) -> bool:
        return self.adapter is not None and self.adapter.ready

    def is_engine_turn(self) -> bool:
        return (self.engine_active and self.engine_side is not None
                and not self.board.is_game_over() and self.board.turn() == self.engine_side)

    def on_game_state_changed(self) -> None:
        """Arm (or re-arm) the debounce timer if the engine should move now."""
        with self._lock:
            self._cancel_timer()
            if self.is_engine_turn():
                self._timer_token += 1
                self._timer = threading.Timer(self.cfg.debounce_ms / 1000.0, self._fire,
                                              args=(self._timer_token,))
                self._timer.daemon = True
                self._timer.start()
            self._settle_phase()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_token += 1

    def _settle_phase(self) -> None:
        if self._timer is not None:
            self.phase = RequestPhase.PENDING
        elif self._active_request is not None:
            self.phase = RequestPhase.IN_FLIGHT
        else:
            self.phase = RequestPhase.IDLE
            self._idle.notify_all()

    def _fire(self, token: int) -> None:
        with self._lock:
            if token != self._timer_token:
                return  # superseded by a later state change
            self._timer = None
            if not self.is_engine_turn():
                self._settle_phase()
                return
            adapter = self.adapter
            if self._active_request is not None:
                # New request supersedes the running one; it must end first.
                adapter.cancel()
            self._request_id += 1
            self._active_request = self._request_id
            self.requests_started += 1
            fen = self.board.serialize_position()
            self._future = self._executor.submit(self._run_request, adapter, fen,
                                                 self._epoch, self._request_id)
            self._settle_phase()

    def _run_request(self, adapter, fen: str, epoch: int, request_id: int) -> None:
        try:
            rec = adapter.request_move(fen)
        except EngineNotReadyError:
            logger.info("engine went away before the request ran")
            rec = None
        except Exception:
            logger.exception("engine request failed")
            rec = None
        self._apply(rec, fen, epoch, request_id)

    def _apply(self, rec: Optional[Recommendation], fen: str, epoch: int, request_id: int) -> None:
        applied = False
        with self._lock:
            try:
                if epoch != self._epoch or request_id != self._active_request:
                    logger.debug("dropping superseded recommendation for %s", fen)
                    return
                if rec is not None:
                    self.last_recommendation = rec
                if rec is None or rec.best_move_uci is None:
                    logger.info("engine has no move this turn")
                    return
                if self.board.serialize_position() != fen or not self.is_engine_turn():
                    logger.debug("dropping stale recommendation %s", rec.best_move_uci)
                    return
                if self.board.apply_uci(rec.best_move_uci) is None:
                    logger.warning("engine move %s rejected by the board", rec.best_move_uci)
                    return
                applied = True
            finally:
                if request_id == self._active_request:
                    self._active_request = None
                self._settle_phase()
        if applied:
            self._notify()
            self.on_game_state_changed()

    def _quiesce(self, timeout: Optional[float] = None) -> None:
        """Cancel the pending timer and the in-flight request, and wait for it."""
        with self._lock:
            self._cancel_timer()
            self._epoch += 1
            future, adapter = self._future, self.adapter
        if adapter is not None:
            adapter.cancel()
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeout:
                logger.warning("in-flight engine request did not finish in time")
        with self._lock:
            self._settle_phase()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self.phase is RequestPhase.IDLE, timeout)

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("on_change listener failed")

    # ── engine configuration ──────────────────────────────

    def set_engine(self, kind, difficulty=None, move_time_ms: Optional[int] = None) -> bool:
        """Select (or re-tune) the engine. Returns False if it failed to start.

        With neither difficulty nor move_time_ms the current options are kept.
        Otherwise move_time_ms=None drops any movetime override.
        """
        kind = EngineKind(kind)
        self._quiesce()
        with self._lock:
            if difficulty is not None or move_time_ms is not None:
                self.options = EngineOptions(
                    difficulty=Difficulty(difficulty) if difficulty else self.options.difficulty,
                    move_time_ms=move_time_ms,
                )
            if self.adapter is not None and self.engine_kind is kind:
                self.adapter.set_options(self.options)
                old, adapter = None, None
            else:
                old, self.adapter, self.engine_kind = self.adapter, None, None
                adapter = self.adapter_factory(kind, self.options)

        if adapter is not None:
            if old is not None:
                old.dispose()
            try:
                adapter.init()
            except EngineInitError:
                logger.exception("%s engine failed to start, no engine active", kind.value)
                adapter.dispose()
                self._notify()
                return False
            with self._lock:
                self.adapter, self.engine_kind = adapter, kind

        self._notify()
        self.on_game_state_changed()
        return True

    def set_difficulty(self, difficulty, move_time_ms: Optional[int] = None) -> None:
        """New difficulty; without move_time_ms the difficulty's movetime applies."""
        self._quiesce()
        with self._lock:
            self.options = EngineOptions(Difficulty(difficulty), move_time_ms)
            if self.adapter is not None:
                self.adapter.set_options(self.options)
        self._notify()
        self.on_game_state_changed()

    def set_engine_side(self, side: Optional[chess.Color]) -> None:
        """Which color the engine plays; None turns it off without disposing it."""
        with self._lock:
            self.engine_side = side
        self._notify()
        self.on_game_state_changed()

    def disable_engine(self) -> None:
        self._quiesce()
        with self._lock:
            adapter, self.adapter, self.engine_kind = self.adapter, None, None
        if adapter is not None:
            adapter.dispose()
        self._notify()

    def shutdown(self) -> None:
        self.disable_engine()
        self._executor.shutdown(wait=True)

    # ── game actions ──────────────────────────────────────

    def play_move(self, move_uci: str, auto_queen: bool = False) -> Optional[chess.Move]:
        """Apply a human move. None if illegal, the game is over, or it is the engine's turn."""
        with self._lock:
            if self.board.is_game_over() or self.is_engine_turn():
                return None
            move = self.board.apply_uci(move_uci, auto_queen=auto_queen)
        if move is None:
            return None
        self._notify()
        self.on_game_state_changed()
        return move

    def new_game(self, fen: Optional[str] = None) -> None:
        """Start over from the initial position or a FEN. Raises ValueError on bad FEN."""
        if fen is not None:
            chess.Board(fen)
        self._quiesce()
        with self._lock:
            if fen is None:
                self.board.reset()
            else:
                self.board.load_position(fen)
            self.last_recommendation = None
            adapter = self.adapter
        if adapter is not None:
            adapter.new_game()
        self._notify()
        self.on_game_state_changed()

    def undo(self) -> int:
        """Take back the last move pair (or the last move with no engine). Returns moves undone."""
        self._quiesce()
        undone = 0
        with self._lock:
            if self.board.undo() is not None:
                undone += 1
                if self.is_engine_turn() and self.board.undo() is not None:
                    undone += 1
        self._notify()
        self.on_game_state_changed()
        return undone
