"""UCI-style control protocol handler.

One command per line in, one response per line out. The handler owns a
private position and drives a SearchEngine on a daemon thread so that
`stop` can be read while a search is running. Output goes through the
`write` callable: `print` for the stdio loop, `queue.Queue.put` for an
in-process adapter.

    GUI -> engine: uci, isready, ucinewgame, setoption, position, go, stop, quit
    engine -> GUI: id name, id author, option, uciok, readyok, info, bestmove
"""

import enum
import logging
import threading
from typing import Callable, List, Optional

import chess

from sparring.config import CONFIG, clamp_skill, depth_for_skill
from sparring.core.search import MATE_SCORE, DepthInfo, SearchEngine
from sparring.core.utils import format_info

logger = logging.getLogger(__name__)


class ProtocolState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    READY = "ready"
    SEARCHING = "searching"
    DISPOSED = "disposed"


class UciProtocol:
    def __init__(self, write: Callable[[str], None], search_engine: Optional[SearchEngine] = None,
                 cfg=None):
        self.write = write
        self.cfg = cfg or CONFIG.protocol
        self.engine = search_engine or SearchEngine()
        self.board = chess.Board()
        self.skill = clamp_skill(self.cfg.default_skill)
        self.state = ProtocolState.UNINITIALIZED

        # Guards state transitions and the bestmove hand-off.
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._search_thread: Optional[threading.Thread] = None

        self._handlers = {
            "uci": self._handle_uci,
            "isready": self._handle_isready,
            "ucinewgame": self._handle_ucinewgame,
            "setoption": self._handle_setoption,
            "position": self._handle_position,
            "go": self._handle_go,
            "stop": self._handle_stop,
            "quit": self._handle_quit,
        }

    # ── input ─────────────────────────────────────────────

    def send(self, line: str) -> None:
        """Handle one command line. Unknown or malformed commands are ignored."""
        tokens = line.strip().split()
        if not tokens:
            return
        handler = self._handlers.get(tokens[0].lower())
        if handler is None:
            logger.debug("ignoring unknown command %r", tokens[0])
            return
        try:
            handler(tokens[1:])
        except Exception:
            logger.exception("error handling command %r", line.strip())

    @property
    def is_searching(self) -> bool:
        return self.state is ProtocolState.SEARCHING

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current search thread (if any) has finished."""
        thread = self._search_thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _emit(self, line: str) -> None:
        self.write(line)

    def _require_ready(self, command: str) -> bool:
        if self.state is ProtocolState.READY:
            return True
        logger.debug("ignoring %s in state %s", command, self.state.value)
        return False

    # ── handshake ─────────────────────────────────────────

    def _handle_uci(self, tokens: List[str]) -> None:
        with self._lock:
            searching = self.state is ProtocolState.SEARCHING
            if not searching:
                self.state = ProtocolState.HANDSHAKING
            self._emit(f"id name {self.cfg.engine_name}")
            self._emit(f"id author {self.cfg.engine_author}")
            self._emit(f"option name Skill Level type spin default {self.cfg.default_skill} min 0 max 20")
            self._emit("uciok")
            if not searching:
                self.state = ProtocolState.READY

    def _handle_isready(self, tokens: List[str]) -> None:
        self._emit("readyok")

    def _handle_ucinewgame(self, tokens: List[str]) -> None:
        with self._lock:
            if self._require_ready("ucinewgame"):
                self.board = chess.Board()

    def _handle_setoption(self, tokens: List[str]) -> None:
        # setoption name Skill Level value 10
        with self._lock:
            if not self._require_ready("setoption"):
                return
            lowered = [t.lower() for t in tokens]
            if "name" not in lowered:
                return
            name_at = lowered.index("name")
            value_at = lowered.index("value") if "value" in lowered else len(tokens)
            name = " ".join(lowered[name_at + 1:value_at])
            value = " ".join(tokens[value_at + 1:])
            if name == "skill level":
                try:
                    self.skill = clamp_skill(int(value))
                except ValueError:
                    logger.warning("bad Skill Level value %r", value)
            else:
                logger.debug("ignoring unsupported option %r", name)

    # ── position ──────────────────────────────────────────

    def _handle_position(self, tokens: List[str]) -> None:
        with self._lock:
            if not self._require_ready("position"):
                return
            board = self._parse_position(tokens)
            if board is not None:
                self.board = board

    def _parse_position(self, tokens: List[str]) -> Optional[chess.Board]:
        """Build the board for `position ...`; None leaves the current one in place."""
        if not tokens:
            return None
        if "moves" in tokens:
            moves_at = tokens.index("moves")
            head, move_tokens = tokens[:moves_at], tokens[moves_at + 1:]
        else:
            head, move_tokens = tokens, []

        if head[0] == "startpos":
            board = chess.Board()
        elif head[0] == "fen":
            try:
                board = chess.Board(" ".join(head[1:]))
            except ValueError as e:
                logger.warning("invalid FEN in position command: %s", e)
                return None
        else:
            logger.warning("unknown position type: %s", head[0])
            return None

        # Replay; stop at the first bad move and keep what was applied so far.
        for uci_move in move_tokens:
            try:
                move = chess.Move.from_uci(uci_move)
            except ValueError:
                move = None
            if move is None or move not in board.legal_moves:
                logger.warning("illegal move in position command: %s", uci_move)
                break
            board.push(move)
        return board

    # ── search ────────────────────────────────────────────

    def _handle_go(self, tokens: List[str]) -> None:
        with self._lock:
            if self.state is ProtocolState.SEARCHING:
                logger.warning("go received while a search is running; ignored")
                return
            if not self._require_ready("go"):
                return
            time_ms, depth = self._parse_go(tokens)
            self._stop_event = threading.Event()
            self.state = ProtocolState.SEARCHING
            board = self.board.copy()
            self._search_thread = threading.Thread(
                target=self._run_search,
                args=(board, time_ms, depth, self._stop_event),
                daemon=True,
            )
            self._search_thread.start()

    def _parse_go(self, tokens: List[str]):
        """Return (time budget ms or None, depth budget) for a go command."""
        search_cfg = self.engine.cfg
        params = {}
        i = 0
        while i < len(tokens):
            key = tokens[i]
            if key == "infinite":
                params[key] = 1
                i += 1
                continue
            try:
                params[key] = int(tokens[i + 1])
                i += 2
            except (ValueError, IndexError):
                i += 1

        depth = params["depth"] if params.get("depth", 0) > 0 else depth_for_skill(self.skill)

        if "movetime" in params:
            return max(search_cfg.min_movetime_ms, params["movetime"]), depth

        time_key, inc_key = ("wtime", "winc") if self.board.turn == chess.WHITE else ("btime", "binc")
        if time_key in params:
            budget = params[time_key] // 40 + params.get(inc_key, 0)
            return max(search_cfg.min_movetime_ms, budget), depth

        if "infinite" in params or "depth" in params:
            return None, depth
        return search_cfg.default_movetime_ms, depth

    def _run_search(self, board: chess.Board, time_ms: Optional[int], depth: int,
                    stop_event: threading.Event) -> None:
        bestmove = "(none)"
        try:
            result = self.engine.search(board, time_ms, depth, stop_event=stop_event,
                                        on_depth=self._emit_info)
            if result.best_move is not None:
                bestmove = result.best_move.uci()
        except Exception:
            logger.exception("search thread failed")
        finally:
            # State change and bestmove are one step: a go arriving right
            # after bestmove must already see READY.
            with self._lock:
                if self.state is ProtocolState.SEARCHING:
                    self.state = ProtocolState.READY
                self._emit(f"bestmove {bestmove}")

    def _emit_info(self, info: DepthInfo) -> None:
        self._emit(format_info(info.depth, info.score, info.nodes, info.elapsed_ms, info.pv, MATE_SCORE))

    def _handle_stop(self, tokens: List[str]) -> None:
        if self.state is ProtocolState.SEARCHING:
            self._stop_event.set()

    def _handle_quit(self, tokens: List[str]) -> None:
        self._stop_event.set()
        self.wait(timeout=2.0)
        with self._lock:
            self.state = ProtocolState.DISPOSED
