"""Engine adapters: one Recommendation-shaped interface over any UCI handler.

Both variants speak the same line protocol and share the normalization
code in ProtocolAdapter. They only differ in transport:

- LocalSearchAdapter hosts a UciProtocol in this process.
- RemoteProtocolAdapter runs a UCI engine as a child process (our own
  `python -m interface.uci`, or a binary such as Stockfish).

Responses are delivered to a queue.Queue; a request reads from it until the
`bestmove` line or the watchdog deadline (movetime + grace).
"""

import logging
import os
import queue
import shutil
import subprocess
import sys
import threading
import time
from typing import List, Optional

import chess

from sparring.config import CONFIG
from sparring.models import EngineKind, EngineOptions, Recommendation
from sparring.protocol import UciProtocol

logger = logging.getLogger(__name__)


class EngineInitError(RuntimeError):
    """The engine transport could not start or did not complete the handshake."""


class EngineNotReadyError(RuntimeError):
    """A request was made on an adapter that is not initialized."""


class ProtocolAdapter:
    kind: EngineKind

    def __init__(self, options: Optional[EngineOptions] = None, grace_ms: Optional[int] = None, cfg=None):
        self.cfg = cfg or CONFIG.protocol
        self.options = options or EngineOptions()
        self.grace_ms = self.cfg.grace_ms if grace_ms is None else grace_ms
        self._lines: "queue.Queue[str]" = queue.Queue()
        self._request_lock = threading.Lock()  # one request in flight
        self._searching = False
        self._ready = False

    # ── transport hooks ───────────────────────────────────

    def _start_transport(self) -> None:
        raise NotImplementedError

    def _write(self, command: str) -> None:
        raise NotImplementedError

    def _close_transport(self) -> None:
        raise NotImplementedError

    # ── lifecycle ─────────────────────────────────────────

    @property
    def ready(self) -> bool:
        return self._ready

    def init(self) -> None:
        """Start the transport and complete the handshake. Raises EngineInitError."""
        if self._ready:
            return
        self._drain()
        try:
            self._start_transport()
            timeout = self.cfg.handshake_timeout_ms / 1000.0
            self._write("uci")
            if self._wait_for("uciok", timeout) is None:
                raise EngineInitError(f"{self.kind.value} engine did not answer uciok")
            self._write("isready")
            if self._wait_for("readyok", timeout) is None:
                raise EngineInitError(f"{self.kind.value} engine did not answer readyok")
            self._write("ucinewgame")
        except EngineInitError:
            self._safe_close()
            raise
        except (OSError, ValueError) as e:
            self._safe_close()
            raise EngineInitError(f"failed starting {self.kind.value} engine: {e}") from e
        self._ready = True
        self._apply_options()
        logger.info("%s engine ready", self.kind.value)

    def dispose(self) -> None:
        """Stop any search and release the transport. Safe to call at any time."""
        was_ready, self._ready = self._ready, False
        if was_ready:
            try:
                if self._searching:
                    self._write("stop")
                self._write("quit")
            except (OSError, ValueError):
                logger.debug("%s engine already gone", self.kind.value)
        # The queue is left alone: a request still waiting on it picks up the
        # final bestmove. init() and the next request drain it.
        self._safe_close()

    def set_options(self, options: EngineOptions) -> None:
        """Replace the options; move_time_ms=None means the difficulty's own movetime."""
        self.options = options
        if self._ready:
            self._apply_options()

    def new_game(self) -> None:
        if self._ready:
            self._write("ucinewgame")

    def cancel(self) -> None:
        """Ask the in-flight search (if any) to finish now."""
        if self._ready and self._searching:
            self._write("stop")

    def _apply_options(self) -> None:
        self._write(f"setoption name Skill Level value {self.options.skill}")

    # ── requests ──────────────────────────────────────────

    def request_move(self, position: str) -> Recommendation:
        """Best move for a FEN. Never hangs: gives up after movetime + grace."""
        return self.analyze(position)

    def analyze(self, position: str) -> Recommendation:
        if not self._ready:
            raise EngineNotReadyError(f"{self.kind.value} engine is not initialized")
        with self._request_lock:
            try:
                return self._search(position)
            except (OSError, ValueError) as e:
                # Transport closed under us (dispose during a request).
                logger.warning("%s engine request aborted: %s", self.kind.value, e)
                self._searching = False
                return Recommendation.empty(self.kind)

    def _search(self, fen: str) -> Recommendation:
        start = time.monotonic()
        try:
            board = chess.Board(fen)
        except ValueError:
            logger.warning("request for invalid FEN %r", fen)
            return Recommendation.empty(self.kind)

        movetime = self.options.movetime_ms
        self._drain()
        self._apply_options()
        self._write(f"position fen {fen}")
        self._searching = True
        self._write(f"go movetime {movetime}")

        deadline = start + (movetime + self.grace_ms) / 1000.0
        rec = Recommendation.empty(self.kind)
        bestmove = None
        while True:
            line = self._next_line(deadline)
            if line is None:
                break
            if line.startswith("info "):
                self._parse_info(line, rec)
            elif line.startswith("bestmove"):
                bestmove = line
                break
        self._searching = bestmove is None
        rec.elapsed_ms = int((time.monotonic() - start) * 1000)

        if bestmove is None:
            logger.warning("%s engine gave no bestmove within %d ms, treating as no move",
                           self.kind.value, movetime + self.grace_ms)
            self._abandon_search()
            return Recommendation.empty(self.kind, rec.elapsed_ms)

        parts = bestmove.split()
        uci = parts[1] if len(parts) > 1 else None
        rec.best_move_uci = self._legal_or_none(board, uci)
        if rec.best_move_uci is None:
            rec.pv = []
        return rec

    def _legal_or_none(self, board: chess.Board, uci: Optional[str]) -> Optional[str]:
        if not uci or uci in ("(none)", "none", "0000"):
            return None
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            move = None
        if move is None or move not in board.legal_moves:
            logger.warning("%s engine proposed illegal move %r, discarded", self.kind.value, uci)
            return None
        return move.uci()

    def _abandon_search(self) -> None:
        """Stop a late search and swallow its bestmove so the next request starts clean."""
        try:
            self._write("stop")
        except (OSError, ValueError):
            return
        wait_until = time.monotonic() + self.cfg.stop_wait_ms / 1000.0
        while True:
            line = self._next_line(wait_until)
            if line is None:
                logger.warning("%s engine did not acknowledge stop, restarting it", self.kind.value)
                self._restart()
                return
            if line.startswith("bestmove"):
                self._searching = False
                return

    def _restart(self) -> None:
        """Replace a wedged transport. Leaves the adapter not ready if it cannot come back."""
        self._ready = False
        self._searching = False
        self._safe_close()
        # The old handler may still answer later; give it a queue nobody reads.
        self._lines = queue.Queue()
        try:
            self.init()
        except EngineInitError:
            logger.exception("%s engine could not be restarted", self.kind.value)

    @staticmethod
    def _parse_info(line: str, rec: Recommendation) -> None:
        parts = line.split()

        def _int_after(key: str, offset: int = 1) -> Optional[int]:
            if key not in parts:
                return None
            try:
                return int(parts[parts.index(key) + offset])
            except (ValueError, IndexError):
                return None

        depth = _int_after("depth")
        if depth is not None:
            rec.depth = depth
        nodes = _int_after("nodes")
        if nodes is not None:
            rec.nodes = nodes
        if "score" in parts:
            at = parts.index("score")
            kind = parts[at + 1] if at + 1 < len(parts) else None
            value = _int_after("score", 2)
            if kind == "cp" and value is not None:
                rec.score_cp, rec.mate_in = value, None
            elif kind == "mate" and value is not None:
                rec.mate_in, rec.score_cp = value, None
        if "pv" in parts:
            rec.pv = parts[parts.index("pv") + 1:]

    # ── queue helpers ─────────────────────────────────────

    def _next_line(self, deadline: float) -> Optional[str]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            return self._lines.get(timeout=remaining)
        except queue.Empty:
            return None

    def _wait_for(self, token: str, timeout: float) -> Optional[str]:
        deadline = time.monotonic() + timeout
        while True:
            line = self._next_line(deadline)
            if line is None or line.strip() == token:
                return line

    def _drain(self) -> None:
        while True:
            try:
                self._lines.get_nowait()
            except queue.Empty:
                return

    def _safe_close(self) -> None:
        try:
            self._close_transport()
        except OSError:
            logger.exception("error closing %s engine", self.kind.value)


class LocalSearchAdapter(ProtocolAdapter):
    kind = EngineKind.LOCAL

    def __init__(self, options: Optional[EngineOptions] = None, grace_ms: Optional[int] = None,
                 cfg=None, search_engine=None):
        super().__init__(options, grace_ms, cfg)
        self._search_engine = search_engine
        self.protocol: Optional[UciProtocol] = None

    def _start_transport(self) -> None:
        self.protocol = UciProtocol(self._lines.put, search_engine=self._search_engine, cfg=self.cfg)

    def _write(self, command: str) -> None:
        if self.protocol is None:
            raise ValueError("local engine is closed")
        self.protocol.send(command)

    def _close_transport(self) -> None:
        protocol, self.protocol = self.protocol, None
        if protocol is not None:
            protocol.send("quit")


class RemoteProtocolAdapter(ProtocolAdapter):
    kind = EngineKind.REMOTE

    def __init__(self, options: Optional[EngineOptions] = None, grace_ms: Optional[int] = None,
                 cfg=None, command: Optional[List[str]] = None, remote_cfg=None):
        super().__init__(options, grace_ms, cfg)
        self.remote_cfg = remote_cfg or CONFIG.remote
        self.command = command or self._resolve_command()
        self.proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()

    def _resolve_command(self) -> List[str]:
        """Explicit command, then engine_path (resolved on PATH), then our own UCI loop."""
        if self.remote_cfg.command:
            return list(self.remote_cfg.command)
        if self.remote_cfg.engine_path:
            candidate = self.remote_cfg.engine_path
            resolved = shutil.which(candidate) or (candidate if os.path.isfile(candidate) else None)
            if resolved:
                return [resolved]
            logger.warning("engine %r not found, using the built-in engine", candidate)
        return [sys.executable, "-m", "interface.uci"]

    def _start_transport(self) -> None:
        env = dict(os.environ)
        repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        env["PYTHONPATH"] = os.pathsep.join(p for p in (repo_root, env.get("PYTHONPATH")) if p)
        self.proc = subprocess.Popen(
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            env=env,
        )
        self._reader = threading.Thread(target=self._read_loop, args=(self.proc,), daemon=True)
        self._reader.start()

    def _read_loop(self, proc: subprocess.Popen) -> None:
        for raw in proc.stdout:
            line = raw.strip()
            if line:
                self._lines.put(line)
        logger.debug("engine process output closed")

    def _write(self, command: str) -> None:
        proc = self.proc
        if proc is None or proc.poll() is not None:
            raise OSError("engine process is not running")
        with self._write_lock:
            proc.stdin.write(command + "\n")
            proc.stdin.flush()

    def _close_transport(self) -> None:
        proc, self.proc = self.proc, None
        if proc is None:
            return
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=1.0)
        # The process is gone, so the reader hits EOF; let it finish before closing stdout.
        if self._reader is not None:
            self._reader.join(timeout=1.0)
            self._reader = None
        for stream in (proc.stdin, proc.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    logger.debug("engine pipe already closed")


_ADAPTERS = {
    EngineKind.LOCAL: LocalSearchAdapter,
    EngineKind.REMOTE: RemoteProtocolAdapter,
}


def create_adapter(kind, options: Optional[EngineOptions] = None, **kwargs) -> ProtocolAdapter:
    """Build the adapter for a configured engine kind (not yet initialized)."""
    return _ADAPTERS[EngineKind(kind)](options=options, **kwargs)
