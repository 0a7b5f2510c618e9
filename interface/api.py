"""FastAPI REST interface: play a game against the engine over HTTP."""

import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

import chess
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from sparring.config import CONFIG, Difficulty, configure_logging
from sparring.core.board import MoveFlag
from sparring.models import EngineKind
from sparring.orchestrator import Orchestrator

configure_logging()
logger = logging.getLogger(__name__)

# One game per process; the orchestrator owns the board and the engine.
orchestrator = Orchestrator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Kill the engine process/thread; the executor stays usable for reloads.
    orchestrator.disable_engine()


app = FastAPI(title=CONFIG.protocol.engine_name, version="1.0.0", lifespan=lifespan)

_SIDES = {"off": None, "white": chess.WHITE, "black": chess.BLACK}


class MoveRequest(BaseModel):
    move: str  # UCI format e.g. "e2e4"
    auto_queen: bool = False


class ResetRequest(BaseModel):
    fen: Optional[str] = None


class EngineRequest(BaseModel):
    kind: Optional[EngineKind] = None
    difficulty: Optional[Difficulty] = None
    move_time_ms: Optional[int] = None
    side: Optional[Literal["off", "white", "black"]] = None


def _side_name(side: Optional[chess.Color]) -> str:
    if side is None:
        return "off"
    return "white" if side == chess.WHITE else "black"


def _last_move(board) -> Optional[dict]:
    history = board.history_uci()
    if not history:
        return None
    flags = board.last_move_flags()
    return {
        "uci": history[-1],
        "flags": [f.name.lower() for f in MoveFlag if f.value and f in flags],
    }


def _game_state() -> dict:
    # The engine thread pushes moves under the same lock.
    with orchestrator.lock:
        board = orchestrator.board
        return {
            "fen": board.serialize_position(),
            "turn": "white" if board.turn() == chess.WHITE else "black",
            "legal_moves": [m.uci() for m in board.legal_moves()],
            "is_game_over": board.is_game_over(),
            "result": board.result(),
            "history": board.history_uci(),
            "last_move": _last_move(board),
        }


def _engine_state() -> dict:
    with orchestrator.lock:
        rec = orchestrator.last_recommendation
        return {
            "kind": orchestrator.engine_kind.value if orchestrator.engine_kind else None,
            "active": orchestrator.engine_active,
            "difficulty": orchestrator.options.difficulty.value,
            "move_time_ms": orchestrator.options.movetime_ms,
            "side": _side_name(orchestrator.engine_side),
            "phase": orchestrator.phase.value,
            "last_recommendation": rec.to_dict() if rec else None,
        }


@app.get("/game")
def get_game():
    return _game_state()


@app.post("/move")
def make_move(req: MoveRequest):
    try:
        chess.Move.from_uci(req.move)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid UCI move: {req.move}")
    with orchestrator.lock:
        if orchestrator.board.is_game_over():
            raise HTTPException(status_code=400, detail="Game is already over")
        if orchestrator.is_engine_turn():
            raise HTTPException(status_code=400, detail="It is the engine's turn")
    if orchestrator.play_move(req.move, auto_queen=req.auto_queen) is None:
        raise HTTPException(status_code=400, detail=f"Illegal move: {req.move}")
    return _game_state()


@app.post("/reset")
def reset_game(req: ResetRequest = ResetRequest()):
    try:
        orchestrator.new_game(req.fen)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid FEN: {e}")
    return _game_state()


@app.post("/undo")
def undo_move():
    undone = orchestrator.undo()
    return {**_game_state(), "undone": undone}


@app.get("/engine")
def get_engine():
    return _engine_state()


@app.post("/engine")
def configure_engine(req: EngineRequest):
    if req.kind is not None:
        if not orchestrator.set_engine(req.kind, req.difficulty, req.move_time_ms):
            raise HTTPException(status_code=503, detail=f"{req.kind.value} engine failed to start")
    elif req.difficulty is not None or req.move_time_ms is not None:
        orchestrator.set_difficulty(req.difficulty or orchestrator.options.difficulty, req.move_time_ms)
    if req.side is not None:
        orchestrator.set_engine_side(_SIDES[req.side])
    return _engine_state()
