"""Shapes shared between the adapters, the orchestrator and the HTTP surface."""

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from sparring.config import Difficulty, resolve_difficulty


class EngineKind(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class EngineOptions:
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    move_time_ms: Optional[int] = None  # overrides the difficulty's movetime; None uses it

    @property
    def skill(self) -> int:
        return resolve_difficulty(self.difficulty, self.move_time_ms)[0]

    @property
    def movetime_ms(self) -> int:
        return resolve_difficulty(self.difficulty, self.move_time_ms)[1]


@dataclass
class Recommendation:
    """Engine-agnostic answer to a move request."""

    engine_kind: EngineKind
    best_move_uci: Optional[str] = None
    score_cp: Optional[int] = None
    mate_in: Optional[int] = None
    depth: int = 0
    nodes: int = 0
    pv: List[str] = field(default_factory=list)
    elapsed_ms: int = 0

    @classmethod
    def empty(cls, engine_kind: EngineKind, elapsed_ms: int = 0) -> "Recommendation":
        return cls(engine_kind=engine_kind, elapsed_ms=elapsed_ms)

    def to_dict(self) -> dict:
        return {
            "engine": self.engine_kind.value,
            "best_move": self.best_move_uci,
            "score_cp": self.score_cp,
            "mate_in": self.mate_in,
            "depth": self.depth,
            "nodes": self.nodes,
            "pv": list(self.pv),
            "elapsed_ms": self.elapsed_ms,
        }
