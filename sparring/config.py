# sparring/config.py
import enum
import logging
import os
import sys
import tomllib  # python >=3.11
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Defaults (centipawns). The king is never traded, so it carries no material.
PIECE_VALUES = {
    "PAWN": 100,
    "KNIGHT": 320,
    "BISHOP": 330,
    "ROOK": 500,
    "QUEEN": 900,
    "KING": 0,
}

# Piece-square tables from White's point of view, laid out the way the board
# is printed: index 0 is a8, index 63 is h1. Black uses the vertical mirror.
PST_PAWN = [
    0, 5, 5, -10, -10, 5, 5, 0,
    0, 10, -5, 0, 0, -5, 10, 0,
    0, 10, 10, 20, 20, 10, 10, 0,
    5, 20, 20, 30, 30, 20, 20, 5,
    5, 15, 15, 25, 25, 15, 15, 5,
    0, 10, 10, 20, 20, 10, 10, 0,
    5, 5, 10, -20, -20, 10, 5, 5,
    0, 0, 0, 0, 0, 0, 0, 0,
]

PST_KNIGHT = [
    -50, -40, -30, -30, -30, -30, -40, -50,
    -40, -20, 0, 0, 0, 0, -20, -40,
    -30, 0, 10, 15, 15, 10, 0, -30,
    -30, 5, 15, 20, 20, 15, 5, -30,
    -30, 0, 15, 20, 20, 15, 0, -30,
    -30, 5, 10, 15, 15, 10, 5, -30,
    -40, -20, 0, 5, 5, 0, -20, -40,
    -50, -40, -30, -30, -30, -30, -40, -50,
]

PST_BISHOP = [
    -20, -10, -10, -10, -10, -10, -10, -20,
    -10, 0, 0, 0, 0, 0, 0, -10,
    -10, 0, 5, 10, 10, 5, 0, -10,
    -10, 5, 5, 10, 10, 5, 5, -10,
    -10, 0, 10, 10, 10, 10, 0, -10,
    -10, 10, 10, 10, 10, 10, 10, -10,
    -10, 5, 0, 0, 0, 0, 5, -10,
    -20, -10, -10, -10, -10, -10, -10, -20,
]

PST_ROOK = [
    0, 0, 0, 5, 5, 0, 0, 0,
    -5, 0, 0, 0, 0, 0, 0, -5,
    -5, 0, 0, 0, 0, 0, 0, -5,
    -5, 0, 0, 0, 0, 0, 0, -5,
    -5, 0, 0, 0, 0, 0, 0, -5,
    -5, 0, 0, 0, 0, 0, 0, -5,
    5, 10, 10, 10, 10, 10, 10, 5,
    0, 0, 0, 0, 0, 0, 0, 0,
]

PST_QUEEN = [
    -20, -10, -10, -5, -5, -10, -10, -20,
    -10, 0, 0, 0, 0, 0, 0, -10,
    -10, 0, 5, 5, 5, 5, 0, -10,
    -5, 0, 5, 5, 5, 5, 0, -5,
    0, 0, 5, 5, 5, 5, 0, -5,
    -10, 5, 5, 5, 5, 5, 0, -10,
    -10, 0, 0, 0, 0, 0, 0, -10,
    -20, -10, -10, -5, -5, -10, -10, -20,
]

PST_KING = [0] * 64


class Difficulty(str, enum.Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    HARD = "hard"


@dataclass(frozen=True)
class DifficultyLevel:
    skill: int        # UCI "Skill Level", 0..20
    movetime_ms: int


# Shared by every engine kind so the UI behaves the same whichever is active.
DIFFICULTY_LEVELS: Dict[Difficulty, DifficultyLevel] = {
    Difficulty.BEGINNER: DifficultyLevel(skill=3, movetime_ms=300),
    Difficulty.INTERMEDIATE: DifficultyLevel(skill=10, movetime_ms=800),
    Difficulty.HARD: DifficultyLevel(skill=18, movetime_ms=1500),
}

MIN_SKILL = 0
MAX_SKILL = 20


@dataclass
class SearchConfig:
    max_depth: int = 6
    time_check_nodes: int = 256  # poll clock / stop flag every N nodes
    default_movetime_ms: int = 800
    min_movetime_ms: int = 50
    random_seed: Optional[int] = None  # seeds the no-completed-depth fallback

@dataclass
class EvalConfig:
    piece_values: Dict[str, int] = field(default_factory=lambda: PIECE_VALUES.copy())
    pst: Dict[str, List[int]] = field(default_factory=lambda: {
        "PAWN": PST_PAWN, "KNIGHT": PST_KNIGHT, "BISHOP": PST_BISHOP,
        "ROOK": PST_ROOK, "QUEEN": PST_QUEEN, "KING": PST_KING,
    })

@dataclass
class ProtocolConfig:
    engine_name: str = "Sparring"
    engine_author: str = "Sparring contributors"
    default_skill: int = 10
    grace_ms: int = 250
    handshake_timeout_ms: int = 5000
    stop_wait_ms: int = 500

@dataclass
class RemoteConfig:
    # Empty command means: run this package's own UCI loop in a subprocess.
    command: List[str] = field(default_factory=list)
    engine_path: Optional[str] = None  # e.g. "stockfish"

@dataclass
class OrchestratorConfig:
    debounce_ms: int = 150
    default_kind: str = "local"
    default_difficulty: str = "intermediate"

@dataclass
class Config:
    search: SearchConfig = field(default_factory=SearchConfig)
    eval: EvalConfig = field(default_factory=EvalConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    log_level: str = "INFO"

    @staticmethod
    def load_from_toml(path: str = "config.toml") -> "Config":
        cfg = Config()
        if not os.path.exists(path):
            return cfg
        with open(path, "rb") as f:
            raw = tomllib.load(f)
        for section in ("search", "eval", "protocol", "remote", "orchestrator"):
            target = getattr(cfg, section)
            for k, v in raw.get(section, {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)
        if "log_level" in raw:
            cfg.log_level = str(raw["log_level"])
        return cfg


def resolve_difficulty(difficulty: Optional[Difficulty] = None,
                       move_time_ms: Optional[int] = None) -> Tuple[int, int]:
    """Map a difficulty (and optional movetime override) to (skill, movetime_ms)."""
    level = DIFFICULTY_LEVELS[Difficulty(difficulty or Difficulty.INTERMEDIATE)]
    movetime = level.movetime_ms if move_time_ms is None else int(move_time_ms)
    return level.skill, movetime


def clamp_skill(skill: int) -> int:
    return max(MIN_SKILL, min(MAX_SKILL, int(skill)))


def depth_for_skill(skill: int, max_depth: Optional[int] = None) -> int:
    """Skill Level 0..20 -> depth budget 1..5, never above the configured cap."""
    depth = 1 + clamp_skill(skill) // 5
    cap = CONFIG.search.max_depth if max_depth is None else max_depth
    return max(1, min(depth, cap))


def configure_logging(level: Optional[str] = None) -> None:
    """Send diagnostics to stderr; stdout belongs to the UCI protocol."""
    root = logging.getLogger()
    if not any(getattr(h, "_sparring", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._sparring = True
        root.addHandler(handler)
    root.setLevel((level or CONFIG.log_level).upper())


# single globally importable config instance
CONFIG = Config.load_from_toml(os.environ.get("SPARRING_CONFIG_TOML", "config.toml"))
# env overrides for quick debugging
if os.environ.get("SPARRING_LOG_LEVEL"):
    CONFIG.log_level = os.environ["SPARRING_LOG_LEVEL"]
if os.environ.get("SPARRING_ENGINE_PATH"):
    CONFIG.remote.engine_path = os.environ["SPARRING_ENGINE_PATH"]
