from typing import Iterable, Optional

import chess


def mate_distance(score: int, mate_score: int) -> Optional[int]:
    """Signed moves-to-mate for a mate score, None for an ordinary score."""
    if abs(score) <= mate_score - 1000:
        return None
    mate_in = (mate_score - abs(score) + 1) // 2
    return mate_in if score > 0 else -mate_in


def format_score(score: int, mate_score: int) -> str:
    mate_in = mate_distance(score, mate_score)
    if mate_in is None:
        return f"cp {score}"
    return f"mate {mate_in}"


def format_info(d, score, nodes, elapsed_ms, pv_moves: Iterable[chess.Move], mate_score) -> str:
    pv_str = " ".join(m.uci() for m in pv_moves)
    line = f"info depth {d} nodes {nodes} score {format_score(score, mate_score)} time {int(elapsed_ms)}"
    if pv_str:
        line += f" pv {pv_str}"
    return line
