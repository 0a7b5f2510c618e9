"""Core engine components: board, evaluator, and search."""

from .board import ChessBoard, MoveFlag
from .evaluator import Evaluator
from .search import SearchEngine, SearchResult
