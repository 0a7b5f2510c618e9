"""
Unit tests for the Sparring engine core.

Covers:
- Board wrapper (rules oracle: legal moves, flags, apply/undo, FEN)
- Evaluator (material, piece-square tables, side-to-move sign)
- Search (determinism, legality, mate detection, fallback, no leaked mutation)
- Config (difficulty mapping, skill -> depth, TOML loading)
"""

import random
import threading

import chess
import pytest

from sparring.config import (
    CONFIG,
    DIFFICULTY_LEVELS,
    PST_PAWN,
    Config,
    Difficulty,
    depth_for_skill,
    resolve_difficulty,
)
from sparring.core.board import ChessBoard, MoveFlag
from sparring.core.evaluator import Evaluator
from sparring.core.search import MATE_SCORE, SearchEngine
from sparring.core.utils import format_info, format_score, mate_distance
from sparring.models import EngineOptions

FOOLS_MATE = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"
STALEMATE = "7k/5Q2/6K1/8/8/8/8/8 b - - 0 1"
MATE_IN_ONE = "6k1/5ppp/8/8/8/8/8/R5K1 w - - 0 1"
HANGING_QUEEN = "4k3/8/8/3q4/8/8/8/3RK3 w - - 0 1"


# ════════════════════════════════════════════════════════════════════════════
#  BOARD TESTS
# ════════════════════════════════════════════════════════════════════════════

class TestChessBoard:
    def test_initial_position(self):
        b = ChessBoard()
        assert b.serialize_position() == chess.STARTING_FEN
        assert b.turn() == chess.WHITE

    def test_apply_legal_uci(self):
        b = ChessBoard()
        move = b.apply_uci("e2e4")
        assert move == chess.Move.from_uci("e2e4")
        assert b.history_uci() == ["e2e4"]

    def test_apply_illegal_uci(self):
        b = ChessBoard()
        assert b.apply_uci("e2e5") is None
        assert b.serialize_position() == chess.STARTING_FEN

    def test_apply_garbage_input(self):
        b = ChessBoard()
        assert b.apply_uci("zzzz") is None
        assert b.apply_uci("") is None
        assert b.apply_uci("12345") is None

    def test_apply_move_rejects_wrong_side(self):
        b = ChessBoard()
        assert b.apply_move(chess.Move.from_uci("a7a6")) is None

    def test_undo(self):
        b = ChessBoard()
        b.apply_uci("e2e4")
        assert b.undo() == chess.Move.from_uci("e2e4")
        assert b.serialize_position() == chess.STARTING_FEN

    def test_undo_empty(self):
        b = ChessBoard()
        assert b.undo() is None
        assert b.serialize_position() == chess.STARTING_FEN

    def test_load_position(self):
        b = ChessBoard()
        fen = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
        b.load_position(fen)
        assert b.serialize_position() == fen
        assert b.turn() == chess.BLACK

    def test_load_invalid_position_raises(self):
        b = ChessBoard()
        with pytest.raises(ValueError):
            b.load_position("not a fen")

    def test_reset(self):
        b = ChessBoard()
        b.apply_uci("e2e4")
        b.reset()
        assert b.serialize_position() == chess.STARTING_FEN
        assert b.history_uci() == []

    def test_legal_moves_initial(self):
        assert len(ChessBoard().legal_moves()) == 20

    def test_legal_moves_from_square(self):
        moves = ChessBoard().legal_moves(chess.G1)
        assert sorted(m.uci() for m in moves) == ["g1f3", "g1h3"]

    def test_legal_moves_from_empty_square(self):
        assert ChessBoard().legal_moves(chess.E4) == []

    def test_checkmate_is_game_over(self):
        b = ChessBoard(fen=FOOLS_MATE)
        assert b.legal_moves() == []
        assert b.is_game_over()
        assert b.result() == "0-1"

    def test_result_none_while_playing(self):
        assert ChessBoard().result() is None

    def test_flags_en_passant(self):
        b = ChessBoard(fen="rnbqkbnr/ppp1p1pp/8/3pPp2/8/8/PPPP1PPP/RNBQKBNR w KQkq f6 0 3")
        flags = b.move_flags(chess.Move.from_uci("e5f6"))
        assert MoveFlag.EN_PASSANT in flags
        assert MoveFlag.CAPTURE in flags

    def test_flags_castling(self):
        b = ChessBoard(fen="r3k2r/pppppppp/8/8/8/8/PPPPPPPP/R3K2R w KQkq - 0 1")
        assert b.move_flags(chess.Move.from_uci("e1g1")) == MoveFlag.KINGSIDE_CASTLE
        assert b.move_flags(chess.Move.from_uci("e1c1")) == MoveFlag.QUEENSIDE_CASTLE

    def test_flags_quiet_move(self):
        assert ChessBoard().move_flags(chess.Move.from_uci("e2e4")) == MoveFlag.NONE

    def test_flags_promotion(self):
        b = ChessBoard(fen="8/P7/8/8/8/8/8/4K2k w - - 0 1")
        assert MoveFlag.PROMOTION in b.move_flags(chess.Move.from_uci("a7a8q"))

    def test_promotion_requires_piece(self):
        b = ChessBoard(fen="8/P7/8/8/8/8/8/4K2k w - - 0 1")
        assert b.apply_uci("a7a8") is None

    def test_auto_queen(self):
        b = ChessBoard(fen="8/P7/8/8/8/8/8/4K2k w - - 0 1")
        move = b.apply_uci("a7a8", auto_queen=True)
        assert move is not None
        assert move.promotion == chess.QUEEN

    def test_auto_queen_ignores_non_pawn(self):
        b = ChessBoard()
        move = b.apply_uci("g1f3", auto_queen=True)
        assert move.promotion is None

    def test_copy_board_is_private(self):
        b = ChessBoard()
        copy = b.copy_board()
        copy.push_uci("e2e4")
        assert b.serialize_position() == chess.STARTING_FEN

    def test_last_move_flags(self):
        b = ChessBoard(fen="rnbqkbnr/ppp1p1pp/8/3pPp2/8/8/PPPP1PPP/RNBQKBNR w KQkq f6 0 3")
        assert b.last_move_flags() == MoveFlag.NONE
        b.apply_uci("e5f6")
        assert b.last_move_flags() == MoveFlag.CAPTURE | MoveFlag.EN_PASSANT
        b.apply_uci("b8c6")
        assert b.last_move_flags() == MoveFlag.NONE

    def test_last_move_flags_castle(self):
        b = ChessBoard(fen="r3k2r/pppppppp/8/8/8/8/PPPPPPPP/R3K2R w KQkq - 0 1")
        b.apply_uci("e1g1")
        assert b.last_move_flags() == MoveFlag.KINGSIDE_CASTLE


# ════════════════════════════════════════════════════════════════════════════
#  EVALUATOR TESTS
# ════════════════════════════════════════════════════════════════════════════

class TestEvaluator:
    def setup_method(self):
        self.ev = Evaluator()

    def test_starting_position_is_zero(self):
        assert self.ev.evaluate(chess.Board()) == 0

    def test_evaluate_returns_int(self):
        assert isinstance(self.ev.evaluate(chess.Board()), int)

    def test_single_pawn_material_plus_table(self):
        board = chess.Board("4k3/8/8/8/8/8/4P3/4K3 w - - 0 1")
        # e2 is printed on the seventh row of the table (index 52)
        assert self.ev.evaluate(board) == 100 + PST_PAWN[52]

    def test_black_pawn_is_mirrored(self):
        white = chess.Board("4k3/8/8/8/8/8/4P3/4K3 w - - 0 1")
        black = chess.Board("4k3/4p3/8/8/8/8/8/4K3 w - - 0 1")
        assert self.ev.evaluate(black) == -self.ev.evaluate(white)

    def test_white_up_queen(self):
        board = chess.Board("4k3/8/8/8/8/8/8/4KQ2 w - - 0 1")
        assert self.ev.evaluate(board) > 800

    def test_black_up_queen_from_white_view(self):
        board = chess.Board("4kq2/8/8/8/8/8/8/4K3 w - - 0 1")
        assert self.ev.evaluate(board) < -800

    def test_centralized_knight_preferred(self):
        center = chess.Board("4k3/8/8/8/4N3/8/8/4K3 w - - 0 1")
        corner = chess.Board("4k3/8/8/8/8/8/8/N3K3 w - - 0 1")
        assert self.ev.evaluate(center) > self.ev.evaluate(corner)

    def test_relative_flips_with_side_to_move(self):
        fen = "4k3/8/8/8/8/8/8/4KQ2 w - - 0 1"
        white_to_move = chess.Board(fen)
        black_to_move = chess.Board(fen)
        black_to_move.turn = chess.BLACK
        assert self.ev.evaluate_relative(white_to_move) == self.ev.evaluate(white_to_move)
        assert self.ev.evaluate_relative(black_to_move) == -self.ev.evaluate(white_to_move)

    def test_king_has_no_material(self):
        board = chess.Board("4k3/8/8/8/8/8/8/4K3 w - - 0 1")
        assert self.ev.evaluate(board) == 0


# ════════════════════════════════════════════════════════════════════════════
#  SEARCH TESTS
# ════════════════════════════════════════════════════════════════════════════

class TestSearchEngine:
    def setup_method(self):
        self.engine = SearchEngine(depth=2)

    def test_start_position_returns_legal_move(self):
        board = chess.Board()
        result = self.engine.search(board, None, 2)
        assert result.best_move in board.legal_moves
        assert result.depth == 2
        assert result.nodes > 0

    def test_deterministic_without_clock(self):
        board = chess.Board("r1bqkb1r/pppp1ppp/2n2n2/4p3/2B1P3/5N2/PPPP1PPP/RNBQK2R w KQkq - 4 4")
        first = self.engine.search(board, None, 3)
        second = SearchEngine().search(board, None, 3)
        assert first.best_move == second.best_move
        assert first.score == second.score
        assert first.nodes == second.nodes

    def test_nodes_reset_per_search(self):
        board = chess.Board()
        a = self.engine.search(board, None, 2)
        b = self.engine.search(board, None, 2)
        assert a.nodes == b.nodes

    def test_board_not_mutated(self):
        board = chess.Board()
        board.push_uci("e2e4")
        fen, stack = board.fen(), list(board.move_stack)
        self.engine.search(board, None, 3)
        assert board.fen() == fen
        assert board.move_stack == stack

    def test_board_not_mutated_after_abort(self):
        board = chess.Board()
        fen = board.fen()
        self.engine.search(board, 1, 5)
        assert board.fen() == fen

    def test_checkmated_position_has_no_move(self):
        result = self.engine.search(chess.Board(FOOLS_MATE), 1000, 3)
        assert result.best_move is None
        assert result.score == -MATE_SCORE

    def test_stalemate_has_no_move(self):
        board = chess.Board(STALEMATE)
        assert board.is_stalemate()
        result = self.engine.search(board, None, 3)
        assert result.best_move is None
        assert result.score == 0

    def test_finds_mate_in_one(self):
        result = self.engine.search(chess.Board(MATE_IN_ONE), None, 3)
        assert result.best_move == chess.Move.from_uci("a1a8")
        assert mate_distance(result.score, MATE_SCORE) == 1
        # Mate found at depth 1 ends the deepening early
        assert result.depth == 1

    def test_takes_hanging_queen(self):
        result = self.engine.search(chess.Board(HANGING_QUEEN), None, 2)
        assert result.best_move == chess.Move.from_uci("d1d5")
        assert result.score > 400

    def test_pv_is_playable(self):
        board = chess.Board()
        result = self.engine.search(board, None, 3)
        assert result.pv[0] == result.best_move
        replay = board.copy()
        for move in result.pv:
            assert move in replay.legal_moves
            replay.push(move)

    def test_on_depth_reports_each_completed_depth(self):
        depths = []
        self.engine.search(chess.Board(), None, 3, on_depth=lambda info: depths.append(info.depth))
        assert depths == [1, 2, 3]

    def test_zero_budget_falls_back_to_legal_move(self):
        board = chess.Board()
        result = self.engine.search(board, 0, 4)
        assert result.depth == 0
        assert result.best_move in board.legal_moves

    def test_fallback_is_seedable(self):
        board = chess.Board()
        a = SearchEngine(rng=random.Random(7)).search(board, 0, 3)
        b = SearchEngine(rng=random.Random(7)).search(board, 0, 3)
        assert a.best_move == b.best_move

    def test_stop_event_before_search(self):
        stop = threading.Event()
        stop.set()
        board = chess.Board()
        result = self.engine.search(board, None, 5, stop_event=stop)
        assert result.depth == 0
        assert result.best_move in board.legal_moves

    def test_time_budget_respected(self):
        result = self.engine.search(chess.Board(), 200, 8)
        assert result.best_move is not None
        assert result.depth < 8
        assert result.elapsed_ms < 1500

    def test_fault_returns_no_move(self):
        class BrokenEvaluator(Evaluator):
            def evaluate_relative(self, board):
                raise RuntimeError("boom")

        engine = SearchEngine(BrokenEvaluator())
        result = engine.search(chess.Board(), None, 2)
        assert result.best_move is None

    def test_prefers_captures_order(self):
        board = chess.Board(HANGING_QUEEN)
        ordered = self.engine._order_moves(board)
        assert ordered[0] == chess.Move.from_uci("d1d5")


class TestScoreFormatting:
    def test_cp_score(self):
        assert format_score(35, MATE_SCORE) == "cp 35"

    def test_mate_scores(self):
        assert format_score(MATE_SCORE - 1, MATE_SCORE) == "mate 1"
        assert format_score(-(MATE_SCORE - 2), MATE_SCORE) == "mate -1"
        assert format_score(MATE_SCORE - 3, MATE_SCORE) == "mate 2"

    def test_info_line(self):
        line = format_info(2, 15, 420, 33, [chess.Move.from_uci("e2e4")], MATE_SCORE)
        assert line == "info depth 2 nodes 420 score cp 15 time 33 pv e2e4"


# ════════════════════════════════════════════════════════════════════════════
#  CONFIG TESTS
# ════════════════════════════════════════════════════════════════════════════

class TestDifficulty:
    def test_every_difficulty_is_mapped(self):
        for difficulty in Difficulty:
            skill, movetime = resolve_difficulty(difficulty)
            assert 0 <= skill <= 20
            assert movetime > 0

    def test_canonical_values(self):
        assert resolve_difficulty(Difficulty.BEGINNER) == (3, 300)
        assert resolve_difficulty(Difficulty.INTERMEDIATE) == (10, 800)
        assert resolve_difficulty(Difficulty.HARD) == (18, 1500)

    def test_monotonic(self):
        levels = [DIFFICULTY_LEVELS[d] for d in (Difficulty.BEGINNER, Difficulty.INTERMEDIATE, Difficulty.HARD)]
        assert levels[0].skill <= levels[1].skill <= levels[2].skill
        assert levels[0].movetime_ms <= levels[1].movetime_ms <= levels[2].movetime_ms

    def test_default_is_intermediate(self):
        assert resolve_difficulty(None) == (10, 800)

    def test_accepts_plain_strings(self):
        assert resolve_difficulty("hard") == (18, 1500)

    def test_movetime_override(self):
        assert resolve_difficulty(Difficulty.BEGINNER, 1234) == (3, 1234)

    def test_engine_options(self):
        opts = EngineOptions(Difficulty.HARD)
        assert (opts.skill, opts.movetime_ms) == (18, 1500)
        assert EngineOptions(Difficulty.BEGINNER, 500).movetime_ms == 500

    def test_no_override_uses_difficulty_movetime(self):
        assert EngineOptions(Difficulty.BEGINNER).movetime_ms == 300
        assert EngineOptions(Difficulty.BEGINNER, None).movetime_ms == 300


class TestSkillDepth:
    @pytest.mark.parametrize("skill,depth", [(0, 1), (3, 1), (5, 2), (10, 3), (18, 4), (20, 5)])
    def test_skill_to_depth(self, skill, depth):
        assert depth_for_skill(skill, max_depth=10) == depth

    def test_clamped(self):
        assert depth_for_skill(-7, max_depth=10) == 1
        assert depth_for_skill(99, max_depth=10) == 5

    def test_capped_by_max_depth(self):
        assert depth_for_skill(20, max_depth=2) == 2

    def test_uses_configured_cap(self):
        assert depth_for_skill(20) == min(5, CONFIG.search.max_depth)


class TestConfigLoading:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = Config.load_from_toml(str(tmp_path / "nope.toml"))
        assert cfg.protocol.grace_ms == 250
        assert cfg.orchestrator.debounce_ms == 150

    def test_toml_overrides(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            'log_level = "DEBUG"\n'
            "[search]\nmax_depth = 3\nnot_a_field = 1\n"
            "[protocol]\ngrace_ms = 900\nengine_name = \"Test\"\n"
            "[remote]\ncommand = [\"stockfish\"]\n"
        )
        cfg = Config.load_from_toml(str(path))
        assert cfg.log_level == "DEBUG"
        assert cfg.search.max_depth == 3
        assert not hasattr(cfg.search, "not_a_field")
        assert cfg.protocol.grace_ms == 900
        assert cfg.protocol.engine_name == "Test"
        assert cfg.remote.command == ["stockfish"]
