"""Unit tests for src/rules/oracle.py"""

import pytest

from src.core.models import STARTING_FEN
from src.core.shared_types import Color
from src.rules.oracle import RulesOracle, build_uci

FOOLS_MATE = [("f2", "f3"), ("e7", "e5"), ("g2", "g4"), ("d8", "h4")]


def play(oracle: RulesOracle, moves: list[tuple[str, str]]) -> None:
    for from_square, to_square in moves:
        assert oracle.apply_move(from_square, to_square) is not None


@pytest.mark.parametrize(
    "from_square,to_square,promotion,expected",
    [
        ("e2", "e4", None, "e2e4"),
        ("E7", "E8", "Q", "e7e8q"),
        ("a2", "a1", "n", "a2a1n"),
    ],
)
def test_build_uci(from_square: str, to_square: str, promotion: str | None, expected: str) -> None:
    assert build_uci(from_square, to_square, promotion) == expected


def test_new_oracle_starts_from_initial_position() -> None:
    oracle = RulesOracle()
    assert oracle.position == STARTING_FEN
    assert oracle.side_to_move == Color.WHITE
    assert not oracle.is_terminal()
    assert len(oracle.legal_moves()) == 20


def test_apply_legal_move() -> None:
    oracle = RulesOracle()
    move = oracle.apply_move("e2", "e4")

    assert move is not None
    assert move.san == "e4"
    assert move.uci == "e2e4"
    assert move.piece == "p"
    assert move.color == Color.WHITE
    assert move.captured is None
    assert oracle.side_to_move == Color.BLACK
    assert oracle.position.startswith("rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b")


@pytest.mark.parametrize(
    "from_square,to_square,promotion",
    [
        ("e2", "e5", None),  # pawn cannot jump three squares
        ("e7", "e5", None),  # not white's piece
        ("e3", "e4", None),  # empty origin
        ("z9", "e4", None),  # not a square
        ("e2", "e4", "x"),  # unknown promotion piece
    ],
)
def test_illegal_move_leaves_position_alone(
    from_square: str, to_square: str, promotion: str | None
) -> None:
    oracle = RulesOracle()
    assert oracle.apply_move(from_square, to_square, promotion) is None
    assert oracle.position == STARTING_FEN


def test_capture_is_reported() -> None:
    oracle = RulesOracle()
    play(oracle, [("e2", "e4"), ("d7", "d5")])
    move = oracle.apply_move("e4", "d5")
    assert move is not None
    assert move.captured == "p"
    assert move.san == "exd5"


def test_en_passant_capture_is_reported() -> None:
    oracle = RulesOracle.reconstruct("4k3/8/8/3pP3/8/8/8/4K3 w - d6 0 1")
    move = oracle.apply_move("e5", "d6")
    assert move is not None
    assert move.captured == "p"
    assert move.san == "exd6"


def test_promotion_requires_a_piece() -> None:
    oracle = RulesOracle.reconstruct("8/4P3/8/8/8/8/k7/4K3 w - - 0 1")
    assert oracle.apply_move("e7", "e8") is None

    move = oracle.apply_move("e7", "e8", "n")
    assert move is not None
    assert move.promotion == "n"
    assert move.san == "e8=N"


def test_legal_move_map_groups_by_origin() -> None:
    oracle = RulesOracle()
    moves_map = oracle.legal_move_map()
    assert sorted(moves_map["e2"]) == ["e3", "e4"]
    assert sorted(moves_map["g1"]) == ["f3", "h3"]
    assert "e1" not in moves_map
    assert sum(len(destinations) for destinations in moves_map.values()) == 20


def test_promotion_destinations_are_listed_once() -> None:
    oracle = RulesOracle.reconstruct("8/4P3/8/8/8/8/k7/4K3 w - - 0 1")
    assert oracle.legal_move_map()["e7"] == ["e8"]


def test_checkmate() -> None:
    oracle = RulesOracle()
    play(oracle, FOOLS_MATE)
    assert oracle.in_check()
    assert oracle.is_checkmate()
    assert oracle.is_terminal()
    assert oracle.side_to_move == Color.WHITE
    assert oracle.legal_move_map() == {}


def test_stalemate() -> None:
    oracle = RulesOracle.reconstruct("7k/5Q2/6K1/8/8/8/8/8 b - - 0 1")
    assert oracle.is_stalemate()
    assert not oracle.in_check()
    assert oracle.is_terminal()


def test_insufficient_material() -> None:
    oracle = RulesOracle.reconstruct("8/8/8/4k3/8/8/8/4K1N1 w - - 0 1")
    assert oracle.is_insufficient_material()
    assert oracle.is_terminal()


def test_fifty_move_rule() -> None:
    oracle = RulesOracle.reconstruct("4k3/8/8/8/8/8/8/R3K3 w - - 100 80")
    assert oracle.is_draw_by_rule()
    assert oracle.is_terminal()


def test_threefold_repetition_needs_history() -> None:
    shuffle = [("g1", "f3"), ("g8", "f6"), ("f3", "g1"), ("f6", "g8")] * 2
    oracle = RulesOracle()
    play(oracle, shuffle)
    assert oracle.is_threefold_repetition()

    # same position without the move stack: no repetition can be seen
    assert not RulesOracle.reconstruct(oracle.position).is_threefold_repetition()


def test_replay_matches_live_oracle() -> None:
    live = RulesOracle()
    play(live, FOOLS_MATE[:3])
    replayed = RulesOracle.replay(["f2f3", "e7e5", "g2g4"])

    assert replayed.position == live.position
    assert replayed.pgn() == live.pgn()
    assert [m.san for m in replayed.move_history()] == ["f3", "e5", "g4"]


def test_replay_rejects_illegal_sequence() -> None:
    with pytest.raises(ValueError):
        RulesOracle.replay(["e2e4", "e4e5", "e5e6"])


def test_reconstruct_rejects_bad_fen() -> None:
    with pytest.raises(ValueError):
        RulesOracle.reconstruct("not a fen")


def test_pgn_movetext() -> None:
    oracle = RulesOracle()
    play(oracle, FOOLS_MATE)
    assert oracle.pgn().startswith("1. f3 e5 2. g4 Qh4#")
