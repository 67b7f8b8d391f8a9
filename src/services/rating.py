"""Symmetric Elo rating update."""

from typing import Optional

from src.core.shared_types import Color, GameResult

DEFAULT_K_FACTOR = 32


def expected_score(rating: int, opponent_rating: int) -> float:
    return 1 / (1 + 10 ** ((opponent_rating - rating) / 400))


def scores_for(result: GameResult) -> Optional[dict[Color, float]]:
    """Actual scores per color. None when the result does not rate (e.g. unresolved)."""
    if result == GameResult.WHITE_WINS:
        return {Color.WHITE: 1.0, Color.BLACK: 0.0}
    if result == GameResult.BLACK_WINS:
        return {Color.WHITE: 0.0, Color.BLACK: 1.0}
    if result == GameResult.DRAW:
        return {Color.WHITE: 0.5, Color.BLACK: 0.5}
    return None


def updated_ratings(
    white_rating: int,
    black_rating: int,
    result: GameResult,
    k_factor: int = DEFAULT_K_FACTOR,
) -> Optional[dict[Color, int]]:
    """
    New ratings of both players after one game.
    ----
    new = round(old + K * (score - expected))
    """
    scores = scores_for(result)
    if scores is None:
        return None

    expected_white = expected_score(white_rating, black_rating)
    expected_black = expected_score(black_rating, white_rating)
    return {
        Color.WHITE: round(white_rating + k_factor * (scores[Color.WHITE] - expected_white)),
        Color.BLACK: round(black_rating + k_factor * (scores[Color.BLACK] - expected_black)),
    }
