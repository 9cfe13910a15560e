from __future__ import annotations
import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Evaluation:
    passed: bool
    meets_games: bool
    meets_win: bool


def _finite(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


class EligibilityEvaluator:
    """Thresholds check. Missing or non-finite numbers fail, they never raise."""

    def __init__(self, min_games: int = 100, min_win_pct: float = 80.0):
        self.min_games = min_games
        self.min_win_pct = min_win_pct

    def evaluate(self, stats) -> Evaluation:
        games = _finite(getattr(stats, "games_played", None))
        win = _finite(getattr(stats, "win_pct", None))
        meets_games = games is not None and games >= self.min_games
        meets_win = win is not None and win >= self.min_win_pct
        return Evaluation(passed=meets_games and meets_win, meets_games=meets_games, meets_win=meets_win)
