"""
Rating Aggregation Engine

Computes per-user ranking scores from solve history and produces the top-N
leaderboard. A solved order contributes ``weight(difficulty_group) /
max(1, exec_time)``, so harder tasks solved faster score higher. Scores are
recomputed from the store on every request and never cached.
"""

from typing import Callable, Dict, Iterable, List, Optional, Union
from dataclasses import dataclass
from datetime import datetime
import logging

from .database import OrderDatabase
from .exceptions import NotFound
from .models import RatingEntry, SolveRecord

logger = logging.getLogger(__name__)

WeightStrategy = Callable[[str], float]

# Scores equal to this many decimals tie, so rounding noise cannot skip the tie-breaks
SCORE_PRECISION = 12


class DifficultyWeights:
    """
    Default weight strategy for difficulty groups.

    Numeric group labels weigh their own value ("3" -> 3.0). Named labels are
    looked up case-insensitively in ``weights``. Anything else, including
    non-positive numbers, weighs ``default_weight``.
    """

    DEFAULT_WEIGHTS = {
        'EASY': 1.0,
        'MEDIUM': 2.0,
        'HARD': 3.0,
        'EXPERT': 4.0,
    }

    def __init__(self, weights: Optional[Dict[str, float]] = None, default_weight: float = 1.0):
        """
        Args:
            weights: Overrides for named or numeric groups, merged over the defaults
            default_weight: Weight for unknown groups
        """
        merged = dict(self.DEFAULT_WEIGHTS)
        if weights:
            for group, weight in weights.items():
                if weight < 0:
                    raise ValueError(f"Weight for difficulty group '{group}' must be >= 0")
                merged[str(group).strip().upper()] = float(weight)
        self.weights = merged
        self.default_weight = float(default_weight)

    def __call__(self, difficulty_group: Union[str, int, float]) -> float:
        key = str(difficulty_group).strip().upper()
        if key in self.weights:
            return self.weights[key]
        try:
            value = float(key)
        except ValueError:
            return self.default_weight
        return value if value > 0 else self.default_weight


@dataclass
class _Accumulator:
    """Running totals for one user while scoring."""

    user_id: int
    login: str
    score: float = 0.0
    solved_count: int = 0
    total_exec_time: int = 0
    first_solved_at: Optional[datetime] = None

    def add(self, contribution: float, record: SolveRecord) -> None:
        self.score += contribution
        self.solved_count += 1
        self.total_exec_time += record.exec_time
        if self.first_solved_at is None or record.solved_at < self.first_solved_at:
            self.first_solved_at = record.solved_at

    def to_entry(self) -> RatingEntry:
        average = self.total_exec_time / self.solved_count if self.solved_count else None
        return RatingEntry(
            user_id=self.user_id,
            login=self.login,
            score=self.score,
            solved_count=self.solved_count,
            average_exec_time=average,
            first_solved_at=self.first_solved_at,
        )


def ranking_key(entry: RatingEntry):
    """Sort key: score desc, solved count desc, earliest solve asc, user id asc."""
    first_solved = entry.first_solved_at.timestamp() if entry.first_solved_at else float('inf')
    return (-round(entry.score, SCORE_PRECISION), -entry.solved_count, first_solved, entry.user_id)


class RatingAggregator:
    """
    Aggregates solve history into ratings and leaderboards.

    Stateless apart from its configuration, so a single instance can be
    shared across threads.
    """

    def __init__(self, store: OrderDatabase, weight_strategy: Optional[WeightStrategy] = None):
        """
        Args:
            store: Order store to read solve history from
            weight_strategy: Maps a difficulty group to a weight, defaults to DifficultyWeights()
        """
        self.store = store
        self.weight_strategy = weight_strategy or DifficultyWeights()

    def contribution(self, record: SolveRecord) -> float:
        """Score contributed by one solved order."""
        return self.weight_strategy(record.difficulty_group) / max(1, record.exec_time)

    def aggregate(self, records: Iterable[SolveRecord]) -> List[RatingEntry]:
        """
        Fold solve records into ranked entries.

        Pure function of ``records``; the result is fully ordered by
        ``ranking_key``.
        """
        totals: Dict[int, _Accumulator] = {}
        for record in records:
            acc = totals.get(record.user_id)
            if acc is None:
                acc = totals[record.user_id] = _Accumulator(record.user_id, record.login)
            acc.add(self.contribution(record), record)

        entries = [acc.to_entry() for acc in totals.values()]
        entries.sort(key=ranking_key)
        return entries

    def top_users(self, n: int) -> List[RatingEntry]:
        """
        Get the top ``n`` users by score.

        Returns:
            Up to ``n`` entries, best first. Empty when nobody has solved
            anything or ``n`` is not positive.
        """
        if n <= 0:
            return []

        entries = self.aggregate(self.store.list_solve_history())
        logger.debug(f"Ranked {len(entries)} users with solved orders")
        return entries[:n]

    def rating_for_user(self, user_id: int) -> RatingEntry:
        """
        Get a single user's rating entry.

        Users without solved orders get a zero entry.

        Raises:
            NotFound: If the user does not exist
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)

        entries = self.aggregate(self.store.list_solve_history(user_id=user_id))
        if entries:
            return entries[0]
        return RatingEntry(user_id=user.user_id, login=user.login, score=0.0, solved_count=0)
