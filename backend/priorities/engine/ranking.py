# priorities/engine/ranking.py

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Collection, Dict, List, Mapping, Optional, Sequence

from .contracts import StrategicScore, Task
from .priority import Quadrant

logger = logging.getLogger(__name__)

URGENT_REGEX = re.compile(r"\b(?:urgent|critical|blocking)\b", re.IGNORECASE)
URGENT_MULTIPLIER = 2.0

QUICK_WIN_MAX_EFFORT = 8.0
STRATEGIC_BET_MIN_IMPACT = 7.0
STRATEGIC_BET_MIN_EFFORT = 40.0


class SortingStrategy(str, Enum):
    BALANCED = "balanced"
    QUICK_WINS = "quick_wins"
    STRATEGIC_BETS = "strategic_bets"
    URGENT = "urgent"
    FOCUS_MODE = "focus_mode"


@dataclass(frozen=True)
class StrategyConfig:
    """
    A (filter, sort key) pair over merged scores.

    sort_key returns the value ranked descending; ties always fall back to
    task id ascending.
    """

    label: str
    description: str
    sort_key: Callable[[Task, StrategicScore], float]
    filter: Optional[Callable[[Task, StrategicScore], bool]] = None


@dataclass(frozen=True)
class RankedTask:
    task: Task
    score: StrategicScore
    rank: int
    sort_score: float
    has_manual_override: bool = False

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def quadrant(self) -> Quadrant:
        return self.score.quadrant


def is_urgent(task: Task) -> bool:
    return bool(URGENT_REGEX.search(task.text or ""))


def _urgent_priority(task: Task, score: StrategicScore) -> float:
    return score.priority * (URGENT_MULTIPLIER if is_urgent(task) else 1.0)


STRATEGY_CONFIGS: Dict[SortingStrategy, StrategyConfig] = {
    SortingStrategy.BALANCED: StrategyConfig(
        label="Balanced",
        description="All tasks sorted by priority score",
        sort_key=lambda task, score: score.priority,
    ),
    SortingStrategy.QUICK_WINS: StrategyConfig(
        label="Quick Wins",
        description="Tasks of 8h or less, ranked by impact x confidence",
        filter=lambda task, score: score.effort <= QUICK_WIN_MAX_EFFORT,
        sort_key=lambda task, score: score.impact * score.confidence,
    ),
    SortingStrategy.STRATEGIC_BETS: StrategyConfig(
        label="Strategic Bets",
        description="High-impact work that needs more than a week",
        filter=lambda task, score: (
            score.impact >= STRATEGIC_BET_MIN_IMPACT and score.effort > STRATEGIC_BET_MIN_EFFORT
        ),
        sort_key=lambda task, score: score.impact,
    ),
    SortingStrategy.URGENT: StrategyConfig(
        label="Urgent",
        description="Tasks mentioning urgent or blocking keywords (2x priority boost)",
        sort_key=_urgent_priority,
    ),
    SortingStrategy.FOCUS_MODE: StrategyConfig(
        label="Focus Mode (Recommended)",
        description="High-leverage work only (Quick Wins + Strategic Bets)",
        filter=lambda task, score: score.quadrant in (Quadrant.QUICK_WIN, Quadrant.STRATEGIC_BET),
        sort_key=lambda task, score: score.priority,
    ),
}


def rank_tasks(
    tasks: Sequence[Task],
    scores: Mapping[str, StrategicScore],
    strategy: SortingStrategy = SortingStrategy.BALANCED,
    excluded: Collection[str] = (),
    overridden: Collection[str] = (),
) -> List[RankedTask]:
    """
    Ranks merged scores with one strategy.

    Tasks without a score and tasks in `excluded` (exhausted retries) never
    appear, whatever the strategy. The input order is not consulted; every
    strategy is an independent re-sort of the same scored set.
    """
    config = STRATEGY_CONFIGS[SortingStrategy(strategy)]
    excluded = set(excluded)
    overridden = set(overridden)

    candidates = []
    seen = set()
    for task in tasks:
        score = scores.get(task.task_id)
        if score is None or task.task_id in excluded or task.task_id in seen:
            continue
        seen.add(task.task_id)
        if config.filter is not None and not config.filter(task, score):
            continue
        candidates.append((config.sort_key(task, score), task, score))

    candidates.sort(key=lambda item: (-item[0], item[1].task_id))

    return [
        RankedTask(
            task=task,
            score=score,
            rank=position,
            sort_score=sort_score,
            has_manual_override=task.task_id in overridden,
        )
        for position, (sort_score, task, score) in enumerate(candidates, start=1)
    ]
