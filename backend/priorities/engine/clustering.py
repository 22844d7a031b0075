# priorities/engine/clustering.py

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from .contracts import StrategicScore
from .priority import QUADRANT_CONFIGS, Quadrant, get_quadrant

IMPACT_BAND = 0.5
# ~20% effort band on a log scale
LOG_EFFORT_BAND = math.log(1.2)
MIN_CONFIDENCE = 0.05


@dataclass
class QuadrantCluster:
    primary_task_id: str
    impact: float
    effort: float
    confidence: float
    quadrant: Quadrant
    task_ids: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.task_ids)

    @property
    def log_effort(self) -> float:
        return math.log(max(self.effort, 1.0))

    @property
    def label(self) -> str:
        if self.size > 1:
            return f"{self.size} tasks"
        return QUADRANT_CONFIGS[self.quadrant]["label"]

    def absorb(self, task_id: str, impact: float, effort: float, confidence: float) -> None:
        count = self.size
        self.impact = (self.impact * count + impact) / (count + 1)
        self.effort = (self.effort * count + effort) / (count + 1)
        self.confidence = (self.confidence * count + confidence) / (count + 1)
        self.task_ids.append(task_id)


def cluster_tasks(scored: Iterable[Tuple[str, StrategicScore]]) -> List[QuadrantCluster]:
    """
    Greedy single pass over (task_id, score) pairs.

    A task joins the first cluster within 0.5 impact and ln(1.2) log-effort of
    it; cluster coordinates are running averages. The cluster quadrant is the
    quadrant of its primary (first) task.
    """
    clusters: List[QuadrantCluster] = []

    for task_id, score in scored:
        log_effort = math.log(max(score.effort, 1.0))
        confidence = max(score.confidence, MIN_CONFIDENCE)

        match = next(
            (
                cluster
                for cluster in clusters
                if abs(cluster.impact - score.impact) <= IMPACT_BAND
                and abs(cluster.log_effort - log_effort) <= LOG_EFFORT_BAND
            ),
            None,
        )
        if match is not None:
            match.absorb(task_id, score.impact, score.effort, confidence)
            continue

        clusters.append(
            QuadrantCluster(
                primary_task_id=task_id,
                impact=score.impact,
                effort=score.effort,
                confidence=confidence,
                quadrant=get_quadrant(score.impact, score.effort),
                task_ids=[task_id],
            )
        )

    return clusters
