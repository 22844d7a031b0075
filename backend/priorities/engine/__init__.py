# priorities/engine/__init__.py
"""
Prioritization Engine Package
=============================

Scoring, ordering and ranking logic behind the strategic priorities view.

Modules:
--------
- priority: Priority formula and Impact/Effort quadrants
- heuristics: Effort extraction, complexity heuristic and confidence blend
- estimator: Pluggable impact estimators (OpenAI, keyword heuristic)
- scoring: Bounded-concurrency scoring pass over a batch of tasks
- retry_queue: Async retry queue that repairs failed impact estimates
- store: Django-cache backed score and override stores
- overrides: Manual override merge and reset lifecycle
- dependencies: Kahn ordering of tasks with cycle tolerance
- ranking: Sorting strategies over merged scores
- movement: Rank movement diff and highlight tracking
- clustering: Impact/Effort clusters for the quadrant chart
- orchestrator: PrioritizationEngine facade returning immutable snapshots
- celery_tasks: Full ranking runs in a Celery worker

Data flow:
----------
    tasks + edges -> resolve_dependencies ----------------------+
    tasks -> ScoringService -> ScoreStore <- RetryQueue          |
                                  |                              v
                 OverrideManager (merge) -> rank_tasks -> RankingSnapshot
                                                   |
                                      diff_orders / cluster_tasks

Usage:
------
    from priorities.engine import get_engine

    engine = get_engine()
    snapshot = await engine.trigger_rerun("outcome-1", "Grow revenue", tasks, edges)
    engine.apply_override("outcome-1", "t-1", {"impact": 8})
    snapshot = engine.snapshot("outcome-1", SortingStrategy.QUICK_WINS)
"""

from .contracts import (
    DependencyEdge,
    ManualOverride,
    MovementRecord,
    MovementType,
    StrategicScore,
    Task,
    TaskAnnotation,
    TaskState,
)
from .dependencies import PartiallyResolved, Resolved, find_blocked_tasks, resolve_dependencies, sanitize_order
from .exceptions import (
    CycleDetected,
    EstimationExhausted,
    EstimationFailure,
    PersistenceConflict,
    PrioritizationError,
    ScoresUnavailable,
    SessionChanged,
    ValidationError,
)
from .orchestrator import PrioritizationEngine, RankingSnapshot, get_engine
from .priority import Quadrant, calculate_priority, get_quadrant
from .ranking import SortingStrategy, rank_tasks

__all__ = [
    # Core classes
    "PrioritizationEngine",
    "RankingSnapshot",
    "get_engine",
    # Data
    "DependencyEdge",
    "ManualOverride",
    "MovementRecord",
    "MovementType",
    "Quadrant",
    "SortingStrategy",
    "StrategicScore",
    "Task",
    "TaskAnnotation",
    "TaskState",
    "Resolved",
    "PartiallyResolved",
    # Functions
    "calculate_priority",
    "get_quadrant",
    "rank_tasks",
    "resolve_dependencies",
    "sanitize_order",
    "find_blocked_tasks",
    # Errors
    "PrioritizationError",
    "ValidationError",
    "EstimationFailure",
    "EstimationExhausted",
    "CycleDetected",
    "PersistenceConflict",
    "ScoresUnavailable",
    "SessionChanged",
]
