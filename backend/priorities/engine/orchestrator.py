# priorities/engine/orchestrator.py

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from django.conf import settings
from django.utils.module_loading import import_string

from .clustering import QuadrantCluster, cluster_tasks
from .contracts import (
    DependencyEdge,
    MovementRecord,
    RetryStatusEntry,
    StrategicScore,
    Task,
    TaskAnnotation,
    TaskState,
)
from .dependencies import Resolution, resolve_dependencies
from .estimator import ImpactEstimator
from .exceptions import PrioritizationError, ValidationError
from .movement import HighlightTracker, diff_orders, highlighted_ids
from .overrides import OverrideManager
from .ranking import RankedTask, SortingStrategy, rank_tasks
from .retry_queue import RetryQueue
from .scoring import ScoreSignals, ScoringService
from .store import OverrideStore, ScoreStore

# Configure logging for pipeline auditing
logger = logging.getLogger(__name__)

DEFAULT_ESTIMATOR = "priorities.engine.estimator.OpenAIImpactEstimator"


@dataclass(frozen=True)
class RankingSnapshot:
    """Immutable result of every caller action. The caller owns re-render timing."""

    outcome_id: str
    session_id: str
    strategy: SortingStrategy
    ranked: Tuple[RankedTask, ...]
    active_order: Tuple[str, ...]
    movements: Mapping[str, MovementRecord]
    highlighted: FrozenSet[str]
    clusters: Tuple[QuadrantCluster, ...]
    retry_status: Mapping[str, RetryStatusEntry]
    unavailable: FrozenSet[str]
    cycle_remainder: Tuple[str, ...]
    completed: FrozenSet[str]
    discarded: FrozenSet[str]

    @property
    def ranked_ids(self) -> List[str]:
        return [item.task_id for item in self.ranked]


@dataclass
class _OutcomeRun:
    outcome_id: str
    session_id: str
    outcome_text: Optional[str]
    tasks: Dict[str, Task]
    resolution: Resolution
    annotations: Dict[str, TaskAnnotation]
    previous_order: Optional[Tuple[str, ...]]
    previous_confidence: Dict[str, float]
    highlights: HighlightTracker
    completed: Set[str] = field(default_factory=set)
    discarded: Set[str] = field(default_factory=set)
    rejected: Set[str] = field(default_factory=set)

    @property
    def active_order(self) -> Tuple[str, ...]:
        gone = self.completed | self.discarded
        return tuple(task_id for task_id in self.resolution.order if task_id not in gone)


class PrioritizationEngine:
    """
    Command/result facade over the prioritization components.

    Every caller action (trigger_rerun, apply_override, clear_override,
    toggle_complete, toggle_discard) returns a fresh immutable value; the
    engine keeps only per-outcome run state and the shared stores.
    """

    def __init__(
        self,
        estimator: Optional[ImpactEstimator] = None,
        retry_queue: Optional[RetryQueue] = None,
        score_store: Optional[ScoreStore] = None,
        override_store: Optional[OverrideStore] = None,
        scoring: Optional[ScoringService] = None,
    ) -> None:
        self.retry_queue = retry_queue or RetryQueue()
        self.score_store = score_store or ScoreStore()
        self.overrides = OverrideManager(override_store or OverrideStore())
        self.scoring = scoring or ScoringService(
            estimator=estimator or _build_estimator(),
            retry_queue=self.retry_queue,
            store=self.score_store,
        )
        self._runs: Dict[str, _OutcomeRun] = {}

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------

    async def trigger_rerun(
        self,
        outcome_id: str,
        outcome_text: Optional[str],
        tasks: Sequence[Task],
        edges: Sequence[DependencyEdge] = (),
        annotations: Iterable[TaskAnnotation] = (),
        signals: Optional[ScoreSignals] = None,
        strategy: SortingStrategy = SortingStrategy.BALANCED,
    ) -> RankingSnapshot:
        """
        Starts a fresh ranking run for an outcome.

        In-flight retries of earlier runs are cancelled and every override of
        the outcome is cleared before anything is written for the new run.
        Returns as soon as the first scoring pass is done; retries keep
        repairing scores in the background.
        """
        session_id = uuid.uuid4().hex
        previous = self._runs.get(outcome_id)

        previous_confidence = {
            task_id: score.confidence
            for task_id, score in self.score_store.get_scores(outcome_id).items()
        }

        cancelled = self.retry_queue.cancel_outcome(outcome_id)
        self.overrides.clear_all_overrides(outcome_id)
        self.score_store.start_run(outcome_id, session_id)

        unique_tasks: Dict[str, Task] = {}
        for task in tasks:
            unique_tasks.setdefault(task.task_id, task)

        resolution = resolve_dependencies(list(unique_tasks), edges)
        supplied = {annotation.task_id: annotation for annotation in annotations}

        run = _OutcomeRun(
            outcome_id=outcome_id,
            session_id=session_id,
            outcome_text=outcome_text,
            tasks=unique_tasks,
            resolution=resolution,
            annotations=self._derive_annotations(unique_tasks, supplied, previous),
            previous_order=previous.active_order if previous else None,
            previous_confidence=previous_confidence,
            highlights=previous.highlights if previous else HighlightTracker(),
            completed={
                task_id
                for task_id in unique_tasks
                if (previous and task_id in previous.completed)
                or (task_id in supplied and supplied[task_id].state is TaskState.COMPLETED)
            },
            discarded={
                task_id
                for task_id in unique_tasks
                if task_id in supplied and supplied[task_id].state is TaskState.DISCARDED
            },
        )
        self._runs[outcome_id] = run

        logger.info(
            f"Engine: run {session_id} started for outcome {outcome_id} "
            f"({len(unique_tasks)} task(s), {cancelled} stale retry job(s) cancelled)"
        )

        result = await self.scoring.score(
            list(unique_tasks.values()),
            outcome_text,
            outcome_id=outcome_id,
            session_id=session_id,
            signals=signals,
        )
        run.rejected = set(result.rejected)

        if self._runs.get(outcome_id) is not run:
            logger.info(f"Engine: run {session_id} superseded while scoring outcome {outcome_id}")
            snapshot = self._build_snapshot(run, strategy, ai_scores=result.scores)
            return dataclasses.replace(snapshot, highlighted=frozenset())

        snapshot = self._build_snapshot(run, strategy)
        run.highlights.arm(highlighted_ids(snapshot.movements))
        logger.info(
            f"Engine: run {session_id} scored {len(result.scores)} task(s); "
            f"{len(result.failures)} awaiting retry"
        )
        return dataclasses.replace(snapshot, highlighted=frozenset(run.highlights.current()))

    def _derive_annotations(
        self,
        tasks: Mapping[str, Task],
        supplied: Mapping[str, TaskAnnotation],
        previous: Optional["_OutcomeRun"],
    ) -> Dict[str, TaskAnnotation]:
        annotations: Dict[str, TaskAnnotation] = {}
        for task_id in tasks:
            if task_id in supplied:
                annotations[task_id] = supplied[task_id]
            elif previous is not None and task_id in previous.discarded:
                annotations[task_id] = TaskAnnotation(task_id=task_id, state=TaskState.REINTRODUCED)
        return annotations

    async def wait_for_retries(self) -> None:
        await self.retry_queue.wait_idle()

    # -----------------------------------------------------------------------
    # Caller actions
    # -----------------------------------------------------------------------

    def _get_run(self, outcome_id: str) -> _OutcomeRun:
        run = self._runs.get(outcome_id)
        if run is None:
            raise PrioritizationError(f"No ranking run for outcome {outcome_id}")
        return run

    def _get_task(self, run: _OutcomeRun, task_id: str) -> Task:
        task = run.tasks.get(task_id)
        if task is None:
            raise ValidationError(f"Unknown task {task_id} for outcome {run.outcome_id}", task_id=task_id)
        return task

    def apply_override(
        self,
        outcome_id: str,
        task_id: str,
        payload: Mapping,
        session_id: Optional[str] = None,
    ) -> StrategicScore:
        run = self._get_run(outcome_id)
        self._get_task(run, task_id)

        active = self.score_store.active_session(outcome_id)
        base = self.score_store.get_score(outcome_id, task_id)

        merged = self.overrides.apply_override(
            outcome_id,
            task_id,
            base,
            payload,
            session_id=session_id or run.session_id,
            active_session=active,
        )
        run.highlights.flash(task_id)
        return merged

    def clear_override(self, outcome_id: str, task_id: str) -> Optional[StrategicScore]:
        """Drops a task's override and returns its AI score again."""
        run = self._get_run(outcome_id)
        self._get_task(run, task_id)
        self.overrides.clear_override(outcome_id, task_id)
        return self.score_store.get_score(outcome_id, task_id)

    def toggle_complete(
        self,
        outcome_id: str,
        task_id: str,
        strategy: SortingStrategy = SortingStrategy.BALANCED,
    ) -> RankingSnapshot:
        run = self._get_run(outcome_id)
        self._get_task(run, task_id)
        if task_id in run.completed:
            run.completed.discard(task_id)
        else:
            run.completed.add(task_id)
            run.discarded.discard(task_id)
        logger.info(f"Engine: task {task_id} completed={task_id in run.completed}")
        return self.snapshot(outcome_id, strategy)

    def toggle_discard(
        self,
        outcome_id: str,
        task_id: str,
        strategy: SortingStrategy = SortingStrategy.BALANCED,
    ) -> RankingSnapshot:
        run = self._get_run(outcome_id)
        self._get_task(run, task_id)
        if task_id in run.discarded:
            run.discarded.discard(task_id)
        else:
            run.discarded.add(task_id)
            run.completed.discard(task_id)
        logger.info(f"Engine: task {task_id} discarded={task_id in run.discarded}")
        return self.snapshot(outcome_id, strategy)

    def flash(self, outcome_id: str, task_id: str) -> FrozenSet[str]:
        run = self._get_run(outcome_id)
        run.highlights.flash(task_id)
        return frozenset(run.highlights.current())

    # -----------------------------------------------------------------------
    # Snapshots
    # -----------------------------------------------------------------------

    def effective_scores(self, outcome_id: str) -> Dict[str, StrategicScore]:
        run = self._get_run(outcome_id)
        return self.overrides.effective_scores(
            outcome_id, self.score_store.get_scores(outcome_id), session_id=run.session_id
        )

    def snapshot(
        self,
        outcome_id: str,
        strategy: SortingStrategy = SortingStrategy.BALANCED,
    ) -> RankingSnapshot:
        """
        Recomputes the ranked view from the shared stores.

        Synchronous and side-effect free apart from expiring highlights, so it
        is safe to call on every poll while retries are still running.
        """
        return self._build_snapshot(self._get_run(outcome_id), strategy)

    def _build_snapshot(
        self,
        run: _OutcomeRun,
        strategy: SortingStrategy,
        ai_scores: Optional[Mapping[str, StrategicScore]] = None,
    ) -> RankingSnapshot:
        outcome_id = run.outcome_id
        strategy = SortingStrategy(strategy)

        if ai_scores is None:
            ai_scores = self.score_store.get_scores(outcome_id)
        overrides = self.overrides.get_overrides(outcome_id)
        overridden = {
            task_id for task_id, override in overrides.items() if override.session_id == run.session_id
        }
        scores = self.overrides.effective_scores(outcome_id, ai_scores, session_id=run.session_id)

        retry_status = self.retry_queue.snapshot(run.session_id)
        exhausted = {task_id for task_id, entry in retry_status.items() if entry.exhausted}
        unavailable = exhausted | (run.rejected - set(scores))

        active_order = run.active_order
        active = set(active_order)
        active_tasks = [run.tasks[task_id] for task_id in active_order]

        ranked = rank_tasks(
            active_tasks,
            scores,
            strategy,
            excluded=unavailable,
            overridden=overridden,
        )

        annotations = self._current_annotations(run, ai_scores, overridden)
        movements = diff_orders(run.previous_order, active_order, annotations.values())
        clusters = cluster_tasks((item.task_id, item.score) for item in ranked)

        return RankingSnapshot(
            outcome_id=outcome_id,
            session_id=run.session_id,
            strategy=strategy,
            ranked=tuple(ranked),
            active_order=active_order,
            movements=movements,
            highlighted=frozenset(run.highlights.current() & active),
            clusters=tuple(clusters),
            retry_status=retry_status,
            unavailable=frozenset(unavailable),
            cycle_remainder=tuple(getattr(run.resolution, "remainder", ())),
            completed=frozenset(run.completed),
            discarded=frozenset(run.discarded),
        )

    def _current_annotations(
        self,
        run: _OutcomeRun,
        ai_scores: Mapping[str, StrategicScore],
        overridden: Set[str],
    ) -> Dict[str, TaskAnnotation]:
        annotations: Dict[str, TaskAnnotation] = {}
        for task_id in run.active_order:
            annotation = run.annotations.get(task_id) or TaskAnnotation(task_id=task_id)

            if annotation.confidence_delta is None:
                score = ai_scores.get(task_id)
                before = run.previous_confidence.get(task_id)
                if score is not None and before is not None:
                    annotation = dataclasses.replace(
                        annotation, confidence_delta=round(score.confidence - before, 3)
                    )

            if task_id in overridden and not annotation.manual_override:
                annotation = dataclasses.replace(annotation, manual_override=True)

            annotations[task_id] = annotation
        return annotations


def _build_estimator() -> ImpactEstimator:
    estimator_path = getattr(settings, "STRATEGIC_IMPACT_ESTIMATOR", None) or DEFAULT_ESTIMATOR
    estimator_cls = import_string(estimator_path)
    return estimator_cls()


_engine: Optional[PrioritizationEngine] = None


def get_engine() -> PrioritizationEngine:
    """Process-wide engine built from settings."""
    global _engine
    if _engine is None:
        _engine = PrioritizationEngine()
    return _engine


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.retry_queue.reset()
    _engine = None
