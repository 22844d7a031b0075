# priorities/engine/scoring.py
"""
Scoring Service
===============

Computes Impact, Effort, Confidence (and the derived Priority) for a batch of
tasks against an outcome.

Per task:
    1. Effort comes from an explicit hint in the text, else the complexity
       heuristic. It never fails.
    2. Impact comes from the estimator collaborator, bounded by a
       caller-enforced timeout.
         - estimate returned          -> used as is
         - None / estimator disabled  -> keyword heuristic
         - call raised or timed out   -> task reported in `failures` and
                                         handed to the RetryQueue
    3. Confidence blends similarity, dependency certainty and history.

The batch runs with bounded concurrency and returns as soon as every first
attempt has finished; retries continue in the background.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from django.conf import settings

from .contracts import EffortEstimate, ImpactEstimate, ScoreReasoning, StrategicScore, Task
from .estimator import HeuristicImpactEstimator, ImpactEstimator
from .exceptions import EstimationFailure, ValidationError
from .heuristics import calculate_confidence, estimate_effort
from .retry_queue import RetryQueue
from .store import ScoreStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class ScoreSignals:
    """Optional per-task confidence inputs supplied by the caller."""

    similarity: Mapping[str, float] = field(default_factory=dict)
    dependency: Mapping[str, float] = field(default_factory=dict)
    history: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoringResult:
    scores: Dict[str, StrategicScore]
    failures: List[str]
    rejected: Dict[str, ValidationError]


class ScoringService:
    """
    Scores tasks and routes estimator failures to the retry queue.

    Args:
        estimator: Impact estimator collaborator.
        retry_queue: Queue that owns failed estimates.
        store: Shared score store; successful scores are merged into it.
        batch_size: Maximum concurrent estimator calls.
        timeout: Seconds before an estimator call is treated as failed.
    """

    def __init__(
        self,
        estimator: ImpactEstimator,
        retry_queue: RetryQueue,
        store: Optional[ScoreStore] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.estimator = estimator
        self.retry_queue = retry_queue
        self.store = store
        self.heuristic = HeuristicImpactEstimator()
        self.batch_size = batch_size or getattr(settings, "STRATEGIC_SCORING_BATCH_SIZE", DEFAULT_BATCH_SIZE)
        self.timeout = timeout or getattr(settings, "STRATEGIC_SCORING_TIMEOUT", DEFAULT_TIMEOUT)

    async def score(
        self,
        tasks: Sequence[Task],
        outcome_text: Optional[str],
        *,
        outcome_id: str,
        session_id: str,
        signals: Optional[ScoreSignals] = None,
    ) -> ScoringResult:
        signals = signals or ScoreSignals()
        semaphore = asyncio.Semaphore(self.batch_size)

        scores: Dict[str, StrategicScore] = {}
        failures: List[str] = []
        rejected: Dict[str, ValidationError] = {}

        async def _score_one(task: Task) -> None:
            async with semaphore:
                effort = estimate_effort(task)
                try:
                    impact = await self._estimate_impact(task, outcome_text)
                    scores[task.task_id] = self.build_score(task, impact, effort, signals)
                except EstimationFailure as exc:
                    logger.warning(
                        f"ScoringService: impact estimation failed for task {task.task_id} "
                        f"[{exc.error_code}]: {exc}"
                    )
                    failures.append(task.task_id)
                    self._enqueue_retry(task, outcome_text, effort, signals, outcome_id, session_id)
                except ValidationError as exc:
                    logger.warning(f"ScoringService: rejected score for task {task.task_id}: {exc}")
                    exc.task_id = task.task_id
                    rejected[task.task_id] = exc

        await asyncio.gather(*(_score_one(task) for task in tasks))

        if scores and self.store is not None:
            self.store.merge(outcome_id, scores, session_id)

        logger.info(
            f"ScoringService: scored {len(scores)}/{len(tasks)} task(s) for outcome {outcome_id} "
            f"({len(failures)} queued for retry, {len(rejected)} rejected)"
        )
        return ScoringResult(scores=scores, failures=failures, rejected=rejected)

    async def _estimate_impact(self, task: Task, outcome_text: Optional[str]) -> ImpactEstimate:
        """
        One estimator call under the timeout.

        Raises:
            EstimationFailure: The call raised or timed out.
            ValidationError: The estimator produced an out-of-range estimate.
        """
        if not getattr(self.estimator, "is_configured", True):
            return self.heuristic.estimate_sync(task, outcome_text)

        try:
            estimate = await asyncio.wait_for(
                self.estimator.estimate(task, outcome_text), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise EstimationFailure(
                f"Estimator did not answer within {self.timeout}s", "TIMEOUT"
            ) from exc
        except (EstimationFailure, ValidationError):
            raise
        except Exception as exc:
            logger.exception(f"ScoringService: unexpected estimator error for task {task.task_id}")
            raise EstimationFailure(
                f"Unexpected error: {type(exc).__name__}", "UNEXPECTED_ERROR"
            ) from exc

        if estimate is None:
            return self.heuristic.estimate_sync(task, outcome_text)
        return estimate

    def build_score(
        self,
        task: Task,
        impact: ImpactEstimate,
        effort: EffortEstimate,
        signals: ScoreSignals,
    ) -> StrategicScore:
        similarity = signals.similarity.get(task.task_id, impact.confidence)
        confidence, breakdown = calculate_confidence(
            similarity=similarity,
            dependency=signals.dependency.get(task.task_id),
            history=signals.history.get(task.task_id),
        )
        return StrategicScore(
            task_id=task.task_id,
            impact=impact.impact,
            effort=effort.effort,
            confidence=confidence,
            confidence_breakdown=breakdown,
            reasoning=ScoreReasoning(
                impact_keywords=impact.keywords,
                effort_source=effort.source,
                effort_hint=effort.hint,
                complexity_modifiers=effort.complexity_modifiers,
                impact_reasoning=impact.reasoning,
            ),
        )

    def _enqueue_retry(
        self,
        task: Task,
        outcome_text: Optional[str],
        effort: EffortEstimate,
        signals: ScoreSignals,
        outcome_id: str,
        session_id: str,
    ) -> None:
        if self.store is not None and self.store.active_session(outcome_id) != session_id:
            logger.info(
                f"ScoringService: run {session_id} superseded; no retry for task {task.task_id}"
            )
            return

        async def estimate_fn() -> ImpactEstimate:
            return await self._estimate_impact(task, outcome_text)

        def on_success(estimate: ImpactEstimate) -> None:
            score = self.build_score(task, estimate, effort, signals)
            if self.store is not None:
                report = self.store.merge(outcome_id, {task.task_id: score}, session_id)
                if report.has_conflicts:
                    logger.info(f"ScoringService: late score for task {task.task_id} discarded")

        def on_failure(error: Exception, attempts: int, last_error: Optional[str]) -> None:
            logger.warning(
                f"ScoringService: scores unavailable for task {task.task_id} "
                f"after {attempts} attempt(s): {last_error}"
            )

        self.retry_queue.enqueue(
            task_id=task.task_id,
            session_id=session_id,
            outcome_id=outcome_id,
            estimate_fn=estimate_fn,
            on_success=on_success,
            on_failure=on_failure,
            cache_key=f"{task.task_id}:{outcome_text}" if outcome_text else task.task_id,
        )
