# priorities/engine/celery_tasks.py

import asyncio
import logging
from typing import Any, Dict, List, Optional

from celery import shared_task

from .orchestrator import get_engine
from .ranking import SortingStrategy
from .scoring import ScoreSignals

# Configure logging for background worker monitoring
logger = logging.getLogger(__name__)


def _validated(serializer_cls, payload: Optional[List[Dict[str, Any]]]):
    serializer = serializer_cls(data=payload or [], many=True)
    serializer.is_valid(raise_exception=True)
    return serializer.save()


@shared_task(
    bind=True,
    max_retries=0,
    time_limit=120,         # Hard limit for the task process
    soft_time_limit=110,    # Soft limit to allow cleanup
)
def run_strategic_ranking(
    self,
    outcome_id: str,
    outcome_text: Optional[str],
    tasks: List[Dict[str, Any]],
    edges: Optional[List[Dict[str, Any]]] = None,
    annotations: Optional[List[Dict[str, Any]]] = None,
    signals: Optional[Dict[str, Dict[str, float]]] = None,
    strategy: str = SortingStrategy.BALANCED.value,
) -> Dict[str, Any]:
    """
    Worker: validate raw payloads, run a full ranking for the outcome, wait for
    the retry queue to settle and return the serialized snapshot.

    Retries of individual estimates are owned by the engine's RetryQueue, so
    the Celery task itself is never retried.
    """
    from ..serializers import (
        DependencyEdgeSerializer,
        RankingSnapshotSerializer,
        TaskAnnotationSerializer,
        TaskInputSerializer,
    )

    logger.info(f"Strategic ranking started for outcome {outcome_id} ({len(tasks or [])} task(s))")

    task_objects = _validated(TaskInputSerializer, tasks)
    edge_objects = _validated(DependencyEdgeSerializer, edges)
    annotation_objects = _validated(TaskAnnotationSerializer, annotations)
    score_signals = ScoreSignals(**(signals or {}))
    strategy = SortingStrategy(strategy)

    engine = get_engine()

    async def _run():
        await engine.trigger_rerun(
            outcome_id,
            outcome_text,
            task_objects,
            edges=edge_objects,
            annotations=annotation_objects,
            signals=score_signals,
            strategy=strategy,
        )
        await engine.wait_for_retries()
        return engine.snapshot(outcome_id, strategy)

    snapshot = asyncio.run(_run())

    logger.info(
        f"Strategic ranking finished for outcome {outcome_id}: "
        f"{len(snapshot.ranked)} ranked, {len(snapshot.unavailable)} unavailable"
    )
    return RankingSnapshotSerializer(snapshot).data
