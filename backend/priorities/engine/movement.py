# priorities/engine/movement.py
"""
Movement Diff Engine
====================

Classifies how each task moved between two successive ranked orders.

Rules, first match wins:
    1. annotation.manual_override                          -> manual
    2. absent from the previous order, state reintroduced  -> reintroduced
    3. absent from the previous order                      -> new
    4. confidence_delta <= -0.15                           -> confidence_drop(|delta|)
    5. rank comparison                                     -> none | up(n) | down(n)

Every task classified as something other than `none` is highlighted for a
short display window. HighlightTracker keeps that transient set; the caller
owns rendering and polling.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence, Set

from .contracts import MovementRecord, MovementType, TaskAnnotation, TaskState

logger = logging.getLogger(__name__)

CONFIDENCE_DROP_THRESHOLD = -0.15
# Absorbs float noise so a delta of exactly -0.15 always counts as a drop
_EPSILON = 1e-9

HIGHLIGHT_WINDOW_SECONDS = 1.8
FLASH_WINDOW_SECONDS = 1.2


def classify_movement(
    task_id: str,
    previous_index: Optional[int],
    current_index: int,
    annotation: Optional[TaskAnnotation],
) -> MovementRecord:
    if annotation is not None and annotation.manual_override:
        return MovementRecord(MovementType.MANUAL)

    if previous_index is None:
        if annotation is not None and annotation.state is TaskState.REINTRODUCED:
            return MovementRecord(MovementType.REINTRODUCED)
        return MovementRecord(MovementType.NEW)

    delta = annotation.confidence_delta if annotation is not None else None
    if delta is not None and delta <= CONFIDENCE_DROP_THRESHOLD + _EPSILON:
        return MovementRecord(MovementType.CONFIDENCE_DROP, delta=round(abs(delta), 3))

    if previous_index == current_index:
        return MovementRecord(MovementType.NONE)
    if previous_index > current_index:
        return MovementRecord(MovementType.UP, delta=previous_index - current_index)
    return MovementRecord(MovementType.DOWN, delta=current_index - previous_index)


def diff_orders(
    previous_order: Optional[Sequence[str]],
    current_order: Sequence[str],
    annotations: Optional[Iterable[TaskAnnotation]] = None,
) -> Dict[str, MovementRecord]:
    """
    Movement of every task in current_order relative to previous_order.

    A previous_order of None (first run) classifies every task as new,
    reintroduced or manual.
    """
    by_task: Mapping[str, TaskAnnotation] = {a.task_id: a for a in annotations or ()}
    previous_index: Dict[str, int] = {}
    for index, task_id in enumerate(previous_order or ()):
        previous_index.setdefault(task_id, index)

    movements: Dict[str, MovementRecord] = {}
    for index, task_id in enumerate(current_order):
        if task_id in movements:
            continue
        movements[task_id] = classify_movement(
            task_id, previous_index.get(task_id), index, by_task.get(task_id)
        )
    return movements


def highlighted_ids(movements: Mapping[str, MovementRecord]) -> Set[str]:
    return {task_id for task_id, record in movements.items() if record.is_highlighted}


class HighlightTracker:
    """
    Transient highlight set.

    arm() replaces the set after each diff and keeps it for 1.8 seconds;
    flash() re-highlights a single task for 1.2 seconds, for example after
    the caller scrolls to it.
    """

    def __init__(
        self,
        window: float = HIGHLIGHT_WINDOW_SECONDS,
        flash_window: float = FLASH_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.flash_window = flash_window
        self._clock = clock
        self._armed: Set[str] = set()
        self._armed_until = 0.0
        self._flashes: Dict[str, float] = {}

    def arm(self, task_ids: Iterable[str]) -> Set[str]:
        self._armed = set(task_ids)
        self._armed_until = self._clock() + self.window if self._armed else 0.0
        return set(self._armed)

    def flash(self, task_id: str) -> None:
        self._flashes[task_id] = self._clock() + self.flash_window

    def clear(self) -> None:
        self._armed = set()
        self._armed_until = 0.0
        self._flashes.clear()

    def current(self) -> Set[str]:
        now = self._clock()
        active = set(self._armed) if now < self._armed_until else set()
        for task_id, until in list(self._flashes.items()):
            if now < until:
                active.add(task_id)
            else:
                del self._flashes[task_id]
        return active
