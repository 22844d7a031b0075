# priorities/engine/exceptions.py
"""
Engine Exceptions
=================

Error taxonomy for the prioritization engine.

Only structural caller mistakes are raised out of the engine. Per-task
conditions (a failed estimate, a rejected score, a dependency cycle, a lost
write) are absorbed by the component that detects them and reported in its
result object instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class PrioritizationError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(PrioritizationError, ValueError):
    """Raised when score input or a caller payload is out of its declared range."""

    def __init__(
        self,
        message: str,
        task_id: Optional[str] = None,
        errors: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.errors = errors or {}


class EstimationFailure(PrioritizationError):
    """Transient failure of the impact estimator. Retryable."""

    def __init__(self, message: str, error_code: str = "ESTIMATION_FAILED") -> None:
        super().__init__(message)
        self.error_code = error_code


class EstimationExhausted(PrioritizationError):
    """Terminal failure after the retry queue used up every attempt."""

    def __init__(self, task_id: str, attempts: int, last_error: Optional[str] = None) -> None:
        super().__init__(
            f"Impact estimation for task {task_id} exhausted after {attempts} attempts"
        )
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class CycleDetected(PrioritizationError):
    """
    Dependency cycle found while ordering tasks.

    Never raised by the resolver; carried on a PartiallyResolved result so the
    caller can decide whether to surface it.
    """

    def __init__(self, remainder: Sequence[str]) -> None:
        super().__init__(
            f"Dependency cycle detected; {len(remainder)} task(s) appended in original order"
        )
        self.remainder = tuple(remainder)


class PersistenceConflict(PrioritizationError):
    """A store write lost last-write-wins or targeted a superseded run."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Write for task {task_id} discarded: {reason}")
        self.task_id = task_id
        self.reason = reason


class ScoresUnavailable(PrioritizationError):
    """An override was requested for a task that has no AI score yet."""

    def __init__(self, task_id: str) -> None:
        super().__init__(
            f"Strategic scores are required before overrides can be applied (task {task_id})"
        )
        self.task_id = task_id


class SessionChanged(PrioritizationError):
    """An override targeted a ranking run that has since been superseded."""

    def __init__(self, expected: str, active: Optional[str]) -> None:
        super().__init__(
            "Prioritization restarted. Wait for the new results before overriding scores."
        )
        self.expected = expected
        self.active = active
