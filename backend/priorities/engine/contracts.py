# priorities/engine/contracts.py
"""
Engine Contracts
================

Plain data structures exchanged between the engine components and the caller.

Everything here is a frozen dataclass except RetryJob, which is owned and
mutated by the RetryQueue. Range checks run in __post_init__ and raise the
engine ValidationError, so an out-of-range value can never enter the score
store or the ranking.

Priority is intentionally not a field of StrategicScore: it is derived from
impact, effort and confidence on every read.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .exceptions import ValidationError
from .priority import Quadrant, calculate_priority, get_quadrant

IMPACT_RANGE = (0.0, 10.0)
EFFORT_RANGE = (0.5, 160.0)
CONFIDENCE_RANGE = (0.0, 1.0)
MAX_REASON_LENGTH = 500


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TaskState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    MANUAL_OVERRIDE = "manual_override"
    REINTRODUCED = "reintroduced"


class RelationshipType(str, Enum):
    PREREQUISITE = "prerequisite"
    BLOCKS = "blocks"
    RELATED = "related"


class DetectionMethod(str, Enum):
    INFERRED = "inferred"
    STORED = "stored"


class EffortSource(str, Enum):
    EXTRACTED = "extracted"
    HEURISTIC = "heuristic"


class RetryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MovementType(str, Enum):
    UP = "up"
    DOWN = "down"
    NEW = "new"
    REINTRODUCED = "reintroduced"
    CONFIDENCE_DROP = "confidence_drop"
    MANUAL = "manual"
    NONE = "none"


def _check_range(name: str, value: Optional[float], bounds: Tuple[float, float], task_id=None):
    if value is None:
        return
    low, high = bounds
    if not (low <= value <= high):
        raise ValidationError(
            f"{name} must be between {low} and {high}, got {value}",
            task_id=task_id,
            errors={name: [f"Ensure this value is between {low} and {high}."]},
        )


def _parse_timestamp(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    parsed = parse_datetime(str(value)) if value else None
    if parsed is None:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    return parsed


# ---------------------------------------------------------------------------
# Tasks and estimates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    """A candidate task. Owned by the caller; the engine never mutates it."""

    task_id: str
    text: str
    document_id: Optional[str] = None


@dataclass(frozen=True)
class ImpactEstimate:
    impact: float
    reasoning: str
    keywords: Tuple[str, ...] = ()
    confidence: float = 0.0

    def __post_init__(self) -> None:
        _check_range("impact", self.impact, IMPACT_RANGE)
        _check_range("confidence", self.confidence, CONFIDENCE_RANGE)


@dataclass(frozen=True)
class EffortEstimate:
    effort: float
    source: EffortSource
    hint: Optional[str] = None
    complexity_modifiers: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_range("effort", self.effort, EFFORT_RANGE)


@dataclass(frozen=True)
class ConfidenceBreakdown:
    similarity: float
    dependency: float
    history: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "similarity": self.similarity,
            "dependency": self.dependency,
            "history": self.history,
        }


@dataclass(frozen=True)
class ScoreReasoning:
    impact_keywords: Tuple[str, ...] = ()
    effort_source: EffortSource = EffortSource.HEURISTIC
    effort_hint: Optional[str] = None
    complexity_modifiers: Tuple[str, ...] = ()
    impact_reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "impact_keywords": list(self.impact_keywords),
            "effort_source": self.effort_source.value,
            "effort_hint": self.effort_hint,
            "complexity_modifiers": list(self.complexity_modifiers),
            "impact_reasoning": self.impact_reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreReasoning":
        return cls(
            impact_keywords=tuple(data.get("impact_keywords") or ()),
            effort_source=EffortSource(data.get("effort_source", EffortSource.HEURISTIC.value)),
            effort_hint=data.get("effort_hint"),
            complexity_modifiers=tuple(data.get("complexity_modifiers") or ()),
            impact_reasoning=data.get("impact_reasoning") or "",
        )


# ---------------------------------------------------------------------------
# Scores and overrides
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StrategicScore:
    """
    Impact/Effort/Confidence estimate for one task in one ranking run.

    Attributes:
        impact: 0..10 estimate of how much the task advances the outcome.
        effort: Estimated hours, 0.5..160.
        confidence: 0..1 certainty that the task helps the outcome.
        reasoning: Keywords and the provenance of the effort figure.
        scored_at: Write timestamp, used for last-write-wins merging.
        task_id: Optional owner, used to label validation errors.
    """

    impact: float
    effort: float
    confidence: float
    reasoning: ScoreReasoning = field(default_factory=ScoreReasoning)
    scored_at: datetime.datetime = field(default_factory=timezone.now)
    confidence_breakdown: Optional[ConfidenceBreakdown] = None
    task_id: Optional[str] = None

    def __post_init__(self) -> None:
        _check_range("impact", self.impact, IMPACT_RANGE, self.task_id)
        _check_range("effort", self.effort, EFFORT_RANGE, self.task_id)
        _check_range("confidence", self.confidence, CONFIDENCE_RANGE, self.task_id)

    @property
    def priority(self) -> float:
        return calculate_priority(self.impact, self.effort, self.confidence)

    @property
    def quadrant(self) -> Quadrant:
        return get_quadrant(self.impact, self.effort)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "impact": self.impact,
            "effort": self.effort,
            "confidence": self.confidence,
            "priority": self.priority,
            "reasoning": self.reasoning.to_dict(),
            "scored_at": self.scored_at.isoformat(),
            "confidence_breakdown": (
                self.confidence_breakdown.to_dict() if self.confidence_breakdown else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategicScore":
        # priority is recomputed, whatever the payload says
        breakdown = data.get("confidence_breakdown")
        return cls(
            impact=float(data["impact"]),
            effort=float(data["effort"]),
            confidence=float(data["confidence"]),
            reasoning=ScoreReasoning.from_dict(data.get("reasoning") or {}),
            scored_at=_parse_timestamp(data.get("scored_at")),
            confidence_breakdown=ConfidenceBreakdown(**breakdown) if breakdown else None,
            task_id=data.get("task_id"),
        )


@dataclass(frozen=True)
class ManualOverride:
    """User correction to Impact and/or Effort. Confidence is never overridden."""

    session_id: str
    impact: Optional[float] = None
    effort: Optional[float] = None
    reason: Optional[str] = None
    timestamp: datetime.datetime = field(default_factory=timezone.now)

    def __post_init__(self) -> None:
        _check_range("impact", self.impact, IMPACT_RANGE)
        _check_range("effort", self.effort, EFFORT_RANGE)
        if self.reason is not None and len(self.reason) > MAX_REASON_LENGTH:
            raise ValidationError(
                f"reason must be at most {MAX_REASON_LENGTH} characters",
                errors={"reason": [f"Ensure this field has no more than {MAX_REASON_LENGTH} characters."]},
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "impact": self.impact,
            "effort": self.effort,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManualOverride":
        return cls(
            session_id=data["session_id"],
            impact=data.get("impact"),
            effort=data.get("effort"),
            reason=data.get("reason"),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )


# ---------------------------------------------------------------------------
# Dependencies, annotations and movement
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DependencyEdge:
    """source_task_id must precede target_task_id."""

    source_task_id: str
    target_task_id: str
    relationship_type: RelationshipType = RelationshipType.PREREQUISITE
    confidence: float = 1.0
    detection_method: DetectionMethod = DetectionMethod.STORED


@dataclass(frozen=True)
class TaskAnnotation:
    """Per-task run metadata derived from prior run history."""

    task_id: str
    state: TaskState = TaskState.ACTIVE
    confidence_delta: Optional[float] = None
    manual_override: bool = False
    removal_reason: Optional[str] = None


@dataclass(frozen=True)
class MovementRecord:
    type: MovementType
    delta: Optional[float] = None

    @property
    def is_highlighted(self) -> bool:
        return self.type is not MovementType.NONE


# ---------------------------------------------------------------------------
# Retry queue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryStatusEntry:
    status: RetryStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    updated_at: datetime.datetime

    @property
    def exhausted(self) -> bool:
        return self.status is RetryStatus.FAILED


@dataclass(frozen=True)
class RetryEvent:
    """Notification published on a retry queue channel."""

    task_id: str
    session_id: str
    status: RetryStatus
    attempts: int
    last_error: Optional[str] = None
    cancelled: bool = False


@dataclass
class RetryJob:
    task_id: str
    session_id: str
    outcome_id: str
    estimate_fn: Callable[[], Awaitable[ImpactEstimate]]
    on_success: Callable[[ImpactEstimate], Any]
    on_failure: Optional[Callable[[Exception, int, Optional[str]], Any]] = None
    cache_key: Optional[str] = None
    max_attempts: int = 3
    attempts: int = 0
    status: RetryStatus = RetryStatus.PENDING
    last_error: Optional[str] = None
    cancelled: bool = False
    created_at: datetime.datetime = field(default_factory=timezone.now)
    updated_at: datetime.datetime = field(default_factory=timezone.now)

    @property
    def key(self) -> str:
        return f"{self.session_id}:{self.task_id}"

    def touch(self, status: RetryStatus) -> None:
        self.status = status
        self.updated_at = timezone.now()

    def snapshot(self) -> RetryStatusEntry:
        return RetryStatusEntry(
            status=self.status,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            last_error=self.last_error,
            updated_at=self.updated_at,
        )
