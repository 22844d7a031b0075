# priorities/engine/heuristics.py

import re
from typing import Optional, Tuple

from .contracts import ConfidenceBreakdown, EffortEstimate, EffortSource, Task
from .priority import HOURS_PER_DAY

# Explicit hints such as "3h", "2 days", "1.5 hrs"
EFFORT_HINT_REGEX = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(h|hour|hours|hr|hrs|day|days|d)\b", re.IGNORECASE
)
INTEGRATION_REGEX = re.compile(r"(integrate|integration|migrate|migration|redesign)", re.IGNORECASE)
DEPENDENCY_REGEX = re.compile(r"(dependency|depends on|blocked|blocker|external team)", re.IGNORECASE)
EXPLORATORY_REGEX = re.compile(r"(investigate|explore|spike)", re.IGNORECASE)

BASE_EFFORT_HOURS = 8.0
LONG_TEXT_THRESHOLD = 100
EXTRACTED_EFFORT_BOUNDS = (0.5, 160.0)
HEURISTIC_EFFORT_BOUNDS = (0.5, 40.0)

# Confidence weights: similarity, dependency certainty, historical success
SIMILARITY_WEIGHT = 0.6
DEPENDENCY_WEIGHT = 0.3
HISTORY_WEIGHT = 0.1
DEFAULT_SIGNAL = 0.5


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def extract_effort_hint(text: str) -> Optional[Tuple[float, str]]:
    """
    Returns (hours, matched_text) for the first explicit effort hint, or None.
    Day units are normalized at 8 working hours per day.
    """
    match = EFFORT_HINT_REGEX.search(text or "")
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    unit = match.group(2).lower()
    hours = value * HOURS_PER_DAY if "d" in unit else value
    return hours, match.group(0)


def estimate_effort(task: Task) -> EffortEstimate:
    """
    Estimates effort in hours from the task text.

    An explicit hint wins. Otherwise a complexity heuristic starts from a
    working day and adds hours for long descriptions, integration work,
    external dependencies and exploratory work.
    """
    text = task.text or ""

    extracted = extract_effort_hint(text)
    if extracted:
        hours, hint = extracted
        return EffortEstimate(
            effort=clamp(hours, *EXTRACTED_EFFORT_BOUNDS),
            source=EffortSource.EXTRACTED,
            hint=hint,
        )

    effort = BASE_EFFORT_HOURS
    modifiers = []
    if len(text) > LONG_TEXT_THRESHOLD:
        effort += 4
        modifiers.append("long_spec")
    if INTEGRATION_REGEX.search(text):
        effort += 8
        modifiers.append("integration_work")
    if DEPENDENCY_REGEX.search(text):
        effort += 4
        modifiers.append("dependency_risk")
    if EXPLORATORY_REGEX.search(text):
        effort += 8
        modifiers.append("investigation_needed")

    return EffortEstimate(
        effort=clamp(effort, *HEURISTIC_EFFORT_BOUNDS),
        source=EffortSource.HEURISTIC,
        complexity_modifiers=tuple(modifiers),
    )


def calculate_confidence(
    similarity: Optional[float] = None,
    dependency: Optional[float] = None,
    history: Optional[float] = None,
) -> Tuple[float, ConfidenceBreakdown]:
    """
    Weighted blend of the three confidence signals.

    Missing signals default to 0.5. All inputs are clamped to 0..1 and the
    blend is rounded to three decimals.
    """
    similarity = clamp(DEFAULT_SIGNAL if similarity is None else float(similarity), 0.0, 1.0)
    dependency = clamp(DEFAULT_SIGNAL if dependency is None else float(dependency), 0.0, 1.0)
    history = clamp(DEFAULT_SIGNAL if history is None else float(history), 0.0, 1.0)

    value = (
        SIMILARITY_WEIGHT * similarity
        + DEPENDENCY_WEIGHT * dependency
        + HISTORY_WEIGHT * history
    )
    breakdown = ConfidenceBreakdown(
        similarity=round(similarity, 3),
        dependency=round(dependency, 3),
        history=round(history, 3),
    )
    return round(clamp(value, 0.0, 1.0), 3), breakdown
