# priorities/engine/priority.py

from enum import Enum
from typing import Dict

# Quadrant thresholds shared by the ranking strategies and the visualization clusters
HIGH_IMPACT_THRESHOLD = 5.0
LOW_EFFORT_THRESHOLD = 8.0

MAX_PRIORITY = 100.0
HOURS_PER_DAY = 8.0


class Quadrant(str, Enum):
    QUICK_WIN = "high_impact_low_effort"
    STRATEGIC_BET = "high_impact_high_effort"
    INCREMENTAL = "low_impact_low_effort"
    AVOID = "low_impact_high_effort"


QUADRANT_CONFIGS: Dict[Quadrant, Dict[str, str]] = {
    Quadrant.QUICK_WIN: {
        "label": "Quick Wins",
        "description": "High impact, low effort - do these first",
    },
    Quadrant.STRATEGIC_BET: {
        "label": "Strategic Bets",
        "description": "High impact, high effort - plan carefully",
    },
    Quadrant.INCREMENTAL: {
        "label": "Incremental",
        "description": "Low impact, low effort - fill time gaps",
    },
    Quadrant.AVOID: {
        "label": "Avoid",
        "description": "Low impact, high effort - deprioritize or eliminate",
    },
}


def calculate_priority(impact: float, effort: float, confidence: float) -> float:
    """
    Composite 0..100 priority.

    impact is scaled to 0..100, divided by effort expressed in working days,
    and weighted by confidence. Results above 100 are capped.
    """
    raw = (float(impact) * 10.0) / (float(effort) / HOURS_PER_DAY) * float(confidence)
    return max(0.0, min(MAX_PRIORITY, raw))


def get_quadrant(impact: float, effort: float) -> Quadrant:
    high_impact = impact >= HIGH_IMPACT_THRESHOLD
    low_effort = effort <= LOW_EFFORT_THRESHOLD

    if high_impact and low_effort:
        return Quadrant.QUICK_WIN
    if high_impact:
        return Quadrant.STRATEGIC_BET
    if low_effort:
        return Quadrant.INCREMENTAL
    return Quadrant.AVOID
