# priorities/engine/overrides.py
"""
Override Manager
================

Layers user corrections over machine estimates.

Precedence:
    - impact / effort: call payload > previous override > AI estimate
    - confidence: always the AI estimate
    - priority: recomputed from the merged inputs on every read

clear_all_overrides() is the only destructor. The engine calls it exactly
once at the start of every new ranking run for an outcome; there is no
time-based expiry.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Mapping, Optional

from django.utils import timezone

from .contracts import ManualOverride, StrategicScore
from .exceptions import ScoresUnavailable, SessionChanged, ValidationError
from .store import OverrideStore

logger = logging.getLogger(__name__)


def merge_override(base: StrategicScore, override: Optional[ManualOverride]) -> StrategicScore:
    """Effective score for a task. Pure; base is never modified."""
    if override is None:
        return base
    return dataclasses.replace(
        base,
        impact=override.impact if override.impact is not None else base.impact,
        effort=override.effort if override.effort is not None else base.effort,
    )


def _flatten_errors(errors: Mapping[str, Any]) -> Dict[str, list]:
    return {
        field: [str(message) for message in (messages if isinstance(messages, list) else [messages])]
        for field, messages in errors.items()
    }


class OverrideManager:
    def __init__(self, store: Optional[OverrideStore] = None) -> None:
        self.store = store or OverrideStore()

    def validate_payload(self, task_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        from ..serializers import ManualOverrideInputSerializer

        serializer = ManualOverrideInputSerializer(data=dict(payload))
        if not serializer.is_valid():
            errors = _flatten_errors(serializer.errors)
            raise ValidationError(f"Invalid override for task {task_id}: {errors}", task_id=task_id, errors=errors)
        return dict(serializer.validated_data)

    def apply_override(
        self,
        outcome_id: str,
        task_id: str,
        base_score: Optional[StrategicScore],
        payload: Mapping[str, Any],
        session_id: str,
        active_session: Optional[str] = None,
    ) -> StrategicScore:
        """
        Validates and stores an override, returning the merged score.

        Args:
            base_score: The AI score of the task in the active run.
            payload: Raw {impact?, effort?, reason?} from the caller.
            session_id: Run the caller believes is active.
            active_session: Run actually active, when known.

        Raises:
            ValidationError: Payload out of range or carrying no value.
            ScoresUnavailable: The task has no AI score yet.
            SessionChanged: A new run started since the caller last looked.
        """
        data = self.validate_payload(task_id, payload)

        if base_score is None:
            raise ScoresUnavailable(task_id)
        if active_session is not None and active_session != session_id:
            raise SessionChanged(session_id, active_session)

        existing = self.store.get(outcome_id, task_id)

        impact = data.get("impact")
        if impact is None:
            impact = existing.impact if existing and existing.impact is not None else base_score.impact

        effort = data.get("effort")
        if effort is None:
            effort = existing.effort if existing and existing.effort is not None else base_score.effort

        if "reason" in data:
            reason = (data["reason"] or "").strip() or None
        else:
            reason = existing.reason if existing else None

        override = ManualOverride(
            session_id=session_id,
            impact=impact,
            effort=effort,
            reason=reason,
            timestamp=timezone.now(),
        )
        self.store.put(outcome_id, task_id, override)

        merged = merge_override(base_score, override)
        logger.info(
            f"OverrideManager: override applied to task {task_id} "
            f"(impact {base_score.impact} -> {merged.impact}, effort {base_score.effort} -> {merged.effort}, "
            f"priority {merged.priority:.1f})"
        )
        return merged

    def get_override(self, outcome_id: str, task_id: str) -> Optional[ManualOverride]:
        return self.store.get(outcome_id, task_id)

    def get_overrides(self, outcome_id: str) -> Dict[str, ManualOverride]:
        return self.store.get_all(outcome_id)

    def clear_override(self, outcome_id: str, task_id: str) -> bool:
        removed = self.store.delete(outcome_id, task_id)
        if removed:
            logger.info(f"OverrideManager: override cleared for task {task_id}")
        return removed

    def clear_all_overrides(self, outcome_id: str) -> int:
        count = self.store.clear(outcome_id)
        logger.info(f"OverrideManager: cleared {count} override(s) for outcome {outcome_id}")
        return count

    def effective_scores(
        self,
        outcome_id: str,
        scores: Mapping[str, StrategicScore],
        session_id: Optional[str] = None,
    ) -> Dict[str, StrategicScore]:
        """Merges every stored override of the outcome over the given AI scores."""
        overrides = self.store.get_all(outcome_id)
        effective: Dict[str, StrategicScore] = {}
        for task_id, score in scores.items():
            override = overrides.get(task_id)
            if override is not None and session_id is not None and override.session_id != session_id:
                override = None
            effective[task_id] = merge_override(score, override)
        return effective
