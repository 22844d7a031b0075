# priorities/serializers.py

import logging

from rest_framework import serializers

from .engine.contracts import (
    MAX_REASON_LENGTH,
    DependencyEdge,
    DetectionMethod,
    RelationshipType,
    Task,
    TaskAnnotation,
    TaskState,
)
from .engine.ranking import STRATEGY_CONFIGS

logger = logging.getLogger(__name__)


def _choices(enum_cls):
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class TaskInputSerializer(serializers.Serializer):
    task_id = serializers.CharField(max_length=255)
    text = serializers.CharField(allow_blank=True, trim_whitespace=False)
    document_id = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    def create(self, validated_data):
        return Task(
            task_id=validated_data["task_id"],
            text=validated_data["text"],
            document_id=validated_data.get("document_id") or None,
        )


class DependencyEdgeSerializer(serializers.Serializer):
    source_task_id = serializers.CharField(max_length=255)
    target_task_id = serializers.CharField(max_length=255)
    relationship_type = serializers.ChoiceField(
        choices=_choices(RelationshipType), default=RelationshipType.PREREQUISITE.value
    )
    confidence = serializers.FloatField(min_value=0.0, max_value=1.0, default=1.0)
    detection_method = serializers.ChoiceField(
        choices=_choices(DetectionMethod), default=DetectionMethod.STORED.value
    )

    def create(self, validated_data):
        return DependencyEdge(
            source_task_id=validated_data["source_task_id"],
            target_task_id=validated_data["target_task_id"],
            relationship_type=RelationshipType(validated_data["relationship_type"]),
            confidence=validated_data["confidence"],
            detection_method=DetectionMethod(validated_data["detection_method"]),
        )


class TaskAnnotationSerializer(serializers.Serializer):
    task_id = serializers.CharField(max_length=255)
    state = serializers.ChoiceField(choices=_choices(TaskState), default=TaskState.ACTIVE.value)
    confidence_delta = serializers.FloatField(
        min_value=-1.0, max_value=1.0, required=False, allow_null=True, default=None
    )
    manual_override = serializers.BooleanField(default=False)
    removal_reason = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    def create(self, validated_data):
        return TaskAnnotation(
            task_id=validated_data["task_id"],
            state=TaskState(validated_data["state"]),
            confidence_delta=validated_data.get("confidence_delta"),
            manual_override=validated_data["manual_override"],
            removal_reason=validated_data.get("removal_reason") or None,
        )


class ManualOverrideInputSerializer(serializers.Serializer):
    """
    User correction payload. Omitted fields are absent from validated_data so
    the caller can tell "not provided" from an explicit value.
    """

    impact = serializers.FloatField(min_value=0.0, max_value=10.0, required=False)
    effort = serializers.FloatField(min_value=0.5, max_value=160.0, required=False)
    reason = serializers.CharField(
        max_length=MAX_REASON_LENGTH, required=False, allow_blank=True, allow_null=True
    )

    def validate(self, attrs):
        has_value = (
            attrs.get("impact") is not None
            or attrs.get("effort") is not None
            or bool(attrs.get("reason"))
        )
        if not has_value:
            raise serializers.ValidationError({"impact": "Provide at least one override value"})
        return attrs


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


class StrategicScoreSerializer(serializers.Serializer):
    impact = serializers.FloatField()
    effort = serializers.FloatField()
    confidence = serializers.FloatField()
    priority = serializers.FloatField()
    quadrant = serializers.CharField(source="quadrant.value")
    reasoning = serializers.SerializerMethodField()
    confidence_breakdown = serializers.SerializerMethodField()
    scored_at = serializers.DateTimeField()

    def get_reasoning(self, obj):
        return obj.reasoning.to_dict()

    def get_confidence_breakdown(self, obj):
        return obj.confidence_breakdown.to_dict() if obj.confidence_breakdown else None


class RankedTaskSerializer(serializers.Serializer):
    task_id = serializers.CharField()
    text = serializers.CharField(source="task.text")
    rank = serializers.IntegerField()
    sort_score = serializers.FloatField()
    score = StrategicScoreSerializer()
    has_manual_override = serializers.BooleanField()


class MovementSerializer(serializers.Serializer):
    type = serializers.CharField(source="type.value")
    delta = serializers.FloatField(allow_null=True)


class QuadrantClusterSerializer(serializers.Serializer):
    task_ids = serializers.ListField(child=serializers.CharField())
    primary_task_id = serializers.CharField()
    impact = serializers.FloatField()
    effort = serializers.FloatField()
    confidence = serializers.FloatField()
    quadrant = serializers.CharField(source="quadrant.value")
    size = serializers.IntegerField()


class RetryStatusSerializer(serializers.Serializer):
    status = serializers.CharField(source="status.value")
    attempts = serializers.IntegerField()
    max_attempts = serializers.IntegerField()
    last_error = serializers.CharField(allow_null=True)
    updated_at = serializers.DateTimeField()


class RankingSnapshotSerializer(serializers.Serializer):
    """Read-only rendering of a RankingSnapshot into JSON-ready data."""

    outcome_id = serializers.CharField()
    session_id = serializers.CharField()
    strategy = serializers.CharField(source="strategy.value")
    strategy_label = serializers.SerializerMethodField()
    strategy_description = serializers.SerializerMethodField()
    ranked = RankedTaskSerializer(many=True)
    active_order = serializers.ListField(child=serializers.CharField())
    movements = serializers.SerializerMethodField()
    highlighted = serializers.SerializerMethodField()
    clusters = QuadrantClusterSerializer(many=True)
    retry_status = serializers.SerializerMethodField()
    unavailable = serializers.SerializerMethodField()
    cycle_remainder = serializers.ListField(child=serializers.CharField())
    completed = serializers.SerializerMethodField()
    discarded = serializers.SerializerMethodField()

    def get_strategy_label(self, obj):
        return STRATEGY_CONFIGS[obj.strategy].label

    def get_strategy_description(self, obj):
        return STRATEGY_CONFIGS[obj.strategy].description

    def get_movements(self, obj):
        return {
            task_id: MovementSerializer(record).data for task_id, record in obj.movements.items()
        }

    def get_highlighted(self, obj):
        return sorted(obj.highlighted)

    def get_retry_status(self, obj):
        return {
            task_id: RetryStatusSerializer(entry).data for task_id, entry in obj.retry_status.items()
        }

    def get_unavailable(self, obj):
        return sorted(obj.unavailable)

    def get_completed(self, obj):
        return sorted(obj.completed)

    def get_discarded(self, obj):
        return sorted(obj.discarded)
