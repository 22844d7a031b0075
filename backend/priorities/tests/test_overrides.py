# priorities/tests/test_overrides.py
"""
Override & Store Tests
======================

Manual override precedence, payload validation, session guards and the
cache-backed score/override stores.

Test Philosophy:
----------------
- Stores run against the configured Django cache, cleared before each test
- Timestamps are set explicitly wherever ordering matters
"""

from __future__ import annotations

import datetime

from django.core.cache import caches
from django.test import SimpleTestCase
from django.utils import timezone

from priorities.engine.contracts import ManualOverride, ScoreReasoning, StrategicScore
from priorities.engine.exceptions import ScoresUnavailable, SessionChanged, ValidationError
from priorities.engine.overrides import OverrideManager, merge_override
from priorities.engine.store import OverrideStore, ScoreStore
from priorities.serializers import ManualOverrideInputSerializer, StrategicScoreSerializer


def make_score(impact=5.0, effort=16.0, confidence=0.6, **kwargs) -> StrategicScore:
    return StrategicScore(impact=impact, effort=effort, confidence=confidence, **kwargs)


class CacheTestCase(SimpleTestCase):
    def setUp(self) -> None:
        caches["default"].clear()


# ===========================================================================
# MERGE TESTS
# ===========================================================================


class TestMergeOverride(SimpleTestCase):
    def test_override_replaces_impact_and_recomputes_priority(self) -> None:
        base = make_score()
        merged = merge_override(base, ManualOverride(session_id="s1", impact=8.0))

        self.assertEqual(merged.impact, 8.0)
        self.assertEqual(merged.effort, 16.0)
        self.assertEqual(merged.confidence, 0.6)
        self.assertAlmostEqual(merged.priority, 24.0)
        self.assertEqual(base.impact, 5.0)

    def test_missing_override_returns_base(self) -> None:
        base = make_score()
        self.assertIs(merge_override(base, None), base)

    def test_confidence_is_never_overridden(self) -> None:
        merged = merge_override(make_score(confidence=0.3), ManualOverride(session_id="s1", effort=2.0))
        self.assertEqual(merged.confidence, 0.3)
        self.assertEqual(merged.effort, 2.0)


# ===========================================================================
# STORE TESTS
# ===========================================================================


class TestScoreStore(CacheTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = ScoreStore()
        self.store.start_run("o1", "s1")

    def test_merge_round_trips_scores(self) -> None:
        score = make_score(reasoning=ScoreReasoning(impact_keywords=("revenue",)))
        report = self.store.merge("o1", {"t1": score}, "s1")

        self.assertEqual(report.written, ("t1",))
        stored = self.store.get_score("o1", "t1")
        self.assertEqual(stored.impact, 5.0)
        self.assertEqual(stored.task_id, "t1")
        self.assertEqual(stored.reasoning.impact_keywords, ("revenue",))
        self.assertAlmostEqual(stored.priority, score.priority)

    def test_stale_session_is_rejected(self) -> None:
        report = self.store.merge("o1", {"t1": make_score()}, "old-session")

        self.assertTrue(report.has_conflicts)
        self.assertEqual(report.written, ())
        self.assertEqual(self.store.get_scores("o1"), {})

    def test_replaying_a_write_is_idempotent(self) -> None:
        score = make_score()
        self.store.merge("o1", {"t1": score}, "s1")
        self.store.merge("o1", {"t1": score}, "s1")

        self.assertEqual(list(self.store.get_scores("o1")), ["t1"])
        self.assertEqual(self.store.get_score("o1", "t1").scored_at, score.scored_at)

    def test_older_write_never_replaces_newer(self) -> None:
        now = timezone.now()
        newer = make_score(impact=9.0, scored_at=now)
        older = make_score(impact=1.0, scored_at=now - datetime.timedelta(seconds=5))

        self.store.merge("o1", {"t1": newer}, "s1")
        report = self.store.merge("o1", {"t1": older, "t2": older}, "s1")

        self.assertEqual(report.written, ("t2",))
        self.assertEqual(len(report.conflicts), 1)
        self.assertEqual(self.store.get_score("o1", "t1").impact, 9.0)

    def test_start_run_supersedes_previous_scores(self) -> None:
        self.store.merge("o1", {"t1": make_score()}, "s1")
        self.store.start_run("o1", "s2")

        self.assertEqual(self.store.active_session("o1"), "s2")
        self.assertEqual(self.store.get_scores("o1"), {})
        self.assertTrue(self.store.merge("o1", {"t1": make_score()}, "s1").has_conflicts)


class TestOverrideStore(CacheTestCase):
    def test_last_write_wins_by_timestamp(self) -> None:
        store = OverrideStore()
        now = timezone.now()
        store.put("o1", "t1", ManualOverride(session_id="s1", impact=9.0, timestamp=now))

        report = store.put(
            "o1", "t1",
            ManualOverride(session_id="s1", impact=2.0, timestamp=now - datetime.timedelta(seconds=1)),
        )

        self.assertTrue(report.has_conflicts)
        self.assertEqual(store.get("o1", "t1").impact, 9.0)

    def test_delete_and_clear(self) -> None:
        store = OverrideStore()
        store.put("o1", "t1", ManualOverride(session_id="s1", impact=1.0))
        store.put("o1", "t2", ManualOverride(session_id="s1", effort=2.0))

        self.assertTrue(store.delete("o1", "t1"))
        self.assertFalse(store.delete("o1", "t1"))
        self.assertEqual(store.clear("o1"), 1)
        self.assertEqual(store.get_all("o1"), {})


# ===========================================================================
# OVERRIDE MANAGER TESTS
# ===========================================================================


class TestOverrideManager(CacheTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = OverrideManager()
        self.base = make_score()

    def apply(self, payload, task_id="t1", base=None, session_id="s1", active_session="s1"):
        return self.manager.apply_override(
            "o1", task_id, base or self.base, payload, session_id, active_session
        )

    def test_impact_override_recomputes_priority(self) -> None:
        merged = self.apply({"impact": 8})
        self.assertEqual(merged.impact, 8.0)
        self.assertAlmostEqual(merged.priority, 24.0)
        self.assertEqual(self.manager.get_override("o1", "t1").impact, 8.0)

    def test_second_override_keeps_earlier_fields(self) -> None:
        self.apply({"impact": 8, "reason": "Board priority"})
        merged = self.apply({"effort": 4})

        self.assertEqual(merged.impact, 8.0)
        self.assertEqual(merged.effort, 4.0)
        self.assertEqual(self.manager.get_override("o1", "t1").reason, "Board priority")

    def test_reason_is_trimmed(self) -> None:
        self.apply({"impact": 6, "reason": "  shipped early  "})
        self.assertEqual(self.manager.get_override("o1", "t1").reason, "shipped early")

    def test_reason_only_override_is_accepted(self) -> None:
        merged = self.apply({"reason": "context for the team"})
        self.assertEqual(merged.impact, self.base.impact)
        self.assertEqual(self.manager.get_override("o1", "t1").reason, "context for the team")

    def test_out_of_range_values_are_rejected(self) -> None:
        for payload in ({"impact": 11}, {"impact": -1}, {"effort": 0.25}, {"effort": 161}):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError) as ctx:
                    self.apply(payload)
                self.assertEqual(ctx.exception.task_id, "t1")
        self.assertIsNone(self.manager.get_override("o1", "t1"))

    def test_reason_longer_than_limit_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.apply({"impact": 5, "reason": "x" * 501})
        self.assertIn("reason", ctx.exception.errors)

        self.apply({"impact": 5, "reason": "x" * 500})

    def test_empty_payload_is_rejected(self) -> None:
        for payload in ({}, {"reason": "   "}, {"impact": None}):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    self.apply(payload)

    def test_task_without_score_is_rejected(self) -> None:
        with self.assertRaises(ScoresUnavailable):
            self.manager.apply_override("o1", "t1", None, {"impact": 5}, "s1", "s1")

    def test_superseded_session_is_rejected(self) -> None:
        with self.assertRaises(SessionChanged) as ctx:
            self.apply({"impact": 5}, session_id="s1", active_session="s2")
        self.assertEqual(ctx.exception.active, "s2")

    def test_validation_runs_before_session_checks(self) -> None:
        with self.assertRaises(ValidationError):
            self.manager.apply_override("o1", "t1", None, {"impact": 50}, "s1", "s2")

    def test_clearing_restores_exact_ai_scores(self) -> None:
        scores = {"t1": make_score(), "t2": make_score(impact=7.0, effort=3.0, confidence=0.8)}
        self.apply({"impact": 9, "effort": 2}, task_id="t1", base=scores["t1"])
        self.apply({"effort": 40}, task_id="t2", base=scores["t2"])

        self.assertNotEqual(self.manager.effective_scores("o1", scores, "s1"), scores)
        self.assertEqual(self.manager.clear_all_overrides("o1"), 2)
        self.assertEqual(self.manager.effective_scores("o1", scores, "s1"), scores)

    def test_overrides_from_another_session_are_ignored(self) -> None:
        scores = {"t1": make_score()}
        self.apply({"impact": 9})
        self.assertEqual(self.manager.effective_scores("o1", scores, "s1")["t1"].impact, 9.0)
        self.assertEqual(self.manager.effective_scores("o1", scores, "s2")["t1"].impact, 5.0)

    def test_clear_single_override(self) -> None:
        self.apply({"impact": 9})
        self.assertTrue(self.manager.clear_override("o1", "t1"))
        self.assertFalse(self.manager.clear_override("o1", "t1"))


# ===========================================================================
# SERIALIZER TESTS
# ===========================================================================


class TestOverrideSerializers(SimpleTestCase):
    def test_omitted_fields_are_absent(self) -> None:
        serializer = ManualOverrideInputSerializer(data={"effort": 3})
        self.assertTrue(serializer.is_valid(), serializer.errors)
        self.assertEqual(dict(serializer.validated_data), {"effort": 3.0})

    def test_missing_values_report_on_impact(self) -> None:
        serializer = ManualOverrideInputSerializer(data={})
        self.assertFalse(serializer.is_valid())
        self.assertIn("impact", serializer.errors)

    def test_score_output_includes_derived_fields(self) -> None:
        data = StrategicScoreSerializer(make_score(impact=8.0, effort=4.0, confidence=0.9)).data
        self.assertAlmostEqual(data["priority"], 100.0)
        self.assertEqual(data["quadrant"], "high_impact_low_effort")
        self.assertEqual(data["reasoning"]["effort_source"], "heuristic")
        self.assertIsNone(data["confidence_breakdown"])
