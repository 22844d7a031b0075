# priorities/tests/test_retry_queue.py
"""
Retry Queue Tests
=================

State machine, backoff, exhaustion, cancellation and observation of the
asynchronous retry queue.

Test Philosophy:
----------------
- Backoff sleeps are injected and recorded, so tests never wait in real time
- Async scenarios run as `async def` test methods
- Every test drains or resets the queue before returning
"""

from __future__ import annotations

import asyncio
import datetime
from typing import List
from unittest.mock import AsyncMock, MagicMock

from django.test import SimpleTestCase, override_settings
from django.utils import timezone

from priorities.engine.contracts import ImpactEstimate, RetryStatus
from priorities.engine.exceptions import EstimationExhausted, EstimationFailure
from priorities.engine.retry_queue import RetryQueue


def make_estimate(impact: float = 7.0) -> ImpactEstimate:
    return ImpactEstimate(impact=impact, reasoning="retried", confidence=0.8)


class RetryQueueTestCase(SimpleTestCase):
    def setUp(self) -> None:
        self.delays: List[float] = []
        self.queue = RetryQueue(max_attempts=3, concurrency=10, base_delay=1.0, sleep=self.fake_sleep)

    async def fake_sleep(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ===========================================================================
# STATE MACHINE TESTS
# ===========================================================================


class TestRetryLifecycle(RetryQueueTestCase):
    def test_backoff_doubles_per_attempt(self) -> None:
        self.assertEqual([self.queue.backoff_delay(n) for n in (1, 2, 3)], [1.0, 2.0, 4.0])

    @override_settings(STRATEGIC_RETRY_MAX_ATTEMPTS=5, STRATEGIC_RETRY_BASE_DELAY=0.5)
    def test_defaults_come_from_settings(self) -> None:
        queue = RetryQueue()
        self.assertEqual(queue.max_attempts, 5)
        self.assertEqual(queue.backoff_delay(3), 2.0)

    async def test_exhaustion_after_three_attempts(self) -> None:
        estimate_fn = AsyncMock(side_effect=EstimationFailure("estimator down", "TIMEOUT"))
        on_success = MagicMock()
        on_failure = MagicMock()

        job = self.queue.enqueue("t1", "s1", "o1", estimate_fn, on_success, on_failure)
        await self.queue.wait_idle()

        self.assertEqual(job.status, RetryStatus.FAILED)
        self.assertEqual(job.attempts, 3)
        self.assertEqual(job.last_error, "estimator down")
        self.assertEqual(estimate_fn.await_count, 3)
        self.assertEqual(self.delays, [1.0, 2.0, 4.0])
        on_success.assert_not_called()

        on_failure.assert_called_once()
        error, attempts, last_error = on_failure.call_args.args
        self.assertIsInstance(error, EstimationExhausted)
        self.assertEqual(attempts, 3)
        self.assertEqual(last_error, "estimator down")

    async def test_exhausted_job_stays_visible_and_is_not_retried(self) -> None:
        estimate_fn = AsyncMock(side_effect=EstimationFailure("nope"))
        job = self.queue.enqueue("t1", "s1", "o1", estimate_fn, MagicMock())
        await self.queue.wait_idle()

        self.assertEqual(self.queue.exhausted_task_ids("s1"), {"t1"})
        self.assertTrue(self.queue.snapshot("s1")["t1"].exhausted)

        again = self.queue.enqueue("t1", "s1", "o1", estimate_fn, MagicMock())
        await self.queue.wait_idle()

        self.assertIs(again, job)
        self.assertEqual(estimate_fn.await_count, 3)

    async def test_success_after_a_failure_removes_the_job(self) -> None:
        estimate = make_estimate()
        estimate_fn = AsyncMock(side_effect=[EstimationFailure("flaky"), estimate])
        on_success = MagicMock()

        job = self.queue.enqueue("t1", "s1", "o1", estimate_fn, on_success)
        await self.queue.wait_idle()

        on_success.assert_called_once_with(estimate)
        self.assertEqual(job.status, RetryStatus.COMPLETED)
        self.assertEqual(job.attempts, 2)
        self.assertEqual(self.delays, [1.0, 2.0])
        self.assertIsNone(self.queue.get_job("s1", "t1"))
        self.assertEqual(self.queue.snapshot(), {})

    async def test_async_success_callback_is_awaited(self) -> None:
        on_success = AsyncMock()
        self.queue.enqueue("t1", "s1", "o1", AsyncMock(return_value=make_estimate()), on_success)
        await self.queue.wait_idle()
        on_success.assert_awaited_once()

    async def test_missing_estimate_counts_as_a_failed_attempt(self) -> None:
        estimate_fn = AsyncMock(side_effect=[None, make_estimate()])
        on_success = MagicMock()
        self.queue.enqueue("t1", "s1", "o1", estimate_fn, on_success)
        await self.queue.wait_idle()
        self.assertEqual(estimate_fn.await_count, 2)
        on_success.assert_called_once()

    async def test_completed_estimate_is_reused_for_the_same_cache_key(self) -> None:
        estimate = make_estimate(9.0)
        first = AsyncMock(return_value=estimate)
        self.queue.enqueue("t1", "s1", "o1", first, MagicMock(), cache_key="t1:grow revenue")
        await self.queue.wait_idle()

        second = AsyncMock()
        on_success = MagicMock()
        self.queue.enqueue("t1", "s2", "o1", second, on_success, cache_key="t1:grow revenue")
        await self.queue.wait_idle()

        second.assert_not_awaited()
        on_success.assert_called_once_with(estimate)

    async def test_concurrency_is_bounded(self) -> None:
        queue = RetryQueue(max_attempts=1, concurrency=2, base_delay=0.0, sleep=self.fake_sleep)
        active = 0
        peak = 0

        async def estimate_fn() -> ImpactEstimate:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            for _ in range(3):
                await asyncio.sleep(0)
            active -= 1
            return make_estimate()

        for index in range(6):
            queue.enqueue(f"t{index}", "s1", "o1", estimate_fn, MagicMock())
        await queue.wait_idle()

        self.assertEqual(peak, 2)


# ===========================================================================
# REATTACHMENT & CANCELLATION TESTS
# ===========================================================================


class TestRetryCancellation(RetryQueueTestCase):
    async def test_reattaching_returns_the_in_flight_job(self) -> None:
        estimate_fn = AsyncMock(return_value=make_estimate())
        first = self.queue.enqueue("t1", "s1", "o1", estimate_fn, MagicMock())
        second = self.queue.enqueue("t1", "s1", "o1", AsyncMock(), MagicMock())

        self.assertIs(first, second)
        self.assertEqual(self.queue.snapshot("s1")["t1"].status, RetryStatus.PENDING)

        await self.queue.wait_idle()
        self.assertEqual(estimate_fn.await_count, 1)

    async def test_cancelled_in_flight_job_never_reports_success(self) -> None:
        gate = asyncio.Event()
        started = asyncio.Event()

        async def estimate_fn() -> ImpactEstimate:
            started.set()
            await gate.wait()
            return make_estimate()

        on_success = MagicMock()
        job = self.queue.enqueue("t1", "s1", "o1", estimate_fn, on_success)
        await started.wait()

        self.assertEqual(self.queue.cancel_session("s1"), 1)
        gate.set()
        await self.queue.wait_idle()

        on_success.assert_not_called()
        self.assertTrue(job.cancelled)
        self.assertEqual(self.queue.snapshot(), {})

    async def test_cancel_outcome_only_touches_that_outcome(self) -> None:
        gate = asyncio.Event()

        async def blocked_sleep(delay: float) -> None:
            await gate.wait()

        queue = RetryQueue(sleep=blocked_sleep)
        queue.enqueue("t1", "s1", "o1", AsyncMock(return_value=make_estimate()), MagicMock())
        queue.enqueue("t2", "s2", "o2", AsyncMock(return_value=make_estimate()), MagicMock())

        self.assertEqual(queue.cancel_outcome("o1"), 1)
        self.assertEqual(set(queue.snapshot()), {"t2"})

        gate.set()
        await queue.wait_idle()

    async def test_subscribers_receive_terminal_events(self) -> None:
        channel = self.queue.subscribe()
        self.queue.enqueue("ok", "s1", "o1", AsyncMock(return_value=make_estimate()), MagicMock())
        self.queue.enqueue("bad", "s1", "o1", AsyncMock(side_effect=EstimationFailure("x")), MagicMock())
        await self.queue.wait_idle()

        events = {}
        while not channel.empty():
            event = channel.get_nowait()
            events[event.task_id] = event

        self.assertEqual(events["ok"].status, RetryStatus.COMPLETED)
        self.assertEqual(events["bad"].status, RetryStatus.FAILED)
        self.assertEqual(events["bad"].attempts, 3)

        self.queue.unsubscribe(channel)
        self.queue.cancel_session("s1")
        self.assertTrue(channel.empty())

    async def test_stalled_jobs_are_pruned_and_reported(self) -> None:
        gate = asyncio.Event()

        async def blocked_sleep(delay: float) -> None:
            await gate.wait()

        queue = RetryQueue(sleep=blocked_sleep)
        on_failure = MagicMock()
        job = queue.enqueue("t1", "s1", "o1", AsyncMock(), MagicMock(), on_failure)
        job.updated_at = timezone.now() - datetime.timedelta(minutes=16)

        pruned = queue.prune_stalled()

        self.assertEqual(pruned, [job])
        self.assertIsNone(queue.get_job("s1", "t1"))
        on_failure.assert_called_once()
        self.assertIsInstance(on_failure.call_args.args[0], EstimationExhausted)
        await queue.wait_idle()

    async def test_reset_cancels_everything(self) -> None:
        gate = asyncio.Event()

        async def blocked_sleep(delay: float) -> None:
            await gate.wait()

        queue = RetryQueue(sleep=blocked_sleep)
        queue.enqueue("t1", "s1", "o1", AsyncMock(), MagicMock())
        queue.enqueue("t2", "s2", "o2", AsyncMock(), MagicMock())

        queue.reset()

        self.assertEqual(queue.snapshot(), {})
        await queue.wait_idle()


class TestRetryDiagnostics(RetryQueueTestCase):
    def test_diagnostics_report_boot_state(self) -> None:
        diagnostics = self.queue.diagnostics()
        self.assertEqual(diagnostics["boot_id"], self.queue.boot_id)
        self.assertTrue(diagnostics["restarted_recently"])
        self.assertEqual(diagnostics["pending_jobs"], 0)
        self.assertEqual(diagnostics["exhausted_jobs"], 0)
