# priorities/engine/retry_queue.py
"""
Retry Queue
===========

Asynchronous, bounded-concurrency queue that repairs failed impact estimates.

State machine per job:

    pending -> in_progress -> completed        (job removed, on_success called)
                           -> pending          (attempt failed, retries left)
                           -> failed           (terminal after max_attempts)

Attempt n waits base_delay * 2**(n-1) seconds before running (1s, 2s, 4s with
the defaults). A failed job is terminal ("retry_exhausted"): it is never
re-entered automatically and stays visible in snapshots, so the ranking can
exclude its task, until a new run cancels the session it belongs to.

Observers attach through snapshot() and subscribe(); neither creates jobs,
so re-attaching after a restart of the observer reflects in-flight state.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from django.conf import settings
from django.utils import timezone

from .contracts import ImpactEstimate, RetryEvent, RetryJob, RetryStatus, RetryStatusEntry
from .exceptions import EstimationExhausted

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CONCURRENCY = 10
DEFAULT_BASE_DELAY = 1.0

RECENT_RESTART_WINDOW = datetime.timedelta(minutes=5)
STALLED_JOB_MAX_AGE = datetime.timedelta(minutes=15)


async def _maybe_await(result: Any) -> Any:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return await result
    return result


class RetryQueue:
    """
    Retries failed estimator calls out of band.

    Args:
        max_attempts: Attempts before a job becomes terminal.
        concurrency: Maximum number of estimator calls in flight at once.
        base_delay: Backoff unit in seconds.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        concurrency: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max_attempts or getattr(
            settings, "STRATEGIC_RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS
        )
        self.concurrency = concurrency or getattr(
            settings, "STRATEGIC_SCORING_BATCH_SIZE", DEFAULT_CONCURRENCY
        )
        self.base_delay = (
            base_delay
            if base_delay is not None
            else getattr(settings, "STRATEGIC_RETRY_BASE_DELAY", DEFAULT_BASE_DELAY)
        )
        self._sleep = sleep

        self._jobs: Dict[str, RetryJob] = {}
        self._runners: Dict[str, asyncio.Task] = {}
        self._completed_estimates: Dict[str, ImpactEstimate] = {}
        self._subscribers: List[asyncio.Queue] = []

        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

        self.boot_id = str(uuid.uuid4())
        self.booted_at = timezone.now()

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt."""
        return self.base_delay * (2 ** (attempt - 1))

    def enqueue(
        self,
        task_id: str,
        session_id: str,
        outcome_id: str,
        estimate_fn: Callable[[], Awaitable[ImpactEstimate]],
        on_success: Callable[[ImpactEstimate], Any],
        on_failure: Optional[Callable[[Exception, int, Optional[str]], Any]] = None,
        cache_key: Optional[str] = None,
    ) -> RetryJob:
        """
        Creates and schedules a retry job. Must be called from a running loop.

        If a job for the same (session, task) already exists it is returned
        unchanged. If an earlier job with the same cache_key already succeeded,
        its estimate is reused and on_success runs without a new estimator call.
        """
        self.prune_stalled()

        key = f"{session_id}:{task_id}"
        existing = self._jobs.get(key)
        if existing is not None:
            logger.debug(f"RetryQueue: reattached to existing job {key} ({existing.status.value})")
            return existing

        job = RetryJob(
            task_id=task_id,
            session_id=session_id,
            outcome_id=outcome_id,
            estimate_fn=estimate_fn,
            on_success=on_success,
            on_failure=on_failure,
            cache_key=cache_key or task_id,
            max_attempts=self.max_attempts,
        )
        self._jobs[key] = job

        cached = self._completed_estimates.get(job.cache_key)
        if cached is not None:
            logger.info(f"RetryQueue: reusing cached impact estimate for task {task_id}")
            self._runners[key] = asyncio.ensure_future(self._complete_from_cache(job, cached))
        else:
            logger.info(f"RetryQueue: enqueued task {task_id} (session {session_id})")
            self._runners[key] = asyncio.ensure_future(self._run(job))
        return job

    def _get_semaphore(self) -> asyncio.Semaphore:
        # asyncio primitives are bound to one loop; Celery runs each ranking in a fresh loop
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    async def _complete_from_cache(self, job: RetryJob, estimate: ImpactEstimate) -> None:
        try:
            job.touch(RetryStatus.IN_PROGRESS)
            await _maybe_await(job.on_success(estimate))
            job.touch(RetryStatus.COMPLETED)
            self._publish(job)
        except Exception as exc:
            job.last_error = str(exc)
            job.touch(RetryStatus.FAILED)
            logger.exception(f"RetryQueue: failed to reuse cached estimate for task {job.task_id}")
            self._publish(job)
            return
        finally:
            self._runners.pop(job.key, None)
        self._jobs.pop(job.key, None)

    async def _run(self, job: RetryJob) -> None:
        try:
            while not job.cancelled and job.attempts < job.max_attempts:
                await self._sleep(self.backoff_delay(job.attempts + 1))
                if job.cancelled:
                    break

                async with self._get_semaphore():
                    if job.cancelled:
                        break
                    job.attempts += 1
                    job.touch(RetryStatus.IN_PROGRESS)
                    logger.info(
                        f"RetryQueue: attempt {job.attempts}/{job.max_attempts} "
                        f"for task {job.task_id}"
                    )
                    try:
                        estimate = await job.estimate_fn()
                        if estimate is None:
                            raise ValueError("Impact estimate unavailable")
                        if job.cancelled:
                            break
                        await _maybe_await(job.on_success(estimate))
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        job.last_error = str(exc) or type(exc).__name__
                        if job.attempts >= job.max_attempts:
                            await self._exhaust(job, exc)
                            return
                        job.touch(RetryStatus.PENDING)
                        logger.warning(
                            f"RetryQueue: attempt {job.attempts} failed for task "
                            f"{job.task_id}: {job.last_error}"
                        )
                        continue

                if job.cache_key:
                    self._completed_estimates[job.cache_key] = estimate
                job.touch(RetryStatus.COMPLETED)
                self._jobs.pop(job.key, None)
                logger.info(f"RetryQueue: task {job.task_id} repaired after {job.attempts} attempt(s)")
                self._publish(job)
                return
        except asyncio.CancelledError:
            job.cancelled = True
            if self._jobs.get(job.key) is job:
                del self._jobs[job.key]
        finally:
            self._runners.pop(job.key, None)

        if job.cancelled:
            logger.info(f"RetryQueue: job for task {job.task_id} cancelled")

    async def _exhaust(self, job: RetryJob, error: Exception) -> None:
        job.touch(RetryStatus.FAILED)
        logger.warning(
            f"RetryQueue: retry_exhausted for task {job.task_id} "
            f"(session {job.session_id}, attempts {job.attempts}, last_error {job.last_error})"
        )
        if job.on_failure is not None and not job.cancelled:
            exhausted = EstimationExhausted(job.task_id, job.attempts, job.last_error)
            exhausted.__cause__ = error
            try:
                await _maybe_await(job.on_failure(exhausted, job.attempts, job.last_error))
            except Exception:
                logger.exception(f"RetryQueue: on_failure callback raised for task {job.task_id}")
        self._publish(job)

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    def _cancel(self, jobs: Iterable[RetryJob]) -> int:
        count = 0
        for job in list(jobs):
            job.cancelled = True
            self._jobs.pop(job.key, None)
            runner = self._runners.pop(job.key, None)
            if runner is not None and not runner.done():
                runner.cancel()
            self._publish(job)
            count += 1
        return count

    def cancel_session(self, session_id: str) -> int:
        """Cancels every job of a run context. Returns the number of jobs dropped."""
        count = self._cancel(j for j in self._jobs.values() if j.session_id == session_id)
        if count:
            logger.info(f"RetryQueue: cancelled {count} job(s) for session {session_id}")
        return count

    def cancel_outcome(self, outcome_id: str) -> int:
        """Cancels every job belonging to any run of an outcome."""
        count = self._cancel(j for j in self._jobs.values() if j.outcome_id == outcome_id)
        if count:
            logger.info(f"RetryQueue: cancelled {count} job(s) for outcome {outcome_id}")
        return count

    def reset(self, clear_cache: bool = True) -> None:
        self._cancel(self._jobs.values())
        if clear_cache:
            self._completed_estimates.clear()

    def prune_stalled(self, now: Optional[datetime.datetime] = None) -> List[RetryJob]:
        """
        Drops non-terminal jobs that have not been touched for 15 minutes.
        Their failure callback runs so the exhaustion is still recorded.
        """
        now = now or timezone.now()
        stalled = [
            job
            for job in self._jobs.values()
            if job.status is not RetryStatus.FAILED and now - job.updated_at >= STALLED_JOB_MAX_AGE
        ]
        for job in stalled:
            logger.warning(
                f"RetryQueue: pruned stalled job for task {job.task_id} "
                f"(session {job.session_id}, attempts {job.attempts})"
            )
            on_failure = job.on_failure
            self._cancel([job])
            if on_failure is not None:
                try:
                    outcome = on_failure(
                        EstimationExhausted(job.task_id, job.attempts, "Retry job stale and was pruned"),
                        job.attempts,
                        job.last_error,
                    )
                    if asyncio.iscoroutine(outcome):
                        outcome.close()
                        logger.debug(
                            f"RetryQueue: async on_failure skipped for pruned job {job.task_id}"
                        )
                except Exception:
                    logger.exception(f"RetryQueue: on_failure raised for pruned job {job.task_id}")
        return stalled

    # -----------------------------------------------------------------------
    # Observation
    # -----------------------------------------------------------------------

    def get_job(self, session_id: str, task_id: str) -> Optional[RetryJob]:
        return self._jobs.get(f"{session_id}:{task_id}")

    def snapshot(self, session_id: Optional[str] = None) -> Dict[str, RetryStatusEntry]:
        """Immutable view of every live or exhausted job, keyed by task id."""
        return {
            job.task_id: job.snapshot()
            for job in self._jobs.values()
            if session_id is None or job.session_id == session_id
        }

    def exhausted_task_ids(self, session_id: Optional[str] = None) -> Set[str]:
        return {
            task_id
            for task_id, entry in self.snapshot(session_id).items()
            if entry.status is RetryStatus.FAILED
        }

    def pending_task_ids(self, session_id: Optional[str] = None) -> Set[str]:
        return {
            task_id
            for task_id, entry in self.snapshot(session_id).items()
            if entry.status is not RetryStatus.FAILED
        }

    def subscribe(self) -> asyncio.Queue:
        """Returns a channel receiving a RetryEvent for every terminal transition."""
        channel: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: asyncio.Queue) -> None:
        if channel in self._subscribers:
            self._subscribers.remove(channel)

    def _publish(self, job: RetryJob) -> None:
        event = RetryEvent(
            task_id=job.task_id,
            session_id=job.session_id,
            status=job.status,
            attempts=job.attempts,
            last_error=job.last_error,
            cancelled=job.cancelled,
        )
        for channel in list(self._subscribers):
            channel.put_nowait(event)

    async def wait_idle(self) -> None:
        """Waits until no job is running. Exhausted jobs do not keep the queue busy."""
        while self._runners:
            await asyncio.gather(*list(self._runners.values()), return_exceptions=True)

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "boot_id": self.boot_id,
            "booted_at": self.booted_at.isoformat(),
            "pending_jobs": len(self.pending_task_ids()),
            "exhausted_jobs": len(self.exhausted_task_ids()),
            "restarted_recently": timezone.now() - self.booted_at < RECENT_RESTART_WINDOW,
        }
