# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded pool of execution slots delivering claimed jobs.

The pool owns a counting semaphore sized to the number of slots. The
dispatcher only submits as many jobs as there are free slots, so the
number of concurrent transport calls never exceeds ``size`` whatever the
queue depth.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

from .errors import ConflictError, NotFoundError, PoolSaturatedError, StoreUnavailable
from .logger import get_logger
from .models import EmailJob, JobStatus, Outcome, Success, Transition
from .persistence import JobStore
from .retry import ErrorClassifier, classify_transport_error, outcome_from_exception
from .transport import MailTransport

TransitionHook = Callable[[Transition], Awaitable[None]]


class WorkerPool:
    """Fixed-size set of concurrent delivery slots."""

    def __init__(
        self,
        store: JobStore,
        transport: MailTransport,
        *,
        size: int = 10,
        classifier: ErrorClassifier = classify_transport_error,
        send_timeout: Optional[float] = None,
        report_retry_interval: float = 1.0,
        on_transition: Optional[TransitionHook] = None,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        if size < 1:
            raise ValueError("size must be at least 1")
        self.store = store
        self.transport = transport
        self.size = int(size)
        self.classifier = classifier
        self.send_timeout = send_timeout
        self.report_retry_interval = max(0.0, float(report_retry_interval))
        self.on_transition = on_transition
        self.logger = logger or get_logger("CampaignQueue.workers")
        self._log_delivery_activity = bool(log_delivery_activity)
        self._slots = asyncio.Semaphore(self.size)
        self._tasks: Set[asyncio.Task] = set()
        self._hook_tasks: Set[asyncio.Task] = set()
        self._closing = asyncio.Event()

    @property
    def in_flight(self) -> int:
        """Number of slots currently executing a job."""
        return len(self._tasks)

    @property
    def capacity(self) -> int:
        """Number of free slots."""
        return self.size - len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    async def submit(self, job: EmailJob, worker_token: str) -> asyncio.Task:
        """Start delivering ``job`` in a free slot and return its task.

        Never waits for a slot: raises :class:`PoolSaturatedError` when the
        pool is full or closed.
        """
        if self._closing.is_set():
            raise PoolSaturatedError("Worker pool is closed")
        if self._slots.locked():
            raise PoolSaturatedError(f"All {self.size} worker slots are busy")
        await self._slots.acquire()
        task = asyncio.create_task(self._run_slot(job, worker_token), name=f"worker-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._release)
        return task

    def _release(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if not task.cancelled() and task.exception() is not None:  # pragma: no cover
            self.logger.error("Worker slot %s crashed: %s", task.get_name(), task.exception())

    async def _run_slot(self, job: EmailJob, worker_token: str) -> Optional[Transition]:
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery of job %s to %s (campaign=%s, attempt=%d)",
                job.id,
                job.recipient,
                job.campaign_id,
                job.attempt_count + 1,
            )
        outcome = await self._deliver(job)
        transition = await self._report(job, worker_token, outcome)
        if transition is None:
            return None
        self._log_transition(transition)
        if self.on_transition is not None:
            # the slot is released as soon as the outcome is stored
            hook = asyncio.create_task(self._run_hook(transition), name=f"hook-{job.id}")
            self._hook_tasks.add(hook)
            hook.add_done_callback(self._hook_tasks.discard)
        return transition

    async def _run_hook(self, transition: Transition) -> None:
        try:
            await self.on_transition(transition)
        except Exception:
            self.logger.exception("Transition hook failed for job %s", transition.job_id)

    async def _deliver(self, job: EmailJob) -> Outcome:
        """Invoke the transport and classify the result."""
        try:
            async with asyncio.timeout(self.send_timeout):
                await self.transport.send(job.recipient, dict(job.payload))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return outcome_from_exception(exc, self.classifier)
        return Success()

    async def _report(self, job: EmailJob, worker_token: str, outcome: Outcome) -> Optional[Transition]:
        """Record ``outcome``, retrying while the store is unreachable.

        Stale reports (the job was reclaimed or finished elsewhere) are
        discarded: the stored state is authoritative.
        """
        while True:
            try:
                return await self.store.report_outcome(job.id, outcome, worker_token=worker_token)
            except ConflictError as exc:
                self.logger.warning("Discarding stale outcome for job %s: %s", job.id, exc)
                return None
            except NotFoundError as exc:
                self.logger.error("Cannot report outcome for job %s: %s", job.id, exc)
                return None
            except StoreUnavailable as exc:
                if self._closing.is_set():
                    self.logger.error(
                        "Shutting down before the outcome of job %s was stored (%s); "
                        "it will be reclaimed after the liveness timeout",
                        job.id,
                        exc,
                    )
                    return None
                self.logger.warning(
                    "Job store unavailable while reporting job %s, retrying in %.1fs: %s",
                    job.id,
                    self.report_retry_interval,
                    exc,
                )
                await self._pause(self.report_retry_interval)

    async def _pause(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the pool starts closing."""
        try:
            async with asyncio.timeout(seconds):
                await self._closing.wait()
        except asyncio.TimeoutError:
            return

    def _log_transition(self, transition: Transition) -> None:
        """Emit a log line describing the stored outcome of a delivery attempt."""
        if transition.status is JobStatus.SENT:
            if self._log_delivery_activity:
                self.logger.info("Delivery succeeded for job %s", transition.job_id)
            else:
                self.logger.debug("Delivery succeeded for job %s", transition.job_id)
            return
        if transition.status is JobStatus.PENDING:
            retry_at = (
                datetime.fromtimestamp(float(transition.next_eligible_at), timezone.utc)
                .isoformat()
                .replace("+00:00", "Z")
                if transition.next_eligible_at is not None
                else "-"
            )
            self.logger.warning(
                "Temporary error for job %s (attempt %d): %s - retrying at %s",
                transition.job_id,
                transition.attempt_count,
                transition.last_error,
                retry_at,
            )
            return
        self.logger.error(
            "Job %s failed permanently after %d attempt(s): %s",
            transition.job_id,
            transition.attempt_count,
            transition.last_error,
        )

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight jobs and their hooks; ``True`` when nothing is left running."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        # slots spawn hooks as they finish, so wait for the slots first
        for tasks in (self._tasks, self._hook_tasks):
            if not tasks:
                continue
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _done, pending = await asyncio.wait(set(tasks), timeout=remaining)
            if pending:
                return False
        return True

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs, wait up to ``timeout`` and cancel the rest.

        Cancelled jobs stay ``CLAIMED`` until ``reclaim_stuck`` releases them;
        cancelled hooks leave their notifications to the engine's sweeps.
        """
        self._closing.set()
        if await self.drain(timeout):
            return
        pending = list(self._tasks) + list(self._hook_tasks)
        self.logger.warning("Cancelling %d in-flight job(s) and hook(s) at shutdown", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
