# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic dispatcher claiming ready jobs into the worker pool."""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from typing import Callable, Optional

from .errors import PoolSaturatedError, StoreUnavailable
from .logger import get_logger
from .persistence import JobStore
from .worker_pool import WorkerPool

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_RECLAIM_INTERVAL = 30.0
DEFAULT_LIVENESS_TIMEOUT = 300.0


class Dispatcher:
    """Claim jobs up to the free worker capacity on a fixed interval.

    A cycle never waits for the jobs it submits: backpressure comes only
    from claiming no more than ``pool.capacity`` jobs. Stuck claims are
    released on an independent, slower interval.
    """

    def __init__(
        self,
        store: JobStore,
        pool: WorkerPool,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        reclaim_interval: float = DEFAULT_RECLAIM_INTERVAL,
        liveness_timeout: float = DEFAULT_LIVENESS_TIMEOUT,
        test_mode: bool = False,
        name: str = "dispatcher",
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self.store = store
        self.pool = pool
        self.poll_interval = max(0.05, float(poll_interval))
        self.reclaim_interval = max(0.0, float(reclaim_interval))
        self.liveness_timeout = max(0.0, float(liveness_timeout))
        self.test_mode = bool(test_mode)
        self.token_prefix = f"{name}-{uuid.uuid4().hex[:12]}"
        self.logger = logger or get_logger("CampaignQueue.dispatcher")
        self._clock = clock
        self._cycle = 0
        self._last_reclaim: Optional[float] = None
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _next_token(self) -> str:
        self._cycle += 1
        return f"{self.token_prefix}-{self._cycle}"

    def _reclaim_due(self) -> bool:
        if self._last_reclaim is None:
            return True
        return (self._clock() - self._last_reclaim) >= self.reclaim_interval

    async def reclaim(self) -> int:
        """Release claims older than the liveness timeout."""
        released = await self.store.reclaim_stuck(self.liveness_timeout)
        self._last_reclaim = self._clock()
        if released:
            self.logger.warning("Reclaimed %d stuck job(s) older than %.0fs", released, self.liveness_timeout)
        return released

    async def run_cycle(self) -> int:
        """Run one dispatch cycle and return the number of jobs submitted.

        When the store is unavailable the cycle is skipped; nothing is
        assumed about job state and the next cycle tries again.
        """
        try:
            if self._reclaim_due():
                await self.reclaim()
            capacity = self.pool.capacity
            if capacity <= 0:
                self.logger.debug("Worker pool saturated (%d in flight), nothing claimed", self.pool.in_flight)
                return 0
            token = self._next_token()
            jobs = await self.store.claim_batch(capacity, token)
        except StoreUnavailable as exc:
            self.logger.warning("Job store unavailable, skipping dispatch cycle: %s", exc)
            return 0

        submitted = 0
        for job in jobs:
            try:
                await self.pool.submit(job, token)
            except PoolSaturatedError as exc:
                # The claim stands; the liveness timeout hands the job back.
                self.logger.error("Could not start job %s: %s", job.id, exc)
                continue
            submitted += 1
        if submitted:
            self.logger.debug("Dispatch cycle %s submitted %d job(s)", token, submitted)
        return submitted

    async def _loop(self) -> None:
        self.logger.debug("Dispatch loop started (%s)", self.token_prefix)
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self.test_mode:
                await self._wait_for_wakeup(math.inf)
            first_iteration = False
            if self._stop.is_set():
                break
            try:
                await self.run_cycle()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            await self._wait_for_wakeup(math.inf if self.test_mode else self.poll_interval)
        self.logger.debug("Dispatch loop stopped (%s)", self.token_prefix)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups via :meth:`run_now`."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    def run_now(self) -> None:
        """Wake the loop for an immediate cycle."""
        self._wake_event.set()

    def start(self) -> None:
        """Start the periodic dispatch task."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="campaign-dispatch-loop")

    async def stop(self) -> None:
        """Stop the periodic task; in-flight jobs are left to the pool."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
