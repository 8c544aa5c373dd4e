# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the campaign delivery engine.

:class:`CampaignEngine` wires the job store, the retry controller, the
worker pool, the dispatcher, the progress aggregator and the notification
sink, and exposes the operations used by the campaign-facing layer.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .backoff import BackoffPolicy
from .config import EngineSettings
from .dispatcher import Dispatcher
from .errors import StoreUnavailable
from .logger import get_logger
from .models import CampaignState, CampaignStatus, EmailJob, JobStatus, Transition
from .notifier import CompositeNotifier, LoggingNotifier, Notifier, WebhookNotifier
from .persistence import JobStore
from .progress import ProgressAggregator
from .retry import ErrorClassifier, RetryController, classify_transport_error
from .transport import MailTransport, SMTPTransport
from .worker_pool import WorkerPool


class CampaignEngine:
    """Coordinate enqueueing, dispatch, retries and progress reporting."""

    def __init__(
        self,
        *,
        db_path: str = "campaign_queue.db",
        transport: Optional[MailTransport] = None,
        notifier: Optional[Notifier] = None,
        logger=None,
        worker_pool_size: int = 10,
        poll_interval: float = 1.0,
        reclaim_interval: float = 30.0,
        liveness_timeout: float = 300.0,
        max_attempts: int = 5,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter: float = 0.0,
        classifier: ErrorClassifier = classify_transport_error,
        send_timeout: Optional[float] = None,
        report_retry_interval: float = 1.0,
        max_recipients: int = 100_000,
        maintenance_interval: float = 60.0,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        """Prepare the runtime collaborators; nothing runs until :meth:`start`."""
        self.logger = logger or get_logger()
        self.backoff = BackoffPolicy(
            base_delay=base_delay,
            max_delay=max_delay,
            max_attempts=max_attempts,
            jitter=jitter,
            rng=rng,
        )
        self.retry = RetryController(self.backoff, clock=clock)
        self.store = JobStore(db_path, retry=self.retry, max_recipients=max_recipients, clock=clock)
        self.aggregator = ProgressAggregator(self.store)
        self.notifier = notifier or LoggingNotifier()
        self.transport = transport
        self._test_mode = bool(test_mode)
        self._maintenance_interval = max(1.0, float(maintenance_interval))
        self._stop = asyncio.Event()
        self._task_maintenance: Optional[asyncio.Task] = None

        self.pool: Optional[WorkerPool] = None
        self.dispatcher: Optional[Dispatcher] = None
        if transport is not None:
            self.pool = WorkerPool(
                self.store,
                transport,
                size=worker_pool_size,
                classifier=classifier,
                send_timeout=send_timeout,
                report_retry_interval=report_retry_interval,
                on_transition=self._on_transition,
                log_delivery_activity=log_delivery_activity,
            )
            self.dispatcher = Dispatcher(
                self.store,
                self.pool,
                poll_interval=poll_interval,
                reclaim_interval=reclaim_interval,
                liveness_timeout=liveness_timeout,
                test_mode=test_mode,
            )
        self._liveness_timeout = float(liveness_timeout)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        transport: Optional[MailTransport] = None,
        notifier: Optional[Notifier] = None,
        **overrides: Any,
    ) -> "CampaignEngine":
        """Build an engine from loaded settings.

        Without an explicit ``transport`` an :class:`SMTPTransport` is created
        when ``smtp_host`` is configured. A configured webhook is added next
        to the logging notifier.
        """
        if transport is None and settings.smtp_host:
            transport = SMTPTransport(
                settings.smtp_host,
                settings.smtp_port,
                user=settings.smtp_user,
                password=settings.smtp_password,
                use_tls=settings.smtp_use_tls,
                timeout=settings.smtp_timeout,
                default_sender=settings.smtp_sender,
                max_connections=overrides.get("worker_pool_size", settings.worker_pool_size),
            )
        if notifier is None:
            notifiers: List[Notifier] = [LoggingNotifier()]
            if settings.webhook_url:
                notifiers.append(
                    WebhookNotifier(
                        settings.webhook_url,
                        token=settings.webhook_token,
                        user=settings.webhook_user,
                        password=settings.webhook_password,
                    )
                )
            notifier = notifiers[0] if len(notifiers) == 1 else CompositeNotifier(notifiers)
        kwargs: Dict[str, Any] = dict(
            db_path=settings.db_path,
            transport=transport,
            notifier=notifier,
            worker_pool_size=settings.worker_pool_size,
            poll_interval=settings.poll_interval,
            reclaim_interval=settings.reclaim_interval,
            liveness_timeout=settings.liveness_timeout,
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            max_recipients=settings.max_recipients,
            test_mode=settings.test_mode,
            log_delivery_activity=settings.log_delivery_activity,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Initialise persistence."""
        await self.store.init_db()

    async def start(self) -> None:
        """Start the dispatcher and maintenance tasks."""
        if self.dispatcher is None:
            raise RuntimeError("Cannot start the engine without a mail transport")
        await self.init()
        self._stop.clear()
        self.dispatcher.start()
        if not self._test_mode:
            self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="campaign-maintenance-loop")
        self.logger.info(
            "Campaign engine started (pool=%d, max_attempts=%d)", self.pool.size, self.backoff.max_attempts
        )

    async def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop claiming, then let in-flight jobs finish for up to ``timeout`` seconds."""
        self._stop.set()
        if self.dispatcher is not None:
            await self.dispatcher.stop()
        if self._task_maintenance is not None:
            self._task_maintenance.cancel()
            await asyncio.gather(self._task_maintenance, return_exceptions=True)
            self._task_maintenance = None
        if self.pool is not None:
            await self.pool.close(timeout)
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        self.logger.info("Campaign engine stopped")

    def run_now(self) -> None:
        """Wake the dispatcher for an immediate cycle."""
        if self.dispatcher is not None:
            self.dispatcher.run_now()

    async def run_cycle(self) -> int:
        """Run a single dispatch cycle inline and return the number of jobs started."""
        if self.dispatcher is None:
            raise RuntimeError("Cannot dispatch without a mail transport")
        return await self.dispatcher.run_cycle()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is in flight."""
        if self.pool is None:
            return True
        return await self.pool.drain(timeout)

    # ---------------------------------------------------------------- operations
    async def enqueue(
        self,
        campaign_id: str,
        recipients: Sequence[Any],
        payload: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        """Persist a campaign's jobs and return their ids once durably stored."""
        job_ids = await self.store.enqueue(campaign_id, recipients, payload)
        self.logger.info("Campaign %s enqueued with %d job(s)", campaign_id, len(job_ids))
        if not self._test_mode:
            self.run_now()
        return job_ids

    async def get_campaign_status(self, campaign_id: str) -> CampaignStatus:
        return await self.aggregator.campaign_status(campaign_id)

    async def list_jobs(self, campaign_id: str, status: Optional[JobStatus] = None) -> List[EmailJob]:
        return await self.store.get_jobs_for_campaign(campaign_id, status)

    async def get_job(self, job_id: str) -> EmailJob:
        return await self.store.get_job(job_id)

    async def list_campaigns(self) -> List[Dict[str, Any]]:
        return await self.store.list_campaigns()

    async def reclaim_stuck(self, older_than: Optional[float] = None) -> int:
        """Release claims older than ``older_than`` (default: the liveness timeout)."""
        threshold = self._liveness_timeout if older_than is None else older_than
        return await self.store.reclaim_stuck(threshold)

    # ------------------------------------------------------------- notifications
    async def _on_transition(self, transition: Transition) -> None:
        """Forward dead-letters and detect finished campaigns after each stored outcome."""
        if transition.dead_letter:
            await self._notify_dead_letter(transition.job_id, transition.campaign_id, transition.last_error or "")
        if transition.is_terminal:
            await self._check_campaign_terminal(transition.campaign_id)

    async def _notify_dead_letter(self, job_id: str, campaign_id: str, reason: str) -> bool:
        """Emit the dead-letter event if this caller is first to flag the job as notified."""
        try:
            if not await self.store.mark_dead_letter_notified(job_id):
                return False
        except StoreUnavailable as exc:
            self.logger.warning("Cannot record dead-letter notification for job %s: %s", job_id, exc)
            return False
        await self._notify("on_terminal_failure", job_id, campaign_id, reason)
        return True

    async def _check_campaign_terminal(self, campaign_id: str) -> bool:
        """Emit the campaign terminal event if this caller is first to see it finished.

        The final status is read before the notified flag is set, so a store
        failure leaves the flag clear for the maintenance sweep.
        """
        try:
            status = await self.aggregator.campaign_status(campaign_id)
            if status.status is CampaignState.IN_PROGRESS:
                return False
            if not await self.store.mark_campaign_notified(campaign_id):
                return False
        except StoreUnavailable as exc:
            self.logger.warning("Cannot check completion of campaign %s: %s", campaign_id, exc)
            return False
        await self._notify("on_campaign_terminal", campaign_id, status.status)
        return True

    async def _notify(self, method: str, *args: Any) -> None:
        try:
            await getattr(self.notifier, method)(*args)
        except Exception:
            self.logger.exception("Notifier %s.%s failed", type(self.notifier).__name__, method)

    async def sweep_dead_letters(self) -> int:
        """Send dead-letter events that were lost between the stored outcome and the hook."""
        notified = 0
        for job in await self.store.unnotified_dead_letters():
            if await self._notify_dead_letter(job.id, job.campaign_id, job.last_error or ""):
                notified += 1
        return notified

    async def sweep_finished_campaigns(self) -> int:
        """Notify finished campaigns whose completion event was missed."""
        notified = 0
        for campaign_id in await self.store.finished_unnotified_campaigns():
            if await self._check_campaign_terminal(campaign_id):
                notified += 1
        return notified

    # ---------------------------------------------------------------- housekeeping
    async def _maintenance_loop(self) -> None:
        """Background coroutine closing idle connections and catching missed notifications."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self._maintenance_interval):
                    await self._stop.wait()
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                return
            try:
                await self.sweep_dead_letters()
                await self.sweep_finished_campaigns()
                cleanup = getattr(self.transport, "cleanup", None)
                if cleanup is not None:
                    await cleanup()
            except StoreUnavailable as exc:
                self.logger.warning("Maintenance skipped, job store unavailable: %s", exc)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in maintenance loop: %s", exc)
