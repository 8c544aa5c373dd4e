# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Notification sinks receiving dead-letter and campaign completion events."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import aiohttp

from .logger import get_logger
from .models import CampaignState

EventCallable = Callable[[Dict[str, Any]], Awaitable[None]]


def _utc_now_iso() -> str:
    """Return the current UTC timestamp as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def terminal_failure_event(job_id: str, campaign_id: str, reason: str) -> Dict[str, Any]:
    return {
        "event": "terminal_failure",
        "job_id": job_id,
        "campaign_id": campaign_id,
        "reason": reason,
        "timestamp": _utc_now_iso(),
    }


def campaign_terminal_event(campaign_id: str, final_status: CampaignState) -> Dict[str, Any]:
    return {
        "event": "campaign_terminal",
        "campaign_id": campaign_id,
        "status": CampaignState(final_status).value,
        "timestamp": _utc_now_iso(),
    }


class Notifier:
    """Base notifier; subclasses forward events somewhere useful."""

    async def on_terminal_failure(self, job_id: str, campaign_id: str, reason: str) -> None:
        """Called once when a job is dead-lettered."""

    async def on_campaign_terminal(self, campaign_id: str, final_status: CampaignState) -> None:
        """Called once when every job of a campaign reached a terminal state."""


class LoggingNotifier(Notifier):
    """Write events to the service log."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("CampaignQueue.notifications")

    async def on_terminal_failure(self, job_id: str, campaign_id: str, reason: str) -> None:
        self.logger.warning("Job %s of campaign %s dead-lettered: %s", job_id, campaign_id, reason)

    async def on_campaign_terminal(self, campaign_id: str, final_status: CampaignState) -> None:
        self.logger.info("Campaign %s finished with status %s", campaign_id, CampaignState(final_status).value)


class CallbackNotifier(Notifier):
    """Forward event dictionaries to an async callable."""

    def __init__(self, callback: EventCallable):
        self._callback = callback

    async def on_terminal_failure(self, job_id: str, campaign_id: str, reason: str) -> None:
        await self._callback(terminal_failure_event(job_id, campaign_id, reason))

    async def on_campaign_terminal(self, campaign_id: str, final_status: CampaignState) -> None:
        await self._callback(campaign_terminal_event(campaign_id, final_status))


class WebhookNotifier(Notifier):
    """POST events as JSON to an HTTP endpoint.

    Authentication uses a bearer token when ``token`` is set, otherwise
    HTTP basic auth when ``user`` is set. Delivery problems are logged and
    never propagated: a failed notification must not fail the job.
    """

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        logger=None,
    ):
        self.url = url
        self._token = token
        self._user = user
        self._password = password
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or get_logger("CampaignQueue.notifications")

    async def _post(self, event: Dict[str, Any]) -> None:
        headers: Dict[str, str] = {}
        auth = None
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        elif self._user:
            auth = aiohttp.BasicAuth(self._user, self._password or "")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.url, json=event, auth=auth, headers=headers or None) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Notification %s to %s failed: %s", event.get("event"), self.url, exc)
            return
        self.logger.debug("Notification %s delivered to %s", event.get("event"), self.url)

    async def on_terminal_failure(self, job_id: str, campaign_id: str, reason: str) -> None:
        await self._post(terminal_failure_event(job_id, campaign_id, reason))

    async def on_campaign_terminal(self, campaign_id: str, final_status: CampaignState) -> None:
        await self._post(campaign_terminal_event(campaign_id, final_status))


class CompositeNotifier(Notifier):
    """Fan events out to several notifiers, isolating their failures."""

    def __init__(self, notifiers: Iterable[Notifier], logger=None):
        self.notifiers = list(notifiers)
        self.logger = logger or get_logger("CampaignQueue.notifications")

    async def _fan_out(self, method: str, *args: Any) -> None:
        results = await asyncio.gather(
            *(getattr(notifier, method)(*args) for notifier in self.notifiers),
            return_exceptions=True,
        )
        for notifier, result in zip(self.notifiers, results):
            if isinstance(result, Exception):
                self.logger.error("%s.%s failed: %s", type(notifier).__name__, method, result)

    async def on_terminal_failure(self, job_id: str, campaign_id: str, reason: str) -> None:
        await self._fan_out("on_terminal_failure", job_id, campaign_id, reason)

    async def on_campaign_terminal(self, campaign_id: str, final_status: CampaignState) -> None:
        await self._fan_out("on_campaign_terminal", campaign_id, final_status)
