# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign progress derived from per-status job counts."""

from __future__ import annotations

from typing import Mapping

from .models import CampaignState, CampaignStatus, JobStatus
from .persistence import JobStore


def percent_complete(counts: Mapping[JobStatus, int]) -> float:
    """Return ``100 * (SENT + FAILED) / total``; ``0.0`` for an empty campaign."""
    total = sum(counts.values())
    if not total:
        return 0.0
    done = counts.get(JobStatus.SENT, 0) + counts.get(JobStatus.FAILED, 0)
    return 100.0 * done / total


def derive_campaign_state(counts: Mapping[JobStatus, int]) -> CampaignState:
    total = sum(counts.values())
    sent = counts.get(JobStatus.SENT, 0)
    failed = counts.get(JobStatus.FAILED, 0)
    if sent + failed < total or total == 0:
        return CampaignState.IN_PROGRESS
    if failed == 0:
        return CampaignState.COMPLETED
    if sent == 0:
        return CampaignState.FAILED
    return CampaignState.COMPLETED_WITH_FAILURES


class ProgressAggregator:
    """Read-only view computing campaign status on every query."""

    def __init__(self, store: JobStore):
        self.store = store

    async def campaign_status(self, campaign_id: str) -> CampaignStatus:
        counts = await self.store.counts_by_status(campaign_id)
        return CampaignStatus(
            campaign_id=campaign_id,
            status=derive_campaign_state(counts),
            percent_complete=percent_complete(counts),
            total=sum(counts.values()),
            counts=counts,
        )
