"""Tests for campaign progress aggregation."""

import pytest

from async_campaign_queue.errors import NotFoundError
from async_campaign_queue.models import CampaignState, JobStatus, Success, TerminalFailure
from async_campaign_queue.persistence import JobStore
from async_campaign_queue.progress import ProgressAggregator, derive_campaign_state, percent_complete


def counts(pending=0, claimed=0, sent=0, failed=0):
    return {
        JobStatus.PENDING: pending,
        JobStatus.CLAIMED: claimed,
        JobStatus.SENT: sent,
        JobStatus.FAILED: failed,
    }


@pytest.mark.parametrize(
    "job_counts, expected",
    [
        (counts(pending=3), CampaignState.IN_PROGRESS),
        (counts(claimed=1, sent=2), CampaignState.IN_PROGRESS),
        (counts(pending=1, failed=2), CampaignState.IN_PROGRESS),
        (counts(sent=3), CampaignState.COMPLETED),
        (counts(sent=2, failed=1), CampaignState.COMPLETED_WITH_FAILURES),
        (counts(failed=3), CampaignState.FAILED),
        (counts(), CampaignState.IN_PROGRESS),
    ],
)
def test_derive_campaign_state(job_counts, expected):
    assert derive_campaign_state(job_counts) is expected


def test_percent_complete():
    assert percent_complete(counts(pending=3)) == 0.0
    assert percent_complete(counts(pending=2, sent=1, failed=1)) == 50.0
    assert percent_complete(counts(sent=3, failed=1)) == 100.0
    assert percent_complete(counts()) == 0.0


def test_failed_jobs_count_as_complete():
    assert percent_complete(counts(claimed=1, failed=3)) == 75.0


@pytest.mark.asyncio
async def test_aggregator_reads_store(tmp_path):
    store = JobStore(str(tmp_path / "progress.db"))
    await store.init_db()
    ids = await store.enqueue("c", ["a@example.com", "b@example.com", "c@example.com", "d@example.com"])
    aggregator = ProgressAggregator(store)

    status = await aggregator.campaign_status("c")
    assert status.status is CampaignState.IN_PROGRESS
    assert status.percent_complete == 0.0
    assert status.total == 4

    await store.claim_batch(4, "cycle-1")
    await store.report_outcome(ids[0], Success(), worker_token="cycle-1")
    await store.report_outcome(ids[1], TerminalFailure("rejected"), worker_token="cycle-1")

    status = await aggregator.campaign_status("c")
    assert status.status is CampaignState.IN_PROGRESS
    assert status.percent_complete == 50.0
    assert status.counts[JobStatus.CLAIMED] == 2

    await store.report_outcome(ids[2], Success(), worker_token="cycle-1")
    await store.report_outcome(ids[3], Success(), worker_token="cycle-1")
    status = await aggregator.campaign_status("c")
    assert status.status is CampaignState.COMPLETED_WITH_FAILURES
    assert status.percent_complete == 100.0


@pytest.mark.asyncio
async def test_aggregator_unknown_campaign(tmp_path):
    store = JobStore(str(tmp_path / "progress.db"))
    await store.init_db()
    with pytest.raises(NotFoundError):
        await ProgressAggregator(store).campaign_status("missing")
