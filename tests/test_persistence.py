import asyncio
import time

import aiosqlite
import pytest

from async_campaign_queue.errors import ConflictError, NotFoundError, StoreUnavailable, ValidationError
from async_campaign_queue.models import JobStatus, RetryableFailure, Success, TerminalFailure
from async_campaign_queue.persistence import JobStore

PAYLOAD = {"from": "news@example.com", "subject": "Hello", "body": "hi"}


async def make_store(tmp_path, name="jobs.db", **kwargs) -> JobStore:
    store = JobStore(str(tmp_path / name), **kwargs)
    await store.init_db()
    return store


@pytest.mark.asyncio
async def test_enqueue_creates_pending_jobs(tmp_path):
    store = await make_store(tmp_path)
    ids = await store.enqueue("spring", ["a@example.com", "b@example.com", "c@example.com"], PAYLOAD)
    assert len(ids) == len(set(ids)) == 3

    jobs = await store.get_jobs_for_campaign("spring")
    assert [job.id for job in jobs] == ids
    assert [job.recipient for job in jobs] == ["a@example.com", "b@example.com", "c@example.com"]
    for job in jobs:
        assert job.status is JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.next_eligible_at is None
        assert job.payload == PAYLOAD
    assert await store.campaign_exists("spring")
    assert await store.count_active_jobs() == 3


@pytest.mark.asyncio
async def test_enqueue_merges_recipient_payload(tmp_path):
    store = await make_store(tmp_path)
    ids = await store.enqueue(
        "merge",
        ["a@example.com", {"recipient": "b@example.com", "payload": {"subject": "Hi Bob", "name": "Bob"}}],
        PAYLOAD,
    )
    second = await store.get_job(ids[1])
    assert second.payload["subject"] == "Hi Bob"
    assert second.payload["name"] == "Bob"
    assert second.payload["from"] == "news@example.com"
    first = await store.get_job(ids[0])
    assert first.payload["subject"] == "Hello"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "campaign_id, recipients, payload",
    [
        ("", ["a@example.com"], None),
        ("c", [], None),
        ("c", "a@example.com", None),
        ("c", ["not-an-address"], None),
        ("c", ["a@example.com", 42], None),
        ("c", ["a@example.com"], ["not", "a", "mapping"]),
        ("c", [{"recipient": "a@example.com", "payload": "oops"}], None),
        ("c", ["a@example.com"], {"when": object()}),
    ],
)
async def test_enqueue_rejects_malformed_requests(tmp_path, campaign_id, recipients, payload):
    store = await make_store(tmp_path)
    with pytest.raises(ValidationError):
        await store.enqueue(campaign_id, recipients, payload)
    assert await store.list_campaigns() == []
    assert await store.count_active_jobs() == 0


@pytest.mark.asyncio
async def test_enqueue_rejects_oversized_campaign(tmp_path):
    store = await make_store(tmp_path, max_recipients=2)
    with pytest.raises(ValidationError):
        await store.enqueue("big", ["a@example.com", "b@example.com", "c@example.com"])
    assert not await store.campaign_exists("big")


@pytest.mark.asyncio
async def test_enqueue_rejects_duplicate_campaign(tmp_path):
    store = await make_store(tmp_path)
    await store.enqueue("dup", ["a@example.com"])
    with pytest.raises(ValidationError):
        await store.enqueue("dup", ["b@example.com"])
    jobs = await store.get_jobs_for_campaign("dup")
    assert [job.recipient for job in jobs] == ["a@example.com"]


@pytest.mark.asyncio
async def test_claim_batch_respects_limit_and_order(tmp_path):
    store = await make_store(tmp_path)
    ids = await store.enqueue("c", [f"user{i}@example.com" for i in range(5)])

    first = await store.claim_batch(2, "cycle-1")
    assert [job.id for job in first] == ids[:2]
    for job in first:
        assert job.status is JobStatus.CLAIMED
        assert job.claimed_by == "cycle-1"
        assert job.claimed_at is not None

    second = await store.claim_batch(10, "cycle-2")
    assert [job.id for job in second] == ids[2:]
    assert await store.claim_batch(10, "cycle-3") == []
    assert await store.claim_batch(0, "cycle-4") == []


@pytest.mark.asyncio
async def test_concurrent_claims_never_overlap(tmp_path):
    store = await make_store(tmp_path)
    await store.enqueue("race", [f"user{i}@example.com" for i in range(40)])

    batches = await asyncio.gather(*(store.claim_batch(15, f"cycle-{n}") for n in range(5)))
    claimed = [job.id for batch in batches for job in batch]
    assert len(claimed) == 40
    assert len(set(claimed)) == 40
    for n, batch in enumerate(batches):
        assert all(job.claimed_by == f"cycle-{n}" for job in batch)


@pytest.mark.asyncio
async def test_report_success(tmp_path):
    store = await make_store(tmp_path)
    [job_id] = await store.enqueue("c", ["a@example.com"])
    await store.claim_batch(1, "cycle-1")

    transition = await store.report_outcome(job_id, Success(), worker_token="cycle-1")
    assert transition.status is JobStatus.SENT

    job = await store.get_job(job_id)
    assert job.status is JobStatus.SENT
    assert job.attempt_count == 1
    assert job.claimed_by is None
    assert job.claimed_at is None
    assert await store.count_active_jobs() == 0


@pytest.mark.asyncio
async def test_report_retryable_failure_defers_job(tmp_path):
    store = await make_store(tmp_path)
    [job_id] = await store.enqueue("c", ["a@example.com"])
    now = time.time()
    await store.claim_batch(1, "cycle-1", now_ts=now)

    await store.report_outcome(job_id, RetryableFailure("busy"), worker_token="cycle-1", now_ts=now)
    job = await store.get_job(job_id)
    assert job.status is JobStatus.PENDING
    assert job.attempt_count == 1
    assert job.last_error == "busy"
    assert job.next_eligible_at == pytest.approx(now + 60)

    assert await store.claim_batch(1, "cycle-2", now_ts=now + 30) == []
    reclaimed = await store.claim_batch(1, "cycle-3", now_ts=now + 60)
    assert [j.id for j in reclaimed] == [job_id]


@pytest.mark.asyncio
async def test_report_terminal_failure(tmp_path):
    store = await make_store(tmp_path)
    [job_id] = await store.enqueue("c", ["a@example.com"])
    await store.claim_batch(1, "cycle-1")

    transition = await store.report_outcome(job_id, TerminalFailure("550 unknown user"), worker_token="cycle-1")
    assert transition.dead_letter is True
    job = await store.get_job(job_id)
    assert job.status is JobStatus.FAILED
    assert job.last_error == "550 unknown user"


@pytest.mark.asyncio
async def test_report_outcome_conflicts(tmp_path):
    store = await make_store(tmp_path)
    [job_id] = await store.enqueue("c", ["a@example.com"])

    # not claimed yet
    with pytest.raises(ConflictError):
        await store.report_outcome(job_id, Success(), worker_token="cycle-1")

    await store.claim_batch(1, "cycle-1")
    with pytest.raises(ConflictError):
        await store.report_outcome(job_id, Success(), worker_token="someone-else")

    await store.report_outcome(job_id, Success(), worker_token="cycle-1")
    with pytest.raises(ConflictError):
        await store.report_outcome(job_id, TerminalFailure("late"), worker_token="cycle-1")
    assert (await store.get_job(job_id)).status is JobStatus.SENT

    with pytest.raises(NotFoundError):
        await store.report_outcome("missing", Success(), worker_token="cycle-1")


@pytest.mark.asyncio
async def test_reclaim_stuck_releases_old_claims(tmp_path):
    store = await make_store(tmp_path)
    old, fresh = await store.enqueue("c", ["a@example.com", "b@example.com"])
    now = time.time()
    await store.claim_batch(1, "crashed", now_ts=now - 600)
    await store.claim_batch(1, "alive", now_ts=now)

    assert await store.reclaim_stuck(300, now_ts=now) == 1
    assert await store.reclaim_stuck(300, now_ts=now) == 0

    job = await store.get_job(old)
    assert job.status is JobStatus.PENDING
    assert job.attempt_count == 0
    assert job.claimed_by is None
    assert job.next_eligible_at is None
    assert (await store.get_job(fresh)).status is JobStatus.CLAIMED

    with pytest.raises(ConflictError):
        await store.report_outcome(old, Success(), worker_token="crashed")

    again = await store.claim_batch(5, "cycle-2", now_ts=now)
    assert [j.id for j in again] == [old]


@pytest.mark.asyncio
async def test_reclaim_stuck_rejects_negative_threshold(tmp_path):
    store = await make_store(tmp_path)
    with pytest.raises(ValueError):
        await store.reclaim_stuck(-1)


@pytest.mark.asyncio
async def test_counts_by_status(tmp_path):
    store = await make_store(tmp_path)
    ids = await store.enqueue("c", ["a@example.com", "b@example.com", "c@example.com"])
    await store.claim_batch(2, "cycle-1")
    await store.report_outcome(ids[0], Success(), worker_token="cycle-1")

    counts = await store.counts_by_status("c")
    assert counts == {
        JobStatus.PENDING: 1,
        JobStatus.CLAIMED: 1,
        JobStatus.SENT: 1,
        JobStatus.FAILED: 0,
    }
    sent = await store.get_jobs_for_campaign("c", JobStatus.SENT)
    assert [job.id for job in sent] == [ids[0]]


@pytest.mark.asyncio
async def test_unknown_campaign_and_job(tmp_path):
    store = await make_store(tmp_path)
    with pytest.raises(NotFoundError):
        await store.counts_by_status("nope")
    with pytest.raises(NotFoundError):
        await store.get_jobs_for_campaign("nope")
    with pytest.raises(NotFoundError):
        await store.get_job("nope")


@pytest.mark.asyncio
async def test_mark_campaign_notified_only_once_when_finished(tmp_path):
    store = await make_store(tmp_path)
    [job_id] = await store.enqueue("c", ["a@example.com"])
    assert await store.finished_unnotified_campaigns() == []
    assert await store.mark_campaign_notified("c") is False

    await store.claim_batch(1, "cycle-1")
    await store.report_outcome(job_id, Success(), worker_token="cycle-1")
    assert await store.finished_unnotified_campaigns() == ["c"]

    assert await store.mark_campaign_notified("c") is True
    assert await store.mark_campaign_notified("c") is False
    assert await store.finished_unnotified_campaigns() == []
    [row] = await store.list_campaigns()
    assert row["id"] == "c"
    assert row["total"] == 1
    assert row["terminal_notified_at"] is not None


@pytest.mark.asyncio
async def test_mark_dead_letter_notified_only_once(tmp_path):
    store = await make_store(tmp_path)
    failed, sent = await store.enqueue("c", ["a@example.com", "b@example.com"])
    await store.claim_batch(2, "cycle-1")
    await store.report_outcome(failed, TerminalFailure("550 unknown user"), worker_token="cycle-1")
    await store.report_outcome(sent, Success(), worker_token="cycle-1")

    assert [job.id for job in await store.unnotified_dead_letters()] == [failed]
    assert await store.mark_dead_letter_notified(sent) is False
    assert await store.mark_dead_letter_notified(failed) is True
    assert await store.mark_dead_letter_notified(failed) is False
    assert await store.unnotified_dead_letters() == []


@pytest.mark.asyncio
async def test_init_db_adds_dead_letter_column_to_existing_schema(tmp_path):
    path = str(tmp_path / "old.db")
    async with aiosqlite.connect(path) as db:
        await db.executescript(
            """
            CREATE TABLE campaigns (
                id TEXT PRIMARY KEY, total INTEGER NOT NULL, created_at REAL NOT NULL,
                terminal_notified_at REAL
            );
            CREATE TABLE jobs (
                id TEXT PRIMARY KEY, campaign_id TEXT NOT NULL, seq INTEGER NOT NULL,
                recipient TEXT NOT NULL, payload TEXT NOT NULL, status TEXT NOT NULL DEFAULT 'PENDING',
                attempt_count INTEGER NOT NULL DEFAULT 0, next_eligible_at REAL, last_error TEXT,
                claimed_by TEXT, claimed_at REAL, created_at REAL NOT NULL, updated_at REAL NOT NULL
            );
            """
        )
        await db.commit()

    store = JobStore(path)
    await store.init_db()
    await store.init_db()
    [job_id] = await store.enqueue("c", ["a@example.com"])
    await store.claim_batch(1, "cycle-1")
    await store.report_outcome(job_id, TerminalFailure("550"), worker_token="cycle-1")
    assert await store.mark_dead_letter_notified(job_id) is True


@pytest.mark.asyncio
async def test_unreachable_store(tmp_path):
    store = JobStore(str(tmp_path / "missing-dir" / "jobs.db"))
    with pytest.raises(StoreUnavailable):
        await store.init_db()
    with pytest.raises(StoreUnavailable):
        await store.claim_batch(1, "cycle-1")
