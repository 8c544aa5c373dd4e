# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed job store used by the campaign dispatcher.

Every coordination point is a conditional update on a single job row:
a claim only succeeds while the row is still ``PENDING`` and an outcome
report only succeeds while the row is still ``CLAIMED`` by the reporter.
Multi-statement operations run inside ``BEGIN IMMEDIATE`` transactions so
concurrent connections serialise on the SQLite write lock.
"""

from __future__ import annotations

import json
import re
import sqlite3
import time
import uuid
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import ConflictError, NotFoundError, StoreUnavailable, ValidationError
from .models import ACTIVE_STATUSES, EmailJob, JobStatus, Outcome, Transition
from .retry import RetryController

DEFAULT_DB_PATH = "campaign_queue.db"
DEFAULT_MAX_RECIPIENTS = 100_000

_ADDRESS_RE = re.compile(r"^[^@\s<>,;]+@[^@\s<>,;]+\.[^@\s<>,;.]+$")

_JOB_COLUMNS = (
    "id, campaign_id, recipient, payload, status, attempt_count, next_eligible_at, "
    "last_error, claimed_by, claimed_at, created_at, updated_at"
)

_ACTIVE_SQL = ", ".join(f"'{status.value}'" for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value))


class JobStore:
    """Durable record of every email job and its lifecycle state."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        *,
        retry: Optional[RetryController] = None,
        busy_timeout: float = 5.0,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        clock: Callable[[], float] = time.time,
    ):
        """Persist data to the given database file."""
        self.db_path = db_path or DEFAULT_DB_PATH
        self.retry = retry or RetryController(clock=clock)
        self.busy_timeout = float(busy_timeout)
        self.max_recipients = max(1, int(max_recipients))
        self._clock = clock

    # ---------------------------------------------------------------- plumbing
    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open an autocommit connection, mapping driver failures to ``StoreUnavailable``."""
        try:
            db = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(f"Cannot open job store '{self.db_path}': {exc}") from exc
        try:
            db.row_factory = aiosqlite.Row
            yield db
        except sqlite3.OperationalError as exc:
            raise StoreUnavailable(f"Job store error: {exc}") from exc
        finally:
            await db.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the block inside a write transaction taken up front."""
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    def _now(self, now_ts: Optional[float]) -> float:
        return self._clock() if now_ts is None else float(now_ts)

    @staticmethod
    def _row_to_job(row: Mapping[str, Any]) -> EmailJob:
        data = dict(row)
        payload = data.pop("payload", None)
        try:
            data["payload"] = json.loads(payload) if payload else {}
        except json.JSONDecodeError:
            data["payload"] = {"raw_payload": payload}
        data["status"] = JobStatus(data["status"])
        return EmailJob(**data)

    async def _fetch_job(self, db: aiosqlite.Connection, job_id: str) -> Optional[EmailJob]:
        async with db.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id=?", (job_id,)) as cur:
            row = await cur.fetchone()
        return self._row_to_job(row) if row else None

    @staticmethod
    async def _campaign_exists(db: aiosqlite.Connection, campaign_id: str) -> bool:
        async with db.execute("SELECT 1 FROM campaigns WHERE id=?", (campaign_id,)) as cur:
            return await cur.fetchone() is not None

    async def init_db(self) -> None:
        """Create the schema if it does not exist yet."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    total INTEGER NOT NULL,
                    created_at REAL NOT NULL,
                    terminal_notified_at REAL
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT NOT NULL REFERENCES campaigns(id),
                    seq INTEGER NOT NULL,
                    recipient TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK (status IN ('PENDING', 'CLAIMED', 'SENT', 'FAILED')),
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    next_eligible_at REAL,
                    last_error TEXT,
                    claimed_by TEXT,
                    claimed_at REAL,
                    dead_letter_notified_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_claimable ON jobs(status, next_eligible_at);
                CREATE INDEX IF NOT EXISTS idx_jobs_campaign_status ON jobs(campaign_id, status);
                CREATE INDEX IF NOT EXISTS idx_jobs_claimed_at ON jobs(status, claimed_at);
                """
            )
            async with db.execute("PRAGMA table_info(jobs)") as cur:
                columns = {row["name"] for row in await cur.fetchall()}
            if "dead_letter_notified_at" not in columns:
                await db.execute("ALTER TABLE jobs ADD COLUMN dead_letter_notified_at REAL")

    # ------------------------------------------------------------------ enqueue
    def _normalise_recipients(
        self, campaign_id: Any, recipients: Any, payload: Any
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Validate an enqueue request and return ``(address, payload)`` pairs."""
        if not isinstance(campaign_id, str) or not campaign_id.strip():
            raise ValidationError("campaign_id must be a non-empty string")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be a mapping")
        if isinstance(recipients, (str, bytes)) or not isinstance(recipients, Sequence):
            raise ValidationError("recipients must be a list")
        if not recipients:
            raise ValidationError("recipients must not be empty")
        if len(recipients) > self.max_recipients:
            raise ValidationError(f"Cannot enqueue more than {self.max_recipients} recipients at once")

        entries: List[Tuple[str, Dict[str, Any]]] = []
        for index, item in enumerate(recipients):
            extra: Any = None
            if isinstance(item, Mapping):
                address = item.get("recipient")
                extra = item.get("payload")
            else:
                address = item
            if not isinstance(address, str) or not _ADDRESS_RE.match(address.strip()):
                raise ValidationError(f"invalid recipient at position {index}: {address!r}")
            if extra is not None and not isinstance(extra, Mapping):
                raise ValidationError(f"payload of recipient at position {index} must be a mapping")
            merged = {**payload, **(extra or {})}
            try:
                json.dumps(merged)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"payload of recipient at position {index} is not serialisable: {exc}"
                ) from exc
            entries.append((address.strip(), merged))
        return entries

    async def enqueue(
        self,
        campaign_id: str,
        recipients: Sequence[Any],
        payload: Optional[Mapping[str, Any]] = None,
        *,
        now_ts: Optional[float] = None,
    ) -> List[str]:
        """Create the campaign and one ``PENDING`` job per recipient, atomically.

        Recipients are address strings or mappings ``{"recipient": ..., "payload": {...}}``
        whose payload is merged over the campaign ``payload``. Returns the job ids
        in recipient order.
        """
        entries = self._normalise_recipients(campaign_id, recipients, payload)
        now = self._now(now_ts)
        rows = [
            (uuid.uuid4().hex, campaign_id, seq, address, json.dumps(data), now, now)
            for seq, (address, data) in enumerate(entries)
        ]
        async with self._transaction() as db:
            if await self._campaign_exists(db, campaign_id):
                raise ValidationError(f"Campaign '{campaign_id}' already exists")
            await db.execute(
                "INSERT INTO campaigns (id, total, created_at) VALUES (?, ?, ?)",
                (campaign_id, len(rows), now),
            )
            await db.executemany(
                """
                INSERT INTO jobs (id, campaign_id, seq, recipient, payload, status, attempt_count,
                                  created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'PENDING', 0, ?, ?)
                """,
                rows,
            )
        return [row[0] for row in rows]

    # ----------------------------------------------------------------- claiming
    async def claim_batch(
        self, limit: int, worker_token: str, *, now_ts: Optional[float] = None
    ) -> List[EmailJob]:
        """Claim up to ``limit`` ready jobs for ``worker_token``.

        A job is ready when ``PENDING`` and its ``next_eligible_at`` is unset or
        not in the future. The claim is a conditional update on each row, so
        no two callers ever receive the same job.
        """
        if limit <= 0:
            return []
        if not worker_token:
            raise ValueError("worker_token is required")
        now = self._now(now_ts)
        async with self._transaction() as db:
            async with db.execute(
                """
                SELECT id FROM jobs
                WHERE status = 'PENDING'
                  AND (next_eligible_at IS NULL OR next_eligible_at <= ?)
                ORDER BY created_at ASC, seq ASC
                LIMIT ?
                """,
                (now, int(limit)),
            ) as cur:
                candidates = [row["id"] for row in await cur.fetchall()]

            claimed: List[str] = []
            for job_id in candidates:
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET status = 'CLAIMED', claimed_by = ?, claimed_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'PENDING'
                    """,
                    (worker_token, now, now, job_id),
                )
                if cursor.rowcount == 1:
                    claimed.append(job_id)

            jobs = []
            for job_id in claimed:
                job = await self._fetch_job(db, job_id)
                if job is not None:
                    jobs.append(job)
        return jobs

    async def report_outcome(
        self,
        job_id: str,
        outcome: Outcome,
        *,
        worker_token: str,
        now_ts: Optional[float] = None,
    ) -> Transition:
        """Apply the transition decided for ``outcome`` to a claimed job.

        Raises:
            NotFoundError: the job does not exist.
            ConflictError: the job is not currently claimed by ``worker_token``.
        """
        now = self._now(now_ts)
        async with self._transaction() as db:
            job = await self._fetch_job(db, job_id)
            if job is None:
                raise NotFoundError(f"Job '{job_id}' not found")
            if job.status is not JobStatus.CLAIMED or job.claimed_by != worker_token:
                raise ConflictError(
                    f"Job '{job_id}' is {job.status.value} (owner={job.claimed_by or '-'}), "
                    f"stale report from {worker_token}"
                )
            transition = self.retry.decide(job, outcome, now)
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status = ?, attempt_count = ?, next_eligible_at = ?, last_error = ?,
                    claimed_by = NULL, claimed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'CLAIMED' AND claimed_by = ?
                """,
                (
                    transition.status.value,
                    transition.attempt_count,
                    transition.next_eligible_at,
                    transition.last_error,
                    now,
                    job_id,
                    worker_token,
                ),
            )
            if cursor.rowcount != 1:
                raise ConflictError(f"Job '{job_id}' changed owner while reporting")
        return transition

    async def reclaim_stuck(self, older_than: float, *, now_ts: Optional[float] = None) -> int:
        """Release jobs claimed more than ``older_than`` seconds ago.

        Released jobs are immediately eligible again and keep their attempt
        count. Returns the number of jobs released.
        """
        if older_than < 0:
            raise ValueError("older_than must not be negative")
        now = self._now(now_ts)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status = 'PENDING', claimed_by = NULL, claimed_at = NULL,
                    next_eligible_at = NULL, updated_at = ?
                WHERE status = 'CLAIMED' AND claimed_at < ?
                """,
                (now, now - float(older_than)),
            )
            return cursor.rowcount

    # -------------------------------------------------------------------- reads
    async def get_job(self, job_id: str) -> EmailJob:
        """Fetch a single job or raise :class:`NotFoundError`."""
        async with self._connect() as db:
            job = await self._fetch_job(db, job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    async def campaign_exists(self, campaign_id: str) -> bool:
        async with self._connect() as db:
            return await self._campaign_exists(db, campaign_id)

    async def get_jobs_for_campaign(
        self, campaign_id: str, status: Optional[JobStatus] = None
    ) -> List[EmailJob]:
        """Return the jobs of a campaign in recipient order."""
        query = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE campaign_id = ?"
        params: Tuple[Any, ...] = (campaign_id,)
        if status is not None:
            query += " AND status = ?"
            params += (JobStatus(status).value,)
        query += " ORDER BY seq ASC"
        async with self._connect() as db:
            if not await self._campaign_exists(db, campaign_id):
                raise NotFoundError(f"Campaign '{campaign_id}' not found")
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def counts_by_status(self, campaign_id: str) -> Dict[JobStatus, int]:
        """Return the number of jobs of a campaign per status, zero filled."""
        counts = {status: 0 for status in JobStatus}
        async with self._connect() as db:
            if not await self._campaign_exists(db, campaign_id):
                raise NotFoundError(f"Campaign '{campaign_id}' not found")
            async with db.execute(
                "SELECT status, COUNT(*) AS total FROM jobs WHERE campaign_id = ? GROUP BY status",
                (campaign_id,),
            ) as cur:
                for row in await cur.fetchall():
                    counts[JobStatus(row["status"])] = int(row["total"])
        return counts

    async def count_active_jobs(self) -> int:
        """Return the number of jobs not yet in a terminal state."""
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM jobs WHERE status IN ({_ACTIVE_SQL})") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def list_campaigns(self) -> List[Dict[str, Any]]:
        """Return every campaign row, newest first."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, total, created_at, terminal_notified_at FROM campaigns ORDER BY created_at DESC, id ASC"
            ) as cur:
                rows = await cur.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------ notifications
    async def unnotified_dead_letters(self) -> List[EmailJob]:
        """Return ``FAILED`` jobs whose dead-letter event was never recorded as sent."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status = 'FAILED' AND dead_letter_notified_at IS NULL
                ORDER BY updated_at ASC, seq ASC
                """
            ) as cur:
                rows = await cur.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def mark_dead_letter_notified(self, job_id: str, *, now_ts: Optional[float] = None) -> bool:
        """Flag a dead-lettered job as notified; ``True`` only for the first caller."""
        now = self._now(now_ts)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET dead_letter_notified_at = ?
                WHERE id = ? AND status = 'FAILED' AND dead_letter_notified_at IS NULL
                """,
                (now, job_id),
            )
            return cursor.rowcount == 1

    async def finished_unnotified_campaigns(self) -> List[str]:
        """Return campaigns whose jobs are all terminal but that were never notified."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT c.id FROM campaigns c
                WHERE c.terminal_notified_at IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM jobs j WHERE j.campaign_id = c.id AND j.status IN ({_ACTIVE_SQL})
                  )
                ORDER BY c.created_at ASC, c.id ASC
                """
            ) as cur:
                rows = await cur.fetchall()
        return [row["id"] for row in rows]

    async def mark_campaign_notified(self, campaign_id: str, *, now_ts: Optional[float] = None) -> bool:
        """Flag a finished campaign as notified; ``True`` only for the first caller.

        The flag is set only when no job of the campaign is still pending or
        claimed, so the terminal notification fires exactly once.
        """
        now = self._now(now_ts)
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE campaigns
                SET terminal_notified_at = ?
                WHERE id = ?
                  AND terminal_notified_at IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM jobs WHERE campaign_id = ? AND status IN ({_ACTIVE_SQL})
                  )
                """,
                (now, campaign_id, campaign_id),
            )
            return cursor.rowcount == 1
