# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and value objects for the campaign queue.

Models:
    - JobStatus: lifecycle state of a single email job
    - CampaignState: derived state of a whole campaign
    - EmailJob: one recipient's pending send, as persisted
    - CampaignStatus: progress snapshot returned to callers
    - Success / RetryableFailure / TerminalFailure: delivery outcomes
    - Transition: state change decided for a reported outcome
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Lifecycle states of an email job.

    Attributes:
        PENDING: Waiting to be claimed (possibly not before ``next_eligible_at``).
        CLAIMED: Owned by a dispatch cycle, delivery in progress.
        SENT: Delivered; terminal.
        FAILED: Dead-lettered; terminal.
    """

    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    SENT = "SENT"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SENT, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.CLAIMED})


class CampaignState(str, Enum):
    """Campaign-level state derived from the states of its jobs."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_FAILURES = "COMPLETED_WITH_FAILURES"
    FAILED = "FAILED"


class EmailJob(BaseModel):
    """A single recipient's email send tracked by the store."""

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(description="Unique job identifier")]
    campaign_id: Annotated[str, Field(description="Owning campaign")]
    recipient: Annotated[str, Field(description="Destination address")]
    payload: Annotated[
        dict[str, Any],
        Field(default_factory=dict, description="Message content handed to the transport"),
    ]
    status: JobStatus = JobStatus.PENDING
    attempt_count: Annotated[int, Field(default=0, ge=0)]
    next_eligible_at: Optional[float] = None
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[float] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CampaignStatus(BaseModel):
    """Progress snapshot of a campaign, recomputed on every query."""

    campaign_id: str
    status: CampaignState
    percent_complete: Annotated[
        float, Field(ge=0, le=100, description="100 * (SENT + FAILED) / total")
    ]
    total: Annotated[int, Field(ge=0)]
    counts: dict[JobStatus, int]


@dataclass(frozen=True)
class Success:
    """The transport accepted the message."""


@dataclass(frozen=True)
class RetryableFailure:
    """Transient failure; the job may be attempted again."""

    reason: str


@dataclass(frozen=True)
class TerminalFailure:
    """Permanent failure; the job goes straight to ``FAILED``."""

    reason: str


Outcome = Union[Success, RetryableFailure, TerminalFailure]


@dataclass(frozen=True)
class Transition:
    """State applied to a job after a reported outcome."""

    job_id: str
    campaign_id: str
    status: JobStatus
    attempt_count: int
    next_eligible_at: Optional[float] = None
    last_error: Optional[str] = None
    dead_letter: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
