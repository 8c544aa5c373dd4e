# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry and dead-letter decisions for reported delivery outcomes.

The controller is pure: given a claimed job, an outcome and the current time
it returns the :class:`Transition` the store must apply. Error
classification decides whether a transport exception is worth a retry;
it is pluggable because the transport adapter owns that knowledge.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Tuple

import aiosmtplib

from .backoff import BackoffPolicy
from .errors import ConflictError, PermanentError, TransientError
from .models import (
    EmailJob,
    JobStatus,
    Outcome,
    RetryableFailure,
    Success,
    TerminalFailure,
    Transition,
)

ErrorClassifier = Callable[[BaseException], bool]

TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",  # throttled/throttling
)

PERMANENT_PATTERNS = (
    "535",  # Authentication failed
    "authentication failed",
    "wrong_version_number",
    "certificate verify failed",
)


def classify_smtp_error(exc: BaseException) -> Tuple[bool, Optional[int]]:
    """Classify an SMTP level error as temporary or permanent.

    Returns:
        tuple: (is_temporary, smtp_code)
            - is_temporary: True if the error should trigger a retry
            - smtp_code: The SMTP reply code if available, None otherwise
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    elif isinstance(exc, (TransientError, PermanentError)):
        smtp_code = exc.smtp_code

    # Network/timeout errors are temporary
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True, smtp_code
    if isinstance(exc, aiosmtplib.SMTPServerDisconnected):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    for pattern in PERMANENT_PATTERNS:
        if pattern in error_msg:
            return False, smtp_code
    for pattern in TEMPORARY_PATTERNS:
        if pattern in error_msg:
            return True, smtp_code
    if isinstance(exc, OSError):
        return True, smtp_code

    # Unknown errors are retried; the attempt budget still bounds them.
    return True, smtp_code


def classify_transport_error(exc: BaseException) -> bool:
    """Default classifier: return ``True`` when ``exc`` is retryable."""
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, PermanentError):
        return False
    is_temporary, _ = classify_smtp_error(exc)
    return is_temporary


def describe_error(exc: BaseException) -> str:
    """Render an exception as the ``last_error`` text stored on the job."""
    smtp_code = getattr(exc, "smtp_code", None)
    if smtp_code is None and isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    text = str(exc) or exc.__class__.__name__
    if smtp_code and f"(SMTP {smtp_code})" not in text:
        return f"{text} (SMTP {smtp_code})"
    return text


def outcome_from_exception(exc: BaseException, classifier: ErrorClassifier = classify_transport_error) -> Outcome:
    """Turn a transport exception into a delivery outcome."""
    reason = describe_error(exc)
    if classifier(exc):
        return RetryableFailure(reason)
    return TerminalFailure(reason)


class RetryController:
    """Decide the next state of a claimed job from a delivery outcome."""

    def __init__(self, backoff: Optional[BackoffPolicy] = None, clock: Callable[[], float] = time.time):
        self.backoff = backoff or BackoffPolicy()
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self.backoff.max_attempts

    def decide(self, job: EmailJob, outcome: Outcome, now: Optional[float] = None) -> Transition:
        """Return the transition for ``job`` after ``outcome``.

        Every outcome counts as one attempt. A retryable failure goes back
        to ``PENDING`` with a backoff delay until the attempt budget is spent,
        then to ``FAILED``; a terminal failure goes to ``FAILED`` at once.
        """
        if job.status is not JobStatus.CLAIMED:
            raise ConflictError(f"Job '{job.id}' is {job.status.value}, not CLAIMED")
        now = self._clock() if now is None else now
        attempts = job.attempt_count + 1

        if isinstance(outcome, Success):
            return Transition(
                job_id=job.id,
                campaign_id=job.campaign_id,
                status=JobStatus.SENT,
                attempt_count=attempts,
            )

        if isinstance(outcome, TerminalFailure):
            return Transition(
                job_id=job.id,
                campaign_id=job.campaign_id,
                status=JobStatus.FAILED,
                attempt_count=attempts,
                last_error=outcome.reason,
                dead_letter=True,
            )

        if isinstance(outcome, RetryableFailure):
            delay, give_up = self.backoff.plan(attempts)
            if give_up:
                return Transition(
                    job_id=job.id,
                    campaign_id=job.campaign_id,
                    status=JobStatus.FAILED,
                    attempt_count=attempts,
                    last_error=f"Max attempts ({self.max_attempts}) exceeded: {outcome.reason}",
                    dead_letter=True,
                )
            return Transition(
                job_id=job.id,
                campaign_id=job.campaign_id,
                status=JobStatus.PENDING,
                attempt_count=attempts,
                next_eligible_at=now + delay,
                last_error=outcome.reason,
            )

        raise TypeError(f"Unsupported outcome: {outcome!r}")
