# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy shared by the store, the workers and the engine."""

from __future__ import annotations

from typing import Optional


class CampaignQueueError(RuntimeError):
    """Base class for every error raised by the campaign queue."""

    code = "campaign_queue_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)


class ValidationError(CampaignQueueError):
    """Malformed enqueue request; nothing was persisted."""

    code = "validation_error"


class ConflictError(CampaignQueueError):
    """Outcome reported for a job the reporter no longer owns."""

    code = "conflict"


class NotFoundError(CampaignQueueError):
    """Referenced job or campaign does not exist."""

    code = "not_found"


class StoreUnavailable(CampaignQueueError):
    """The job store cannot be reached."""

    code = "store_unavailable"


class PoolSaturatedError(CampaignQueueError):
    """No free execution slot in the worker pool."""

    code = "pool_saturated"


class TransportError(CampaignQueueError):
    """Failure reported by the mail transport."""

    code = "transport_error"

    def __init__(self, message: str = "", smtp_code: Optional[int] = None):
        super().__init__(message)
        self.smtp_code = smtp_code


class TransientError(TransportError):
    """Temporary transport failure; the job is retried."""

    code = "transient_transport_error"


class PermanentError(TransportError):
    """Permanent transport failure; the job is dead-lettered."""

    code = "permanent_transport_error"
