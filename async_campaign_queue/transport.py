# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail transport collaborators invoked by the worker slots.

A transport exposes ``send(recipient, payload)``: it returns on success and
raises :class:`TransientError` or :class:`PermanentError` otherwise. Any
other exception is classified by the worker pool.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiosmtplib

from .errors import PermanentError, TransientError
from .logger import get_logger
from .retry import classify_smtp_error, describe_error
from .smtp_pool import SMTPEndpoint, SMTPPool


@runtime_checkable
class MailTransport(Protocol):
    async def send(self, recipient: str, payload: Dict[str, Any]) -> None:
        ...


def _format_addresses(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        items = [str(addr).strip() for addr in value if addr]
    else:
        items = [str(value).strip()]
    return ", ".join(items) if items else None


def build_email(recipient: str, payload: Dict[str, Any], default_sender: Optional[str] = None) -> EmailMessage:
    """Translate a job payload into an :class:`EmailMessage`.

    Recognised keys: ``from``, ``subject``, ``body``, ``content_type``
    (``plain`` or ``html``), ``reply_to``, ``cc``, ``message_id`` and
    ``headers``. Raises ``KeyError`` naming the first missing mandatory key.
    """
    sender = payload.get("from") or default_sender
    if not sender:
        raise KeyError("from")
    if "subject" not in payload:
        raise KeyError("subject")

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = str(payload["subject"])
    if cc_value := _format_addresses(payload.get("cc")):
        msg["Cc"] = cc_value
    if reply_to := payload.get("reply_to"):
        msg["Reply-To"] = reply_to
    if message_id := payload.get("message_id"):
        msg["Message-ID"] = message_id
    subtype = "html" if payload.get("content_type", "plain") == "html" else "plain"
    msg.set_content(str(payload.get("body", "")), subtype=subtype)
    for header, value in (payload.get("headers") or {}).items():
        if value is None:
            continue
        if header in msg:
            msg.replace_header(header, str(value))
        else:
            msg[header] = str(value)
    return msg


class SMTPTransport:
    """Deliver jobs through an SMTP relay using pooled ``aiosmtplib`` sessions."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        start_tls: bool = False,
        timeout: float = 30.0,
        default_sender: Optional[str] = None,
        pool: Optional[SMTPPool] = None,
        max_connections: int = 10,
        logger=None,
    ):
        if use_tls is None:
            use_tls = int(port) == 465
        self.endpoint = SMTPEndpoint(
            host=host,
            port=int(port),
            user=user,
            password=password,
            use_tls=bool(use_tls),
            start_tls=bool(start_tls),
            timeout=min(float(timeout), 10.0),
        )
        self.timeout = float(timeout)
        self.default_sender = default_sender
        self.pool = pool if pool is not None else SMTPPool(max_idle=max_connections)
        self.logger = logger or get_logger("CampaignQueue.smtp")

    async def send(self, recipient: str, payload: Dict[str, Any]) -> None:
        try:
            msg = build_email(recipient, payload, self.default_sender)
        except KeyError as exc:
            raise PermanentError(f"missing {exc}") from exc

        envelope_sender = payload.get("return_path") or msg["From"]
        smtp = None
        try:
            smtp = await self.pool.acquire(self.endpoint)
            async with asyncio.timeout(self.timeout):
                await smtp.send_message(msg, sender=envelope_sender, recipients=[recipient])
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            if smtp is not None:
                self.pool.discard(smtp)
            is_temporary, smtp_code = classify_smtp_error(exc)
            error_cls = TransientError if is_temporary else PermanentError
            raise error_cls(describe_error(exc), smtp_code=smtp_code) from exc
        except BaseException:
            # cancelled or unexpected failure: the session may be mid-transaction
            if smtp is not None:
                self.pool.discard(smtp)
            raise
        await self.pool.release(smtp, self.endpoint)

    async def cleanup(self) -> None:
        """Close idle pooled connections."""
        closed = await self.pool.cleanup()
        if closed:
            self.logger.debug("Closed %d idle SMTP connection(s)", closed)

    async def close(self) -> None:
        await self.pool.close()
