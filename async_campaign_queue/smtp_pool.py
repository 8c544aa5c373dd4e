# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded SMTP connection reuse for the transport adapter."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import aiosmtplib


@dataclass(frozen=True)
class SMTPEndpoint:
    """Connection parameters identifying a reusable SMTP session."""

    host: str
    port: int = 25
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    start_tls: bool = False
    timeout: float = 10.0


class SMTPPool:
    """Check-out/check-in pool of authenticated connections.

    A sender takes a connection with :meth:`acquire` and hands it back with
    :meth:`release` once the message is accepted, or with :meth:`discard`
    after an error. At most ``max_idle`` released connections are kept; an
    idle connection is reused while its endpoint matches, it is younger than
    ``ttl`` seconds and it answers ``NOOP``. With as many senders as idle
    slots the number of open connections never exceeds ``max_idle``.
    """

    def __init__(self, ttl: float = 300.0, max_idle: int = 10):
        self.ttl = ttl
        self.max_idle = max(1, int(max_idle))
        self._idle: List[Tuple[aiosmtplib.SMTP, float, SMTPEndpoint]] = []
        self._in_use: Dict[int, aiosmtplib.SMTP] = {}
        self._lock = asyncio.Lock()

    async def _open(self, endpoint: SMTPEndpoint) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(
            hostname=endpoint.host,
            port=endpoint.port,
            use_tls=endpoint.use_tls,
            start_tls=endpoint.start_tls,
            timeout=endpoint.timeout,
        )
        # aiosmtplib's own timeout does not cover the login round trip
        async with asyncio.timeout(endpoint.timeout * 1.5):
            await smtp.connect()
            if endpoint.user and endpoint.password:
                await smtp.login(endpoint.user, endpoint.password)
        return smtp

    @staticmethod
    async def _probe(smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP with 250."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False
        return response.code == 250

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            smtp.close()

    async def _take_idle(self, endpoint: SMTPEndpoint) -> Optional[Tuple[aiosmtplib.SMTP, float]]:
        """Pop the most recently released idle connection to ``endpoint``."""
        async with self._lock:
            for index in range(len(self._idle) - 1, -1, -1):
                smtp, last_used, idle_endpoint = self._idle[index]
                if idle_endpoint == endpoint:
                    del self._idle[index]
                    return smtp, last_used
        return None

    async def acquire(self, endpoint: SMTPEndpoint) -> aiosmtplib.SMTP:
        """Check out a live connection to ``endpoint``, opening one if none is idle."""
        while (entry := await self._take_idle(endpoint)) is not None:
            smtp, last_used = entry
            if (time.monotonic() - last_used) < self.ttl and await self._probe(smtp):
                self._in_use[id(smtp)] = smtp
                return smtp
            await self._quit(smtp)

        smtp = await self._open(endpoint)
        self._in_use[id(smtp)] = smtp
        return smtp

    async def release(self, smtp: aiosmtplib.SMTP, endpoint: SMTPEndpoint) -> None:
        """Check a healthy connection back in, closing it when the idle list is full."""
        self._in_use.pop(id(smtp), None)
        async with self._lock:
            if len(self._idle) < self.max_idle:
                self._idle.append((smtp, time.monotonic(), endpoint))
                return
        await self._quit(smtp)

    def discard(self, smtp: aiosmtplib.SMTP) -> None:
        """Drop a checked-out connection whose state is unknown, e.g. after an error."""
        self._in_use.pop(id(smtp), None)
        smtp.close()

    async def cleanup(self) -> int:
        """Close expired or unresponsive idle connections; return how many were closed."""
        now = time.monotonic()
        async with self._lock:
            entries = self._idle
            self._idle = []

        keep: List[Tuple[aiosmtplib.SMTP, float, SMTPEndpoint]] = []
        closed = 0
        for smtp, last_used, endpoint in entries:
            if (now - last_used) > self.ttl or not await self._probe(smtp):
                await self._quit(smtp)
                closed += 1
            else:
                keep.append((smtp, last_used, endpoint))

        async with self._lock:
            self._idle.extend(keep)
            overflow = self._idle[self.max_idle:]
            del self._idle[self.max_idle:]
        for smtp, _last_used, _endpoint in overflow:
            await self._quit(smtp)
            closed += 1
        return closed

    async def close(self) -> None:
        """Close every idle connection and drop those still checked out."""
        async with self._lock:
            entries = list(self._idle)
            self._idle.clear()
        for smtp, _last_used, _endpoint in entries:
            await self._quit(smtp)
        for smtp in list(self._in_use.values()):
            self.discard(smtp)

    @property
    def idle(self) -> int:
        return len(self._idle)

    def __len__(self) -> int:
        """Number of open connections, idle or checked out."""
        return len(self._idle) + len(self._in_use)
