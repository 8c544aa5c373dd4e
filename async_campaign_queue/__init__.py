# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable asynchronous delivery engine for bulk email campaigns.

A campaign is accepted by enqueueing one job per recipient into a SQLite
backed store; delivery then proceeds in the background:

- a periodic dispatcher claims ready jobs up to the free worker capacity
- a bounded worker pool hands each job to the mail transport
- failures are retried with exponential backoff, then dead-lettered
- campaign progress is derived on demand from per-status job counts

Example:
    Running the engine with an SMTP transport::

        from async_campaign_queue.engine import CampaignEngine
        from async_campaign_queue.transport import SMTPTransport

        engine = CampaignEngine(
            db_path="/data/campaigns.db",
            transport=SMTPTransport(host="smtp.example.com", port=587),
        )
        await engine.start()
        job_ids = await engine.enqueue("spring-sale", ["a@example.com", "b@example.com"],
                                       payload={"from": "news@example.com",
                                                "subject": "Hello", "body": "..."})
        status = await engine.get_campaign_status("spring-sale")
"""

__version__ = "0.3.0"
