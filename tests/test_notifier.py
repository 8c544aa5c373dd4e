import logging

import pytest
from aiohttp import web
from aiohttp import test_utils

from async_campaign_queue.models import CampaignState
from async_campaign_queue.notifier import (
    CallbackNotifier,
    CompositeNotifier,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
    campaign_terminal_event,
    terminal_failure_event,
)


def test_event_builders():
    event = terminal_failure_event("job-1", "camp", "550 rejected")
    assert event["event"] == "terminal_failure"
    assert event["job_id"] == "job-1"
    assert event["reason"] == "550 rejected"
    assert event["timestamp"].endswith("Z")

    event = campaign_terminal_event("camp", CampaignState.COMPLETED_WITH_FAILURES)
    assert event == {
        "event": "campaign_terminal",
        "campaign_id": "camp",
        "status": "COMPLETED_WITH_FAILURES",
        "timestamp": event["timestamp"],
    }


@pytest.mark.asyncio
async def test_callback_notifier_forwards_events():
    received = []

    async def callback(event):
        received.append(event)

    notifier = CallbackNotifier(callback)
    await notifier.on_terminal_failure("job-1", "camp", "boom")
    await notifier.on_campaign_terminal("camp", CampaignState.FAILED)
    assert [e["event"] for e in received] == ["terminal_failure", "campaign_terminal"]
    assert received[1]["status"] == "FAILED"


@pytest.mark.asyncio
async def test_logging_notifier(caplog):
    notifier = LoggingNotifier()
    with caplog.at_level(logging.INFO, logger="CampaignQueue.notifications"):
        await notifier.on_terminal_failure("job-1", "camp", "boom")
        await notifier.on_campaign_terminal("camp", CampaignState.COMPLETED)
    assert "job-1" in caplog.text
    assert "COMPLETED" in caplog.text


@pytest.mark.asyncio
async def test_composite_isolates_failures():
    received = []

    class Broken(Notifier):
        async def on_terminal_failure(self, job_id, campaign_id, reason):
            raise RuntimeError("down")

    async def callback(event):
        received.append(event)

    notifier = CompositeNotifier([Broken(), CallbackNotifier(callback)])
    await notifier.on_terminal_failure("job-1", "camp", "boom")
    assert len(received) == 1


@pytest.mark.asyncio
async def test_webhook_posts_json_with_bearer_token():
    received = []

    async def handler(request):
        received.append((request.headers.get("Authorization"), await request.json()))
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_post("/events", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        notifier = WebhookNotifier(str(server.make_url("/events")), token="secret")
        await notifier.on_terminal_failure("job-1", "camp", "boom")
        await notifier.on_campaign_terminal("camp", CampaignState.COMPLETED)
    finally:
        await server.close()

    assert [auth for auth, _ in received] == ["Bearer secret", "Bearer secret"]
    assert received[0][1]["event"] == "terminal_failure"
    assert received[1][1]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_webhook_basic_auth():
    received = []

    async def handler(request):
        received.append(request.headers.get("Authorization"))
        return web.Response(text="ok")

    app = web.Application()
    app.router.add_post("/events", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        notifier = WebhookNotifier(str(server.make_url("/events")), user="ops", password="pw")
        await notifier.on_campaign_terminal("camp", CampaignState.FAILED)
    finally:
        await server.close()
    assert received[0].startswith("Basic ")


@pytest.mark.asyncio
async def test_webhook_errors_are_logged_not_raised(caplog):
    async def handler(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_post("/events", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        notifier = WebhookNotifier(str(server.make_url("/events")))
        with caplog.at_level(logging.WARNING, logger="CampaignQueue.notifications"):
            await notifier.on_terminal_failure("job-1", "camp", "boom")
    finally:
        await server.close()
    assert "terminal_failure" in caplog.text


@pytest.mark.asyncio
async def test_webhook_unreachable_endpoint():
    notifier = WebhookNotifier("http://127.0.0.1:1/events", timeout=2.0)
    await notifier.on_campaign_terminal("camp", CampaignState.COMPLETED)
