"""Unit tests for Slack delivery and the retry state machine (pjsipwatch.notify)."""
import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from pjsipwatch.config import MonitorConfig
from pjsipwatch.detector import TransitionEvent
from pjsipwatch.notify import (
    AttemptOutcome,
    DeliveryAttempts,
    NotifyErrorKind,
    SlackNotifier,
    Verdict,
    classify_response,
    format_event,
)
from pjsipwatch.state import EndpointState

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
EVENT = TransitionEvent("500", EndpointState.AVAILABLE, EndpointState.UNAVAILABLE, T0)


def make_notifier(handler, **overrides):
    config = MonitorConfig("xoxb-test", slack_channel="#pbx", notify_retry_max=3, backoff_base=1.0, backoff_max=8.0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sleep = AsyncMock()
    return SlackNotifier(client, config, sleep=sleep), client, sleep


class Responder:
    """Replays canned responses (factories or exceptions) in order and records requests. The last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item()


def ok():
    return httpx.Response(200, json={"ok": True, "ts": "1.2"})


def test_format_event_default_template():
    text = format_event(EVENT)
    assert text.startswith("PJSIP endpoint 500: Available -> Unavailable at 2026-01-01 12:00:00 UTC")
    assert EVENT.ref in text


def test_format_event_custom_template():
    text = format_event(EVENT, "{endpoint} is now {new} (was {previous})", "%H:%M")
    assert text == "500 is now Unavailable (was Available)"


@pytest.mark.parametrize(
    ("response", "verdict"),
    [
        (httpx.Response(200, json={"ok": True}), Verdict.DELIVERED),
        (httpx.Response(500), Verdict.TRANSIENT),
        (httpx.Response(502, text="bad gateway"), Verdict.TRANSIENT),
        (httpx.Response(200, text="<html>"), Verdict.TRANSIENT),
        (httpx.Response(200, json={"ok": False, "error": "internal_error"}), Verdict.TRANSIENT),
        (httpx.Response(429), Verdict.RATE_LIMITED),
        (httpx.Response(200, json={"ok": False, "error": "ratelimited"}), Verdict.RATE_LIMITED),
        (httpx.Response(404), Verdict.REJECTED),
        (httpx.Response(200, json={"ok": False, "error": "channel_not_found"}), Verdict.REJECTED),
        (httpx.Response(200, json={"ok": False, "error": "invalid_auth"}), Verdict.REJECTED),
    ],
)
def test_classify_response(response, verdict):
    assert classify_response(response).verdict == verdict


def test_classify_retry_after():
    outcome = classify_response(httpx.Response(429, headers={"Retry-After": "7"}))
    assert outcome.retry_after == 7.0
    assert classify_response(httpx.Response(429, headers={"Retry-After": "soon"})).retry_after is None


def test_delivery_attempts_backoff_schedule():
    attempts = DeliveryAttempts(max_attempts=5, backoff_base=1.0, backoff_max=3.0)
    delays = []
    for _ in range(4):
        attempts.record(AttemptOutcome(Verdict.TRANSIENT, "HTTP 500"))
        delays.append(attempts.next_delay)
    assert delays == [1.0, 2.0, 3.0, 3.0]
    attempts.record(AttemptOutcome(Verdict.TRANSIENT, "HTTP 500"))
    assert attempts.done
    assert attempts.result.error.kind == NotifyErrorKind.EXHAUSTED
    assert attempts.result.attempts == 5
    with pytest.raises(RuntimeError):
        attempts.record(AttemptOutcome(Verdict.DELIVERED))


def test_delivery_attempts_rejected_is_terminal():
    attempts = DeliveryAttempts(max_attempts=5)
    attempts.record(AttemptOutcome(Verdict.REJECTED, "invalid_auth"))
    assert attempts.done
    assert attempts.result.error.kind == NotifyErrorKind.REJECTED
    assert attempts.result.attempts == 1


def test_delivery_attempts_rate_limit_uses_server_delay():
    attempts = DeliveryAttempts(max_attempts=3, backoff_base=1.0, backoff_max=30.0)
    attempts.record(AttemptOutcome(Verdict.RATE_LIMITED, "HTTP 429", retry_after=12.0))
    assert attempts.next_delay == 12.0
    attempts.record(AttemptOutcome(Verdict.RATE_LIMITED, "HTTP 429"))
    assert attempts.next_delay == 2.0


@pytest.mark.asyncio
async def test_notify_success_posts_payload():
    responder = Responder(ok)
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.notify(EVENT)
    assert result.delivered and result.attempts == 1
    sleep.assert_not_called()
    request = responder.requests[0]
    assert request.headers["Authorization"] == "Bearer xoxb-test"
    body = json.loads(request.content)
    assert body["channel"] == "#pbx"
    assert "500" in body["text"] and "Unavailable" in body["text"]


@pytest.mark.asyncio
async def test_transient_failure_retried_then_exhausted():
    responder = Responder(lambda: httpx.Response(503))
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.notify(EVENT)
    assert not result.delivered
    assert result.error.kind == NotifyErrorKind.EXHAUSTED
    assert result.attempts == 3
    assert len(responder.requests) == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_then_success():
    responder = Responder(
        httpx.ConnectError("connection reset"),
        lambda: httpx.Response(500),
        ok,
    )
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.notify(EVENT)
    assert result.delivered
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_rejected_never_retried():
    responder = Responder(lambda: httpx.Response(200, json={"ok": False, "error": "not_in_channel"}))
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.notify(EVENT)
    assert result.error.kind == NotifyErrorKind.REJECTED
    assert result.error.detail == "not_in_channel"
    assert len(responder.requests) == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after():
    responder = Responder(lambda: httpx.Response(429, headers={"Retry-After": "5"}), ok)
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.notify(EVENT)
    assert result.delivered
    sleep.assert_awaited_once_with(5.0)


@pytest.mark.asyncio
async def test_timeout_is_transient_then_exhausted():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    notifier, client, sleep = make_notifier(handler)
    async with client:
        result = await notifier.notify(EVENT)
    assert result.error.kind == NotifyErrorKind.EXHAUSTED
    assert "timeout" in result.error.detail


async def drip(chunks=20, pause=0.1):
    for _ in range(chunks):
        await asyncio.sleep(pause)
        yield b" "


@pytest.mark.asyncio
async def test_slow_response_body_times_out_each_attempt():
    responder = Responder(lambda: httpx.Response(200, content=drip()))
    notifier, client, sleep = make_notifier(responder, notify_timeout=0.3)
    async with client:
        result = await asyncio.wait_for(notifier.notify(EVENT), timeout=5)
    assert result.error.kind == NotifyErrorKind.EXHAUSTED
    assert "timeout" in result.error.detail
    assert len(responder.requests) == 3


@pytest.mark.asyncio
async def test_invalid_slack_url_rejected_without_retry():
    responder = Responder(ok)
    notifier, client, sleep = make_notifier(responder, slack_api_url="https://slack.com\x00/api")
    async with client:
        result = await notifier.notify(EVENT)
    assert result.error.kind == NotifyErrorKind.REJECTED
    assert "invalid URL" in result.error.detail
    assert result.attempts == 1
    assert responder.requests == []
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_no_retry_once_shutdown_requested():
    responder = Responder(lambda: httpx.Response(503))
    notifier, client, sleep = make_notifier(responder)
    notifier.shutdown = asyncio.Event()
    notifier.shutdown.set()
    async with client:
        result = await notifier.notify(EVENT)
    assert not result.delivered
    assert result.error.kind == NotifyErrorKind.TRANSIENT
    assert "shutdown requested" in result.error.detail
    assert result.attempts == 1
    assert len(responder.requests) == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_shutdown_cuts_backoff_short():
    shutdown = asyncio.Event()
    requests = []

    def handler(request):
        requests.append(request)
        asyncio.get_running_loop().call_later(0.05, shutdown.set)
        return httpx.Response(503)

    config = MonitorConfig("xoxb-test", notify_retry_max=5, backoff_base=30.0, backoff_max=60.0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier(client, config, shutdown=shutdown)
        result = await asyncio.wait_for(notifier.notify(EVENT), timeout=5)
    assert result.error.kind == NotifyErrorKind.TRANSIENT
    assert result.attempts == 1
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_notify_all_isolates_failures():
    events = [
        TransitionEvent("a", EndpointState.AVAILABLE, EndpointState.UNAVAILABLE, T0),
        TransitionEvent("b", EndpointState.AVAILABLE, EndpointState.UNAVAILABLE, T0),
        TransitionEvent("c", EndpointState.UNAVAILABLE, EndpointState.AVAILABLE, T0),
    ]

    def handler(request):
        text = json.loads(request.content)["text"]
        if "endpoint b:" in text:
            return httpx.Response(403)
        return ok()

    notifier, client, sleep = make_notifier(handler)
    async with client:
        results = await notifier.notify_all(events)
    assert [e.endpoint for e, _ in results] == ["a", "b", "c"]
    assert [r.delivered for _, r in results] == [True, False, True]
    assert results[1][1].error.kind == NotifyErrorKind.REJECTED


@pytest.mark.asyncio
async def test_notify_all_keeps_per_endpoint_order():
    events = [
        TransitionEvent("a", EndpointState.AVAILABLE, EndpointState.UNAVAILABLE, T0),
        TransitionEvent("a", EndpointState.UNAVAILABLE, EndpointState.UNKNOWN, T0),
        TransitionEvent("b", EndpointState.AVAILABLE, EndpointState.UNAVAILABLE, T0),
    ]
    sent = []

    async def slow_notify(event):
        if event.new_state == EndpointState.UNAVAILABLE and event.endpoint == "a":
            await asyncio.sleep(0.01)
        sent.append((event.endpoint, event.new_state))

    notifier, client, sleep = make_notifier(lambda request: ok(), notify_concurrency=2)
    notifier.notify = slow_notify
    async with client:
        await notifier.notify_all(events)
    a_order = [s for e, s in sent if e == "a"]
    assert a_order == [EndpointState.UNAVAILABLE, EndpointState.UNKNOWN]


@pytest.mark.asyncio
async def test_send_text():
    responder = Responder(ok)
    notifier, client, sleep = make_notifier(responder)
    async with client:
        result = await notifier.send_text("check-pjsip-started")
    assert result.delivered
    assert json.loads(responder.requests[0].content)["text"] == "check-pjsip-started"
