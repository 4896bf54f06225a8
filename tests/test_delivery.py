import asyncio
import json
import time

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from conftest import make_event, make_webhook, silent_logger
from mail_webhooks import delivery as delivery_module
from mail_webhooks.delivery import (
    RETRY_DELAYS,
    TEST_DELIVERY_ID,
    WebhookDelivery,
    calculate_retry_delay,
    truncate_response,
)
from mail_webhooks.models import CustomTemplate
from mail_webhooks.signing import generate_signature, verify_signature
from mail_webhooks.template import WebhookTemplates

HOOK_URL = "https://hooks.example.com/mail"


def make_engine(storage, **kwargs) -> WebhookDelivery:
    return WebhookDelivery(storage, WebhookTemplates(logger=silent_logger()), logger=silent_logger(), **kwargs)


def register(storage, **overrides):
    return storage.create_global_webhook(make_webhook(**overrides))


def sent_request(m, url=HOOK_URL, index=0):
    return m.requests[("POST", URL(url))][index]


def shift_clock(monkeypatch, seconds):
    now = time.time()
    monkeypatch.setattr(delivery_module.time, "time", lambda: now + seconds)


@pytest.mark.asyncio
async def test_successful_delivery_is_signed_and_recorded(storage):
    webhook = register(storage)
    engine = make_engine(storage)
    event = make_event()

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, body="ok")
        result = await engine.deliver(webhook, event)
        request = sent_request(m)

    assert result.success
    assert result.status_code == 200
    assert result.response_body == "ok"

    headers = request.kwargs["headers"]
    body = request.kwargs["data"].decode("utf-8")
    assert headers["Content-Type"] == "application/json"
    assert headers["User-Agent"] == "MailWebhooks/1.0"
    assert headers["X-Event"] == "email.received"
    assert headers["X-Delivery"].startswith("dlv_")
    assert headers["X-Timestamp"].isdigit()
    assert request.kwargs["allow_redirects"] is False
    assert json.loads(body) == event.to_wire()

    expected = generate_signature(f"{headers['X-Timestamp']}.{body}", webhook.secret)
    assert headers["X-Signature"] == f"sha256={expected}"
    assert verify_signature(webhook.secret, headers["X-Timestamp"], body, headers["X-Signature"])

    stats = storage.get_webhook(webhook.id).stats
    assert stats.total_deliveries == 1
    assert stats.successful_deliveries == 1
    assert stats.consecutive_failures == 0
    assert stats.last_delivery_status == "success"
    assert engine.get_active_delivery_counts() == {"total": 0, "per_webhook": {}}


@pytest.mark.asyncio
async def test_custom_template_content_type_is_sent(storage):
    template = CustomTemplate(body='{"s":"{{data.subject}}"}', content_type="application/vnd.mail+json")
    webhook = register(storage, template=template)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=204)
        await engine.deliver(webhook, make_event(subject="Hi"))
        request = sent_request(m)

    assert request.kwargs["headers"]["Content-Type"] == "application/vnd.mail+json"
    assert request.kwargs["data"] == b'{"s":"Hi"}'


@pytest.mark.asyncio
async def test_http_error_records_failure_and_schedules_retry(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=500, body="fail")
        result = await engine.deliver(webhook, make_event())

    assert not result.success
    assert result.status_code == 500
    assert result.response_body == "fail"
    assert result.error == "Request failed with status code 500"
    assert result.will_retry is True
    assert result.next_attempt == 2

    stats = storage.get_webhook(webhook.id).stats
    assert (stats.total_deliveries, stats.failed_deliveries, stats.consecutive_failures) == (1, 1, 1)
    assert stats.last_delivery_status == "failed"
    assert engine.get_retry_queue_size() == 1
    assert engine.get_pending_retry_count(webhook.id) == 1
    entry = next(iter(engine._retry_queue.values()))
    assert entry.attempt == 2


@pytest.mark.asyncio
async def test_connection_error_is_a_transport_failure(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, exception=aiohttp.ClientConnectionError("connection refused"))
        result = await engine.deliver(webhook, make_event())

    assert not result.success
    assert result.status_code is None
    assert result.error == "connection refused"
    assert result.will_retry


@pytest.mark.asyncio
async def test_timeout_uses_exception_name(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, exception=asyncio.TimeoutError())
        result = await engine.deliver(webhook, make_event())

    assert result.error == "TimeoutError"
    assert storage.get_webhook(webhook.id).stats.failed_deliveries == 1


@pytest.mark.asyncio
async def test_last_attempt_is_terminal(storage):
    webhook = register(storage)
    engine = make_engine(storage, max_retries=1)

    with aioresponses() as m:
        m.post(HOOK_URL, status=503)
        result = await engine.deliver(webhook, make_event())

    assert result.will_retry is False
    assert result.next_attempt is None
    assert engine.get_retry_queue_size() == 0


@pytest.mark.asyncio
async def test_template_failure_consumes_an_attempt(storage):
    webhook = register(storage, template=CustomTemplate(body='{"s":{{data.subject}}}'))
    engine = make_engine(storage)

    with aioresponses() as m:
        result = await engine.deliver(webhook, make_event())
        assert not m.requests

    assert not result.success
    assert result.will_retry
    stats = storage.get_webhook(webhook.id).stats
    assert (stats.total_deliveries, stats.failed_deliveries) == (1, 1)


@pytest.mark.asyncio
async def test_cancelled_attempt_still_records_once(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    async def cancelled_post(*args, **kwargs):
        raise asyncio.CancelledError()

    engine._post = cancelled_post
    with pytest.raises(asyncio.CancelledError):
        await engine.deliver(webhook, make_event())

    stats = storage.get_webhook(webhook.id).stats
    assert (stats.total_deliveries, stats.failed_deliveries) == (1, 1)
    assert engine.get_active_delivery_counts()["total"] == 0
    assert engine.get_retry_queue_size() == 0


@pytest.mark.asyncio
async def test_stats_stay_consistent_across_outcomes(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=500)
        m.post(HOOK_URL, status=500)
        m.post(HOOK_URL, status=200)
        m.post(HOOK_URL, status=500)
        for _ in range(4):
            await engine.deliver(webhook, make_event())

    stats = storage.get_webhook(webhook.id).stats
    assert stats.total_deliveries == 4
    assert stats.successful_deliveries + stats.failed_deliveries == stats.total_deliveries
    assert stats.successful_deliveries == 1
    assert stats.consecutive_failures == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_are_each_counted_once(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, repeat=True)
        await asyncio.gather(*(engine.deliver(webhook, make_event()) for _ in range(8)))

    stats = storage.get_webhook(webhook.id).stats
    assert stats.total_deliveries == 8
    assert stats.successful_deliveries == 8


@pytest.mark.asyncio
async def test_auto_disable_after_five_consecutive_failures(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=500, repeat=True)
        for attempt in range(4):
            await engine.deliver(webhook, make_event())
            assert storage.get_webhook(webhook.id).enabled
        assert engine.get_retry_queue_size() == 4
        await engine.deliver(webhook, make_event())

    stored = storage.get_webhook(webhook.id)
    assert stored.enabled is False
    assert stored.stats.consecutive_failures == 5
    assert engine.get_retry_queue_size() == 0
    assert engine.get_pending_retry_count(webhook.id) == 0


@pytest.mark.asyncio
async def test_admission_denied_queues_attempt_one(storage):
    webhook = register(storage)
    engine = make_engine(storage, max_concurrent_per_webhook=1)
    assert engine._acquire_slot(webhook.id)

    with aioresponses() as m:
        result = await engine.deliver(webhook, make_event())
        assert not m.requests

    assert result.error == "concurrent_limit"
    assert result.will_retry is True
    assert result.next_attempt == 1
    entry = next(iter(engine._retry_queue.values()))
    assert entry.attempt == 1
    assert engine.get_pending_retry_count(webhook.id) == 1
    assert storage.get_webhook(webhook.id).stats.total_deliveries == 0


@pytest.mark.asyncio
async def test_global_ceiling_denies_admission(storage):
    first = register(storage)
    second = register(storage)
    engine = make_engine(storage, max_total_concurrent=1)
    assert engine._acquire_slot(first.id)

    result = await engine.deliver(second, make_event())
    assert result.error == "concurrent_limit"
    assert engine.get_pending_retry_count(second.id) == 1


def test_retry_delays_table():
    assert [calculate_retry_delay(attempt) * 1000 for attempt in range(1, 6)] == [
        0,
        30_000,
        300_000,
        1_800_000,
        14_400_000,
    ]
    assert calculate_retry_delay(9) == RETRY_DELAYS[-1]


def test_full_queue_evicts_oldest_entry(storage):
    first, second, third = (register(storage) for _ in range(3))
    engine = make_engine(storage, max_retry_queue_size=2)
    event = make_event()

    engine.schedule_retry(first, event, 2)
    engine.schedule_retry(second, event, 2)
    engine.schedule_retry(third, event, 2)

    assert engine.get_retry_queue_size() == 2
    assert engine.get_pending_retry_count(first.id) == 0
    assert engine.get_pending_retry_count(second.id) == 1
    assert engine.get_pending_retry_count(third.id) == 1
    assert {entry.webhook.id for entry in engine._retry_queue.values()} == {second.id, third.id}


def test_per_webhook_cap_drops_new_retries(storage):
    webhook = register(storage)
    engine = make_engine(storage, max_retries_per_webhook=2)
    event = make_event()

    assert engine.schedule_retry(webhook, event, 2)
    assert engine.schedule_retry(webhook, event, 2)
    assert engine.schedule_retry(webhook, event, 2) is None
    assert engine.get_retry_queue_size() == 2


def test_cancel_removes_only_that_webhooks_entries(storage):
    target = register(storage)
    other = register(storage)
    engine = make_engine(storage)
    event = make_event()
    for webhook in (target, other, target):
        engine.schedule_retry(webhook, event, 2)

    assert engine.cancel_pending_retries(target.id) == 2
    assert engine.get_retry_queue_size() == 1
    assert engine.get_pending_retry_count(target.id) == 0
    assert engine.get_pending_retry_count(other.id) == 1


@pytest.mark.asyncio
async def test_sweep_waits_for_scheduled_time(storage, monkeypatch):
    webhook = register(storage)
    engine = make_engine(storage)
    engine.schedule_retry(webhook, make_event(), 2)

    assert await engine.process_retry_queue() == 0
    assert engine.get_retry_queue_size() == 1

    shift_clock(monkeypatch, 31)
    with aioresponses() as m:
        m.post(HOOK_URL, status=200)
        assert await engine.process_retry_queue() == 1

    assert engine.get_retry_queue_size() == 0
    assert engine.get_pending_retry_count(webhook.id) == 0
    assert storage.get_webhook(webhook.id).stats.successful_deliveries == 1


@pytest.mark.asyncio
async def test_sweep_skips_deleted_and_disabled_webhooks(storage):
    deleted = register(storage)
    disabled = register(storage)
    engine = make_engine(storage)
    engine.schedule_retry(deleted, make_event(), 1)
    engine.schedule_retry(disabled, make_event(), 1)
    storage.delete_webhook(deleted.id)
    storage.update_webhook(disabled.id, enabled=False)

    with aioresponses() as m:
        assert await engine.process_retry_queue() == 2
        assert not m.requests

    assert engine.get_retry_queue_size() == 0
    assert storage.get_webhook(disabled.id).stats.total_deliveries == 0


@pytest.mark.asyncio
async def test_sweep_requeues_denied_entry_at_same_attempt(storage, monkeypatch):
    webhook = register(storage)
    engine = make_engine(storage, max_concurrent_per_webhook=1)
    engine.schedule_retry(webhook, make_event(), 3)
    assert engine._acquire_slot(webhook.id)

    shift_clock(monkeypatch, 301)
    assert await engine.process_retry_queue() == 1

    assert engine.get_retry_queue_size() == 1
    assert engine.get_pending_retry_count(webhook.id) == 1
    entry = next(iter(engine._retry_queue.values()))
    assert entry.attempt == 3
    assert storage.get_webhook(webhook.id).stats.total_deliveries == 0


@pytest.mark.asyncio
async def test_sweep_failure_schedules_next_attempt(storage, monkeypatch):
    webhook = register(storage)
    engine = make_engine(storage)
    engine.schedule_retry(webhook, make_event(), 2)

    shift_clock(monkeypatch, 31)
    with aioresponses() as m:
        m.post(HOOK_URL, status=500)
        await engine.process_retry_queue()

    entry = next(iter(engine._retry_queue.values()))
    assert entry.attempt == 3
    assert engine.get_pending_retry_count(webhook.id) == 1


@pytest.mark.asyncio
async def test_test_delivery_does_not_touch_stats(storage):
    webhook = register(storage, events=["email.deleted"], template="simple")
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, body="pong")
        result = await engine.test_webhook(webhook)
        request = sent_request(m)

    assert result.success
    assert result.status_code == 200
    assert result.response_body == "pong"
    assert result.payload_sent["from"] == "sender@example.com"
    assert request.kwargs["headers"]["X-Delivery"] == TEST_DELIVERY_ID
    assert request.kwargs["headers"]["X-Event"] == "email.deleted"
    assert storage.get_webhook(webhook.id).stats.total_deliveries == 0


@pytest.mark.asyncio
async def test_failed_test_delivery_never_retries(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=404, body="missing")
        result = await engine.test_webhook(webhook)

    assert not result.success
    assert result.status_code == 404
    assert result.response_body == "missing"
    assert result.payload_sent["type"] == "email.received"
    assert engine.get_retry_queue_size() == 0
    assert storage.get_webhook(webhook.id).stats.total_deliveries == 0


@pytest.mark.asyncio
async def test_undecodable_body_keeps_http_outcome(storage):
    webhook = register(storage)
    engine = make_engine(storage)
    binary = b"\xff\xfe\x00binary"

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, body=binary, content_type="application/octet-stream")
        m.post(HOOK_URL, status=502, body=binary, content_type="application/octet-stream")
        ok = await engine.deliver(webhook, make_event())
        failed = await engine.deliver(webhook, make_event())

    assert ok.success
    assert ok.status_code == 200
    assert "binary" in ok.response_body
    assert not failed.success
    assert failed.status_code == 502
    assert failed.error == "Request failed with status code 502"
    stats = storage.get_webhook(webhook.id).stats
    assert (stats.successful_deliveries, stats.failed_deliveries) == (1, 1)


@pytest.mark.asyncio
async def test_undecodable_body_on_test_delivery(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=200, body=b"\xff\xfe", content_type="application/octet-stream")
        result = await engine.test_webhook(webhook)

    assert result.success
    assert result.status_code == 200


@pytest.mark.asyncio
async def test_empty_success_body_is_kept(storage):
    webhook = register(storage)
    engine = make_engine(storage)

    with aioresponses() as m:
        m.post(HOOK_URL, status=204, body="")
        result = await engine.deliver(webhook, make_event())

    assert result.success
    assert result.response_body == ""


def test_truncate_response():
    assert truncate_response(None) is None
    assert truncate_response("") == ""
    assert truncate_response("short") == "short"
    assert truncate_response({"a": 1}) == '{"a": 1}'
    long_body = "x" * 2000
    assert truncate_response(long_body) == "x" * 1024 + "... (truncated)"
