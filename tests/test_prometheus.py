import pytest
from aioresponses import aioresponses

from conftest import make_event, make_webhook, silent_logger
from mail_webhooks.delivery import WebhookDelivery
from mail_webhooks.prometheus import WebhookMetrics


def test_webhook_metrics_counters_and_gauges():
    metrics = WebhookMetrics()

    metrics.inc_delivery("whk_1", "success")
    metrics.inc_delivery("whk_1", "failure")
    metrics.inc_retry_scheduled("whk_1")
    metrics.inc_retry_dropped("whk_1")
    metrics.inc_retry_evicted()
    metrics.inc_auto_disabled("whk_1")
    metrics.set_retry_queue_size(3)
    metrics.set_active_deliveries(2)

    output = metrics.generate_latest()
    assert b'mwh_deliveries_total{outcome="success",webhook_id="whk_1"} 1.0' in output
    assert b"mwh_retries_scheduled_total" in output
    assert b"mwh_retries_dropped_total" in output
    assert b"mwh_retries_evicted_total 1.0" in output
    assert b"mwh_auto_disabled_total" in output
    assert b"mwh_retry_queue_size 3.0" in output
    assert b"mwh_active_deliveries 2.0" in output


@pytest.mark.asyncio
async def test_engine_reports_metrics(storage):
    metrics = WebhookMetrics()
    webhook = storage.create_global_webhook(make_webhook())
    engine = WebhookDelivery(storage, metrics=metrics, logger=silent_logger())

    with aioresponses() as m:
        m.post(webhook.url, status=500)
        await engine.deliver(webhook, make_event())

    output = metrics.generate_latest()
    assert f'mwh_deliveries_total{{outcome="failure",webhook_id="{webhook.id}"}} 1.0'.encode() in output
    assert f'mwh_retries_scheduled_total{{webhook_id="{webhook.id}"}} 1.0'.encode() in output
    assert b"mwh_retry_queue_size 1.0" in output
    assert b"mwh_active_deliveries 0.0" in output
