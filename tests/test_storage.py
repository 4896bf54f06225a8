import threading
from datetime import timedelta

from conftest import make_webhook
from mail_webhooks.models import utc_now


def test_global_and_inbox_tables(storage):
    global_hook = storage.create_global_webhook(make_webhook())
    inbox_hook = storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox", inbox_hash="inbox_a"))

    assert storage.get_webhook(global_hook.id) is global_hook
    assert storage.get_webhook(inbox_hook.id) is inbox_hook
    assert storage.get_global_webhook(inbox_hook.id) is None
    assert storage.get_inbox_webhook("inbox_a", inbox_hook.id) is inbox_hook
    assert storage.list_global_webhooks() == [global_hook]
    assert storage.list_inbox_webhooks("inbox_a") == [inbox_hook]
    assert storage.list_inbox_webhooks("inbox_b") == []
    assert storage.get_global_webhook_count() == 1
    assert storage.get_inbox_webhook_count("inbox_a") == 1
    assert storage.get_total_inbox_webhook_count() == 1
    assert storage.get_webhook("whk_missing") is None


def test_get_webhooks_for_event(storage):
    subscribed = storage.create_global_webhook(make_webhook(events=["email.received", "email.deleted"]))
    storage.create_global_webhook(make_webhook(events=["email.stored"]))
    storage.create_global_webhook(make_webhook(enabled=False))
    inbox_hook = storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))
    storage.create_inbox_webhook("inbox_b", make_webhook(scope="inbox"))

    assert storage.get_webhooks_for_event("email.received") == [subscribed]
    assert storage.get_webhooks_for_event("email.received", "inbox_a") == [subscribed, inbox_hook]
    assert storage.get_webhooks_for_event("email.deleted", "inbox_a") == [subscribed]


def test_increment_stats(storage):
    webhook = storage.create_global_webhook(make_webhook())

    assert storage.increment_stats(webhook.id, "failure") == {"consecutive_failures": 1}
    assert storage.increment_stats(webhook.id, "failure") == {"consecutive_failures": 2}
    assert storage.increment_stats(webhook.id, "success") == {"consecutive_failures": 0}

    stats = webhook.stats
    assert stats.total_deliveries == 3
    assert stats.successful_deliveries == 1
    assert stats.failed_deliveries == 2
    assert stats.last_delivery_status == "success"
    assert stats.last_delivery_at is not None
    assert storage.increment_stats("whk_missing", "success") is None


def test_increment_stats_is_atomic_across_threads(storage):
    webhook = storage.create_global_webhook(make_webhook())

    def worker():
        for _ in range(200):
            storage.increment_stats(webhook.id, "success")
            storage.increment_stats(webhook.id, "failure")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stats = storage.get_webhook(webhook.id).stats
    assert stats.total_deliveries == 3200
    assert stats.successful_deliveries + stats.failed_deliveries == stats.total_deliveries


def test_update_keeps_location_and_stats(storage):
    webhook = storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))
    storage.increment_stats(webhook.id, "failure")

    updated = storage.update_webhook(webhook.id, enabled=False, description="paused")

    assert updated is not webhook
    assert updated.enabled is False
    assert updated.description == "paused"
    assert updated.updated_at is not None
    assert updated.stats is webhook.stats
    assert storage.get_inbox_webhook("inbox_a", webhook.id) is updated

    storage.increment_stats(webhook.id, "failure")
    assert storage.get_webhook(webhook.id).stats.consecutive_failures == 2
    assert storage.update_webhook("whk_missing", enabled=True) is None


def test_delete_webhook(storage):
    global_hook = storage.create_global_webhook(make_webhook())
    inbox_hook = storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))

    assert storage.delete_webhook(global_hook.id)
    assert storage.delete_webhook(inbox_hook.id)
    assert not storage.delete_webhook(inbox_hook.id)
    assert storage.get_metrics()["inboxesWithWebhooks"] == 0


def test_inbox_deletion_cascades(storage):
    storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))
    kept = storage.create_inbox_webhook("inbox_b", make_webhook(scope="inbox"))
    storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))

    storage.on_inbox_deleted("inbox_a")

    assert storage.get_total_inbox_webhook_count() == 1
    assert storage.get_webhook(kept.id) is kept


def test_rotate_secret_keeps_previous_for_an_hour(storage):
    webhook = storage.create_global_webhook(make_webhook())
    old_secret = webhook.secret

    rotated = storage.rotate_secret(webhook.id)

    assert rotated.secret.startswith("whsec_")
    assert rotated.secret != old_secret
    assert rotated.previous_secret == old_secret
    remaining = rotated.previous_secret_expires_at - utc_now()
    assert timedelta(minutes=59) < remaining <= timedelta(hours=1)
    assert storage.rotate_secret("whk_missing") is None


def test_metrics(storage):
    first = storage.create_global_webhook(make_webhook())
    storage.create_global_webhook(make_webhook(enabled=False))
    storage.create_inbox_webhook("inbox_a", make_webhook(scope="inbox"))
    storage.increment_stats(first.id, "success")
    storage.increment_stats(first.id, "failure")

    assert storage.get_metrics() == {
        "globalWebhookCount": 2,
        "inboxWebhookCount": 1,
        "totalWebhookCount": 3,
        "inboxesWithWebhooks": 1,
    }
    assert storage.get_aggregated_metrics() == {
        "enabledCount": 2,
        "totalDeliveries": 2,
        "successfulDeliveries": 1,
        "failedDeliveries": 1,
    }

    storage.clear_all()
    assert storage.get_metrics()["totalWebhookCount"] == 0
