"""Outbound webhook notifications for the mail sandbox.

This package delivers mail lifecycle events (received, stored, deleted) to
subscribed HTTP endpoints. Features include:

- Content-based filtering of events per subscriber
- Payload templating (raw envelope, chat formats, custom JSON bodies)
- HMAC-SHA256 signed deliveries with secret rotation support
- Bounded concurrency with automatic retry and exponential backoff
- Automatic disabling of chronically failing subscribers
- Prometheus metrics and a small FastAPI surface for monitoring

Example:
    Wiring the service and forwarding a received email::

        from mail_webhooks.core import MailWebhookService

        service = MailWebhookService()
        await service.start()
        service.handle_email_received(email, inbox_hash, inbox_email)

Authors:
    Softwell S.r.l.
"""
