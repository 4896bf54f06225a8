"""FastAPI application factory for monitoring and managing webhooks.

This module provides the REST surface of the webhook service:

- Authentication via API token in the X-API-Token header
- Per-webhook delivery statistics and test deliveries
- Enable/disable, delete and secret rotation of webhooks
- Aggregated delivery metrics and Prometheus exposition
- The catalogue of built-in payload templates

Example:
    Creating the API application::

        from mail_webhooks.core import MailWebhookService
        from mail_webhooks.api import create_app

        service = MailWebhookService()
        app = create_app(service, api_token="secret-token")
"""

from typing import Any, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import MailWebhookService, WebhookNotFoundError
from .models import TestDeliveryResult, WebhookStats

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured on the application the check is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class EnabledPayload(BaseModel):
    enabled: bool


class WebhookStatsResponse(CommandStatus):
    webhook_id: str
    enabled: bool
    stats: dict[str, Any]


class RotateSecretResponse(CommandStatus):
    webhook_id: str
    secret: str
    previous_secret_expires_at: Optional[str] = None


def create_app(svc: MailWebhookService, api_token: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        svc: The webhook service implementing every operation.
        api_token: Optional secret protecting every endpoint but ``/health``.

    Returns:
        A configured application ready to be served by any ASGI server.
    """
    api = FastAPI(title="Mail Webhooks")
    api.state.api_token = api_token
    api.state.service = svc
    router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[auth_dependency])

    @api.exception_handler(WebhookNotFoundError)
    async def not_found_handler(request: Request, exc: WebhookNotFoundError):
        return JSONResponse(status_code=404, content={"ok": False, "error": str(exc), "code": exc.code})

    @api.get("/health")
    async def health():
        """Health check endpoint (no authentication required)."""
        return {"status": "ok"}

    @router.get("/metrics")
    async def webhook_metrics():
        """Subscription counts, delivery totals and engine state."""
        return {"ok": True, **svc.get_metrics()}

    @router.get("/{webhook_id}/stats", response_model=WebhookStatsResponse, response_model_exclude_none=True)
    async def webhook_stats(webhook_id: str):
        webhook = svc.get_webhook(webhook_id)
        stats: WebhookStats = webhook.stats
        return WebhookStatsResponse(
            ok=True,
            webhook_id=webhook.id,
            enabled=webhook.enabled,
            stats=stats.model_dump(by_alias=True, mode="json"),
        )

    @router.post("/{webhook_id}/test")
    async def test_webhook(webhook_id: str):
        """Send a sample event to the webhook. Statistics are not touched."""
        result: TestDeliveryResult = await svc.test_webhook(webhook_id)
        return result.model_dump(by_alias=True, exclude_none=True, mode="json")

    @router.post("/{webhook_id}/enabled", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def set_enabled(webhook_id: str, payload: EnabledPayload):
        """Enable or disable a webhook. Disabling cancels pending retries."""
        svc.set_enabled(webhook_id, payload.enabled)
        return BasicOkResponse(ok=True)

    @router.post("/{webhook_id}/rotate-secret", response_model=RotateSecretResponse, response_model_exclude_none=True)
    async def rotate_secret(webhook_id: str):
        webhook = svc.rotate_secret(webhook_id)
        expires = webhook.previous_secret_expires_at
        return RotateSecretResponse(
            ok=True,
            webhook_id=webhook.id,
            secret=webhook.secret,
            previous_secret_expires_at=expires.isoformat() if expires else None,
        )

    @router.delete("/{webhook_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_webhook(webhook_id: str):
        """Delete a webhook and cancel its pending retries."""
        svc.delete_webhook(webhook_id)
        return BasicOkResponse(ok=True)

    @api.post("/commands/run-now", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def run_now():
        """Wake the retry loop for an immediate sweep."""
        svc.run_now()
        return BasicOkResponse(ok=True)

    @api.get("/templates", dependencies=[auth_dependency])
    async def templates():
        """List built-in payload templates."""
        return {"ok": True, "templates": svc.templates.built_in_options()}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the delivery engine."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
