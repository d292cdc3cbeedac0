from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from app.config import settings
from app.logging_config import get_logger
from app.schemas.line import InboundEvent, LineWebhookBody
from app.schemas.webhook import EventOutcomeSchema, WebhookResponse
from app.services.alert_service import alert_critical
from app.services.background_tasks import spawn_detached
from app.services.bot_service import resolve_bot_credentials
from app.services.ingress_service import MessagePipeline, TenantContext, get_pipeline
from app.services.line_messaging import validate_signature
from app.services.webhook_event_service import to_inbound_event

logger = get_logger("webhook")

router = APIRouter()

BOT_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "decrypt_failed": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "db_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _parse_events(raw_body: bytes) -> list[InboundEvent]:
    try:
        body = LineWebhookBody.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning("Malformed webhook body", extra={"context": {"error": str(e)[:300]}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook body")
    return [to_inbound_event(event) for event in body.events]


async def _process_request(raw_body: bytes, tenant: TenantContext, pipeline: MessagePipeline) -> WebhookResponse:
    events = _parse_events(raw_body)
    if not events:
        # LINE console "Verify" sends an empty batch.
        return WebhookResponse(success=True, message="No events")

    try:
        record_id = await pipeline.record_ingestion(raw_body.decode("utf-8", errors="replace"), events, tenant)
    except Exception as e:
        logger.error(
            "Failed to record webhook event",
            extra={"context": {"merchant_id": tenant.merchant_id, "bot_id": tenant.bot_id, "error": str(e)}},
        )
        spawn_detached(
            "alert_ingestion_store",
            alert_critical("Webhook ingestion store unavailable", {"merchant_id": tenant.merchant_id, "error": str(e)[:200]}),
        )
        if settings.is_production:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook ingestion store unavailable"
            )
        record_id = None

    batch = await pipeline.process_batch(events, tenant)
    await pipeline.finalize_ingestion(record_id, batch)

    return WebhookResponse(
        success=batch.failed == 0,
        message="ok" if batch.failed == 0 else f"{batch.failed} of {len(batch.outcomes)} events failed",
        processed=batch.processed,
        failed=batch.failed,
        outcomes=[EventOutcomeSchema(**asdict(o)) for o in batch.outcomes],
    )


@router.post("/webhook/line", response_model=WebhookResponse)
async def handle_line_webhook(
    request: Request,
    x_line_signature: Optional[str] = Header(default=None, alias="X-Line-Signature"),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Webhook for the owner merchant's LINE channel configured in the environment."""
    raw_body = await request.body()

    if not settings.line_channel_secret or not settings.line_owner_merchant_id:
        logger.error("LINE channel secret or owner merchant not configured")
        spawn_detached("alert_line_config", alert_critical("LINE webhook credentials not configured"))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="LINE channel not configured")

    if not validate_signature(raw_body, x_line_signature, settings.line_channel_secret):
        logger.warning("Invalid LINE signature", extra={"context": {"has_signature": bool(x_line_signature)}})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    tenant = TenantContext(
        merchant_id=settings.line_owner_merchant_id,
        channel_access_token=settings.line_channel_access_token,
    )
    return await _process_request(raw_body, tenant, pipeline)


@router.post("/webhook/line/{bot_id}/{webhook_key}", response_model=WebhookResponse)
async def handle_bot_webhook(
    bot_id: str,
    webhook_key: str,
    request: Request,
    x_line_signature: Optional[str] = Header(default=None, alias="X-Line-Signature"),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Webhook for a merchant-registered bot; credentials come from the line_bots row."""
    raw_body = await request.body()

    try:
        UUID(bot_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")

    resolved = await resolve_bot_credentials(bot_id, webhook_key)
    if not resolved.ok:
        raise HTTPException(
            status_code=BOT_ERROR_STATUS.get(resolved.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=resolved.error,
        )
    credentials = resolved.value

    if not validate_signature(raw_body, x_line_signature, credentials.channel_secret):
        logger.warning("Invalid LINE signature", extra={"context": {"bot_id": bot_id}})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    tenant = TenantContext(
        merchant_id=credentials.merchant_id,
        channel_access_token=credentials.channel_access_token,
        bot_id=credentials.bot_id,
    )
    return await _process_request(raw_body, tenant, pipeline)


@router.get("/webhook/line")
async def line_webhook_probe():
    """Reachability probe; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with a signed LINE payload"}


@router.get("/webhook/line/{bot_id}/{webhook_key}")
async def bot_webhook_probe(bot_id: str, webhook_key: str):
    return {"ok": True, "message": "Use POST with a signed LINE payload", "bot_id": bot_id}
