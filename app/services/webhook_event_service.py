from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.models import WebhookEvent
from app.schemas.line import LineWebhookEvent, InboundEvent

# Ordered from strongest to weakest identity.
ID_STRATEGIES = ("delivery_id", "message_id", "reply_token", "composite")


def resolve_event_id(event: LineWebhookEvent) -> tuple[str, str]:
    """Stable event id plus the strategy that produced it.

    The composite fallback can collide for two events from one sender in the
    same millisecond; callers log it as the weaker identity.
    """
    if event.webhookEventId:
        return event.webhookEventId.strip(), "delivery_id"
    if event.message and event.message.id:
        return event.message.id.strip(), "message_id"
    if event.replyToken:
        return f"token:{event.replyToken}", "reply_token"
    sender = event.source.userId or event.source.groupId or event.source.roomId or "unknown"
    return f"ts:{event.timestamp or 0}:{sender}", "composite"


def to_inbound_event(event: LineWebhookEvent) -> InboundEvent:
    event_id, strategy = resolve_event_id(event)

    text = ""
    message_type = None
    if event.type == "message" and event.message:
        message_type = event.message.type
        text = (event.message.text or "").strip() if message_type == "text" else ""
    elif event.type == "postback" and event.postback:
        text = event.postback.data.strip()

    event_type = event.type if event.type in ("message", "follow", "postback") else "other"
    return InboundEvent(
        event_id=event_id,
        event_type=event_type,
        sender_id=event.source.userId,
        text=text,
        timestamp=event.timestamp,
        reply_token=event.replyToken,
        message_type=message_type,
        is_redelivery=bool(event.deliveryContext and event.deliveryContext.isRedelivery),
        id_strategy=strategy,
        raw=event.model_dump(mode="json"),
    )


def record_ingestion(
    db: Session,
    *,
    raw_body: str,
    event_ids: list[str],
    bot_id: str | None = None,
    merchant_id: str | None = None,
) -> str:
    row = WebhookEvent(
        raw_body=raw_body,
        event_ids=event_ids,
        event_count=len(event_ids),
        bot_id=bot_id,
        merchant_id=merchant_id,
        status="pending",
    )
    db.add(row)
    db.flush()
    return str(row.id)


def finalize_ingestion(
    db: Session,
    *,
    record_id: str,
    status: str,
    outcome: list[dict[str, Any]] | None = None,
    last_error: str | None = None,
) -> None:
    row = db.query(WebhookEvent).filter(WebhookEvent.id == record_id).first()
    if row is None:
        return
    row.status = status
    row.outcome = outcome
    row.last_error = last_error
    row.processed_at = datetime.now(timezone.utc)


def cleanup_old_events(db: Session, *, retention_days: int, now: datetime | None = None) -> int:
    """Delete ingestion records older than the retention window. Returns rows deleted."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    deleted = (
        db.query(WebhookEvent).filter(WebhookEvent.created_at < cutoff).delete(synchronize_session=False)
    )
    return int(deleted or 0)
