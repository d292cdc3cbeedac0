import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import CleanupResponse
from app.services.webhook_event_service import cleanup_old_events

logger = get_logger("internal")

router = APIRouter(prefix="/internal", tags=["internal"])


def require_internal_secret(provided: Optional[str]) -> None:
    expected = settings.internal_api_secret
    if not expected:
        raise HTTPException(status_code=500, detail="INTERNAL_API_SECRET not configured")
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid internal secret")


@router.post("/webhook-events/cleanup", response_model=CleanupResponse)
def cleanup_webhook_events(
    retention_days: Optional[int] = None,
    db: Session = Depends(get_db),
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
):
    require_internal_secret(x_internal_secret)
    days = max(int(retention_days or settings.webhook_event_retention_days), 1)
    deleted = cleanup_old_events(db, retention_days=days)
    db.commit()
    logger.info("Webhook events cleaned up", extra={"context": {"deleted": deleted, "retention_days": days}})
    return CleanupResponse(success=True, deleted=deleted)
