from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    type: str = "user"
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None


class LineMessage(BaseModel):
    type: str
    id: Optional[str] = None
    text: Optional[str] = None


class LinePostback(BaseModel):
    data: str = ""


class LineDeliveryContext(BaseModel):
    isRedelivery: bool = False


class LineWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    timestamp: Optional[int] = None
    replyToken: Optional[str] = None
    webhookEventId: Optional[str] = None
    deliveryContext: Optional[LineDeliveryContext] = None
    source: LineSource = Field(default_factory=LineSource)
    message: Optional[LineMessage] = None
    postback: Optional[LinePostback] = None


class LineWebhookBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    destination: Optional[str] = None
    events: list[LineWebhookEvent] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """Normalized inbound event; identity is event_id."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str  # message, follow, postback, other
    sender_id: Optional[str] = None
    text: str = ""
    timestamp: Optional[int] = None
    reply_token: Optional[str] = None
    message_type: Optional[str] = None
    is_redelivery: bool = False
    id_strategy: str = "delivery_id"
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_text_message(self) -> bool:
        return self.event_type == "message" and self.message_type == "text"
