import base64
import hashlib
import hmac
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("line_messaging")

MAX_QUICK_REPLY_ITEMS = 13
MAX_QUICK_REPLY_LABEL = 20
MAX_TEXT_LENGTH = 5000


class LineApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def compute_signature(body: bytes, channel_secret: str) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_signature(body: bytes, signature: Optional[str], channel_secret: Optional[str]) -> bool:
    """HMAC-SHA256 over the exact raw body bytes, base64, constant-time compare."""
    if not signature or not channel_secret:
        return False
    expected = compute_signature(body, channel_secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore"))


def build_text_message(text: str, quick_replies: Optional[list[dict]] = None) -> dict:
    """Text message with optional quick-reply buttons ({"label", "text"} items)."""
    message: dict = {"type": "text", "text": text[:MAX_TEXT_LENGTH]}
    items = [q for q in (quick_replies or []) if q.get("label") and (q.get("text") or q.get("value"))]
    if items:
        message["quickReply"] = {
            "items": [
                {
                    "type": "action",
                    "action": {
                        "type": "message",
                        "label": str(item["label"])[:MAX_QUICK_REPLY_LABEL],
                        "text": str(item.get("text") or item.get("value")),
                    },
                }
                for item in items[:MAX_QUICK_REPLY_ITEMS]
            ]
        }
    return message


class LineMessagingClient:
    """LINE Messaging API: reply (token-scoped, single use) and push (user-scoped)."""

    def __init__(self, channel_access_token: str, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.channel_access_token = channel_access_token
        self.base_url = (base_url or settings.line_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.line_request_timeout_seconds

    async def _make_request(self, path: str, payload: dict) -> None:
        if not self.channel_access_token:
            raise LineApiError("LINE channel access token is not configured")
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.channel_access_token}"},
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"LINE API transport error: {e}")
            raise LineApiError(str(e)) from e

        if response.status_code != 200:
            logger.error(f"LINE API error: status={response.status_code}, body={response.text[:300]}")
            raise LineApiError(f"LINE API error: {response.status_code}", status=response.status_code)

    async def reply_message(self, reply_token: str, messages: list[dict]) -> None:
        await self._make_request("/v2/bot/message/reply", {"replyToken": reply_token, "messages": messages})

    async def push_message(self, to: str, messages: list[dict]) -> None:
        await self._make_request("/v2/bot/message/push", {"to": to, "messages": messages})


class ReplyChannel:
    """Outbound channel for one event: the reply token is spent on the first send, later sends push."""

    def __init__(self, client: LineMessagingClient, user_id: Optional[str], reply_token: Optional[str] = None):
        self.client = client
        self.user_id = user_id
        self.reply_token = reply_token
        self.sent_count = 0

    @property
    def token_used(self) -> bool:
        return self.reply_token is None

    async def send(self, text: str, quick_replies: Optional[list[dict]] = None) -> None:
        message = build_text_message(text, quick_replies)
        if self.reply_token:
            token, self.reply_token = self.reply_token, None
            await self.client.reply_message(token, [message])
        elif self.user_id:
            await self.client.push_message(self.user_id, [message])
        else:
            raise LineApiError("No reply token or user id to send to")
        self.sent_count += 1
