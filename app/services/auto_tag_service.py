import re

from app.logging_config import get_logger

logger = get_logger("auto_tag_service")

INQUIRY_TAG = "🟢 詢價客戶"
SUPPORT_TAG = "🔵 技術支援"
HIGH_VALUE_TAG = "🟡 高價值潛客"

INQUIRY_RE = re.compile(r"價格|費用|多少錢|報價")
SUPPORT_RE = re.compile(r"壞了|故障|不能用|錯誤|怎麼用")
HIGH_VALUE_MIN_MESSAGES = 5


def select_auto_tags(user_message: str, message_count: int) -> list[str]:
    tags = []
    if INQUIRY_RE.search(user_message or ""):
        tags.append(INQUIRY_TAG)
    if SUPPORT_RE.search(user_message or ""):
        tags.append(SUPPORT_TAG)
    if message_count >= HIGH_VALUE_MIN_MESSAGES:
        tags.append(HIGH_VALUE_TAG)
    return tags


async def auto_tag_contact(store, contact_id: str, user_message: str) -> list[str]:
    """Attach keyword and activity tags to a contact. Runs detached from the reply path."""
    count = await store.count_messages(contact_id)
    tags = select_auto_tags(user_message, count)
    if not tags:
        return []
    merged = await store.add_contact_tags(contact_id, tags)
    logger.debug("Auto-tagged contact", extra={"context": {"contact_id": contact_id, "tags": tags}})
    return merged
