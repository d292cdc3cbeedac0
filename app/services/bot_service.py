import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from app.database import SessionLocal, session_scope
from app.logging_config import get_logger
from app.models import LineBot
from app.services.crypto_service import CredentialError, decrypt_secret, verify_webhook_key
from app.services.result import Result

logger = get_logger("bot_service")


@dataclass(frozen=True)
class BotCredentials:
    bot_id: str
    merchant_id: str
    channel_secret: str
    channel_access_token: str


def _load_bot(session_factory: Callable, bot_id: str) -> Optional[dict]:
    with session_scope(session_factory) as db:
        bot = db.query(LineBot).filter(LineBot.id == bot_id, LineBot.is_active.is_(True)).first()
        if bot is None:
            return None
        return {
            "id": str(bot.id),
            "merchant_id": str(bot.merchant_id),
            "webhook_key_hash": bot.webhook_key_hash,
            "encrypted_channel_secret": bot.encrypted_channel_secret,
            "encrypted_channel_access_token": bot.encrypted_channel_access_token,
        }


async def resolve_bot_credentials(
    bot_id: str,
    webhook_key: str,
    session_factory: Callable = SessionLocal,
) -> Result[BotCredentials]:
    """Look up an active bot, check its webhook key by hash, decrypt its channel credentials.

    Error codes: not_found, unauthorized, decrypt_failed, db_error.
    """
    try:
        bot = await asyncio.to_thread(_load_bot, session_factory, bot_id)
    except Exception as e:
        logger.error("Bot lookup failed", extra={"context": {"bot_id": bot_id, "error": str(e)}})
        return Result.failure(str(e), "db_error")

    if bot is None:
        logger.warning("Bot not found or inactive", extra={"context": {"bot_id": bot_id}})
        return Result.failure("Bot not found", "not_found")

    if not verify_webhook_key(webhook_key, bot["webhook_key_hash"]):
        logger.warning("Invalid webhook key", extra={"context": {"bot_id": bot_id}})
        return Result.failure("Invalid webhook key", "unauthorized")

    try:
        channel_secret = decrypt_secret(bot["encrypted_channel_secret"])
        access_token = decrypt_secret(bot["encrypted_channel_access_token"])
    except CredentialError as e:
        logger.error("Credential decrypt failed", extra={"context": {"bot_id": bot_id, "error": str(e)}})
        return Result.failure(str(e), "decrypt_failed")

    return Result.success(
        BotCredentials(
            bot_id=bot["id"],
            merchant_id=bot["merchant_id"],
            channel_secret=channel_secret,
            channel_access_token=access_token,
        )
    )
