"""
CredentialIssuer: одноразовая ссылка в закрытый канал через createChatInviteLink (member_limit=1).

Retry policy: только на TelegramRetryAfter (rate limit), не более max_retries повторов,
задержка max(retry_after, base_delay * attempt). Любая другая ошибка — сразу наверх.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from aiogram import Bot
from aiogram.exceptions import TelegramRetryAfter

from channel_gate.core.config import settings
from channel_gate.services.credentials.models import Credential
from channel_gate.utils.metrics import (
    credential_issue_retries_total,
    telegram_requests_total,
)

logger = logging.getLogger(__name__)

INVITE_NAME_MAX_LEN = 32  # Telegram limit for invite link names


class CredentialIssuer:
    def __init__(
        self,
        bot: Bot,
        channel_id: str | None = None,
        *,
        ttl_hours: int | None = None,
        max_retries: int | None = None,
        base_delay_seconds: float | None = None,
    ) -> None:
        self.bot = bot
        self.channel_id = channel_id or settings.channel_id
        self.ttl_hours = settings.credential_ttl_hours if ttl_hours is None else ttl_hours
        self.max_retries = settings.credential_issue_max_retries if max_retries is None else max_retries
        self.base_delay_seconds = (
            settings.credential_retry_base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        )

    async def issue(self, user_id: str) -> Credential:
        """Create a single-use invite link for user_id."""
        attempt = 0
        while True:
            issued_at = datetime.now(timezone.utc)
            expires_at = issued_at + timedelta(hours=self.ttl_hours) if self.ttl_hours > 0 else None
            try:
                invite = await self.bot.create_chat_invite_link(
                    chat_id=self.channel_id,
                    name=f"user_{user_id}"[:INVITE_NAME_MAX_LEN],
                    expire_date=expires_at,
                    member_limit=1,
                )
            except TelegramRetryAfter as e:
                telegram_requests_total.labels(method="createChatInviteLink", status="retry_after").inc()
                if attempt >= self.max_retries:
                    logger.error(
                        "credential_issue_rate_limited",
                        extra={"user_id": user_id, "attempt": attempt + 1, "retry_after": e.retry_after},
                    )
                    raise
                attempt += 1
                delay = max(float(e.retry_after), self.base_delay_seconds * attempt)
                credential_issue_retries_total.inc()
                logger.info(
                    "credential_issue_retry_scheduled",
                    extra={"user_id": user_id, "attempt": attempt, "delay_seconds": round(delay, 2)},
                )
                await asyncio.sleep(delay)
                continue
            except Exception:
                telegram_requests_total.labels(method="createChatInviteLink", status="error").inc()
                raise
            telegram_requests_total.labels(method="createChatInviteLink", status="success").inc()
            logger.info("credential_issued", extra={"user_id": user_id, "attempt": attempt + 1})
            return Credential(link=invite.invite_link, issued_at=issued_at, expires_at=expires_at)

    async def revoke(self, link: str) -> bool:
        """Best-effort revoke; returns False instead of raising."""
        try:
            await self.bot.revoke_chat_invite_link(chat_id=self.channel_id, invite_link=link)
            telegram_requests_total.labels(method="revokeChatInviteLink", status="success").inc()
            return True
        except Exception as e:
            telegram_requests_total.labels(method="revokeChatInviteLink", status="error").inc()
            logger.warning("credential_revoke_failed", extra={"error": str(e)})
            return False
