"""
Notifier: сообщения пользователю и операторам.
Никогда не бросает исключений — ошибка доставки логируется, результат возвращается bool.
"""
import logging

from aiogram import Bot
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from channel_gate.core.config import settings
from channel_gate.models.club_settings import DEFAULT_PAID_WELCOME_MESSAGE
from channel_gate.services.club_settings.provider import ClubSettingsProvider, ClubSettingsSnapshot
from channel_gate.services.credentials.models import Credential
from channel_gate.utils.metrics import telegram_requests_total

logger = logging.getLogger(__name__)

LINK_TEXT = "Ваша уникальная одноразовая ссылка для вступления в закрытый канал:"
LINK_TTL_HINT = "Ссылка действует до {expires} (UTC). Если не успеете — используйте /renew_link."
PENDING_TEXT = (
    "Оплата ещё не подтверждена. Статус: {status}.\n"
    "Если вы уже оплатили — попробуйте /checkpayment через минуту."
)
FAILED_TEXT = (
    "Оплата получена, но при создании ссылки на канал произошла ошибка. "
    "Пожалуйста, свяжитесь с поддержкой — мы всё решим."
)
IN_PROGRESS_TEXT = (
    "Оплата подтверждена, ссылка уже создаётся. Проверьте чат через минуту.\n"
    "Если ссылка не пришла — напишите в поддержку."
)
REDIRECT_CONFIRMED_TEXT = "Оплата успешно подтверждена! Ссылка на канал отправлена в чат."


class Notifier:
    def __init__(
        self,
        bot: Bot,
        settings_provider: ClubSettingsProvider,
        admin_chat_ids: list[str] | None = None,
    ) -> None:
        self.bot = bot
        self.settings_provider = settings_provider
        self.admin_chat_ids = settings.admin_chat_ids_list if admin_chat_ids is None else admin_chat_ids

    async def _send(self, chat_id: str, text: str, reply_markup: InlineKeyboardMarkup | None = None) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)
            telegram_requests_total.labels(method="sendMessage", status="success").inc()
            return True
        except Exception as e:
            telegram_requests_total.labels(method="sendMessage", status="error").inc()
            logger.warning("Failed to send message", extra={"error": str(e), "chat_id": chat_id})
            return False

    def _club(self) -> ClubSettingsSnapshot | None:
        try:
            return self.settings_provider.get()
        except Exception as e:
            logger.warning("club_settings_unavailable", extra={"error": str(e)})
            return None

    def _support_markup(self, club: ClubSettingsSnapshot | None = None) -> InlineKeyboardMarkup | None:
        """Without settings the message goes out without the support button."""
        club = club or self._club()
        if club is None:
            return None
        return InlineKeyboardMarkup(
            inline_keyboard=[[InlineKeyboardButton(text="💬 Техподдержка", url=club.support_link)]]
        )

    async def deliver_credential(self, chat_id: str, credential: Credential) -> bool:
        """Paid welcome + link button. Used both for fresh issuance and re-delivery."""
        club = self._club()
        welcome = club.paid_welcome_message if club else DEFAULT_PAID_WELCOME_MESSAGE
        await self._send(chat_id, welcome, reply_markup=self._support_markup(club))
        text = LINK_TEXT
        if credential.expires_at is not None:
            text += "\n" + LINK_TTL_HINT.format(expires=credential.expires_at.strftime("%d.%m.%Y %H:%M"))
        markup = InlineKeyboardMarkup(
            inline_keyboard=[[InlineKeyboardButton(text="Присоединиться", url=credential.link)]]
        )
        return await self._send(chat_id, text, reply_markup=markup)

    async def payment_pending(self, chat_id: str, gateway_status: str | None) -> bool:
        return await self._send(
            chat_id,
            PENDING_TEXT.format(status=gateway_status or "unknown"),
            reply_markup=self._support_markup(),
        )

    async def issuance_failed(self, chat_id: str) -> bool:
        return await self._send(chat_id, FAILED_TEXT, reply_markup=self._support_markup())

    async def issuance_in_progress(self, chat_id: str) -> bool:
        return await self._send(chat_id, IN_PROGRESS_TEXT, reply_markup=self._support_markup())

    async def redirect_confirmed(self, chat_id: str) -> bool:
        return await self._send(chat_id, REDIRECT_CONFIRMED_TEXT)

    async def notify_operators(self, text: str) -> int:
        """Send to every operator; returns how many deliveries succeeded."""
        delivered = 0
        for admin_id in self.admin_chat_ids:
            if await self._send(admin_id, text):
                delivered += 1
        return delivered
