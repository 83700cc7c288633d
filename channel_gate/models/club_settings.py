from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from channel_gate.db.base import Base


DEFAULT_WELCOME_MESSAGE = (
    "Привет! 👋\n\n"
    "Здесь можно купить доступ в закрытый канал.\n"
    "После оплаты бот пришлёт одноразовую ссылку для вступления."
)
DEFAULT_PAID_WELCOME_MESSAGE = (
    "🎉 Добро пожаловать в закрытый клуб! 🎉\n\n"
    "Вы успешно оплатили доступ. Если есть вопросы — напишите в поддержку."
)


class ClubSettings(Base):
    """Club settings (single row, id=1): price and user-facing copy."""

    __tablename__ = "club_settings"

    id = Column(Integer, primary_key=True, default=1)
    payment_amount = Column(Integer, nullable=False, default=399)
    payment_description = Column(String, nullable=False, default="Доступ к закрытому Telegram каналу")
    support_link = Column(String, nullable=False, default="https://t.me/support")
    welcome_message = Column(Text, nullable=False, default=DEFAULT_WELCOME_MESSAGE)
    paid_welcome_message = Column(Text, nullable=False, default=DEFAULT_PAID_WELCOME_MESSAGE)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
