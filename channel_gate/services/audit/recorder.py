"""
Аудит оплат: платёжный документ (txt) в группу операторов.
Best-effort — ошибка логируется и не блокирует выдачу ссылки.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from aiogram import Bot
from aiogram.types import BufferedInputFile
from pydantic import BaseModel

from channel_gate.core.config import settings
from channel_gate.utils.metrics import telegram_requests_total

logger = logging.getLogger(__name__)


class PaymentProof(BaseModel):
    payment_id: str
    user_id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    paid_at: datetime | None = None
    email: str | None = None

    model_config = {"frozen": True}


def render_proof(proof: PaymentProof) -> str:
    amount = f"{proof.amount} {proof.currency or ''}".strip() if proof.amount is not None else "N/A"
    paid_at = proof.paid_at.strftime("%d.%m.%Y %H:%M:%S %Z").strip() if proof.paid_at else "N/A"
    return (
        "Платежный документ\n"
        f"ID транзакции: {proof.payment_id}\n"
        f"Сумма: {amount}\n"
        f"Дата: {paid_at}\n"
        f"Статус: {proof.status}\n"
        f"Пользователь: {proof.user_id}\n"
        f"Email: {proof.email or 'N/A'}"
    )


def message_link(group_id: str, message_id: int) -> str:
    """t.me/c link for a message in a private supergroup (-100 prefix stripped)."""
    internal = group_id[4:] if group_id.startswith("-100") else group_id.lstrip("-")
    return f"https://t.me/c/{internal}/{message_id}"


class AuditRecorder:
    def __init__(self, bot: Bot, group_id: str | None = None) -> None:
        self.bot = bot
        self.group_id = group_id or settings.payment_group_id

    async def record(self, proof: PaymentProof) -> str | None:
        try:
            message = await self.bot.send_document(
                chat_id=self.group_id,
                document=BufferedInputFile(
                    render_proof(proof).encode("utf-8"),
                    filename=f"payment_{proof.payment_id}.txt",
                ),
                caption=f"Документ оплаты для user_{proof.user_id}",
            )
        except Exception as e:
            telegram_requests_total.labels(method="sendDocument", status="error").inc()
            logger.warning(
                "payment_document_failed",
                extra={"payment_id": proof.payment_id, "user_id": proof.user_id, "error": str(e)},
            )
            return None
        telegram_requests_total.labels(method="sendDocument", status="success").inc()
        reference = message_link(self.group_id, message.message_id)
        logger.info("payment_document_recorded", extra={"payment_id": proof.payment_id, "user_id": proof.user_id})
        return reference
