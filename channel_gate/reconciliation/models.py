"""
DTO сверки: OutcomeStatus и ReconcileOutcome — единый ответ reconcile() для всех триггеров.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from channel_gate.services.credentials.models import Credential


class OutcomeStatus(str, Enum):
    NOT_YET_SETTLED = "not_yet_settled"      # шлюз ещё не подтвердил оплату
    ALREADY_FULFILLED = "already_fulfilled"  # ссылка уже выдана / использована — повторная доставка той же
    ALREADY_CLAIMED = "already_claimed"      # выдачу захватил другой вызов (или она упала, см. error)
    ISSUED = "issued"                        # этот вызов создал и доставил ссылку
    FAILED = "failed"                        # захват есть, выдача упала; только ручной re-drive
    DEFERRED = "deferred"                    # placeholder без chat_id: ждём первого контакта
    UNKNOWN_REFERENCE = "unknown_reference"  # ни хранилище, ни шлюз не знают reference


class ReconcileOutcome(BaseModel):
    status: OutcomeStatus
    reference: str
    user_id: str | None = None
    payment_id: str | None = None
    gateway_status: str | None = Field(None, description="Статус платежа в шлюзе, если запрашивался")
    credential: Credential | None = None
    error: str | None = None

    model_config = {"frozen": True}

