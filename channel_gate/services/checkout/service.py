"""
CheckoutService — начало оплаты доступа в канал.

- уже оплачено: платёж не создаётся, вернуть существующую ссылку
- выдача захвачена (в процессе / упала): новый платёж не создаётся, только поддержка
- привязанный платёж ещё открыт в шлюзе: вернуть его страницу оплаты, нового не создавать
- rate-limit в Redis (общий для всех реплик бота), fail open
"""
import logging
from enum import Enum
from uuid import uuid4

import redis
from pydantic import BaseModel

from channel_gate.core.config import settings
from channel_gate.models.subscriber import Subscriber
from channel_gate.services.club_settings.provider import ClubSettingsProvider
from channel_gate.services.credentials.models import Credential
from channel_gate.services.payments.gateway import PaymentNotFound, YooKassaClient
from channel_gate.services.subscribers.store import SubscriberStore

logger = logging.getLogger(__name__)


class CheckoutStatus(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    ALREADY_PAID = "already_paid"
    IN_PROGRESS = "in_progress"
    RATE_LIMITED = "rate_limited"


class CheckoutResult(BaseModel):
    status: CheckoutStatus
    checkout_url: str | None = None
    payment_id: str | None = None
    correlation_id: str | None = None
    credential: Credential | None = None

    model_config = {"frozen": True}


class CheckoutService:
    def __init__(
        self,
        gateway: YooKassaClient,
        store: SubscriberStore,
        settings_provider: ClubSettingsProvider,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.settings_provider = settings_provider
        self._redis = redis_client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    async def start_checkout(
        self,
        user_id: str,
        chat_id: str,
        email: str | None = None,
        first_name: str | None = None,
        username: str | None = None,
    ) -> CheckoutResult:
        """
        Создать платёж в YooKassa и привязать его к подписчику.
        PaymentGatewayError (в т.ч. таймаут) пробрасывается — бот показывает ошибку.
        """
        sub = self.store.get_or_create(user_id, chat_id, first_name=first_name, username=username)

        if sub.is_paid:
            return CheckoutResult(
                status=CheckoutStatus.ALREADY_PAID,
                payment_id=sub.payment_id,
                credential=Credential.from_subscriber(sub),
            )
        if sub.issuance_claimed:
            return CheckoutResult(status=CheckoutStatus.IN_PROGRESS, payment_id=sub.payment_id)

        if sub.payment_id:
            resumed = await self._resume_linked_payment(sub)
            if resumed is not None:
                return resumed

        if not self._check_rate_limit(user_id):
            logger.info("purchase_rate_limited", extra={"user_id": user_id})
            return CheckoutResult(status=CheckoutStatus.RATE_LIMITED)

        club = self.settings_provider.get()
        correlation_id = str(uuid4())
        created = await self.gateway.create_payment(
            amount=club.payment_amount,
            description=club.payment_description,
            idempotency_key=correlation_id,
            return_url=f"{settings.return_url}?paymentId={correlation_id}",
            payer_email=email,
            metadata={"userId": user_id, "correlationId": correlation_id},
        )

        linked = self.store.link_payment(
            user_id,
            created.gateway_payment_id,
            correlation_id,
            email,
            replaces=sub.payment_id,
        )
        if not linked:
            # Between the checks and here the record was claimed or got another payment
            logger.warning(
                "checkout_link_refused",
                extra={"user_id": user_id, "payment_id": created.gateway_payment_id},
            )
            return CheckoutResult(status=CheckoutStatus.IN_PROGRESS, payment_id=sub.payment_id)

        logger.info(
            "checkout_created",
            extra={
                "user_id": user_id,
                "payment_id": created.gateway_payment_id,
                "correlation_id": correlation_id,
            },
        )
        return CheckoutResult(
            status=CheckoutStatus.CREATED,
            checkout_url=created.checkout_url,
            payment_id=created.gateway_payment_id,
            correlation_id=correlation_id,
        )

    async def _resume_linked_payment(self, sub: Subscriber) -> CheckoutResult | None:
        """
        Попытка, уже привязанная к подписчику, не перезаписывается, пока её можно оплатить:
        иначе оплата старой страницы не нашлась бы ни по redirect, ни по опросу.
        None — привязанный платёж закрыт (отменён / неизвестен шлюзу), можно создавать новый.
        """
        try:
            payment = await self.gateway.get_payment(sub.payment_id)
        except PaymentNotFound:
            return None
        if payment.is_settled:
            # Оплачен, но ещё не сверен: ссылку выдаст опрос или sweeper
            return CheckoutResult(status=CheckoutStatus.IN_PROGRESS, payment_id=payment.id)
        if payment.is_open and payment.confirmation_url:
            logger.info(
                "checkout_resumed",
                extra={"user_id": sub.user_id, "payment_id": payment.id, "correlation_id": sub.correlation_id},
            )
            return CheckoutResult(
                status=CheckoutStatus.AWAITING_PAYMENT,
                checkout_url=payment.confirmation_url,
                payment_id=payment.id,
                correlation_id=sub.correlation_id,
            )
        return None

    # ------------------------------------------------------------------
    # Rate-limit (Redis — общий для всех реплик бота)
    # ------------------------------------------------------------------

    def _check_rate_limit(self, user_id: str) -> bool:
        """Не более purchase_rate_limit попыток за purchase_rate_window_seconds."""
        key = f"purchase_rate:{user_id}"
        try:
            current = self._redis.incr(key)
            if current == 1:
                self._redis.expire(key, settings.purchase_rate_window_seconds)
            return current <= settings.purchase_rate_limit
        except redis.RedisError as e:
            logger.warning("purchase_rate_limit_redis_error", extra={"error": str(e)})
            return True  # fail open: при недоступности Redis разрешаем оплату
