"""
ReconciliationEngine — единая операция reconcile(reference).

Вход от любого триггера (webhook, /checkpayment, redirect, sweeper). Шлюз — источник
истины об оплате; хранилище — единственный арбитр «кто выдаёт ссылку»:

    resolve → get_payment → settled? → pre-claim checks → try_claim_issuance
            → issue → audit → record_issuance → deliver → notify operators

Захват не откатывается: сбой после него переводит запись в FAILED, вернуть её в
работу может только оператор (redrive). Ссылка выдаётся не более одного раза на оплату.
"""
from __future__ import annotations

import logging
import time

from channel_gate.models.subscriber import Subscriber
from channel_gate.reconciliation.models import OutcomeStatus, ReconcileOutcome
from channel_gate.services.audit.recorder import AuditRecorder, PaymentProof
from channel_gate.services.credentials.issuer import CredentialIssuer
from channel_gate.services.credentials.models import Credential
from channel_gate.services.notifications.notifier import Notifier
from channel_gate.services.payments.gateway import GatewayPayment, PaymentNotFound, YooKassaClient
from channel_gate.services.subscribers.store import SubscriberStore
from channel_gate.utils.metrics import (
    credentials_issued_total,
    reconcile_duration_seconds,
    reconcile_outcomes_total,
)

logger = logging.getLogger(__name__)

ISSUE_INITIAL = "initial"
ISSUE_REISSUE = "reissue"

OPERATOR_ISSUED_TEXT = (
    "Новый успешный платеж от пользователя user_{user_id} (paymentId: {payment_id}). "
    "Ссылка отправлена: {link}"
)
OPERATOR_REISSUED_TEXT = (
    "Ссылка для user_{user_id} (paymentId: {payment_id}) истекла и выдана заново: {link}"
)
OPERATOR_FAILED_TEXT = (
    "Ошибка при создании ссылки для user_{user_id} (paymentId: {payment_id}): {error}\n"
    "Повторная выдача: POST /admin/subscribers/{user_id}/redrive"
)


class RedriveRefused(Exception):
    """Re-drive requested for a subscriber that is not in the failed state."""


class ReconciliationEngine:
    def __init__(
        self,
        gateway: YooKassaClient,
        store: SubscriberStore,
        issuer: CredentialIssuer,
        recorder: AuditRecorder,
        notifier: Notifier,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.issuer = issuer
        self.recorder = recorder
        self.notifier = notifier

    async def reconcile(self, reference: str, trigger: str = "poll") -> ReconcileOutcome:
        """
        Привести локальное состояние к состоянию шлюза для одного платежа.

        reference — id платежа в шлюзе или correlation id (наш id попытки).
        Безопасно вызывать многократно и параллельно из разных триггеров.
        Ошибки шлюза (PaymentGatewayError) пробрасываются: триггер решает, что ответить.
        """
        start = time.monotonic()
        try:
            outcome = await self._reconcile(reference, trigger)
        except Exception as e:
            reconcile_outcomes_total.labels(trigger=trigger, outcome="error").inc()
            logger.warning(
                "reconcile_error",
                extra={"trigger": trigger, "payment_id": reference, "error": str(e)},
            )
            raise
        finally:
            reconcile_duration_seconds.labels(trigger=trigger).observe(time.monotonic() - start)

        reconcile_outcomes_total.labels(trigger=trigger, outcome=outcome.status.value).inc()
        logger.info(
            "reconcile_outcome",
            extra={
                "trigger": trigger,
                "outcome": outcome.status.value,
                "user_id": outcome.user_id,
                "payment_id": outcome.payment_id or reference,
                "gateway_status": outcome.gateway_status,
            },
        )
        return outcome

    async def redrive(self, user_id: str) -> ReconcileOutcome:
        """Operator re-drive: release a failed claim, then reconcile the linked payment."""
        sub = self.store.get_by_user_id(user_id)
        if sub is None or not sub.payment_id:
            raise RedriveRefused(f"subscriber {user_id} has no linked payment")
        if not self.store.release_failed_claim(user_id):
            raise RedriveRefused(f"subscriber {user_id} is not in the failed state")
        logger.info("issuance_claim_released", extra={"user_id": user_id, "payment_id": sub.payment_id})
        return await self.reconcile(sub.payment_id, trigger="redrive")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _reconcile(self, reference: str, trigger: str) -> ReconcileOutcome:
        payment: GatewayPayment | None = None
        sub = self.store.get_by_payment_id(reference) or self.store.get_by_correlation_id(reference)

        if sub is None:
            # Событие пришло раньше локальной записи (или reference — чужой id)
            try:
                payment = await self.gateway.get_payment(reference)
            except PaymentNotFound:
                return ReconcileOutcome(status=OutcomeStatus.UNKNOWN_REFERENCE, reference=reference)
            sub = self._resolve_from_metadata(payment)
        else:
            payment_id = sub.payment_id
            if not payment_id:
                return ReconcileOutcome(
                    status=OutcomeStatus.UNKNOWN_REFERENCE,
                    reference=reference,
                    user_id=sub.user_id,
                )
            try:
                payment = await self.gateway.get_payment(payment_id)
            except PaymentNotFound:
                return ReconcileOutcome(
                    status=OutcomeStatus.UNKNOWN_REFERENCE,
                    reference=reference,
                    user_id=sub.user_id,
                    payment_id=payment_id,
                )

        def outcome(status: OutcomeStatus, **kwargs) -> ReconcileOutcome:
            return ReconcileOutcome(
                status=status,
                reference=reference,
                user_id=sub.user_id,
                payment_id=payment.id,
                gateway_status=payment.status,
                **kwargs,
            )

        if not payment.is_settled:
            return outcome(OutcomeStatus.NOT_YET_SETTLED)

        existing = Credential.from_subscriber(sub)
        if sub.credential_consumed or sub.membership_confirmed:
            return outcome(OutcomeStatus.ALREADY_FULFILLED, credential=existing)
        if existing is not None:
            if not existing.is_expired():
                return outcome(OutcomeStatus.ALREADY_FULFILLED, credential=existing)
            if not self.store.try_claim_reissue(sub.user_id, existing.link):
                return outcome(OutcomeStatus.ALREADY_CLAIMED)
            await self.issuer.revoke(existing.link)
            return await self._issue_and_deliver(sub, payment, outcome, kind=ISSUE_REISSUE)
        if sub.issuance_claimed:
            return outcome(OutcomeStatus.ALREADY_CLAIMED, error=sub.issuance_error)
        if not sub.chat_id:
            # Некуда доставить: ждём /start, следующий reconcile выдаст ссылку
            return outcome(OutcomeStatus.DEFERRED)

        if not self.store.try_claim_issuance(sub.user_id, payment.id):
            return outcome(OutcomeStatus.ALREADY_CLAIMED)
        return await self._issue_and_deliver(sub, payment, outcome, kind=ISSUE_INITIAL)

    def _resolve_from_metadata(self, payment: GatewayPayment) -> Subscriber:
        """
        Найти или создать запись по metadata платежа (userId / correlationId).
        Существующая запись получает привязку платежа; иначе создаётся placeholder без chat_id.
        """
        user_id = payment.metadata.get("userId")
        correlation_id = payment.metadata.get("correlationId")

        if correlation_id:
            sub = self.store.get_by_correlation_id(correlation_id)
            if sub is not None:
                return sub

        if user_id:
            sub = self.store.get_by_user_id(user_id)
            if sub is not None:
                if sub.payment_id != payment.id:
                    self.store.link_payment(user_id, payment.id, correlation_id, payment.payer_email)
                    sub = self.store.get_by_user_id(user_id) or sub
                return sub

        return self.store.create_placeholder(
            user_id or f"unknown_{payment.id}",
            payment.id,
            correlation_id,
        )

    async def _issue_and_deliver(self, sub: Subscriber, payment: GatewayPayment, outcome, *, kind: str) -> ReconcileOutcome:
        """Runs only after this call won the claim (or the reissue rotation)."""
        try:
            credential = await self.issuer.issue(sub.user_id)
        except Exception as e:
            return await self._fail(sub, payment, outcome, e)

        document = None
        if kind == ISSUE_INITIAL and not sub.payment_document:
            # one proof per payment: a redrive after a failed reissue must not record it again
            document = await self.recorder.record(
                PaymentProof(
                    payment_id=payment.id,
                    user_id=sub.user_id,
                    status=payment.status,
                    amount=payment.amount,
                    currency=payment.currency,
                    paid_at=payment.settled_at,
                    email=payment.payer_email or sub.email,
                )
            )

        try:
            stored = self.store.record_issuance(
                sub.user_id,
                credential,
                paid_at=payment.settled_at,
                payment_document=document,
            )
        except Exception as e:
            await self.issuer.revoke(credential.link)
            return await self._fail(sub, payment, outcome, e)

        if not stored:
            # Claim disappeared between claim and persist: the link must not stay live
            await self.issuer.revoke(credential.link)
            logger.error(
                "credential_not_persisted",
                extra={"user_id": sub.user_id, "payment_id": payment.id},
            )
            return outcome(OutcomeStatus.ALREADY_CLAIMED)

        credentials_issued_total.labels(kind=kind).inc()
        if sub.chat_id:
            await self.notifier.deliver_credential(sub.chat_id, credential)
        template = OPERATOR_ISSUED_TEXT if kind == ISSUE_INITIAL else OPERATOR_REISSUED_TEXT
        await self.notifier.notify_operators(
            template.format(user_id=sub.user_id, payment_id=payment.id, link=credential.link)
        )
        return outcome(OutcomeStatus.ISSUED, credential=credential)

    async def _fail(self, sub: Subscriber, payment: GatewayPayment, outcome, error: Exception) -> ReconcileOutcome:
        message = f"{type(error).__name__}: {error}"
        logger.error(
            "credential_issue_failed",
            extra={"user_id": sub.user_id, "payment_id": payment.id, "error": message},
            exc_info=error,
        )
        try:
            self.store.record_issuance_failure(sub.user_id, message)
        except Exception:
            logger.exception("issuance_failure_not_recorded", extra={"user_id": sub.user_id})
        if sub.chat_id:
            await self.notifier.issuance_failed(sub.chat_id)
        await self.notifier.notify_operators(
            OPERATOR_FAILED_TEXT.format(user_id=sub.user_id, payment_id=payment.id, error=message)
        )
        return outcome(OutcomeStatus.FAILED, error=message)
