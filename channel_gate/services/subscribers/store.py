"""
SubscriberStore — единственный разделяемый изменяемый ресурс.

Каждая операция — отдельная короткая транзакция. Переходы, влияющие на выдачу и
использование ссылки, выполняются только условным UPDATE; победителя определяет rowcount.
Read-modify-write без условия на предыдущее значение здесь запрещён.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from channel_gate.core.config import settings
from channel_gate.db.session import SessionLocal, session_scope
from channel_gate.models.subscriber import (
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    Subscriber,
)
from channel_gate.services.credentials.models import Credential

logger = logging.getLogger(__name__)

_ANY = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriberStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    def _conditional_update(self, *where, **values) -> bool:
        with self._session() as db:
            result = db.execute(update(Subscriber).where(*where).values(**values))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_user_id(self, user_id: str) -> Subscriber | None:
        with self._session() as db:
            return db.query(Subscriber).filter(Subscriber.user_id == user_id).one_or_none()

    def get_by_payment_id(self, payment_id: str) -> Subscriber | None:
        with self._session() as db:
            return db.query(Subscriber).filter(Subscriber.payment_id == payment_id).first()

    def get_by_correlation_id(self, correlation_id: str) -> Subscriber | None:
        with self._session() as db:
            return (
                db.query(Subscriber)
                .filter(Subscriber.correlation_id == correlation_id)
                .one_or_none()
            )

    def list_reconcilable(self, since: datetime, limit: int = 100) -> list[Subscriber]:
        """Pending subscribers with a linked, unclaimed payment touched after `since`."""
        with self._session() as db:
            return (
                db.query(Subscriber)
                .filter(
                    Subscriber.payment_status == PAYMENT_STATUS_PENDING,
                    Subscriber.payment_id.isnot(None),
                    Subscriber.issuance_claimed.is_(False),
                    Subscriber.last_activity >= since,
                )
                .order_by(Subscriber.last_activity.desc())
                .limit(limit)
                .all()
            )

    # ------------------------------------------------------------------
    # Contact & payment linking
    # ------------------------------------------------------------------

    def get_or_create(
        self,
        user_id: str,
        chat_id: str | None = None,
        first_name: str | None = None,
        username: str | None = None,
    ) -> Subscriber:
        """
        Первый контакт: создать запись или обновить адрес доставки и last_activity.
        Placeholder, созданный вебхуком, получает chat_id здесь.
        """
        with self._session() as db:
            sub = db.query(Subscriber).filter(Subscriber.user_id == user_id).one_or_none()
            if sub:
                if chat_id is not None:
                    sub.chat_id = chat_id
                if first_name is not None:
                    sub.first_name = first_name
                if username is not None:
                    sub.username = username
                sub.last_activity = _now()
                db.add(sub)
                return sub
        try:
            with self._session() as db:
                sub = Subscriber(
                    user_id=user_id,
                    chat_id=chat_id,
                    first_name=first_name,
                    username=username,
                    payment_status=PAYMENT_STATUS_PENDING,
                )
                db.add(sub)
                db.flush()
                logger.info("subscriber_created", extra={"user_id": user_id})
                return sub
        except IntegrityError:
            # concurrent first contact: the other insert won
            return self.get_or_create(user_id, chat_id, first_name, username)

    def create_placeholder(
        self,
        user_id: str,
        payment_id: str,
        correlation_id: str | None = None,
    ) -> Subscriber:
        """Запись для события, пришедшего раньше локальной записи. Без chat_id, статус pending."""
        try:
            with self._session() as db:
                sub = Subscriber(
                    user_id=user_id,
                    chat_id=None,
                    payment_id=payment_id,
                    correlation_id=correlation_id,
                    payment_status=PAYMENT_STATUS_PENDING,
                )
                db.add(sub)
                db.flush()
                logger.warning(
                    "subscriber_placeholder_created",
                    extra={"user_id": user_id, "payment_id": payment_id},
                )
                return sub
        except IntegrityError:
            existing = self.get_by_user_id(user_id)
            if existing is None:
                raise
            return existing

    def link_payment(
        self,
        user_id: str,
        payment_id: str,
        correlation_id: str | None = None,
        email: str | None = None,
        *,
        replaces=_ANY,
    ) -> bool:
        """
        Привязать попытку оплаты. Только для pending-записи без захвата выдачи:
        оплаченную или уже захваченную запись новая попытка не трогает.
        replaces — payment_id, который checkout видел перед созданием платежа (None — не было);
        если его успели сменить, привязка отклоняется.
        """
        values = {"payment_id": payment_id, "last_activity": _now()}
        if correlation_id is not None:
            values["correlation_id"] = correlation_id
        if email is not None:
            values["email"] = email
        where = [
            Subscriber.user_id == user_id,
            Subscriber.payment_status == PAYMENT_STATUS_PENDING,
            Subscriber.issuance_claimed.is_(False),
        ]
        if replaces is not _ANY:
            where.append(
                Subscriber.payment_id.is_(None) if replaces is None else Subscriber.payment_id == replaces
            )
        return self._conditional_update(*where, **values)

    # ------------------------------------------------------------------
    # Issuance (claim-then-issue)
    # ------------------------------------------------------------------

    def try_claim_issuance(self, user_id: str, payment_id: str) -> bool:
        """Atomic false→true on issuance_claimed, bound to the current payment."""
        claimed = self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.payment_id == payment_id,
            Subscriber.issuance_claimed.is_(False),
            issuance_claimed=True,
            issuance_claimed_at=_now(),
        )
        logger.info(
            "issuance_claim",
            extra={"user_id": user_id, "payment_id": payment_id, "outcome": "won" if claimed else "lost"},
        )
        return claimed

    def try_claim_reissue(self, user_id: str, old_link: str) -> bool:
        """
        Rotate an expired, unconsumed credential. The condition on the old link value
        lets exactly one caller clear it; the claim flag stays set.
        """
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.issuance_claimed.is_(True),
            Subscriber.credential_link == old_link,
            Subscriber.credential_consumed.is_(False),
            Subscriber.membership_confirmed.is_(False),
            credential_link=None,
            credential_issued_at=None,
            credential_expires_at=None,
            issuance_claimed_at=_now(),
        )

    def record_issuance(
        self,
        user_id: str,
        credential: Credential,
        paid_at: datetime | None = None,
        payment_document: str | None = None,
    ) -> bool:
        values = {
            "credential_link": credential.link,
            "credential_issued_at": credential.issued_at,
            "credential_expires_at": credential.expires_at,
            "credential_consumed": False,
            "payment_status": PAYMENT_STATUS_SUCCEEDED,
            "issuance_error": None,
            "issuance_failed_at": None,
        }
        if paid_at is not None:
            values["paid_at"] = paid_at
        if payment_document is not None:
            values["payment_document"] = payment_document
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.issuance_claimed.is_(True),
            Subscriber.credential_link.is_(None),
            **values,
        )

    def record_issuance_failure(self, user_id: str, error: str) -> bool:
        """Claim stays set: the only way back is release_failed_claim (operator re-drive)."""
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.issuance_claimed.is_(True),
            Subscriber.credential_link.is_(None),
            issuance_error=error[:2000],
            issuance_failed_at=_now(),
        )

    def release_failed_claim(self, user_id: str, stale_after: timedelta | None = None) -> bool:
        """
        Failed = claimed, no link, and either a recorded error or a claim older than stale_after
        (the failure itself could not be written).
        """
        if stale_after is None:
            stale_after = timedelta(minutes=settings.stale_claim_minutes)
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.issuance_claimed.is_(True),
            Subscriber.credential_link.is_(None),
            or_(
                Subscriber.issuance_error.isnot(None),
                Subscriber.issuance_claimed_at < _now() - stale_after,
            ),
            issuance_claimed=False,
            issuance_claimed_at=None,
            issuance_error=None,
            issuance_failed_at=None,
        )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def mark_consumed(self, user_id: str, invite_link: str | None = None) -> bool:
        """consumed false→true at most once; when the event names a link it must be ours."""
        where = [
            Subscriber.user_id == user_id,
            Subscriber.credential_link.isnot(None),
            Subscriber.credential_consumed.is_(False),
        ]
        if invite_link:
            where.append(Subscriber.credential_link == invite_link)
        return self._conditional_update(
            *where,
            credential_consumed=True,
            membership_confirmed=True,
            last_activity=_now(),
        )

    def confirm_membership(self, user_id: str) -> bool:
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.payment_status == PAYMENT_STATUS_SUCCEEDED,
            Subscriber.credential_consumed.is_(True),
            Subscriber.membership_confirmed.is_(False),
            membership_confirmed=True,
            last_activity=_now(),
        )

    def clear_membership(self, user_id: str) -> bool:
        return self._conditional_update(
            Subscriber.user_id == user_id,
            Subscriber.membership_confirmed.is_(True),
            membership_confirmed=False,
            last_activity=_now(),
        )
