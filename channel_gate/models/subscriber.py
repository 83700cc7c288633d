"""
Subscriber — одна запись на пользователя Telegram; постоянный реестр доступа к каналу.
issuance_claimed и credential_consumed меняются только условными UPDATE (см. SubscriberStore).
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String, Text

from channel_gate.db.base import Base


PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_SUCCEEDED = "succeeded"


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, unique=True, nullable=False, index=True)
    chat_id = Column(String, nullable=True)  # null у placeholder до первого контакта
    first_name = Column(String, nullable=True)
    username = Column(String, nullable=True)
    email = Column(String, nullable=True)

    payment_status = Column(String, nullable=False, default=PAYMENT_STATUS_PENDING)  # pending / succeeded
    payment_id = Column(String, nullable=True, index=True)      # id платежа в YooKassa
    correlation_id = Column(String, unique=True, nullable=True)  # наш id попытки, он же Idempotence-Key
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_document = Column(String, nullable=True)             # ссылка на документ в группе операторов

    issuance_claimed = Column(Boolean, nullable=False, default=False)
    issuance_claimed_at = Column(DateTime(timezone=True), nullable=True)
    issuance_error = Column(Text, nullable=True)
    issuance_failed_at = Column(DateTime(timezone=True), nullable=True)

    credential_link = Column(String, nullable=True)
    credential_issued_at = Column(DateTime(timezone=True), nullable=True)
    credential_expires_at = Column(DateTime(timezone=True), nullable=True)  # null = бессрочная
    credential_consumed = Column(Boolean, nullable=False, default=False)
    membership_confirmed = Column(Boolean, nullable=False, default=False)

    last_activity = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAYMENT_STATUS_SUCCEEDED
