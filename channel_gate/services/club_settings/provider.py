import threading
import time

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from channel_gate.core.config import settings
from channel_gate.db.session import SessionLocal, session_scope
from channel_gate.services.club_settings.service import ClubSettingsService


class ClubSettingsSnapshot(BaseModel):
    payment_amount: int
    payment_description: str
    support_link: str
    welcome_message: str
    paid_welcome_message: str

    model_config = {"frozen": True}


class ClubSettingsProvider:
    """
    Read-through provider injected into checkout and notifier.
    - in-memory snapshot with TTL
    - invalidate() drops it; the next get() reloads from the database
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal, ttl_seconds: int | None = None) -> None:
        self._session_factory = session_factory
        self.ttl_seconds = settings.club_settings_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._lock = threading.Lock()
        self._loaded_at = 0.0
        self._snapshot: ClubSettingsSnapshot | None = None

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = 0.0

    def get(self) -> ClubSettingsSnapshot:
        now = time.monotonic()
        with self._lock:
            if self._snapshot is not None and (now - self._loaded_at) <= self.ttl_seconds:
                return self._snapshot
        with session_scope(self._session_factory) as db:
            row = ClubSettingsService(db).get_or_create()
            snapshot = ClubSettingsSnapshot(
                payment_amount=row.payment_amount,
                payment_description=row.payment_description,
                support_link=row.support_link,
                welcome_message=row.welcome_message,
                paid_welcome_message=row.paid_welcome_message,
            )
        with self._lock:
            self._snapshot = snapshot
            self._loaded_at = now
            return snapshot
