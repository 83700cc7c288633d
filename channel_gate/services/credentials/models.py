"""
DTO выдачи: Credential — одноразовая ссылка-приглашение в канал.
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Credential(BaseModel):
    """Single-use invite link. expires_at=None means non-expiring."""

    link: str
    issued_at: datetime
    expires_at: datetime | None = Field(None, description="None = ссылка без срока действия")

    model_config = {"frozen": True}

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    @classmethod
    def from_subscriber(cls, sub) -> Credential | None:
        if not sub.credential_link:
            return None
        return cls(
            link=sub.credential_link,
            issued_at=sub.credential_issued_at or datetime.now(timezone.utc),
            expires_at=sub.credential_expires_at,
        )
