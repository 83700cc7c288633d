"""Настройки клуба из админки: цена доступа, ссылка поддержки, тексты приветствий."""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from channel_gate.models.club_settings import ClubSettings


EDITABLE_FIELDS = (
    "payment_amount",
    "payment_description",
    "support_link",
    "welcome_message",
    "paid_welcome_message",
)


class ClubSettingsService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self) -> ClubSettings | None:
        return self.db.query(ClubSettings).filter(ClubSettings.id == 1).first()

    def get_or_create(self) -> ClubSettings:
        row = self.get()
        if row:
            return row
        row = ClubSettings(id=1)
        self.db.add(row)
        self.db.flush()
        return row

    def as_dict(self) -> dict[str, Any]:
        row = self.get_or_create()
        data = {field: getattr(row, field) for field in EDITABLE_FIELDS}
        data["updated_at"] = row.updated_at.isoformat() if row.updated_at else None
        return data

    def update(self, data: dict[str, Any]) -> dict[str, Any]:
        row = self.get_or_create()
        for field in EDITABLE_FIELDS:
            if field in data and data[field] is not None:
                value = data[field]
                if field == "payment_amount":
                    value = int(value)
                    if value <= 0:
                        raise ValueError("payment_amount must be positive")
                setattr(row, field, value)
        row.updated_at = datetime.now(timezone.utc)
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return self.as_dict()
