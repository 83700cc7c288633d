#!/usr/bin/env python3
"""
Создать таблицы (subscribers, club_settings) и строку настроек клуба по умолчанию.
Запуск из корня проекта: python -m scripts.init_db
или: PYTHONPATH=. python scripts/init_db.py
"""
import os
import sys

# корень проекта в PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from channel_gate.db.base import Base
from channel_gate.db.session import engine, session_scope
from channel_gate.models.club_settings import ClubSettings  # noqa: F401
from channel_gate.models.subscriber import Subscriber  # noqa: F401
from channel_gate.services.club_settings.service import ClubSettingsService


def main():
    Base.metadata.create_all(bind=engine)
    with session_scope() as db:
        data = ClubSettingsService(db).as_dict()
    print("Таблицы созданы.")
    print(f"Цена доступа: {data['payment_amount']}, поддержка: {data['support_link']}")


if __name__ == "__main__":
    main()
