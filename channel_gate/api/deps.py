"""
Process-wide singletons for the API, resolved through FastAPI Depends
(tests swap them via app.dependency_overrides).
"""
from functools import lru_cache

from aiogram import Bot

from channel_gate.core.config import settings
from channel_gate.reconciliation import ReconciliationEngine
from channel_gate.reconciliation.factory import build_engine
from channel_gate.services.club_settings.provider import ClubSettingsProvider
from channel_gate.services.notifications.notifier import Notifier
from channel_gate.services.subscribers.store import SubscriberStore


@lru_cache(maxsize=1)
def get_bot() -> Bot:
    return Bot(token=settings.telegram_bot_token)


@lru_cache(maxsize=1)
def get_settings_provider() -> ClubSettingsProvider:
    return ClubSettingsProvider()


@lru_cache(maxsize=1)
def get_store() -> SubscriberStore:
    return SubscriberStore()


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return Notifier(get_bot(), get_settings_provider())


@lru_cache(maxsize=1)
def get_engine() -> ReconciliationEngine:
    return build_engine(get_bot(), store=get_store(), settings_provider=get_settings_provider())
