from aiogram import Bot

from channel_gate.reconciliation.engine import ReconciliationEngine
from channel_gate.services.audit.recorder import AuditRecorder
from channel_gate.services.club_settings.provider import ClubSettingsProvider
from channel_gate.services.credentials.issuer import CredentialIssuer
from channel_gate.services.notifications.notifier import Notifier
from channel_gate.services.payments.gateway import YooKassaClient
from channel_gate.services.subscribers.store import SubscriberStore


def build_engine(
    bot: Bot,
    *,
    gateway: YooKassaClient | None = None,
    store: SubscriberStore | None = None,
    settings_provider: ClubSettingsProvider | None = None,
) -> ReconciliationEngine:
    """Wire the engine for one process (API, bot or sweeper) around a shared Bot."""
    return ReconciliationEngine(
        gateway=gateway or YooKassaClient(),
        store=store or SubscriberStore(),
        issuer=CredentialIssuer(bot),
        recorder=AuditRecorder(bot),
        notifier=Notifier(bot, settings_provider or ClubSettingsProvider()),
    )
