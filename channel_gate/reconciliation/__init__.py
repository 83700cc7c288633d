"""
Сверка оплаты и выдачи доступа (ядро).
Все триггеры (webhook, /checkpayment, redirect, sweeper) вызывают один reconcile().
"""
from channel_gate.reconciliation.engine import RedriveRefused, ReconciliationEngine
from channel_gate.reconciliation.models import OutcomeStatus, ReconcileOutcome

__all__ = [
    "OutcomeStatus",
    "ReconcileOutcome",
    "ReconciliationEngine",
    "RedriveRefused",
]
