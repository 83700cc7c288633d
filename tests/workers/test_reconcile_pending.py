"""Tests for the pending payment sweeper."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

from channel_gate.reconciliation import OutcomeStatus, ReconcileOutcome
from channel_gate.services.payments.gateway import PaymentGatewayTimeout
from channel_gate.workers.tasks.reconcile_pending import sweep_pending


def _pending(store, user_id, payment_id):
    store.get_or_create(user_id, chat_id=user_id)
    store.link_payment(user_id, payment_id, f"corr-{user_id}")


class TestSweepPending:
    def test_reconciles_candidates_and_survives_errors(self, store):
        _pending(store, "1", "p1")
        _pending(store, "2", "p2")
        engine = MagicMock()
        engine.reconcile = AsyncMock(
            side_effect=[
                ReconcileOutcome(status=OutcomeStatus.ISSUED, reference="x"),
                PaymentGatewayTimeout("timeout"),
            ]
        )

        result = asyncio.run(sweep_pending(engine, store, lookback_hours=24, batch_size=10))

        assert result["checked"] == 2
        assert result["errors"] == 1
        assert result["outcomes"] == {"issued": 1}
        triggers = {c.kwargs["trigger"] for c in engine.reconcile.await_args_list}
        assert triggers == {"sweeper"}

    def test_end_to_end_lost_webhook(self, store, engine, gateway):
        _pending(store, "1", "p1")
        gateway.put("p1")

        result = asyncio.run(sweep_pending(engine, store, lookback_hours=24, batch_size=10))

        assert result["outcomes"] == {"issued": 1}
        assert store.get_by_user_id("1").credential_link is not None
        again = asyncio.run(sweep_pending(engine, store, lookback_hours=24, batch_size=10))
        assert again["checked"] == 0
