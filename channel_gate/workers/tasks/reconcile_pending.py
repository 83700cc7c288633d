"""
Celery beat task: fallback trigger for lost webhooks.
Reconciles pending subscribers with a linked, unclaimed payment and recent activity.
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from aiogram import Bot

from channel_gate.core.celery_app import celery_app
from channel_gate.core.config import settings
from channel_gate.reconciliation import ReconciliationEngine
from channel_gate.reconciliation.factory import build_engine
from channel_gate.services.subscribers.store import SubscriberStore

logger = logging.getLogger(__name__)


async def sweep_pending(
    engine: ReconciliationEngine,
    store: SubscriberStore,
    lookback_hours: int | None = None,
    batch_size: int | None = None,
) -> dict:
    """Sequential on purpose: one gateway call at a time. A failing payment does not stop the batch."""
    lookback = settings.sweeper_lookback_hours if lookback_hours is None else lookback_hours
    limit = settings.sweeper_batch_size if batch_size is None else batch_size
    since = datetime.now(timezone.utc) - timedelta(hours=lookback)

    candidates = store.list_reconcilable(since, limit=limit)
    outcomes: Counter = Counter()
    errors = 0
    for sub in candidates:
        try:
            outcome = await engine.reconcile(sub.payment_id, trigger="sweeper")
        except Exception as e:
            errors += 1
            logger.warning(
                "sweeper_reconcile_failed",
                extra={"user_id": sub.user_id, "payment_id": sub.payment_id, "error": str(e)},
            )
            continue
        outcomes[outcome.status.value] += 1

    return {"ok": True, "checked": len(candidates), "errors": errors, "outcomes": dict(outcomes)}


async def _run_sweep() -> dict:
    bot = Bot(token=settings.telegram_bot_token)
    engine = build_engine(bot)
    try:
        return await sweep_pending(engine, engine.store)
    finally:
        await engine.gateway.close()
        await bot.session.close()


@celery_app.task(
    name="channel_gate.workers.tasks.reconcile_pending.reconcile_pending_payments",
    time_limit=540,
    soft_time_limit=500,
)
def reconcile_pending_payments() -> dict:
    result = asyncio.run(_run_sweep())
    if result["checked"]:
        logger.info("sweeper_finished", extra={"event": "sweeper", "outcome": result["outcomes"]})
    return result
