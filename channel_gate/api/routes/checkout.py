"""
Browser return after checkout: GET /return?paymentId=<correlation id>.
Always answers with a short plain-text page; the user also gets a message in the bot.
"""
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse

from channel_gate.api.deps import get_engine, get_notifier, get_store
from channel_gate.reconciliation import OutcomeStatus, ReconciliationEngine
from channel_gate.services.notifications.notifier import Notifier
from channel_gate.services.payments.gateway import PaymentGatewayError
from channel_gate.services.subscribers.store import SubscriberStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["checkout"])

PAGE_CONFIRMED = "Оплата успешно подтверждена! Вернитесь в Telegram — ссылка на канал уже в чате."
PAGE_PENDING = "Оплата ещё не подтверждена. Вернитесь в Telegram и используйте /checkpayment."
PAGE_PROBLEM = "Оплата получена, но выдача доступа требует внимания поддержки. Вернитесь в Telegram."
PAGE_UNKNOWN = "Платёж не найден. Вернитесь в Telegram и используйте /checkpayment."
PAGE_UNAVAILABLE = "Не удалось проверить оплату. Попробуйте /checkpayment в боте через минуту."


@router.get("/return", response_class=PlainTextResponse)
async def payment_return(
    payment_id: str | None = Query(None, alias="paymentId"),
    engine: ReconciliationEngine = Depends(get_engine),
    store: SubscriberStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
):
    if not payment_id:
        return PlainTextResponse("Не указан идентификатор платежа.", status_code=400)

    try:
        outcome = await engine.reconcile(payment_id, trigger="redirect")
    except PaymentGatewayError as e:
        logger.warning("redirect_reconcile_failed", extra={"correlation_id": payment_id, "error": str(e)})
        return PlainTextResponse(PAGE_UNAVAILABLE, status_code=503)

    sub = store.get_by_user_id(outcome.user_id) if outcome.user_id else None
    chat_id = sub.chat_id if sub else None

    if outcome.status in (OutcomeStatus.ISSUED, OutcomeStatus.ALREADY_FULFILLED):
        if chat_id:
            await notifier.redirect_confirmed(chat_id)
        return PlainTextResponse(PAGE_CONFIRMED)
    if outcome.status == OutcomeStatus.NOT_YET_SETTLED:
        if chat_id:
            await notifier.payment_pending(chat_id, outcome.gateway_status)
        return PlainTextResponse(PAGE_PENDING)
    if outcome.status == OutcomeStatus.ALREADY_CLAIMED:
        if chat_id:
            if outcome.error:
                await notifier.issuance_failed(chat_id)
            else:
                await notifier.issuance_in_progress(chat_id)
        return PlainTextResponse(PAGE_PROBLEM if outcome.error else PAGE_CONFIRMED)
    if outcome.status == OutcomeStatus.FAILED:
        # engine already sent the support fallback
        return PlainTextResponse(PAGE_PROBLEM)
    return PlainTextResponse(PAGE_UNKNOWN)
