"""
YooKassa push endpoint.

Тело уведомления — недоверенный ввод: источник проверяется до любой обработки,
статус из тела не используется (reconcile запрашивает шлюз).
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from channel_gate.api.deps import get_engine
from channel_gate.api.security import get_client_ip, is_gateway_source
from channel_gate.reconciliation import ReconciliationEngine
from channel_gate.utils.metrics import webhooks_rejected_total

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhook/yookassa")
async def yookassa_webhook(request: Request, engine: ReconciliationEngine = Depends(get_engine)):
    client_ip = get_client_ip(request)
    if not is_gateway_source(request):
        webhooks_rejected_total.inc()
        logger.warning("webhook_rejected", extra={"client_ip": client_ip, "path": request.url.path})
        return JSONResponse(status_code=403, content={"detail": "Forbidden"})

    try:
        body = await request.json()
    except ValueError:
        logger.warning("webhook_bad_body", extra={"client_ip": client_ip})
        return JSONResponse(status_code=400, content={"detail": "Invalid JSON"})

    event = body.get("event") if isinstance(body, dict) else None
    obj = body.get("object") if isinstance(body, dict) else None
    payment_id = obj.get("id") if isinstance(obj, dict) else None
    if not isinstance(event, str) or not event.startswith("payment.") or not payment_id:
        logger.info("webhook_ignored", extra={"event": event})
        return {"status": "ignored"}

    try:
        outcome = await engine.reconcile(str(payment_id), trigger="webhook")
    except Exception as e:
        # 500 → YooKassa повторит доставку
        logger.exception("webhook_reconcile_failed", extra={"payment_id": payment_id, "error": str(e)})
        return JSONResponse(status_code=500, content={"status": "error"})

    return {"status": "ok", "outcome": outcome.status.value}
