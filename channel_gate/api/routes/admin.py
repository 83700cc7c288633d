"""
Admin API (X-Admin-Key): subscriber inspection, manual reconcile, re-drive of failed issuance,
club settings.
"""
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from channel_gate.api.deps import get_engine, get_settings_provider, get_store
from channel_gate.api.security import require_admin_key
from channel_gate.db.session import get_db
from channel_gate.models.subscriber import Subscriber
from channel_gate.reconciliation import ReconciliationEngine, RedriveRefused
from channel_gate.services.club_settings.provider import ClubSettingsProvider
from channel_gate.services.club_settings.service import ClubSettingsService
from channel_gate.services.payments.gateway import PaymentGatewayError
from channel_gate.services.subscribers.store import SubscriberStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


def _subscriber_dict(sub: Subscriber) -> dict[str, Any]:
    return {
        "user_id": sub.user_id,
        "chat_id": sub.chat_id,
        "username": sub.username,
        "email": sub.email,
        "payment_status": sub.payment_status,
        "payment_id": sub.payment_id,
        "correlation_id": sub.correlation_id,
        "paid_at": sub.paid_at.isoformat() if sub.paid_at else None,
        "payment_document": sub.payment_document,
        "issuance_claimed": sub.issuance_claimed,
        "issuance_claimed_at": sub.issuance_claimed_at.isoformat() if sub.issuance_claimed_at else None,
        "issuance_error": sub.issuance_error,
        "credential_link": sub.credential_link,
        "credential_expires_at": sub.credential_expires_at.isoformat() if sub.credential_expires_at else None,
        "credential_consumed": sub.credential_consumed,
        "membership_confirmed": sub.membership_confirmed,
        "last_activity": sub.last_activity.isoformat() if sub.last_activity else None,
    }


# ---------- Subscribers ----------
@router.get("/subscribers/{user_id}")
def subscriber_get(user_id: str, store: SubscriberStore = Depends(get_store)):
    sub = store.get_by_user_id(user_id)
    if not sub:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    return _subscriber_dict(sub)


@router.post("/subscribers/{user_id}/redrive")
async def subscriber_redrive(user_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    """Release a failed claim and reconcile again. 409 unless the subscriber is in the failed state."""
    try:
        outcome = await engine.redrive(user_id)
    except RedriveRefused as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    logger.info("admin_redrive", extra={"user_id": user_id, "outcome": outcome.status.value})
    return outcome.model_dump(mode="json")


@router.post("/reconcile/{reference}")
async def reconcile_reference(reference: str, engine: ReconciliationEngine = Depends(get_engine)):
    try:
        outcome = await engine.reconcile(reference, trigger="admin")
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return outcome.model_dump(mode="json")


# ---------- Club settings ----------
@router.get("/settings")
def club_settings_get(db: Session = Depends(get_db)):
    return ClubSettingsService(db).as_dict()


@router.put("/settings")
def club_settings_update(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    provider: ClubSettingsProvider = Depends(get_settings_provider),
):
    try:
        data = ClubSettingsService(db).update(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    provider.invalidate()
    logger.info("club_settings_updated", extra={"event": "club_settings"})
    return data
