from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from channel_gate.core.config import settings
from channel_gate.db.session import get_db


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """
    Readiness probe - 503 until the subscriber table is reachable and Redis answers.
    Webhooks must not be accepted before the store can arbitrate issuance.
    """
    checks = {}
    try:
        db.execute(text("SELECT 1 FROM subscribers LIMIT 1"))
        checks["database"] = "ok"
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
        checks["redis"] = "ok"
        return {"status": "ready", "checks": checks}
    except Exception as e:
        response.status_code = 503
        return {"status": "not_ready", "checks": checks, "error": str(e)}
