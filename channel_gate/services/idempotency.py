import redis

from channel_gate.core.config import settings


class IdempotencyStore:
    """Short-lived Redis markers: a repeated tap on the same bot button is dropped."""

    TAP_TTL_SECONDS = 10

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.default_ttl = settings.idempotency_ttl

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Atomic operation: setnx + expire in one call."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        created = self.client.set(f"idempotency:{key}", "1", nx=True, ex=ttl)
        return created is not None

    def first_tap(self, action: str, chat_id: str, message_id: int) -> bool:
        """True only for the first press of `action` on this message within TAP_TTL_SECONDS."""
        return self.check_and_set(f"{action}:{chat_id}:{message_id}", ttl_seconds=self.TAP_TTL_SECONDS)
