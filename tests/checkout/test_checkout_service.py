"""Tests for CheckoutService — payment creation, paid/claimed guards, Redis rate limit."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import redis

from channel_gate.reconciliation import OutcomeStatus
from channel_gate.services.checkout.service import CheckoutService, CheckoutStatus
from channel_gate.services.credentials.models import Credential


def _redis(count=1):
    client = MagicMock()
    client.incr.return_value = count
    return client


def _service(gateway, store, settings_provider, redis_client=None):
    return CheckoutService(gateway, store, settings_provider, redis_client=redis_client or _redis())


class TestStartCheckout:
    def test_creates_and_links_payment(self, gateway, store, settings_provider):
        service = _service(gateway, store, settings_provider)

        result = asyncio.run(service.start_checkout("111", "111", email="a@example.com"))

        assert result.status == CheckoutStatus.CREATED
        assert result.checkout_url == "https://yoomoney.ru/checkout/gw-1"
        call = gateway.create_calls[0]
        assert call["amount"] == 399
        assert call["idempotency_key"] == result.correlation_id
        assert call["return_url"] == f"https://example.com/return?paymentId={result.correlation_id}"
        assert call["metadata"] == {"userId": "111", "correlationId": result.correlation_id}
        sub = store.get_by_user_id("111")
        assert sub.payment_id == "gw-1"
        assert sub.correlation_id == result.correlation_id
        assert sub.email == "a@example.com"

    def test_open_attempt_is_resumed(self, gateway, store, settings_provider):
        service = _service(gateway, store, settings_provider)

        first = asyncio.run(service.start_checkout("111", "111"))
        second = asyncio.run(service.start_checkout("111", "111"))

        assert second.status == CheckoutStatus.AWAITING_PAYMENT
        assert second.checkout_url == first.checkout_url
        assert second.correlation_id == first.correlation_id
        assert len(gateway.create_calls) == 1
        assert store.get_by_user_id("111").payment_id == "gw-1"

    def test_canceled_attempt_is_replaced(self, gateway, store, settings_provider):
        service = _service(gateway, store, settings_provider)
        first = asyncio.run(service.start_checkout("111", "111"))
        gateway.put("gw-1", status="canceled")

        second = asyncio.run(service.start_checkout("111", "111"))

        assert second.status == CheckoutStatus.CREATED
        assert second.correlation_id != first.correlation_id
        assert store.get_by_user_id("111").payment_id == "gw-2"

    def test_settled_attempt_is_not_replaced(self, gateway, store, settings_provider):
        service = _service(gateway, store, settings_provider)
        asyncio.run(service.start_checkout("111", "111"))
        gateway.put("gw-1", status="succeeded")

        result = asyncio.run(service.start_checkout("111", "111"))

        assert result.status == CheckoutStatus.IN_PROGRESS
        assert len(gateway.create_calls) == 1
        assert store.get_by_user_id("111").payment_id == "gw-1"

    def test_first_page_paid_after_second_press_is_found(self, gateway, store, settings_provider, engine):
        service = _service(gateway, store, settings_provider)
        first = asyncio.run(service.start_checkout("111", "111"))
        asyncio.run(service.start_checkout("111", "111"))
        gateway.put("gw-1", status="succeeded", metadata=gateway.create_calls[0]["metadata"])

        redirect = asyncio.run(engine.reconcile(first.correlation_id, trigger="redirect"))
        poll = asyncio.run(engine.reconcile(store.get_by_user_id("111").payment_id, trigger="poll"))

        assert redirect.status == OutcomeStatus.ISSUED
        assert poll.status == OutcomeStatus.ALREADY_FULFILLED
        assert poll.credential.link == redirect.credential.link

    def test_already_paid_creates_nothing(self, gateway, store, settings_provider):
        now = datetime.now(timezone.utc)
        store.get_or_create("111", chat_id="111")
        store.link_payment("111", "p1", "corr-1")
        store.try_claim_issuance("111", "p1")
        store.record_issuance("111", Credential(link="https://t.me/+abc", issued_at=now, expires_at=now + timedelta(hours=1)))

        result = asyncio.run(_service(gateway, store, settings_provider).start_checkout("111", "111"))

        assert result.status == CheckoutStatus.ALREADY_PAID
        assert result.credential.link == "https://t.me/+abc"
        assert gateway.create_calls == []

    def test_claimed_subscriber_gets_no_new_payment(self, gateway, store, settings_provider):
        store.get_or_create("111", chat_id="111")
        store.link_payment("111", "p1", "corr-1")
        store.try_claim_issuance("111", "p1")

        result = asyncio.run(_service(gateway, store, settings_provider).start_checkout("111", "111"))

        assert result.status == CheckoutStatus.IN_PROGRESS
        assert gateway.create_calls == []
        assert store.get_by_user_id("111").payment_id == "p1"

    def test_rate_limited(self, gateway, store, settings_provider):
        result = asyncio.run(
            _service(gateway, store, settings_provider, redis_client=_redis(count=4)).start_checkout("111", "111")
        )

        assert result.status == CheckoutStatus.RATE_LIMITED
        assert gateway.create_calls == []

    def test_rate_limit_window_set_on_first_hit(self, gateway, store, settings_provider):
        client = _redis(count=1)

        asyncio.run(_service(gateway, store, settings_provider, redis_client=client).start_checkout("111", "111"))

        client.incr.assert_called_once_with("purchase_rate:111")
        client.expire.assert_called_once_with("purchase_rate:111", 60)

    def test_redis_down_fails_open(self, gateway, store, settings_provider):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("down")

        result = asyncio.run(_service(gateway, store, settings_provider, redis_client=client).start_checkout("111", "111"))

        assert result.status == CheckoutStatus.CREATED
