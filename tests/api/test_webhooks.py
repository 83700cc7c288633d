"""Tests for the YooKassa push endpoint — source check comes before any processing."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from channel_gate.api.deps import get_engine
from channel_gate.core.config import settings
from channel_gate.main import app
from channel_gate.reconciliation import OutcomeStatus, ReconcileOutcome

EVENT = {
    "type": "notification",
    "event": "payment.succeeded",
    "object": {"id": "p1", "status": "succeeded"},
}


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.reconcile = AsyncMock(return_value=ReconcileOutcome(status=OutcomeStatus.ISSUED, reference="p1"))
    app.dependency_overrides[get_engine] = lambda: engine
    yield engine
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    # TestClient connects as "testclient"; treat it as the trusted reverse proxy
    with patch.object(settings, "trusted_proxy_ips", "testclient"):
        yield TestClient(app)


class TestWebhookAuthenticity:
    def test_direct_untrusted_source_rejected(self, engine):
        response = TestClient(app).post("/webhook/yookassa", json=EVENT)

        assert response.status_code == 403
        engine.reconcile.assert_not_awaited()

    def test_forwarded_from_gateway_network_accepted(self, client, engine):
        response = client.post("/webhook/yookassa", json=EVENT, headers={"X-Forwarded-For": "185.71.76.10"})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "outcome": "issued"}
        engine.reconcile.assert_awaited_once_with("p1", trigger="webhook")

    def test_forwarded_from_outside_rejected(self, client, engine):
        response = client.post("/webhook/yookassa", json=EVENT, headers={"X-Forwarded-For": "8.8.8.8"})

        assert response.status_code == 403
        engine.reconcile.assert_not_awaited()

    def test_spoofed_first_hop_rejected(self, client, engine):
        response = client.post(
            "/webhook/yookassa",
            json=EVENT,
            headers={"X-Forwarded-For": "185.71.76.10, 203.0.113.7"},
        )

        assert response.status_code == 403
        engine.reconcile.assert_not_awaited()

    def test_empty_network_list_rejects_everything(self, client, engine):
        with patch.object(settings, "yookassa_webhook_networks", ""):
            response = client.post("/webhook/yookassa", json=EVENT, headers={"X-Forwarded-For": "185.71.76.10"})

        assert response.status_code == 403


class TestWebhookProcessing:
    HEADERS = {"X-Forwarded-For": "77.75.156.11"}

    def test_body_status_is_not_trusted(self, client, engine):
        event = {"event": "payment.succeeded", "object": {"id": "p1", "status": "succeeded", "paid": True}}

        client.post("/webhook/yookassa", json=event, headers=self.HEADERS)

        # only the id is used; the engine asks the gateway itself
        engine.reconcile.assert_awaited_once_with("p1", trigger="webhook")

    def test_non_payment_event_ignored(self, client, engine):
        event = {"event": "refund.succeeded", "object": {"id": "r1"}}

        response = client.post("/webhook/yookassa", json=event, headers=self.HEADERS)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        engine.reconcile.assert_not_awaited()

    def test_invalid_json(self, client, engine):
        response = client.post(
            "/webhook/yookassa",
            content=b"not json",
            headers={**self.HEADERS, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        engine.reconcile.assert_not_awaited()

    def test_unexpected_error_answers_500(self, client, engine):
        engine.reconcile.side_effect = RuntimeError("db down")

        response = client.post("/webhook/yookassa", json=EVENT, headers=self.HEADERS)

        assert response.status_code == 500
