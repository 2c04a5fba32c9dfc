"""
test_api.py — HTTP surface against an engine with mocked providers.

The Twilio provider talks to an httpx.MockTransport; the in-app sink is
the real in-memory inbox.  Background workers are switched off so each
request's effect is deterministic.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.core.config import ProviderConfig, settings
from backend.app.delivery.models import NotificationChannel
from backend.app.delivery.providers.in_app import InAppProvider
from backend.app.delivery.providers.twilio_sms import TwilioSmsProvider
from backend.app.main import create_app
from tests.helpers import make_engine

TWILIO_URL = "https://api.twilio.test"


class FakeTwilioApi:
    """Scriptable stand-in for the Twilio Messages endpoint."""

    def __init__(self) -> None:
        self.sent = []
        self.reject_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        if self.reject_with is not None:
            return httpx.Response(400, json={"code": self.reject_with, "message": "Rejected"})
        self.sent.append(form)
        return httpx.Response(201, json={
            "sid": f"SM{len(self.sent):04d}", "status": "queued",
            "price": "-0.0075", "price_unit": "USD",
        })


@pytest.fixture
def twilio_api() -> FakeTwilioApi:
    return FakeTwilioApi()


@pytest.fixture
def engine(twilio_api):
    twilio = TwilioSmsProvider(
        ProviderConfig(
            name="twilio",
            channel=NotificationChannel.SMS,
            credentials={"account_sid": "AC1", "auth_token": "tok"},
            sender="+15005550006",
            base_url=TWILIO_URL,
        ),
        client=httpx.AsyncClient(transport=httpx.MockTransport(twilio_api), base_url=TWILIO_URL),
    )
    in_app = InAppProvider(ProviderConfig(
        name="in_app", channel=NotificationChannel.IN_APP, credentials={"enabled": "1"},
    ))
    return make_engine(twilio, in_app)


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(settings, "BACKGROUND_WORKERS_ENABLED", False)
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


def _submit(client, **overrides) -> str:
    body = {
        "type": "ExamReminder",
        "priority": "high",
        "recipients": {"SMS": "+15551234567"},
        "subject": "Exam reminder",
        "body": "Physics starts at 10:00 in Hall B.",
    }
    body.update(overrides)
    response = client.post("/api/v1/notifications", json=body)
    assert response.status_code == 202, response.text
    return response.json()["notification_id"]


class TestNotifications:

    def test_submit_accepted(self, client, engine):
        response = client.post("/api/v1/notifications", json={
            "recipients": {"sms": "+15551234567"}, "body": "Hello",
        })

        assert response.status_code == 202
        data = response.json()
        assert data["enqueued"] is True
        assert data["status"] == "Pending"
        assert engine.queue_depth == 1

    def test_unknown_channel_rejected(self, client):
        response = client.post("/api/v1/notifications", json={
            "recipients": {"fax": "+15551234567"}, "body": "Hello",
        })
        assert response.status_code == 422

    def test_unknown_priority_rejected(self, client):
        response = client.post("/api/v1/notifications", json={
            "recipients": {"sms": "+15551234567"}, "body": "Hello", "priority": "whenever",
        })
        assert response.status_code == 422

    def test_get_unknown(self, client):
        response = client.get("/api/v1/notifications/NTF-missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_send_now_then_webhook(self, client, twilio_api):
        notification_id = _submit(client)

        sent = client.post(f"/api/v1/notifications/{notification_id}/send", params={"channel": "sms"})
        assert sent.status_code == 200, sent.text
        assert sent.json()["success"] is True
        assert twilio_api.sent[0]["To"] == ["+15551234567"]

        hook = client.post(
            "/api/v1/webhooks/twilio",
            data={"MessageSid": "SM0001", "MessageStatus": "delivered", "AccountSid": "AC1"},
        )
        assert hook.status_code == 200
        assert hook.json()["applied"] == 1

        detail = client.get(f"/api/v1/notifications/{notification_id}").json()
        assert detail["status"] == "Sent"
        assert detail["attempts"][0]["delivery_status"] == "Delivered"
        assert detail["attempts"][0]["cost"] == "0.0075"

    def test_send_now_permanent_failure_is_502(self, client, twilio_api):
        notification_id = _submit(client)
        twilio_api.reject_with = 21610

        response = client.post(f"/api/v1/notifications/{notification_id}/send", params={"channel": "sms"})

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PERMANENT_PROVIDER_ERROR"

    def test_send_now_invalid_recipient_is_422(self, client, twilio_api):
        notification_id = _submit(client, recipients={"sms": "555-1234"})

        response = client.post(f"/api/v1/notifications/{notification_id}/send", params={"channel": "sms"})

        assert response.status_code == 422
        assert twilio_api.sent == []

    def test_send_now_unknown_channel(self, client):
        notification_id = _submit(client)
        response = client.post(f"/api/v1/notifications/{notification_id}/send", params={"channel": "fax"})
        assert response.status_code == 422

    def test_bulk(self, client, twilio_api):
        response = client.post("/api/v1/notifications/bulk", json={
            "max_concurrent": 2,
            "notifications": [
                {"recipients": {"sms": "+15551234567"}, "body": "One"},
                {"recipients": {"sms": "+15557654321"}, "body": "Two"},
                {"recipients": {"sms": "not-a-phone"}, "body": "Three"},
            ],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["total_processed"] == 3
        assert data["success_count"] == 2
        assert data["failure_count"] == 1
        assert data["total_cost"] == "0.0150"
        assert len(twilio_api.sent) == 2

    def test_resubmitting_sent_id_is_refused(self, client, twilio_api):
        notification_id = _submit(client, id="NTF-exam-42")
        client.post(f"/api/v1/notifications/{notification_id}/send", params={"channel": "sms"})

        response = client.post("/api/v1/notifications", json={
            "id": "NTF-exam-42", "recipients": {"sms": "+15551234567"}, "body": "Again",
        })

        assert response.status_code == 202
        assert response.json()["enqueued"] is False
        assert response.json()["status"] == "Sent"
        detail = client.get("/api/v1/notifications/NTF-exam-42").json()
        assert detail["body"] == "Physics starts at 10:00 in Hall B."
        assert len(twilio_api.sent) == 1

    def test_cancel(self, client):
        notification_id = _submit(client)

        response = client.post(f"/api/v1/notifications/{notification_id}/cancel")

        assert response.json() == {
            "notification_id": notification_id, "cancelled": True, "status": "Cancelled",
        }


class TestWebhooks:

    def test_unknown_provider(self, client):
        response = client.post("/api/v1/webhooks/pigeon", json={"status": "sent"})
        assert response.status_code == 404

    def test_empty_body(self, client):
        response = client.post("/api/v1/webhooks/twilio", content=b"", headers={"content-type": "application/json"})
        assert response.status_code == 422

    @pytest.mark.parametrize("provider", ["twilio", "in_app"])
    def test_json_array_body_is_ignored(self, client, provider):
        response = client.post(f"/api/v1/webhooks/{provider}", json=[{"status": "sent"}])

        assert response.status_code == 200
        assert response.json()["received"] == 0

    def test_unmatched_message(self, client):
        response = client.post(
            "/api/v1/webhooks/twilio", data={"MessageSid": "SM9999", "MessageStatus": "delivered"},
        )
        assert response.json()["unmatched"] == 1


class TestProviders:

    def test_list(self, client):
        data = client.get("/api/v1/providers", params={"include_balance": False}).json()
        assert data["count"] == 2
        assert {p["name"] for p in data["providers"]} == {"twilio", "in_app"}

    def test_enable(self, client, engine):
        engine.registry.disable("twilio", "outage")
        response = client.post("/api/v1/providers/twilio/enable")
        assert response.json()["was_disabled"] is True
        assert not engine.registry.is_disabled("twilio")

    def test_enable_unknown(self, client):
        assert client.post("/api/v1/providers/pigeon/enable").status_code == 404

    def test_in_app_inbox_and_read(self, client):
        bulk = client.post("/api/v1/notifications/bulk", json={
            "notifications": [{"recipients": {"in_app": "user-42"}, "body": "Grades posted"}],
        }).json()
        notification_id = bulk["outcomes"][0]["notification_id"]

        inbox = client.get("/api/v1/providers/in_app/inbox/user-42").json()
        assert inbox["count"] == 1
        message_id = inbox["messages"][0]["message_id"]

        read = client.post(f"/api/v1/providers/in_app/messages/{message_id}/read").json()
        assert read["status_updated"] is True

        detail = client.get(f"/api/v1/notifications/{notification_id}").json()
        assert detail["status"] == "Read"
        unread = client.get("/api/v1/providers/in_app/inbox/user-42", params={"unread_only": True}).json()
        assert unread["count"] == 0


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.json() == {"status": "alive"}
        assert "X-Request-ID" in response.headers

    def test_healthy(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        names = {c["name"] for c in data["components"]}
        assert {"engine", "provider:twilio", "provider:in_app"} <= names

    def test_ready_fails_when_every_provider_is_down(self, client, engine):
        engine.registry.disable("twilio", "outage")
        engine.registry.disable("in_app", "outage")
        assert client.get("/health/ready").status_code == 503
