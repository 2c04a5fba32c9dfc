"""
test_providers.py — SendGrid, FCM, Slack and in-app providers plus the registry.

Run with:
    pytest tests/test_providers.py -v
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from backend.app.core.config import ProviderConfig, Settings
from backend.app.delivery.models import (
    DeliveryStatus,
    ErrorKind,
    NotificationChannel,
    SendRequest,
)
from backend.app.delivery.providers.fcm_push import FcmPushProvider
from backend.app.delivery.providers.in_app import InAppProvider
from backend.app.delivery.providers.registry import (
    ProviderRegistry,
    build_provider,
    build_providers,
)
from backend.app.delivery.providers.sendgrid_email import SendGridEmailProvider
from backend.app.delivery.providers.slack_chat import SlackChatProvider
from tests.helpers import FakeProvider


def _client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


# ═══════════════════════════════════════════════════════════════════════════
# SendGrid
# ═══════════════════════════════════════════════════════════════════════════

def _sendgrid(handler=None) -> SendGridEmailProvider:
    config = ProviderConfig(
        name="sendgrid",
        channel=NotificationChannel.EMAIL,
        credentials={"api_key": "SG.test"},
        sender="exams@school.example",
        base_url="https://sendgrid.test",
    )
    client = _client(handler, "https://sendgrid.test") if handler else None
    return SendGridEmailProvider(config, client=client)


class TestSendGrid:

    @pytest.mark.asyncio
    async def test_send_accepted(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "abc123"})

        result = await _sendgrid(handler).send(
            SendRequest(recipient="student@example.com", body="Hi", subject="Results", reference="NTF-9"),
        )

        assert result.success
        assert result.provider_message_id == "abc123"
        assert result.status == DeliveryStatus.PENDING
        personalization = seen["body"]["personalizations"][0]
        assert personalization["to"] == [{"email": "student@example.com"}]
        assert personalization["custom_args"] == {"notification_id": "NTF-9"}

    @pytest.mark.asyncio
    async def test_bad_request_is_permanent(self):
        def handler(request):
            return httpx.Response(400, json={"errors": [{"message": "Invalid email", "field": "to"}]})

        result = await _sendgrid(handler).send(SendRequest(recipient="x@example.com", body="Hi"))
        assert result.error_kind == ErrorKind.PERMANENT
        assert result.error_code == "SENDGRID_400"
        assert result.error_message == "Invalid email"

    @pytest.mark.parametrize("raw, expected", [
        ("processed", DeliveryStatus.PENDING),
        ("delivered", DeliveryStatus.DELIVERED),
        ("open", DeliveryStatus.OPENED),
        ("click", DeliveryStatus.CLICKED),
        ("bounce", DeliveryStatus.BOUNCED),
        ("spamreport", DeliveryStatus.SPAM),
        ("group_unsubscribe", DeliveryStatus.UNSUBSCRIBED),
        ("new_event_type", DeliveryStatus.UNKNOWN),
    ])
    def test_map_status(self, raw, expected):
        assert _sendgrid().map_status(raw) == expected

    def test_event_webhook_batch(self):
        callbacks = _sendgrid().parse_callback([
            {"sg_message_id": "abc123.filter0001.16648.5515E0B88.0", "event": "delivered", "timestamp": 1772355600},
            {"sg_message_id": "abc123.filter0001.16648.5515E0B88.0", "event": "open", "timestamp": 1772355660},
            {"event": "processed"},
            "garbage",
        ])
        assert [c.provider_message_id for c in callbacks] == ["abc123", "abc123"]
        assert [c.raw_status for c in callbacks] == ["delivered", "open"]
        assert callbacks[0].occurred_at < callbacks[1].occurred_at

    @pytest.mark.asyncio
    async def test_status_refined_by_opens(self):
        def handler(request):
            return httpx.Response(200, json={"status": "delivered", "opens_count": 2, "clicks_count": 0})

        snapshot = await _sendgrid(handler).get_delivery_status("abc123")
        assert snapshot.status == DeliveryStatus.OPENED

    @pytest.mark.asyncio
    async def test_credits(self):
        balance = await _sendgrid(lambda r: httpx.Response(200, json={"remain": 200})).get_account_balance()
        assert balance.balance == Decimal("200")
        assert balance.currency == "credits"


# ═══════════════════════════════════════════════════════════════════════════
# FCM
# ═══════════════════════════════════════════════════════════════════════════

TOKEN = "fcm_" + "a1B2c3D4" * 8


def _fcm(handler) -> FcmPushProvider:
    config = ProviderConfig(
        name="fcm",
        channel=NotificationChannel.PUSH,
        credentials={"project_id": "exam-app", "access_token": "ya29.token"},
        base_url="https://fcm.test",
    )
    return FcmPushProvider(config, client=_client(handler, "https://fcm.test"))


def _fcm_error(status: int, code: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {
        "code": status,
        "message": code.lower(),
        "details": [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError", "errorCode": code}],
    }})


class TestFcm:

    @pytest.mark.asyncio
    async def test_send(self):
        def handler(request):
            assert request.url.path == "/v1/projects/exam-app/messages:send"
            return httpx.Response(200, json={"name": "projects/exam-app/messages/0:1500415314455276"})

        result = await _fcm(handler).send(SendRequest(recipient=TOKEN, body="Hall B", subject="Exam"))
        assert result.success
        assert result.provider_message_id == "0:1500415314455276"
        assert result.status == DeliveryStatus.SENT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, code, kind", [
        (404, "UNREGISTERED", ErrorKind.PERMANENT),
        (400, "INVALID_ARGUMENT", ErrorKind.PERMANENT),
        (401, "THIRD_PARTY_AUTH_ERROR", ErrorKind.CONFIGURATION),
        (503, "UNAVAILABLE", ErrorKind.TRANSIENT),
        (429, "QUOTA_EXCEEDED", ErrorKind.TRANSIENT),
    ])
    async def test_error_mapping(self, status, code, kind):
        result = await _fcm(lambda r: _fcm_error(status, code)).send(SendRequest(recipient=TOKEN, body="x"))
        assert result.error_kind == kind
        assert result.error_code == f"FCM_{code}"

    @pytest.mark.asyncio
    async def test_no_status_api(self):
        snapshot = await _fcm(lambda r: httpx.Response(500)).get_delivery_status("0:1")
        assert snapshot.status == DeliveryStatus.UNKNOWN
        balance = await _fcm(lambda r: httpx.Response(500)).get_account_balance()
        assert balance.account_status == "unknown"

    @pytest.mark.parametrize("payload", [[{"message_id": "0:1", "status": "sent"}], "sent", 7])
    def test_callback_ignores_non_object_body(self, payload):
        assert _fcm(lambda r: httpx.Response(500)).parse_callback(payload) == []


# ═══════════════════════════════════════════════════════════════════════════
# Slack
# ═══════════════════════════════════════════════════════════════════════════

def _slack(handler) -> SlackChatProvider:
    config = ProviderConfig(
        name="slack",
        channel=NotificationChannel.CHAT,
        credentials={"bot_token": "xoxb-test"},
        base_url="https://slack.test/api",
    )
    return SlackChatProvider(config, client=_client(handler, "https://slack.test/api"))


class TestSlack:

    @pytest.mark.asyncio
    async def test_post(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["channel"] == "exam-alerts"
            assert body["text"].startswith("*Exam*")
            return httpx.Response(200, json={"ok": True, "channel": "C024BE91L", "ts": "1401383885.000061"})

        result = await _slack(handler).send(SendRequest(recipient="exam-alerts", body="Hall B", subject="Exam"))
        assert result.success
        assert result.provider_message_id == "C024BE91L:1401383885.000061"
        assert result.status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, kind", [
        ("channel_not_found", ErrorKind.PERMANENT),
        ("invalid_auth", ErrorKind.CONFIGURATION),
        ("internal_error", ErrorKind.TRANSIENT),
        ("something_new", ErrorKind.PERMANENT),
    ])
    async def test_ok_false(self, error, kind):
        result = await _slack(lambda r: httpx.Response(200, json={"ok": False, "error": error})).send(
            SendRequest(recipient="general", body="x"),
        )
        assert result.error_kind == kind

    @pytest.mark.asyncio
    async def test_ratelimited(self):
        def handler(request):
            return httpx.Response(200, headers={"Retry-After": "12"}, json={"ok": False, "error": "ratelimited"})

        result = await _slack(handler).send(SendRequest(recipient="general", body="x"))
        assert result.status == DeliveryStatus.RATE_LIMITED
        assert result.retry_after_seconds == 12.0


# ═══════════════════════════════════════════════════════════════════════════
# In-app
# ═══════════════════════════════════════════════════════════════════════════

def _in_app(enabled: bool = True) -> InAppProvider:
    return InAppProvider(ProviderConfig(
        name="in_app",
        channel=NotificationChannel.IN_APP,
        credentials={"enabled": "1" if enabled else ""},
    ))


class TestInApp:

    @pytest.mark.asyncio
    async def test_send_lands_in_inbox(self):
        provider = _in_app()
        result = await provider.send(SendRequest(recipient="user-42", body="Grades posted", reference="NTF-1"))

        assert result.success
        assert result.status == DeliveryStatus.DELIVERED
        inbox = provider.inbox("user-42")
        assert len(inbox) == 1
        assert inbox[0].to_dict()["notification_id"] == "NTF-1"

    @pytest.mark.asyncio
    async def test_mark_read(self):
        provider = _in_app()
        result = await provider.send(SendRequest(recipient="user-42", body="Grades posted"))

        callback = provider.mark_read(result.provider_message_id)

        assert callback.raw_status == "read"
        assert provider.inbox("user-42", unread_only=True) == []
        snapshot = await provider.get_delivery_status(result.provider_message_id)
        assert snapshot.status == DeliveryStatus.READ
        assert provider.mark_read("INAPP-missing") is None

    @pytest.mark.asyncio
    async def test_disabled(self):
        provider = _in_app(enabled=False)
        assert not provider.is_available()
        result = await provider.send(SendRequest(recipient="user-42", body="x"))
        assert result.error_kind == ErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_callback_ignores_non_object_body(self):
        provider = _in_app()
        result = await provider.send(SendRequest(recipient="user-42", body="Grades posted"))

        assert provider.parse_callback([{"message_id": result.provider_message_id}]) == []
        assert provider.parse_callback({"message_id": [result.provider_message_id]}) == []
        assert provider.inbox("user-42", unread_only=True) != []


# ═══════════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:

    def test_duplicate_name_rejected(self):
        registry = ProviderRegistry([FakeProvider(name="a")])
        with pytest.raises(ValueError):
            registry.register(FakeProvider(name="a"))

    def test_prefers_usable_provider(self):
        broken = FakeProvider(name="primary", available=False)
        backup = FakeProvider(name="backup")
        registry = ProviderRegistry([broken, backup])

        assert registry.for_channel(NotificationChannel.SMS) is backup
        registry.disable("backup", "outage")
        assert registry.for_channel(NotificationChannel.SMS) is broken
        assert registry.for_channel(NotificationChannel.EMAIL) is None

    def test_disable_and_enable(self):
        registry = ProviderRegistry([FakeProvider(name="a")])
        registry.disable("a", "5 consecutive configuration failures")

        assert registry.is_disabled("a")
        assert registry.describe()[0]["disabled_reason"].startswith("5 consecutive")
        assert registry.enable("a") is True
        assert registry.enable("a") is False
        with pytest.raises(KeyError):
            registry.enable("zzz")

    def test_build_provider_unknown(self):
        with pytest.raises(ValueError):
            build_provider(ProviderConfig(name="pigeon", channel=NotificationChannel.SMS))

    def test_build_from_settings(self):
        settings = Settings(
            _env_file=None,
            TWILIO_ACCOUNT_SID="AC1",
            TWILIO_AUTH_TOKEN="tok",
            TWILIO_FROM_NUMBER="+15005550006",
        )
        registry = build_providers(settings)

        names = {p["name"]: p for p in registry.describe()}
        assert set(names) == {"twilio", "sendgrid", "fcm", "slack", "in_app"}
        assert names["twilio"]["available"] is True
        assert names["sendgrid"]["available"] is False
        assert names["in_app"]["available"] is True
