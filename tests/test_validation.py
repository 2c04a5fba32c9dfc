"""
test_validation.py — Recipient and content validation.

Run with:
    pytest tests/test_validation.py -v
"""

from __future__ import annotations

import pytest

from backend.app.delivery import validation
from backend.app.delivery.models import NotificationChannel, ValidationResult

VALID_TOKEN = "fcm_" + "a1B2c3D4" * 8


class TestPhone:

    def test_e164_accepted(self):
        result = validation.validate(NotificationChannel.SMS, "+15551234567")
        assert result.is_valid
        assert result.formatted_identity == "+15551234567"
        assert result.can_receive

    def test_missing_plus_rejected(self):
        result = validation.validate(NotificationChannel.SMS, "5551234567")
        assert not result.is_valid
        assert "+" in result.reason

    @pytest.mark.parametrize("phone", ["+123456", "+1234567890123456", "+1555-123-4567", "+", "", "   "])
    def test_malformed_rejected(self, phone):
        assert not validation.validate(NotificationChannel.SMS, phone).is_valid

    def test_whitespace_trimmed(self):
        result = validation.validate(NotificationChannel.SMS, "  +447911123456 ")
        assert result.is_valid
        assert result.formatted_identity == "+447911123456"

    def test_non_ascii_digits_rejected(self):
        assert not validation.validate(NotificationChannel.SMS, "+١٥٥٥١٢٣٤٥٦٧").is_valid


class TestEmail:

    def test_domain_lowercased(self):
        result = validation.validate(NotificationChannel.EMAIL, "Student@Example.COM")
        assert result.is_valid
        assert result.formatted_identity == "Student@example.com"

    @pytest.mark.parametrize("address", ["no-at-sign", "a@@b.com", "@example.com", "a@b", "a b@example.com"])
    def test_malformed_rejected(self, address):
        assert not validation.validate(NotificationChannel.EMAIL, address).is_valid


class TestOtherChannels:

    def test_push_token(self):
        assert validation.validate(NotificationChannel.PUSH, VALID_TOKEN).is_valid
        assert not validation.validate(NotificationChannel.PUSH, "short").is_valid

    def test_user_id(self):
        assert validation.validate(NotificationChannel.IN_APP, "user-42").is_valid
        assert not validation.validate(NotificationChannel.IN_APP, "user 42").is_valid

    def test_chat_id_hash_stripped(self):
        result = validation.validate(NotificationChannel.CHAT, "#exam-alerts")
        assert result.is_valid
        assert result.formatted_identity == "exam-alerts"


class TestTotality:

    @pytest.mark.parametrize("channel", list(NotificationChannel))
    @pytest.mark.parametrize("identity", [None, "", 12345, b"+15551234567", ["x"], "\x00", "💥" * 300])
    def test_always_returns_result(self, channel, identity):
        result = validation.validate(channel, identity)
        assert isinstance(result, ValidationResult)
        assert result.reason


class TestContent:

    def test_sms_limit(self):
        assert validation.validate_content(NotificationChannel.SMS, "x" * 1600) is None
        reason = validation.validate_content(NotificationChannel.SMS, "x" * 1601)
        assert reason is not None
        assert "1600" in reason

    def test_empty_body(self):
        assert validation.validate_content(NotificationChannel.EMAIL, "") is not None
        assert validation.validate_content(NotificationChannel.EMAIL, "   ") is not None

    def test_email_unlimited(self):
        assert validation.validate_content(NotificationChannel.EMAIL, "x" * 100_000) is None

    def test_push_limit(self):
        assert validation.validate_content(NotificationChannel.PUSH, "x" * 4001) is not None
