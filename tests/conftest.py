"""
Shared fixtures for the delivery engine tests.

Run with:
    pytest tests/ -v
"""

from __future__ import annotations

import pytest

from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.models import NotificationChannel
from tests.helpers import FakeProvider, make_engine


@pytest.fixture
def sms_provider() -> FakeProvider:
    return FakeProvider(NotificationChannel.SMS)


@pytest.fixture
def engine(sms_provider: FakeProvider) -> NotificationEngine:
    return make_engine(sms_provider)
