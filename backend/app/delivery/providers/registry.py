"""
registry.py — Provider lookup by channel and name, with outage switches.

The registry is built once at startup from ``ProviderConfig`` records and
read concurrently afterwards.  The only mutable state is the disabled
set, flipped by the Orchestrator's outage detector (``disable``) and by
operators (``enable``).
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Type

import httpx

from backend.app.core.config import ProviderConfig, Settings
from backend.app.delivery.models import NotificationChannel
from backend.app.delivery.providers.base import ChannelProvider, HttpProvider
from backend.app.delivery.providers.fcm_push import FcmPushProvider
from backend.app.delivery.providers.in_app import InAppProvider
from backend.app.delivery.providers.sendgrid_email import SendGridEmailProvider
from backend.app.delivery.providers.slack_chat import SlackChatProvider
from backend.app.delivery.providers.twilio_sms import TwilioSmsProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[HttpProvider]] = {
    "twilio": TwilioSmsProvider,
    "sendgrid": SendGridEmailProvider,
    "fcm": FcmPushProvider,
    "slack": SlackChatProvider,
    "in_app": InAppProvider,
}


class ProviderRegistry:
    """Channel → ordered provider list; the first usable one wins."""

    def __init__(self, providers: Iterable[ChannelProvider] = ()) -> None:
        self._by_name: Dict[str, ChannelProvider] = {}
        self._by_channel: Dict[NotificationChannel, List[ChannelProvider]] = {}
        self._disabled: Dict[str, str] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ChannelProvider) -> None:
        if provider.name in self._by_name:
            raise ValueError(f"Provider already registered: {provider.name}")
        self._by_name[provider.name] = provider
        self._by_channel.setdefault(provider.channel, []).append(provider)

    def get(self, name: str) -> Optional[ChannelProvider]:
        return self._by_name.get(name)

    def all(self) -> List[ChannelProvider]:
        return list(self._by_name.values())

    def for_channel(self, channel: NotificationChannel) -> Optional[ChannelProvider]:
        """
        Provider to use for a channel.

        Prefers an available, enabled provider; otherwise returns the first
        registered one so the caller can report why it is unusable.
        """
        candidates = self._by_channel.get(channel, [])
        for provider in candidates:
            if self.is_usable(provider.name):
                return provider
        return candidates[0] if candidates else None

    # ── Outage switches ──

    def is_disabled(self, name: str) -> bool:
        return name in self._disabled

    def disabled_reason(self, name: str) -> Optional[str]:
        return self._disabled.get(name)

    def is_usable(self, name: str) -> bool:
        provider = self._by_name.get(name)
        return provider is not None and provider.is_available() and name not in self._disabled

    def disable(self, name: str, reason: str) -> None:
        if name not in self._by_name:
            raise KeyError(name)
        if name not in self._disabled:
            logger.error("Provider %s disabled: %s", name, reason, extra={"provider": name})
        self._disabled[name] = reason

    def enable(self, name: str) -> bool:
        """Re-enable a provider; returns False when it was not disabled."""
        if name not in self._by_name:
            raise KeyError(name)
        if self._disabled.pop(name, None) is None:
            return False
        logger.info("Provider %s re-enabled", name, extra={"provider": name})
        return True

    def describe(self) -> List[Dict[str, object]]:
        return [
            {
                "name": p.name,
                "channel": p.channel.value,
                "available": p.is_available(),
                "disabled": self.is_disabled(p.name),
                "disabled_reason": self.disabled_reason(p.name),
                "max_concurrent": p.config.max_concurrent,
            }
            for p in self._by_name.values()
        ]

    async def aclose(self) -> None:
        for provider in self._by_name.values():
            await provider.aclose()


def build_provider(
    config: ProviderConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> ChannelProvider:
    cls = PROVIDER_CLASSES.get(config.name)
    if cls is None:
        raise ValueError(f"Unknown provider: {config.name}")
    return cls(config, client=client)


def build_providers(settings: Settings) -> ProviderRegistry:
    """Instantiate every configured provider from settings."""
    registry = ProviderRegistry(build_provider(c) for c in settings.provider_configs())
    for provider in registry.all():
        if provider.is_available():
            logger.info("Provider %s ready for %s", provider.name, provider.channel.value)
        else:
            logger.warning(
                "Provider %s for %s is not configured", provider.name, provider.channel.value,
            )
    return registry
