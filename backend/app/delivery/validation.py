"""
validation.py — Recipient and content checks run before any provider call.

A failed check short-circuits the Orchestrator with a validation error
and consumes zero provider quota.

    Channel   Identity                         Body limit
    ───────   ─────────────────────────────    ──────────
    sms       +<7..15 digits> (E.164 style)    1600 chars (concatenated SMS)
    email     RFC-ish mailbox syntax           unlimited
    push      device token [A-Za-z0-9_:-]      4000 chars
    in_app    user id, no whitespace           unlimited
    chat      channel id (optional leading #)  40000 chars

``validate`` is total: it returns a definite ValidationResult for every
input, including None and non-string values, and never raises.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Optional

from backend.app.delivery.models import NotificationChannel, ValidationResult

SMS_MAX_LENGTH = 1600
PUSH_MAX_LENGTH = 4000
CHAT_MAX_LENGTH = 40000

E164_MIN_DIGITS = 7
E164_MAX_DIGITS = 15

EMAIL_MAX_LENGTH = 254
EMAIL_LOCAL_MAX_LENGTH = 64

_EMAIL_LOCAL_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*$")
_EMAIL_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
_PUSH_TOKEN_RE = re.compile(r"^[A-Za-z0-9_:\-]{32,4096}$")
_CHAT_ID_RE = re.compile(r"^#?[A-Za-z0-9_\-]{2,80}$")

BODY_LIMITS: Dict[NotificationChannel, Optional[int]] = {
    NotificationChannel.SMS: SMS_MAX_LENGTH,
    NotificationChannel.EMAIL: None,
    NotificationChannel.PUSH: PUSH_MAX_LENGTH,
    NotificationChannel.IN_APP: None,
    NotificationChannel.CHAT: CHAT_MAX_LENGTH,
}


def _invalid(reason: str) -> ValidationResult:
    return ValidationResult(is_valid=False, reason=reason)


def _valid(formatted: str) -> ValidationResult:
    return ValidationResult(
        is_valid=True,
        reason="Valid format",
        formatted_identity=formatted,
        can_receive=True,
    )


def validate_phone(identity: str) -> ValidationResult:
    """E.164-style check: leading '+', digits only, 7–15 digits."""
    phone = identity.strip()
    if not phone:
        return _invalid("Phone number is required")
    if not phone.startswith("+"):
        return _invalid("Phone number must start with '+' (E.164 format)")
    digits = phone[1:]
    if not digits.isascii() or not digits.isdigit():
        return _invalid("Phone number may only contain digits after '+'")
    if not E164_MIN_DIGITS <= len(digits) <= E164_MAX_DIGITS:
        return _invalid(
            f"Phone number must have between {E164_MIN_DIGITS} and "
            f"{E164_MAX_DIGITS} digits"
        )
    return _valid(phone)


def validate_email(identity: str) -> ValidationResult:
    address = identity.strip()
    if not address:
        return _invalid("Email address is required")
    if len(address) > EMAIL_MAX_LENGTH:
        return _invalid("Email address is too long")
    if address.count("@") != 1:
        return _invalid("Email address must contain exactly one '@'")
    local, domain = address.split("@")
    if not local or len(local) > EMAIL_LOCAL_MAX_LENGTH:
        return _invalid("Email local part is empty or too long")
    if not _EMAIL_LOCAL_RE.match(local):
        return _invalid("Email local part contains invalid characters")
    if not _EMAIL_DOMAIN_RE.match(domain):
        return _invalid("Email domain is not valid")
    return _valid(f"{local}@{domain.lower()}")


def validate_push_token(identity: str) -> ValidationResult:
    token = identity.strip()
    if not _PUSH_TOKEN_RE.match(token):
        return _invalid("Device token is malformed")
    return _valid(token)


def validate_user_id(identity: str) -> ValidationResult:
    user_id = identity.strip()
    if not user_id:
        return _invalid("User id is required")
    if any(ch.isspace() for ch in user_id):
        return _invalid("User id may not contain whitespace")
    return _valid(user_id)


def validate_chat_id(identity: str) -> ValidationResult:
    chat_id = identity.strip()
    if not _CHAT_ID_RE.match(chat_id):
        return _invalid("Chat channel id is malformed")
    return _valid(chat_id.lstrip("#"))


_VALIDATORS: Dict[NotificationChannel, Callable[[str], ValidationResult]] = {
    NotificationChannel.SMS: validate_phone,
    NotificationChannel.EMAIL: validate_email,
    NotificationChannel.PUSH: validate_push_token,
    NotificationChannel.IN_APP: validate_user_id,
    NotificationChannel.CHAT: validate_chat_id,
}


def validate(channel: NotificationChannel, identity: Any) -> ValidationResult:
    """
    Check a recipient identity for a channel.

    Parameters
    ----------
    channel : NotificationChannel
    identity : Any
        Usually a string; anything else is reported invalid.

    Returns
    -------
    ValidationResult
    """
    if identity is None:
        return _invalid("Recipient is required")
    if not isinstance(identity, str):
        return _invalid(f"Recipient must be a string, got {type(identity).__name__}")
    validator = _VALIDATORS.get(channel)
    if validator is None:
        return _invalid(f"No validator for channel: {channel}")
    return validator(identity)


def validate_content(channel: NotificationChannel, body: Optional[str]) -> Optional[str]:
    """Return a reason string when the body violates channel limits, else None."""
    if not body or not body.strip():
        return "Message body is required"
    limit = BODY_LIMITS.get(channel)
    if limit is not None and len(body) > limit:
        return f"Message body is {len(body)} characters; {channel.value} limit is {limit}"
    return None
