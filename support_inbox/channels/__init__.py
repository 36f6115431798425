"""Messaging channels used by the inbox."""

from __future__ import annotations

from .whatsapp import (
    DeliveryResult,
    InboundMessage,
    WhatsAppCredentials,
    WhatsAppSender,
    normalize_phone_number,
    parse_incoming,
    verify_signature,
)

__all__ = [
    "DeliveryResult",
    "InboundMessage",
    "WhatsAppCredentials",
    "WhatsAppSender",
    "normalize_phone_number",
    "parse_incoming",
    "verify_signature",
]
