"""WhatsApp Cloud API channel: webhook parsing and outbound delivery."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from ..settings import SettingsStore, resolve_setting

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com/v24.0"
SEND_TIMEOUT_SECONDS = 8
DEFAULT_COUNTRY_CODE = "55"
DEFAULT_TEMPLATE_LANGUAGE = "pt_BR"
PHONE_PATTERN = re.compile(r"^\+\d{8,15}$")


# ---------------------------------------------------------------------------
# Phone numbers


def normalize_phone_number(
    raw: str | None, default_country_code: str = DEFAULT_COUNTRY_CODE
) -> str | None:
    """Return ``raw`` in ``+<country><number>`` form, or ``None`` if empty.

    Formatting characters are stripped. Numbers without an international
    prefix and with 10 or 11 digits (area code plus local number) receive
    ``default_country_code``. The result still has to pass
    :data:`PHONE_PATTERN`.
    """

    if not raw:
        return None
    value = raw.strip()
    digits = re.sub(r"\D", "", value)
    if not digits:
        return None
    if value.startswith("+"):
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0") and len(digits) in (11, 12):
        digits = digits[1:]
    if len(digits) in (10, 11):
        return f"+{default_country_code}{digits}"
    return f"+{digits}"


def is_valid_phone(value: str | None) -> bool:
    return bool(value) and PHONE_PATTERN.match(value) is not None


# ---------------------------------------------------------------------------
# Outbound


@dataclass(frozen=True)
class WhatsAppCredentials:
    access_token: str
    phone_number_id: str


def load_credentials(settings: SettingsStore | None) -> WhatsAppCredentials | None:
    access_token = resolve_setting(settings, "whatsapp_access_token", "WHATSAPP_ACCESS_TOKEN")
    phone_number_id = resolve_setting(
        settings, "whatsapp_phone_number_id", "WHATSAPP_PHONE_NUMBER_ID"
    )
    if not access_token or not phone_number_id:
        return None
    return WhatsAppCredentials(access_token=access_token, phone_number_id=phone_number_id)


@dataclass
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    details: Any = None


def build_message_payload(
    to: str, message_type: str, body: Mapping[str, Any], *, reply_to: str | None = None
) -> dict[str, Any]:
    """Generic Cloud API envelope: ``{"type": t, t: body}``."""

    payload: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": message_type,
        message_type: dict(body),
    }
    if reply_to:
        payload["context"] = {"message_id": reply_to}
    return payload


def build_text_payload(
    to: str, text: str, *, preview_url: bool = False, reply_to: str | None = None
) -> dict[str, Any]:
    return build_message_payload(
        to, "text", {"body": text, "preview_url": preview_url}, reply_to=reply_to
    )


def build_template_payload(
    to: str,
    template_name: str,
    params: Mapping[str, list[str]] | None = None,
    language: str = DEFAULT_TEMPLATE_LANGUAGE,
) -> dict[str, Any]:
    components = []
    for component in ("header", "body"):
        values = (params or {}).get(component) or []
        if values:
            components.append(
                {
                    "type": component,
                    "parameters": [{"type": "text", "text": v} for v in values],
                }
            )
    template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
    if components:
        template["components"] = components
    return {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "template",
        "template": template,
    }


def _extract_message_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    messages = data.get("messages") or []
    if messages and isinstance(messages[0], dict):
        return messages[0].get("id")
    return None


def _extract_error_message(details: Any) -> str | None:
    if isinstance(details, dict) and isinstance(details.get("error"), dict):
        return details["error"].get("message")
    return None


class WhatsAppSender:
    """Send text and template messages through the Graph API.

    Failures are returned as :class:`DeliveryResult` and never raised. The
    sender does not retry; callers decide whether a failed delivery is worth
    another attempt.
    """

    def __init__(
        self,
        credentials: WhatsAppCredentials | None,
        *,
        session: requests.Session | None = None,
        base_url: str = GRAPH_API_BASE_URL,
        timeout: float = SEND_TIMEOUT_SECONDS,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
    ) -> None:
        self.credentials = credentials
        self.session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._country_code = default_country_code

    def send_text(
        self,
        to: str,
        text: str,
        *,
        reply_to: str | None = None,
        preview_url: bool = False,
    ) -> DeliveryResult:
        return self._send(
            to,
            lambda phone: build_text_payload(
                phone, text, preview_url=preview_url, reply_to=reply_to
            ),
        )

    def send(
        self,
        to: str,
        message_type: str,
        body: Mapping[str, Any],
        *,
        reply_to: str | None = None,
    ) -> DeliveryResult:
        """Send any Cloud API message type (image, document, location...)."""

        return self._send(
            to,
            lambda phone: build_message_payload(phone, message_type, body, reply_to=reply_to),
        )

    def send_template(
        self,
        to: str,
        template_name: str,
        params: Mapping[str, list[str]] | None = None,
        language: str = DEFAULT_TEMPLATE_LANGUAGE,
    ) -> DeliveryResult:
        return self._send(
            to,
            lambda phone: build_template_payload(phone, template_name, params, language),
        )

    def _send(self, to: str, build_payload) -> DeliveryResult:
        if self.credentials is None:
            return DeliveryResult(success=False, error="WhatsApp credentials not configured")
        normalized = normalize_phone_number(to, self._country_code)
        if not is_valid_phone(normalized):
            return DeliveryResult(success=False, error=f"Invalid phone number: {to}")

        url = f"{self._base_url}/{self.credentials.phone_number_id}/messages"
        try:
            response = self.session.post(
                url,
                json=build_payload(normalized),
                headers={
                    "Authorization": f"Bearer {self.credentials.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("WhatsApp send to %s failed: %s", url, exc)
            return DeliveryResult(success=False, error=str(exc) or "Failed to send message")

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.ok:
            details = data if data is not None else response.text
            error = _extract_error_message(details) or "WhatsApp send failed"
            logger.warning("WhatsApp rejected message (%s): %s", response.status_code, error)
            return DeliveryResult(success=False, error=error, details=details)

        return DeliveryResult(success=True, message_id=_extract_message_id(data))


# ---------------------------------------------------------------------------
# Inbound


@dataclass
class InboundMessage:
    """A customer message extracted from a webhook payload."""

    message_id: str
    phone: str
    text: str
    message_type: str
    contact_name: str | None = None
    reply_to: str | None = None
    sent_at: datetime | None = None


def verify_signature(
    body: bytes, headers: Mapping[str, str], app_secret: str | None
) -> bool:
    """Validate ``X-Hub-Signature-256``; passes when no secret is configured."""

    if not app_secret:
        return True
    received = headers.get("X-Hub-Signature-256") or headers.get("x-hub-signature-256")
    if not received:
        return False
    digest = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(received, f"sha256={digest}")


def _message_text(message: Mapping[str, Any]) -> str:
    message_type = message.get("type")
    if message_type == "text":
        return (message.get("text") or {}).get("body", "")
    if message_type in {"image", "audio", "video", "document"}:
        return (message.get(message_type) or {}).get("caption", "")
    if message_type == "button":
        return (message.get("button") or {}).get("text", "")
    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", "")
    return ""


def _sent_at(timestamp: Any) -> datetime:
    if timestamp:
        try:
            return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            pass
    return datetime.now(timezone.utc)


def parse_incoming(payload: Mapping[str, Any]) -> Iterable[InboundMessage]:
    """Yield customer messages contained in a Cloud API webhook payload.

    Status callbacks (delivered/read receipts) carry no ``messages`` and
    yield nothing.
    """

    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            contacts = {c.get("wa_id"): c for c in value.get("contacts", [])}
            for message in value.get("messages", []):
                sender = message.get("from") or ""
                message_id = message.get("id")
                if not sender or not message_id:
                    continue
                contact = contacts.get(sender, {})
                yield InboundMessage(
                    message_id=str(message_id),
                    phone=f"+{sender}" if not sender.startswith("+") else sender,
                    text=_message_text(message),
                    message_type=message.get("type") or "unknown",
                    contact_name=(contact.get("profile") or {}).get("name"),
                    reply_to=(message.get("context") or {}).get("id"),
                    sent_at=_sent_at(message.get("timestamp")),
                )
