"""Outbound WhatsApp text messages through an Evolution-style API.

Only sending is in scope here: templates are rendered by whoever enqueues
the notification side effect.
"""

from __future__ import annotations

import logging

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models.side_effect import SideEffectKind
from app.services.common import digits_only
from app.services.exceptions import ConfigurationError
from app.services.integration_config import IntegrationConfigs
from app.services.side_effects import register

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 15


def normalize_phone(phone: str | None) -> str:
    """Digits only, with the Brazilian country code added to local numbers."""
    digits = digits_only(phone)
    if len(digits) in (10, 11):
        return f"55{digits}"
    return digits


def _instance_name(db: Session) -> str:
    config = IntegrationConfigs.get(db, settings.notification_service_name)
    variables = (config.variables or {}) if config else {}
    instance = variables.get("instance_name") or variables.get("INSTANCE_NAME")
    if not instance:
        raise ConfigurationError(
            f"Integration '{settings.notification_service_name}' has no instance_name"
        )
    return instance


def send_text(
    db: Session,
    phone: str,
    message: str,
    *,
    http_client: httpx.Client | None = None,
) -> dict:
    """Send one text message.

    Raises:
        ConfigurationError: the messaging integration is not configured.
        httpx.HTTPStatusError: on non-2xx response.
    """
    creds = IntegrationConfigs.resolve(db, settings.notification_service_name)
    instance = _instance_name(db)
    url = f"{creds.base_url}/message/sendText/{instance}"
    body = {
        "number": normalize_phone(phone),
        "options": {"delay": 1200, "presence": "composing", "linkPreview": False},
        "textMessage": {"text": message},
    }
    headers = {"apikey": creds.api_key, "Content-Type": "application/json"}
    if http_client is not None:
        resp = http_client.post(url, json=body, headers=headers, timeout=SEND_TIMEOUT_SECONDS)
    else:
        resp = httpx.post(url, json=body, headers=headers, timeout=SEND_TIMEOUT_SECONDS)
    resp.raise_for_status()
    logger.info("Sent WhatsApp message to %s via %s", body["number"], instance)
    return resp.json() if resp.content else {}


def format_brl(value) -> str:
    """R$ 1.234,56"""
    formatted = f"{value:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


@register(SideEffectKind.notification)
def handle_notification(db: Session, payload: dict):
    phone = payload.get("phone")
    message = payload.get("message")
    if not phone or not message:
        logger.info("Skipping notification without phone or message: %s", payload.get("template"))
        return None
    return send_text(db, phone, message)
