# review_agents/channels.py
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import BaseModel

from . import config as _config
from .errors import DeliveryFailure, InvalidRecipient
from .notifications import CHANNEL_EMAIL, CHANNEL_INTERNAL, CHANNEL_SMS
from .templates import email_template_for, get_title, render_body
from .utils import json_dumps, json_loads, now_dt, to_db_ts

log = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    ok: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    response: Optional[Dict[str, Any]] = None


def _digits_only(s: str) -> str:
    return re.sub(r"\D+", "", s or "")


# -----------------------------
# HTTP providers
# -----------------------------
class _HttpChannel:
    name = ""

    def __init__(self, timeout_sec: float = 15, session: Optional[requests.Session] = None):
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            res = self.session.post(url, json=body, headers=headers, timeout=self.timeout_sec)
        except requests.Timeout as e:
            raise DeliveryFailure(f"{self.name}_timeout: {e}") from e
        except requests.RequestException as e:
            raise DeliveryFailure(f"{self.name}_request_error: {e}") from e

        try:
            data = res.json()
        except ValueError:
            data = {"text": (res.text or "")[:500]}
        if not isinstance(data, dict):
            data = {"data": data}
        if res.status_code >= 400:
            raise DeliveryFailure(f"{self.name}_http_{res.status_code}: {json_dumps(data)[:500]}")
        return data

    def deliver(self, conn, notification: Dict[str, Any], recipient: Dict[str, Any]) -> DeliveryResult:
        raise NotImplementedError


class EmailChannel(_HttpChannel):
    """Transactional email over an HTTP API (Resend-compatible body)."""

    name = CHANNEL_EMAIL

    def __init__(
        self,
        api_url: str = "",
        api_key: str = "",
        sender: str = "",
        enabled: Optional[bool] = None,
        timeout_sec: float = 15,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout_sec=timeout_sec, session=session)
        self.api_url = api_url or _config.EMAIL_API_URL
        self.api_key = api_key or _config.EMAIL_API_KEY
        self.sender = sender or _config.EMAIL_FROM
        self.enabled = _config.EMAIL_ENABLED if enabled is None else enabled

    def send(self, to: str, template: str, language: str, variables: Dict[str, Any]) -> DeliveryResult:
        if not self.enabled:
            log.info("email disabled; skipped to=%s template=%s", to, template)
            return DeliveryResult(ok=True, skipped=True, response={"skipped": "email_disabled"})
        provider_template = email_template_for(template)
        if not provider_template:
            return DeliveryResult(ok=False, error=f"no_email_template_mapping_for_{template}")

        body = {
            "from": self.sender,
            "to": [to],
            "subject": get_title(template, language),
            "text": render_body(template, variables),
            "tags": [{"name": "template", "value": provider_template}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            data = self._post(self.api_url, body, headers)
        except DeliveryFailure as e:
            return DeliveryResult(ok=False, error=e.error)
        return DeliveryResult(ok=True, provider_message_id=str(data.get("id") or "") or None, response=data)

    def deliver(self, conn, notification: Dict[str, Any], recipient: Dict[str, Any]) -> DeliveryResult:
        address = (recipient.get("email") or "").strip()
        if not address:
            raise InvalidRecipient(f"user {recipient.get('id')} has no email")
        return self.send(
            address,
            notification["template"],
            notification.get("language") or "en",
            json_loads(notification.get("variables_json")),
        )


class WhatsAppChannel(_HttpChannel):
    """SMS-like delivery through the WhatsApp Cloud API template endpoint."""

    name = CHANNEL_SMS

    def __init__(
        self,
        phone_number_id: str = "",
        access_token: str = "",
        api_version: str = "",
        enabled: Optional[bool] = None,
        timeout_sec: float = 15,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout_sec=timeout_sec, session=session)
        self.phone_number_id = phone_number_id or _config.WHATSAPP_PHONE_NUMBER_ID
        self.access_token = access_token or _config.WHATSAPP_ACCESS_TOKEN
        self.api_version = api_version or _config.WHATSAPP_API_VERSION
        self.enabled = _config.WHATSAPP_ENABLED if enabled is None else enabled

    @property
    def url(self) -> str:
        return f"https://graph.facebook.com/{self.api_version}/{self.phone_number_id}/messages"

    def send(self, to: str, template: str, language: str, variables: Dict[str, Any]) -> DeliveryResult:
        if not self.enabled:
            log.info("whatsapp disabled; skipped to=%s template=%s", to, template)
            return DeliveryResult(ok=True, skipped=True, response={"skipped": "whatsapp_disabled"})

        components = []
        if variables:
            components.append(
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": str(v)} for v in variables.values()],
                }
            )
        body = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": {"name": template, "language": {"code": language or "en"}, "components": components},
        }
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        try:
            data = self._post(self.url, body, headers)
        except DeliveryFailure as e:
            return DeliveryResult(ok=False, error=e.error)
        messages = data.get("messages") or []
        msg_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        return DeliveryResult(ok=True, provider_message_id=msg_id, response=data)

    def deliver(self, conn, notification: Dict[str, Any], recipient: Dict[str, Any]) -> DeliveryResult:
        phone = _digits_only(recipient.get("phone") or "")
        if not phone:
            raise InvalidRecipient(f"user {recipient.get('id')} has no phone")
        return self.send(
            phone,
            notification["template"],
            notification.get("language") or "en",
            json_loads(notification.get("variables_json")),
        )


# -----------------------------
# In-app feed
# -----------------------------
class InternalFeedChannel:
    """Writes an inbox row for the user; only fails when the store does."""

    name = CHANNEL_INTERNAL

    def __init__(self, clock: Callable[[], datetime] = now_dt):
        self.clock = clock

    def deliver(self, conn, notification: Dict[str, Any], recipient: Dict[str, Any]) -> DeliveryResult:
        variables = json_loads(notification.get("variables_json"))
        language = notification.get("language") or "en"
        title = get_title(notification["template"], language)
        body = {"text": render_body(notification["template"], variables), "variables": variables}
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO inbox_items (user_id, notification_id, case_id, template, title, body_json, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    int(notification["to_user_id"]),
                    int(notification["id"]),
                    notification.get("case_id"),
                    notification["template"],
                    title[:190],
                    json_dumps(body),
                    to_db_ts(self.clock()),
                ),
            )
            inbox_id = cur.lastrowid
        return DeliveryResult(ok=True, provider_message_id=f"inbox:{inbox_id}", response={"inbox_item_id": inbox_id})


def default_channels(timeout_sec: float = 15, clock: Callable[[], datetime] = now_dt) -> Dict[str, Any]:
    return {
        CHANNEL_EMAIL: EmailChannel(timeout_sec=timeout_sec),
        CHANNEL_SMS: WhatsAppChannel(timeout_sec=timeout_sec),
        CHANNEL_INTERNAL: InternalFeedChannel(clock=clock),
    }
