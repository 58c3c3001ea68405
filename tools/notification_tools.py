from __future__ import annotations

import logging
from typing import Dict, List

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


def to_whatsapp_address(number: str) -> str:
    value = number.strip()
    return value if value.startswith("whatsapp:") else f"whatsapp:{value}"


class NotificationTools:
    """Outbound WhatsApp messages through the Twilio REST API.

    Every send is also kept in ``sent`` so callers and tests can inspect what went out.
    With no Twilio credentials configured, messages are only recorded.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self.account_sid = account_sid if account_sid is not None else SETTINGS.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else SETTINGS.twilio_auth_token
        self.from_number = from_number if from_number is not None else SETTINGS.twilio_whatsapp_number
        self.base_url = (base_url or SETTINGS.twilio_base_url).rstrip("/")
        self.sent: List[dict] = []

    async def send_whatsapp(self, to: str, body: str, from_number: str | None = None) -> Dict[str, object]:
        sender = from_number or self.from_number
        payload: Dict[str, object] = {"channel": "whatsapp", "to": to, "body": body, "status": "RECORDED"}
        if self.account_sid and self.auth_token and sender:
            try:
                async with httpx.AsyncClient(timeout=15) as client:
                    resp = await client.post(
                        f"{self.base_url}/Accounts/{self.account_sid}/Messages.json",
                        auth=(self.account_sid, self.auth_token),
                        data={"To": to_whatsapp_address(to), "From": to_whatsapp_address(sender), "Body": body},
                    )
            except httpx.HTTPError as exc:
                raise NotificationError(f"Twilio request failed: {exc!r}") from exc
            if resp.status_code >= 400:
                logger.warning("whatsapp_send_failed", extra={"status": resp.status_code, "to": to})
                raise NotificationError(f"Twilio send failed ({resp.status_code}): {resp.text}")
            payload["status"] = "SENT"
            payload["sid"] = resp.json().get("sid")
        self.sent.append(payload)
        return payload
