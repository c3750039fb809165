import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from discrecovery.config import settings

logger = logging.getLogger(__name__)


class PushStatus:
    SENT = "sent"
    FAILED = "failed"
    DEVICE_NOT_REGISTERED = "device_not_registered"
    SKIPPED = "skipped"


@dataclass
class PushResult:
    status: str
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PushStatus.SENT


class ExpoPushChannel:
    """Sends one push message per call to the Expo push API."""

    def __init__(
        self,
        url: str = settings.EXPO_PUSH_URL,
        timeout: float = settings.PUSH_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
        enabled: bool = settings.PUSH_ENABLED,
    ):
        self.url = url
        self.timeout = timeout
        self.client = client
        self.enabled = enabled

    def _post(self, message: dict) -> httpx.Response:
        if self.client is not None:
            return self.client.post(self.url, json=message, timeout=self.timeout)

        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.url, json=message)

    def send(self, token: Optional[str], title: str, body: str, data: Optional[dict] = None) -> PushResult:
        if not self.enabled or not token:
            return PushResult(PushStatus.SKIPPED)

        message = {
            "to": token,
            "title": title,
            "body": body,
            "sound": "default",
            "data": data or {},
        }

        try:
            resp = self._post(message)
        except httpx.HTTPError as e:
            logger.warning("Push request failed: %s", e)
            return PushResult(PushStatus.FAILED, str(e))

        if not 200 <= resp.status_code < 300:
            logger.warning("Push rejected with %s: %s", resp.status_code, (resp.text or "")[:200])
            return PushResult(PushStatus.FAILED, f"HTTP {resp.status_code}")

        try:
            ticket = resp.json().get("data") or {}
        except ValueError:
            return PushResult(PushStatus.FAILED, "Unreadable push response")

        # a single message yields a single ticket, some gateways wrap it in a list
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}

        if ticket.get("status") == "error":
            error = (ticket.get("details") or {}).get("error")
            if error == "DeviceNotRegistered":
                return PushResult(PushStatus.DEVICE_NOT_REGISTERED, ticket.get("message"))
            return PushResult(PushStatus.FAILED, ticket.get("message") or error)

        return PushResult(PushStatus.SENT)
