from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from ..config import DeliveryConfig
from ..utils import log_event
from .digest import Digest

SENT = "sent"
RETRYABLE = "retryable"
PERMANENT = "permanent"

TELEGRAM_MAX_CHARS = 4096

SecretLoader = Callable[[str], "str | None"]


@dataclass(frozen=True)
class SendResult:
    status: str
    detail: str | None = None

    @classmethod
    def sent(cls) -> "SendResult":
        return cls(SENT)

    @classmethod
    def retryable(cls, detail: str) -> "SendResult":
        return cls(RETRYABLE, detail)

    @classmethod
    def permanent(cls, detail: str) -> "SendResult":
        return cls(PERMANENT, detail)


def classify_http_status(code: int) -> str:
    if code == 429 or code >= 500:
        return RETRYABLE
    return PERMANENT


class EmailSender:
    """Sends digests through a Resend-style ``POST /emails`` JSON API."""

    channel = "email"

    def __init__(
        self,
        *,
        api_url: str,
        sender: str,
        api_key_loader: Callable[[], str | None],
        timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_url = api_url
        self.sender = sender
        self._api_key_loader = api_key_loader
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("newsrelay.delivery")

    def send(self, address: str, digest: Digest, metadata: dict[str, Any]) -> SendResult:
        api_key = self._api_key_loader()
        if not api_key:
            return SendResult.permanent("email api key not configured")
        payload = {
            "from": metadata.get("from") or self.sender,
            "to": [address],
            "subject": metadata.get("subject") or digest.subject,
            "text": digest.text,
        }
        request = urllib.request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
        )
        request.add_header("Content-Type", "application/json")
        request.add_header("Authorization", f"Bearer {api_key}")
        return _post(request, self.timeout_seconds, self.logger, self.channel)


class TelegramSender:
    """Sends digests with the Telegram Bot API ``sendMessage`` call; address is the chat id."""

    channel = "telegram"

    def __init__(
        self,
        *,
        api_url: str,
        token_loader: Callable[[], str | None],
        timeout_seconds: int = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._token_loader = token_loader
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger("newsrelay.delivery")

    def send(self, address: str, digest: Digest, metadata: dict[str, Any]) -> SendResult:
        token = self._token_loader()
        if not token:
            return SendResult.permanent("telegram bot token not configured")
        text = digest.text
        if len(text) > TELEGRAM_MAX_CHARS:
            text = text[: TELEGRAM_MAX_CHARS - 3] + "..."
        params = {"chat_id": address, "text": text}
        if metadata.get("parse_mode"):
            params["parse_mode"] = str(metadata["parse_mode"])
        request = urllib.request.Request(
            f"{self.api_url}/bot{token}/sendMessage",
            data=urllib.parse.urlencode(params).encode("utf-8"),
            method="POST",
        )
        return _post(request, self.timeout_seconds, self.logger, self.channel)


def _post(
    request: urllib.request.Request,
    timeout: int,
    logger: logging.Logger,
    channel: str,
) -> SendResult:
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8", errors="ignore")
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")[:200]
        log_event(logger, logging.DEBUG, "channel_http_error", channel=channel, status=exc.code)
        detail = f"http {exc.code}: {body}" if body else f"http {exc.code}"
        if classify_http_status(exc.code) == RETRYABLE:
            return SendResult.retryable(detail)
        return SendResult.permanent(detail)
    except urllib.error.URLError as exc:
        return SendResult.retryable(f"network_error: {exc.reason}")
    except TimeoutError:
        return SendResult.retryable("timeout")
    if channel == "telegram":
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            return SendResult.sent()
        if isinstance(body, dict) and body.get("ok") is False:
            return SendResult.permanent(str(body.get("description") or "telegram rejected message"))
    return SendResult.sent()


def build_senders(config: DeliveryConfig, secret_loader: SecretLoader, timeout_seconds: int = 30):
    return {
        "email": EmailSender(
            api_url=config.email_api_url,
            sender=config.email_from,
            api_key_loader=lambda: secret_loader("email"),
            timeout_seconds=timeout_seconds,
        ),
        "telegram": TelegramSender(
            api_url=config.telegram_api_url,
            token_loader=lambda: secret_loader("telegram"),
            timeout_seconds=timeout_seconds,
        ),
    }
