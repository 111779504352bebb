from __future__ import annotations

import json
import logging
import urllib.error
from dataclasses import dataclass, field
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"


class MailerError(RuntimeError):
    pass


@dataclass
class OutgoingEmail:
    sender: str
    to: list[str]
    subject: str
    text: str
    reply_to: str = ""
    bcc: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "text": self.text,
        }
        if self.reply_to:
            payload["reply_to"] = self.reply_to
        if self.bcc:
            payload["bcc"] = self.bcc
        return payload


class ResendMailer:
    """Sends plain-text email through the Resend REST API."""

    def __init__(self, api_key: str, timeout: float = 10) -> None:
        self.api_key = api_key
        self.timeout = timeout

    def send(self, email: OutgoingEmail) -> str:
        if not self.api_key:
            raise MailerError("RESEND_API_KEY is not configured")

        outgoing_request = Request(
            RESEND_EMAILS_URL,
            data=json.dumps(email.to_payload()).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(outgoing_request, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            raise MailerError(f"Resend rejected the email: HTTP {exc.code} {detail}") from exc
        except OSError as exc:
            raise MailerError(f"Resend request failed: {exc}") from exc

        try:
            message_id = str(json.loads(body).get("id") or "")
        except (ValueError, AttributeError):
            message_id = ""
        logger.info("Sent email %r to %d recipient(s) (id=%s)", email.subject, len(email.to), message_id or "-")
        return message_id
