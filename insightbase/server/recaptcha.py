from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib.parse import urlencode
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

SITEVERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
RECAPTCHA_ACTION = "inquiry_submit"
RECAPTCHA_THRESHOLD = 0.5


@dataclass
class RecaptchaResult:
    success: bool
    score: float
    action: str

    def passes(self, expected_action: str = RECAPTCHA_ACTION, client_action: str = "") -> bool:
        if not self.success or self.score < RECAPTCHA_THRESHOLD:
            return False
        if self.action != expected_action:
            return False
        return not client_action or self.action == client_action


FAILED_VERIFICATION = RecaptchaResult(success=False, score=0.0, action="")


class RecaptchaVerifier:
    def __init__(self, secret: str, timeout: float = 10) -> None:
        self.secret = secret
        self.timeout = timeout

    def verify(self, token: str, remote_ip: str = "") -> RecaptchaResult:
        payload = {"secret": self.secret, "response": token}
        if remote_ip:
            payload["remoteip"] = remote_ip

        outgoing_request = Request(
            SITEVERIFY_URL,
            data=urlencode(payload).encode(),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with urlopen(outgoing_request, timeout=self.timeout) as response:
                result = json.loads(response.read().decode("utf-8"))
        except (OSError, ValueError):
            logger.exception("reCAPTCHA verification request failed.")
            return FAILED_VERIFICATION

        if not isinstance(result, dict):
            return FAILED_VERIFICATION
        try:
            score = float(result.get("score") or 0.0)
        except (TypeError, ValueError):
            score = 0.0
        return RecaptchaResult(
            success=result.get("success") is True,
            score=score,
            action=str(result.get("action") or ""),
        )
