from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_SITE_DIR = BASE_DIR / "site"
DEFAULT_SITE_URL = "https://insightbase.jp"


def _required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def normalize_site_url(url: str) -> str:
    return url.strip().rstrip("/") or DEFAULT_SITE_URL


@dataclass
class SiteSettings:
    """Process-wide configuration, read once from the environment."""

    session_secret: str
    microcms_service_domain: str = ""
    microcms_api_key: str = ""
    recaptcha_secret: str = ""
    recaptcha_site_key: str = ""
    resend_api_key: str = ""
    resend_from: str = ""
    resend_to: str = ""
    resend_reply_to: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    manual_password_ga4: str = ""
    manual_password_gad: str = ""
    manual_url_ga4: str = ""
    manual_url_gad: str = ""
    fulfillment_bcc: str = ""
    site_url: str = DEFAULT_SITE_URL
    site_dir: Path = DEFAULT_SITE_DIR

    @classmethod
    def from_env(cls) -> SiteSettings:
        return cls(
            session_secret=_required_env("SESSION_SECRET"),
            microcms_service_domain=_env("MICROCMS_SERVICE_DOMAIN"),
            microcms_api_key=_env("MICROCMS_API_KEY"),
            recaptcha_secret=_env("RECAPTCHA_SECRET"),
            recaptcha_site_key=_env("RECAPTCHA_SITE_KEY"),
            resend_api_key=_env("RESEND_API_KEY"),
            resend_from=_env("RESEND_FROM"),
            resend_to=_env("RESEND_TO"),
            resend_reply_to=_env("RESEND_REPLY_TO"),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            manual_password_ga4=_env("MANUAL_PASSWORD_GA4"),
            manual_password_gad=_env("MANUAL_PASSWORD_GAD"),
            manual_url_ga4=_env("MANUAL_URL_GA4"),
            manual_url_gad=_env("MANUAL_URL_GAD"),
            fulfillment_bcc=_env("FULFILLMENT_BCC"),
            site_url=normalize_site_url(_env("SITE_URL", DEFAULT_SITE_URL)),
            site_dir=Path(_env("SITE_DIR") or DEFAULT_SITE_DIR),
        )

    @property
    def cms_configured(self) -> bool:
        return bool(self.microcms_service_domain and self.microcms_api_key)

    @property
    def inquiry_configured(self) -> bool:
        return bool(
            self.cms_configured
            and self.recaptcha_secret
            and self.resend_api_key
            and self.resend_from
            and self.resend_to
        )

    @property
    def reply_to(self) -> str:
        return self.resend_reply_to or self.resend_to

    def manual_password(self, manual_key: str) -> str:
        return {"ga4": self.manual_password_ga4, "gad": self.manual_password_gad}.get(manual_key, "")

    def manual_url(self, manual_key: str) -> str:
        configured = {"ga4": self.manual_url_ga4, "gad": self.manual_url_gad}.get(manual_key, "")
        return configured or f"{self.site_url}/manual/{manual_key}"
