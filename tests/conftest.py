"""Shared fixtures: settings, fake collaborators and a Flask test client."""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest

from insightbase.server.app import create_app
from insightbase.server.mailer import MailerError
from insightbase.server.microcms import Column, MicroCMSError, Term
from insightbase.server.recaptcha import RecaptchaResult
from insightbase.server.settings import SiteSettings

WEBHOOK_SECRET = "whsec_test_secret"


class FakeMailer:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    def send(self, email):
        if self.fail:
            raise MailerError("Resend is down")
        self.sent.append(email)
        return f"msg_{len(self.sent)}"


class FakeRecaptcha:
    def __init__(self, result: RecaptchaResult | None = None) -> None:
        self.result = result or RecaptchaResult(success=True, score=0.9, action="inquiry_submit")
        self.calls = []

    def verify(self, token, remote_ip=""):
        self.calls.append((token, remote_ip))
        return self.result


class FakeCMS:
    def __init__(self, columns=None, fail: bool = False) -> None:
        self.columns = columns or []
        self.fail = fail
        self.inquiries = []
        self.categories = {"seo": Term(id="seo", label="SEO", slug="seo")}
        self.tags = {"ga4": Term(id="ga4", label="GA4", slug="ga4")}

    def _check(self):
        if self.fail:
            raise MicroCMSError("microCMS request failed: 503 Service Unavailable", status=503)

    def get_published_columns(self, now=None, limit=100):
        self._check()
        return list(self.columns)

    def get_column_by_slug(self, slug, draft_key=None, now=None):
        self._check()
        return next((column for column in self.columns if column.slug == slug), None)

    def get_column_by_id(self, content_id, draft_key):
        self._check()
        for column in self.columns:
            if column.id == content_id:
                return column
        raise MicroCMSError("microCMS request failed: 404 Not Found", status=404)

    def get_category(self, category_id):
        self._check()
        return self.categories.get(category_id)

    def get_tag(self, tag_id):
        self._check()
        return self.tags.get(tag_id)

    def get_columns_by_category(self, category_id, now=None):
        self._check()
        return [c for c in self.columns if any(term.id == category_id for term in c.categories)]

    def get_columns_by_tag(self, tag_id, now=None):
        self._check()
        return [c for c in self.columns if any(term.id == tag_id for term in c.tags)]

    def create_inquiry(self, payload):
        self._check()
        self.inquiries.append(payload)
        return {"id": f"inq{len(self.inquiries)}"}


@pytest.fixture
def settings():
    return SiteSettings(
        session_secret="test-session-secret",
        microcms_service_domain="insightbase-test",
        microcms_api_key="cms-key",
        recaptcha_secret="recaptcha-secret",
        recaptcha_site_key="recaptcha-site-key",
        resend_api_key="re_test",
        resend_from="InsightBase <no-reply@insightbase.jp>",
        resend_to="info@insightbase.jp",
        resend_reply_to="support@insightbase.jp",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        manual_password_ga4="ga4-pass",
        manual_password_gad="gad-pass",
        site_url="https://insightbase.jp",
    )


@pytest.fixture
def sample_column():
    return Column(
        id="c1",
        title="GA4の探索レポート入門",
        content="<p>本文</p>",
        slug="ga4-exploration",
        categories=[Term(id="seo", label="SEO", slug="seo")],
        tags=[Term(id="ga4", label="GA4", slug="ga4")],
        published_at="2024-05-01T00:00:00.000Z",
        updated_at="2024-05-03T09:30:00.000Z",
    )


@pytest.fixture
def cms(sample_column):
    return FakeCMS(columns=[sample_column])


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def recaptcha():
    return FakeRecaptcha()


@pytest.fixture
def app(settings, cms, recaptcha, mailer):
    return create_app(
        settings,
        cms=cms,
        recaptcha=recaptcha,
        mailer=mailer,
        config={"TESTING": True},
    )


@pytest.fixture
def client(app):
    return app.test_client()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(product_key=None, email="buyer@example.com", event_type="checkout.session.completed") -> bytes:
    session = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "metadata": {"product_key": product_key} if product_key else {},
        "customer_details": {"email": email},
        "customer_email": None,
    }
    event = {
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {"object": session},
    }
    return json.dumps(event).encode("utf-8")
