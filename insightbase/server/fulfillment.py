"""Stripe checkout webhook: deliver purchased manuals by email.

Once the signature is verified the handler always answers 200, even when
the email could not be sent. Stripe retries non-2xx deliveries, and a retry
after a transient send failure would mail the same credentials twice, so
fulfillment is at most once and failures are left in the logs for manual
follow-up. :class:`Outcome` records which of these paths was taken.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import stripe

from insightbase.server.mailer import MailerError, OutgoingEmail, ResendMailer
from insightbase.server.settings import SiteSettings

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class Outcome(str, Enum):
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    IGNORED = "ignored"
    REJECTED = "rejected"
    MISCONFIGURED = "misconfigured"


@dataclass
class WebhookResult:
    outcome: Outcome
    status: int
    detail: str


@dataclass
class Product:
    key: str
    name: str
    manuals: tuple[str, ...]


MANUAL_NAMES = {
    "ga4": "GA4 設定・活用マニュアル",
    "gad": "Google広告 運用マニュアル",
}

PRODUCTS = {
    "ga4": Product(key="ga4", name="GA4 設定・活用マニュアル", manuals=("ga4",)),
    "gad": Product(key="gad", name="Google広告 運用マニュアル", manuals=("gad",)),
    "set": Product(key="set", name="GA4 × Google広告 マニュアルセット", manuals=("ga4", "gad")),
}


@dataclass
class CheckoutDetails:
    session_id: str
    product_key: str
    customer_email: str

    @classmethod
    def from_session(cls, session: dict[str, Any]) -> CheckoutDetails:
        metadata = session.get("metadata") or {}
        customer_details = session.get("customer_details") or {}
        email = customer_details.get("email") or ""
        if not email and isinstance(session.get("customer_email"), str):
            email = session["customer_email"]
        return cls(
            session_id=str(session.get("id") or ""),
            product_key=str(metadata.get("product_key") or "").strip(),
            customer_email=str(email).strip(),
        )


def missing_fulfillment_settings(settings: SiteSettings, product_key: str) -> list[str]:
    missing = []
    if not settings.resend_api_key:
        missing.append("RESEND_API_KEY")
    if not settings.resend_from:
        missing.append("RESEND_FROM")
    product = PRODUCTS.get(product_key)
    if product is not None:
        for manual_key in product.manuals:
            if not settings.manual_password(manual_key):
                missing.append(f"MANUAL_PASSWORD_{manual_key.upper()}")
    return missing


def _manual_lines(settings: SiteSettings, manual_key: str) -> list[str]:
    return [
        f"■ {MANUAL_NAMES[manual_key]}",
        f"URL: {settings.manual_url(manual_key)}",
        f"パスワード: {settings.manual_password(manual_key)}",
        "",
    ]


def compose_fulfillment_email(settings: SiteSettings, checkout: CheckoutDetails) -> OutgoingEmail:
    product = PRODUCTS.get(checkout.product_key)
    bcc = [settings.fulfillment_bcc] if settings.fulfillment_bcc else []

    if product is None:
        lines = [
            "この度はInsightBaseをご購入いただき、誠にありがとうございます。",
            "",
            "ご購入内容の確認に時間を要しております。",
            "お手数ですが、本メールにご返信いただくか、サポート窓口までお問い合わせください。",
            "確認後、担当者より閲覧方法をご案内いたします。",
            "",
            f"決済ID: {checkout.session_id or '-'}",
        ]
        subject = "【InsightBase】ご購入ありがとうございます"
    else:
        lines = [
            "この度はInsightBaseをご購入いただき、誠にありがとうございます。",
            f"「{product.name}」の閲覧情報をお送りします。",
            "",
        ]
        for manual_key in product.manuals:
            lines.extend(_manual_lines(settings, manual_key))
        lines.extend(
            [
                "パスワードは第三者と共有しないようお願いいたします。",
                "ご不明な点がございましたら、本メールにご返信ください。",
                "",
                f"決済ID: {checkout.session_id or '-'}",
            ]
        )
        subject = f"【InsightBase】{product.name} のご案内"

    return OutgoingEmail(
        sender=settings.resend_from,
        to=[checkout.customer_email],
        subject=subject,
        text="\n".join(lines),
        reply_to=settings.reply_to,
        bcc=bcc,
    )


def fulfill_checkout(settings: SiteSettings, mailer: ResendMailer, session: dict[str, Any]) -> WebhookResult:
    checkout = CheckoutDetails.from_session(session)
    logger.info(
        "checkout.session.completed session=%s product_key=%r",
        checkout.session_id,
        checkout.product_key,
    )

    if not checkout.product_key or not checkout.customer_email:
        logger.warning("Checkout %s is missing product_key or customer email; nothing sent.", checkout.session_id)
        return WebhookResult(Outcome.ACKNOWLEDGED, 200, "ok")

    missing = missing_fulfillment_settings(settings, checkout.product_key)
    if missing:
        logger.error(
            "Fulfillment for checkout %s skipped, missing configuration: %s",
            checkout.session_id,
            ", ".join(missing),
        )
        return WebhookResult(Outcome.ACKNOWLEDGED, 200, "ok")

    email = compose_fulfillment_email(settings, checkout)
    try:
        mailer.send(email)
    except MailerError:
        logger.exception(
            "Fulfillment email for checkout %s (product_key=%r) was not sent.",
            checkout.session_id,
            checkout.product_key,
        )
        return WebhookResult(Outcome.ACKNOWLEDGED, 200, "ok")

    return WebhookResult(Outcome.DELIVERED, 200, "ok")


def handle_stripe_webhook(
    payload: bytes,
    signature: str | None,
    settings: SiteSettings,
    mailer: ResendMailer,
) -> WebhookResult:
    if not signature:
        return WebhookResult(Outcome.REJECTED, 400, "Missing stripe-signature")
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured.")
        return WebhookResult(Outcome.MISCONFIGURED, 500, "Missing STRIPE_WEBHOOK_SECRET")

    try:
        stripe.Webhook.construct_event(
            payload,
            signature,
            settings.stripe_webhook_secret,
            api_key=settings.stripe_secret_key or None,
        )
    except (stripe.SignatureVerificationError, ValueError) as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        return WebhookResult(Outcome.REJECTED, 400, "Webhook Error")

    body = json.loads(payload)
    event_type = body.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.debug("Ignoring Stripe event %s of type %s", body.get("id"), event_type)
        return WebhookResult(Outcome.IGNORED, 200, "ok")

    session = (body.get("data") or {}).get("object") or {}
    return fulfill_checkout(settings, mailer, session)
