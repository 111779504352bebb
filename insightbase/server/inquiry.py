from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from flask import Request
from werkzeug.exceptions import BadRequest

from insightbase.server.mailer import MailerError, OutgoingEmail, ResendMailer
from insightbase.server.microcms import MicroCMSClient, MicroCMSError
from insightbase.server.recaptcha import RECAPTCHA_ACTION, RecaptchaVerifier
from insightbase.server.settings import SiteSettings

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ERROR_SERVER = "server"
ERROR_REQUIRED = "required"
ERROR_EMAIL = "email"
ERROR_RECAPTCHA = "recaptcha"

ADMIN_SUBJECT = "InsightBaseの問い合わせがありました"
AUTO_REPLY_SUBJECT = "お問い合わせありがとうございます（InsightBase）"


@dataclass
class InquirySubmission:
    inquiry_type: str
    company: str
    name: str
    email: str
    message: str
    recaptcha_token: str
    recaptcha_action: str

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> InquirySubmission:
        def field_value(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value).strip()

        return cls(
            inquiry_type=field_value("inquiryType"),
            company=field_value("company"),
            name=field_value("name"),
            email=field_value("email"),
            message=field_value("message"),
            recaptcha_token=field_value("recaptchaToken"),
            recaptcha_action=field_value("recaptchaAction"),
        )


@dataclass
class InquiryResult:
    ok: bool
    error: str | None = None
    status: int = 200


def _failure(error: str, status: int) -> InquiryResult:
    return InquiryResult(ok=False, error=error, status=status)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",", maxsplit=1)[0].strip()
    return request.remote_addr or ""


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("Accept", "")


def read_submission_data(request: Request) -> dict[str, Any]:
    """Return the submitted fields from a JSON or form-encoded body.

    Raises ValueError when the body cannot be parsed into a mapping.
    """
    if "application/json" in (request.content_type or ""):
        try:
            data = request.get_json(force=True)
        except BadRequest as exc:
            raise ValueError("invalid JSON body") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data
    return request.form.to_dict()


def validate_submission(submission: InquirySubmission) -> str | None:
    required = (
        submission.inquiry_type,
        submission.name,
        submission.email,
        submission.message,
        submission.recaptcha_token,
    )
    if not all(required):
        return ERROR_REQUIRED
    if not EMAIL_PATTERN.match(submission.email):
        return ERROR_EMAIL
    return None


def build_admin_text(submission: InquirySubmission, ip: str, user_agent: str, action: str) -> str:
    return "\n".join(
        [
            "InsightBaseの問い合わせがありました。",
            "",
            f"お問い合わせ種別: {submission.inquiry_type}",
            f"会社名: {submission.company or '-'}",
            f"お名前: {submission.name}",
            f"メールアドレス: {submission.email}",
            "お問い合わせ内容:",
            submission.message,
            "",
            f"IP: {ip or '-'}",
            f"User-Agent: {user_agent or '-'}",
            f"reCAPTCHA action: {action or '-'}",
        ]
    )


def build_auto_reply_text(submission: InquirySubmission) -> str:
    return "\n".join(
        [
            f"{submission.name} 様",
            "",
            "お世話になります。",
            "ビザップ株式会社でございます。",
            "この度はお問い合わせ誠にありがとうございます。",
            "",
            "お問い合わせへのご回答につきましては2営業日以内にお電話もしくは",
            "メールにてご回答させて頂きますのでいましばらくお待ち下さいます様",
            "宜しくお願い致します。",
            "",
            "◆◇───────────────────────────◇◆",
            "　　ビザップ株式会社",
            "　　　https://bizup-inc.co.jp",
            "　・………・………・………・………・………・",
            "　　〒272-0111　千葉県市川市妙典5-13-33 A＆Yビル3F",
            "　　Email:info@bizup-inc.co.jp",
            "　Tel:047-718-3017",
            "◆◇───────────────────────────◇◆",
        ]
    )


def handle_inquiry(
    request: Request,
    settings: SiteSettings,
    cms: MicroCMSClient,
    recaptcha: RecaptchaVerifier,
    mailer: ResendMailer,
) -> InquiryResult:
    if not settings.inquiry_configured:
        logger.error("Inquiry received but server configuration is missing.")
        return _failure(ERROR_SERVER, 500)

    try:
        data = read_submission_data(request)
    except ValueError:
        return _failure(ERROR_REQUIRED, 400)

    submission = InquirySubmission.from_mapping(data)
    validation_error = validate_submission(submission)
    if validation_error:
        return _failure(validation_error, 400)

    ip = client_ip(request)
    user_agent = request.headers.get("User-Agent", "")

    verification = recaptcha.verify(submission.recaptcha_token, remote_ip=ip)
    if not verification.passes(RECAPTCHA_ACTION, submission.recaptcha_action):
        logger.info(
            "Rejected inquiry: reCAPTCHA success=%s score=%.2f action=%r",
            verification.success,
            verification.score,
            verification.action,
        )
        return _failure(ERROR_RECAPTCHA, 400)

    action = verification.action or submission.recaptcha_action
    try:
        cms.create_inquiry(
            {
                "inquiryType": submission.inquiry_type,
                "company": submission.company,
                "name": submission.name,
                "email": submission.email,
                "message": submission.message,
                "recaptchaAction": action,
                "ip": ip,
                "userAgent": user_agent,
            }
        )
    except MicroCMSError:
        logger.exception("Failed to store inquiry in microCMS.")
        return _failure(ERROR_SERVER, 502)

    # Stored already; a failure below leaves the record without notifications.
    try:
        mailer.send(
            OutgoingEmail(
                sender=settings.resend_from,
                to=[settings.resend_to],
                reply_to=settings.reply_to,
                subject=ADMIN_SUBJECT,
                text=build_admin_text(submission, ip, user_agent, action),
            )
        )
        mailer.send(
            OutgoingEmail(
                sender=settings.resend_from,
                to=[submission.email],
                reply_to=settings.reply_to,
                subject=AUTO_REPLY_SUBJECT,
                text=build_auto_reply_text(submission),
            )
        )
    except MailerError:
        logger.exception("Inquiry stored but notification email failed.")
        return _failure(ERROR_SERVER, 502)

    return InquiryResult(ok=True)
