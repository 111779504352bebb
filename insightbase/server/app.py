from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    jsonify,
    redirect,
    render_template_string,
    request,
    send_from_directory,
)
from flask_wtf.csrf import CSRFProtect

from insightbase.server.fulfillment import handle_stripe_webhook
from insightbase.server.inquiry import handle_inquiry, wants_json
from insightbase.server.mailer import ResendMailer
from insightbase.server.microcms import Column, MicroCMSClient, MicroCMSError, format_date_ja
from insightbase.server.recaptcha import RECAPTCHA_ACTION, RecaptchaVerifier
from insightbase.server.seo import build_robots_txt, build_sitemap_xml, collect_entries
from insightbase.server.settings import SiteSettings

STATIC_PAGES = {
    "/": "index.html",
    "/service": "service.html",
    "/price": "price.html",
    "/company": "company.html",
    "/privacy": "privacy.html",
    "/inquiry/thanks": "inquiry-thanks.html",
    "/checkout/thanks-ga4": "checkout-thanks-ga4.html",
    "/checkout/thanks-gad": "checkout-thanks-gad.html",
    "/checkout/thanks-set": "checkout-thanks-set.html",
}

INQUIRY_ERROR_MESSAGES = {
    "server": "送信に失敗しました。時間をおいて再度お試しください。",
    "required": "必須項目をご入力ください。",
    "email": "メールアドレスの形式をご確認ください。",
    "recaptcha": "スパム判定により送信できませんでした。ページを再読み込みしてお試しください。",
}

INQUIRY_TYPES = ("サービスについて", "料金について", "マニュアルについて", "その他")

csrf = CSRFProtect()
site = Blueprint("site", __name__)


@dataclass
class SiteServices:
    settings: SiteSettings
    cms: MicroCMSClient
    recaptcha: RecaptchaVerifier
    mailer: ResendMailer


def _services() -> SiteServices:
    return current_app.extensions["insightbase"]


LAYOUT_HEAD = """<!doctype html>
<html lang=\"ja\">
  <head>
    <meta charset=\"UTF-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1.0\" />
    <title>{{ title }} | InsightBase</title>
    <link rel=\"stylesheet\" href=\"/assets/css/style.css\" />
  </head>
  <body>
    <header class=\"header\"><a class=\"header__logo\" href=\"/\">InsightBase</a></header>
    <main class=\"main\">
"""

LAYOUT_FOOT = """
    </main>
    <footer class=\"footer\"><small>&copy; InsightBase</small></footer>
  </body>
</html>
"""

COLUMN_LIST_TEMPLATE = (
    LAYOUT_HEAD
    + """
      <h1 class=\"column__heading\">{{ heading }}</h1>
      {% if columns %}
      <ul class=\"column-list\">
        {% for column in columns %}
        <li class=\"column-card\">
          <a href=\"{{ column.path }}\">
            {% if column.eyecatch_url %}<img src=\"{{ column.eyecatch_url }}\" alt=\"\" loading=\"lazy\" />{% endif %}
            <h2>{{ column.title }}</h2>
          </a>
          <p class=\"column-card__meta\">
            <time datetime=\"{{ column.published_at }}\">{{ format_date(column.published_at) }}</time>
            {% for category in column.categories %}
            <a class=\"column-card__category\" href=\"/column/category/{{ category.id }}\">{{ category.label }}</a>
            {% endfor %}
          </p>
          {% if column.excerpt %}<p>{{ column.excerpt }}</p>{% endif %}
        </li>
        {% endfor %}
      </ul>
      {% else %}
      <p>現在公開中のコラムはありません。</p>
      {% endif %}
"""
    + LAYOUT_FOOT
)

COLUMN_DETAIL_TEMPLATE = (
    LAYOUT_HEAD
    + """
      <article class=\"column-detail\">
        {% if preview %}<p class=\"column-detail__preview\">プレビュー表示中</p>{% endif %}
        <h1>{{ column.title }}</h1>
        <p class=\"column-detail__meta\">
          <time datetime=\"{{ column.published_at }}\">{{ format_date(column.published_at) }}</time>
          {% for category in column.categories %}
          <a href=\"/column/category/{{ category.id }}\">{{ category.label }}</a>
          {% endfor %}
        </p>
        {% if column.eyecatch_url %}<img src=\"{{ column.eyecatch_url }}\" alt=\"\" />{% endif %}
        <div class=\"column-detail__body\">{{ column.content | safe }}</div>
        {% if column.tags %}
        <ul class=\"column-detail__tags\">
          {% for tag in column.tags %}<li><a href=\"/column/tag/{{ tag.id }}\">#{{ tag.label }}</a></li>{% endfor %}
        </ul>
        {% endif %}
      </article>
"""
    + LAYOUT_FOOT
)

INQUIRY_TEMPLATE = (
    LAYOUT_HEAD
    + """
      <h1>お問い合わせ</h1>
      {% if error_message %}<p class=\"form__error\" role=\"alert\">{{ error_message }}</p>{% endif %}
      <form class=\"js-inquiry-form\" method=\"post\" action=\"/api/inquiry\">
        <input type=\"hidden\" name=\"recaptchaToken\" value=\"\" />
        <input type=\"hidden\" name=\"recaptchaAction\" value=\"{{ recaptcha_action }}\" />
        <label for=\"inquiryType\">お問い合わせ種別</label>
        <select id=\"inquiryType\" name=\"inquiryType\" required>
          {% for inquiry_type in inquiry_types %}<option>{{ inquiry_type }}</option>{% endfor %}
        </select>
        <label for=\"company\">会社名</label>
        <input id=\"company\" name=\"company\" autocomplete=\"organization\" />
        <label for=\"name\">お名前</label>
        <input id=\"name\" name=\"name\" required autocomplete=\"name\" />
        <label for=\"email\">メールアドレス</label>
        <input id=\"email\" name=\"email\" type=\"email\" required autocomplete=\"email\" />
        <label for=\"message\">お問い合わせ内容</label>
        <textarea id=\"message\" name=\"message\" rows=\"8\" required></textarea>
        <button type=\"submit\">送信する</button>
      </form>
      {% if recaptcha_site_key %}
      <script src=\"https://www.google.com/recaptcha/api.js?render={{ recaptcha_site_key }}\"></script>
      <script>
        document.querySelector(".js-inquiry-form").addEventListener("submit", (event) => {
          const form = event.currentTarget;
          if (form.recaptchaToken.value) return;
          event.preventDefault();
          grecaptcha.ready(() => {
            grecaptcha
              .execute("{{ recaptcha_site_key }}", { action: "{{ recaptcha_action }}" })
              .then((token) => {
                form.recaptchaToken.value = token;
                form.submit();
              });
          });
        });
      </script>
      {% endif %}
"""
    + LAYOUT_FOOT
)


def _render_columns(heading: str, columns: list[Column]) -> str:
    return render_template_string(
        COLUMN_LIST_TEMPLATE,
        title=heading,
        heading=heading,
        columns=columns,
        format_date=format_date_ja,
    )


def _render_column(column: Column, preview: bool = False) -> str:
    return render_template_string(
        COLUMN_DETAIL_TEMPLATE,
        title=column.title,
        column=column,
        preview=preview,
        format_date=format_date_ja,
    )


def _static_page_view(filename: str):
    def view() -> Response:
        return send_from_directory(_services().settings.site_dir, filename)

    return view


def _endpoint_for(path: str) -> str:
    name = path.strip("/").replace("/", "_").replace("-", "_")
    return f"page_{name or 'index'}"


for _path, _filename in STATIC_PAGES.items():
    site.add_url_rule(_path, endpoint=_endpoint_for(_path), view_func=_static_page_view(_filename), methods=["GET"])


@site.get("/inquiry")
def inquiry_form() -> str:
    settings = _services().settings
    error_code = request.args.get("error", "")
    return render_template_string(
        INQUIRY_TEMPLATE,
        title="お問い合わせ",
        error_message=INQUIRY_ERROR_MESSAGES.get(error_code),
        inquiry_types=INQUIRY_TYPES,
        recaptcha_site_key=settings.recaptcha_site_key,
        recaptcha_action=RECAPTCHA_ACTION,
    )


@csrf.exempt
@site.post("/api/inquiry")
def inquiry_submit() -> Response:
    services = _services()
    result = handle_inquiry(request, services.settings, services.cms, services.recaptcha, services.mailer)

    if wants_json(request):
        body: dict[str, Any] = {"ok": True} if result.ok else {"ok": False, "error": result.error}
        return jsonify(body), result.status
    if result.ok:
        return redirect("/inquiry/thanks", code=303)
    return redirect(f"/inquiry?error={result.error}", code=303)


@csrf.exempt
@site.post("/api/stripe-webhook")
def stripe_webhook() -> Response:
    services = _services()
    # Signature is computed over the exact bytes Stripe sent.
    payload = request.get_data(cache=False)
    result = handle_stripe_webhook(
        payload,
        request.headers.get("Stripe-Signature"),
        services.settings,
        services.mailer,
    )
    current_app.logger.info("Stripe webhook handled: %s (%s)", result.outcome.value, result.status)
    return Response(result.detail, status=result.status, mimetype="text/plain")


@site.get("/column")
def column_index() -> str:
    try:
        columns = _services().cms.get_published_columns()
    except MicroCMSError:
        current_app.logger.exception("Failed to load columns.")
        columns = []
    return _render_columns("コラム", columns)


@site.get("/column/preview")
def column_preview() -> str:
    content_id = request.args.get("contentId", "").strip()
    draft_key = request.args.get("draftKey", "").strip()
    if not content_id or not draft_key:
        abort(404)
    try:
        column = _services().cms.get_column_by_id(content_id, draft_key)
    except MicroCMSError:
        current_app.logger.warning("Preview for %s could not be loaded.", content_id, exc_info=True)
        abort(404)
    response = Response(_render_column(column, preview=True))
    response.headers["X-Robots-Tag"] = "noindex"
    response.headers["Cache-Control"] = "no-store"
    return response


@site.get("/column/<slug>")
def column_detail(slug: str) -> str:
    try:
        column = _services().cms.get_column_by_slug(slug)
    except MicroCMSError:
        current_app.logger.exception("Failed to load column %s.", slug)
        abort(503)
    if column is None:
        abort(404)
    return _render_column(column)


@site.get("/column/category/<category_id>")
def column_category(category_id: str) -> str:
    cms = _services().cms
    try:
        category = cms.get_category(category_id)
        if category is None:
            abort(404)
        columns = cms.get_columns_by_category(category.id)
    except MicroCMSError:
        current_app.logger.exception("Failed to load category %s.", category_id)
        abort(503)
    return _render_columns(f"カテゴリー: {category.label}", columns)


@site.get("/column/tag/<tag_id>")
def column_tag(tag_id: str) -> str:
    cms = _services().cms
    try:
        tag = cms.get_tag(tag_id)
        if tag is None:
            abort(404)
        columns = cms.get_columns_by_tag(tag.id)
    except MicroCMSError:
        current_app.logger.exception("Failed to load tag %s.", tag_id)
        abort(503)
    return _render_columns(f"タグ: {tag.label}", columns)


@site.get("/sitemap.xml")
def sitemap_xml() -> Response:
    services = _services()
    entries = collect_entries(current_app.url_map, services.cms)
    response = Response(build_sitemap_xml(services.settings.site_url, entries), mimetype="application/xml")
    response.headers["Cache-Control"] = "public, max-age=3600"
    return response


@site.get("/robots.txt")
def robots_txt() -> Response:
    body = build_robots_txt(_services().settings.site_url)
    return Response(body, content_type="text/plain; charset=utf-8")


def create_app(
    settings: SiteSettings | None = None,
    *,
    cms: MicroCMSClient | None = None,
    recaptcha: RecaptchaVerifier | None = None,
    mailer: ResendMailer | None = None,
    config: dict[str, Any] | None = None,
) -> Flask:
    settings = settings or SiteSettings.from_env()

    app = Flask(__name__, static_folder=str(settings.site_dir / "assets"), static_url_path="/assets")
    app.config["SECRET_KEY"] = settings.session_secret
    app.config.update(config or {})

    app.extensions["insightbase"] = SiteServices(
        settings=settings,
        cms=cms or MicroCMSClient(settings.microcms_service_domain, settings.microcms_api_key),
        recaptcha=recaptcha or RecaptchaVerifier(settings.recaptcha_secret),
        mailer=mailer or ResendMailer(settings.resend_api_key),
    )
    csrf.init_app(app)
    app.register_blueprint(site)
    return app


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    app = create_app()
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    app.run(host=host, port=port)


if __name__ == "__main__":
    main()
