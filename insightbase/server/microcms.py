"""microCMS content client for columns, categories, tags and inquiries.

Columns are only shown once published, which means ``publishedAt`` is set and
not in the future. List queries carry an API filter for this and every
result is checked again client-side with :func:`is_published`.
"""

from __future__ import annotations

import json
import logging
import urllib.error
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

COLUMN_ENDPOINT = "column"
CATEGORY_ENDPOINT = "categories"
TAG_ENDPOINT = "tags"
INQUIRY_ENDPOINT = "insightbase"
FALLBACK_PAGE_SIZE = 100
REQUEST_TIMEOUT = 10
DISPLAY_TIMEZONE = ZoneInfo("Asia/Tokyo")


class MicroCMSError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class Term:
    id: str
    label: str
    slug: str


@dataclass
class Column:
    id: str
    title: str
    content: str
    slug: str
    eyecatch_url: str = ""
    categories: list[Term] = field(default_factory=list)
    tags: list[Term] = field(default_factory=list)
    excerpt: str = ""
    published_at: str = ""
    created_at: str = ""
    updated_at: str = ""
    revised_at: str = ""

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> Column:
        category = item.get("category")
        if category is None:
            category = item.get("categories")
        return cls(
            id=str(item.get("id") or ""),
            title=str(item.get("title") or ""),
            content=str(item.get("content") or ""),
            slug=str(item.get("slug") or ""),
            eyecatch_url=get_eyecatch_url(item.get("eyecatch")),
            categories=normalize_terms(category),
            tags=normalize_terms(item.get("tags")),
            excerpt=str(item.get("excerpt") or ""),
            published_at=str(item.get("publishedAt") or ""),
            created_at=str(item.get("createdAt") or ""),
            updated_at=str(item.get("updatedAt") or ""),
            revised_at=str(item.get("revisedAt") or ""),
        )

    @property
    def path(self) -> str:
        return f"/column/{quote(self.slug)}"

    @property
    def primary_category(self) -> Term | None:
        return self.categories[0] if self.categories else None


def _non_empty(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _term_from_value(value: Any) -> Term | None:
    if isinstance(value, str):
        text = value.strip()
        return Term(id=text, label=text, slug=text) if text else None
    if not isinstance(value, dict):
        return None

    term_id = _non_empty(value.get("id"))
    label = _non_empty(value.get("name")) or _non_empty(value.get("title")) or _non_empty(value.get("label"))
    if not term_id or not label:
        return None
    slug = _non_empty(value.get("slug")) or term_id
    return Term(id=term_id, label=label, slug=slug)


def normalize_terms(value: Any) -> list[Term]:
    """Reduce a category/tag reference of any shape to a list of terms.

    microCMS returns taxonomy references as nothing, a bare id string, a
    single embedded object or a list of either, depending on the field type
    and the request depth. Malformed entries are dropped.
    """
    if value is None:
        return []
    values = value if isinstance(value, list) else [value]
    terms = []
    for raw in values:
        term = _term_from_value(raw)
        if term is not None:
            terms.append(term)
    return terms


def get_eyecatch_url(eyecatch: Any) -> str:
    if not eyecatch:
        return ""
    if isinstance(eyecatch, str):
        return eyecatch
    if isinstance(eyecatch, dict):
        candidate = eyecatch.get("url")
        return candidate if isinstance(candidate, str) else ""
    return ""


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_date_ja(value: str | None) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return ""
    local = parsed.astimezone(DISPLAY_TIMEZONE)
    return f"{local.year}年{local.month}月{local.day}日"


def format_api_timestamp(moment: datetime) -> str:
    utc_moment = moment.astimezone(timezone.utc)
    return utc_moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_moment.microsecond // 1000:03d}Z"


def is_published(item: dict[str, Any], now: datetime) -> bool:
    published_at = parse_timestamp(item.get("publishedAt"))
    if published_at is None:
        return False
    return published_at <= now


def published_filter(now: datetime) -> str:
    # less_than is strict on the API side; nudge by a millisecond so "now" is included.
    upper_bound = format_api_timestamp(now + timedelta(milliseconds=1))
    return f"publishedAt[exists][and]publishedAt[less_than]{upper_bound}"


def _join_filters(*filters: str) -> str:
    return "[and]".join(item for item in filters if item)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


class MicroCMSClient:
    def __init__(self, service_domain: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> None:
        self.service_domain = service_domain
        self.api_key = api_key
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.service_domain and self.api_key)

    def _url(self, path: str, query: dict[str, Any] | None = None) -> str:
        if not self.is_configured:
            raise MicroCMSError("microCMS env vars are missing.")
        url = f"https://{self.service_domain}.microcms.io/api/v1/{path}"
        params = {
            key: str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in (query or {}).items()
            if value is not None and value != ""
        }
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def _request(
        self,
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = self._url(path, query)
        headers = {"X-MICROCMS-API-KEY": self.api_key, "Accept": "application/json"}
        body = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"

        outgoing_request = Request(url, data=body, headers=headers, method=method)
        try:
            with urlopen(outgoing_request, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise MicroCMSError(f"microCMS request failed: {exc.code} {exc.reason}", status=exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise MicroCMSError(f"microCMS request failed: {exc}") from exc

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MicroCMSError("microCMS returned an invalid JSON body") from exc

    def _list(self, endpoint: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        data = self._request("GET", endpoint, query)
        contents = data.get("contents")
        return contents if isinstance(contents, list) else []

    def _published_columns(self, extra_filter: str, now: datetime | None, limit: int) -> list[Column]:
        moment = _now(now)
        items = self._list(
            COLUMN_ENDPOINT,
            {
                "filters": _join_filters(extra_filter, published_filter(moment)),
                "orders": "-publishedAt",
                "limit": limit,
                "depth": 1,
            },
        )
        return [Column.from_api(item) for item in items if is_published(item, moment)]

    def get_published_columns(self, now: datetime | None = None, limit: int = FALLBACK_PAGE_SIZE) -> list[Column]:
        return self._published_columns("", now, limit)

    def get_columns_by_category(self, category_id: str, now: datetime | None = None) -> list[Column]:
        return self._published_columns(f"category[contains]{category_id}", now, FALLBACK_PAGE_SIZE)

    def get_columns_by_tag(self, tag_id: str, now: datetime | None = None) -> list[Column]:
        return self._published_columns(f"tags[contains]{tag_id}", now, FALLBACK_PAGE_SIZE)

    def get_column_by_slug(
        self,
        slug: str,
        draft_key: str | None = None,
        now: datetime | None = None,
    ) -> Column | None:
        moment = _now(now)
        guard_published = not draft_key
        filters = f"slug[equals]{slug}"
        if guard_published:
            filters = _join_filters(filters, published_filter(moment))

        try:
            items = self._list(COLUMN_ENDPOINT, {"filters": filters, "limit": 1, "depth": 1, "draftKey": draft_key})
        except MicroCMSError:
            # The slug field may not be filterable on every schema.
            logger.warning("Filtered slug lookup failed for %r, scanning recent columns", slug, exc_info=True)
            items = []

        for item in items:
            if not guard_published or is_published(item, moment):
                return Column.from_api(item)

        fallback = self._list(COLUMN_ENDPOINT, {"limit": FALLBACK_PAGE_SIZE, "depth": 1, "draftKey": draft_key})
        for item in fallback:
            if item.get("slug") != slug:
                continue
            if guard_published and not is_published(item, moment):
                continue
            return Column.from_api(item)
        return None

    def get_column_by_id(self, content_id: str, draft_key: str) -> Column:
        item = self._request("GET", f"{COLUMN_ENDPOINT}/{quote(content_id, safe='')}", {"draftKey": draft_key, "depth": 1})
        return Column.from_api(item)

    def _terms(self, endpoint: str) -> list[Term]:
        return normalize_terms(self._list(endpoint, {"limit": FALLBACK_PAGE_SIZE}))

    def get_categories(self) -> list[Term]:
        return self._terms(CATEGORY_ENDPOINT)

    def get_tags(self) -> list[Term]:
        return self._terms(TAG_ENDPOINT)

    def _term(self, endpoint: str, term_id: str) -> Term | None:
        try:
            item = self._request("GET", f"{endpoint}/{quote(term_id, safe='')}")
        except MicroCMSError as exc:
            if exc.status == 404:
                return None
            raise
        terms = normalize_terms(item)
        return terms[0] if terms else None

    def get_category(self, category_id: str) -> Term | None:
        return self._term(CATEGORY_ENDPOINT, category_id)

    def get_tag(self, tag_id: str) -> Term | None:
        return self._term(TAG_ENDPOINT, tag_id)

    def create_inquiry(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", INQUIRY_ENDPOINT, payload=payload)
