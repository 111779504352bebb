from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timezone
from xml.sax.saxutils import escape as xml_escape

from werkzeug.routing import Map

from insightbase.server.microcms import Column, MicroCMSClient, MicroCMSError, parse_timestamp

logger = logging.getLogger(__name__)

SITEMAP_NAMESPACE = "http://www.sitemaps.org/schemas/sitemap/0.9"

# Reachable, but not meant to be indexed.
EXCLUDED_PATHS = (
    "/inquiry/thanks",
    "/checkout/thanks-ga4",
    "/checkout/thanks-gad",
    "/checkout/thanks-set",
    "/column/preview",
)
SEO_ENDPOINTS = {"static", "sitemap_xml", "robots_txt"}


@dataclass
class SitemapEntry:
    path: str
    lastmod: str | None = None


def normalize_route(rule: str) -> str | None:
    if rule == "/api" or rule.startswith("/api/"):
        return None
    if "<" in rule or ">" in rule:
        return None
    route = rule.rstrip("/")
    return route or "/"


def static_routes(url_map: Map) -> list[str]:
    routes = set()
    for rule in url_map.iter_rules():
        if rule.endpoint.rsplit(".", 1)[-1] in SEO_ENDPOINTS or rule.arguments:
            continue
        if "GET" not in (rule.methods or ()):
            continue
        route = normalize_route(rule.rule)
        if route is None or route in EXCLUDED_PATHS:
            continue
        routes.add(route)
    return sorted(routes)


def format_lastmod(value: str | None) -> str | None:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def column_entries(columns: Iterable[Column]) -> list[SitemapEntry]:
    entries = []
    for column in columns:
        if not column.slug:
            continue
        entries.append(SitemapEntry(column.path, format_lastmod(column.updated_at or column.published_at)))
    return entries


def collect_entries(url_map: Map, cms: MicroCMSClient) -> list[SitemapEntry]:
    entries = [SitemapEntry(route) for route in static_routes(url_map)]
    try:
        entries.extend(column_entries(cms.get_published_columns()))
    except MicroCMSError:
        logger.exception("Failed to load columns for the sitemap; serving static routes only.")
    return entries


def build_sitemap_xml(site_url: str, entries: Iterable[SitemapEntry]) -> str:
    """Serialize entries into a sitemap, keeping the first entry for each path."""
    seen = set()
    urls = []
    for entry in entries:
        if entry.path in seen:
            continue
        seen.add(entry.path)
        url = f"<url><loc>{xml_escape(site_url + entry.path)}</loc>"
        if entry.lastmod:
            url += f"<lastmod>{entry.lastmod}</lastmod>"
        urls.append(url + "</url>")

    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="{SITEMAP_NAMESPACE}">' + "".join(urls) + "</urlset>"
    )


def build_robots_txt(site_url: str) -> str:
    lines = [
        "User-agent: *",
        "Allow: /",
        *(f"Disallow: {path}" for path in EXCLUDED_PATHS),
        "Disallow: /*?draftKey=",
        "Disallow: /*&draftKey=",
        f"Sitemap: {site_url}/sitemap.xml",
    ]
    return "\n".join(lines) + "\n"
