"""Tests for sitemap.xml and robots.txt."""

from __future__ import annotations

from xml.etree import ElementTree

from conftest import FakeCMS
from insightbase.server.app import create_app
from insightbase.server.microcms import Column
from insightbase.server.seo import (
    SitemapEntry,
    build_robots_txt,
    build_sitemap_xml,
    column_entries,
    normalize_route,
    static_routes,
)

NS = {"sm": "http://www.sitemaps.org/schemas/sitemap/0.9"}


def _locs(xml_text):
    root = ElementTree.fromstring(xml_text)
    return [loc.text for loc in root.findall("sm:url/sm:loc", NS)]


def test_normalize_route():
    assert normalize_route("/") == "/"
    assert normalize_route("/service/") == "/service"
    assert normalize_route("/api/inquiry") is None
    assert normalize_route("/column/<slug>") is None


def test_static_routes_exclude_api_params_and_thanks_pages(app):
    routes = static_routes(app.url_map)

    assert routes == sorted(routes)
    assert {"/", "/column", "/inquiry", "/service", "/price", "/company", "/privacy"} <= set(routes)
    for excluded in (
        "/inquiry/thanks",
        "/checkout/thanks-ga4",
        "/checkout/thanks-gad",
        "/checkout/thanks-set",
        "/column/preview",
        "/sitemap.xml",
        "/robots.txt",
    ):
        assert excluded not in routes
    assert not any(route.startswith("/api") or "<" in route for route in routes)


def test_column_entries_use_updated_then_published():
    columns = [
        Column(id="1", title="a", content="", slug="a", updated_at="2024-05-03T09:30:00.000Z"),
        Column(id="2", title="b", content="", slug="b", published_at="2024-05-01T00:00:00+09:00"),
        Column(id="3", title="c", content="", slug=""),
    ]
    assert column_entries(columns) == [
        SitemapEntry("/column/a", "2024-05-03T09:30:00Z"),
        SitemapEntry("/column/b", "2024-04-30T15:00:00Z"),
    ]


def test_build_sitemap_dedupes_first_wins():
    xml_text = build_sitemap_xml(
        "https://insightbase.jp",
        [
            SitemapEntry("/"),
            SitemapEntry("/column/a", "2024-05-03T09:30:00Z"),
            SitemapEntry("/column/a", "2030-01-01T00:00:00Z"),
            SitemapEntry("/q?a=1&b=2"),
        ],
    )
    assert xml_text.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert _locs(xml_text) == [
        "https://insightbase.jp/",
        "https://insightbase.jp/column/a",
        "https://insightbase.jp/q?a=1&b=2",
    ]
    assert "2030-01-01" not in xml_text
    assert "<lastmod>2024-05-03T09:30:00Z</lastmod>" in xml_text


def test_sitemap_endpoint_includes_columns(client):
    response = client.get("/sitemap.xml")

    assert response.status_code == 200
    assert response.mimetype == "application/xml"
    locs = _locs(response.get_data(as_text=True))
    assert "https://insightbase.jp/" in locs
    assert "https://insightbase.jp/column/ga4-exploration" in locs
    assert "https://insightbase.jp/inquiry/thanks" not in locs


def test_sitemap_degrades_to_static_routes_when_cms_fails(settings):
    app = create_app(settings, cms=FakeCMS(fail=True), config={"TESTING": True})
    response = app.test_client().get("/sitemap.xml")

    assert response.status_code == 200
    locs = _locs(response.get_data(as_text=True))
    assert "https://insightbase.jp/service" in locs
    assert not any("/column/" in loc for loc in locs)


def test_robots_txt(client):
    response = client.get("/robots.txt")
    body = response.get_data(as_text=True)

    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert body.startswith("User-agent: *\nAllow: /\n")
    assert "Disallow: /inquiry/thanks" in body
    assert "Disallow: /column/preview" in body
    assert "Disallow: /*?draftKey=" in body
    assert body.rstrip().endswith("Sitemap: https://insightbase.jp/sitemap.xml")


def test_build_robots_txt_uses_site_url():
    assert "Sitemap: https://staging.insightbase.jp/sitemap.xml" in build_robots_txt("https://staging.insightbase.jp")
