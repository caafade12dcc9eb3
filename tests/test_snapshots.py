"""Tests for page snapshots: URL normalization, element filtering and atomic replacement."""

from __future__ import annotations

import hashlib
from unittest.mock import patch

import pytest
import sqlalchemy.exc

from pricewatch.database.models import Website, WebsiteElement, WebsitePage
import pricewatch.snapshots.store as store_module
from pricewatch.snapshots.store import (
    SnapshotStore,
    extract_elements,
    filter_interactive_elements,
    normalize_url,
)


class TestNormalizeUrl:
    def test_strips_query_fragment_and_trailing_slash(self):
        result = normalize_url("https://Shop.example.de/produkte/tv-55/?ref=home#reviews")
        assert result.url == "https://shop.example.de/produkte/tv-55"
        assert result.domain == "shop.example.de"
        assert result.path == "/produkte/tv-55"

    def test_root_path_keeps_single_slash(self):
        assert normalize_url("https://shop.example.de").url == "https://shop.example.de/"
        assert normalize_url("https://shop.example.de/?q=1").url == "https://shop.example.de/"

    def test_collapses_repeated_trailing_slashes(self):
        assert normalize_url("https://shop.example.de/a/b//").path == "/a/b"

    @pytest.mark.parametrize(
        "raw",
        [
            "https://www.amazon.de/dp/B0ABCDEFGH/?th=1",
            "http://shop.example.de/",
            "https://shop.example.de/a/b/c#x",
            "https://shop.example.de:8443/p/1?x=y",
            "HTTPS://SHOP.EXAMPLE.DE/Mixed/Case/",
            "example.com/foo",
            "shop.example.de:8443/p/1?x=y",
        ],
    )
    def test_idempotent(self, raw):
        once = normalize_url(raw)
        assert normalize_url(once.url) == once

    def test_missing_scheme_defaults_to_https(self):
        result = normalize_url("Shop.Example.de/p/tv-55/?ref=1")
        assert result == ("https://shop.example.de/p/tv-55", "shop.example.de", "/p/tv-55")


class TestInteractiveFilter:
    def test_keeps_interactive_tags_roles_and_types(self):
        elements = [
            {"tag_name": "a", "selector": "a.home", "attributes": {}},
            {"tag_name": "div", "selector": "div.menu", "attributes": {"role": "MenuItem"}},
            {"tag_name": "div", "selector": "div.text", "attributes": {}},
            {"tag_name": "span", "selector": "span.click", "attributes": {"onclick": "go()"}},
            {"tag_name": "custom-input", "selector": "custom-input", "attributes": {"type": "search"}},
            {"tag_name": "div", "selector": "div.focus", "attributes": {"tabindex": "0"}},
        ]
        kept = [e["selector"] for e in filter_interactive_elements(elements)]
        assert kept == ["a.home", "div.menu", "span.click", "custom-input", "div.focus"]

    def test_first_selector_wins_and_empty_selectors_dropped(self):
        elements = [
            {"tag_name": "button", "selector": "#buy", "text_content": "first"},
            {"tag_name": "button", "selector": "#buy", "text_content": "second"},
            {"tag_name": "button", "selector": "", "text_content": "nameless"},
        ]
        kept = filter_interactive_elements(elements)
        assert len(kept) == 1
        assert kept[0]["text_content"] == "first"

    def test_extract_elements_from_html(self):
        html = (
            '<html><body><div id="main"><a href="/x">X</a><a href="/y">Y</a>'
            "<p>plain text</p><button>Buy</button></div></body></html>"
        )
        elements = extract_elements(html)
        selectors = [e["selector"] for e in elements]
        assert "#main > a:nth-of-type(1)" in selectors
        assert "#main > a:nth-of-type(2)" in selectors
        assert "#main > button" in selectors
        assert all(e["tag_name"] != "p" for e in elements)

    def test_selectors_built_only_for_kept_elements(self):
        rows = "".join(f"<div><p>Zeile {i}</p><span>Info</span></div>" for i in range(200))
        html = f'<html><body>{rows}<a href="/warenkorb">Warenkorb</a></body></html>'

        with patch("pricewatch.snapshots.store._css_selector", wraps=store_module._css_selector) as selector:
            elements = extract_elements(html)

        assert [e["tag_name"] for e in elements] == ["a"]
        assert selector.call_count == 1
        assert elements[0]["text_content"] == "Warenkorb"
        assert elements[0]["is_visible"] is True


class TestSnapshotStore:
    def test_first_snapshot_creates_website_and_page(self, db):
        html = "<html><body><a href='/a'>A</a></body></html>"
        snapshot = SnapshotStore(db).store_snapshot("https://shop.example.de/p/1?x=1", title="P1", html=html)

        assert snapshot.url == "https://shop.example.de/p/1"
        assert snapshot.scan_count == 1
        assert snapshot.content_hash == hashlib.sha256(html.encode("utf-8")).hexdigest()
        assert db.query(Website).count() == 1
        assert db.query(WebsitePage).one().title == "P1"

    def test_rescan_increments_count_and_replaces_elements(self, db):
        store = SnapshotStore(db)
        store.store_snapshot(
            "https://shop.example.de/p/1",
            elements=[
                {"tag_name": "a", "selector": "#a"},
                {"tag_name": "a", "selector": "#b"},
                {"tag_name": "a", "selector": "#c"},
            ],
        )
        snapshot = store.store_snapshot(
            "https://shop.example.de/p/1/",
            elements=[{"tag_name": "button", "selector": "#buy"}, {"tag_name": "a", "selector": "#a"}],
        )

        assert snapshot.scan_count == 2
        elements = db.query(WebsiteElement).order_by(WebsiteElement.order_index).all()
        assert [(e.selector, e.order_index) for e in elements] == [("#buy", 0), ("#a", 1)]

    def test_content_hash_kept_when_no_html(self, db):
        store = SnapshotStore(db)
        first = store.store_snapshot("https://shop.example.de/p/1", html="<html></html>")
        second = store.store_snapshot("https://shop.example.de/p/1", elements=[])
        assert second.content_hash == first.content_hash

    def test_url_without_scheme_keeps_domain(self, db):
        snapshot = SnapshotStore(db).store_snapshot("shop.example.de/p/1", elements=[])

        assert snapshot.domain == "shop.example.de"
        assert db.query(Website).one().domain == "shop.example.de"
        assert SnapshotStore(db).store_snapshot("https://shop.example.de/p/1", elements=[]).page_id == snapshot.page_id

    def test_pages_of_one_domain_share_website(self, db):
        store = SnapshotStore(db)
        a = store.store_snapshot("https://shop.example.de/p/1", elements=[])
        b = store.store_snapshot("https://shop.example.de/p/2", elements=[])
        assert a.website_id == b.website_id
        assert a.page_id != b.page_id

    def test_failed_replacement_keeps_previous_elements(self, db):
        store = SnapshotStore(db)
        store.store_snapshot("https://shop.example.de/p/1", elements=[{"tag_name": "a", "selector": "#a"}, {"tag_name": "a", "selector": "#b"}])

        error = sqlalchemy.exc.OperationalError("COMMIT", {}, Exception("disk full"))
        with patch.object(db, "commit", side_effect=error):
            with pytest.raises(sqlalchemy.exc.OperationalError):
                store.store_snapshot("https://shop.example.de/p/1", elements=[{"tag_name": "button", "selector": "#new"}])

        assert sorted(e.selector for e in db.query(WebsiteElement).all()) == ["#a", "#b"]
        assert db.query(WebsitePage).one().scan_count == 1

    def test_failed_first_snapshot_leaves_nothing(self, db):
        error = sqlalchemy.exc.OperationalError("COMMIT", {}, Exception("disk full"))
        with patch.object(db, "commit", side_effect=error):
            with pytest.raises(sqlalchemy.exc.OperationalError):
                SnapshotStore(db).store_snapshot("https://shop.example.de/p/1", elements=[{"tag_name": "a", "selector": "#a"}])

        assert db.query(WebsitePage).count() == 0
        assert db.query(Website).count() == 0
