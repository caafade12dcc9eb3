"""Tests for field extraction, value parsing and adapter selection."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import product_page
from pricewatch.schemas import ScrapedData
from pricewatch.scrapers.adapters.amazon import AmazonAdapter, clean_brand, extract_asin
from pricewatch.scrapers.adapters.mediamarkt import MediaMarktAdapter
from pricewatch.scrapers.base import Page, ScraperConfig
from pricewatch.scrapers.price_scraper import (
    AdapterRegistry,
    PriceScraper,
    calculate_discount,
    default_registry,
    detect_currency,
    parse_availability,
    parse_price,
    parse_stock_quantity,
    validate_data,
)


def scrape(url, html, custom_config=None):
    return asyncio.run(PriceScraper().scrape(Page(url, html), custom_config))


class TestParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("1.299,99 €", Decimal("1299.99")),
            ("$1,299.99", Decimal("1299.99")),
            ("19,99", Decimal("19.99")),
            ("EUR 5", Decimal("5")),
            ("2.499.000", Decimal("2499000")),
            ("-5,00", Decimal("-5.00")),
            (12.5, Decimal("12.5")),
            ("n/a", None),
            (None, None),
        ],
    )
    def test_parse_price(self, text, expected):
        assert parse_price(text) == expected

    def test_detect_currency(self):
        assert detect_currency("£10.00") == "GBP"
        assert detect_currency("19,99 €") == "EUR"
        assert detect_currency("CHF 20") == "CHF"
        assert detect_currency(None, default="USD") == "USD"

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Derzeit nicht verfügbar", "out_of_stock"),
            ("Ausverkauft", "out_of_stock"),
            ("Nicht auf Lager", "out_of_stock"),
            ("Derzeit nicht auf Lager.", "out_of_stock"),
            ("Not available", "out_of_stock"),
            ("Unavailable", "out_of_stock"),
            ("Artikel ist nicht mehr verfügbar", "out_of_stock"),
            ("Derzeit leider nicht sofort lieferbar", "out_of_stock"),
            ("Vorbestellung möglich", "preorder"),
            ("Nur noch 3 auf Lager", "limited_stock"),
            ("Auf Lager", "in_stock"),
            ("In stock", "in_stock"),
            ("Bitte anfragen", "unknown"),
            ("", "unknown"),
        ],
    )
    def test_parse_availability(self, text, expected):
        assert parse_availability(text) == expected

    def test_shop_mapping_wins(self):
        assert parse_availability("Auf Lager in 2 Wochen", {"in 2 wochen": "preorder"}) == "preorder"

    def test_stock_quantity(self):
        assert parse_stock_quantity("Nur noch 3 auf Lager") == 3
        assert parse_stock_quantity("Only 12 left in stock") == 12
        assert parse_stock_quantity("Auf Lager") is None

    def test_discount(self):
        assert calculate_discount(Decimal("80"), Decimal("100")) == Decimal("20.00")
        assert calculate_discount(Decimal("100"), Decimal("80")) is None
        assert calculate_discount(Decimal("100"), None) is None


class TestValidation:
    def test_complete_data_is_valid(self):
        result = validate_data(ScrapedData(url="https://x.de/p", name="TV", price=Decimal("399")))
        assert result.is_valid is True
        assert result.errors == []

    def test_missing_fields(self):
        result = validate_data(ScrapedData(url="https://x.de/p"))
        assert result.is_valid is False
        assert result.errors == ["Product name is missing", "Price is missing"]

    def test_negative_price(self):
        result = validate_data(ScrapedData(url="https://x.de/p", name="TV", price=Decimal("-1")))
        assert result.errors == ["Price cannot be negative"]

    def test_zero_price_is_only_a_warning(self):
        result = validate_data(ScrapedData(url="https://x.de/p", name="TV", price=Decimal("0")))
        assert result.is_valid is True
        assert result.warnings


class TestAdapterRegistry:
    def test_lookup_order(self):
        registry = default_registry()
        assert registry.get_adapter("https://amazon.de/dp/B0ABCDEFGH").name == "amazon"
        assert registry.get_adapter("https://www.amazon.de/dp/B0ABCDEFGH").name == "amazon"
        assert registry.get_adapter("https://smile.amazon.co.uk/dp/B0ABCDEFGH").name == "amazon"
        assert registry.get_adapter("https://www.mediamarkt.de/de/product/1.html").name == "mediamarkt"

    def test_unknown_shop_falls_back_to_generic(self):
        registry = default_registry()
        assert registry.find("https://shop.example.de/p/1") is None
        assert registry.get_adapter("https://shop.example.de/p/1").name == "generic"

    def test_register(self):
        registry = AdapterRegistry()
        assert registry.adapters == []
        registry.register(MediaMarktAdapter())
        assert [a.name for a in registry.adapters] == ["mediamarkt"]


class TestPriceScraper:
    def test_generic_page(self):
        html = product_page("Samsung Galaxy S23 128GB Schwarz", "849,00 €")
        result = scrape("https://shop.example.de/p/1", html)

        data = result.data
        assert result.adapter is None
        assert result.field_errors == {}
        assert data.name == "Samsung Galaxy S23 128GB Schwarz"
        assert data.price == Decimal("849.00")
        assert data.currency == "EUR"
        assert data.availability == "in_stock"
        assert data.brand == "Samsung"
        assert data.image_url == "https://shop.example.de/images/product.jpg"
        assert data.metadata == {"adapter": "generic"}

    def test_custom_extractor_beats_selector(self):
        html = product_page("Samsung Galaxy S23", "849,00 €")
        config = ScraperConfig(custom_extractors={"price": lambda page: "799,00 €"})
        assert scrape("https://shop.example.de/p/1", html, config).data.price == Decimal("799.00")

    def test_failing_extractor_costs_only_its_field(self):
        def broken(page):
            raise RuntimeError("boom")

        html = product_page("Samsung Galaxy S23", "849,00 €")
        result = scrape("https://shop.example.de/p/1", html, ScraperConfig(custom_extractors={"brand": broken}))

        assert result.data.brand is None
        assert result.data.price == Decimal("849.00")
        assert result.field_errors == {"brand": "RuntimeError: boom"}

    def test_async_extractor_using_page_evaluate(self):
        async def title(page):
            return await page.evaluate(lambda soup: soup.title.get_text(strip=True).upper())

        html = product_page("Galaxy S23", "849,00 €")
        result = scrape("https://shop.example.de/p/1", html, ScraperConfig(custom_extractors={"name": title}))
        assert result.data.name == "GALAXY S23"

    def test_original_price_and_discount(self):
        html = product_page("TV", "80,00 €", extra='<del>100,00 €</del>')
        data = scrape("https://shop.example.de/p/1", html).data
        assert data.original_price == Decimal("100.00")
        assert data.discount_percentage == Decimal("20.00")

    def test_ean_from_json_ld(self):
        extra = '<script type="application/ld+json">{"@type": "Product", "gtin13": "4006381333931"}</script>'
        data = scrape("https://shop.example.de/p/1", product_page("Stift", "2,50 €", extra=extra)).data
        assert data.ean == "4006381333931"

    def test_stock_quantity_from_availability_text(self):
        html = product_page("TV", "80,00 €", availability="Nur noch 2 auf Lager")
        data = scrape("https://shop.example.de/p/1", html).data
        assert data.availability == "limited_stock"
        assert data.stock_quantity == 2

    def test_missing_price(self):
        data = scrape("https://shop.example.de/p/1", product_page("TV", None)).data
        assert data.price is None


AMAZON_PAGE = """
<html><head><title>Amazon.de</title></head><body>
<span id="productTitle"> Samsung Galaxy S23 128GB Phantom Black </span>
<a id="bylineInfo">Besuche den Samsung-Store</a>
<div class="a-price"><span class="a-offscreen">799,00 €</span></div>
<div class="a-price a-text-price"><span class="a-offscreen">949,00 €</span></div>
<div id="availability"><span>Derzeit nicht verfügbar.</span></div>
<img id="landingImage" data-a-dynamic-image='{"https://m.media-amazon.com/images/I/s23.jpg": [500, 500]}'>
</body></html>
"""


class TestAmazonAdapter:
    def test_extract_asin(self):
        assert extract_asin("https://www.amazon.de/Samsung-Galaxy/dp/B0BSHF7WHW/ref=sr_1_1") == "B0BSHF7WHW"
        assert extract_asin("https://www.amazon.de/gp/product/B0BSHF7WHW") == "B0BSHF7WHW"
        assert extract_asin("https://www.amazon.de/s?k=galaxy") is None

    def test_clean_brand(self):
        assert clean_brand("Visit the Sony Store") == "Sony"
        assert clean_brand("Besuche den Samsung-Store") == "Samsung"
        assert clean_brand("Marke: Bosch") == "Bosch"
        assert clean_brand(" Apple ") == "Apple"

    def test_product_page(self):
        result = scrape("https://www.amazon.de/Samsung-Galaxy/dp/B0BSHF7WHW", AMAZON_PAGE)
        data = result.data

        assert result.adapter == "amazon"
        assert data.name == "Samsung Galaxy S23 128GB Phantom Black"
        assert data.asin == "B0BSHF7WHW"
        assert data.brand == "Samsung"
        assert data.price == Decimal("799.00")
        assert data.original_price == Decimal("949.00")
        assert data.availability == "out_of_stock"
        assert data.image_url == "https://m.media-amazon.com/images/I/s23.jpg"
        assert data.metadata == {"adapter": "amazon"}

    def test_captcha_page_yields_no_name(self):
        html = "<html><body><form>Enter the characters you see below. captcha</form></body></html>"
        assert scrape("https://www.amazon.de/dp/B0BSHF7WHW", html).data.name is None

    def test_asin_from_hidden_field(self):
        html = '<html><body><input type="hidden" id="ASIN" value="B0CHX1W1XY"></body></html>'
        assert AmazonAdapter._asin(Page("https://www.amazon.de/some-product", html)) == "B0CHX1W1XY"


class TestMediaMarktAdapter:
    def test_availability_and_ean(self):
        html = """
        <html><body>
        <h1 data-test="mms-product-title">Bosch Serie 6 Waschmaschine</h1>
        <span data-test="mms-product-price">649,-</span>
        <div data-test="mms-delivery-info">Lieferung in 2-3 Werktagen, sofort lieferbar</div>
        <ul class="technical-data"><li>EAN: 4242005212345</li></ul>
        </body></html>
        """
        data = scrape("https://www.mediamarkt.de/de/product/_bosch-1.html", html).data

        assert data.name == "Bosch Serie 6 Waschmaschine"
        assert data.price == Decimal("649")
        assert data.availability == "in_stock"
        assert data.ean == "4242005212345"

    def test_disabled_cart_button_is_unknown(self):
        html = '<html><body><button data-test="mms-add-to-cart" disabled>Kaufen</button></body></html>'
        assert MediaMarktAdapter._availability(Page("https://www.mediamarkt.de/p", html)) == "unknown"
