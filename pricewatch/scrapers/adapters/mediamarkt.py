import json
import logging
import re
from typing import Optional

from pricewatch.scrapers.base import Page, ScraperConfig, ShopAdapter

logger = logging.getLogger("scraper.mediamarkt")

EAN_PATTERN = re.compile(r"(\d{13})")


class MediaMarktAdapter(ShopAdapter):
    """Adapter for MediaMarkt shops, which expose most fields via data-test attributes."""

    name = "mediamarkt"
    domains = ("mediamarkt.de", "mediamarkt.at", "mediamarkt.ch", "mediamarkt.nl", "mediamarkt.be", "saturn.de")

    def can_handle(self, url: str) -> bool:
        lowered = url.lower()
        return "mediamarkt." in lowered or "saturn." in lowered

    @staticmethod
    def _ean(page: Page) -> Optional[str]:
        """EAN from JSON-LD, then the technical data list, then a meta tag."""
        for script in page.soup.find_all("script", type="application/ld+json"):
            try:
                data = json.loads(script.string or "")
            except ValueError:
                continue
            if isinstance(data, dict):
                value = data.get("gtin13") or data.get("ean")
                if value:
                    return str(value)

        for element in page.soup.select("[data-test*='product-detail'], .product-details li, .technical-data li"):
            text = element.get_text(" ").lower()
            if "ean" in text or "gtin" in text:
                match = EAN_PATTERN.search(text)
                if match:
                    return match.group(1)

        meta = page.select_one("meta[property='product:ean']")
        return meta.get("content") if meta is not None else None

    @staticmethod
    def _availability(page: Page) -> str:
        delivery = (page.text("[data-test='mms-delivery-info']") or "").lower()
        stock = (page.text("[data-test='mms-stock-info']") or "").lower()
        text = f"{delivery} {stock}"

        if "nicht verfügbar" in text or "ausverkauft" in text or "nicht lieferbar" in text:
            return "out_of_stock"
        if "vorbestell" in text:
            return "preorder"
        if "nur noch" in text or "wenige" in text:
            return "limited_stock"
        if "lieferbar" in text or "verfügbar" in text or "abholbereit" in text or "sofort" in text:
            return "in_stock"

        # A visible add-to-cart button is the last hint
        button = page.select_one("[data-test='mms-add-to-cart'], button[id*='add-to-cart']")
        if button is not None and not button.has_attr("disabled"):
            return "in_stock"
        return "unknown"

    @property
    def config(self) -> ScraperConfig:
        return ScraperConfig(
            selectors={
                "name": "h1[data-test='mms-product-title'], h1.product-title, h1",
                "price": "[data-test='mms-product-price'], [data-test='mms-price-wrapper'] [itemprop='price'], "
                         ".price [itemprop='price'], [itemprop='price'], .price",
                "original_price": "[data-test='mms-crossed-price'], .strikethrough-price",
                "brand": "[data-test='mms-brand'], .brand-name",
                "image": "[data-test='mms-gallery-main-image'] img, .product-image img",
                "description": "[data-test='mms-product-description'], .product-description",
            },
            custom_extractors={
                "ean": self._ean,
                "availability": self._availability,
            },
        )
