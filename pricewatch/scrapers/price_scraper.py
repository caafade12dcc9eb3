"""Field extraction from loaded product pages.

Picks the shop adapter for a URL, resolves each field to a custom extractor or a
CSS selector, and normalizes the raw values (prices, availability, images,
identifiers). A failing field degrades to None and is reported in
``field_errors``; it never aborts the scrape.
"""

import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

from pricewatch.database.models import Availability
from pricewatch.schemas import ScrapedData, ValidationResult
from pricewatch.scrapers.base import FIELDS, CustomFn, GenericAdapter, Page, ScraperConfig, Selector, ShopAdapter

logger = logging.getLogger("pricewatch.scraper")

# Checked in this order: negative phrases contain the positive words
AVAILABILITY_KEYWORDS = (
    (Availability.OUT_OF_STOCK, (
        "nicht verfügbar", "nicht mehr verfügbar", "nicht lieferbar", "nicht auf lager", "ausverkauft",
        "out of stock", "not in stock", "sold out", "outofstock", "not available", "unavailable",
    )),
    (Availability.PREORDER, ("vorbestellung", "pre-order", "preorder")),
    (Availability.LIMITED_STOCK, ("wenige", "begrenzt", "limited", "only", "few", "nur noch")),
    (Availability.IN_STOCK, ("auf lager", "verfügbar", "in stock", "instock", "available", "lieferbar")),
)

# "Derzeit nicht mehr auf Lager" and the like
NEGATION_PATTERN = re.compile(r"\b(?:nicht|not|kein|keine|no longer)\b")

IMAGE_ATTRIBUTES = ("src", "data-old-hires", "data-default-src", "data-src", "data-lazy-src", "data-hires")

CURRENCY_SYMBOLS = {"€": "EUR", "£": "GBP", "$": "USD"}

STOCK_QUANTITY_PATTERN = re.compile(r"(?:nur noch|only)\s*(\d+)", re.IGNORECASE)
EAN_TEXT_PATTERN = re.compile(r"(?:ean|gtin)[^\d]{0,20}(\d{13})\b", re.IGNORECASE)

SUSPICIOUS_PRICE = Decimal("0.01")


def parse_price(text) -> Optional[Decimal]:
    """Parse a price string in either decimal convention.

    When both "," and "." occur, whichever appears last is the decimal
    separator ("1.299,99" and "1,299.99" both give 1299.99). A lone comma is a
    decimal comma.
    """
    if text is None:
        return None
    if isinstance(text, (int, float, Decimal)):
        return Decimal(str(text))

    clean = re.sub(r"EUR|USD|GBP", "", str(text), flags=re.IGNORECASE)
    clean = re.sub(r"[^\d,.\-]", "", clean)
    negative = clean.startswith("-")
    clean = clean.replace("-", "").rstrip(".,")
    if not clean or not any(c.isdigit() for c in clean):
        return None

    if "," in clean and "." in clean:
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    elif "," in clean:
        if clean.count(",") > 1:
            clean = clean.replace(",", "")
        else:
            clean = clean.replace(",", ".")
    elif clean.count(".") > 1:
        clean = clean.replace(".", "")

    try:
        value = Decimal(clean)
    except InvalidOperation:
        logger.warning("Could not parse price: %s", text)
        return None
    return -value if negative else value


def detect_currency(text: Optional[str], default: str = "EUR") -> str:
    if text:
        for symbol, code in CURRENCY_SYMBOLS.items():
            if symbol in text:
                return code
        for code in ("EUR", "GBP", "USD", "CHF"):
            if code in text.upper():
                return code
    return default


def parse_availability(text: Optional[str], mapping: Optional[Dict[str, str]] = None) -> str:
    """Map availability wording to an Availability value; shop mapping first."""
    if not text:
        return Availability.UNKNOWN.value
    lowered = text.lower()

    for phrase, status in (mapping or {}).items():
        if phrase.lower() in lowered:
            return status

    for status, keywords in AVAILABILITY_KEYWORDS:
        for keyword in keywords:
            index = lowered.find(keyword)
            if index == -1:
                continue
            if status == Availability.IN_STOCK and NEGATION_PATTERN.search(lowered[max(0, index - 25):index]):
                return Availability.OUT_OF_STOCK.value
            return status.value
    return Availability.UNKNOWN.value


def parse_stock_quantity(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = STOCK_QUANTITY_PATTERN.search(text)
    return int(match.group(1)) if match else None


def calculate_discount(price: Optional[Decimal], original_price: Optional[Decimal]) -> Optional[Decimal]:
    """Discount in percent, only when the original price is above the price."""
    if price is None or original_price is None or original_price <= price or original_price <= 0:
        return None
    return ((original_price - price) / original_price * 100).quantize(Decimal("0.01"))


def image_url_from_element(element, base_url: str) -> Optional[str]:
    if element is None:
        return None
    if element.name != "img":
        nested = element.find("img")
        if nested is not None:
            element = nested
    for attribute in IMAGE_ATTRIBUTES:
        value = element.get(attribute)
        if value:
            return urljoin(base_url, value)

    # Amazon keeps its image variants in a JSON map of url -> dimensions
    dynamic = element.get("data-a-dynamic-image")
    if dynamic:
        try:
            urls = list(json.loads(dynamic).keys())
        except ValueError:
            urls = []
        if urls:
            return urls[0]

    content = element.get("content")
    return urljoin(base_url, content) if content else None


def extract_ean_from_page(page: Page) -> Optional[str]:
    """Find a 13-digit EAN in JSON-LD product data or near an EAN/GTIN label."""
    for script in page.soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue
        for item in data if isinstance(data, list) else [data]:
            if isinstance(item, dict) and item.get("gtin13"):
                return str(item["gtin13"])

    match = EAN_TEXT_PATTERN.search(page.soup.get_text(" "))
    return match.group(1) if match else None


def validate_data(data: ScrapedData) -> ValidationResult:
    """Check required fields. Failures are reported, not raised."""
    errors = []
    warnings = []
    if not data.name:
        errors.append("Product name is missing")
    if data.price is None:
        errors.append("Price is missing")
    elif data.price < 0:
        errors.append("Price cannot be negative")
    elif data.price < SUSPICIOUS_PRICE:
        warnings.append("Price suspiciously low (possible scraping error)")
    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


class AdapterRegistry:
    """Keeps shop adapters and picks one for a URL.

    Lookup order: exact hostname, hostname without "www.", then the first
    adapter whose can_handle() accepts the URL. Without a match the generic
    adapter is used.
    """

    def __init__(self, adapters: Optional[List[ShopAdapter]] = None):
        self._adapters: List[ShopAdapter] = []
        self._by_domain: Dict[str, ShopAdapter] = {}
        self.generic = GenericAdapter()
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ShopAdapter):
        self._adapters.append(adapter)
        for domain in adapter.domains:
            self._by_domain[domain.lower()] = adapter

    @property
    def adapters(self) -> List[ShopAdapter]:
        return list(self._adapters)

    def find(self, url: str) -> Optional[ShopAdapter]:
        host = (urlsplit(url).hostname or "").lower()
        if host in self._by_domain:
            return self._by_domain[host]
        stripped = host.removeprefix("www.")
        if stripped in self._by_domain:
            return self._by_domain[stripped]
        for adapter in self._adapters:
            if adapter.can_handle(url):
                return adapter
        return None

    def get_adapter(self, url: str) -> ShopAdapter:
        return self.find(url) or self.generic


def default_registry() -> AdapterRegistry:
    from pricewatch.scrapers.adapters.amazon import AmazonAdapter
    from pricewatch.scrapers.adapters.mediamarkt import MediaMarktAdapter

    return AdapterRegistry([AmazonAdapter(), MediaMarktAdapter()])


@dataclass
class ExtractionResult:
    data: ScrapedData
    adapter: Optional[str]
    field_errors: Dict[str, str] = field(default_factory=dict)


class PriceScraper:
    """Extracts a ScrapedData record from a loaded page."""

    def __init__(self, registry: Optional[AdapterRegistry] = None):
        self.registry = registry or default_registry()

    async def _run(self, page: Page, config: ScraperConfig, field_name: str, errors: Dict[str, str]) -> Any:
        """Resolve one field; custom extractors win over selectors."""
        strategy = config.strategy(field_name)
        if strategy is None:
            return None
        try:
            if isinstance(strategy, CustomFn):
                value = strategy.fn(page)
                if inspect.isawaitable(value):
                    value = await value
                return value
            if isinstance(strategy, Selector):
                element = page.select_one(strategy.css)
                if element is None:
                    return None
                if field_name == "image":
                    return image_url_from_element(element, page.url)
                content = element.get("content")
                if content and field_name in ("price", "original_price", "availability"):
                    return content
                return element.get_text(" ", strip=True) or None
        except Exception as e:  # pylint: disable=broad-exception-caught
            # A broken extractor only costs its own field
            errors[field_name] = f"{type(e).__name__}: {e}"
            logger.warning("Extractor for %s failed on %s: %s", field_name, page.url, e)
        return None

    async def scrape(self, page: Page, custom_config: Optional[ScraperConfig] = None) -> ExtractionResult:
        adapter = self.registry.find(page.url)
        base = adapter.config if adapter else self.registry.generic.config
        config = base.merge(custom_config)
        errors: Dict[str, str] = {}

        raw = {}
        for field_name in FIELDS:
            raw[field_name] = await self._run(page, config, field_name, errors)

        price_text = raw["price"]
        price = parse_price(price_text)
        original_price = parse_price(raw["original_price"])

        availability_raw = raw["availability"]
        if availability_raw in {a.value for a in Availability}:
            availability = availability_raw
        else:
            availability = parse_availability(availability_raw, config.availability_mapping)

        stock_quantity = raw["stock_quantity"]
        if isinstance(stock_quantity, str):
            stock_quantity = int(stock_quantity) if stock_quantity.strip().isdigit() else parse_stock_quantity(stock_quantity)
        elif stock_quantity is None:
            stock_quantity = parse_stock_quantity(availability_raw)

        ean = raw["ean"] or extract_ean_from_page(page)
        description = raw["description"]
        if description and len(description) > 5000:
            description = description[:5000]

        data = ScrapedData(
            name=raw["name"],
            price=price,
            currency=detect_currency(price_text if isinstance(price_text, str) else None, config.currency),
            original_price=original_price,
            discount_percentage=calculate_discount(price, original_price),
            availability=availability,
            stock_quantity=stock_quantity,
            brand=raw["brand"],
            model=raw["model"],
            category=raw["category"],
            ean=str(ean) if ean else None,
            asin=raw["asin"],
            image_url=raw["image"],
            description=description,
            url=page.url,
            metadata={"adapter": adapter.name if adapter else GenericAdapter.name},
        )
        return ExtractionResult(data=data, adapter=adapter.name if adapter else None, field_errors=errors)
