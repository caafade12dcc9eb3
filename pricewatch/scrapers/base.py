# Defines the contract every shop adapter implements and the per-field
# extraction strategies the price scraper resolves from an adapter's configuration.

import abc
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

FIELDS = (
    "name", "price", "original_price", "availability", "stock_quantity", "brand",
    "model", "category", "ean", "asin", "image", "description",
)


class Page:
    """The loaded page as seen by extractors.

    Custom extractors receive this object. ``evaluate`` forwards to the browser
    session the page was loaded in.
    """

    def __init__(self, url: str, html: str, evaluator: Optional[Callable[..., Awaitable[Any]]] = None):
        self.url = url
        self.html = html
        self.soup = BeautifulSoup(html or "", "lxml")
        self._evaluator = evaluator

    def select_one(self, selector: str):
        return self.soup.select_one(selector)

    def text(self, selector: str) -> Optional[str]:
        """Stripped text of the first element matching any of the comma-separated selectors."""
        element = self.soup.select_one(selector)
        if element is None:
            return None
        text = element.get_text(" ", strip=True)
        return text or None

    async def evaluate(self, fn: Callable, *args) -> Any:
        if self._evaluator is None:
            return fn(self.soup, *args)
        return await self._evaluator(fn, *args)


@dataclass(frozen=True)
class Selector:
    """Extract a field with a CSS selector."""

    css: str


@dataclass(frozen=True)
class CustomFn:
    """Extract a field with a callable taking the Page; may be sync or async."""

    fn: Callable[[Page], Any]


ExtractionStrategy = Union[Selector, CustomFn]


@dataclass
class ScraperConfig:
    """Selectors, custom extractors and availability wording for one shop."""

    selectors: Dict[str, str] = field(default_factory=dict)
    custom_extractors: Dict[str, Callable[[Page], Any]] = field(default_factory=dict)
    availability_mapping: Dict[str, str] = field(default_factory=dict)
    currency: str = "EUR"

    def merge(self, other: Optional["ScraperConfig"]) -> "ScraperConfig":
        """Overlay ``other`` on this config; its entries win field by field."""
        if other is None:
            return self
        return replace(
            self,
            selectors={**self.selectors, **other.selectors},
            custom_extractors={**self.custom_extractors, **other.custom_extractors},
            availability_mapping={**self.availability_mapping, **other.availability_mapping},
            currency=other.currency or self.currency,
        )

    def strategy(self, field_name: str) -> Optional[ExtractionStrategy]:
        """Resolve how to extract a field. A custom extractor beats a selector."""
        if field_name in self.custom_extractors:
            return CustomFn(self.custom_extractors[field_name])
        if field_name in self.selectors:
            return Selector(self.selectors[field_name])
        return None


class ShopAdapter(abc.ABC):
    """Base class for shop-specific scraping configuration.

    An adapter names the domains it serves and supplies the selectors and
    custom extractors for its pages. Adapters never fetch pages themselves.
    """

    name: str = ""
    domains: Tuple[str, ...] = ()

    def can_handle(self, url: str) -> bool:
        host = (urlsplit(url).hostname or "").lower()
        return host in self.domains or host.removeprefix("www.") in self.domains

    @property
    @abc.abstractmethod
    def config(self) -> ScraperConfig:
        raise NotImplementedError("Concrete adapters must provide config")


class GenericAdapter(ShopAdapter):
    """Fallback configuration for shops without a dedicated adapter.

    Relies on schema.org microdata and common class names.
    """

    name = "generic"

    def can_handle(self, url: str) -> bool:
        return True

    @property
    def config(self) -> ScraperConfig:
        return ScraperConfig(
            selectors={
                "name": "h1, [itemprop='name'], .product-title, .product-name",
                "price": "[itemprop='price'], .price, .product-price, [data-price]",
                "original_price": ".old-price, .price-old, .was-price, del",
                "availability": "[itemprop='availability'], .availability, .stock",
                "brand": "[itemprop='brand']",
                "image": "[itemprop='image'], .product-image img, img",
                "description": "[itemprop='description'], .product-description",
            }
        )
