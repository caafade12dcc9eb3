import logging
import re
from typing import Optional

from pricewatch.scrapers.base import Page, ScraperConfig, ShopAdapter

logger = logging.getLogger("scraper.amazon")

ASIN_PATTERNS = (
    r"/dp/([A-Z0-9]{10})",
    r"/gp/product/([A-Z0-9]{10})",
    r"/ASIN/([A-Z0-9]{10})",
)

# "Visit the Samsung Store", "Besuche den Samsung-Store", "Marke: Samsung"
BRAND_PATTERNS = (
    re.compile(r"^visit the (.+?) store$", re.IGNORECASE),
    re.compile(r"^besuche den (.+?)-store$", re.IGNORECASE),
    re.compile(r"^(?:marke|brand)\s*:\s*(.+)$", re.IGNORECASE),
)


def extract_asin(url: str) -> Optional[str]:
    """Extract the Amazon product ID (ASIN) from a product URL."""
    for pattern in ASIN_PATTERNS:
        match = re.search(pattern, url)
        if match:
            return match.group(1)
    return None


def clean_brand(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    text = text.strip()
    for pattern in BRAND_PATTERNS:
        match = pattern.match(text)
        if match:
            return match.group(1).strip()
    return text


class AmazonAdapter(ShopAdapter):
    """Adapter for Amazon product pages across the European and US stores."""

    name = "amazon"
    domains = (
        "amazon.de", "amazon.com", "amazon.co.uk", "amazon.fr",
        "amazon.it", "amazon.es", "amazon.nl",
    )

    def can_handle(self, url: str) -> bool:
        return "amazon." in url.lower()

    @staticmethod
    def _asin(page: Page) -> Optional[str]:
        asin = extract_asin(page.url)
        if asin:
            return asin
        # Some listings only carry the ASIN in a hidden form field
        field = page.select_one("input#ASIN, input[name='ASIN']")
        return field.get("value") if field is not None else None

    @staticmethod
    def _brand(page: Page) -> Optional[str]:
        return clean_brand(page.text("#bylineInfo"))

    @staticmethod
    def _name(page: Page) -> Optional[str]:
        text = page.soup.get_text(" ").lower()
        if "captcha" in text and page.select_one("#productTitle") is None:
            logger.warning("Detected CAPTCHA or robot check page at %s", page.url)
            return None
        return page.text("#productTitle, #title")

    @property
    def config(self) -> ScraperConfig:
        return ScraperConfig(
            selectors={
                "price": ".a-price .a-offscreen, #priceblock_ourprice, #priceblock_dealprice, .a-price-whole",
                "original_price": ".a-price.a-text-price .a-offscreen, #priceblock_saleprice",
                "availability": "#availability span, #availability",
                "image": "#landingImage, #imgBlkFront",
                "description": "#feature-bullets, #productDescription",
                "category": "#wayfinding-breadcrumbs_feature_div li:last-child a",
            },
            custom_extractors={
                "name": self._name,
                "asin": self._asin,
                "brand": self._brand,
            },
            availability_mapping={
                "derzeit nicht verfügbar": "out_of_stock",
                "currently unavailable": "out_of_stock",
                "nur noch": "limited_stock",
            },
        )
