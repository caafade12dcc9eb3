"""Product identity resolution.

Decides whether a scraped page is a product we already know, and groups products
from different shops under a canonical MergedProduct. Resolution order: the page's
existing ProductSource, then EAN, then ASIN, then the fuzzy matcher under a
threshold that depends on whether the candidate is sold by the same shop.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from pricewatch.database.models import MergedProduct, Product, ProductSource, Website, WebsitePage
from pricewatch.matching.fuzzy import ProductMatcher
from pricewatch.schemas import MatchCandidate, ProductData, ScrapedData

logger = logging.getLogger("pricewatch.identity")

UNKNOWN_PRODUCT_NAME = "Unknown Product"


def _most_frequent(values: List[Optional[str]]) -> Optional[str]:
    present = [v for v in values if v]
    if not present:
        return None
    # most_common keeps first-seen order among equal counts
    return Counter(present).most_common(1)[0][0]


def _longest(values: List[Optional[str]]) -> Optional[str]:
    longest = None
    for value in values:
        if value and (longest is None or len(value) > len(longest)):
            longest = value
    return longest


def _first(values: List[Optional[str]]) -> Optional[str]:
    return next((v for v in values if v), None)


def quality_score(fields: Dict[str, Any]) -> float:
    """Weighted completeness of an aggregated product, capped at 1."""
    score = 0.0
    if fields.get("ean"):
        score += 0.3
    if fields.get("asin"):
        score += 0.2
    if fields.get("brand"):
        score += 0.1
    if fields.get("model"):
        score += 0.1
    if fields.get("description") and len(fields["description"]) > 100:
        score += 0.15
    if fields.get("images"):
        score += 0.1
    if fields.get("category"):
        score += 0.05
    return round(min(1.0, score), 4)


def aggregate_products(products: List[Product]) -> Dict[str, Any]:
    """Combine the fields of all products linked to one merged product.

    The result only depends on the products and their order, so re-running it
    after every merge is safe.
    """
    images = []
    for product in products:
        if product.image_url and product.image_url not in images:
            images.append(product.image_url)

    metadata: Dict[str, Any] = {}
    for product in products:
        metadata.update(product.extra_data or {})

    fields = {
        "name": _longest([p.name for p in products]) or UNKNOWN_PRODUCT_NAME,
        "brand": _most_frequent([p.brand for p in products]),
        "model": _most_frequent([p.model for p in products]),
        "category": _first([p.category for p in products]),
        "ean": _first([p.ean for p in products]),
        "asin": _first([p.asin for p in products]),
        "description": _longest([p.description for p in products]),
        "images": images,
        "image_url": images[0] if images else None,
        "extra_data": metadata,
        "source_count": len(products),
    }
    fields["data_quality_score"] = quality_score(fields)
    return fields


class IdentityResolver:
    """Finds or creates Products and their MergedProduct."""

    def __init__(self, db: Session, matcher: ProductMatcher, settings: Optional[Settings] = None):
        self.db = db
        self.matcher = matcher
        self.settings = settings or get_settings()

    # Product and source

    def find_existing_product(self, page_id: str, ean: Optional[str] = None, asin: Optional[str] = None) -> Optional[Product]:
        """Look up a product by the page it was scraped from, then by EAN, then ASIN."""
        source = self.db.query(ProductSource).filter(ProductSource.page_id == page_id).first()
        if source is not None:
            return source.product

        if ean:
            product = self.db.query(Product).filter(Product.ean == ean).order_by(Product.created_at).first()
            if product is not None:
                return product

        if asin:
            return self.db.query(Product).filter(Product.asin == asin).order_by(Product.created_at).first()

        return None

    def find_or_create_product(
        self,
        page_id: str,
        scraped: ScrapedData,
        product_data: Optional[ProductData] = None,
    ) -> Product:
        product_data = product_data or ProductData()
        ean = scraped.ean or product_data.ean
        asin = scraped.asin or product_data.asin

        product = self.find_existing_product(page_id, ean, asin)
        if product is not None:
            return product

        metadata = dict(product_data.metadata)
        metadata.update(scraped.metadata)
        product = Product(
            name=scraped.name or product_data.name or UNKNOWN_PRODUCT_NAME,
            brand=scraped.brand or product_data.brand,
            model=scraped.model or product_data.model,
            category=scraped.category or product_data.category,
            ean=ean,
            asin=asin,
            description=scraped.description or product_data.description,
            image_url=scraped.image_url or product_data.image_url,
            extra_data=metadata,
        )
        self.db.add(product)
        self.db.commit()
        self.db.refresh(product)
        logger.info("Created product %s (%s)", product.id, product.name)
        return product

    def ensure_source(self, product_id: str, page_id: str) -> ProductSource:
        """Create the product's source for a page, or reactivate and stamp it."""
        source = self.db.query(ProductSource).filter(ProductSource.page_id == page_id).first()
        if source is None:
            source = ProductSource(product_id=product_id, page_id=page_id)
            self.db.add(source)
        source.is_active = True
        source.last_scraped_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(source)
        return source

    def apply_scraped_updates(
        self,
        product: Product,
        scraped: ScrapedData,
        product_data: Optional[ProductData] = None,
    ) -> bool:
        """Fill gaps in a known product from a fresh scrape.

        Identifiers, brand, model and description are only filled when empty.
        The image follows the page; the category follows caller-supplied data.

        Returns:
            True when the product row was modified
        """
        product_data = product_data or ProductData()
        changed = False

        for field in ("ean", "asin", "brand", "model", "description"):
            value = getattr(scraped, field)
            if value and not getattr(product, field):
                setattr(product, field, value)
                changed = True

        if scraped.image_url and scraped.image_url != product.image_url:
            product.image_url = scraped.image_url
            changed = True

        if product_data.category and product_data.category != product.category:
            product.category = product_data.category
            changed = True

        if scraped.metadata:
            merged = dict(product.extra_data or {})
            merged.update(scraped.metadata)
            if merged != (product.extra_data or {}):
                product.extra_data = merged
                changed = True

        if changed:
            self.db.commit()
            self.db.refresh(product)
            if product.merged_product_id:
                self.refresh_merged_product(product.merged_product_id)
        return changed

    # Merged products

    def source_domains(self, product_id: str) -> List[str]:
        rows = (
            self.db.query(Website.domain)
            .join(WebsitePage, WebsitePage.website_id == Website.id)
            .join(ProductSource, ProductSource.page_id == WebsitePage.id)
            .filter(ProductSource.product_id == product_id)
            .all()
        )
        return [row[0] for row in rows]

    def merge_threshold(self, candidate_product_id: str, domain: str) -> float:
        if domain and domain in self.source_domains(candidate_product_id):
            return self.settings.SAME_SHOP_MERGE_THRESHOLD
        return self.settings.CROSS_SHOP_MERGE_THRESHOLD

    def accepts(self, candidate: MatchCandidate, domain: str) -> bool:
        return candidate.confidence >= self.merge_threshold(candidate.product_id, domain)

    def resolve_merged_product(self, product: Product, domain: str) -> MergedProduct:
        """Return the product's merged product, linking or creating one if needed."""
        if product.merged_product_id:
            return product.merged_product

        candidates = self.matcher.find_matches(product.id)
        if candidates:
            top = candidates[0]
            candidate = self.db.query(Product).filter(Product.id == top.product_id).first()
            if candidate is not None and candidate.merged_product_id and self.accepts(top, domain):
                logger.info(
                    "Merging product %s into %s (confidence %.2f via %s)",
                    product.id, candidate.merged_product_id, top.confidence, ", ".join(top.match_reasons),
                )
                return self.attach_to_merged_product(product, candidate.merged_product)
            logger.debug("Top candidate %s at %.2f not merged", top.product_id, top.confidence)

        return self.create_merged_product([product])

    def create_merged_product(self, products: List[Product]) -> MergedProduct:
        """Create a merged product aggregated from ``products`` and link them, in one commit."""
        merged = MergedProduct(**aggregate_products(products))
        self.db.add(merged)
        self.db.flush()
        for product in products:
            product.merged_product_id = merged.id
        self.db.commit()
        self.db.refresh(merged)
        logger.info("Created merged product %s (%s)", merged.id, merged.name)
        return merged

    def attach_to_merged_product(self, product: Product, merged: MergedProduct) -> MergedProduct:
        product.merged_product_id = merged.id
        self.db.commit()
        return self.refresh_merged_product(merged.id)

    def refresh_merged_product(self, merged_product_id: str) -> MergedProduct:
        """Re-aggregate a merged product over all of its linked products."""
        merged = self.db.query(MergedProduct).filter(MergedProduct.id == merged_product_id).one()
        products = (
            self.db.query(Product)
            .filter(Product.merged_product_id == merged_product_id)
            .order_by(Product.created_at, Product.id)
            .all()
        )
        for field, value in aggregate_products(products).items():
            setattr(merged, field, value)
        self.db.commit()
        self.db.refresh(merged)
        return merged
