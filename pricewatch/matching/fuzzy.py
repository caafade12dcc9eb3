import abc
import re
from difflib import SequenceMatcher
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from pricewatch.database.models import Product
from pricewatch.schemas import MatchCandidate

COMMON_BRANDS = {
    "samsung", "apple", "lg", "sony", "philips", "panasonic", "dell", "hp", "lenovo",
    "asus", "acer", "msi", "bosch", "siemens", "miele", "beko", "whirlpool",
}

MIN_NAME_SIMILARITY = 0.5

_TOKEN = re.compile(r"[a-z0-9äöüß]+")


class ProductMatcher(abc.ABC):
    """Ranks existing products that may be the same physical product."""

    @abc.abstractmethod
    def find_matches(self, product_id: str) -> List[MatchCandidate]:
        """Return candidates ordered by descending confidence."""
        raise NotImplementedError("Concrete matchers must implement find_matches()")


def tokenize(name: str) -> List[str]:
    return _TOKEN.findall((name or "").lower())


def _jaccard(left: set, right: set) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def name_similarity(left: str, right: str) -> float:
    """Weighted similarity of two product names in [0, 1].

    Token overlap and overlap of identifier-like tokens (anything containing a
    digit, such as model numbers and sizes) weigh 0.4 each; the character-level
    sequence ratio adds the remaining 0.2.
    """
    left_tokens, right_tokens = set(tokenize(left)), set(tokenize(right))
    left_ids = {t for t in left_tokens if any(c.isdigit() for c in t)}
    right_ids = {t for t in right_tokens if any(c.isdigit() for c in t)}
    ratio = SequenceMatcher(None, (left or "").lower(), (right or "").lower()).ratio()
    return 0.4 * _jaccard(left_tokens, right_tokens) + 0.4 * _jaccard(left_ids, right_ids) + 0.2 * ratio


class NameMatcher(ProductMatcher):
    """Identifier and name based matcher over the products table.

    Exact identifiers score highest (EAN 1.0, ASIN 0.95, brand and model 0.90);
    everything else falls back to name similarity with small brand boosts.
    """

    def __init__(self, db: Session, candidate_limit: int = 500):
        self.db = db
        self.candidate_limit = candidate_limit

    def find_matches(self, product_id: str) -> List[MatchCandidate]:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            return []

        best: Dict[str, MatchCandidate] = {}

        def offer(candidate_id: str, confidence: float, reason: str):
            confidence = min(1.0, round(confidence, 4))
            current = best.get(candidate_id)
            if current is None or confidence > current.confidence:
                best[candidate_id] = MatchCandidate(product_id=candidate_id, confidence=confidence, match_reasons=[reason])

        others = self.db.query(Product).filter(Product.id != product.id)

        if product.ean:
            for other in others.filter(Product.ean == product.ean).all():
                offer(other.id, 1.0, "ean")
        if product.asin:
            for other in others.filter(Product.asin == product.asin).all():
                offer(other.id, 0.95, "asin")
        if product.brand and product.model:
            for other in others.filter(Product.brand == product.brand, Product.model == product.model).all():
                offer(other.id, 0.90, "brand_model")

        for other in others.order_by(Product.updated_at.desc()).limit(self.candidate_limit).all():
            score = self._name_score(product, other)
            if score is not None:
                offer(other.id, score, "name")

        return sorted(best.values(), key=lambda c: c.confidence, reverse=True)

    def _name_score(self, product: Product, other: Product) -> Optional[float]:
        similarity = name_similarity(product.name, other.name)
        if similarity < MIN_NAME_SIMILARITY:
            return None

        if product.brand and other.brand and product.brand.strip().lower() == other.brand.strip().lower():
            similarity += 0.15

        shared = COMMON_BRANDS & set(tokenize(product.name)) & set(tokenize(other.name))
        if shared:
            similarity += 0.10

        return min(1.0, similarity)
