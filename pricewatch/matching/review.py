import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from pricewatch.database.models import Product, ProductMatchSuggestion, SuggestionStatus
from pricewatch.schemas import MatchCandidate

logger = logging.getLogger("pricewatch.review")


class SuggestionQueue:
    """Stores match candidates that were too weak to merge automatically.

    Only pending suggestions are written here; reviewing and applying them is
    left to whoever consumes the product_match_suggestions table.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def submit(self, product: Product, candidates: List[MatchCandidate], auto_merge_threshold) -> List[ProductMatchSuggestion]:
        """Queue candidates in [SUGGESTION_MIN_CONFIDENCE, auto-merge threshold).

        Args:
            product: The freshly scraped product
            candidates: Matcher output for the product
            auto_merge_threshold: Callable returning the merge threshold for a
                candidate, so candidates that would have merged are skipped

        Returns:
            The newly created suggestions
        """
        created = []
        for candidate in candidates:
            if candidate.confidence < self.settings.SUGGESTION_MIN_CONFIDENCE:
                continue
            if candidate.confidence >= auto_merge_threshold(candidate):
                continue

            target = self.db.query(Product).filter(Product.id == candidate.product_id).first()
            if target is None or not target.merged_product_id:
                continue
            if target.merged_product_id == product.merged_product_id:
                continue

            exists = self.db.query(ProductMatchSuggestion).filter(
                ProductMatchSuggestion.product_id == product.id,
                ProductMatchSuggestion.merged_product_id == target.merged_product_id,
            ).first()
            if exists is not None:
                continue

            suggestion = ProductMatchSuggestion(
                product_id=product.id,
                merged_product_id=target.merged_product_id,
                confidence=candidate.confidence,
                match_reasons=candidate.match_reasons,
                comparison_data={
                    "product_name": product.name,
                    "candidate_product_id": target.id,
                    "candidate_name": target.name,
                },
                status=SuggestionStatus.PENDING.value,
            )
            self.db.add(suggestion)
            created.append(suggestion)

        if created:
            self.db.commit()
            logger.info("Queued %d match suggestions for product %s", len(created), product.id)
        return created

    def pending(self, limit: int = 100) -> List[ProductMatchSuggestion]:
        return (
            self.db.query(ProductMatchSuggestion)
            .filter(ProductMatchSuggestion.status == SuggestionStatus.PENDING.value)
            .order_by(ProductMatchSuggestion.confidence.desc())
            .limit(limit)
            .all()
        )
