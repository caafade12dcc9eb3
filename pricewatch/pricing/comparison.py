from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from pricewatch.database.models import ProductSource, ProductVariant, Website, WebsitePage
from pricewatch.pricing.ledger import PriceLedger, to_money


class PriceComparator:
    """Compares the current prices of one merged product across shops."""

    def __init__(self, db: Session, ledger: PriceLedger = None):
        self.db = db
        self.ledger = ledger or PriceLedger(db)

    def current_offers(self, merged_product_id: str) -> List[Dict[str, Any]]:
        """Latest price per (variant, source) of a merged product, cheapest first."""
        offers = []
        variants = self.db.query(ProductVariant).filter(ProductVariant.merged_product_id == merged_product_id).all()
        for variant in variants:
            for source_id in self.ledger.get_source_ids(variant.id):
                current = self.ledger.get_current_price(variant.id, source_id)
                source = self.db.query(ProductSource).filter(ProductSource.id == source_id).first()
                if current is None or source is None:
                    continue
                page = self.db.query(WebsitePage).filter(WebsitePage.id == source.page_id).first()
                website = self.db.query(Website).filter(Website.id == page.website_id).first() if page else None
                offers.append({
                    "variant_id": variant.id,
                    "variant_label": variant.label,
                    "source_id": source_id,
                    "shop": website.domain if website else "unknown",
                    "url": page.url if page else None,
                    "price": to_money(current.price),
                    "currency": current.currency,
                    "availability": current.availability,
                    "recorded_at": current.recorded_at,
                })
        return sorted(offers, key=lambda o: o["price"])

    def compare_sellers(self, merged_product_id: str) -> Dict[str, Dict[str, Any]]:
        """Cheapest and most expensive shop per variant, with the spread between them.

        Variants offered by a single shop are reported with a zero spread.
        """
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for offer in self.current_offers(merged_product_id):
            grouped.setdefault(offer["variant_id"], []).append(offer)

        comparison = {}
        for variant_id, offers in grouped.items():
            cheapest = min(offers, key=lambda o: o["price"])
            most_expensive = max(offers, key=lambda o: o["price"])
            spread = most_expensive["price"] - cheapest["price"]
            spread_percent = (
                to_money(spread / cheapest["price"] * 100) if cheapest["price"] > 0 else Decimal("0.00")
            )
            comparison[variant_id] = {
                "variant_label": cheapest["variant_label"],
                "cheapest_shop": cheapest["shop"],
                "cheapest_price": cheapest["price"],
                "most_expensive_shop": most_expensive["shop"],
                "most_expensive_price": most_expensive["price"],
                "spread_amount": spread,
                "spread_percent": spread_percent,
                "offer_count": len(offers),
            }
        return comparison
