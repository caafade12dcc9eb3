"""Price ledger per (variant, source).

A history row is written only when the price moves. Observations of an unchanged
price extend the latest row in place: its updated_at is stamped and secondary
fields (availability, stock, original price, discount, metadata) are refreshed.
Ledger growth therefore follows price movements, not scrape frequency.
"""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from pricewatch.database.models import PriceHistory, ProductVariant
from pricewatch.errors import NotFoundError
from pricewatch.pricing.alerts import AlertEvaluator
from pricewatch.schemas import PriceObservation, PriceUpdate

logger = logging.getLogger("pricewatch.ledger")

CENT = Decimal("0.01")


def to_money(value) -> Optional[Decimal]:
    """Quantize a price to cents; None stays None."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class PriceLedger:
    """Records price observations and evaluates alerts on each one."""

    def __init__(self, db: Session, alerts: Optional[AlertEvaluator] = None, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.alerts = alerts or AlertEvaluator(db, self.settings)

    def get_current_price(self, variant_id: str, source_id: str) -> Optional[PriceHistory]:
        """The authoritative row is the one recorded last."""
        return (
            self.db.query(PriceHistory)
            .filter(PriceHistory.variant_id == variant_id, PriceHistory.product_source_id == source_id)
            .order_by(PriceHistory.recorded_at.desc())
            .first()
        )

    def get_source_ids(self, variant_id: str) -> List[str]:
        """Every source that ever recorded a price for the variant."""
        rows = (
            self.db.query(PriceHistory.product_source_id)
            .filter(PriceHistory.variant_id == variant_id)
            .distinct()
            .all()
        )
        return [row.product_source_id for row in rows]

    def get_trailing_average(self, variant_id: str, days: Optional[int] = None) -> Optional[Decimal]:
        days = days if days is not None else self.settings.PRICE_AVERAGE_WINDOW_DAYS
        since = datetime.utcnow() - timedelta(days=days)
        average = (
            self.db.query(func.avg(PriceHistory.price))
            .filter(PriceHistory.variant_id == variant_id, PriceHistory.recorded_at >= since)
            .scalar()
        )
        return to_money(average)

    def update_price(self, variant_id: str, source_id: str, observation: PriceObservation) -> PriceUpdate:
        """Record an observation for a (variant, source) pair.

        Prices are compared as cent-quantized decimals, never as floats. The
        first observation counts as a change with no delta.

        Args:
            variant_id: Variant the price belongs to
            source_id: ProductSource the price was scraped from
            observation: The observed price and secondary fields

        Returns:
            PriceUpdate telling whether a new history row was written
        """
        variant = self.db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()
        if variant is None:
            raise NotFoundError(f"Variant {variant_id} not found")

        price = to_money(observation.price)
        now = datetime.utcnow()
        latest = self.get_current_price(variant_id, source_id)
        average = self.get_trailing_average(variant_id)
        previous_availability = latest.availability if latest is not None else None

        price_changed = latest is None or str(to_money(latest.price)) != str(price)
        delta = None
        percentage = None

        if price_changed:
            if latest is not None:
                old_price = to_money(latest.price)
                delta = price - old_price
                if old_price != 0:
                    percentage = to_money(delta / old_price * 100)
                # Keep recorded_at strictly increasing so the latest row is unambiguous
                if latest.recorded_at is not None and now <= latest.recorded_at:
                    now = latest.recorded_at + timedelta(microseconds=1)

            row = PriceHistory(
                variant_id=variant_id,
                product_source_id=source_id,
                price=price,
                currency=observation.currency,
                original_price=to_money(observation.original_price),
                discount_percentage=to_money(observation.discount_percentage),
                availability=observation.availability,
                stock_quantity=observation.stock_quantity,
                price_changed=True,
                price_delta=delta,
                percentage_change=percentage,
                extra_data=observation.metadata or None,
                recorded_at=now,
                updated_at=now,
            )
            self.db.add(row)
            logger.info("Price change for variant %s: %s -> %s", variant_id, latest.price if latest else None, price)
        else:
            row = latest
            row.updated_at = now
            self._touch_secondary_fields(row, observation)
            logger.debug("Price unchanged for variant %s at %s", variant_id, price)

        self.db.commit()
        self.db.refresh(row)

        fired = self.alerts.evaluate(
            variant,
            price,
            percentage,
            previous_availability,
            observation.availability,
            average,
        )

        return PriceUpdate(
            price_changed=price_changed,
            current_price=price,
            history_id=row.id,
            price_delta=delta,
            percentage_change=percentage,
            triggered_alert_ids=fired,
        )

    def _touch_secondary_fields(self, row: PriceHistory, observation: PriceObservation):
        updates: Dict[str, Any] = {
            "availability": observation.availability,
            "stock_quantity": observation.stock_quantity,
            "original_price": to_money(observation.original_price),
            "discount_percentage": to_money(observation.discount_percentage),
        }
        for field, value in updates.items():
            if getattr(row, field) != value:
                setattr(row, field, value)
        if observation.metadata:
            merged = dict(row.extra_data or {})
            merged.update(observation.metadata)
            if merged != (row.extra_data or {}):
                row.extra_data = merged

    def get_price_history(
        self,
        variant_id: str,
        source_id: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 500,
    ) -> List[PriceHistory]:
        """History rows of a variant, newest first."""
        query = self.db.query(PriceHistory).filter(PriceHistory.variant_id == variant_id)
        if source_id:
            query = query.filter(PriceHistory.product_source_id == source_id)
        if days is not None:
            query = query.filter(PriceHistory.recorded_at >= datetime.utcnow() - timedelta(days=days))
        return query.order_by(PriceHistory.recorded_at.desc()).limit(limit).all()

    def get_price_statistics(self, variant_id: str, days: int = 30) -> Dict[str, Any]:
        """Lowest, highest and average price of a variant over a window."""
        rows = self.get_price_history(variant_id, days=days)
        if not rows:
            return {"count": 0, "min": None, "max": None, "avg": None, "current": None, "changes": 0}

        prices = [to_money(r.price) for r in rows]
        return {
            "count": len(rows),
            "min": min(prices),
            "max": max(prices),
            "avg": to_money(sum(prices) / len(prices)),
            "current": prices[0],
            "changes": sum(1 for r in rows if r.price_delta is not None),
        }
