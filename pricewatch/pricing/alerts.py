import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from pricewatch.database.models import AlertStatus, AlertType, Availability, PriceAlert, ProductVariant
from pricewatch.errors import AlertValidationError, NotFoundError

logger = logging.getLogger("pricewatch.alerts")


def detect_price_error(
    price: Decimal,
    average: Optional[Decimal],
    floor: Decimal = Decimal("1.00"),
    ratio: Decimal = Decimal("0.30"),
) -> bool:
    """Tell whether a price is implausibly low.

    A price under the absolute floor, or under ``ratio`` times the trailing
    average, is most likely a listing or scraping error.
    """
    if price < floor:
        return True
    return average is not None and average > 0 and price < average * ratio


class AlertEvaluator:
    """Creates alert rules and fires them against new price observations."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def create_alert(
        self,
        name: str,
        alert_type: str,
        merged_product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        target_price: Optional[Decimal] = None,
        percentage_threshold: Optional[Decimal] = None,
        notes: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> PriceAlert:
        """Validate and store a new active alert.

        Raises:
            AlertValidationError: if the alert lacks a name, a scope, or the
                parameter its type needs
        """
        if not name or not name.strip():
            raise AlertValidationError("Alert name is required")
        if not merged_product_id and not variant_id:
            raise AlertValidationError("Either merged_product_id or variant_id is required")
        try:
            kind = AlertType(alert_type)
        except ValueError:
            raise AlertValidationError(f"Unknown alert type: {alert_type}")
        if kind is AlertType.BELOW_PRICE and target_price is None:
            raise AlertValidationError("target_price is required for below_price alerts")
        if kind is AlertType.PERCENTAGE_DROP and percentage_threshold is None:
            raise AlertValidationError("percentage_threshold is required for percentage_drop alerts")

        alert = PriceAlert(
            name=name.strip(),
            alert_type=kind.value,
            status=AlertStatus.ACTIVE.value,
            merged_product_id=merged_product_id,
            variant_id=variant_id,
            target_price=target_price,
            percentage_threshold=percentage_threshold,
            notes=notes,
            expires_at=expires_at,
        )
        self.db.add(alert)
        self.db.commit()
        self.db.refresh(alert)
        return alert

    def _get(self, alert_id: str) -> PriceAlert:
        alert = self.db.query(PriceAlert).filter(PriceAlert.id == alert_id).first()
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def reset_alert(self, alert_id: str) -> PriceAlert:
        """Re-arm a triggered alert."""
        alert = self._get(alert_id)
        alert.status = AlertStatus.ACTIVE.value
        alert.triggered_at = None
        alert.triggered_price = None
        self.db.commit()
        return alert

    def disable_alert(self, alert_id: str) -> PriceAlert:
        alert = self._get(alert_id)
        alert.status = AlertStatus.DISABLED.value
        self.db.commit()
        return alert

    def expire_alerts(self, now: Optional[datetime] = None) -> int:
        """Mark active alerts past their expiry as expired; returns how many."""
        now = now or datetime.utcnow()
        count = (
            self.db.query(PriceAlert)
            .filter(
                PriceAlert.status == AlertStatus.ACTIVE.value,
                PriceAlert.expires_at.isnot(None),
                PriceAlert.expires_at <= now,
            )
            .update({PriceAlert.status: AlertStatus.EXPIRED.value}, synchronize_session=False)
        )
        self.db.commit()
        return count

    def list_alerts(self, status: Optional[str] = None, limit: int = 100) -> List[PriceAlert]:
        query = self.db.query(PriceAlert)
        if status:
            query = query.filter(PriceAlert.status == status)
        return query.order_by(PriceAlert.created_at.desc()).limit(limit).all()

    def active_alerts_for(self, variant: ProductVariant) -> List[PriceAlert]:
        """Active alerts on the variant itself or on its whole merged product."""
        return (
            self.db.query(PriceAlert)
            .filter(
                PriceAlert.status == AlertStatus.ACTIVE.value,
                or_(
                    PriceAlert.variant_id == variant.id,
                    (PriceAlert.merged_product_id == variant.merged_product_id) & PriceAlert.variant_id.is_(None),
                ),
            )
            .all()
        )

    def should_fire(
        self,
        alert: PriceAlert,
        price: Decimal,
        percentage_change: Optional[Decimal],
        previous_availability: Optional[str],
        availability: str,
        average: Optional[Decimal],
    ) -> bool:
        kind = alert.alert_type
        if kind == AlertType.BELOW_PRICE.value:
            return alert.target_price is not None and price < alert.target_price
        if kind == AlertType.PERCENTAGE_DROP.value:
            return (
                percentage_change is not None
                and alert.percentage_threshold is not None
                and percentage_change <= -alert.percentage_threshold
            )
        if kind == AlertType.BACK_IN_STOCK.value:
            return (
                previous_availability is not None
                and previous_availability != Availability.IN_STOCK.value
                and availability == Availability.IN_STOCK.value
            )
        if kind == AlertType.PRICE_ERROR.value:
            return detect_price_error(
                price,
                average,
                Decimal(str(self.settings.PRICE_ERROR_FLOOR)),
                Decimal(str(self.settings.PRICE_ERROR_RATIO)),
            )
        return False

    def evaluate(
        self,
        variant: ProductVariant,
        price: Decimal,
        percentage_change: Optional[Decimal],
        previous_availability: Optional[str],
        availability: str,
        average: Optional[Decimal] = None,
    ) -> List[str]:
        """Fire matching alerts for one observation.

        Fired alerts move to ``triggered`` and stay there until reset.

        Returns:
            IDs of the alerts that fired
        """
        now = datetime.utcnow()
        fired = []
        for alert in self.active_alerts_for(variant):
            if alert.expires_at is not None and alert.expires_at <= now:
                alert.status = AlertStatus.EXPIRED.value
                continue
            if self.should_fire(alert, price, percentage_change, previous_availability, availability, average):
                alert.status = AlertStatus.TRIGGERED.value
                alert.triggered_at = now
                alert.triggered_price = price
                fired.append(alert.id)
                logger.info("Alert %s (%s) triggered at %s", alert.name, alert.alert_type, price)
        self.db.commit()
        return fired
