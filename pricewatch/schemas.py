from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ScrapedData(BaseModel):
    """Raw fields pulled from a product page by an adapter."""

    name: Optional[str] = None
    price: Optional[Decimal] = None
    currency: str = "EUR"
    original_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    availability: str = "unknown"
    stock_quantity: Optional[int] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    ean: Optional[str] = None
    asin: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    url: str
    scraped_at: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ProductData(BaseModel):
    """Caller-supplied product details used when a page lacks them."""

    name: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    ean: Optional[str] = None
    asin: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProductSummary(BaseModel):
    """Detached view of a Product row, safe to use after the session closes."""

    id: str
    name: str
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    ean: Optional[str] = None
    asin: Optional[str] = None
    image_url: Optional[str] = None
    merged_product_id: Optional[str] = None

    class Config:
        from_attributes = True


class ScrapeResult(BaseModel):
    product: ProductSummary
    scraped_data: ScrapedData
    session_id: Optional[str] = None
    state: str
    validation: ValidationResult
    variant_id: Optional[str] = None
    price_changed: Optional[bool] = None


class FailedScrape(BaseModel):
    url: str
    error: str
    failed_after: Optional[str] = None


class BatchResult(BaseModel):
    successful: List[ScrapeResult] = Field(default_factory=list)
    failed: List[FailedScrape] = Field(default_factory=list)


class RefreshResult(BaseModel):
    refreshed: int = 0
    failed: int = 0


class PriceObservation(BaseModel):
    """One observed price for a (variant, source) pair."""

    price: Decimal
    currency: str = "EUR"
    original_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    availability: str = "unknown"
    stock_quantity: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PriceUpdate(BaseModel):
    price_changed: bool
    current_price: Decimal
    history_id: str
    price_delta: Optional[Decimal] = None
    percentage_change: Optional[Decimal] = None
    triggered_alert_ids: List[str] = Field(default_factory=list)


class MatchCandidate(BaseModel):
    product_id: str
    confidence: float
    match_reasons: List[str] = Field(default_factory=list)


class PageSnapshot(BaseModel):
    page_id: str
    website_id: str
    url: str
    domain: str
    path: str
    content_hash: Optional[str] = None
    scan_count: int
    element_count: int
