# This file defines the database schema for the price tracker using SQLAlchemy's ORM.
# It covers three areas: page snapshots (websites, pages, elements), product identity
# (products, merged products, variants, attributes) and price tracking (history,
# alerts, quality logs, match suggestions).

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

# Base class for all ORM models; holds the metadata used by create_all()
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Availability(str, enum.Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    LIMITED_STOCK = "limited_stock"
    PREORDER = "preorder"
    DISCONTINUED = "discontinued"
    UNKNOWN = "unknown"


class AttributeType(str, enum.Enum):
    SCREEN_SIZE = "screen_size"
    STORAGE = "storage"
    MEMORY = "memory"
    COLOR = "color"
    RESOLUTION = "resolution"
    PROCESSOR = "processor"
    WEIGHT = "weight"
    DIMENSIONS = "dimensions"
    CONNECTIVITY = "connectivity"
    CUSTOM = "custom"


class AlertType(str, enum.Enum):
    BELOW_PRICE = "below_price"
    PERCENTAGE_DROP = "percentage_drop"
    BACK_IN_STOCK = "back_in_stock"
    PRICE_ERROR = "price_error"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXPIRED = "expired"
    DISABLED = "disabled"


class IssueSeverity(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueStatus(str, enum.Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class SuggestionStatus(str, enum.Enum):
    PENDING = "pending"


class Website(Base):
    """A shop domain. Created the first time any page of the domain is snapshotted."""

    __tablename__ = "websites"

    # UUIDs stored as strings for broader database compatibility
    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    pages = relationship("WebsitePage", back_populates="website", cascade="all, delete-orphan")


class WebsitePage(Base):
    """A normalized URL (scheme, host and path only) belonging to a Website.

    The content hash lets callers detect an unchanged page without diffing HTML;
    scan_count records how often the page was snapshotted.
    """

    __tablename__ = "website_pages"

    id = Column(String(36), primary_key=True, default=_uuid)
    website_id = Column(String(36), ForeignKey("websites.id"), nullable=False, index=True)
    url = Column(String(768), unique=True, nullable=False)
    path = Column(String(1024), nullable=False, default="/")
    title = Column(String(512), nullable=True)
    content_hash = Column(String(64), nullable=True)
    scan_count = Column(Integer, nullable=False, default=0)
    last_scanned_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    website = relationship("Website", back_populates="pages")

    # Elements are replaced wholesale on every snapshot, ordered by their position
    elements = relationship(
        "WebsiteElement",
        back_populates="page",
        cascade="all, delete-orphan",
        order_by="WebsiteElement.order_index",
    )
    sources = relationship("ProductSource", back_populates="page")


class WebsiteElement(Base):
    """An interactive DOM element captured in a page snapshot."""

    __tablename__ = "website_elements"

    id = Column(String(36), primary_key=True, default=_uuid)
    page_id = Column(String(36), ForeignKey("website_pages.id", ondelete="CASCADE"), nullable=False, index=True)
    tag_name = Column(String(50), nullable=False)
    selector = Column(String(1024), nullable=False)
    text_content = Column(Text, nullable=True)
    attributes = Column(JSON, nullable=True)
    is_visible = Column(Boolean, default=True)
    bounding_box = Column(JSON, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)

    page = relationship("WebsitePage", back_populates="elements")


class MergedProduct(Base):
    """Canonical identity of a physical product sold by one or more shops.

    All descriptive columns are derived by aggregating the linked Products and are
    recomputed whenever a product joins the group.
    """

    __tablename__ = "merged_products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(512), nullable=False)
    brand = Column(String(255), nullable=True, index=True)
    model = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)
    ean = Column(String(20), nullable=True, index=True)
    asin = Column(String(20), nullable=True, index=True)
    description = Column(Text, nullable=True)
    image_url = Column(String(2048), nullable=True)
    images = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes, hence the attribute name
    extra_data = Column("metadata", JSON, nullable=True)
    data_quality_score = Column(Float, nullable=False, default=0.0)
    source_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    products = relationship("Product", back_populates="merged_product")
    variants = relationship("ProductVariant", back_populates="merged_product", cascade="all, delete-orphan")


class Product(Base):
    """A single shop's listing of a product."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(512), nullable=False)
    brand = Column(String(255), nullable=True)
    model = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)

    # Exact identifiers drive the first matching pass, so both are indexed
    ean = Column(String(20), nullable=True, index=True)
    asin = Column(String(20), nullable=True, index=True)

    description = Column(Text, nullable=True)
    image_url = Column(String(2048), nullable=True)
    extra_data = Column("metadata", JSON, nullable=True)
    merged_product_id = Column(String(36), ForeignKey("merged_products.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merged_product = relationship("MergedProduct", back_populates="products")
    sources = relationship("ProductSource", back_populates="product", cascade="all, delete-orphan")


class ProductSource(Base):
    """Links a Product to the page it is scraped from."""

    __tablename__ = "product_sources"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    page_id = Column(String(36), ForeignKey("website_pages.id"), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_scraped_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    product = relationship("Product", back_populates="sources")
    page = relationship("WebsitePage", back_populates="sources")


class ProductVariant(Base):
    """A distinguishable SKU of a merged product, keyed by its attribute fingerprint."""

    __tablename__ = "product_variants"
    __table_args__ = (UniqueConstraint("merged_product_id", "fingerprint", name="uq_variant_fingerprint"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    merged_product_id = Column(String(36), ForeignKey("merged_products.id"), nullable=False, index=True)
    primary_product_id = Column(String(36), ForeignKey("products.id"), nullable=True, index=True)
    fingerprint = Column(String(512), nullable=False)
    label = Column(String(512), nullable=False, default="Standard")
    attributes = Column(JSON, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merged_product = relationship("MergedProduct", back_populates="variants")
    attribute_rows = relationship("ProductAttribute", back_populates="variant", cascade="all, delete-orphan")


class ProductAttribute(Base):
    """One extracted attribute of a variant, kept at its best-seen confidence."""

    __tablename__ = "product_attributes"
    __table_args__ = (
        UniqueConstraint("variant_id", "attribute_type", "attribute_key", name="uq_variant_attribute"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), nullable=False, index=True)
    attribute_type = Column(String(50), nullable=False)
    attribute_key = Column(String(100), nullable=False)
    value = Column(String(255), nullable=False)
    unit = Column(String(50), nullable=True)
    display_value = Column(String(255), nullable=True)
    normalized_value = Column(Float, nullable=True)
    normalized_unit = Column(String(50), nullable=True)
    confidence = Column(Float, nullable=False, default=0.0)
    source = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variant = relationship("ProductVariant", back_populates="attribute_rows")


class PriceHistory(Base):
    """Price ledger row for one (variant, source) pair.

    A new row is written only when the price moves; repeated observations of the
    same price extend the latest row instead.
    """

    __tablename__ = "price_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), nullable=False, index=True)
    product_source_id = Column(String(36), ForeignKey("product_sources.id"), nullable=False, index=True)

    # Money columns use fixed-point so equal prices compare exactly
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    original_price = Column(Numeric(10, 2), nullable=True)
    discount_percentage = Column(Numeric(5, 2), nullable=True)

    availability = Column(String(20), nullable=False, default=Availability.UNKNOWN.value)
    stock_quantity = Column(Integer, nullable=True)
    price_changed = Column(Boolean, nullable=False, default=True)
    price_delta = Column(Numeric(10, 2), nullable=True)
    percentage_change = Column(Numeric(7, 2), nullable=True)
    extra_data = Column("metadata", JSON, nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)

    variant = relationship("ProductVariant")
    source = relationship("ProductSource")


class PriceAlert(Base):
    """A price or stock rule scoped to a merged product or one of its variants."""

    __tablename__ = "price_alerts"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    alert_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default=AlertStatus.ACTIVE.value, index=True)
    merged_product_id = Column(String(36), ForeignKey("merged_products.id"), nullable=True, index=True)
    variant_id = Column(String(36), ForeignKey("product_variants.id"), nullable=True, index=True)
    target_price = Column(Numeric(10, 2), nullable=True)
    percentage_threshold = Column(Numeric(5, 2), nullable=True)
    notes = Column(Text, nullable=True)
    triggered_at = Column(DateTime, nullable=True)
    triggered_price = Column(Numeric(10, 2), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScrapingQualityLog(Base):
    """A recurring extraction defect, deduplicated per domain, adapter and missing fields."""

    __tablename__ = "scraping_quality_logs"
    __table_args__ = (
        UniqueConstraint("domain", "adapter", "issue_fingerprint", name="uq_quality_issue"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), nullable=False, index=True)
    # Empty string rather than NULL so the unique constraint also covers generic scrapes
    adapter = Column(String(100), nullable=False, default="")
    issue_fingerprint = Column(String(512), nullable=False)
    url = Column(String(2048), nullable=True)
    product_id = Column(String(36), nullable=True)
    missing_fields = Column(JSON, nullable=True)
    field_errors = Column(JSON, nullable=True)
    extracted_fields = Column(JSON, nullable=True)
    validation_errors = Column(JSON, nullable=True)
    severity = Column(String(20), nullable=False, default=IssueSeverity.INFO.value)
    status = Column(String(20), nullable=False, default=IssueStatus.OPEN.value, index=True)
    html_sample = Column(Text, nullable=True)
    screenshot_path = Column(String(1024), nullable=True)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_seen_at = Column(DateTime, default=datetime.utcnow)
    occurrence_count = Column(Integer, nullable=False, default=1)
    resolution = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)


class ProductMatchSuggestion(Base):
    """A lower-confidence match queued for manual review."""

    __tablename__ = "product_match_suggestions"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    merged_product_id = Column(String(36), ForeignKey("merged_products.id"), nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    match_reasons = Column(JSON, nullable=True)
    comparison_data = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=SuggestionStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow)
