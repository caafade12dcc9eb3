"""Typed attribute extraction and variant fingerprinting.

Product names and metadata are scanned with independent pattern rules (screen
size, storage, RAM, resolution, color, CPU, weight). The variant-defining subset
of the extracted attributes, sorted by key, forms the fingerprint that keys a
ProductVariant under its merged product.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import sqlalchemy.exc
from sqlalchemy.orm import Session

from pricewatch.database.models import AttributeType, ProductAttribute, ProductVariant

logger = logging.getLogger("pricewatch.attributes")

VARIANT_KEYS = ("screen_size", "storage_capacity", "ram", "display_resolution", "color", "cpu", "weight")

DEFAULT_FINGERPRINT = "default"
DEFAULT_LABEL = "Standard"

_NUMBER = r"(\d+(?:[.,]\d+)?)"

SCREEN_SIZE_PATTERN = re.compile(_NUMBER + r"\s*(?:zoll|inch|\"|'')", re.IGNORECASE)
STORAGE_PATTERN = re.compile(_NUMBER + r"\s*(gb|tb|mb)\b(\s*(?:ram|memory|speicher))?", re.IGNORECASE)
RAM_PATTERN = re.compile(_NUMBER + r"\s*(gb|mb)\s*(?:ram|memory|speicher)", re.IGNORECASE)
CPU_PATTERN = re.compile(r"\b(intel|amd|apple)\s*(i\d|ryzen|m\d|a\d+)\b", re.IGNORECASE)
# A bare gram unit must be lowercase, "5G" is a network standard
WEIGHT_PATTERN = re.compile(_NUMBER + r"\s*([Kk][Gg]|[Kk]ilogramm|[Gg]ramm|g)\b")

# Checked in order, first match wins
RESOLUTIONS = (
    (re.compile(r"\b(?:4k|uhd|ultra\s*hd|3840\s*x\s*2160)\b", re.IGNORECASE), "4K", 3840),
    (re.compile(r"\b(?:full\s*hd|1080p|1920\s*x\s*1080)\b", re.IGNORECASE), "Full HD", 1920),
    (re.compile(r"\b(?:hd|720p|1280\s*x\s*720)\b", re.IGNORECASE), "HD", 1280),
    (re.compile(r"\b(?:8k|7680\s*x\s*4320)\b", re.IGNORECASE), "8K", 7680),
)

COLORS = (
    "schwarz", "black", "weiß", "white", "silber", "silver", "grau", "gray", "grey",
    "rot", "red", "blau", "blue", "grün", "green", "gold", "space gray", "midnight",
)


@dataclass(frozen=True)
class ExtractedAttribute:
    type: str
    key: str
    value: str
    unit: Optional[str]
    display_value: str
    normalized_value: Optional[float]
    normalized_unit: Optional[str]
    confidence: float


@dataclass(frozen=True)
class VariantDescriptor:
    fingerprint: str
    label: str
    attributes: Dict[str, str]
    is_default: bool


def _number(raw: str) -> float:
    return float(raw.replace(",", "."))


def _format_number(value: float) -> str:
    return ("%f" % value).rstrip("0").rstrip(".")


def _screen_size(text: str) -> Optional[ExtractedAttribute]:
    match = SCREEN_SIZE_PATTERN.search(text)
    if not match:
        return None
    size = _number(match.group(1))
    unit = "Zoll" if "zoll" in text.lower() else "inch"
    return ExtractedAttribute(
        type=AttributeType.SCREEN_SIZE.value,
        key="screen_size",
        value=_format_number(size),
        unit=unit,
        display_value=f'{_format_number(size)}"',
        normalized_value=round(size * 2.54, 4),
        normalized_unit="cm",
        confidence=0.95,
    )


def _storage(text: str) -> Optional[ExtractedAttribute]:
    # Skip sizes that are followed by a RAM marker; those belong to the RAM rule
    for match in STORAGE_PATTERN.finditer(text):
        if match.group(3):
            continue
        amount = _number(match.group(1))
        unit = match.group(2).upper()
        if unit == "TB":
            gigabytes = amount * 1024
        elif unit == "MB":
            gigabytes = amount / 1024
        else:
            gigabytes = amount
        return ExtractedAttribute(
            type=AttributeType.STORAGE.value,
            key="storage_capacity",
            value=_format_number(amount),
            unit=unit,
            display_value=f"{_format_number(amount)} {unit}",
            normalized_value=gigabytes,
            normalized_unit="GB",
            confidence=0.90,
        )
    return None


def _ram(text: str) -> Optional[ExtractedAttribute]:
    match = RAM_PATTERN.search(text)
    if not match:
        return None
    amount = _number(match.group(1))
    unit = match.group(2).upper()
    gigabytes = amount / 1024 if unit == "MB" else amount
    return ExtractedAttribute(
        type=AttributeType.MEMORY.value,
        key="ram",
        value=_format_number(amount),
        unit=unit,
        display_value=f"{_format_number(amount)} {unit} RAM",
        normalized_value=gigabytes,
        normalized_unit="GB",
        confidence=0.90,
    )


def _resolution(text: str) -> Optional[ExtractedAttribute]:
    for pattern, name, width in RESOLUTIONS:
        if pattern.search(text):
            return ExtractedAttribute(
                type=AttributeType.RESOLUTION.value,
                key="display_resolution",
                value=name,
                unit="px",
                display_value=name,
                normalized_value=float(width),
                normalized_unit="px",
                confidence=0.95,
            )
    return None


def _color(text: str) -> Optional[ExtractedAttribute]:
    for color in COLORS:
        if re.search(r"\b" + re.escape(color) + r"\b", text, re.IGNORECASE):
            return ExtractedAttribute(
                type=AttributeType.COLOR.value,
                key="color",
                value=color,
                unit=None,
                display_value=color.title(),
                normalized_value=None,
                normalized_unit=None,
                confidence=0.70,
            )
    return None


def _cpu(text: str) -> Optional[ExtractedAttribute]:
    match = CPU_PATTERN.search(text)
    if not match:
        return None
    vendor, family = match.group(1), match.group(2)
    display = f"{vendor.capitalize()} {family.capitalize() if family.lower() == 'ryzen' else family.upper()}"
    return ExtractedAttribute(
        type=AttributeType.PROCESSOR.value,
        key="cpu",
        value=display.lower(),
        unit=None,
        display_value=display,
        normalized_value=None,
        normalized_unit=None,
        confidence=0.75,
    )


def _weight(text: str) -> Optional[ExtractedAttribute]:
    match = WEIGHT_PATTERN.search(text)
    if not match:
        return None
    amount = _number(match.group(1))
    unit = match.group(2).lower()
    kilograms = amount if unit in ("kg", "kilogramm") else amount / 1000
    short_unit = "kg" if unit in ("kg", "kilogramm") else "g"
    return ExtractedAttribute(
        type=AttributeType.WEIGHT.value,
        key="weight",
        value=_format_number(amount),
        unit=short_unit,
        display_value=f"{_format_number(amount)} {short_unit}",
        normalized_value=kilograms,
        normalized_unit="kg",
        confidence=0.80,
    )


RULES = (_screen_size, _storage, _ram, _resolution, _color, _cpu, _weight)


def extract(text: str, metadata: Optional[Dict[str, Any]] = None) -> List[ExtractedAttribute]:
    """Run every rule over the text and the string values of ``metadata``.

    Rules are independent; each contributes at most one attribute.
    """
    parts = [text or ""]
    if metadata:
        parts.extend(str(value) for value in metadata.values() if isinstance(value, (str, int, float)))
    haystack = " ".join(parts)

    attributes = []
    for rule in RULES:
        attribute = rule(haystack)
        if attribute is not None:
            attributes.append(attribute)
    return attributes


def _fingerprint_segment(attribute: ExtractedAttribute) -> str:
    if attribute.normalized_value is not None:
        value = f"{attribute.normalized_value:.4f}"
    else:
        value = attribute.value.strip().lower()
    unit = attribute.normalized_unit or attribute.unit
    if unit:
        return f"{attribute.key}:{value}:{unit.lower()}"
    return f"{attribute.key}:{value}"


def build_variant_descriptor(attributes: List[ExtractedAttribute]) -> VariantDescriptor:
    """Derive the fingerprint and label from the variant-defining attributes.

    Attributes are sorted by key first, so extraction order never changes the
    fingerprint. Without any variant-defining attribute the default descriptor
    is returned.
    """
    defining = sorted((a for a in attributes if a.key in VARIANT_KEYS), key=lambda a: a.key)
    if not defining:
        return VariantDescriptor(DEFAULT_FINGERPRINT, DEFAULT_LABEL, {}, True)

    return VariantDescriptor(
        fingerprint="|".join(_fingerprint_segment(a) for a in defining),
        label=" / ".join(a.display_value for a in defining),
        attributes={a.key: a.display_value for a in defining},
        is_default=False,
    )


class AttributeExtractor:
    """Persists extracted attributes and keeps product variants in sync."""

    def __init__(self, db: Session):
        self.db = db

    def extract(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> List[ExtractedAttribute]:
        return extract(text, metadata)

    def build_variant_descriptor(self, attributes: List[ExtractedAttribute]) -> VariantDescriptor:
        return build_variant_descriptor(attributes)

    def _find_variant(self, merged_product_id: str, product_id: Optional[str], fingerprint: str) -> Optional[ProductVariant]:
        query = self.db.query(ProductVariant).filter(ProductVariant.merged_product_id == merged_product_id)
        if product_id:
            variant = query.filter(ProductVariant.primary_product_id == product_id).first()
            if variant is not None:
                return variant
        return query.filter(ProductVariant.fingerprint == fingerprint).first()

    def ensure_variant(
        self,
        merged_product_id: str,
        product_id: Optional[str],
        attributes: List[ExtractedAttribute],
    ) -> ProductVariant:
        """Find or create the variant for a product's attributes.

        The product's own primary variant is preferred over a fingerprint match.
        An existing variant is only written when a field actually differs.
        """
        descriptor = build_variant_descriptor(attributes)
        variant = self._find_variant(merged_product_id, product_id, descriptor.fingerprint)

        if variant is None:
            variant = ProductVariant(
                merged_product_id=merged_product_id,
                primary_product_id=product_id,
                fingerprint=descriptor.fingerprint,
                label=descriptor.label,
                attributes=descriptor.attributes,
                is_default=descriptor.is_default,
            )
            self.db.add(variant)
            try:
                self.db.commit()
            except sqlalchemy.exc.IntegrityError:
                # Another scrape created the same fingerprint first
                self.db.rollback()
                variant = self._find_variant(merged_product_id, None, descriptor.fingerprint)
                if variant is None:
                    raise
            else:
                self.db.refresh(variant)
                logger.info("Created variant %s (%s) for merged product %s", variant.id, variant.label, merged_product_id)
                return variant

        changed = False
        if variant.label != descriptor.label:
            variant.label = descriptor.label
            changed = True
        if (variant.attributes or {}) != descriptor.attributes:
            variant.attributes = descriptor.attributes
            changed = True
        if descriptor.is_default and not variant.is_default:
            variant.is_default = True
            changed = True
        if product_id and variant.primary_product_id is None:
            variant.primary_product_id = product_id
            changed = True

        if changed:
            self.db.commit()
            self.db.refresh(variant)
        return variant

    def save_attribute(self, variant_id: str, attribute: ExtractedAttribute, source: str = "name") -> ProductAttribute:
        """Upsert an attribute, replacing it only on strictly higher confidence."""
        row = self.db.query(ProductAttribute).filter(
            ProductAttribute.variant_id == variant_id,
            ProductAttribute.attribute_type == attribute.type,
            ProductAttribute.attribute_key == attribute.key,
        ).first()

        if row is not None and attribute.confidence <= row.confidence:
            return row

        if row is None:
            row = ProductAttribute(variant_id=variant_id, attribute_type=attribute.type, attribute_key=attribute.key)
            self.db.add(row)

        row.value = attribute.value
        row.unit = attribute.unit
        row.display_value = attribute.display_value
        row.normalized_value = attribute.normalized_value
        row.normalized_unit = attribute.normalized_unit
        row.confidence = attribute.confidence
        row.source = source
        self.db.commit()
        self.db.refresh(row)
        return row

    def assign_variant(
        self,
        merged_product_id: str,
        product_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProductVariant:
        """Extract attributes from a product's text and attach them to its variant."""
        attributes = self.extract(text, metadata)
        variant = self.ensure_variant(merged_product_id, product_id, attributes)
        for attribute in attributes:
            self.save_attribute(variant.id, attribute)
        logger.debug("Product %s assigned to variant %s with %d attributes", product_id, variant.id, len(attributes))
        return variant
