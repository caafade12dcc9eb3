"""Content-addressed snapshots of scraped pages.

A snapshot records the website, the normalized page URL, a hash of the raw HTML
and the page's interactive elements. Elements are replaced wholesale on every
snapshot; the replacement happens in the same transaction as the page upsert.
"""

import hashlib
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional
from urllib.parse import urlsplit

import sqlalchemy.exc
from bs4 import BeautifulSoup
from bs4.element import Tag
from sqlalchemy.orm import Session

from pricewatch.database.models import Website, WebsiteElement, WebsitePage
from pricewatch.schemas import PageSnapshot

logger = logging.getLogger("pricewatch.snapshots")

INTERACTIVE_TAGS = {"a", "button", "form", "input", "label", "select", "textarea", "option"}

INTERACTIVE_INPUT_TYPES = {
    "button", "submit", "reset", "email", "password", "text", "number",
    "search", "tel", "url", "checkbox", "radio", "file",
}

INTERACTIVE_ATTRIBUTES = ("href", "onclick", "data-action", "data-testid", "tabindex")

INTERACTIVE_ROLE = re.compile(
    r"(button|link|menuitem|tab|checkbox|radio|textbox|combobox|switch|option)", re.IGNORECASE
)


class NormalizedUrl(NamedTuple):
    url: str
    domain: str
    path: str


def normalize_url(raw_url: str) -> NormalizedUrl:
    """Reduce a URL to scheme, host and path.

    Query string and fragment are dropped and a trailing slash is removed unless
    the path is the root. Applying it to its own output changes nothing.
    """
    raw_url = raw_url.strip()
    parts = urlsplit(raw_url)
    if not parts.netloc:
        # "example.com/foo" parses as a bare path
        parts = urlsplit("//" + raw_url.split("://", 1)[-1].lstrip("/"))
    scheme = (parts.scheme or "https").lower()
    netloc = parts.netloc.lower()
    domain = (parts.hostname or "").lower()

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    return NormalizedUrl(url=f"{scheme}://{netloc}{path}", domain=domain, path=path)


def compute_content_hash(html: str) -> str:
    return hashlib.sha256(html.encode("utf-8")).hexdigest()


def is_interactive(element: Dict[str, Any]) -> bool:
    """Tell whether an element descriptor is worth keeping in a snapshot."""
    tag = (element.get("tag_name") or "").lower()
    if tag in INTERACTIVE_TAGS:
        return True

    attributes = element.get("attributes") or {}
    if any(name in attributes for name in INTERACTIVE_ATTRIBUTES):
        return True

    role = attributes.get("role")
    if role and INTERACTIVE_ROLE.search(str(role)):
        return True

    input_type = attributes.get("type")
    return bool(input_type) and str(input_type).lower() in INTERACTIVE_INPUT_TYPES


def filter_interactive_elements(elements: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep interactive elements, one per selector; the first occurrence wins."""
    seen = set()
    kept = []
    for element in elements:
        selector = element.get("selector")
        if not selector or selector in seen:
            continue
        if not is_interactive(element):
            continue
        seen.add(selector)
        kept.append(element)
    return kept


def _css_selector(tag: Tag) -> str:
    """Build a CSS path for a tag, anchored at the closest ancestor with an id."""
    segments = []
    node = tag
    while isinstance(node, Tag) and node.name not in ("[document]", "html"):
        node_id = node.get("id")
        if node_id:
            segments.append(f"#{node_id}")
            break
        siblings = node.parent.find_all(node.name, recursive=False) if node.parent else [node]
        if len(siblings) > 1:
            # Tag equality is structural, so locate the node by identity
            position = next(i for i, sibling in enumerate(siblings) if sibling is node)
            segments.append(f"{node.name}:nth-of-type({position + 1})")
        else:
            segments.append(node.name)
        node = node.parent
    return " > ".join(reversed(segments))


def extract_elements(html: str) -> List[Dict[str, Any]]:
    """Derive element descriptors from raw HTML.

    Used when the browser session cannot report elements itself. Visibility and
    bounding boxes are unknown without rendering, so elements default to visible.
    """
    soup = BeautifulSoup(html, "lxml")
    elements = []
    for tag in soup.find_all(True):
        attributes = {
            key: " ".join(value) if isinstance(value, list) else value
            for key, value in tag.attrs.items()
        }
        descriptor = {"tag_name": tag.name, "attributes": attributes}
        if not is_interactive(descriptor):
            continue
        descriptor.update(
            selector=_css_selector(tag),
            text_content=tag.get_text(" ", strip=True)[:500] or None,
            is_visible="hidden" not in attributes and attributes.get("type") != "hidden",
            bounding_box=None,
        )
        elements.append(descriptor)
    return elements


class SnapshotStore:
    """Persists page snapshots through a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def store_snapshot(
        self,
        url: str,
        title: Optional[str] = None,
        html: Optional[str] = None,
        elements: Optional[List[Dict[str, Any]]] = None,
    ) -> PageSnapshot:
        """Upsert website and page and replace the page's elements atomically.

        Args:
            url: Page URL, normalized before use
            title: Optional page title
            html: Raw HTML; when given, its hash becomes the page's content hash
                and elements are derived from it if none are passed
            elements: Element descriptors reported by the browser

        Returns:
            A PageSnapshot describing the stored page

        Raises:
            sqlalchemy.exc.SQLAlchemyError: nothing is persisted in that case
        """
        normalized = normalize_url(url)
        if elements is None:
            elements = extract_elements(html) if html else []
        kept = filter_interactive_elements(elements)
        now = datetime.utcnow()

        try:
            website = self.db.query(Website).filter(Website.domain == normalized.domain).first()
            if website is None:
                website = Website(domain=normalized.domain, name=normalized.domain)
                self.db.add(website)
                self.db.flush()

            page = self.db.query(WebsitePage).filter(WebsitePage.url == normalized.url).first()
            if page is None:
                page = WebsitePage(
                    website_id=website.id,
                    url=normalized.url,
                    path=normalized.path,
                    scan_count=0,
                )
                self.db.add(page)
                self.db.flush()

            page.scan_count = (page.scan_count or 0) + 1
            page.last_scanned_at = now
            if title:
                page.title = title[:512]
            if html is not None:
                page.content_hash = compute_content_hash(html)

            self.db.query(WebsiteElement).filter(WebsiteElement.page_id == page.id).delete(
                synchronize_session=False
            )
            self.db.add_all(
                [
                    WebsiteElement(
                        page_id=page.id,
                        tag_name=element.get("tag_name") or "",
                        selector=element["selector"],
                        text_content=element.get("text_content"),
                        attributes=element.get("attributes"),
                        is_visible=element.get("is_visible", True),
                        bounding_box=element.get("bounding_box"),
                        order_index=index,
                    )
                    for index, element in enumerate(kept)
                ]
            )
            self.db.commit()
        except sqlalchemy.exc.SQLAlchemyError:
            self.db.rollback()
            logger.exception("Snapshot of %s failed, nothing stored", normalized.url)
            raise

        self.db.expire(page, ["elements"])
        logger.debug("Stored snapshot of %s with %d elements", normalized.url, len(kept))
        return PageSnapshot(
            page_id=page.id,
            website_id=website.id,
            url=normalized.url,
            domain=normalized.domain,
            path=normalized.path,
            content_hash=page.content_hash,
            scan_count=page.scan_count,
            element_count=len(kept),
        )
