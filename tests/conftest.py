"""Shared test fixtures for the price tracker."""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import pytest
from bs4 import BeautifulSoup
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import Settings
from pricewatch.browser.session import BrowserSessionProvider
from pricewatch.database.models import Base, MergedProduct, Product
from pricewatch.errors import BrowserError, SessionNotFoundError
from pricewatch.retry import DATABASE_RETRY, SCRAPING_RETRY
from pricewatch.scrapers.orchestrator import ScrapingOrchestrator


def product_page(
    name: Optional[str],
    price: Optional[str],
    availability: str = "Auf Lager",
    brand: Optional[str] = "Samsung",
    image: str = "/images/product.jpg",
    extra: str = "",
) -> str:
    """Render a minimal shop page the generic adapter understands."""
    parts = ["<html><head>"]
    parts.append(f"<title>{name or 'Shop'}</title></head><body>")
    parts.append('<nav><a href="/">Home</a><a href="/cart">Cart</a></nav>')
    if name:
        parts.append(f'<h1 class="product-title">{name}</h1>')
    if brand:
        parts.append(f'<span itemprop="brand">{brand}</span>')
    if price:
        parts.append(f'<span class="price">{price}</span>')
    parts.append(f'<div class="availability">{availability}</div>')
    if image:
        parts.append(f'<div class="product-image"><img src="{image}"></div>')
    parts.append('<form action="/cart/add"><button type="submit">In den Warenkorb</button></form>')
    parts.append(extra)
    parts.append("</body></html>")
    return "".join(parts)


class FakeBrowser(BrowserSessionProvider):
    """In-memory browser serving canned HTML per URL.

    ``failures`` maps a URL to exceptions raised by successive navigations
    before the page loads normally.
    """

    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages: Dict[str, str] = dict(pages or {})
        self.failures: Dict[str, List[Exception]] = {}
        self.sessions: Dict[str, Optional[str]] = {}
        self.created: List[str] = []
        self.closed: List[str] = []
        self.navigations: List[str] = []

    async def create_session(self, config=None) -> str:
        session_id = str(uuid.uuid4())
        self.sessions[session_id] = None
        self.created.append(session_id)
        return session_id

    def _check(self, session_id: str):
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Browser session {session_id} not found")

    async def navigate(self, session_id: str, url: str) -> None:
        self._check(session_id)
        self.navigations.append(url)
        pending = self.failures.get(url)
        if pending:
            raise pending.pop(0)
        if url not in self.pages:
            raise BrowserError(f"HTTP 404 fetching {url}", status_code=404)
        self.sessions[session_id] = url

    async def get_html(self, session_id: str) -> str:
        self._check(session_id)
        return self.pages[self.sessions[session_id]]

    async def get_page_info(self, session_id: str) -> Dict[str, Any]:
        self._check(session_id)
        url = self.sessions[session_id]
        soup = BeautifulSoup(self.pages[url], "lxml")
        return {"url": url, "title": soup.title.get_text(strip=True) if soup.title else None}

    async def evaluate(self, session_id: str, fn: Callable, *args) -> Any:
        self._check(session_id)
        return fn(BeautifulSoup(self.pages[self.sessions[session_id]], "lxml"), *args)

    async def screenshot(self, session_id: str, **options) -> bytes:
        return b"\x89PNG fake"

    async def close_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.closed.append(session_id)


@pytest.fixture
def engine():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> Settings:
    """Settings with all pacing delays disabled."""
    settings = Settings()
    settings.SEQUENTIAL_DELAY = 0
    settings.CHUNK_DELAY = 0
    settings.REFRESH_DELAY = 0
    settings.CAPTURE_SCREENSHOTS = False
    return settings


@pytest.fixture
def fast_scraping_retry():
    return replace(SCRAPING_RETRY, base_delay=0, jitter=0, attempt_timeout=5)


@pytest.fixture
def fast_database_retry():
    return replace(DATABASE_RETRY, base_delay=0)


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def orchestrator(browser, session_factory, settings, fast_scraping_retry, fast_database_retry) -> ScrapingOrchestrator:
    return ScrapingOrchestrator(
        browser,
        session_factory=session_factory,
        settings=settings,
        scraping_retry=fast_scraping_retry,
        database_retry=fast_database_retry,
    )


@pytest.fixture
def make_product(db):
    """Factory for Product rows, optionally inside a fresh merged product."""

    def _make(name: str = "Samsung Galaxy S23 128GB Schwarz", merged: bool = False, **fields) -> Product:
        product = Product(name=name, **fields)
        db.add(product)
        db.flush()
        if merged:
            group = MergedProduct(name=name, source_count=1, data_quality_score=0.0)
            db.add(group)
            db.flush()
            product.merged_product_id = group.id
        db.commit()
        db.refresh(product)
        return product

    return _make
