"""End-to-end scrape pipeline.

One request runs strictly in sequence: acquire a browser session, navigate,
extract fields with the shop's adapter, validate, then persist (snapshot,
product and source, merged product, variant, price ledger), queue match
suggestions and record quality telemetry. Browser steps retry under the scraping
preset and persistence under the database preset. Rows written before a failing
step stay; every write is keyed by a natural key, so repeating a request is safe.
"""

import asyncio
import enum
import hashlib
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from config.settings import Settings, get_settings
from pricewatch.browser.session import BrowserSessionProvider
from pricewatch.database.operations import SessionLocal, get_active_sources
from pricewatch.errors import BrowserError
from pricewatch.matching.attributes import AttributeExtractor
from pricewatch.matching.fuzzy import NameMatcher, ProductMatcher
from pricewatch.matching.identity import IdentityResolver
from pricewatch.matching.review import SuggestionQueue
from pricewatch.pricing.ledger import PriceLedger
from pricewatch.quality.monitor import QualityMonitor
from pricewatch.retry import DATABASE_RETRY, SCRAPING_RETRY, RetryPolicy
from pricewatch.schemas import (
    BatchResult,
    FailedScrape,
    PriceObservation,
    ProductData,
    ProductSummary,
    RefreshResult,
    ScrapeResult,
    ValidationResult,
)
from pricewatch.scrapers.base import Page, ScraperConfig
from pricewatch.scrapers.price_scraper import AdapterRegistry, ExtractionResult, PriceScraper, validate_data
from pricewatch.snapshots.store import SnapshotStore, extract_elements

logger = logging.getLogger("pricewatch.orchestrator")


class ScrapeState(str, enum.Enum):
    START = "start"
    SESSION_ACQUIRED = "session_acquired"
    NAVIGATED = "navigated"
    EXTRACTED = "extracted"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


class ScrapingOrchestrator:
    """Coordinates browser, extraction and persistence for product scrapes.

    Collaborators are injected; one instance is meant to live for the whole
    process. Each scrape opens its own database session from ``session_factory``.
    """

    def __init__(
        self,
        browser: BrowserSessionProvider,
        session_factory: Optional[sessionmaker] = None,
        registry: Optional[AdapterRegistry] = None,
        matcher_factory: Optional[Callable[[Session], ProductMatcher]] = None,
        settings: Optional[Settings] = None,
        scraping_retry: RetryPolicy = SCRAPING_RETRY,
        database_retry: RetryPolicy = DATABASE_RETRY,
    ):
        self.browser = browser
        self.session_factory = session_factory or SessionLocal
        self.scraper = PriceScraper(registry)
        self.matcher_factory = matcher_factory or NameMatcher
        self.settings = settings or get_settings()
        self.scraping_retry = scraping_retry
        self.database_retry = database_retry

    async def scrape_and_save_product(
        self,
        url: str,
        custom_config: Optional[ScraperConfig] = None,
        product_data: Optional[ProductData] = None,
        session_id: Optional[str] = None,
        humanized: bool = False,
        on_failure: Optional[Callable[[ScrapeState], None]] = None,
    ) -> ScrapeResult:
        """Scrape one product page and persist everything derived from it.

        Args:
            url: Product page URL
            custom_config: Selectors or extractors overriding the adapter's
            product_data: Caller-known product fields used as fallbacks
            session_id: Reuse an existing browser session; it is left open
            humanized: Pace browser actions like a human visitor
            on_failure: Called with the last state reached when the scrape fails

        Returns:
            ScrapeResult with a detached product summary

        Raises:
            The originating error once a step has exhausted its retries
        """
        state = ScrapeState.START
        owns_session = session_id is None

        try:
            if owns_session:
                session_id = await self.scraping_retry.run(self.browser.create_session, {"humanized": humanized})
            state = ScrapeState.SESSION_ACQUIRED

            await self.scraping_retry.run(self.browser.navigate, session_id, url)
            html = await self.scraping_retry.run(self.browser.get_html, session_id)
            page_info = await self.scraping_retry.run(self.browser.get_page_info, session_id)
            state = ScrapeState.NAVIGATED

            active_session = session_id
            page = Page(url, html, lambda fn, *args: self.browser.evaluate(active_session, fn, *args))
            extraction = await self.scraping_retry.run(self.scraper.scrape, page, custom_config)
            state = ScrapeState.EXTRACTED

            validation = validate_data(extraction.data)
            if not validation.is_valid:
                logger.warning("Validation failed for %s: %s", url, "; ".join(validation.errors))
            state = ScrapeState.VALIDATED

            screenshot_path = None
            if self.settings.CAPTURE_SCREENSHOTS:
                screenshot_path = await self._capture_screenshot(session_id, url)

            # Element extraction parses the whole page, so it runs in a worker thread
            elements = await asyncio.to_thread(extract_elements, html) if html else []

            with self.session_factory() as db:
                summary, variant_id, price_changed = await self.database_retry.run(
                    self._persist,
                    db,
                    url,
                    page_info,
                    html,
                    elements,
                    extraction,
                    validation,
                    product_data,
                    screenshot_path,
                    on_retry=lambda exc: db.rollback(),
                )
            state = ScrapeState.PERSISTED

            result = ScrapeResult(
                product=summary,
                scraped_data=extraction.data,
                session_id=session_id,
                state=ScrapeState.DONE.value,
                validation=validation,
                variant_id=variant_id,
                price_changed=price_changed,
            )
            state = ScrapeState.DONE
            return result
        except Exception:
            logger.error("Scrape of %s is %s after state %s", url, ScrapeState.FAILED.value, state.value)
            if on_failure is not None:
                on_failure(state)
            raise
        finally:
            if owns_session and session_id is not None:
                try:
                    await self.browser.close_session(session_id)
                except BrowserError as e:
                    logger.warning("Could not close browser session %s: %s", session_id, e)

    def _persist(
        self,
        db: Session,
        url: str,
        page_info: dict,
        html: str,
        elements: List[Dict[str, Any]],
        extraction: ExtractionResult,
        validation: ValidationResult,
        product_data: Optional[ProductData],
        screenshot_path: Optional[str],
    ):
        data = extraction.data
        product_data = product_data or ProductData()

        snapshot = SnapshotStore(db).store_snapshot(
            url, title=page_info.get("title"), html=html, elements=elements
        )

        matcher = self.matcher_factory(db)
        resolver = IdentityResolver(db, matcher, self.settings)
        product = resolver.find_or_create_product(snapshot.page_id, data, product_data)
        source = resolver.ensure_source(product.id, snapshot.page_id)
        resolver.apply_scraped_updates(product, data, product_data)
        merged = resolver.resolve_merged_product(product, snapshot.domain)

        metadata = {**product_data.metadata, **data.metadata}
        variant = AttributeExtractor(db).assign_variant(merged.id, product.id, product.name, metadata)

        price_changed = None
        if variant is None:
            logger.warning("No variant resolved for product %s, price not recorded", product.id)
        elif data.price is None or data.price < 0:
            logger.warning("No usable price for %s, price not recorded", url)
        else:
            update = PriceLedger(db, settings=self.settings).update_price(
                variant.id,
                source.id,
                PriceObservation(
                    price=data.price,
                    currency=data.currency,
                    original_price=data.original_price,
                    discount_percentage=data.discount_percentage,
                    availability=data.availability,
                    stock_quantity=data.stock_quantity,
                ),
            )
            price_changed = update.price_changed

        # Weaker candidates go to manual review regardless of the merge outcome
        candidates = matcher.find_matches(product.id)
        SuggestionQueue(db, self.settings).submit(
            product, candidates, lambda c: resolver.merge_threshold(c.product_id, snapshot.domain)
        )

        QualityMonitor(db, self.settings).log_result(
            url,
            extraction.adapter,
            data,
            validation,
            product_id=product.id,
            html=html,
            screenshot_path=screenshot_path,
            field_errors=extraction.field_errors,
        )

        db.refresh(product)
        return ProductSummary.model_validate(product), variant.id if variant else None, price_changed

    async def _capture_screenshot(self, session_id: str, url: str) -> Optional[str]:
        try:
            image = await self.browser.screenshot(session_id, full_page=True)
        except BrowserError as e:
            logger.warning("Screenshot of %s failed: %s", url, e)
            return None

        os.makedirs(self.settings.SCREENSHOT_DIR, exist_ok=True)
        name = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        path = os.path.join(self.settings.SCREENSHOT_DIR, f"{name}_{datetime.utcnow():%Y%m%d%H%M%S}.png")
        with open(path, "wb") as f:
            f.write(image)
        return path

    async def _scrape_or_fail(self, url: str, humanized: bool):
        reached = []
        try:
            return await self.scrape_and_save_product(url, humanized=humanized, on_failure=reached.append)
        except Exception as e:  # pylint: disable=broad-exception-caught
            # One broken URL must not sink the batch
            return FailedScrape(
                url=url,
                error=str(e) or type(e).__name__,
                failed_after=reached[0].value if reached else None,
            )

    async def scrape_multiple_products(
        self,
        urls: List[str],
        parallel: bool = False,
        max_concurrent: Optional[int] = None,
        humanized: bool = False,
    ) -> BatchResult:
        """Scrape several URLs, sequentially or in concurrent chunks.

        Sequential mode keeps the given order with a fixed delay between
        requests. Parallel mode runs ``max_concurrent`` URLs at a time with a
        delay between chunks and no ordering guarantee inside a chunk.
        """
        result = BatchResult()

        def collect(outcome):
            if isinstance(outcome, FailedScrape):
                result.failed.append(outcome)
            else:
                result.successful.append(outcome)

        if not parallel:
            for index, url in enumerate(urls):
                collect(await self._scrape_or_fail(url, humanized))
                if index < len(urls) - 1:
                    await asyncio.sleep(self.settings.SEQUENTIAL_DELAY)
            return result

        size = max(1, max_concurrent or self.settings.MAX_CONCURRENT)
        chunks = [urls[i:i + size] for i in range(0, len(urls), size)]
        for index, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(*(self._scrape_or_fail(url, humanized) for url in chunk))
            for outcome in outcomes:
                collect(outcome)
            if index < len(chunks) - 1:
                await asyncio.sleep(self.settings.CHUNK_DELAY)

        logger.info("Batch finished: %d successful, %d failed", len(result.successful), len(result.failed))
        return result

    async def refresh_all_prices(self, max_products: Optional[int] = None) -> RefreshResult:
        """Re-scrape active sources, least recently scraped first."""
        limit = max_products or self.settings.REFRESH_MAX_PRODUCTS
        with self.session_factory() as db:
            urls = [source.page.url for source in get_active_sources(db, limit)]

        result = RefreshResult()
        for index, url in enumerate(urls):
            outcome = await self._scrape_or_fail(url, humanized=False)
            if isinstance(outcome, FailedScrape):
                logger.warning("Refresh of %s failed: %s", url, outcome.error)
                result.failed += 1
            else:
                result.refreshed += 1
            if index < len(urls) - 1:
                await asyncio.sleep(self.settings.REFRESH_DELAY)

        logger.info("Price refresh finished: %d refreshed, %d failed", result.refreshed, result.failed)
        return result
