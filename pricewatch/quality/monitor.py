"""Scraping quality telemetry.

Every scrape that misses fields or fails validation is recorded as an issue. An
issue is identified by domain, adapter and the sorted set of missing fields, so
a shop whose layout changed produces one row with a growing occurrence count
instead of one row per scrape.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import sqlalchemy.exc
from sqlalchemy import func
from sqlalchemy.orm import Session

from config.settings import Settings, get_settings
from pricewatch.database.models import Availability, IssueSeverity, IssueStatus, ScrapingQualityLog
from pricewatch.errors import NotFoundError
from pricewatch.schemas import ScrapedData, ValidationResult

logger = logging.getLogger("pricewatch.quality")

CRITICAL_FIELDS = ("name", "price")
IMPORTANT_FIELDS = ("brand", "availability", "image_url")
OPTIONAL_FIELDS = ("ean", "asin", "description", "original_price")


def _is_missing(data: ScrapedData, field: str) -> bool:
    value = getattr(data, field)
    if field == "availability":
        return not value or value == Availability.UNKNOWN.value
    return value is None or value == ""


def classify_missing_fields(data: ScrapedData) -> Dict[str, List[str]]:
    return {
        "critical": [f for f in CRITICAL_FIELDS if _is_missing(data, f)],
        "important": [f for f in IMPORTANT_FIELDS if _is_missing(data, f)],
        "optional": [f for f in OPTIONAL_FIELDS if _is_missing(data, f)],
    }


def severity_for(missing: Dict[str, List[str]]) -> str:
    if missing["critical"]:
        return IssueSeverity.CRITICAL.value
    if missing["important"]:
        return IssueSeverity.WARNING.value
    return IssueSeverity.INFO.value


def issue_fingerprint(missing_fields: List[str], adapter: Optional[str]) -> str:
    return f"missing:{','.join(sorted(missing_fields))}|adapter:{adapter or 'generic'}"


class QualityMonitor:
    """Records extraction defects and their resolution status."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def log_result(
        self,
        url: str,
        adapter: Optional[str],
        scraped_data: ScrapedData,
        validation: ValidationResult,
        product_id: Optional[str] = None,
        html: Optional[str] = None,
        screenshot_path: Optional[str] = None,
        field_errors: Optional[Dict[str, str]] = None,
    ) -> Optional[ScrapingQualityLog]:
        """Upsert the issue for this scrape; returns None when nothing is wrong.

        Errors while writing are logged and swallowed; telemetry must not fail
        the scrape it describes.
        """
        missing = classify_missing_fields(scraped_data)
        all_missing = missing["critical"] + missing["important"] + missing["optional"]
        problems = list(validation.errors) + list(validation.warnings)
        if not all_missing and not problems:
            return None

        domain = (urlsplit(url).hostname or "").lower()
        adapter_key = adapter or ""
        fingerprint = issue_fingerprint(all_missing, adapter)
        now = datetime.utcnow()

        try:
            issue = self.db.query(ScrapingQualityLog).filter(
                ScrapingQualityLog.domain == domain,
                ScrapingQualityLog.adapter == adapter_key,
                ScrapingQualityLog.issue_fingerprint == fingerprint,
            ).first()

            if issue is not None:
                issue.last_seen_at = now
                issue.occurrence_count = (issue.occurrence_count or 0) + 1
                issue.url = url
                if product_id:
                    issue.product_id = product_id
                if screenshot_path:
                    issue.screenshot_path = screenshot_path
            else:
                extracted = {
                    name: value is not None and value != ""
                    for name, value in scraped_data.model_dump(exclude={"metadata", "scraped_at"}).items()
                }
                issue = ScrapingQualityLog(
                    domain=domain,
                    adapter=adapter_key,
                    issue_fingerprint=fingerprint,
                    url=url,
                    product_id=product_id,
                    missing_fields=all_missing,
                    field_errors=field_errors or {},
                    extracted_fields=extracted,
                    validation_errors=problems,
                    severity=severity_for(missing),
                    status=IssueStatus.OPEN.value,
                    html_sample=html[: self.settings.HTML_SAMPLE_LIMIT] if html else None,
                    screenshot_path=screenshot_path,
                    first_seen_at=now,
                    last_seen_at=now,
                    occurrence_count=1,
                )
                self.db.add(issue)

            self.db.commit()
            self.db.refresh(issue)
            logger.debug("Quality issue %s on %s seen %d times", fingerprint, domain, issue.occurrence_count)
            return issue
        except sqlalchemy.exc.SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to record quality issue for %s", url)
            return None

    def _get(self, issue_id: str) -> ScrapingQualityLog:
        issue = self.db.query(ScrapingQualityLog).filter(ScrapingQualityLog.id == issue_id).first()
        if issue is None:
            raise NotFoundError(f"Quality issue {issue_id} not found")
        return issue

    def acknowledge(self, issue_id: str) -> ScrapingQualityLog:
        issue = self._get(issue_id)
        issue.status = IssueStatus.ACKNOWLEDGED.value
        self.db.commit()
        return issue

    def resolve(self, issue_id: str, resolution: str, resolved_by: Optional[str] = None) -> ScrapingQualityLog:
        issue = self._get(issue_id)
        issue.status = IssueStatus.RESOLVED.value
        issue.resolution = resolution
        issue.resolved_at = datetime.utcnow()
        issue.resolved_by = resolved_by
        self.db.commit()
        return issue

    def ignore(self, issue_id: str, notes: Optional[str] = None) -> ScrapingQualityLog:
        issue = self._get(issue_id)
        issue.status = IssueStatus.IGNORED.value
        if notes:
            issue.notes = notes
        self.db.commit()
        return issue

    def list_issues(
        self,
        domain: Optional[str] = None,
        adapter: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[ScrapingQualityLog]:
        """Issues matching the filters, most recently seen first."""
        query = self.db.query(ScrapingQualityLog)

        if domain:
            query = query.filter(ScrapingQualityLog.domain == domain)
        if adapter is not None:
            query = query.filter(ScrapingQualityLog.adapter == adapter)
        if status:
            query = query.filter(ScrapingQualityLog.status == status)
        if severity:
            query = query.filter(ScrapingQualityLog.severity == severity)

        return query.order_by(ScrapingQualityLog.last_seen_at.desc()).limit(limit).all()

    def adapter_statistics(self) -> List[Dict[str, Any]]:
        """Open issue counts and total occurrences per domain and adapter."""
        rows = (
            self.db.query(
                ScrapingQualityLog.domain,
                ScrapingQualityLog.adapter,
                func.count(ScrapingQualityLog.id),
                func.sum(ScrapingQualityLog.occurrence_count),
            )
            .filter(ScrapingQualityLog.status == IssueStatus.OPEN.value)
            .group_by(ScrapingQualityLog.domain, ScrapingQualityLog.adapter)
            .order_by(func.sum(ScrapingQualityLog.occurrence_count).desc())
            .all()
        )
        return [
            {"domain": domain, "adapter": adapter or "generic", "open_issues": count, "occurrences": int(total or 0)}
            for domain, adapter, count, total in rows
        ]
