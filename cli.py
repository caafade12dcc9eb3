import asyncio
import csv
import logging
import traceback
from decimal import Decimal
from io import StringIO

import click
import sqlalchemy.exc
from tabulate import tabulate

from pricewatch.browser.session import HttpBrowser
from pricewatch.database.operations import SessionLocal, get_merged_product, get_variants, init_db
from pricewatch.errors import AlertValidationError, BrowserError, NotFoundError
from pricewatch.matching.review import SuggestionQueue
from pricewatch.pricing.alerts import AlertEvaluator
from pricewatch.pricing.comparison import PriceComparator
from pricewatch.pricing.ledger import PriceLedger
from pricewatch.quality.monitor import QualityMonitor
from pricewatch.schemas import ProductData
from pricewatch.scrapers.orchestrator import ScrapingOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("pricewatch-cli")


def _fail(ctx, message):
    click.echo(message)
    if ctx.obj["VERBOSE"]:
        click.echo(traceback.format_exc())


def _money(value, currency="EUR"):
    if value is None:
        return "-"
    return f"{Decimal(value):.2f} {currency}"


def _truncate(text, length=40):
    text = text or ""
    return text if len(text) <= length else text[: length - 3] + "..."


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, verbose):
    """Product price tracking tool."""
    # Store verbose flag in the Click context instead of a global variable
    ctx.ensure_object(dict)
    ctx.obj["VERBOSE"] = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")


@cli.command()
def init():
    """Initialize the database."""
    init_db()
    click.echo("Database initialized!")


@cli.command()
@click.argument("url")
@click.option("--product-name", "-n", help="Name to use if the page has none")
@click.option("--brand", "-b", help="Brand to use if the page has none")
@click.option("--category", "-c", help="Category to assign to the product")
@click.option("--ean", help="Known EAN of the product")
@click.option("--humanized", is_flag=True, help="Pace requests like a human visitor")
@click.pass_context
def scrape(ctx, url, product_name, brand, category, ean, humanized):
    """Scrape a single product page and record its price."""
    orchestrator = ScrapingOrchestrator(HttpBrowser())
    product_data = ProductData(name=product_name, brand=brand, category=category, ean=ean)

    try:
        result = asyncio.run(
            orchestrator.scrape_and_save_product(url, product_data=product_data, humanized=humanized)
        )
    except BrowserError as e:
        _fail(ctx, f"Browser error: {str(e)}")
        return
    except sqlalchemy.exc.SQLAlchemyError as e:
        _fail(ctx, f"Database error: {str(e)}")
        return

    data = result.scraped_data
    click.echo(f"Product: {result.product.name}")
    click.echo(f"   Price: {_money(data.price, data.currency)}")
    if data.original_price is not None:
        click.echo(f"   Was: {_money(data.original_price, data.currency)} (-{data.discount_percentage}%)")
    click.echo(f"   Availability: {data.availability}")
    click.echo(f"   Product ID: {result.product.id}")
    click.echo(f"   Merged product: {result.product.merged_product_id}")
    click.echo(f"   Variant: {result.variant_id}")
    if result.price_changed is not None:
        click.echo("   Price changed" if result.price_changed else "   Price unchanged")
    for error in result.validation.errors + result.validation.warnings:
        click.echo(f"   Warning: {error}")


@cli.command("scrape-batch")
@click.argument("urls", nargs=-1, required=True)
@click.option("--parallel", "-p", is_flag=True, help="Scrape in concurrent chunks")
@click.option("--max-concurrent", "-m", type=int, default=None, help="Chunk size in parallel mode")
@click.option("--humanized", is_flag=True, help="Pace requests like a human visitor")
def scrape_batch(urls, parallel, max_concurrent, humanized):
    """Scrape several product pages."""
    orchestrator = ScrapingOrchestrator(HttpBrowser())
    click.echo(f"Scraping {len(urls)} products{' in parallel' if parallel else ''}...")
    result = asyncio.run(
        orchestrator.scrape_multiple_products(
            list(urls), parallel=parallel, max_concurrent=max_concurrent, humanized=humanized
        )
    )

    rows = [
        [_truncate(r.product.name), _money(r.scraped_data.price, r.scraped_data.currency), r.scraped_data.availability]
        for r in result.successful
    ]
    if rows:
        click.echo(tabulate(rows, headers=["Product", "Price", "Availability"], tablefmt="grid"))
    for failure in result.failed:
        click.echo(f"Failed: {failure.url} ({failure.error})")
    click.echo(f"\nTotal: {len(result.successful)} successful, {len(result.failed)} failed.")


@cli.command()
@click.option("--max-products", "-m", type=int, default=None, help="Maximum number of sources to refresh")
def refresh(max_products):
    """Re-scrape all active product sources."""
    orchestrator = ScrapingOrchestrator(HttpBrowser())
    result = asyncio.run(orchestrator.refresh_all_prices(max_products=max_products))
    click.echo(f"Refreshed {result.refreshed} products, {result.failed} failed.")


@cli.command()
@click.argument("variant_id")
@click.option("--days", "-d", type=int, default=None, help="Only show the last N days")
@click.option(
    "--format-type",
    "-f",
    type=click.Choice(["text", "table", "csv"]),
    default="table",
    help="Output format (default: table)",
)
@click.option("--output", "-o", type=click.Path(), help="Save results to file")
@click.pass_context
def history(ctx, variant_id, days, format_type, output):
    """Show the price history of a variant."""
    db = SessionLocal()
    try:
        ledger = PriceLedger(db)
        rows = ledger.get_price_history(variant_id, days=days)
        stats = ledger.get_price_statistics(variant_id, days=days or 30)
        result_output = format_history(rows, format_type)

        if output:
            with open(output, "w", encoding="utf-8") as f:
                f.write(result_output)
            click.echo(f"Results written to {output}")
        else:
            click.echo(result_output)

        if stats["count"]:
            click.echo(
                f"\nMin {_money(stats['min'])} / Max {_money(stats['max'])} / "
                f"Avg {_money(stats['avg'])} over {stats['count']} entries"
            )
    except sqlalchemy.exc.SQLAlchemyError as e:
        _fail(ctx, f"Database error: {str(e)}")
    finally:
        db.close()


@cli.command()
@click.argument("merged_product_id")
@click.pass_context
def compare(ctx, merged_product_id):
    """Compare current prices of a merged product across shops."""
    db = SessionLocal()
    try:
        merged = get_merged_product(db, merged_product_id)
        if merged is None:
            click.echo(f"Error: Merged product with ID {merged_product_id} not found.")
            return

        click.echo(f"{merged.name} ({merged.source_count} sources, quality {merged.data_quality_score:.2f})")
        comparator = PriceComparator(db)
        offers = comparator.current_offers(merged_product_id)
        if not offers:
            click.echo("No prices recorded yet.")
            return

        table_data = [
            [_truncate(o["variant_label"], 30), o["shop"], _money(o["price"], o["currency"]), o["availability"]]
            for o in offers
        ]
        click.echo(tabulate(table_data, headers=["Variant", "Shop", "Price", "Availability"], tablefmt="grid"))

        for variant_id, summary in comparator.compare_sellers(merged_product_id).items():
            if summary["offer_count"] > 1:
                click.echo(
                    f"{summary['variant_label']}: cheapest at {summary['cheapest_shop']} "
                    f"({_money(summary['cheapest_price'])}), spread {summary['spread_percent']}%"
                )
    except sqlalchemy.exc.SQLAlchemyError as e:
        _fail(ctx, f"Database error: {str(e)}")
    finally:
        db.close()


@cli.command()
@click.argument("merged_product_id")
def variants(merged_product_id):
    """List the variants of a merged product."""
    db = SessionLocal()
    try:
        rows = [
            [v.id, v.label, v.fingerprint, "yes" if v.is_default else ""]
            for v in get_variants(db, merged_product_id)
        ]
        if not rows:
            click.echo("No variants found.")
            return
        click.echo(tabulate(rows, headers=["ID", "Label", "Fingerprint", "Default"], tablefmt="grid"))
    finally:
        db.close()


@cli.command()
@click.option("--limit", "-l", type=int, default=50, help="Maximum number of suggestions")
def suggestions(limit):
    """List pending match suggestions, most confident first."""
    db = SessionLocal()
    try:
        rows = []
        for s in SuggestionQueue(db).pending(limit=limit):
            compared = s.comparison_data or {}
            rows.append(
                [
                    _truncate(compared.get("product_name"), 30),
                    _truncate(compared.get("candidate_name"), 30),
                    s.merged_product_id,
                    f"{s.confidence:.2f}",
                    ", ".join(s.match_reasons or []),
                ]
            )
        if not rows:
            click.echo("No pending suggestions.")
            return
        click.echo(tabulate(rows, headers=["Product", "Candidate", "Merged product", "Confidence", "Reasons"], tablefmt="grid"))
    finally:
        db.close()


@cli.group()
def alerts():
    """Manage price alerts."""


@alerts.command("create")
@click.option("--name", required=True, help="Alert name")
@click.option(
    "--type",
    "alert_type",
    required=True,
    type=click.Choice(["below_price", "percentage_drop", "back_in_stock", "price_error"]),
)
@click.option("--merged-product", help="Merged product ID to watch")
@click.option("--variant", help="Variant ID to watch")
@click.option("--target-price", type=str, help="Target price for below_price alerts")
@click.option("--threshold", type=str, help="Drop in percent for percentage_drop alerts")
@click.pass_context
def alerts_create(ctx, name, alert_type, merged_product, variant, target_price, threshold):
    """Create a price alert."""
    db = SessionLocal()
    try:
        alert = AlertEvaluator(db).create_alert(
            name,
            alert_type,
            merged_product_id=merged_product,
            variant_id=variant,
            target_price=Decimal(target_price) if target_price else None,
            percentage_threshold=Decimal(threshold) if threshold else None,
        )
        click.echo(f"Created alert: {alert.id}")
    except AlertValidationError as e:
        click.echo(f"Invalid alert: {str(e)}")
    except sqlalchemy.exc.SQLAlchemyError as e:
        db.rollback()
        _fail(ctx, f"Database error: {str(e)}")
    finally:
        db.close()


@alerts.command("list")
@click.option("--status", type=click.Choice(["active", "triggered", "expired", "disabled"]))
def alerts_list(status):
    """List price alerts."""
    db = SessionLocal()
    try:
        rows = [
            [a.id, _truncate(a.name, 30), a.alert_type, a.status, _money(a.target_price), a.triggered_at or "-"]
            for a in AlertEvaluator(db).list_alerts(status=status)
        ]
        if not rows:
            click.echo("No alerts found.")
            return
        click.echo(tabulate(rows, headers=["ID", "Name", "Type", "Status", "Target", "Triggered"], tablefmt="grid"))
    finally:
        db.close()


@alerts.command("reset")
@click.argument("alert_id")
def alerts_reset(alert_id):
    """Re-arm a triggered alert."""
    db = SessionLocal()
    try:
        AlertEvaluator(db).reset_alert(alert_id)
        click.echo(f"Alert {alert_id} is active again.")
    except NotFoundError as e:
        click.echo(f"Error: {str(e)}")
    finally:
        db.close()


@alerts.command("disable")
@click.argument("alert_id")
def alerts_disable(alert_id):
    """Stop evaluating an alert."""
    db = SessionLocal()
    try:
        AlertEvaluator(db).disable_alert(alert_id)
        click.echo(f"Alert {alert_id} disabled.")
    except NotFoundError as e:
        click.echo(f"Error: {str(e)}")
    finally:
        db.close()


@cli.group()
def quality():
    """Inspect and triage scraping quality issues."""


@quality.command("list")
@click.option("--domain", help="Only issues of this domain")
@click.option("--adapter", help="Only issues of this adapter")
@click.option("--status", type=click.Choice(["open", "acknowledged", "resolved", "ignored"]), default="open")
@click.option("--severity", type=click.Choice(["critical", "warning", "info"]))
@click.option("--limit", type=int, default=50)
def quality_list(domain, adapter, status, severity, limit):
    """List quality issues."""
    db = SessionLocal()
    try:
        issues = QualityMonitor(db).list_issues(
            domain=domain, adapter=adapter, status=status, severity=severity, limit=limit
        )
        if not issues:
            click.echo("No quality issues found.")
            return
        rows = [
            [
                i.id,
                i.domain,
                i.adapter or "generic",
                i.severity,
                ", ".join(i.missing_fields or []) or "-",
                i.occurrence_count,
                i.last_seen_at.strftime("%Y-%m-%d %H:%M") if i.last_seen_at else "-",
            ]
            for i in issues
        ]
        headers = ["ID", "Domain", "Adapter", "Severity", "Missing", "Count", "Last seen"]
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))
    finally:
        db.close()


@quality.command("ack")
@click.argument("issue_id")
def quality_ack(issue_id):
    """Acknowledge a quality issue."""
    db = SessionLocal()
    try:
        QualityMonitor(db).acknowledge(issue_id)
        click.echo(f"Issue {issue_id} acknowledged.")
    except NotFoundError as e:
        click.echo(f"Error: {str(e)}")
    finally:
        db.close()


@quality.command("resolve")
@click.argument("issue_id")
@click.option("--resolution", "-r", required=True, help="What was done about it")
@click.option("--by", "resolved_by", help="Who resolved it")
def quality_resolve(issue_id, resolution, resolved_by):
    """Mark a quality issue as resolved."""
    db = SessionLocal()
    try:
        QualityMonitor(db).resolve(issue_id, resolution, resolved_by)
        click.echo(f"Issue {issue_id} resolved.")
    except NotFoundError as e:
        click.echo(f"Error: {str(e)}")
    finally:
        db.close()


@quality.command("ignore")
@click.argument("issue_id")
@click.option("--notes", help="Why the issue is ignored")
def quality_ignore(issue_id, notes):
    """Ignore a quality issue."""
    db = SessionLocal()
    try:
        QualityMonitor(db).ignore(issue_id, notes)
        click.echo(f"Issue {issue_id} ignored.")
    except NotFoundError as e:
        click.echo(f"Error: {str(e)}")
    finally:
        db.close()


@quality.command("stats")
def quality_stats():
    """Open issues per shop and adapter."""
    db = SessionLocal()
    try:
        stats = QualityMonitor(db).adapter_statistics()
        if not stats:
            click.echo("No open quality issues.")
            return
        rows = [[s["domain"], s["adapter"], s["open_issues"], s["occurrences"]] for s in stats]
        click.echo(tabulate(rows, headers=["Domain", "Adapter", "Open issues", "Occurrences"], tablefmt="grid"))
    finally:
        db.close()


def format_history(rows, format_type):
    """Format price history rows based on specified format type."""
    if not rows:
        return "No price history found."

    if format_type == "text":
        lines = [f"Found {len(rows)} price entries:"]
        for i, row in enumerate(rows, 1):
            lines.append(f"\n{i}. {row.recorded_at:%Y-%m-%d %H:%M} {_money(row.price, row.currency)}")
            if row.price_delta is not None:
                lines.append(f"   Change: {row.price_delta:+.2f} ({row.percentage_change or 0:+.2f}%)")
            lines.append(f"   Availability: {row.availability}")
        return "\n".join(lines)

    elif format_type == "csv":
        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(["Recorded", "Last seen", "Price", "Currency", "Change", "Change %", "Availability"])
        for row in rows:
            writer.writerow([
                row.recorded_at.isoformat(),
                row.updated_at.isoformat() if row.updated_at else "",
                f"{row.price:.2f}",
                row.currency,
                f"{row.price_delta:.2f}" if row.price_delta is not None else "",
                f"{row.percentage_change:.2f}" if row.percentage_change is not None else "",
                row.availability,
            ])
        return output.getvalue()

    else:  # table format
        table_data = []
        for row in rows:
            change = "-"
            if row.price_delta is not None:
                change = f"{row.price_delta:+.2f} ({row.percentage_change or 0:+.2f}%)"
            table_data.append([
                row.recorded_at.strftime("%Y-%m-%d %H:%M"),
                row.updated_at.strftime("%Y-%m-%d %H:%M") if row.updated_at else "-",
                _money(row.price, row.currency),
                change,
                row.availability,
            ])

        headers = ["Recorded", "Last seen", "Price", "Change", "Availability"]
        return tabulate(table_data, headers=headers, tablefmt="grid")


if __name__ == "__main__":
    # This runs the Click application
    cli.main(obj={})
