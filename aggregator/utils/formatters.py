"""
Output formatting for the CLI.

Renders search results and batch job reports as rich tables, or as JSON
for scripting.
"""

import json
from typing import Any, Optional, Union

from rich.table import Table

from aggregator.models.schemas import (
    AggregateResult,
    BackfillReport,
    BaseModel,
    CoverageReport,
    ExternalListing,
)

TITLE_WIDTH = 60


def truncate(text: Optional[str], width: int = TITLE_WIDTH) -> str:
    if not text:
        return "-"
    return text if len(text) <= width else text[: width - 3] + "..."


def format_price(listing: ExternalListing) -> str:
    """
    "USD 1.20 - 3.50", "CNY 35.00", or the raw display string when nothing
    was parsed.
    """
    if listing.price_min is None:
        return listing.price or "-"
    currency = listing.currency or ""
    if listing.price_max is not None and listing.price_max != listing.price_min:
        return f"{currency} {listing.price_min:,.2f} - {listing.price_max:,.2f}".strip()
    return f"{currency} {listing.price_min:,.2f}".strip()


def format_moq(listing: ExternalListing) -> str:
    if listing.moq_value is not None:
        return f"{listing.moq_value:,}"
    return listing.moq or "-"


def to_json(data: Union[BaseModel, dict[str, Any], list]) -> str:
    if isinstance(data, BaseModel):
        return data.model_dump_json(indent=2)
    return json.dumps(data, indent=2, default=str, ensure_ascii=False)


# =============================================================================
# Tables
# =============================================================================

def format_search_table(result: AggregateResult) -> Table:
    """
    One row per listing on the page.

    | # | Platform | Title | Price | MOQ | Store |
    """
    source = result.meta.source if result.meta else "live"
    last = result.offset + len(result.items)
    table = Table(
        title=f"Results {result.offset + 1 if result.items else 0}-{last} of {result.total} ({source})",
        header_style="bold magenta",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Platform", style="cyan")
    table.add_column("Title")
    table.add_column("Price", justify="right")
    table.add_column("MOQ", justify="right")
    table.add_column("Store")

    for index, item in enumerate(result.items, result.offset + 1):
        table.add_row(
            str(index),
            item.platform.value,
            truncate(item.title),
            format_price(item),
            format_moq(item),
            truncate(item.store_name, 30),
        )
    return table


def format_platform_table(result: AggregateResult) -> Optional[Table]:
    """Per-platform counts and failures; None when there is no metadata."""
    meta = result.meta
    if meta is None or not meta.platform_counts:
        return None
    table = Table(title="Platforms", header_style="bold magenta")
    table.add_column("Platform")
    table.add_column("Listings", justify="right")
    table.add_column("Status")
    for platform, count in sorted(meta.platform_counts.items()):
        if platform in meta.blocked_platforms:
            status = "[red]blocked[/red]"
        elif platform in meta.failed_platforms:
            status = "[yellow]failed[/yellow]"
        else:
            status = "[green]ok[/green]"
        table.add_row(platform, str(count), status)
    return table


def format_coverage_table(report: CoverageReport) -> Table:
    table = Table(
        title=f"Coverage (final target {report.final_target}: {'met' if report.met else 'NOT met'})",
        header_style="bold magenta",
    )
    table.add_column("Target", justify="right")
    table.add_column("Cycles", justify="right")
    table.add_column("Met")
    table.add_column("Leaves", justify="right")
    table.add_column("Zeros", justify="right")
    table.add_column("% >=1", justify="right")
    table.add_column("% >=4", justify="right")
    table.add_column("% >=8", justify="right")
    table.add_column("Min", justify="right")
    table.add_column("Max", justify="right")

    for stage in report.stages:
        s = stage.summary
        table.add_row(
            str(stage.target),
            str(stage.cycles),
            "[green]yes[/green]" if stage.met else "[red]no[/red]",
            str(s.total_leaves),
            str(s.zeros),
            f"{s.pct_ge1:.1f}",
            f"{s.pct_ge4:.1f}",
            f"{s.pct_ge8:.1f}",
            str(s.min),
            str(s.max),
        )
    return table


def format_backfill_table(report: BackfillReport) -> Table:
    table = Table(title=f"Backfill {report.platform.value}", show_header=False)
    table.add_row("Processed", str(report.processed))
    table.add_row("Good", f"[green]{report.good}[/green]")
    table.add_row("Partial", f"[yellow]{report.partial}[/yellow]")
    table.add_row("Bad", f"[red]{report.bad}[/red]")
    table.add_row("Errors", str(report.errors))
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Cooldowns", str(report.cooldowns))
    if report.completed:
        status = "[green]complete[/green]"
    elif report.interrupted:
        status = "[yellow]interrupted (resumable)[/yellow]"
    else:
        status = "[yellow]incomplete[/yellow]"
    table.add_row("Status", status)
    return table


__all__ = [
    "format_backfill_table",
    "format_coverage_table",
    "format_moq",
    "format_platform_table",
    "format_price",
    "format_search_table",
    "to_json",
    "truncate",
]
