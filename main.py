"""
Auction Scraper - CLI Entry Point

Scrapes completed vehicle auctions from the built-in sources and manages
the raw content archive.
"""

import asyncio
import argparse
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from auction_scraper.config import config
from auction_scraper.errors import ConnectivityError
from auction_scraper.fetchers import create_gateway
from auction_scraper.models import FilterParams
from auction_scraper.orchestrator import ScrapeOrchestrator
from auction_scraper.pipeline.archive import ContentArchive
from auction_scraper.pipeline.listing_store import JSONExporter, SQLiteListingStore
from auction_scraper.sources import SOURCES


console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with rich handler."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


async def scrape_async(args: argparse.Namespace) -> int:
    """Run one scrape and optionally export the results."""
    params = FilterParams(
        model=args.model,
        trim=args.trim,
        max_pages=args.max_pages,
        only_sold=not args.include_unsold,
        fetch_details=not args.index_only,
        persist=not args.no_persist,
    )

    console.print(f"\n[bold blue]Auction Scraper[/bold blue]")
    console.print(f"Source: {args.source}")
    console.print(f"Model: {args.model or 'all'}  Trim: {args.trim or 'all'}  Max pages: {args.max_pages}")
    console.print(f"Gateway: {args.backend or config.gateway.backend}")
    console.print()

    config.ensure_directories()
    orchestrator = ScrapeOrchestrator(
        gateway=create_gateway(args.backend),
        store=SQLiteListingStore() if params.persist else None,
    )

    try:
        listings = await orchestrator.run(args.source, params)
    except ConnectivityError as e:
        console.print(f"\n[red]Cannot start scrape: {e}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        orchestrator.stop()
        return 130

    if listings and (args.output or args.no_persist):
        exporter = JSONExporter(jsonl=args.jsonl)
        export_path = await exporter.export([l.to_dict() for l in listings], args.output)
        console.print(f"\n[green]Results exported to: {export_path}[/green]")

    stats = orchestrator.get_stats()
    console.print("\n[bold]Final Statistics:[/bold]")
    for key, value in stats["scraper"].items():
        console.print(f"  {key}: {value}")
    return 0


async def cleanup_async(args: argparse.Namespace) -> int:
    """Delete expired archive entries and report archive size."""
    archive = ContentArchive()
    deleted = await archive.cleanup_expired()
    stats = await archive.get_stats()

    console.print(f"[green]Removed {deleted} expired entries[/green]")
    console.print(f"Archive: {stats['total_files']} files, {stats['total_size_mb']} MB")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Auction Scraper - completed vehicle auction collection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scrape --source bring-a-trailer --model 911 --trim GT3 --max-pages 3
  %(prog)s scrape --source cars-and-bids --model 911-997 --index-only --no-persist -o 997.json
  %(prog)s cleanup
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=config.log_level,
        help=f"Logging level (default: {config.log_level})",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    scrape = commands.add_parser("scrape", help="Scrape one source")
    scrape.add_argument(
        "--source", "-s",
        choices=sorted(SOURCES),
        default="bring-a-trailer",
        help="Auction source (default: bring-a-trailer)",
    )
    scrape.add_argument("--model", "-m", help='Model slug, "911-gt" or "911-<generation>"')
    scrape.add_argument("--trim", "-t", help="Trim name, e.g. GT3 or \"GT4 RS\"")
    scrape.add_argument(
        "--max-pages",
        type=int,
        default=1,
        help="Load-more clicks per target, capped at 50 (default: 1)",
    )
    scrape.add_argument("--index-only", action="store_true", help="Skip the detail phase")
    scrape.add_argument("--no-persist", action="store_true", help="Do not write listings to the database")
    scrape.add_argument("--include-unsold", action="store_true", help="Keep unsold and active auctions")
    scrape.add_argument(
        "--backend",
        choices=["browser", "api"],
        help=f"Gateway backend (default: {config.gateway.backend})",
    )
    scrape.add_argument("--output", "-o", help="Export results to this JSON file")
    scrape.add_argument("--jsonl", action="store_true", help="Export as JSON Lines")

    commands.add_parser("cleanup", help="Delete expired archive entries")
    return parser


def main() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()
    setup_logging(args.log_level)

    if args.command == "scrape":
        code = asyncio.run(scrape_async(args))
    else:
        code = asyncio.run(cleanup_async(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
