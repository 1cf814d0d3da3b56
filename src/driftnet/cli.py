"""CLI interface for driftnet."""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Optional
import click
import structlog
from tqdm.asyncio import tqdm

from driftnet import __version__
from driftnet.engine import CrawlerEngine
from driftnet.error_tracker import ErrorSnapshotter, ErrorTracker
from driftnet.errors import DriftnetError
from driftnet.events import CrawlerEvent
from driftnet.fetcher import Fetcher
from driftnet.handlers import HtmlRequestHandler
from driftnet.links import EnqueueStrategy
from driftnet.models import CrawlRunResult, EngineConfig
from driftnet.queue import PersistentRequestQueue
from driftnet.state import StatePersister
from driftnet.stats import CrawlStats, format_run_summary
from driftnet.storage import StorageFactory
from driftnet.strategies import create_queue_strategy
from driftnet.writers import FORMATS, Writer


def configure_logging(verbose: bool = False) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
    )


def default_queue_id(urls: tuple[str, ...]) -> str:
    """Stable id per seed set, so re-running the same crawl resumes it."""
    digest = hashlib.sha1("\n".join(sorted(urls)).encode()).hexdigest()
    return f"crawl-{digest[:12]}"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs")
def main(verbose: bool):
    """
    DRIFTNET - resumable, polite web crawler.
    """
    configure_logging(verbose)


@main.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--max-depth", "-d", type=int, default=None, help="Maximum crawl depth (default: unlimited)")
@click.option("--max-requests", "-n", type=int, default=None, help="Maximum number of requests per crawl")
@click.option("--min-concurrency", type=int, default=1, help="Lower bound for concurrency (default: 1)")
@click.option("--max-concurrency", "-c", type=int, default=10, help="Upper bound for concurrency (default: 10)")
@click.option("--rate-limit", type=int, default=60, help="Max requests per domain per minute (default: 60)")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in EnqueueStrategy], case_sensitive=False),
    default=EnqueueStrategy.SAME_HOSTNAME.value,
    help="Which discovered links to follow (default: same-hostname)",
)
@click.option(
    "--queue-strategy",
    type=click.Choice(["fifo", "bfs", "lifo", "dfs", "priority"], case_sensitive=False),
    default="fifo",
    help="Queue ordering (default: fifo)",
)
@click.option("--include", multiple=True, help="URL patterns to include (glob or regex)")
@click.option("--exclude", multiple=True, help="URL patterns to exclude (glob or regex)")
@click.option("--no-robots", is_flag=True, help="Ignore robots.txt")
@click.option("--sitemaps", "use_sitemaps", is_flag=True, help="Also seed with URLs listed in sitemap.xml")
@click.option("--max-sitemaps", type=int, default=10, help="Sitemap documents fetched per site (default: 10)")
@click.option("--user-agent", default=None, help="Custom User-Agent string")
@click.option("--timeout", type=float, default=30.0, help="Per-request timeout in seconds (default: 30)")
@click.option("--max-retries", type=int, default=3, help="Retries per request (default: 3)")
@click.option(
    "--state-dir",
    type=str,
    default=None,
    help="Directory or s3:// prefix for the queue journal, state snapshots and error snapshots",
)
@click.option("--queue-id", type=str, default=None, help="Queue id (default: derived from the seed URLs)")
@click.option(
    "--format",
    "-f",
    type=click.Choice(FORMATS, case_sensitive=False),
    default="jsonl",
    help="Output format (default: jsonl)",
)
@click.option("--output", "-o", type=click.Path(), help="Output file path (default: crawl_output.<format>)")
@click.option("--save-html", is_flag=True, help="Save raw HTML content")
def crawl(
    urls: tuple[str, ...],
    max_depth: Optional[int],
    max_requests: Optional[int],
    min_concurrency: int,
    max_concurrency: int,
    rate_limit: int,
    strategy: str,
    queue_strategy: str,
    include: tuple,
    exclude: tuple,
    no_robots: bool,
    use_sitemaps: bool,
    max_sitemaps: int,
    user_agent: Optional[str],
    timeout: float,
    max_retries: int,
    state_dir: Optional[str],
    queue_id: Optional[str],
    format: str,
    output: Optional[str],
    save_html: bool,
):
    """
    Crawl starting from one or more URLs.

    Examples:

        driftnet crawl https://example.com

        driftnet crawl https://docs.python.org --max-depth 2 --max-requests 50

        driftnet crawl https://example.com --include "*/blog/*" --exclude "*/private/*"

        driftnet crawl https://example.com --state-dir ./state   # resumable

        driftnet crawl https://example.com --sitemaps
    """
    settings = {
        "queue_id": queue_id or default_queue_id(urls),
        "min_concurrency": min_concurrency,
        "max_concurrency": max_concurrency,
        "rate_limit_per_domain": rate_limit,
        "queue_strategy": queue_strategy,
        "enqueue_strategy": strategy,
        "include": list(include),
        "exclude": list(exclude),
        "max_depth": max_depth,
        "max_requests_per_crawl": max_requests,
        "max_retries": max_retries,
        "respect_robots": not no_robots,
        "use_sitemaps": use_sitemaps,
        "max_sitemaps": max_sitemaps,
        "request_timeout": timeout,
    }
    if user_agent:
        settings["user_agent"] = user_agent

    try:
        config = EngineConfig(**settings)
    except ValueError as e:
        raise click.BadParameter(str(e))

    click.echo(f"Crawling {', '.join(urls)} (queue: {config.queue_id})")
    if state_dir:
        click.echo(f"State directory: {state_dir}")

    try:
        engine, result = asyncio.run(_run_crawl(list(urls), config, state_dir, save_html))
    except KeyboardInterrupt:
        click.echo("\nCrawl interrupted by user", err=True)
        raise SystemExit(130)
    except DriftnetError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(format_run_summary(result))

    results = engine.get_results()
    if not results:
        click.echo("No pages were crawled")
        return

    output_path = Path(output or f"crawl_output.{format}")
    try:
        Writer.write(results, output_path, format)
    except (OSError, ImportError) as e:
        click.echo(f"Error writing output: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Wrote {len(results)} pages to {output_path}")


async def _run_crawl(
    urls: list[str],
    config: EngineConfig,
    state_dir: Optional[str],
    save_html: bool,
) -> tuple[CrawlerEngine, CrawlRunResult]:
    storage = None
    persister = None
    snapshotter = None
    if state_dir:
        storage = StorageFactory.from_uri(StorageFactory.join(state_dir, f"{config.queue_id}.queue.jsonl"))
        persister = StatePersister(state_dir, interval=config.persist_interval)
        snapshotter = ErrorSnapshotter(state_dir)

    queue = PersistentRequestQueue(
        config.queue_id,
        strategy=create_queue_strategy(config.queue_strategy),
        storage=storage,
        max_retries=config.max_retries,
    )

    async with Fetcher(user_agent=config.user_agent, timeout=config.request_timeout) as fetcher:
        engine = CrawlerEngine(
            HtmlRequestHandler(fetcher, save_html=save_html),
            config=config,
            queue=queue,
            state_persister=persister,
            error_tracker=ErrorTracker(snapshotter=snapshotter),
            http_session=fetcher.session,
        )

        with tqdm(total=config.max_requests_per_crawl, desc="Crawling pages", unit="page") as pbar:

            def on_done(request):
                pbar.update(1)
                pbar.set_postfix({"depth": request.depth, "queue": queue.pending_count})

            engine.on(CrawlerEvent.REQUEST_COMPLETED, lambda result: on_done(result.request))
            engine.on(CrawlerEvent.REQUEST_FAILED, lambda request, _error: on_done(request))
            result = await engine.run(urls)

        if persister is not None:
            await persister.close()

    return engine, result


@main.command()
@click.argument("queue_id")
@click.option("--state-dir", required=True, help="Directory or s3:// prefix used for the crawl")
def state(queue_id: str, state_dir: str):
    """
    Show the persisted progress snapshot of a crawl.

    Example:

        driftnet state crawl-3f2a9c1b0d4e --state-dir ./state
    """
    snapshot = asyncio.run(StatePersister(state_dir).restore(queue_id))
    if snapshot is None:
        click.echo(f"No state found for {queue_id}", err=True)
        raise SystemExit(1)

    data = {
        "state": snapshot["state"].model_dump(mode="json"),
        "queue": snapshot["queue"].model_dump(mode="json") if snapshot["queue"] else None,
    }
    click.echo(json.dumps(data, indent=2))


@main.command()
@click.argument("file_path", type=click.Path(exists=True))
@click.option("--json", "output_json", is_flag=True, help="Output stats as JSON")
@click.option("--csv", "csv_path", type=click.Path(), default=None, help="Also export stats to a CSV file")
def stats(file_path: str, output_json: bool, csv_path: Optional[str]):
    """
    Show statistics for crawled data.

    Examples:

        driftnet stats crawl_output.jsonl

        driftnet stats crawl_output.json --json

        driftnet stats crawl_output.jsonl --csv stats.csv
    """
    try:
        crawl_stats = CrawlStats.from_file(Path(file_path))
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if output_json:
        click.echo(json.dumps(crawl_stats.compute(), indent=2))
    else:
        click.echo(crawl_stats.format_summary())

    if csv_path:
        crawl_stats.export_csv(Path(csv_path))
        click.echo(f"Exported stats to {csv_path}", err=True)


@main.command()
def version():
    """Show version information."""
    click.echo(f"driftnet version {__version__}")


if __name__ == "__main__":
    main()
