import argparse
import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta

from job_ingestion import config
from job_ingestion.clients.adzuna import AdzunaClient
from job_ingestion.clients.base import BaseJobClient
from job_ingestion.clients.france_travail import FranceTravailClient
from job_ingestion.clients.remotive import RemotiveClient
from job_ingestion.config import ALL_SOURCES
from job_ingestion.db import (
    Database,
    SqliteJobRepository,
    SqliteRegionRepository,
    SqliteTechnologyRepository,
)
from job_ingestion.ingestion import JobIngestionService
from job_ingestion.metrics import PrometheusMetrics
from job_ingestion.orchestrator import IngestionConfig, IngestionOrchestrator
from job_ingestion.regions import RegionResolver

# Set up logging once, in the application entry point only
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger(__name__)

CLIENT_FACTORIES = {
    "france_travail": FranceTravailClient,
    "adzuna": AdzunaClient,
    "remotive": RemotiveClient,
}


def build_clients(sources: list[str], region_resolver: RegionResolver) -> dict[str, BaseJobClient]:
    """
    Instantiate a client per requested source. A source whose credentials are
    missing is logged and left out; the orchestrator then reports it as skipped.
    """
    clients: dict[str, BaseJobClient] = {}
    for source in sources:
        factory = CLIENT_FACTORIES[source]
        try:
            if factory is RemotiveClient:
                clients[source] = RemotiveClient()
            else:
                clients[source] = factory(region_resolver=region_resolver)
        except ValueError as e:
            logger.error(f"Source {source} is not configured: {e}")
    return clients


async def run_pipeline(
    sources: list[str],
    db_path: str,
    batch_size: int,
    enable_deduplication: bool,
    metrics: PrometheusMetrics | None = None,
) -> None:
    """Run a single fetch-normalize-ingest-analyze cycle."""
    logger.info("Starting job ingestion pipeline...")

    with Database(db_path=db_path) as db:
        db.seed()
        job_repository = SqliteJobRepository(db)
        region_repository = SqliteRegionRepository(db)
        service = JobIngestionService(
            job_repository,
            SqliteTechnologyRepository(db),
            region_repository,
            metrics=metrics,
        )

        clients = build_clients(sources, RegionResolver(region_repository))
        orchestrator = IngestionOrchestrator(job_repository, service, clients, metrics=metrics)
        ingestion_config = IngestionConfig.for_sources(
            sources, batch_size=batch_size, enable_deduplication=enable_deduplication
        )

        try:
            result = await orchestrator.ingest_from_all_sources(ingestion_config)
        finally:
            for client in clients.values():
                await client.aclose()

        expired = await job_repository.deactivate_old_jobs()

    summary = result.summary
    logger.info(
        f"Pipeline finished. "
        f"Fetched: {summary.total_fetched}, "
        f"Ingested: {summary.total_ingested}, "
        f"Failed: {summary.total_failed}, "
        f"Duplicates: {summary.total_duplicated}, "
        f"Deactivated: {expired}, "
        f"Skipped sources: {', '.join(summary.sources_skipped) or 'none'}"
    )


async def run_loop(interval_minutes: int, **pipeline_options) -> None:
    """
    Run the pipeline in a continuous loop with a configurable interval.

    Handles SIGINT/SIGTERM for graceful shutdown. Errors in a single pipeline
    run are logged but do not crash the loop.
    """
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received. Finishing current cycle...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    logger.info(
        f"Starting continuous loop (interval: {interval_minutes} min). Press Ctrl+C to stop."
    )

    while not shutdown_event.is_set():
        try:
            await run_pipeline(**pipeline_options)
        except Exception as e:
            logger.error(f"Pipeline error (will retry next cycle): {e}")

        if shutdown_event.is_set():
            break

        next_run = datetime.now(tz=UTC) + timedelta(minutes=interval_minutes)
        logger.info(f"Next run at {next_run.strftime('%Y-%m-%d %H:%M:%S UTC')}")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_minutes * 60)
        except TimeoutError:
            pass

    logger.info("Shutting down gracefully.")


def _parse_sources(raw: str) -> list[str]:
    sources = [s.strip().lower() for s in raw.split(",") if s.strip()]
    unknown = [s for s in sources if s not in ALL_SOURCES]
    if unknown:
        raise argparse.ArgumentTypeError(
            f"unknown sources: {', '.join(unknown)} (expected any of {', '.join(ALL_SOURCES)})"
        )
    if not sources:
        raise argparse.ArgumentTypeError("at least one source is required")
    return sources


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="job-ingestion",
        description=(
            "Fetch developer job postings from France Travail, Adzuna and Remotive, "
            "normalize them and store them in SQLite."
        ),
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run the pipeline once and exit.",
    )
    mode.add_argument(
        "--loop",
        action="store_true",
        default=True,
        help="Run the pipeline in a continuous loop (default).",
    )

    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        metavar="MINUTES",
        help=(
            "Ingestion interval in minutes (overrides INGEST_INTERVAL env var). "
            "Must be a positive integer."
        ),
    )
    parser.add_argument(
        "--sources",
        type=_parse_sources,
        default=None,
        metavar="SOURCE[,SOURCE...]",
        help="Comma-separated sources to ingest from (overrides ENABLED_SOURCES).",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        metavar="PATH",
        help="SQLite database file (overrides DB_PATH).",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        metavar="N",
        help="Jobs per ingestion batch (overrides INGEST_BATCH_SIZE).",
    )
    parser.add_argument(
        "--no-dedup",
        action="store_true",
        help="Skip the post-ingestion duplicate analysis.",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        metavar="PORT",
        help="Serve Prometheus metrics on this port (overrides METRICS_PORT, 0 disables).",
    )

    return parser.parse_args(argv)


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point for the package."""
    args = parse_args(argv)

    for flag, value in (("--interval", args.interval), ("--batch-size", args.batch_size)):
        if value is not None and value <= 0:
            logger.error(f"{flag} must be a positive integer.")
            sys.exit(1)

    if args.metrics_port is not None and not 0 <= args.metrics_port <= 65535:
        logger.error("--metrics-port must be between 0 and 65535.")
        sys.exit(1)

    try:
        metrics = PrometheusMetrics()
        interval = args.interval if args.interval is not None else config.INGEST_INTERVAL
        pipeline_options = {
            "sources": args.sources or config.ENABLED_SOURCES,
            "db_path": args.db_path or config.DB_PATH,
            "batch_size": args.batch_size or config.INGEST_BATCH_SIZE,
            "enable_deduplication": not args.no_dedup and config.ENABLE_DEDUPLICATION,
            "metrics": metrics,
        }
        metrics_port = (
            args.metrics_port if args.metrics_port is not None else config.METRICS_PORT
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if metrics_port:
        metrics.serve(metrics_port)

    if args.once:
        asyncio.run(run_pipeline(**pipeline_options))
    else:
        asyncio.run(run_loop(interval, **pipeline_options))


if __name__ == "__main__":
    cli()
