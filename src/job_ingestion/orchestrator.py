import logging
import time
from collections import Counter
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel, Field

from job_ingestion.clients.adzuna import AdzunaSearchOptions
from job_ingestion.clients.base import ProviderJob
from job_ingestion.clients.france_travail import FranceTravailSearchOptions
from job_ingestion.clients.remotive import RemotiveSearchOptions
from job_ingestion.config import (
    ALL_SOURCES,
    DEDUP_FETCH_LIMIT,
    DEDUP_WINDOW_DAYS,
    DEFAULT_BATCH_SIZE,
)
from job_ingestion.dedup import JobDeduplicationService
from job_ingestion.ingestion import JobIngestionService
from job_ingestion.mappers import map_jobs
from job_ingestion.metrics import Metrics, NullMetrics
from job_ingestion.models import (
    BatchIngestResult,
    DeduplicationStats,
    IngestResult,
    IngestStats,
    JobFilters,
    OrchestrationResult,
    OrchestrationSummary,
    RawJobData,
)
from job_ingestion.repositories import JobRepository

logger = logging.getLogger(__name__)


class JobClient(Protocol):
    async def fetch_jobs(self, options: Any = None) -> list[ProviderJob]: ...


class FranceTravailSourceConfig(BaseModel):
    enabled: bool = True
    options: FranceTravailSearchOptions = Field(default_factory=FranceTravailSearchOptions)


class AdzunaSourceConfig(BaseModel):
    enabled: bool = True
    options: AdzunaSearchOptions = Field(default_factory=AdzunaSearchOptions)


class RemotiveSourceConfig(BaseModel):
    enabled: bool = True
    options: RemotiveSearchOptions = Field(default_factory=RemotiveSearchOptions)


class IngestionConfig(BaseModel):
    """Which sources to query, with what options, and how to process the results."""

    france_travail: FranceTravailSourceConfig = Field(default_factory=FranceTravailSourceConfig)
    adzuna: AdzunaSourceConfig = Field(default_factory=AdzunaSourceConfig)
    remotive: RemotiveSourceConfig = Field(default_factory=RemotiveSourceConfig)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    enable_deduplication: bool = True

    @classmethod
    def for_sources(
        cls,
        sources: list[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        enable_deduplication: bool = True,
    ) -> "IngestionConfig":
        unknown = [s for s in sources if s not in ALL_SOURCES]
        if unknown:
            raise ValueError(f"Unknown sources: {', '.join(unknown)}")
        return cls(
            france_travail=FranceTravailSourceConfig(enabled="france_travail" in sources),
            adzuna=AdzunaSourceConfig(enabled="adzuna" in sources),
            remotive=RemotiveSourceConfig(enabled="remotive" in sources),
            batch_size=batch_size,
            enable_deduplication=enable_deduplication,
        )

    def source_config(self, source: str) -> BaseModel:
        if source not in ALL_SOURCES:
            raise ValueError(f"Unknown source '{source}'")
        return getattr(self, source)

    def enabled_sources(self) -> list[str]:
        return [source for source in ALL_SOURCES if self.source_config(source).enabled]


class IngestionOrchestrator:
    """
    Runs one ingestion across every enabled source.

    Sources are fetched one after another; a failing source is logged and
    skipped. The combined jobs go through the ingestion service in batches,
    followed by an optional duplicate analysis over recently stored jobs.
    """

    def __init__(
        self,
        job_repository: JobRepository,
        ingestion_service: JobIngestionService,
        clients: Mapping[str, JobClient],
        metrics: Metrics | None = None,
        dedup_service: JobDeduplicationService | None = None,
    ) -> None:
        self.job_repository = job_repository
        self.ingestion_service = ingestion_service
        self.clients = dict(clients)
        self.metrics = metrics or NullMetrics()
        self.dedup_service = dedup_service or JobDeduplicationService()

    async def _fetch_source(self, source: str, config: IngestionConfig) -> list[RawJobData]:
        client = self.clients.get(source)
        if client is None:
            raise LookupError(f"No client configured for source '{source}'")
        provider_jobs = await client.fetch_jobs(config.source_config(source).options)
        return map_jobs(source, provider_jobs)

    async def ingest_from_all_sources(
        self, config: IngestionConfig | None = None
    ) -> OrchestrationResult:
        config = config or IngestionConfig()
        started = time.monotonic()
        summary = OrchestrationSummary()
        logger.info(
            f"Starting orchestrated ingestion: sources={config.enabled_sources()} "
            f"batch_size={config.batch_size} deduplication={config.enable_deduplication}"
        )

        try:
            # One technology load shared by every source and batch of this run
            await self.ingestion_service.load_valid_technologies()

            raw_jobs: list[RawJobData] = []
            for source in config.enabled_sources():
                logger.info(f"Fetching from {source}")
                try:
                    source_jobs = await self._fetch_source(source, config)
                except Exception as e:
                    logger.error(f"Fetching from {source} failed: {e}")
                    self.metrics.increment("ingestion.source.error", tags={"source": source})
                    summary.sources_skipped.append(source)
                    continue

                logger.info(f"Fetched {len(source_jobs)} jobs from {source}")
                self.metrics.increment("ingestion.source.success", tags={"source": source})
                raw_jobs.extend(source_jobs)
                summary.sources_processed.append(source)

            summary.total_fetched = len(raw_jobs)
            if not raw_jobs:
                logger.warning("No jobs fetched from any source")
                summary.duration_ms = self._elapsed_ms(started)
                return OrchestrationResult(summary=summary)

            logger.info(
                f"All sources fetched: {len(raw_jobs)} jobs from {summary.sources_processed}"
            )
            batch_result = await self.ingestion_service.ingest_jobs_in_batches(
                raw_jobs, config.batch_size
            )

            summary.total_ingested = (
                batch_result.summary.total_inserted + batch_result.summary.total_updated
            )
            summary.total_failed = batch_result.summary.total_failed

            result = OrchestrationResult(
                sources=self._source_stats(raw_jobs, batch_result), summary=summary
            )

            if config.enable_deduplication and summary.total_ingested > 0:
                logger.info("Running post-ingestion deduplication analysis")
                result.deduplication = await self._analyze_duplicates()
                summary.total_duplicated = result.deduplication.duplicates_removed

            summary.duration_ms = self._elapsed_ms(started)
        except Exception as e:
            logger.error(f"Orchestrated ingestion failed: {e}")
            self.metrics.increment("ingestion.orchestration.error")
            raise

        logger.info(
            f"Orchestrated ingestion complete in {summary.duration_ms}ms: "
            f"fetched={summary.total_fetched} ingested={summary.total_ingested} "
            f"failed={summary.total_failed} duplicated={summary.total_duplicated} "
            f"skipped={summary.sources_skipped}"
        )
        self.metrics.timing("ingestion.orchestration.duration", summary.duration_ms)
        self.metrics.gauge("ingestion.orchestration.fetched", summary.total_fetched)
        self.metrics.gauge("ingestion.orchestration.ingested", summary.total_ingested)
        self.metrics.gauge("ingestion.orchestration.failed", summary.total_failed)
        return result

    async def ingest_from_source(
        self, source: str, config: IngestionConfig | None = None
    ) -> IngestStats:
        """Fetch and ingest a single source with exact (non-approximated) statistics."""
        config = config or IngestionConfig()
        raw_jobs = await self._fetch_source(source, config)
        if not raw_jobs:
            logger.warning(f"No jobs fetched from {source}")
            return IngestStats.empty(source)
        return await self.ingestion_service.ingest_jobs_with_stats(raw_jobs)

    @staticmethod
    def _source_stats(
        raw_jobs: list[RawJobData], batch_result: BatchIngestResult
    ) -> dict[str, IngestStats]:
        """
        Split the batch totals across sources in proportion to each source's
        share of the input. Batches mix sources, so this is an approximation.
        """
        counts = Counter(job.source_api for job in raw_jobs)
        totals = batch_result.summary
        stats: dict[str, IngestStats] = {}
        for source, count in counts.items():
            share = count / len(raw_jobs)
            stats[source] = IngestStats(
                result=IngestResult(
                    total=count,
                    inserted=round(totals.total_inserted * share),
                    updated=round(totals.total_updated * share),
                    failed=round(totals.total_failed * share),
                    source_api=source,
                )
            )
        return stats

    async def _analyze_duplicates(self) -> DeduplicationStats:
        try:
            recent = await self.job_repository.find_all(
                JobFilters(recent_days=DEDUP_WINDOW_DAYS), page=1, limit=DEDUP_FETCH_LIMIT
            )
            if not recent:
                return DeduplicationStats()
            return self.dedup_service.analyze(recent)
        except Exception as e:
            logger.error(f"Deduplication analysis failed: {e}")
            return DeduplicationStats()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
