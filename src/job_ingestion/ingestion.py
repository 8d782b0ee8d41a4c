import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from job_ingestion.cache import TechnologyCache
from job_ingestion.config import DEFAULT_BATCH_SIZE, MIN_QUALITY_SCORE
from job_ingestion.detectors import ExperienceDetector, TechnologyDetector
from job_ingestion.metrics import Metrics, NullMetrics
from job_ingestion.models import (
    BatchIngestResult,
    IngestResult,
    IngestStats,
    Job,
    RawJobData,
    utcnow,
)
from job_ingestion.regions import CITY_REGIONS, RegionResolver, region_code_from_location
from job_ingestion.repositories import JobRepository, RegionRepository, TechnologyRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobIngestionService:
    """
    Turns RawJobData into validated Job entities and persists them.

    For each batch: load the valid-technology set, build entities (keeping
    only known technologies), drop entities below the quality threshold,
    fill in missing regions and bulk-save the rest.
    """

    def __init__(
        self,
        job_repository: JobRepository,
        technology_repository: TechnologyRepository,
        region_repository: RegionRepository | None = None,
        *,
        cache_technologies: bool = True,
        metrics: Metrics | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        technology_detector: TechnologyDetector | None = None,
        experience_detector: ExperienceDetector | None = None,
    ) -> None:
        self.job_repository = job_repository
        self.technology_repository = technology_repository
        self.region_resolver = RegionResolver(region_repository)
        self.cache_technologies = cache_technologies
        self.metrics = metrics or NullMetrics()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.technology_detector = technology_detector or TechnologyDetector()
        self.experience_detector = experience_detector or ExperienceDetector()
        self._technology_cache = TechnologyCache(self._fetch_technology_names)

    # ---- valid-technology cache ----

    async def _fetch_technology_names(self) -> list[str]:
        logger.info("Loading valid technologies from repository")
        records = await self.technology_repository.find_all()
        names = [record if isinstance(record, str) else record.name for record in records]
        logger.info(f"Loaded {len(set(names))} valid technologies")
        self.metrics.gauge("jobs.valid_technologies.count", len(set(names)))
        return names

    async def load_valid_technologies(self) -> frozenset[str]:
        """Return the valid-technology set, loading it once for concurrent callers."""
        if not self.cache_technologies and self._technology_cache.is_loaded:
            self._technology_cache.clear()
        return await self._technology_cache.get()

    async def reload_technologies(self) -> frozenset[str]:
        logger.info("Reloading technologies")
        return await self._technology_cache.reload()

    def clear_technology_cache(self) -> None:
        logger.info("Clearing technology cache")
        self._technology_cache.clear()

    # ---- public pipeline ----

    async def ingest_jobs_with_stats(self, raw_jobs: list[RawJobData]) -> IngestStats:
        """Run the whole pipeline over one batch and return detailed statistics."""
        source_api = raw_jobs[0].source_api if raw_jobs else "unknown"
        result = IngestResult(total=len(raw_jobs), source_api=source_api)
        logger.info(f"Ingestion started: {len(raw_jobs)} jobs from {source_api}")

        try:
            unknown_technologies: set[str] = set()
            jobs = await self._process(raw_jobs, result, unknown_technologies)
            result.finished_at = utcnow()
        except Exception as e:
            logger.error(f"Ingestion failed for {source_api}: {e}")
            self.metrics.increment("jobs.ingestion.error", tags={"source_api": source_api})
            raise

        tags = {"source_api": source_api}
        self.metrics.increment("jobs.ingested.total", tags=tags)
        self.metrics.increment("jobs.ingested.inserted", result.inserted, tags=tags)
        self.metrics.increment("jobs.ingested.updated", result.updated, tags=tags)
        self.metrics.increment("jobs.ingested.failed", result.failed, tags=tags)
        self.metrics.timing("jobs.ingestion.duration", result.duration_ms or 0, tags=tags)
        self.metrics.gauge(
            "jobs.ingestion.unknown_technologies", len(unknown_technologies), tags=tags
        )

        logger.info(
            f"Ingestion completed for {source_api}: total={result.total} "
            f"inserted={result.inserted} updated={result.updated} failed={result.failed} "
            f"filtered={result.filtered} duration={result.duration_ms}ms "
            f"unknown_technologies={len(unknown_technologies)}"
        )
        return IngestStats.from_jobs(result, jobs, sorted(unknown_technologies))

    async def ingest_jobs(self, raw_jobs: list[RawJobData]) -> IngestResult:
        stats = await self.ingest_jobs_with_stats(raw_jobs)
        return stats.result

    async def ingest_jobs_in_batches(
        self, raw_jobs: list[RawJobData], batch_size: int = DEFAULT_BATCH_SIZE
    ) -> BatchIngestResult:
        """
        Run the pipeline over fixed-size batches. A batch that fails as a whole
        marks only its own records as failed.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size}")

        total_batches = (len(raw_jobs) + batch_size - 1) // batch_size
        logger.info(
            f"Batch ingestion started: {len(raw_jobs)} jobs in {total_batches} batches "
            f"of up to {batch_size}"
        )

        await self.load_valid_technologies()

        batch_results: list[IngestResult] = []
        for index in range(0, len(raw_jobs), batch_size):
            batch_number = index // batch_size + 1
            batch = raw_jobs[index : index + batch_size]
            result = IngestResult(
                total=len(batch), source_api=batch[0].source_api if batch else None
            )
            logger.info(f"Processing batch {batch_number}/{total_batches} ({len(batch)} jobs)")

            try:
                await self._process(batch, result, set())
                result.finished_at = utcnow()
                logger.info(
                    f"Batch {batch_number} completed: inserted={result.inserted} "
                    f"updated={result.updated} failed={result.failed} "
                    f"duration={result.duration_ms}ms"
                )
            except Exception as e:
                logger.error(f"Batch {batch_number} processing failed: {e}")
                result.errors.append(f"Batch {batch_number} failed: {e}")
                result.inserted = 0
                result.updated = 0
                result.filtered = 0
                result.failed = len(batch)
                result.finished_at = utcnow()
            batch_results.append(result)

        return BatchIngestResult.from_batches(batch_results)

    # ---- pipeline steps ----

    async def _process(
        self, raw_jobs: list[RawJobData], result: IngestResult, unknown_technologies: set[str]
    ) -> list[Job]:
        valid_names = await self.load_valid_technologies()
        jobs = await self._transform(raw_jobs, result, valid_names, unknown_technologies)

        quality_jobs = [job for job in jobs if job.quality_score() >= MIN_QUALITY_SCORE]
        result.filtered = len(jobs) - len(quality_jobs)
        logger.info(
            f"Quality filtering complete: {len(quality_jobs)}/{len(jobs)} jobs kept "
            f"(threshold {MIN_QUALITY_SCORE})"
        )

        enriched = await self._enrich_with_regions(quality_jobs)
        await self._save(enriched, result)
        return enriched

    async def _retry_operation(self, operation: Callable[[], T | Awaitable[T]], name: str) -> T:
        """Run an operation, retrying failures with exponential backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                value = operation()
                if inspect.isawaitable(value):
                    value = await value
                return value
            except Exception as e:
                if attempt == self.max_retries:
                    logger.error(f"{name} failed after {self.max_retries} attempts: {e}")
                    raise
                backoff = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"{name} attempt {attempt}/{self.max_retries} failed: {e}. "
                    f"Retrying in {backoff}s..."
                )
                await asyncio.sleep(backoff)
        raise RuntimeError(f"{name}: max_retries must be at least 1")

    async def _transform(
        self,
        raw_jobs: list[RawJobData],
        result: IngestResult,
        valid_names: frozenset[str],
        unknown_technologies: set[str],
    ) -> list[Job]:
        jobs: list[Job] = []

        for raw in raw_jobs:
            try:
                if raw.technologies:
                    detected = raw.technologies
                else:
                    detected = await self._retry_operation(
                        lambda raw=raw: self.technology_detector.detect(raw.description),
                        f"Tech detection for job {raw.id}",
                    )

                technologies = [t for t in detected if t in valid_names]
                unknown_technologies.update(t for t in detected if t not in valid_names)

                if not technologies:
                    result.failed += 1
                    if detected:
                        result.errors.append(
                            f"No valid technologies found for job {raw.id} "
                            f"(detected: {', '.join(detected)})"
                        )
                        logger.warning(
                            f"Job {raw.id} rejected: no valid technologies "
                            f"(detected: {', '.join(detected)})"
                        )
                    else:
                        result.errors.append(f"No technologies detected for job {raw.id}")
                        logger.warning(f"Job {raw.id} rejected: no technologies detected")
                    continue

                experience_category = await self._retry_operation(
                    lambda raw=raw: self.experience_detector.detect(
                        raw.title, raw.experience_level, raw.description
                    ),
                    f"Experience detection for job {raw.id}",
                )

                jobs.append(
                    Job(
                        id=raw.id,
                        title=raw.title,
                        company=raw.company,
                        description=raw.description,
                        technologies=technologies,
                        location=raw.location,
                        region_id=None,
                        is_remote=raw.is_remote,
                        salary_min=raw.salary_min,
                        salary_max=raw.salary_max,
                        experience_level=raw.experience_level,
                        experience_category=experience_category,
                        source_api=raw.source_api,
                        external_id=raw.external_id,
                        source_url=raw.source_url,
                        posted_date=raw.posted_date,
                    )
                )
            except Exception as e:
                result.failed += 1
                result.errors.append(f"Failed to transform job {raw.id}: {e}")
                logger.error(f"Job transformation failed for {raw.id}: {e}")

        return jobs

    async def detect_region(self, location: str) -> int | None:
        """Map a location containing a major French city to its region id."""
        code = region_code_from_location(location, CITY_REGIONS)
        if code is None:
            return None
        return await self.region_resolver.resolve_code(code)

    async def _enrich_with_regions(self, jobs: list[Job]) -> list[Job]:
        async def enrich(job: Job) -> None:
            try:
                region_id = await self.detect_region(job.location)
            except Exception as e:
                logger.warning(f"Region detection failed for job {job.id} ({job.location}): {e}")
                return
            if region_id:
                job.region_id = region_id

        await asyncio.gather(*(enrich(job) for job in jobs if not job.region_id))
        return jobs

    async def _save(self, jobs: list[Job], result: IngestResult) -> None:
        if not jobs:
            return
        saved = await self.job_repository.save_many(jobs)
        result.inserted += saved.inserted
        result.updated += saved.updated
        result.failed += saved.failed
        result.errors.extend(saved.errors)
