from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from job_ingestion.clients.base import ProviderJob
from job_ingestion.ingestion import JobIngestionService
from job_ingestion.metrics import PrometheusMetrics
from job_ingestion.models import utcnow
from job_ingestion.orchestrator import IngestionConfig, IngestionOrchestrator

POSTED = utcnow() - timedelta(days=1)
DESCRIPTION = "Vous construirez nos API en Python et Django, déployées avec Docker sur AWS."


def _provider_job(external_id, **overrides):
    fields = {
        "external_id": external_id,
        "title": "Développeur Python",
        "company": "Acme",
        "description": DESCRIPTION,
        "technologies": ["AWS", "Django", "Docker", "Python"],
        "location": "Paris",
        "salary_min": 45,
        "salary_max": 55,
        "source_url": f"https://example.com/{external_id}",
        "posted_date": POSTED,
    }
    fields.update(overrides)
    return ProviderJob(**fields)


def _client(jobs=None, error=None):
    client = MagicMock()
    client.fetch_jobs = AsyncMock(return_value=jobs or [], side_effect=error)
    return client


@pytest.fixture
def metrics():
    return PrometheusMetrics(registry=CollectorRegistry())


@pytest.fixture
def service(fake_job_repository, fake_technology_repository, fake_region_repository, metrics):
    return JobIngestionService(
        fake_job_repository, fake_technology_repository, fake_region_repository, metrics=metrics
    )


def _orchestrator(fake_job_repository, service, clients, metrics):
    return IngestionOrchestrator(fake_job_repository, service, clients, metrics=metrics)


def test_config_enabled_sources_keep_canonical_order():
    config = IngestionConfig.for_sources(["remotive", "france_travail"])
    assert config.enabled_sources() == ["france_travail", "remotive"]
    assert IngestionConfig().enabled_sources() == ["france_travail", "adzuna", "remotive"]


def test_config_rejects_unknown_sources():
    with pytest.raises(ValueError, match="indeed"):
        IngestionConfig.for_sources(["indeed"])


def test_config_rejects_non_positive_batch_size():
    with pytest.raises(ValueError):
        IngestionConfig(batch_size=0)


@pytest.mark.asyncio
async def test_ingests_from_all_enabled_sources(
    fake_job_repository, fake_technology_repository, service, metrics
):
    adzuna = _client([_provider_job("adzuna-1"), _provider_job("adzuna-2", company="Globex")])
    remotive = _client([_provider_job("remotive-1", company="Initech", location="Remote")])
    orchestrator = _orchestrator(
        fake_job_repository, service, {"adzuna": adzuna, "remotive": remotive}, metrics
    )
    config = IngestionConfig.for_sources(["adzuna", "remotive"])

    result = await orchestrator.ingest_from_all_sources(config)

    summary = result.summary
    assert summary.total_fetched == 3
    assert summary.total_ingested == 3
    assert summary.total_failed == 0
    assert summary.sources_processed == ["adzuna", "remotive"]
    assert summary.sources_skipped == []
    assert set(result.sources) == {"adzuna", "remotive"}
    assert result.sources["adzuna"].result.total == 2
    assert result.sources["adzuna"].result.inserted == 2
    assert result.sources["remotive"].result.inserted == 1
    assert result.deduplication is not None
    assert result.deduplication.original_count == 3
    assert summary.total_duplicated == 0

    adzuna.fetch_jobs.assert_awaited_once_with(config.adzuna.options)
    assert fake_technology_repository.calls == 1
    assert metrics.value("ingestion.source.success", {"source": "adzuna"}, suffix="_total") == 1
    assert metrics.value("ingestion.orchestration.fetched") == 3
    assert metrics.value("ingestion.orchestration.ingested") == 3
    assert metrics.value("ingestion.orchestration.duration", suffix="_ms_count") == 1


@pytest.mark.asyncio
async def test_failing_source_is_skipped(fake_job_repository, service, metrics):
    adzuna = _client(error=RuntimeError("adzuna down"))
    remotive = _client([_provider_job("remotive-1")])
    orchestrator = _orchestrator(
        fake_job_repository, service, {"adzuna": adzuna, "remotive": remotive}, metrics
    )

    result = await orchestrator.ingest_from_all_sources(
        IngestionConfig.for_sources(["adzuna", "remotive"])
    )

    assert result.summary.sources_skipped == ["adzuna"]
    assert result.summary.sources_processed == ["remotive"]
    assert result.summary.total_ingested == 1
    assert "remotive:remotive-1" in fake_job_repository.jobs
    assert metrics.value("ingestion.source.error", {"source": "adzuna"}, suffix="_total") == 1


@pytest.mark.asyncio
async def test_source_without_client_is_skipped(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(
        fake_job_repository, service, {"remotive": _client([_provider_job("r-1")])}, metrics
    )

    result = await orchestrator.ingest_from_all_sources()

    assert result.summary.sources_skipped == ["france_travail", "adzuna"]
    assert result.summary.sources_processed == ["remotive"]


@pytest.mark.asyncio
async def test_no_jobs_fetched(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(fake_job_repository, service, {"remotive": _client([])}, metrics)

    result = await orchestrator.ingest_from_all_sources(IngestionConfig.for_sources(["remotive"]))

    assert result.summary.total_fetched == 0
    assert result.summary.sources_processed == ["remotive"]
    assert result.sources == {}
    assert result.deduplication is None
    assert fake_job_repository.save_many_calls == 0


@pytest.mark.asyncio
async def test_cross_source_duplicates_are_reported(fake_job_repository, service, metrics):
    clients = {
        "adzuna": _client([_provider_job("adzuna-1")]),
        "remotive": _client([_provider_job("remotive-1")]),
    }
    orchestrator = _orchestrator(fake_job_repository, service, clients, metrics)

    result = await orchestrator.ingest_from_all_sources(
        IngestionConfig.for_sources(["adzuna", "remotive"])
    )

    assert result.deduplication.duplicates_removed == 1
    assert result.deduplication.multi_source_jobs == 1
    assert result.summary.total_duplicated == 1
    # Analysis only; both rows stay stored
    assert len(fake_job_repository.jobs) == 2


@pytest.mark.asyncio
async def test_deduplication_can_be_disabled(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(
        fake_job_repository, service, {"remotive": _client([_provider_job("r-1")])}, metrics
    )
    config = IngestionConfig.for_sources(["remotive"], enable_deduplication=False)

    result = await orchestrator.ingest_from_all_sources(config)

    assert result.summary.total_ingested == 1
    assert result.deduplication is None


@pytest.mark.asyncio
async def test_deduplication_failure_yields_empty_stats(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(
        fake_job_repository, service, {"remotive": _client([_provider_job("r-1")])}, metrics
    )
    fake_job_repository.find_all = AsyncMock(side_effect=RuntimeError("query timeout"))

    result = await orchestrator.ingest_from_all_sources(IngestionConfig.for_sources(["remotive"]))

    assert result.summary.total_ingested == 1
    assert result.deduplication.original_count == 0
    assert result.summary.total_duplicated == 0


@pytest.mark.asyncio
async def test_per_source_counts_are_proportional(fake_job_repository, service, metrics):
    clients = {
        "adzuna": _client(
            [_provider_job(f"adzuna-{i}", company=f"Company {i}") for i in range(3)]
        ),
        "remotive": _client(
            [_provider_job("remotive-1", company="Remote Co", technologies=[], description="x")]
        ),
    }
    orchestrator = _orchestrator(fake_job_repository, service, clients, metrics)

    result = await orchestrator.ingest_from_all_sources(
        IngestionConfig.for_sources(["adzuna", "remotive"], batch_size=2)
    )

    # 3 inserted and 1 failed overall, split 3:1 between the sources
    assert result.summary.total_ingested == 3
    assert result.summary.total_failed == 1
    assert result.sources["adzuna"].result.inserted == 2
    assert result.sources["adzuna"].result.failed == 1
    assert result.sources["remotive"].result.total == 1
    assert result.sources["remotive"].result.inserted == 1


@pytest.mark.asyncio
async def test_orchestration_error_is_counted_and_raised(fake_job_repository, service, metrics):
    service.ingest_jobs_in_batches = AsyncMock(side_effect=RuntimeError("boom"))
    orchestrator = _orchestrator(
        fake_job_repository, service, {"remotive": _client([_provider_job("r-1")])}, metrics
    )

    with pytest.raises(RuntimeError, match="boom"):
        await orchestrator.ingest_from_all_sources(IngestionConfig.for_sources(["remotive"]))

    assert metrics.value("ingestion.orchestration.error", suffix="_total") == 1


@pytest.mark.asyncio
async def test_ingest_from_single_source(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(
        fake_job_repository,
        service,
        {"adzuna": _client([_provider_job("adzuna-1"), _provider_job("adzuna-2")])},
        metrics,
    )

    stats = await orchestrator.ingest_from_source("adzuna")

    assert stats.result.source_api == "adzuna"
    assert stats.result.inserted == 2
    assert stats.quality_stats.average_quality_score > 0


@pytest.mark.asyncio
async def test_ingest_from_single_source_without_jobs(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(fake_job_repository, service, {"adzuna": _client([])}, metrics)

    stats = await orchestrator.ingest_from_source("adzuna")

    assert stats.result.total == 0
    assert stats.result.source_api == "adzuna"


@pytest.mark.asyncio
async def test_ingest_from_unconfigured_source_raises(fake_job_repository, service, metrics):
    orchestrator = _orchestrator(fake_job_repository, service, {}, metrics)

    with pytest.raises(LookupError):
        await orchestrator.ingest_from_source("adzuna")
