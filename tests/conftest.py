import os
from datetime import timedelta

import pytest

# Set environment variables for tests before any imports happen
os.environ["FRANCE_TRAVAIL_CLIENT_ID"] = "test_client_id"
os.environ["FRANCE_TRAVAIL_CLIENT_SECRET"] = "test_client_secret"
os.environ["ADZUNA_APP_ID"] = "test_app_id"
os.environ["ADZUNA_APP_KEY"] = "test_app_key"
os.environ["DB_PATH"] = ":memory:"

from job_ingestion.db import (  # noqa: E402
    Database,
    SqliteJobRepository,
    SqliteRegionRepository,
    SqliteTechnologyRepository,
)
from job_ingestion.models import BulkSaveResult, Job, RawJobData, utcnow  # noqa: E402

DESCRIPTION = (
    "Nous recherchons un développeur backend pour construire nos services "
    "en Python et Django, déployés avec Docker sur AWS."
)


@pytest.fixture
def make_raw_job():
    """Factory for RawJobData records that pass the quality threshold by default."""

    def _make(**overrides) -> RawJobData:
        fields = {
            "id": "raw-1",
            "title": "Développeur Python",
            "company": "Acme",
            "description": DESCRIPTION,
            "technologies": None,
            "location": "Paris",
            "salary_min": 45,
            "salary_max": 55,
            "source_api": "adzuna",
            "external_id": "adzuna-1",
            "source_url": "https://example.com/jobs/1",
            "posted_date": utcnow() - timedelta(days=1),
        }
        fields.update(overrides)
        return RawJobData(**fields)

    return _make


@pytest.fixture
def make_job():
    """Factory for validated Job entities."""

    def _make(**overrides) -> Job:
        fields = {
            "id": "job-1",
            "title": "Développeur Python",
            "company": "Acme",
            "description": DESCRIPTION,
            "technologies": ["AWS", "Django", "Docker", "Python"],
            "location": "Paris",
            "salary_min": 45,
            "salary_max": 55,
            "source_api": "adzuna",
            "external_id": "adzuna-1",
            "source_url": "https://example.com/jobs/1",
            "posted_date": utcnow() - timedelta(days=1),
        }
        fields.update(overrides)
        return Job(**fields)

    return _make


@pytest.fixture
def db():
    """In-memory database seeded with regions and the technology vocabulary."""
    with Database(db_path=":memory:") as test_db:
        test_db.seed()
        yield test_db


@pytest.fixture
def job_repository(db):
    return SqliteJobRepository(db)


@pytest.fixture
def technology_repository(db):
    return SqliteTechnologyRepository(db)


@pytest.fixture
def region_repository(db):
    return SqliteRegionRepository(db)


class FakeTechnologyRepository:
    def __init__(self, names: list[str]) -> None:
        self.names = names
        self.calls = 0

    async def find_all(self) -> list[str]:
        self.calls += 1
        return list(self.names)


class FakeRegionRepository:
    def __init__(self, regions: dict[str, int] | None = None) -> None:
        self.regions = regions if regions is not None else {"IDF": 1, "ARA": 2, "REU": 17}
        self.calls: list[str] = []

    async def find_by_code(self, code: str) -> int | None:
        self.calls.append(code)
        return self.regions.get(code.upper())


class FakeJobRepository:
    """Keeps saved jobs in memory, keyed by (source_api, external_id)."""

    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.save_many_calls = 0

    async def find_all(self, filters=None, page: int = 1, limit: int = 20) -> list[Job]:
        jobs = list(self.jobs.values())
        start = (page - 1) * limit
        return jobs[start : start + limit]

    async def count(self, filters=None) -> int:
        return len(self.jobs)

    async def save(self, job: Job) -> Job:
        self.jobs[job.dedup_key()] = job
        return job

    async def save_many(self, jobs: list[Job]) -> BulkSaveResult:
        self.save_many_calls += 1
        result = BulkSaveResult()
        for job in jobs:
            if job.dedup_key() in self.jobs:
                result.updated += 1
            else:
                result.inserted += 1
            self.jobs[job.dedup_key()] = job
        return result


@pytest.fixture
def fake_job_repository():
    return FakeJobRepository()


@pytest.fixture
def fake_technology_repository():
    return FakeTechnologyRepository(
        ["AWS", "Django", "Docker", "FastAPI", "Java", "PostgreSQL", "Python", "React"]
    )


@pytest.fixture
def fake_region_repository():
    return FakeRegionRepository()
