"""Collaborator contracts consumed by the ingestion pipeline."""

from typing import Protocol

from job_ingestion.models import BulkSaveResult, Job, JobFilters


class JobRepository(Protocol):
    async def find_all(
        self, filters: JobFilters | None = None, page: int = 1, limit: int = 20
    ) -> list[Job]: ...

    async def count(self, filters: JobFilters | None = None) -> int: ...

    async def save(self, job: Job) -> Job: ...

    async def save_many(self, jobs: list[Job]) -> BulkSaveResult: ...


class TechnologyRepository(Protocol):
    async def find_all(self) -> list[str]:
        """Canonical names of every known technology."""
        ...


class RegionRepository(Protocol):
    async def find_by_code(self, code: str) -> int | None: ...
