"""Per-source conversion of provider postings into RawJobData."""

from collections.abc import Callable, Iterable
from uuid import uuid4

from job_ingestion.clients.base import ProviderJob
from job_ingestion.models import RawJobData

REMOTE_KEYWORDS = [
    "remote",
    "télétravail",
    "teletravail",
    "à distance",
    "full remote",
    "100% remote",
    "home office",
]


def is_remote_text(*texts: str | None) -> bool:
    combined = " ".join(t for t in texts if t).lower()
    return any(keyword in combined for keyword in REMOTE_KEYWORDS)


def _raw_job(job: ProviderJob, source_api: str, **overrides) -> RawJobData:
    fields = {
        "id": str(uuid4()),
        "title": job.title,
        "company": job.company,
        "description": job.description,
        "technologies": None,
        "location": job.location,
        "is_remote": is_remote_text(job.location, job.description),
        "salary_min": job.salary_min,
        "salary_max": job.salary_max,
        "experience_level": job.experience_level,
        "source_api": source_api,
        "external_id": job.external_id,
        "source_url": job.source_url,
        "posted_date": job.posted_date,
    }
    fields.update(overrides)
    return RawJobData(**fields)


def map_france_travail(job: ProviderJob) -> RawJobData:
    # Technologies are detected again downstream from the full description
    return _raw_job(job, "france_travail")


def map_adzuna(job: ProviderJob) -> RawJobData:
    return _raw_job(job, "adzuna", technologies=list(job.technologies))


def map_remotive(job: ProviderJob) -> RawJobData:
    return _raw_job(job, "remotive", is_remote=True)


MAPPERS: dict[str, Callable[[ProviderJob], RawJobData]] = {
    "france_travail": map_france_travail,
    "adzuna": map_adzuna,
    "remotive": map_remotive,
}


def map_jobs(source: str, jobs: Iterable[ProviderJob]) -> list[RawJobData]:
    try:
        mapper = MAPPERS[source]
    except KeyError:
        raise ValueError(f"No mapper registered for source '{source}'") from None
    return [mapper(job) for job in jobs]
