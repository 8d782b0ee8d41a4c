import re
import unicodedata
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from job_ingestion.config import (
    DETAILED_DESCRIPTION_LENGTH,
    EXPIRATION_DAYS,
    HIGH_QUALITY_SCORE,
    MAX_DESCRIPTION_LENGTH,
    MAX_TECH_NAME_LENGTH,
    MAX_TECHNOLOGIES,
    MAX_TITLE_LENGTH,
    MIN_DESCRIPTION_LENGTH,
    MIN_QUALITY_SCORE,
    MIN_TECHNOLOGIES,
    MULTIPLE_TECHNOLOGIES_COUNT,
    QUALITY_WEIGHTS,
    RECENT_DAYS_THRESHOLD,
)

ExperienceCategory = Literal["junior", "mid", "senior", "lead", "unknown"]
EXPERIENCE_CATEGORIES: tuple[ExperienceCategory, ...] = (
    "junior",
    "mid",
    "senior",
    "lead",
    "unknown",
)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_for_key(text: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    without_accents = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    without_punctuation = re.sub(r"[^\w\s]", "", without_accents)
    return re.sub(r"\s+", " ", without_punctuation).strip()


class JobExpiredError(Exception):
    """Raised when trying to reactivate a job whose posting date is past the expiration window."""


class RawJobData(BaseModel):
    """
    Source-agnostic job record produced by the per-source mappers.
    `id` is generated fresh for every ingestion attempt; storage identity
    comes from the (source_api, external_id) pair.
    """

    id: str
    title: str
    company: str
    description: str = ""
    technologies: list[str] | None = None
    location: str = ""
    is_remote: bool = False
    salary_min: int | None = None
    salary_max: int | None = None
    experience_level: str | None = None
    source_api: str
    external_id: str
    source_url: str = ""
    posted_date: datetime


class Job(BaseModel):
    """
    Validated job posting eligible for persistence.
    Salaries are expressed in thousands of currency units.
    """

    id: str
    title: str = Field(max_length=MAX_TITLE_LENGTH)
    company: str
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    technologies: list[str] = Field(min_length=MIN_TECHNOLOGIES, max_length=MAX_TECHNOLOGIES)
    location: str = ""
    region_id: int | None = None
    is_remote: bool = False
    salary_min: int | None = None
    salary_max: int | None = None
    experience_level: str | None = None
    experience_category: ExperienceCategory = "unknown"
    source_api: str
    external_id: str
    source_url: str = ""
    posted_date: datetime
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    source_apis: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Job title is required")
        return value

    @field_validator("technologies")
    @classmethod
    def _technology_names_fit(cls, value: list[str]) -> list[str]:
        for tech in value:
            if len(tech) > MAX_TECH_NAME_LENGTH:
                raise ValueError(
                    f"Technology name '{tech[:20]}...' exceeds {MAX_TECH_NAME_LENGTH} characters"
                )
        return value

    @field_validator("posted_date", "created_at", "updated_at")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Job":
        if self.posted_date > utcnow():
            raise ValueError("Posted date cannot be in the future")
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            raise ValueError(
                f"Invalid salary range: min {self.salary_min} is greater than max {self.salary_max}"
            )
        # The primary source always leads the list of contributing sources
        if self.source_api not in self.source_apis:
            self.source_apis = [self.source_api, *self.source_apis]
        return self

    def quality_score(self, weights: dict[str, int] | None = None) -> int:
        """Weighted sum of completeness signals, capped at 100."""
        weights = weights or QUALITY_WEIGHTS
        score = 0

        if self.salary_min or self.salary_max:
            score += weights["has_salary"]
        if self.region_id:
            score += weights["has_region"]
        if self.description and len(self.description) > MIN_DESCRIPTION_LENGTH:
            score += weights["has_description"]
        if len(self.technologies) >= MULTIPLE_TECHNOLOGIES_COUNT:
            score += weights["has_multiple_technologies"]
        if self.experience_category != "unknown" or self.experience_level:
            score += weights["has_experience_level"]

        return min(score, 100)

    def meets_quality_standards(self, threshold: int = MIN_QUALITY_SCORE) -> bool:
        return self.quality_score() >= threshold

    def salary_midpoint(self) -> float | None:
        if not self.salary_min or not self.salary_max:
            return None
        return (self.salary_min + self.salary_max) / 2

    def age_days(self) -> float:
        return (utcnow() - self.posted_date).total_seconds() / 86400

    def is_recent(self, days: int = RECENT_DAYS_THRESHOLD) -> bool:
        return self.age_days() <= days

    def is_expired(self, expiration_days: int = EXPIRATION_DAYS) -> bool:
        return self.age_days() > expiration_days

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = utcnow()

    def reactivate(self) -> None:
        if self.is_expired():
            raise JobExpiredError(
                f"Job {self.dedup_key()} was posted more than {EXPIRATION_DAYS} days ago"
            )
        self.is_active = True
        self.updated_at = utcnow()

    def dedup_key(self) -> str:
        """Exact identity of a posting within its source."""
        return f"{self.source_api}:{self.external_id}"

    def fuzzy_dedup_key(self) -> str:
        """Cross-source matching key built from the normalized company and title."""
        return f"{normalize_for_key(self.company)}:{normalize_for_key(self.title)}"

    def is_from_source(self, source: str) -> bool:
        return source in self.source_apis

    def merge_from(self, other: "Job") -> None:
        """Fold another posting of the same logical job into this one."""
        self.updated_at = utcnow()

        for source in other.source_apis:
            if source not in self.source_apis:
                self.source_apis.append(source)

        if other.salary_min and other.salary_max and not (self.salary_min and self.salary_max):
            self.salary_min = other.salary_min
            self.salary_max = other.salary_max
        else:
            if not self.salary_min and other.salary_min:
                self.salary_min = other.salary_min
            if not self.salary_max and other.salary_max:
                self.salary_max = other.salary_max

        if not self.region_id and other.region_id:
            self.region_id = other.region_id
        if not self.experience_level and other.experience_level:
            self.experience_level = other.experience_level
        if self.experience_category == "unknown" and other.experience_category != "unknown":
            self.experience_category = other.experience_category

        if len(other.description) > len(self.description):
            self.description = other.description

        seen = {t.lower().strip() for t in self.technologies}
        for tech in other.technologies:
            if tech.lower().strip() not in seen:
                seen.add(tech.lower().strip())
                self.technologies.append(tech)
        self.technologies = self.technologies[:MAX_TECHNOLOGIES]

        if other.posted_date > self.posted_date:
            self.posted_date = other.posted_date

        if not self.source_url or len(other.source_url) > len(self.source_url):
            self.source_url = other.source_url


class BulkSaveResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class JobFilters(BaseModel):
    """Query filters understood by the job repository."""

    is_active: bool | None = True
    region_id: int | None = None
    technologies: list[str] | None = None
    experience_category: ExperienceCategory | None = None
    is_remote: bool | None = None
    min_salary: int | None = None
    posted_after: datetime | None = None
    recent_days: int | None = None
    source_api: str | None = None
    company: str | None = None


class IngestResult(BaseModel):
    """Counts and errors observed while ingesting one batch."""

    total: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    filtered: int = 0  # valid jobs dropped below the quality threshold
    errors: list[str] = Field(default_factory=list)
    source_api: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class QualityStats(BaseModel):
    average_quality_score: float = 0.0
    high_quality_jobs: int = 0
    medium_quality_jobs: int = 0
    low_quality_jobs: int = 0


class DataCompleteness(BaseModel):
    with_salary: int = 0
    with_region: int = 0
    with_experience: int = 0
    with_description: int = 0


class TechnologyCount(BaseModel):
    name: str
    count: int


class TechnologyStats(BaseModel):
    total_technologies: int = 0
    unknown_technologies: int = 0
    top_technologies: list[TechnologyCount] = Field(default_factory=list)


class IngestStats(BaseModel):
    result: IngestResult
    quality_stats: QualityStats = Field(default_factory=QualityStats)
    data_completeness: DataCompleteness = Field(default_factory=DataCompleteness)
    technology_stats: TechnologyStats = Field(default_factory=TechnologyStats)
    unknown_technologies: list[str] = Field(default_factory=list)

    @classmethod
    def from_jobs(
        cls, result: IngestResult, jobs: list[Job], unknown_technologies: list[str]
    ) -> "IngestStats":
        """Summarize quality, completeness and technology coverage of the processed jobs."""
        scores = [job.quality_score() for job in jobs]
        average = sum(scores) / len(scores) if scores else 0.0

        technology_counts: Counter[str] = Counter()
        for job in jobs:
            technology_counts.update(job.technologies)

        return cls(
            result=result,
            quality_stats=QualityStats(
                average_quality_score=round(average, 1),
                high_quality_jobs=sum(1 for s in scores if s >= HIGH_QUALITY_SCORE),
                medium_quality_jobs=sum(
                    1 for s in scores if MIN_QUALITY_SCORE <= s < HIGH_QUALITY_SCORE
                ),
                low_quality_jobs=sum(1 for s in scores if s < MIN_QUALITY_SCORE),
            ),
            data_completeness=DataCompleteness(
                with_salary=sum(
                    1 for j in jobs if j.salary_min is not None or j.salary_max is not None
                ),
                with_region=sum(1 for j in jobs if j.region_id is not None),
                with_experience=sum(1 for j in jobs if j.experience_category != "unknown"),
                with_description=sum(
                    1 for j in jobs if len(j.description) > DETAILED_DESCRIPTION_LENGTH
                ),
            ),
            technology_stats=TechnologyStats(
                total_technologies=len(technology_counts),
                unknown_technologies=len(unknown_technologies),
                top_technologies=[
                    TechnologyCount(name=name, count=count)
                    for name, count in technology_counts.most_common(10)
                ],
            ),
            unknown_technologies=sorted(unknown_technologies),
        )

    @classmethod
    def empty(cls, source_api: str | None = None) -> "IngestStats":
        return cls(result=IngestResult(source_api=source_api, finished_at=utcnow()))


class BatchSummary(BaseModel):
    total_processed: int = 0
    total_inserted: int = 0
    total_updated: int = 0
    total_failed: int = 0
    total_duration_ms: int = 0
    average_batch_duration_ms: float = 0.0


class BatchIngestResult(BaseModel):
    batches: list[IngestResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_batches(cls, batches: list[IngestResult]) -> "BatchIngestResult":
        durations = [b.duration_ms for b in batches if b.duration_ms]
        total_duration = sum(durations)
        return cls(
            batches=batches,
            summary=BatchSummary(
                total_processed=sum(b.total for b in batches),
                total_inserted=sum(b.inserted for b in batches),
                total_updated=sum(b.updated for b in batches),
                total_failed=sum(b.failed for b in batches),
                total_duration_ms=total_duration,
                average_batch_duration_ms=total_duration / len(durations) if durations else 0.0,
            ),
            errors=[error for b in batches for error in b.errors],
        )


class DeduplicationStats(BaseModel):
    original_count: int = 0
    deduplicated_count: int = 0
    duplicates_removed: int = 0
    duplicate_rate: float = 0.0  # percentage
    multi_source_jobs: int = 0
    multi_source_rate: float = 0.0  # percentage
    average_quality_score: float = 0.0
    source_breakdown: dict[str, int] = Field(default_factory=dict)


class OrchestrationSummary(BaseModel):
    total_fetched: int = 0
    total_ingested: int = 0
    total_failed: int = 0
    total_duplicated: int = 0
    duration_ms: int = 0
    sources_processed: list[str] = Field(default_factory=list)
    sources_skipped: list[str] = Field(default_factory=list)


class OrchestrationResult(BaseModel):
    sources: dict[str, IngestStats] = Field(default_factory=dict)
    deduplication: DeduplicationStats | None = None
    summary: OrchestrationSummary = Field(default_factory=OrchestrationSummary)


def days_ago(days: float) -> datetime:
    return utcnow() - timedelta(days=days)
