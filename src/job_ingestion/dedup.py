import logging
from collections import Counter, defaultdict

from rapidfuzz.distance import Levenshtein

from job_ingestion.config import (
    DEDUP_MAX_DATE_DIFF_DAYS,
    DEDUP_MIN_TECH_OVERLAP,
    DEDUP_SIMILARITY_THRESHOLD,
    DEDUP_WEIGHTS,
)
from job_ingestion.models import DeduplicationStats, Job, normalize_for_key

logger = logging.getLogger(__name__)


def _days_between(job1: Job, job2: Job) -> float:
    return abs((job1.posted_date - job2.posted_date).total_seconds()) / 86400


def compare_strings(first: str, second: str) -> float:
    """Normalized Levenshtein similarity of two already-normalized strings (0-1)."""
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    return Levenshtein.normalized_similarity(first, second)


def technology_overlap(first: list[str], second: list[str]) -> float:
    """Jaccard similarity of two technology lists, halved below the minimum overlap."""
    if not first and not second:
        return 1.0
    if not first or not second:
        return 0.0
    set1 = {normalize_for_key(t) for t in first}
    set2 = {normalize_for_key(t) for t in second}
    jaccard = len(set1 & set2) / len(set1 | set2)
    return jaccard if jaccard >= DEDUP_MIN_TECH_OVERLAP else jaccard * 0.5


def date_proximity(days: float) -> float:
    """1.0 on the same day, decaying to 0.7 over a week, to 0.3 over a month."""
    if days == 0:
        return 1.0
    if days <= 7:
        return 1 - (days / 7) * 0.3
    if days <= 30:
        return 0.7 - ((days - 7) / 23) * 0.4
    return 0.3


class JobDeduplicationService:
    """
    Detects the same posting published through several providers.

    Two jobs from different sources are candidates only when their fuzzy
    keys (normalized company and title) match and they were posted within
    a month of each other; a weighted similarity score then decides.
    """

    def __init__(
        self,
        weights: dict[str, int] | None = None,
        threshold: float = DEDUP_SIMILARITY_THRESHOLD,
        max_date_diff_days: int = DEDUP_MAX_DATE_DIFF_DAYS,
    ) -> None:
        self.weights = weights or DEDUP_WEIGHTS
        self.threshold = threshold
        self.max_date_diff_days = max_date_diff_days

    def similarity_breakdown(self, job1: Job, job2: Job) -> dict[str, float]:
        return {
            "company": compare_strings(
                normalize_for_key(job1.company), normalize_for_key(job2.company)
            ),
            "title": compare_strings(normalize_for_key(job1.title), normalize_for_key(job2.title)),
            "location": compare_strings(
                normalize_for_key(job1.location), normalize_for_key(job2.location)
            ),
            "technologies": technology_overlap(job1.technologies, job2.technologies),
            "posted_date": date_proximity(_days_between(job1, job2)),
        }

    def calculate_similarity(self, job1: Job, job2: Job) -> float:
        breakdown = self.similarity_breakdown(job1, job2)
        total_weight = sum(self.weights.values())
        score = sum(breakdown[signal] * weight for signal, weight in self.weights.items())
        return score / total_weight

    def is_duplicate(self, job1: Job, job2: Job) -> bool:
        if job1.dedup_key() == job2.dedup_key():
            return True
        if job1.source_api == job2.source_api:
            return False
        if job1.fuzzy_dedup_key() != job2.fuzzy_dedup_key():
            return False
        if _days_between(job1, job2) > self.max_date_diff_days:
            return False
        return self.calculate_similarity(job1, job2) >= self.threshold

    def find_duplicates(self, job: Job, candidates: list[Job]) -> list[Job]:
        return [c for c in candidates if c.id != job.id and self.is_duplicate(job, c)]

    def merge_duplicates(self, jobs: list[Job]) -> Job:
        """Merge a group into a copy of its highest-quality member."""
        if not jobs:
            raise ValueError("Cannot merge an empty job list")
        if len(jobs) == 1:
            return jobs[0]

        primary = max(jobs, key=lambda job: job.quality_score())
        merged = primary.model_copy(deep=True)
        for job in jobs:
            if job.id != primary.id:
                merged.merge_from(job)
        return merged

    def deduplicate(self, jobs: list[Job]) -> list[Job]:
        groups: dict[str, list[Job]] = defaultdict(list)
        for job in jobs:
            groups[job.fuzzy_dedup_key()].append(job)

        unique: list[Job] = []
        processed: set[str] = set()
        for group in groups.values():
            for job in group:
                if job.id in processed:
                    continue
                duplicates = [job, *self.find_duplicates(job, group)]
                processed.update(d.id for d in duplicates)
                if len(duplicates) > 1:
                    logger.debug(
                        f"Merging {len(duplicates)} postings of '{job.title}' at {job.company}"
                    )
                unique.append(self.merge_duplicates(duplicates))
        return unique

    def statistics(self, original: list[Job], deduplicated: list[Job]) -> DeduplicationStats:
        multi_source = [job for job in deduplicated if len(job.source_apis) > 1]
        source_breakdown: Counter[str] = Counter()
        for job in deduplicated:
            source_breakdown.update(job.source_apis)

        average_quality = (
            sum(job.quality_score() for job in deduplicated) / len(deduplicated)
            if deduplicated
            else 0.0
        )
        removed = len(original) - len(deduplicated)

        return DeduplicationStats(
            original_count=len(original),
            deduplicated_count=len(deduplicated),
            duplicates_removed=removed,
            duplicate_rate=round(removed / len(original) * 100, 2) if original else 0.0,
            multi_source_jobs=len(multi_source),
            multi_source_rate=(
                round(len(multi_source) / len(deduplicated) * 100, 2) if deduplicated else 0.0
            ),
            average_quality_score=round(average_quality, 1),
            source_breakdown=dict(source_breakdown),
        )

    def analyze(self, jobs: list[Job]) -> DeduplicationStats:
        return self.statistics(jobs, self.deduplicate(jobs))
