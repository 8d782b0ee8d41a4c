import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from job_ingestion.clients.base import (
    BaseJobClient,
    ProviderJob,
    parse_posted_date,
    realistic_salary_range,
    strip_html,
)
from job_ingestion.config import REMOTIVE_DEFAULT_CATEGORY, REMOTIVE_DEFAULT_LIMIT

logger = logging.getLogger(__name__)

SEARCH_URL = "https://remotive.com/api/remote-jobs"
JOB_URL = "https://remotive.com/remote-jobs/{id}"
MAX_LIMIT = 100

_RANGE_SALARY = re.compile(
    r"[$€]?\s*(\d+(?:,\d{3})*)(k)?\s*(?:[-–—]|to)\s*[$€]?\s*(\d+(?:,\d{3})*)(k)?",
    re.IGNORECASE,
)
_SINGLE_SALARY = re.compile(r"[$€]?\s*(\d+(?:,\d{3})*)(k)?", re.IGNORECASE)


class RemotiveJob(BaseModel):
    """One item of the `jobs` array returned by Remotive."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    title: str | None = None
    company_name: str | None = None
    description: str | None = None
    candidate_required_location: str | None = None
    salary: str | None = None
    url: str | None = None
    publication_date: str | None = None


class RemotiveSearchOptions(BaseModel):
    limit: int = Field(default=REMOTIVE_DEFAULT_LIMIT, ge=1)
    category: str = REMOTIVE_DEFAULT_CATEGORY
    search: str | None = None
    company_name: str | None = None

    @classmethod
    def from_limit(cls, limit: int) -> "RemotiveSearchOptions":
        """Options for a plain "give me N jobs" request."""
        return cls(limit=limit)

    def query_params(self, limit: int) -> dict[str, str | int]:
        params: dict[str, str | int] = {"category": self.category, "limit": limit}
        if self.search:
            params["search"] = self.search
        if self.company_name:
            params["company_name"] = self.company_name
        return params


def _to_thousands(number: str, has_k: str | None) -> int | None:
    value = int(number.replace(",", ""))
    if value <= 0:
        return None
    # "40k" is already expressed in thousands
    return value if has_k else round(value / 1000)


def parse_salary(text: str | None) -> tuple[int | None, int | None]:
    """
    Parse free-text salaries such as "$40k - $50k", "$40,000 - $50,000",
    "45000 - 65000", "€60k to €80k" or "$50k". Returns thousands.
    """
    if not text:
        return None, None

    match = _RANGE_SALARY.search(text)
    if match:
        salary_min = _to_thousands(match.group(1), match.group(2))
        salary_max = _to_thousands(match.group(3), match.group(4))
        if salary_min is not None and salary_max is not None and salary_min > salary_max:
            logger.warning(f"Invalid salary range: {text!r}")
            return None, None
        return salary_min, salary_max

    match = _SINGLE_SALARY.search(text)
    if match:
        amount = _to_thousands(match.group(1), match.group(2))
        return amount, amount
    return None, None


class RemotiveClient(BaseJobClient):
    """
    Client for the public Remotive API. No credentials, no pagination:
    one request returns up to `limit` jobs. Remotive asks to be polled
    only a few times a day.
    """

    SOURCE_NAME = "remotive"

    async def fetch_jobs(self, options: RemotiveSearchOptions | None = None) -> list[ProviderJob]:
        options = options or RemotiveSearchOptions()
        limit = self._clamp("limit", options.limit, MAX_LIMIT)

        payload = await self._request_json("GET", SEARCH_URL, params=options.query_params(limit))
        if payload is None:
            return []

        items = payload.get("jobs") or []
        jobs: list[ProviderJob] = []
        for item in self._parse_items(items, RemotiveJob):
            job = self._to_provider_job(item)
            if job is not None:
                jobs.append(job)
        logger.info(f"Fetched {len(jobs)} jobs from Remotive")
        return jobs

    def _to_provider_job(self, item: RemotiveJob) -> ProviderJob | None:
        external_id = f"remotive-{item.id}"
        title = item.title or "Remote Position"
        description = strip_html(item.description or "")

        technologies = self._detect_technologies(external_id, title, description)
        if not technologies:
            return None

        salary_min, salary_max = realistic_salary_range(
            *parse_salary(item.salary), f" for {external_id}"
        )

        return ProviderJob(
            external_id=external_id,
            title=title,
            company=item.company_name or "Company Not Specified",
            description=description,
            technologies=technologies,
            location=item.candidate_required_location or "Remote",
            salary_min=salary_min,
            salary_max=salary_max,
            source_url=item.url or JOB_URL.format(id=item.id),
            posted_date=parse_posted_date(item.publication_date),
        )
