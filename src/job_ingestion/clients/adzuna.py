import asyncio
import logging

import httpx
from pydantic import BaseModel, ConfigDict, Field

from job_ingestion import config
from job_ingestion.clients.base import (
    BaseJobClient,
    ClientSettings,
    ProviderJob,
    euros_to_thousands,
    parse_posted_date,
    realistic_salary_range,
)
from job_ingestion.config import (
    ADZUNA_DEFAULT_KEYWORDS,
    ADZUNA_DEFAULT_MAX_PAGES,
    ADZUNA_DEFAULT_RESULTS_PER_PAGE,
    ADZUNA_REQUEST_DELAY,
)
from job_ingestion.regions import RegionResolver

logger = logging.getLogger(__name__)

SEARCH_URL = "https://api.adzuna.com/v1/api/jobs/{country}/search/{page}"
MAX_RESULTS_PER_PAGE = 50


class _Company(BaseModel):
    display_name: str | None = None


class _Location(BaseModel):
    display_name: str | None = None


class AdzunaResult(BaseModel):
    """One item of the `results` array returned by the Adzuna search."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    title: str | None = None
    company: _Company | None = None
    description: str | None = None
    location: _Location | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    redirect_url: str | None = None
    created: str | None = None


class AdzunaSearchOptions(BaseModel):
    keywords: str = ADZUNA_DEFAULT_KEYWORDS
    max_pages: int = Field(default=ADZUNA_DEFAULT_MAX_PAGES, ge=1)
    results_per_page: int = Field(default=ADZUNA_DEFAULT_RESULTS_PER_PAGE, ge=1)
    country: str = "fr"


class AdzunaClient(BaseJobClient):
    """Client for the Adzuna search API (app id / app key authentication)."""

    SOURCE_NAME = "adzuna"

    def __init__(
        self,
        app_id: str | None = None,
        app_key: str | None = None,
        region_resolver: RegionResolver | None = None,
        settings: ClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        app_id = app_id or config.ADZUNA_APP_ID
        app_key = app_key or config.ADZUNA_APP_KEY
        if not app_id or not app_key:
            raise ValueError("Adzuna credentials are required (ADZUNA_APP_ID and ADZUNA_APP_KEY)")
        super().__init__(settings, http_client)
        self.app_id = app_id
        self.app_key = app_key
        self.region_resolver = region_resolver or RegionResolver()

    @classmethod
    def default_settings(cls) -> ClientSettings:
        return ClientSettings(request_delay=ADZUNA_REQUEST_DELAY)

    async def fetch_jobs(self, options: AdzunaSearchOptions | None = None) -> list[ProviderJob]:
        options = options or AdzunaSearchOptions()
        per_page = self._clamp("results_per_page", options.results_per_page, MAX_RESULTS_PER_PAGE)
        jobs: list[ProviderJob] = []

        for page in range(1, options.max_pages + 1):
            payload = await self._request_json(
                "GET",
                SEARCH_URL.format(country=options.country, page=page),
                params={
                    "app_id": self.app_id,
                    "app_key": self.app_key,
                    "what": options.keywords,
                    "results_per_page": per_page,
                },
            )
            if payload is None:
                break

            items = payload.get("results") or []
            if not items:
                logger.info(f"Adzuna returned no results on page {page}, stopping pagination")
                break

            jobs.extend(await self._map_items(items))

            if page < options.max_pages:
                await self._pause()

        logger.info(f"Fetched {len(jobs)} jobs from Adzuna")
        return jobs

    async def _map_items(self, items: list) -> list[ProviderJob]:
        results = self._parse_items(items, AdzunaResult)
        mapped = await asyncio.gather(*(self._to_provider_job(result) for result in results))
        return [job for job in mapped if job is not None]

    async def _to_provider_job(self, result: AdzunaResult) -> ProviderJob | None:
        external_id = f"adzuna-{result.id}"
        title = result.title or "Sans titre"
        description = result.description or ""

        technologies = self._detect_technologies(external_id, title, description)
        if not technologies:
            return None

        location = (result.location.display_name if result.location else None) or "France"
        region_id = await self.region_resolver.resolve(location)

        salary_min, salary_max = realistic_salary_range(
            euros_to_thousands(result.salary_min),
            euros_to_thousands(result.salary_max),
            f" for {external_id}",
        )

        return ProviderJob(
            external_id=external_id,
            title=title,
            company=(result.company.display_name if result.company else None) or "Non spécifié",
            description=description,
            technologies=technologies,
            location=location,
            region_id=region_id,
            salary_min=salary_min,
            salary_max=salary_max,
            source_url=result.redirect_url or "",
            posted_date=parse_posted_date(result.created),
        )
