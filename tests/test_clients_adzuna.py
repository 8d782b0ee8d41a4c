import re
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from job_ingestion.clients.adzuna import AdzunaClient, AdzunaSearchOptions
from job_ingestion.clients.base import ClientSettings
from job_ingestion.regions import RegionResolver

PAGE_1 = re.compile(r"https://api\.adzuna\.com/v1/api/jobs/fr/search/1\?.*")
PAGE_2 = re.compile(r"https://api\.adzuna\.com/v1/api/jobs/fr/search/2\?.*")


def _result(job_id, **overrides):
    result = {
        "id": job_id,
        "title": "Développeur Full Stack",
        "company": {"display_name": "Acme"},
        "description": "Stack React, TypeScript et Node.js. Tests et CI sur Docker.",
        "location": {"display_name": "Lyon, Rhône"},
        "salary_min": 45000.0,
        "salary_max": 55000.0,
        "redirect_url": f"https://www.adzuna.fr/details/{job_id}",
        "created": "2024-05-01T10:00:00Z",
    }
    result.update(overrides)
    return result


@pytest.fixture
def client(fake_region_repository):
    return AdzunaClient(
        app_id="id",
        app_key="key",
        region_resolver=RegionResolver(fake_region_repository),
        settings=ClientSettings(retry_delay=0.01, request_delay=0.01),
    )


@pytest.fixture
def mock_sleep():
    with patch("job_ingestion.clients.base.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


def test_missing_credentials_raise(monkeypatch):
    monkeypatch.setattr(
        "job_ingestion.clients.adzuna.config",
        SimpleNamespace(ADZUNA_APP_ID="", ADZUNA_APP_KEY=""),
    )
    with pytest.raises(ValueError, match="Adzuna credentials"):
        AdzunaClient()


@pytest.mark.asyncio
async def test_fetch_jobs_maps_results(client, httpx_mock):
    httpx_mock.add_response(url=PAGE_1, json={"results": [_result(4242)]})

    jobs = await client.fetch_jobs(AdzunaSearchOptions(max_pages=1))

    assert len(jobs) == 1
    job = jobs[0]
    assert job.external_id == "adzuna-4242"
    assert job.company == "Acme"
    assert job.technologies == ["Docker", "Node.js", "React", "TypeScript"]
    assert job.location == "Lyon, Rhône"
    assert job.region_id == 2
    assert (job.salary_min, job.salary_max) == (45, 55)
    assert job.source_url == "https://www.adzuna.fr/details/4242"

    request = httpx_mock.get_requests()[0]
    assert request.url.params["app_id"] == "id"
    assert request.url.params["app_key"] == "key"
    assert request.url.params["results_per_page"] == "50"


@pytest.mark.asyncio
async def test_defaults_and_unrealistic_salaries(client, httpx_mock):
    httpx_mock.add_response(
        url=PAGE_1,
        json={
            "results": [
                {
                    "id": "1",
                    "description": "Python et Django",
                    "salary_min": 500.0,
                    "salary_max": 900000.0,
                }
            ]
        },
    )

    jobs = await client.fetch_jobs(AdzunaSearchOptions(max_pages=1))

    job = jobs[0]
    assert job.title == "Sans titre"
    assert job.company == "Non spécifié"
    assert job.location == "France"
    assert job.region_id is None
    assert (job.salary_min, job.salary_max) == (None, None)


@pytest.mark.asyncio
async def test_inverted_salary_range_is_discarded(client, httpx_mock):
    httpx_mock.add_response(
        url=PAGE_1, json={"results": [_result(1, salary_min=90000.0, salary_max=50000.0)]}
    )

    jobs = await client.fetch_jobs(AdzunaSearchOptions(max_pages=1))

    assert (jobs[0].salary_min, jobs[0].salary_max) == (None, None)


@pytest.mark.asyncio
async def test_paginates_until_empty_page(client, httpx_mock, mock_sleep):
    httpx_mock.add_response(url=PAGE_1, json={"results": [_result(1), _result(2)]})
    httpx_mock.add_response(url=PAGE_2, json={"results": []})

    jobs = await client.fetch_jobs(AdzunaSearchOptions(max_pages=3))

    assert [job.external_id for job in jobs] == ["adzuna-1", "adzuna-2"]
    assert len(httpx_mock.get_requests()) == 2
    mock_sleep.assert_awaited_once_with(0.01)


@pytest.mark.asyncio
async def test_skips_results_without_technologies(client, httpx_mock):
    httpx_mock.add_response(
        url=PAGE_1,
        json={
            "results": [
                _result(1),
                _result(2, title="Commercial", description="Prospection et vente"),
                {"title": "no id"},
            ]
        },
    )

    jobs = await client.fetch_jobs(AdzunaSearchOptions(max_pages=1))

    assert [job.external_id for job in jobs] == ["adzuna-1"]


@pytest.mark.asyncio
async def test_results_per_page_is_clamped(client, httpx_mock):
    httpx_mock.add_response(url=PAGE_1, json={"results": []})

    await client.fetch_jobs(AdzunaSearchOptions(max_pages=1, results_per_page=200))

    assert httpx_mock.get_requests()[0].url.params["results_per_page"] == "50"


@pytest.mark.asyncio
async def test_auth_error_is_terminal(client, httpx_mock):
    httpx_mock.add_response(url=PAGE_1, status_code=401)

    assert await client.fetch_jobs() == []
    assert len(httpx_mock.get_requests()) == 1
