from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError

from job_ingestion.clients.base import ClientSettings
from job_ingestion.clients.france_travail import (
    FranceTravailClient,
    FranceTravailSearchOptions,
    parse_salary_label,
)
from job_ingestion.regions import RegionResolver

TOKEN_RESPONSE = {"access_token": "token-1", "token_type": "Bearer", "expires_in": 1499}

OFFER = {
    "id": "178XKJP",
    "intitule": "Développeur Python Senior (H/F)",
    "entreprise": {"nom": "Acme"},
    "description": "Vous développerez des services en Python et Django avec PostgreSQL.",
    "lieuTravail": {"libelle": "974 - Saint-Denis", "codePostal": "97400"},
    "salaire": {"libelle": "Annuel de 40000.00 Euros à 50000.00 Euros"},
    "experienceLibelle": "5 ans",
    "dateCreation": "2024-05-01T10:00:00.000Z",
    "origineOffre": {"urlOrigine": "https://candidat.francetravail.fr/offres/178XKJP"},
}


@pytest.fixture
def client(fake_region_repository):
    return FranceTravailClient(
        client_id="id",
        client_secret="secret",
        region_resolver=RegionResolver(fake_region_repository),
        settings=ClientSettings(retry_delay=0.01, request_delay=0.01),
    )


@pytest.fixture
def mock_sleep():
    with patch("job_ingestion.clients.base.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


def _search_requests(httpx_mock):
    return [r for r in httpx_mock.get_requests() if r.method == "GET"]


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Annuel de 40000.00 Euros à 50000.00 Euros", (40000, 50000)),
        ("Annuel de 35 000 à 45 000 euros", (35000, 45000)),
        ("Mensuel de 3000.00 Euros à 3500.00 Euros sur 12 mois", (36000, 42000)),
        ("Mensuel de 3000 Euros", (36000, 36000)),
        ("Selon profil", (None, None)),
        (None, (None, None)),
    ],
)
def test_parse_salary_label(label, expected):
    assert parse_salary_label(label) == expected


def test_missing_credentials_raise(monkeypatch):
    monkeypatch.setattr(
        "job_ingestion.clients.france_travail.config",
        SimpleNamespace(FRANCE_TRAVAIL_CLIENT_ID="", FRANCE_TRAVAIL_CLIENT_SECRET=""),
    )
    with pytest.raises(ValueError, match="France Travail credentials"):
        FranceTravailClient()


def test_credentials_default_to_environment():
    client = FranceTravailClient()
    assert client.client_id == "test_client_id"
    assert client.circuit_breaker is not None
    assert client.settings.request_delay == 0.15


@pytest.mark.parametrize("bad_range", ["0-", "abc", "10-5"])
def test_search_options_validate_range(bad_range):
    with pytest.raises(ValidationError):
        FranceTravailSearchOptions(range=bad_range)


def test_query_params_include_optional_filters():
    options = FranceTravailSearchOptions(keywords="python", departement="69", temps_plein=True)
    assert options.query_params("0-149") == {
        "motsCles": "python",
        "range": "0-149",
        "departement": "69",
        "tempsPlein": "true",
    }


@pytest.mark.asyncio
async def test_fetch_jobs_maps_offers(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER, {"intitule": "no id"}]})

    jobs = await client.fetch_jobs()

    assert len(jobs) == 1
    job = jobs[0]
    assert job.external_id == "francetravail-178XKJP"
    assert job.title == "Développeur Python Senior (H/F)"
    assert job.company == "Acme"
    assert job.technologies == ["Django", "PostgreSQL", "Python"]
    assert job.location == "974 - Saint-Denis"
    assert job.region_id == 17
    assert (job.salary_min, job.salary_max) == (40, 50)
    assert job.experience_level == "5 ans"
    assert job.source_url == "https://candidat.francetravail.fr/offres/178XKJP"

    token_request, search_request = httpx_mock.get_requests()
    assert token_request.url.params["realm"] == "/partenaire"
    assert b"grant_type=client_credentials" in token_request.content
    assert search_request.headers["Authorization"] == "Bearer token-1"
    assert search_request.url.params["range"] == "0-149"
    assert search_request.url.params["motsCles"] == "développeur"


@pytest.mark.asyncio
async def test_region_from_department_label_without_postal_code(client, httpx_mock):
    offer = {**OFFER, "lieuTravail": {"libelle": "974 - Saint-Denis"}}
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": [offer]})

    jobs = await client.fetch_jobs()

    assert jobs[0].region_id == 17


@pytest.mark.asyncio
async def test_offer_defaults(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(
        method="GET", json={"resultats": [{"id": 42, "description": "Java et Spring Boot"}]}
    )

    jobs = await client.fetch_jobs()

    assert jobs[0].title == "Poste non spécifié"
    assert jobs[0].company == "Non spécifié"
    assert jobs[0].location == "France"
    assert jobs[0].region_id is None
    assert jobs[0].source_url == "https://candidat.francetravail.fr/offres/recherche/detail/42"


@pytest.mark.asyncio
async def test_paginates_in_ranges_and_reuses_token(client, httpx_mock, mock_sleep):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER]})
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER]})

    jobs = await client.fetch_jobs(FranceTravailSearchOptions(max_results=200, page_size=100))

    assert len(jobs) == 2
    ranges = [r.url.params["range"] for r in _search_requests(httpx_mock)]
    assert ranges == ["0-99", "100-199"]
    assert len([r for r in httpx_mock.get_requests() if r.method == "POST"]) == 1
    mock_sleep.assert_awaited_once_with(0.01)


@pytest.mark.asyncio
async def test_page_size_is_clamped(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": []})

    await client.fetch_jobs(FranceTravailSearchOptions(max_results=300, page_size=500))

    assert [r.url.params["range"] for r in _search_requests(httpx_mock)] == ["0-149"]


@pytest.mark.asyncio
async def test_explicit_range_fetches_one_window(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER]})

    await client.fetch_jobs(FranceTravailSearchOptions(range="150-299", max_results=1000))

    assert [r.url.params["range"] for r in _search_requests(httpx_mock)] == ["150-299"]


@pytest.mark.asyncio
async def test_stops_on_empty_results(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={})

    jobs = await client.fetch_jobs(FranceTravailSearchOptions(max_results=450))

    assert jobs == []
    assert len(_search_requests(httpx_mock)) == 1


@pytest.mark.asyncio
async def test_failure_keeps_jobs_already_fetched(client, httpx_mock, mock_sleep):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER]})
    httpx_mock.add_response(method="GET", status_code=400)

    jobs = await client.fetch_jobs(FranceTravailSearchOptions(max_results=300))

    assert len(jobs) == 1
    assert len(_search_requests(httpx_mock)) == 2


@pytest.mark.asyncio
async def test_retries_server_errors_three_times(client, httpx_mock, mock_sleep):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    for _ in range(3):
        httpx_mock.add_response(method="GET", status_code=502)

    assert await client.fetch_jobs() == []
    assert len(_search_requests(httpx_mock)) == 3


@pytest.mark.asyncio
async def test_reauthenticates_once_on_401(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", status_code=401)
    httpx_mock.add_response(method="POST", json={**TOKEN_RESPONSE, "access_token": "token-2"})
    httpx_mock.add_response(method="GET", json={"resultats": [OFFER]})

    jobs = await client.fetch_jobs()

    assert len(jobs) == 1
    searches = _search_requests(httpx_mock)
    assert [r.headers["Authorization"] for r in searches] == ["Bearer token-1", "Bearer token-2"]


@pytest.mark.asyncio
async def test_second_401_gives_up(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", status_code=401)
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="GET", status_code=403)

    assert await client.fetch_jobs() == []
    assert len(_search_requests(httpx_mock)) == 2


@pytest.mark.asyncio
async def test_token_failure_returns_no_jobs(client, httpx_mock):
    httpx_mock.add_response(method="POST", status_code=401, json={"error": "invalid_client"})

    assert await client.fetch_jobs() == []
    assert _search_requests(httpx_mock) == []
    assert not client.has_valid_token


@pytest.mark.asyncio
async def test_token_is_cached_until_cleared(client, httpx_mock):
    httpx_mock.add_response(method="POST", json=TOKEN_RESPONSE)
    httpx_mock.add_response(method="POST", json={**TOKEN_RESPONSE, "access_token": "token-2"})

    assert await client.get_token() == "token-1"
    assert await client.get_token() == "token-1"
    assert client.has_valid_token

    client.clear_token()
    assert not client.has_valid_token
    assert await client.get_token() == "token-2"


@pytest.mark.asyncio
async def test_token_is_refreshed_before_expiry(client, httpx_mock, monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(
        "job_ingestion.clients.france_travail.time", SimpleNamespace(monotonic=lambda: now[0])
    )
    httpx_mock.add_response(method="POST", json={**TOKEN_RESPONSE, "expires_in": 100})
    httpx_mock.add_response(method="POST", json={**TOKEN_RESPONSE, "access_token": "token-2"})

    assert await client.get_token() == "token-1"

    # Still inside the lifetime minus the 10 second margin
    now[0] = 1089.0
    assert await client.get_token() == "token-1"

    now[0] = 1090.0
    assert not client.has_valid_token
    assert await client.get_token() == "token-2"
    assert len(httpx_mock.get_requests()) == 2
