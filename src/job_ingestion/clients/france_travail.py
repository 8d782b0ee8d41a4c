import asyncio
import logging
import re
import time

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from job_ingestion import config
from job_ingestion.cache import SingleFlight
from job_ingestion.clients.base import (
    AuthenticationError,
    BaseJobClient,
    ClientSettings,
    ProviderJob,
    euros_to_thousands,
    parse_posted_date,
    realistic_salary_range,
)
from job_ingestion.config import (
    FRANCE_TRAVAIL_DEFAULT_KEYWORDS,
    FRANCE_TRAVAIL_DEFAULT_MAX_RESULTS,
    FRANCE_TRAVAIL_REQUEST_DELAY,
    MONTHS_PER_YEAR,
)
from job_ingestion.regions import RegionResolver

logger = logging.getLogger(__name__)

TOKEN_URL = "https://entreprise.francetravail.fr/connexion/oauth2/access_token"
TOKEN_REALM = "/partenaire"
TOKEN_SCOPE = "api_offresdemploiv2 o2dsoffre"
SEARCH_URL = "https://api.francetravail.io/partenaire/offresdemploi/v2/offres/search"
OFFER_URL = "https://candidat.francetravail.fr/offres/recherche/detail/{id}"

MAX_RANGE_SIZE = 150
DEFAULT_TOKEN_LIFETIME = 3600  # seconds
TOKEN_EXPIRY_MARGIN = 10  # seconds

_AMOUNT = r"(\d+(?:\s?\d{3})*)(?:[.,]\d+)?"
_RANGE_SALARY = re.compile(
    _AMOUNT + r"\s*(?:à|a|[-–—])\s*" + _AMOUNT + r"\s*(?:euros?|€)", re.IGNORECASE
)
_SINGLE_SALARY = re.compile(_AMOUNT + r"\s*(?:euros?|€)", re.IGNORECASE)
_RANGE_OPTION = re.compile(r"^\d+-\d+$")


class _Company(BaseModel):
    nom: str | None = None


class _WorkPlace(BaseModel):
    libelle: str | None = None
    code_postal: str | None = Field(default=None, alias="codePostal")


class _Salary(BaseModel):
    libelle: str | None = None


class _Origin(BaseModel):
    url_origine: str | None = Field(default=None, alias="urlOrigine")


class FranceTravailOffer(BaseModel):
    """One item of the `resultats` array returned by the offers search."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(min_length=1)
    intitule: str | None = None
    entreprise: _Company | None = None
    description: str | None = None
    lieu_travail: _WorkPlace | None = Field(default=None, alias="lieuTravail")
    salaire: _Salary | None = None
    experience_libelle: str | None = Field(default=None, alias="experienceLibelle")
    date_creation: str | None = Field(default=None, alias="dateCreation")
    origine_offre: _Origin | None = Field(default=None, alias="origineOffre")


class FranceTravailSearchOptions(BaseModel):
    """Search parameters. `range` fetches exactly one explicit "start-end" window."""

    keywords: str = FRANCE_TRAVAIL_DEFAULT_KEYWORDS
    max_results: int = Field(default=FRANCE_TRAVAIL_DEFAULT_MAX_RESULTS, ge=1)
    page_size: int = Field(default=MAX_RANGE_SIZE, ge=1)
    range: str | None = None
    commune: str | None = None
    departement: str | None = None
    code_rome: str | None = None
    type_contrat: str | None = None
    nature: str | None = None
    experience: str | None = None
    temps_plein: bool | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "FranceTravailSearchOptions":
        if self.range is not None:
            if not _RANGE_OPTION.match(self.range):
                raise ValueError(f"range must look like 'start-end', got '{self.range}'")
            start, end = (int(part) for part in self.range.split("-"))
            if end < start:
                raise ValueError(f"range end must not precede its start, got '{self.range}'")
        return self

    def query_params(self, window: str) -> dict[str, str]:
        params = {"motsCles": self.keywords, "range": window}
        optional = {
            "commune": self.commune,
            "departement": self.departement,
            "codeROME": self.code_rome,
            "typeContrat": self.type_contrat,
            "nature": self.nature,
            "experience": self.experience,
        }
        params.update({key: value for key, value in optional.items() if value})
        if self.temps_plein is not None:
            params["tempsPlein"] = "true" if self.temps_plein else "false"
        return params


def parse_salary_label(label: str | None) -> tuple[int | None, int | None]:
    """
    Extract a yearly salary range in euros from a label such as
    "Annuel de 35000.00 Euros à 45000.00 Euros" or "Mensuel de 3 000 Euros".
    Monthly amounts are converted to yearly ones.
    """
    if not label:
        return None, None

    multiplier = MONTHS_PER_YEAR if label.strip().lower().startswith("mensuel") else 1

    def amount(raw: str) -> int:
        return int(re.sub(r"\s", "", raw)) * multiplier

    match = _RANGE_SALARY.search(label)
    if match:
        return amount(match.group(1)), amount(match.group(2))

    # Range written with a currency on both ends: "35000 Euros à 45000 Euros"
    singles = _SINGLE_SALARY.findall(label)
    if len(singles) >= 2:
        return amount(singles[0]), amount(singles[1])
    if singles:
        value = amount(singles[0])
        return value, value
    return None, None


class FranceTravailClient(BaseJobClient):
    """
    Client for the France Travail offers API (OAuth2 client credentials).

    Results are requested in "start-end" ranges of at most 150 offers.
    The bearer token is cached until shortly before it expires and is
    re-fetched once when a search request is rejected with 401/403.
    """

    SOURCE_NAME = "france_travail"

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        region_resolver: RegionResolver | None = None,
        settings: ClientSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        client_id = client_id or config.FRANCE_TRAVAIL_CLIENT_ID
        client_secret = client_secret or config.FRANCE_TRAVAIL_CLIENT_SECRET
        if not client_id or not client_secret:
            raise ValueError(
                "France Travail credentials are required "
                "(FRANCE_TRAVAIL_CLIENT_ID and FRANCE_TRAVAIL_CLIENT_SECRET)"
            )
        super().__init__(settings, http_client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.region_resolver = region_resolver or RegionResolver()
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_flight: SingleFlight[str, str] = SingleFlight()

    @classmethod
    def default_settings(cls) -> ClientSettings:
        return ClientSettings(
            request_delay=FRANCE_TRAVAIL_REQUEST_DELAY, circuit_breaker_enabled=True
        )

    @property
    def has_valid_token(self) -> bool:
        return self._token is not None and time.monotonic() < self._token_expires_at

    def clear_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def get_token(self) -> str:
        if self.has_valid_token:
            return self._token
        return await self._token_flight.do("token", self._fetch_token)

    async def _fetch_token(self) -> str:
        try:
            response = await self.http.post(
                TOKEN_URL,
                params={"realm": TOKEN_REALM},
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": TOKEN_SCOPE,
                },
            )
        except httpx.TransportError as e:
            raise AuthenticationError(f"token request failed: {e!r}") from e

        if response.status_code != 200:
            raise AuthenticationError(f"token request failed with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise AuthenticationError("token response is not valid JSON") from e

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthenticationError("token response is missing access_token")

        expires_in = int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        logger.info(f"Obtained France Travail access token (expires in {expires_in}s)")
        return token

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.get_token()}"}

    async def _handle_auth_failure(self) -> bool:
        logger.warning("France Travail rejected the access token, re-authenticating")
        self.clear_token()
        try:
            await self.get_token()
        except AuthenticationError as e:
            logger.error(f"France Travail token refresh failed: {e}")
            return False
        return True

    def _windows(self, options: FranceTravailSearchOptions) -> list[str]:
        if options.range is not None:
            return [options.range]
        size = self._clamp("page_size", options.page_size, MAX_RANGE_SIZE)
        return [
            f"{start}-{min(start + size, options.max_results) - 1}"
            for start in range(0, options.max_results, size)
        ]

    async def fetch_jobs(
        self, options: FranceTravailSearchOptions | None = None
    ) -> list[ProviderJob]:
        options = options or FranceTravailSearchOptions()
        jobs: list[ProviderJob] = []

        windows = self._windows(options)
        for index, window in enumerate(windows):
            payload = await self._request_json(
                "GET", SEARCH_URL, params=options.query_params(window)
            )
            if payload is None:
                # Terminal failure; keep what was already fetched
                break

            items = payload.get("resultats") or []
            if not items:
                logger.info(f"France Travail returned no offers for range {window}")
                break

            jobs.extend(await self._map_items(items))

            if index < len(windows) - 1:
                await self._pause()

        logger.info(f"Fetched {len(jobs)} offers from France Travail")
        return jobs

    async def _map_items(self, items: list) -> list[ProviderJob]:
        offers = self._parse_items(items, FranceTravailOffer)
        mapped = await asyncio.gather(*(self._to_provider_job(offer) for offer in offers))
        return [job for job in mapped if job is not None]

    async def _to_provider_job(self, offer: FranceTravailOffer) -> ProviderJob | None:
        external_id = f"francetravail-{offer.id}"
        title = offer.intitule or "Poste non spécifié"
        description = offer.description or ""

        technologies = self._detect_technologies(external_id, title, description)
        if not technologies:
            return None

        workplace = offer.lieu_travail or _WorkPlace()
        region_id = await self.region_resolver.resolve(workplace.libelle, workplace.code_postal)

        min_euros, max_euros = parse_salary_label(offer.salaire.libelle if offer.salaire else None)
        salary_min, salary_max = realistic_salary_range(
            euros_to_thousands(min_euros), euros_to_thousands(max_euros), f" for {external_id}"
        )

        return ProviderJob(
            external_id=external_id,
            title=title,
            company=(offer.entreprise.nom if offer.entreprise else None) or "Non spécifié",
            description=description,
            technologies=technologies,
            location=workplace.libelle or "France",
            region_id=region_id,
            salary_min=salary_min,
            salary_max=salary_max,
            experience_level=offer.experience_libelle,
            source_url=(offer.origine_offre.url_origine if offer.origine_offre else None)
            or OFFER_URL.format(id=offer.id),
            posted_date=parse_posted_date(offer.date_creation),
        )
