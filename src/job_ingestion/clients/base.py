import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from types import TracebackType
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, Field, ValidationError

from job_ingestion.config import MAX_REALISTIC_SALARY, MIN_REALISTIC_SALARY
from job_ingestion.detectors import TechnologyDetector
from job_ingestion.models import utcnow

logger = logging.getLogger(__name__)

technology_detector = TechnologyDetector()

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class AuthenticationError(Exception):
    """Raised when a provider refuses to issue an access token."""


class ClientSettings(BaseModel):
    """Resilience settings shared by every provider client. Delays are in seconds."""

    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    rate_limit_delay: float = Field(default=5.0, ge=0)
    request_delay: float = Field(default=0.0, ge=0)
    timeout: float = Field(default=15.0, gt=0)
    circuit_breaker_enabled: bool = False
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_reset: float = Field(default=60.0, ge=0)


class ProviderJob(BaseModel):
    """
    A provider posting after parsing and normalization at the client boundary.
    Salaries are in thousands of euros.
    """

    external_id: str
    title: str
    company: str
    description: str = ""
    technologies: list[str]
    location: str
    region_id: int | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    experience_level: str | None = None
    source_url: str = ""
    posted_date: datetime


class CircuitBreaker:
    """
    Counts consecutive failed requests. Once the threshold is reached the
    breaker stays open for `reset_timeout` seconds, then starts over from zero.
    """

    def __init__(
        self,
        threshold: int,
        reset_timeout: float,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self.failures = 0
        self.open_until: float | None = None

    @property
    def is_open(self) -> bool:
        if self.open_until is None:
            return False
        if self._clock() < self.open_until:
            return True
        # Cool-down elapsed
        self.failures = 0
        self.open_until = None
        return False

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.threshold and self.open_until is None:
            self.open_until = self._clock() + self.reset_timeout
            logger.error(
                f"Circuit breaker for {self.name} opened after {self.failures} failures. "
                f"Will reset in {self.reset_timeout}s"
            )

    def record_success(self) -> None:
        self.failures = 0


def parse_posted_date(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp. Missing, invalid or future dates become now (UTC)."""
    now = utcnow()
    if not value:
        return now
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable posting date '{value}', using current time")
        return now
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    if parsed > now:
        return now
    return parsed


def euros_to_thousands(amount: float | None) -> int | None:
    if not amount:
        return None
    return round(amount / 1000)


def realistic_salary_range(
    salary_min: int | None, salary_max: int | None, context: str = ""
) -> tuple[int | None, int | None]:
    """
    Keep only plausible yearly salaries (in thousands). An inverted range is
    discarded entirely.
    """
    if salary_min is not None and salary_max is not None and salary_min > salary_max:
        logger.warning(f"Invalid salary range {salary_min}k > {salary_max}k{context}, ignoring")
        return None, None

    def plausible(value: int | None) -> int | None:
        if value is None:
            return None
        if MIN_REALISTIC_SALARY <= value <= MAX_REALISTIC_SALARY:
            return value
        logger.debug(f"Discarding unrealistic salary {value}k{context}")
        return None

    return plausible(salary_min), plausible(salary_max)


_HTML_TAG = re.compile(r"<[^>]+>")


def strip_html(text: str) -> str:
    return re.sub(r"\s+", " ", _HTML_TAG.sub(" ", text)).strip()


class BaseJobClient(ABC):
    """
    Base class for provider clients.

    `_request_json` implements the shared resilience policy: transport errors
    and 5xx responses are retried with exponential backoff, 429 responses are
    retried with a longer base delay (or the provider's Retry-After), a 401/403
    gets one re-authentication through `_handle_auth_failure`, and any other
    4xx fails immediately. Failures never raise; they return None and the
    caller keeps whatever it already fetched.
    """

    SOURCE_NAME: str = ""

    def __init__(
        self, settings: ClientSettings | None = None, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self.settings = settings or self.default_settings()
        self._http = http_client
        self._owns_http = http_client is None
        self.circuit_breaker: CircuitBreaker | None = None
        if self.settings.circuit_breaker_enabled:
            self.circuit_breaker = CircuitBreaker(
                self.settings.circuit_breaker_threshold,
                self.settings.circuit_breaker_reset,
                name=self.SOURCE_NAME,
            )

    @classmethod
    def default_settings(cls) -> ClientSettings:
        return ClientSettings()

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.timeout, headers={"Accept": "application/json"}
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self):
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @abstractmethod
    async def fetch_jobs(self, options: Any = None) -> list[ProviderJob]:
        """Fetch postings from the provider, following pagination up to the requested bound."""
        pass

    async def _auth_headers(self) -> dict[str, str]:
        """Extra headers for data requests. Raises AuthenticationError without credentials."""
        return {}

    async def _handle_auth_failure(self) -> bool:
        """Called on a 401/403 data response. True means retry the request once."""
        return False

    def _record_failure(self) -> None:
        if self.circuit_breaker is not None:
            self.circuit_breaker.record_failure()

    def _record_success(self) -> None:
        if self.circuit_breaker is not None:
            self.circuit_breaker.record_success()

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        """Delay in seconds from a Retry-After header, given as seconds or as an HTTP date."""
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return max(float(value), 0.0)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        delay = (when - datetime.now(tz=UTC)).total_seconds()
        return delay if delay > 0 else None

    def _backoff(self, base_delay: float, attempt: int) -> float:
        return base_delay * (2 ** (attempt - 1))

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        """
        Perform a request under the retry policy.
        Returns the decoded JSON object ({} for an empty body) or None on failure.
        """
        if self.circuit_breaker is not None and self.circuit_breaker.is_open:
            logger.warning(
                f"{self.SOURCE_NAME}: circuit breaker is open, refusing request to {url}"
            )
            return None

        max_attempts = self.settings.max_attempts
        attempt = 1
        reauthenticated = False

        while True:
            try:
                request_headers = {**(headers or {}), **await self._auth_headers()}
            except AuthenticationError as e:
                logger.error(f"{self.SOURCE_NAME}: authentication failed: {e}")
                self._record_failure()
                return None

            try:
                response = await self.http.request(
                    method, url, params=params, headers=request_headers
                )
            except httpx.TransportError as e:
                if attempt >= max_attempts:
                    logger.error(
                        f"{self.SOURCE_NAME}: request to {url} failed after "
                        f"{attempt} attempts: {e!r}"
                    )
                    self._record_failure()
                    return None
                delay = self._backoff(self.settings.retry_delay, attempt)
                logger.warning(
                    f"{self.SOURCE_NAME}: request attempt {attempt}/{max_attempts} failed: "
                    f"{e!r}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            status = response.status_code

            if status in (401, 403):
                if not reauthenticated and await self._handle_auth_failure():
                    reauthenticated = True
                    logger.info(f"{self.SOURCE_NAME}: re-authenticated, retrying request once")
                    continue
                logger.error(
                    f"{self.SOURCE_NAME}: authentication error (HTTP {status}). "
                    f"Check credentials."
                )
                self._record_failure()
                return None

            if status == 429:
                if attempt >= max_attempts:
                    logger.error(
                        f"{self.SOURCE_NAME}: rate limit exceeded after {attempt} attempts. "
                        f"Consider reducing request frequency."
                    )
                    self._record_failure()
                    return None
                retry_after = self._retry_after(response)
                delay = (
                    retry_after
                    if retry_after is not None
                    else self._backoff(self.settings.rate_limit_delay, attempt)
                )
                logger.warning(
                    f"{self.SOURCE_NAME}: rate limited (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if status >= 500:
                if attempt >= max_attempts:
                    logger.error(
                        f"{self.SOURCE_NAME}: server error (HTTP {status}) after "
                        f"{attempt} attempts"
                    )
                    self._record_failure()
                    return None
                delay = self._backoff(self.settings.retry_delay, attempt)
                logger.warning(
                    f"{self.SOURCE_NAME}: server error (HTTP {status}) on attempt "
                    f"{attempt}/{max_attempts}, retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if status >= 400:
                logger.error(
                    f"{self.SOURCE_NAME}: client error (HTTP {status}) for {url}: "
                    f"{response.text[:200]}"
                )
                return None

            if status == 204 or not response.content:
                self._record_success()
                return {}

            try:
                payload = response.json()
            except ValueError as e:
                logger.error(f"{self.SOURCE_NAME}: malformed JSON response from {url}: {e}")
                return None
            if not isinstance(payload, dict):
                logger.error(
                    f"{self.SOURCE_NAME}: unexpected response shape from {url}: "
                    f"{type(payload).__name__}"
                )
                return None

            self._record_success()
            return payload

    def _parse_items(self, items: list[Any], model: type[PayloadT]) -> list[PayloadT]:
        """Validate raw items, dropping malformed ones with a warning."""
        parsed: list[PayloadT] = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as e:
                item_id = item.get("id") if isinstance(item, dict) else None
                logger.warning(
                    f"{self.SOURCE_NAME}: skipping malformed item {item_id!r}: "
                    f"{e.error_count()} validation errors"
                )
        return parsed

    def _clamp(self, name: str, requested: int, maximum: int) -> int:
        if requested > maximum:
            logger.warning(
                f"{self.SOURCE_NAME}: {name}={requested} exceeds the provider maximum "
                f"({maximum}), using {maximum}"
            )
            return maximum
        return requested

    def _detect_technologies(self, external_id: str, title: str, description: str) -> list[str]:
        technologies = technology_detector.detect(f"{title} {description}")
        if not technologies:
            logger.warning(
                f"{self.SOURCE_NAME}: skipping job {external_id}: no technologies detected"
            )
        return technologies

    async def _pause(self) -> None:
        if self.settings.request_delay > 0:
            await asyncio.sleep(self.settings.request_delay)
