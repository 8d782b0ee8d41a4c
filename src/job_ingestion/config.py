import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

ALL_SOURCES = ("france_travail", "adzuna", "remotive")

# Job validation limits
MAX_TITLE_LENGTH = 200
MIN_DESCRIPTION_LENGTH = 20
MAX_DESCRIPTION_LENGTH = 50000
MIN_TECHNOLOGIES = 1
MAX_TECHNOLOGIES = 20
MAX_TECH_NAME_LENGTH = 50

# Freshness and expiration (days)
RECENT_DAYS_THRESHOLD = 7
EXPIRATION_DAYS = 90

# Salaries are stored in thousands of currency units
MIN_REALISTIC_SALARY = 20
MAX_REALISTIC_SALARY = 300
MONTHS_PER_YEAR = 12

# Quality scoring
MIN_QUALITY_SCORE = 40
HIGH_QUALITY_SCORE = 70
QUALITY_WEIGHTS = {
    "has_salary": 20,
    "has_region": 20,
    "has_description": 20,
    "has_multiple_technologies": 20,
    "has_experience_level": 15,
}
MULTIPLE_TECHNOLOGIES_COUNT = 3
DETAILED_DESCRIPTION_LENGTH = 100

# Cross-source duplicate analysis
DEDUP_SIMILARITY_THRESHOLD = 0.75
DEDUP_WEIGHTS = {
    "company": 30,
    "title": 40,
    "location": 15,
    "technologies": 10,
    "posted_date": 5,
}
DEDUP_MAX_DATE_DIFF_DAYS = 30
DEDUP_MIN_TECH_OVERLAP = 0.5
DEDUP_WINDOW_DAYS = 7
DEDUP_FETCH_LIMIT = 10000

# Batch processing
DEFAULT_BATCH_SIZE = 100

# Provider defaults
FRANCE_TRAVAIL_DEFAULT_MAX_RESULTS = 150
FRANCE_TRAVAIL_DEFAULT_KEYWORDS = "développeur"
FRANCE_TRAVAIL_REQUEST_DELAY = 0.15  # seconds
ADZUNA_DEFAULT_MAX_PAGES = 3
ADZUNA_DEFAULT_RESULTS_PER_PAGE = 50
ADZUNA_DEFAULT_KEYWORDS = "développeur"
ADZUNA_REQUEST_DELAY = 0.2  # seconds
REMOTIVE_DEFAULT_LIMIT = 50
REMOTIVE_DEFAULT_CATEGORY = "software-dev"


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Expected a boolean value, got '{raw}'")


def _parse_positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be a positive integer, got '{raw}'") from None
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def get_config() -> dict[str, str]:
    """
    Load configuration from environment variables.
    Provider credentials are optional here: a client validates its own
    credentials when it is constructed.
    """
    return {
        "FRANCE_TRAVAIL_CLIENT_ID": os.getenv("FRANCE_TRAVAIL_CLIENT_ID", ""),
        "FRANCE_TRAVAIL_CLIENT_SECRET": os.getenv("FRANCE_TRAVAIL_CLIENT_SECRET", ""),
        "ADZUNA_APP_ID": os.getenv("ADZUNA_APP_ID", ""),
        "ADZUNA_APP_KEY": os.getenv("ADZUNA_APP_KEY", ""),
        "DB_PATH": os.getenv("DB_PATH", "jobs.db"),
        "INGEST_INTERVAL": os.getenv("INGEST_INTERVAL", "360"),
        "INGEST_BATCH_SIZE": os.getenv("INGEST_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)),
        "ENABLED_SOURCES": os.getenv("ENABLED_SOURCES", ",".join(ALL_SOURCES)),
        "ENABLE_DEDUPLICATION": os.getenv("ENABLE_DEDUPLICATION", "true"),
        "METRICS_PORT": os.getenv("METRICS_PORT", "0"),
    }


class _Config:
    """Lazy configuration that only validates when values are actually accessed."""

    def __init__(self) -> None:
        self._config: dict[str, str] | None = None

    def _get(self, key: str) -> str:
        if self._config is None:
            self._config = get_config()
        return self._config[key]

    @property
    def FRANCE_TRAVAIL_CLIENT_ID(self) -> str:
        return self._get("FRANCE_TRAVAIL_CLIENT_ID")

    @property
    def FRANCE_TRAVAIL_CLIENT_SECRET(self) -> str:
        return self._get("FRANCE_TRAVAIL_CLIENT_SECRET")

    @property
    def ADZUNA_APP_ID(self) -> str:
        return self._get("ADZUNA_APP_ID")

    @property
    def ADZUNA_APP_KEY(self) -> str:
        return self._get("ADZUNA_APP_KEY")

    @property
    def DB_PATH(self) -> str:
        return self._get("DB_PATH")

    @property
    def INGEST_INTERVAL(self) -> int:
        """Ingestion interval in minutes. Must be a positive integer."""
        return _parse_positive_int("INGEST_INTERVAL", self._get("INGEST_INTERVAL"))

    @property
    def INGEST_BATCH_SIZE(self) -> int:
        return _parse_positive_int("INGEST_BATCH_SIZE", self._get("INGEST_BATCH_SIZE"))

    @property
    def ENABLED_SOURCES(self) -> list[str]:
        """Comma-separated list of provider names to ingest from."""
        raw = self._get("ENABLED_SOURCES")
        sources = [s.strip().lower() for s in raw.split(",") if s.strip()]
        unknown = [s for s in sources if s not in ALL_SOURCES]
        if unknown:
            raise ValueError(
                f"ENABLED_SOURCES contains unknown sources: {', '.join(unknown)} "
                f"(expected any of {', '.join(ALL_SOURCES)})"
            )
        return sources

    @property
    def ENABLE_DEDUPLICATION(self) -> bool:
        try:
            return _parse_bool(self._get("ENABLE_DEDUPLICATION"))
        except ValueError as e:
            raise ValueError(f"ENABLE_DEDUPLICATION: {e}") from None

    @property
    def METRICS_PORT(self) -> int:
        """Port of the Prometheus scrape endpoint. 0 disables it."""
        raw = self._get("METRICS_PORT").strip() or "0"
        try:
            port = int(raw)
        except ValueError:
            raise ValueError(f"METRICS_PORT must be a port number, got '{raw}'") from None
        if not 0 <= port <= 65535:
            raise ValueError(f"METRICS_PORT must be between 0 and 65535, got {port}")
        return port


_cfg = _Config()

# Module-level type declarations for mypy.
# The actual values come from __getattr__ below, resolved on first access.
FRANCE_TRAVAIL_CLIENT_ID: str
FRANCE_TRAVAIL_CLIENT_SECRET: str
ADZUNA_APP_ID: str
ADZUNA_APP_KEY: str
DB_PATH: str
INGEST_INTERVAL: int
INGEST_BATCH_SIZE: int
ENABLED_SOURCES: list[str]
ENABLE_DEDUPLICATION: bool
METRICS_PORT: int

_LAZY_SETTINGS = {
    "FRANCE_TRAVAIL_CLIENT_ID",
    "FRANCE_TRAVAIL_CLIENT_SECRET",
    "ADZUNA_APP_ID",
    "ADZUNA_APP_KEY",
    "DB_PATH",
    "INGEST_INTERVAL",
    "INGEST_BATCH_SIZE",
    "ENABLED_SOURCES",
    "ENABLE_DEDUPLICATION",
    "METRICS_PORT",
}


# Module-level lazy access using __getattr__ (PEP 562).
def __getattr__(name: str) -> str | list[str] | int | bool:
    if name in _LAZY_SETTINGS:
        return getattr(_cfg, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
