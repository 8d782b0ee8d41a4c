import logging
import re
import unicodedata

from job_ingestion.cache import SingleFlight
from job_ingestion.repositories import RegionRepository

logger = logging.getLogger(__name__)

# Department number (postal code prefix) -> region code
DEPARTMENT_REGIONS = {
    **dict.fromkeys(["75", "77", "78", "91", "92", "93", "94", "95"], "IDF"),
    **dict.fromkeys(
        ["01", "03", "07", "15", "26", "38", "42", "43", "63", "69", "73", "74"], "ARA"
    ),
    **dict.fromkeys(["04", "05", "06", "13", "83", "84"], "PAC"),
    **dict.fromkeys(
        ["09", "11", "12", "30", "31", "32", "34", "46", "48", "65", "66", "81", "82"], "OCC"
    ),
    **dict.fromkeys(
        ["16", "17", "19", "23", "24", "33", "40", "47", "64", "79", "86", "87"], "NAQ"
    ),
    **dict.fromkeys(["02", "59", "60", "62", "80"], "HDF"),
    **dict.fromkeys(["08", "10", "51", "52", "54", "55", "57", "67", "68", "88"], "GES"),
    **dict.fromkeys(["22", "29", "35", "56"], "BRE"),
    **dict.fromkeys(["44", "49", "53", "72", "85"], "PDL"),
    **dict.fromkeys(["14", "27", "50", "61", "76"], "NOR"),
    **dict.fromkeys(["21", "25", "39", "58", "70", "71", "89", "90"], "BFC"),
    **dict.fromkeys(["18", "28", "36", "37", "41", "45"], "CVL"),
    **dict.fromkeys(["2a", "2b", "20"], "COR"),
    "971": "GLP",
    "972": "MTQ",
    "973": "GUF",
    "974": "REU",
    "976": "MYT",
}

# Normalized region and city names -> region code, matched as substrings
LOCATION_KEYWORDS = {
    "ile-de-france": "IDF",
    "paris": "IDF",
    "auvergne-rhone-alpes": "ARA",
    "lyon": "ARA",
    "grenoble": "ARA",
    "provence-alpes-cote d'azur": "PAC",
    "marseille": "PAC",
    "nice": "PAC",
    "occitanie": "OCC",
    "toulouse": "OCC",
    "montpellier": "OCC",
    "nouvelle-aquitaine": "NAQ",
    "bordeaux": "NAQ",
    "hauts-de-france": "HDF",
    "lille": "HDF",
    "grand est": "GES",
    "strasbourg": "GES",
    "reims": "GES",
    "bretagne": "BRE",
    "rennes": "BRE",
    "brest": "BRE",
    "pays de la loire": "PDL",
    "nantes": "PDL",
    "normandie": "NOR",
    "bourgogne-franche-comte": "BFC",
    "centre-val de loire": "CVL",
    "corse": "COR",
}

# Major cities used to enrich jobs that reached ingestion without a region
CITY_REGIONS = {
    "paris": "IDF",
    "lyon": "ARA",
    "marseille": "PAC",
    "toulouse": "OCC",
    "nantes": "PDL",
    "lille": "HDF",
    "bordeaux": "NAQ",
    "rennes": "BRE",
    "strasbourg": "GES",
    "montpellier": "OCC",
    "nice": "PAC",
    "grenoble": "ARA",
}


def normalize_location(text: str) -> str:
    """Lowercase and strip accents, keeping hyphens and apostrophes."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip()


def department_from_postal_code(postal_code: str | None) -> str | None:
    """Overseas postal codes (97x, 98x) carry a three-character department."""
    if not postal_code:
        return None
    code = "".join(postal_code.split()).lower()
    if len(code) < 2:
        return None
    if code.startswith(("97", "98")):
        return code[:3]
    return code[:2]


def region_code_from_postal_code(postal_code: str | None) -> str | None:
    department = department_from_postal_code(postal_code)
    if department is None:
        return None
    return DEPARTMENT_REGIONS.get(department)


# "974 - Saint-Denis", "2A - Ajaccio"
_LABEL_DEPARTMENT = re.compile(r"^\s*(\d{2,3}|2[ab])\s*-", re.IGNORECASE)


def region_code_from_department_label(label: str | None) -> str | None:
    """Region of a France Travail style label that starts with its department number."""
    if not label:
        return None
    match = _LABEL_DEPARTMENT.match(label)
    if match is None:
        return None
    return DEPARTMENT_REGIONS.get(match.group(1).lower())


def region_code_from_location(
    location: str | None, keywords: dict[str, str] = LOCATION_KEYWORDS
) -> str | None:
    if not location:
        return None
    normalized = normalize_location(location)
    for keyword, code in keywords.items():
        if keyword in normalized:
            return code
    return None


class RegionResolver:
    """
    Resolves region codes to storage identifiers through the region repository.

    Resolved identifiers are cached per code for the lifetime of the resolver.
    Concurrent lookups of the same code share one repository query.
    Codes the repository does not know are not cached.
    """

    def __init__(self, region_repository: RegionRepository | None = None) -> None:
        self._repository = region_repository
        self._cache: dict[str, int] = {}
        self._flight: SingleFlight[str, int | None] = SingleFlight()

    @property
    def cached_codes(self) -> dict[str, int]:
        return dict(self._cache)

    async def resolve_code(self, code: str) -> int | None:
        if code in self._cache:
            return self._cache[code]
        if self._repository is None:
            return None
        return await self._flight.do(code, lambda: self._lookup(code))

    async def _lookup(self, code: str) -> int | None:
        region_id = await self._repository.find_by_code(code)
        if region_id:
            self._cache[code] = region_id
        else:
            logger.debug(f"Region code {code} is unknown to the region repository")
        return region_id

    async def resolve(
        self, location: str | None = None, postal_code: str | None = None
    ) -> int | None:
        """
        Resolve from a postal code first, then from a department number
        leading the location label, then from names in the label.
        """
        code = (
            region_code_from_postal_code(postal_code)
            or region_code_from_department_label(location)
            or region_code_from_location(location)
        )
        if code is None:
            return None
        return await self.resolve_code(code)

    def clear(self) -> None:
        self._cache.clear()
