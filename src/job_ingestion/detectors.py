import re
import unicodedata

from job_ingestion.models import ExperienceCategory


class TechnologyDetector:
    """
    Detects well-known technologies mentioned in free text.

    Each technology has its own case-insensitive pattern so that
    look-alike words (java/javascript, go/google) do not collide.
    The result is sorted and contains each name at most once.
    """

    PATTERNS = {
        "React": r"\breact(?:js|\.js)?\b",
        "Vue.js": r"\bvue(?:js|\.js)?\b",
        "Angular": r"\bangular(?:js)?\b",
        "Node.js": r"\bnode(?:\.js|js)?\b",
        "TypeScript": r"\btypescript\b",
        "JavaScript": r"\bjavascript\b",
        "Python": r"\bpython\b",
        "Java": r"\bjava\b(?!script)",
        "Spring Boot": r"\bspring\s*boot\b",
        "Django": r"\bdjango\b",
        "FastAPI": r"\bfastapi\b",
        ".NET": r"(?:\b(?:dotnet|asp\.?net)\b|\.net\b)",
        "Go": r"\b(?:golang|go)\b(?!ogle|od)",
        "PHP": r"\bphp\b",
        "Docker": r"\bdocker\b",
        "Kubernetes": r"\b(?:kubernetes|k8s)\b",
        "AWS": r"\baws\b",
        "Azure": r"\bazure\b",
        "GCP": r"\b(?:gcp|google\s+cloud)\b",
        "PostgreSQL": r"\b(?:postgresql|postgres)\b",
        "MongoDB": r"\bmongodb\b",
        "Redis": r"\bredis\b",
        "GraphQL": r"\bgraphql\b",
        "REST API": r"\brest\s*api\b",
        "Machine Learning": r"\b(?:machine\s*learning|ml)\b",
        "TensorFlow": r"\btensorflow\b",
        "PyTorch": r"\bpytorch\b",
    }

    def __init__(self) -> None:
        self._compiled = {
            name: re.compile(pattern, re.IGNORECASE) for name, pattern in self.PATTERNS.items()
        }

    @property
    def known_technologies(self) -> list[str]:
        return sorted(self._compiled)

    def detect(self, text: str | None) -> list[str]:
        if not text:
            return []
        return sorted(name for name, regex in self._compiled.items() if regex.search(text))


class ExperienceDetector:
    """
    Classifies a posting's seniority from its title, stated level and description.

    Categories are checked from most to least senior, so a posting that
    mentions both "senior" and "junior" is classified as senior.
    """

    LEAD_PATTERNS = [
        r"\blead\b",
        r"\bprincipal\b",
        r"\bstaff\b",
        r"\bhead\s+of\b",
        r"\bdirecteur\s+technique\b",
        r"\bcto\b",
        r"\btech\s+lead\b",
        r"\bteam\s+lead\b",
    ]

    SENIOR_PATTERNS = [
        r"\bsenior\b",
        r"\bconfirm[eé]",
        r"\bexpert\b",
        r"(?:plus\s+de\s+)?\b[5-9]\+?\s+ans?\b",
        r"(?:plus\s+de\s+)?\b1[0-9]\+?\s+ans?\b",
        r"\b[5-9]\s+ans?\s+d['’]exp[eé]rience",
        r"\b1[0-9]\s+ans?\s+d['’]exp[eé]rience",
        r"\barchitecte\b",
        r"\bexp[eé]riment[eé]",
    ]

    JUNIOR_PATTERNS = [
        r"\bjunior\b",
        r"\bd[eé]butant",
        r"\bentr[eé]e\s+de\s+carri[eè]re\b",
        r"\b0[-\s]?[aà][-\s]?2\s+ans?\b",
        r"\bpremi[eè]re\s+exp[eé]rience\b",
        r"\bjeune\s+dipl[oô]m[eé]",
        r"\bstage\b",
        r"\balternance\b",
        r"\b[0-2]\s+ans?\s+d['’]exp[eé]rience",
    ]

    MID_PATTERNS = [
        r"\b[3-4]\s+ans?\s+d['’]exp[eé]rience",
        r"\b[3-4]\s+ans?\b",
        r"\b[2-4][-\s]?[aà][-\s]?5\s+ans?\b",
        r"\binterm[eé]diaire\b",
        r"\bmid[-\s]?level\b",
    ]

    def __init__(self) -> None:
        # Ordered from most to least senior; the first match wins
        self._categories: list[tuple[ExperienceCategory, list[re.Pattern[str]]]] = [
            ("lead", [re.compile(p) for p in self.LEAD_PATTERNS]),
            ("senior", [re.compile(p) for p in self.SENIOR_PATTERNS]),
            ("junior", [re.compile(p) for p in self.JUNIOR_PATTERNS]),
            ("mid", [re.compile(p) for p in self.MID_PATTERNS]),
        ]

    @staticmethod
    def normalize_text(text: str) -> str:
        """Lowercase and fold compatibility characters, keeping French accents intact."""
        return unicodedata.normalize("NFKC", text).lower()

    def detect(
        self, title: str, experience_level: str | None = None, description: str | None = None
    ) -> ExperienceCategory:
        text = self.normalize_text(f"{title} {experience_level or ''} {description or ''}")

        for category, patterns in self._categories:
            if any(p.search(text) for p in patterns):
                return category
        return "unknown"
