import json
import logging
import sqlite3
from datetime import datetime, timedelta
from types import TracebackType

from job_ingestion.config import EXPIRATION_DAYS
from job_ingestion.detectors import TechnologyDetector
from job_ingestion.models import BulkSaveResult, Job, JobFilters, utcnow

logger = logging.getLogger(__name__)

REGIONS = [
    ("IDF", "Île-de-France"),
    ("ARA", "Auvergne-Rhône-Alpes"),
    ("PAC", "Provence-Alpes-Côte d'Azur"),
    ("OCC", "Occitanie"),
    ("NAQ", "Nouvelle-Aquitaine"),
    ("HDF", "Hauts-de-France"),
    ("GES", "Grand Est"),
    ("BRE", "Bretagne"),
    ("PDL", "Pays de la Loire"),
    ("NOR", "Normandie"),
    ("BFC", "Bourgogne-Franche-Comté"),
    ("CVL", "Centre-Val de Loire"),
    ("COR", "Corse"),
    ("GLP", "Guadeloupe"),
    ("MTQ", "Martinique"),
    ("GUF", "Guyane"),
    ("REU", "La Réunion"),
    ("MYT", "Mayotte"),
]

TECHNOLOGY_CATEGORIES = {
    "React": "frontend",
    "Vue.js": "frontend",
    "Angular": "frontend",
    "TypeScript": "language",
    "JavaScript": "language",
    "Python": "language",
    "Java": "language",
    "Go": "language",
    "PHP": "language",
    "Node.js": "backend",
    "Spring Boot": "backend",
    "Django": "backend",
    "FastAPI": "backend",
    ".NET": "backend",
    "REST API": "backend",
    "GraphQL": "backend",
    "Docker": "devops",
    "Kubernetes": "devops",
    "AWS": "cloud",
    "Azure": "cloud",
    "GCP": "cloud",
    "PostgreSQL": "database",
    "MongoDB": "database",
    "Redis": "database",
    "Machine Learning": "data",
    "TensorFlow": "data",
    "PyTorch": "data",
}

_JOB_COLUMNS = (
    "id",
    "title",
    "company",
    "description",
    "technologies",
    "location",
    "region_id",
    "is_remote",
    "salary_min",
    "salary_max",
    "experience_level",
    "experience_category",
    "source_api",
    "external_id",
    "source_url",
    "source_apis",
    "posted_date",
    "is_active",
    "created_at",
    "updated_at",
)
# Identity and creation time survive an upsert
_UPDATABLE_COLUMNS = tuple(
    c for c in _JOB_COLUMNS if c not in ("id", "source_api", "external_id", "created_at")
)


def _to_db_datetime(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class Database:
    """
    SQLite store for ingested jobs, regions and the technology vocabulary.
    Uses a single persistent connection for both file-based and in-memory databases.
    Supports context manager protocol for proper resource cleanup.
    """

    def __init__(self, db_path: str = "jobs.db") -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self.init_db()

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the persistent database connection."""
        if self._conn is None:
            raise RuntimeError("Database connection is closed")
        return self._conn

    def init_db(self) -> None:
        """Create the tables if they don't exist."""
        cursor = self.connection.cursor()
        cursor.executescript("""
            CREATE TABLE IF NOT EXISTS regions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS technologies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                category TEXT
            );

            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                company TEXT NOT NULL,
                description TEXT,
                technologies TEXT NOT NULL,
                location TEXT,
                region_id INTEGER REFERENCES regions(id),
                is_remote INTEGER NOT NULL DEFAULT 0,
                salary_min INTEGER,
                salary_max INTEGER,
                experience_level TEXT,
                experience_category TEXT NOT NULL DEFAULT 'unknown',
                source_api TEXT NOT NULL,
                external_id TEXT NOT NULL,
                source_url TEXT,
                source_apis TEXT NOT NULL,
                posted_date TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (source_api, external_id)
            );

            CREATE TABLE IF NOT EXISTS job_technologies (
                job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                technology_id INTEGER NOT NULL REFERENCES technologies(id),
                PRIMARY KEY (job_id, technology_id)
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_posted_date ON jobs(posted_date);
            CREATE INDEX IF NOT EXISTS idx_jobs_active ON jobs(is_active);
        """)
        self.connection.commit()
        logger.info(f"Database initialized at {self.db_path}")

    def seed(self, technologies: list[str] | None = None) -> None:
        """Insert the French regions and the technology vocabulary. Safe to run repeatedly."""
        names = technologies or TechnologyDetector().known_technologies
        cursor = self.connection.cursor()
        cursor.executemany("INSERT OR IGNORE INTO regions (code, name) VALUES (?, ?)", REGIONS)
        cursor.executemany(
            "INSERT OR IGNORE INTO technologies (name, category) VALUES (?, ?)",
            [(name, TECHNOLOGY_CATEGORIES.get(name)) for name in names],
        )
        self.connection.commit()
        logger.info(f"Seeded {len(REGIONS)} regions and {len(names)} technologies")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "Database":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class SqliteRegionRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def find_by_code(self, code: str) -> int | None:
        row = self.db.connection.execute(
            "SELECT id FROM regions WHERE code = ?", (code.upper(),)
        ).fetchone()
        return row["id"] if row else None


class SqliteTechnologyRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def find_all(self) -> list[str]:
        rows = self.db.connection.execute("SELECT name FROM technologies ORDER BY name").fetchall()
        return [row["name"] for row in rows]


class SqliteJobRepository:
    """
    Job persistence keyed by (source_api, external_id).

    Saving a job whose key already exists updates the stored row in place:
    the row keeps its id, is re-activated, and its source_apis are merged.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            title=row["title"],
            company=row["company"],
            description=row["description"] or "",
            technologies=json.loads(row["technologies"]),
            location=row["location"] or "",
            region_id=row["region_id"],
            is_remote=bool(row["is_remote"]),
            salary_min=row["salary_min"],
            salary_max=row["salary_max"],
            experience_level=row["experience_level"],
            experience_category=row["experience_category"],
            source_api=row["source_api"],
            external_id=row["external_id"],
            source_url=row["source_url"] or "",
            source_apis=json.loads(row["source_apis"]),
            posted_date=datetime.fromisoformat(row["posted_date"]),
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _where(filters: JobFilters | None) -> tuple[str, list]:
        if filters is None:
            return "", []

        clauses: list[str] = []
        params: list = []

        if filters.is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(filters.is_active))
        if filters.region_id is not None:
            clauses.append("region_id = ?")
            params.append(filters.region_id)
        if filters.experience_category is not None:
            clauses.append("experience_category = ?")
            params.append(filters.experience_category)
        if filters.is_remote is not None:
            clauses.append("is_remote = ?")
            params.append(int(filters.is_remote))
        if filters.min_salary is not None:
            clauses.append("COALESCE(salary_max, salary_min) >= ?")
            params.append(filters.min_salary)
        if filters.posted_after is not None:
            clauses.append("posted_date >= ?")
            params.append(_to_db_datetime(filters.posted_after))
        if filters.recent_days is not None:
            clauses.append("posted_date >= ?")
            params.append(_to_db_datetime(utcnow() - timedelta(days=filters.recent_days)))
        if filters.source_api is not None:
            clauses.append("source_api = ?")
            params.append(filters.source_api)
        if filters.company is not None:
            clauses.append("LOWER(company) LIKE ?")
            params.append(f"%{filters.company.lower()}%")
        if filters.technologies:
            placeholders = ", ".join("?" for _ in filters.technologies)
            clauses.append(f"""
                id IN (
                    SELECT jt.job_id FROM job_technologies jt
                    JOIN technologies t ON t.id = jt.technology_id
                    WHERE t.name IN ({placeholders})
                    GROUP BY jt.job_id
                    HAVING COUNT(DISTINCT t.name) = ?
                )
            """)
            params.extend(filters.technologies)
            params.append(len(set(filters.technologies)))

        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), params

    async def find_all(
        self, filters: JobFilters | None = None, page: int = 1, limit: int = 20
    ) -> list[Job]:
        where, params = self._where(filters)
        offset = (max(page, 1) - 1) * limit
        rows = self.db.connection.execute(
            f"SELECT * FROM jobs{where} ORDER BY posted_date DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    async def count(self, filters: JobFilters | None = None) -> int:
        where, params = self._where(filters)
        row = self.db.connection.execute(
            f"SELECT COUNT(*) AS n FROM jobs{where}", params
        ).fetchone()
        return row["n"]

    async def find_by_source(self, source_api: str, external_id: str) -> Job | None:
        row = self.db.connection.execute(
            "SELECT * FROM jobs WHERE source_api = ? AND external_id = ?",
            (source_api, external_id),
        ).fetchone()
        return self._row_to_job(row) if row else None

    def _upsert(self, cursor: sqlite3.Cursor, job: Job) -> tuple[str, bool]:
        """Write one job and return the stored id and whether it was a new row."""
        existing = cursor.execute(
            "SELECT id, source_apis FROM jobs WHERE source_api = ? AND external_id = ?",
            (job.source_api, job.external_id),
        ).fetchone()

        source_apis = list(job.source_apis)
        if existing is not None:
            stored = json.loads(existing["source_apis"])
            source_apis = stored + [s for s in source_apis if s not in stored]

        now = _to_db_datetime(utcnow())
        values = {
            "id": job.id,
            "title": job.title,
            "company": job.company,
            "description": job.description,
            "technologies": json.dumps(job.technologies),
            "location": job.location,
            "region_id": job.region_id,
            "is_remote": int(job.is_remote),
            "salary_min": job.salary_min,
            "salary_max": job.salary_max,
            "experience_level": job.experience_level,
            "experience_category": job.experience_category,
            "source_api": job.source_api,
            "external_id": job.external_id,
            "source_url": job.source_url,
            "source_apis": json.dumps(source_apis),
            "posted_date": _to_db_datetime(job.posted_date),
            "is_active": 1,
            "created_at": _to_db_datetime(job.created_at),
            "updated_at": now,
        }
        cursor.execute(
            f"""
            INSERT INTO jobs ({", ".join(_JOB_COLUMNS)})
            VALUES ({", ".join(":" + c for c in _JOB_COLUMNS)})
            ON CONFLICT (source_api, external_id) DO UPDATE SET
                {", ".join(f"{c} = excluded.{c}" for c in _UPDATABLE_COLUMNS)}
            """,
            values,
        )

        if existing is not None:
            return existing["id"], False
        return job.id, True

    def _link_technologies(self, job_id: str, technologies: list[str]) -> None:
        placeholders = ", ".join("?" for _ in technologies)
        self.db.connection.execute(
            f"""
            INSERT OR IGNORE INTO job_technologies (job_id, technology_id)
            SELECT ?, id FROM technologies WHERE name IN ({placeholders})
            """,
            [job_id, *technologies],
        )

    async def save(self, job: Job) -> Job:
        cursor = self.db.connection.cursor()
        stored_id, _ = self._upsert(cursor, job)
        self.db.connection.commit()
        self._link_technologies(stored_id, job.technologies)
        self.db.connection.commit()
        return await self.find_by_source(job.source_api, job.external_id) or job

    async def save_many(self, jobs: list[Job]) -> BulkSaveResult:
        result = BulkSaveResult()
        if not jobs:
            return result

        cursor = self.db.connection.cursor()
        stored: list[tuple[str, Job]] = []
        try:
            for job in jobs:
                try:
                    stored_id, inserted = self._upsert(cursor, job)
                except sqlite3.IntegrityError as e:
                    result.failed += 1
                    result.errors.append(f"Failed to save job {job.dedup_key()}: {e}")
                    logger.warning(f"Failed to save job {job.dedup_key()}: {e}")
                    continue
                stored.append((stored_id, job))
                if inserted:
                    result.inserted += 1
                else:
                    result.updated += 1
            self.db.connection.commit()
        except sqlite3.Error:
            self.db.connection.rollback()
            raise

        # Technology links are best-effort; the job rows are already committed
        try:
            for stored_id, job in stored:
                self._link_technologies(stored_id, job.technologies)
            self.db.connection.commit()
        except sqlite3.Error as e:
            self.db.connection.rollback()
            logger.warning(f"Failed to link technologies for {len(stored)} jobs: {e}")

        logger.debug(
            f"Saved {len(jobs)} jobs: {result.inserted} inserted, "
            f"{result.updated} updated, {result.failed} failed"
        )
        return result

    async def deactivate_old_jobs(self, days: int = EXPIRATION_DAYS) -> int:
        """Mark active jobs posted more than `days` ago as inactive. Returns the row count."""
        cutoff = _to_db_datetime(utcnow() - timedelta(days=days))
        cursor = self.db.connection.execute(
            "UPDATE jobs SET is_active = 0, updated_at = ? WHERE is_active = 1 AND posted_date < ?",
            (_to_db_datetime(utcnow()), cutoff),
        )
        self.db.connection.commit()
        logger.info(f"Deactivated {cursor.rowcount} jobs older than {days} days")
        return cursor.rowcount
