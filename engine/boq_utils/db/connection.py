"""
Database connection management for the BOQ Ledger engine.

Supports both PostgreSQL (via psycopg2) and a mock in-memory implementation.
Config from Vault
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator
from urllib.parse import urlparse, unquote

import psycopg2
import tenacity
from psycopg2.extras import RealDictCursor

from boq_utils.vault import secrets
from boq_utils.core.log import account_tool_logger, set_logger, get_logger

# Database configuration (Vault)
DB_TYPE = (secrets.get("db_type", default="mock") or "mock").strip().lower()
DATABASE_URL = secrets.get("postgres_url", default="") or ""

# Mock database storage (in-memory)
_mock_db: Dict[str, Any] = {
    "jobs": {},
    "job_runs": {},
    "job_artifacts": {},
    "bills": {},
    "sections": {},
    "items": {},
}


class MockConnection:
    """Stand-in returned in mock mode; the mock tables live in _mock_db."""

    def __init__(self):
        self._mock_db = _mock_db

    def commit(self):
        pass

    def rollback(self):
        pass

    def close(self):
        pass


def _parse_postgres_url(url: str) -> Dict[str, Any]:
    """
    Split a postgres:// URL into psycopg2.connect() kwargs.

    The password is taken raw from the URL so characters such as % or &
    do not need percent-encoding in Vault.
    """
    parsed = urlparse(url)
    try:
        port = parsed.port or 5432
    except ValueError:
        port = 5432
    return {
        "host": parsed.hostname or "localhost",
        "port": port,
        "user": unquote(parsed.username or ""),
        "password": unquote(parsed.password or ""),
        "dbname": parsed.path.strip("/") or "postgres",
    }


@tenacity.retry(
    retry=tenacity.retry_if_exception_type(psycopg2.OperationalError),
    wait=tenacity.wait_exponential(multiplier=1, min=1, max=8),
    stop=tenacity.stop_after_attempt(3),
    reraise=True,
)
def _connect_postgres():
    if not DATABASE_URL:
        raise ValueError("postgres_url is required when db_type=postgres")
    kwargs = _parse_postgres_url(DATABASE_URL)
    return psycopg2.connect(cursor_factory=RealDictCursor, **kwargs)


def get_db_connection():
    """
    Get a database connection based on the db_type setting.

    Returns:
        - psycopg2 connection if db_type="postgres"
        - MockConnection if db_type="mock" (default)
    """
    log = get_logger()
    if DB_TYPE == "postgres":
        try:
            conn = _connect_postgres()
            log.debug("Connected to PostgreSQL database")
            return conn
        except Exception as e:
            log.error(f"Failed to connect to PostgreSQL: {e}")
            raise
    log.debug("Using mock database connection")
    return MockConnection()


@contextmanager
def pg_cursor() -> Iterator[Any]:
    """
    Cursor on a fresh PostgreSQL connection: commits on exit, rolls back on error.
    """
    conn = get_db_connection()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        type VARCHAR(100) NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}',
        account_id VARCHAR(255),
        user_id VARCHAR(255),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS job_runs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
        attempt_no INTEGER NOT NULL DEFAULT 1,
        status VARCHAR(50) NOT NULL DEFAULT 'pending',
        progress JSONB DEFAULT '{}',
        error TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        UNIQUE(job_id, attempt_no)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS job_artifacts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        run_id UUID NOT NULL REFERENCES job_runs(id) ON DELETE CASCADE,
        artifact_type TEXT NOT NULL,
        data JSONB,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS final_account_bills (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        final_account_id VARCHAR(255) NOT NULL,
        bill_number INTEGER NOT NULL,
        bill_name TEXT NOT NULL,
        contract_total NUMERIC(18, 2) NOT NULL DEFAULT 0,
        final_total NUMERIC(18, 2) NOT NULL DEFAULT 0,
        variation_total NUMERIC(18, 2) NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(final_account_id, bill_number)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS final_account_sections (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        bill_id UUID NOT NULL REFERENCES final_account_bills(id) ON DELETE CASCADE,
        section_code VARCHAR(64) NOT NULL,
        section_name TEXT NOT NULL,
        display_order INTEGER NOT NULL DEFAULT 0,
        contract_total NUMERIC(18, 2) NOT NULL DEFAULT 0,
        boq_stated_total NUMERIC(18, 2),
        final_total NUMERIC(18, 2) NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(bill_id, section_code)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS final_account_items (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        section_id UUID NOT NULL REFERENCES final_account_sections(id) ON DELETE CASCADE,
        item_code VARCHAR(64) NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        unit VARCHAR(32) NOT NULL DEFAULT '',
        contract_quantity NUMERIC(18, 4) NOT NULL DEFAULT 0,
        final_quantity NUMERIC(18, 4) NOT NULL DEFAULT 0,
        supply_rate NUMERIC(18, 2) NOT NULL DEFAULT 0,
        install_rate NUMERIC(18, 2) NOT NULL DEFAULT 0,
        contract_amount NUMERIC(18, 2) NOT NULL DEFAULT 0,
        final_amount NUMERIC(18, 2) NOT NULL DEFAULT 0,
        display_order INTEGER NOT NULL DEFAULT 0,
        is_prime_cost BOOLEAN NOT NULL DEFAULT FALSE,
        item_type VARCHAR(16) NOT NULL DEFAULT 'MEASURED',
        pc_allowance NUMERIC(18, 2),
        pc_profit_attendance_percent NUMERIC(6, 2) NOT NULL DEFAULT 0,
        source_provenance_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_account_user ON jobs(account_id, user_id);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_type ON jobs(type);",
    "CREATE INDEX IF NOT EXISTS idx_job_runs_job_id ON job_runs(job_id);",
    """
    CREATE INDEX IF NOT EXISTS idx_job_runs_status
    ON job_runs(status) WHERE status IN ('pending', 'in_progress');
    """,
    "CREATE INDEX IF NOT EXISTS idx_job_artifacts_run_id ON job_artifacts(run_id);",
    "CREATE INDEX IF NOT EXISTS idx_fa_items_section ON final_account_items(section_id);",
]


def init_db():
    """
    Initialize database tables.
    For PostgreSQL: creates tables if they don't exist.
    For mock: resets in-memory structures.
    """
    set_logger(account_tool_logger("SYSTEM", "db_init"))
    log = get_logger()

    if DB_TYPE != "postgres":
        log.debug("Mock database mode - resetting in-memory tables")
        for table in _mock_db:
            _mock_db[table] = {}
        return

    try:
        with pg_cursor() as cur:
            for statement in _SCHEMA:
                cur.execute(statement)
    except Exception as e:
        log.error(f"Failed to initialize database: {e}")
        raise
    log.info(f"Database schema ready ({len(_SCHEMA)} statements)")
