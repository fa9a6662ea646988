"""Integration test fixtures.

Applies migrations 0001–0005 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test runs.  Tests
are skipped when no PostgreSQL server binaries are installed.
"""

from __future__ import annotations

import shutil
import subprocess
import uuid
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from agency_etl.store import PostgresStore

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_extensions.sql",
    PROJECT_ROOT / "migrations" / "0002_core_entities.sql",
    PROJECT_ROOT / "migrations" / "0003_detail_tables.sql",
    PROJECT_ROOT / "migrations" / "0004_household_aggregates.sql",
    PROJECT_ROOT / "migrations" / "0005_lqs_leads_quotes.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _have_postgres() -> bool:
    """True when pg_ctl is on PATH or in the bindir pg_config reports."""
    if shutil.which("pg_ctl") is not None:
        return True
    pg_config = shutil.which("pg_config")
    if pg_config is None:
        return False
    try:
        bindir = subprocess.run(
            [pg_config, "--bindir"], capture_output=True, text=True, check=True
        ).stdout.strip()
    except (OSError, subprocess.CalledProcessError):
        return False
    return bool(bindir) and (Path(bindir) / "pg_ctl").is_file()


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (autocommit psycopg connection, dsn) with the schema applied.

    Function scope: every test gets a fresh database.
    """
    if not _have_postgres():
        pytest.skip("PostgreSQL server binaries not installed")
    postgresql = request.getfixturevalue("postgresql")
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn):
    conn, _dsn = db_conn
    return PostgresStore(conn)


@pytest.fixture
def agency_id():
    return str(uuid.uuid4())
