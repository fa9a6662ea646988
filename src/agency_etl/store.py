"""agency_etl.store

Storage interface for the engine plus its PostgreSQL implementation.

The coordinators only talk to a HouseholdStore.  Two implementations ship:
  - PostgresStore  (this module)  psycopg 3 against the schema in migrations/
  - InMemoryStore  (agency_etl.memory_store)  used by unit tests and dry runs

Transactions:
  store.transaction() opens a transaction; nested calls open savepoints.
  Statements issued outside any transaction autocommit.

Depends on: 0001_extensions, 0002_core_entities, 0003_detail_tables,
            0004_household_aggregates, 0005_lqs_leads_quotes
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterator, Protocol, Sequence

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from agency_etl.normalize import household_key, normalize_email, normalize_phone, trim
from agency_etl.shared import ProvenanceWriteError, StoreUnavailableError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Table descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetailTable:
    """A detail-record table keyed per agency by a natural key."""

    name: str
    natural_key_column: str
    snapshot: bool = False


TERMINATION_POLICY = DetailTable("termination_policy", "policy_number")
CANCEL_AUDIT_RECORD = DetailTable("cancel_audit_record", "policy_number", snapshot=True)
RENEWAL_RECORD = DetailTable("renewal_record", "policy_number", snapshot=True)
SALE = DetailTable("sale", "natural_key")
LQS_LEAD = DetailTable("lqs_lead", "natural_key")
LQS_QUOTE = DetailTable("lqs_quote", "natural_key")

DETAIL_TABLES = (TERMINATION_POLICY, CANCEL_AUDIT_RECORD, RENEWAL_RECORD, SALE, LQS_LEAD, LQS_QUOTE)

WINBACK_STATUSES = ("untouched", "in_progress", "won_back", "dismissed")

# Ascending: a household's lqs_status only ever moves right.
LQS_STATUSES = ("lead", "quoted", "sold")


def lqs_statuses_below(status: str) -> tuple[str, ...]:
    """The lqs_status values that `status` may replace."""
    if status not in LQS_STATUSES:
        raise ValueError(f"unknown lqs status {status!r}")
    return LQS_STATUSES[: LQS_STATUSES.index(status)]


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HouseholdSeed:
    """Attributes for a household about to be created."""

    household_key: str
    first_name: str | None
    last_name: str | None
    zip_code: str | None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class HouseholdRow:
    id: str
    agency_id: str
    household_key: str
    first_name: str | None
    last_name: str | None
    zip_code: str | None
    email: str | None = None
    phone: str | None = None
    contact_id: str | None = None
    winback_status: str | None = None
    lqs_status: str | None = None
    sold_date: date | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ContactRow:
    id: str
    agency_id: str
    first_name: str | None
    last_name: str | None
    household_key: str
    zip_code: str | None
    phones: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()


@dataclass(frozen=True)
class UploadRow:
    id: str
    agency_id: str
    uploader_id: str | None
    filename: str
    report_type: str
    status: str
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ContactRegistry(Protocol):
    def find_or_create_contact(
        self,
        agency_id: str,
        first_name: str | None,
        last_name: str,
        zip_code: str | None,
        phone: str | None,
        email: str | None,
    ) -> str:
        """Return the canonical contact id, creating the contact if needed."""
        ...


class HouseholdStore(ContactRegistry, Protocol):
    # transactions + locking
    def transaction(self) -> Any: ...
    def writer_lock(self, agency_id: str, report_type: str) -> Any: ...

    # provenance
    def create_upload(
        self, agency_id: str, uploader_id: str | None, filename: str, report_type: str,
    ) -> str: ...
    def finalize_upload(
        self, upload_id: str, status: str, counts: dict[str, int], errors: list[dict[str, Any]],
    ) -> None: ...
    def get_upload(self, upload_id: str) -> UploadRow | None: ...

    # households
    def find_households_by_keys(
        self, agency_id: str, keys: Sequence[str],
    ) -> dict[str, HouseholdRow]: ...
    def find_household_candidates(
        self, agency_id: str, last_names: Sequence[str],
    ) -> list[HouseholdRow]: ...
    def insert_households(
        self, agency_id: str, seeds: Sequence[HouseholdSeed], upload_id: str | None,
    ) -> dict[str, str]: ...
    def touch_household(
        self, household_id: str, email: str | None, phone: str | None, upload_id: str | None,
    ) -> None: ...
    def get_households(self, household_ids: Sequence[str]) -> list[HouseholdRow]: ...
    def link_contact_if_absent(self, household_id: str, contact_id: str) -> bool: ...
    def ensure_winback_status(self, household_id: str) -> None: ...
    def update_winback_status(
        self, household_id: str, new_status: str, expected_old: str,
    ) -> bool: ...
    def mark_household_sold(self, household_id: str, sold_date: date | None) -> None: ...
    def promote_lqs_status(self, household_id: str, status: str) -> bool:
        """Raise lqs_status to `status`; never downgrades.  True when it changed."""
        ...

    # detail rows
    def deactivate_snapshot(
        self, table: DetailTable, agency_id: str, report_type: str,
    ) -> list[str]:
        """Deactivate the active snapshot; returns one household id per dropped row."""
        ...
    def find_detail(
        self, table: DetailTable, agency_id: str, natural_key: str,
    ) -> dict[str, Any] | None: ...
    def insert_detail(self, table: DetailTable, row: dict[str, Any]) -> str: ...
    def update_detail(self, table: DetailTable, detail_id: str, changes: dict[str, Any]) -> None: ...
    def recompute_household_aggregates(self, household_id: str) -> None: ...

    # read side
    def get_contact(self, agency_id: str, contact_id: str) -> ContactRow | None: ...
    def find_contact(
        self,
        agency_id: str,
        household_key: str | None = None,
        phone: str | None = None,
        email: str | None = None,
    ) -> ContactRow | None: ...
    def linked_rows(
        self, agency_id: str, contact_ids: Sequence[str],
    ) -> dict[str, dict[str, list[dict[str, Any]]]]: ...


def empty_linked_rows() -> dict[str, list[dict[str, Any]]]:
    return {"households": [], "cancel_audit": [], "renewals": [], "sales": []}


def merge_contact_values(existing: Sequence[str], new_value: str | None) -> list[str]:
    """Append new_value to a contact's phone/email set unless already present."""
    values = list(existing)
    if new_value and new_value not in values:
        values.append(new_value)
    return values


# ---------------------------------------------------------------------------
# PostgresStore
# ---------------------------------------------------------------------------

def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def _household_from_row(row: dict[str, Any]) -> HouseholdRow:
    return HouseholdRow(
        id=str(row["id"]),
        agency_id=str(row["agency_id"]),
        household_key=row["household_key"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        zip_code=row["zip_code"],
        email=row["email"],
        phone=row["phone"],
        contact_id=_str_or_none(row["contact_id"]),
        winback_status=row["winback_status"],
        lqs_status=row["lqs_status"],
        sold_date=row["sold_date"],
        created_at=row["created_at"],
    )


def _contact_from_row(row: dict[str, Any]) -> ContactRow:
    return ContactRow(
        id=str(row["id"]),
        agency_id=str(row["agency_id"]),
        first_name=row["first_name"],
        last_name=row["last_name"],
        household_key=row["household_key"],
        zip_code=row["zip_code"],
        phones=tuple(row["phones"] or ()),
        emails=tuple(row["emails"] or ()),
    )


_HOUSEHOLD_COLS = """
    id, agency_id, household_key, first_name, last_name, zip_code,
    email, phone, contact_id, winback_status, lqs_status, sold_date, created_at
"""


class PostgresStore:
    """HouseholdStore backed by PostgreSQL through psycopg 3.

    The connection must be in autocommit mode: transaction() then maps to
    BEGIN/COMMIT and nested calls to savepoints.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    @classmethod
    def connect(cls, dsn: str) -> "PostgresStore":
        try:
            conn = psycopg.connect(dsn, autocommit=True)
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(f"cannot connect to store: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    # -- low-level helpers ---------------------------------------------------

    def _execute(self, query: Any, params: Sequence[Any] | None = None) -> psycopg.Cursor:
        try:
            return self.conn.cursor(row_factory=dict_row).execute(query, params)
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def _fetchone(self, query: Any, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        return self._execute(query, params).fetchone()

    def _fetchall(self, query: Any, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        return self._execute(query, params).fetchall()

    # -- transactions + locking ----------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            with self.conn.transaction():
                yield
        except psycopg.OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    @contextmanager
    def writer_lock(self, agency_id: str, report_type: str) -> Iterator[None]:
        """Session advisory lock: one active writer per (agency, report type)."""
        lock_key = f"upload:{agency_id}:{report_type}"
        self._execute("SELECT pg_advisory_lock(hashtext(%s))", (lock_key,))
        try:
            yield
        finally:
            self._execute("SELECT pg_advisory_unlock(hashtext(%s))", (lock_key,))

    # -- provenance ------------------------------------------------------------

    def create_upload(
        self,
        agency_id: str,
        uploader_id: str | None,
        filename: str,
        report_type: str,
    ) -> str:
        try:
            row = self._fetchone(
                """
                INSERT INTO upload (agency_id, uploaded_by, filename, report_type, status)
                VALUES (%s, %s, %s, %s, 'processing')
                RETURNING id
                """,
                (agency_id, uploader_id, filename, report_type),
            )
        except psycopg.Error as exc:
            raise ProvenanceWriteError(f"cannot create upload row: {exc}") from exc
        return str(row["id"])

    def finalize_upload(
        self,
        upload_id: str,
        status: str,
        counts: dict[str, int],
        errors: list[dict[str, Any]],
    ) -> None:
        try:
            cur = self._execute(
                """
                UPDATE upload SET
                  status = %s,
                  records_processed = %s,
                  records_created = %s,
                  records_updated = %s,
                  records_skipped = %s,
                  households_created = %s,
                  errors = %s::jsonb,
                  completed_at = now()
                WHERE id = %s AND status = 'processing'
                """,
                (
                    status,
                    counts.get("records_processed", 0),
                    counts.get("records_created", 0),
                    counts.get("records_updated", 0),
                    counts.get("records_skipped", 0),
                    counts.get("households_created", 0),
                    json.dumps(errors, default=str),
                    upload_id,
                ),
            )
        except psycopg.Error as exc:
            raise ProvenanceWriteError(f"cannot finalize upload {upload_id}: {exc}") from exc
        if cur.rowcount != 1:
            raise ProvenanceWriteError(f"upload {upload_id} missing or already finalized")

    def get_upload(self, upload_id: str) -> UploadRow | None:
        row = self._fetchone("SELECT * FROM upload WHERE id = %s", (upload_id,))
        if row is None:
            return None
        return UploadRow(
            id=str(row["id"]),
            agency_id=str(row["agency_id"]),
            uploader_id=row["uploaded_by"],
            filename=row["filename"],
            report_type=row["report_type"],
            status=row["status"],
            counts={
                k: row[k] for k in (
                    "records_processed", "records_created", "records_updated",
                    "records_skipped", "households_created",
                )
            },
            errors=list(row["errors"] or []),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # -- households ------------------------------------------------------------

    def find_households_by_keys(
        self,
        agency_id: str,
        keys: Sequence[str],
    ) -> dict[str, HouseholdRow]:
        if not keys:
            return {}
        rows = self._fetchall(
            f"""
            SELECT {_HOUSEHOLD_COLS}
            FROM household
            WHERE agency_id = %s AND household_key = ANY(%s::text[])
            ORDER BY created_at ASC, id ASC
            """,
            (agency_id, list(keys)),
        )
        found: dict[str, HouseholdRow] = {}
        for row in rows:
            # Oldest household wins when duplicates share a key.
            found.setdefault(row["household_key"], _household_from_row(row))
        return found

    def find_household_candidates(
        self,
        agency_id: str,
        last_names: Sequence[str],
    ) -> list[HouseholdRow]:
        lowered = sorted({n.lower() for n in last_names if n})
        if not lowered:
            return []
        rows = self._fetchall(
            f"""
            SELECT {_HOUSEHOLD_COLS}
            FROM household
            WHERE agency_id = %s AND lower(last_name) = ANY(%s::text[])
            ORDER BY created_at ASC, id ASC
            """,
            (agency_id, lowered),
        )
        return [_household_from_row(r) for r in rows]

    def insert_households(
        self,
        agency_id: str,
        seeds: Sequence[HouseholdSeed],
        upload_id: str | None,
    ) -> dict[str, str]:
        if not seeds:
            return {}
        rows = self._fetchall(
            """
            INSERT INTO household
              (agency_id, household_key, first_name, last_name, zip_code,
               email, phone, last_upload_id)
            SELECT %s::uuid, k, f, l, z, e, p, %s::uuid
            FROM unnest(%s::text[], %s::text[], %s::text[], %s::text[],
                        %s::text[], %s::text[]) AS t(k, f, l, z, e, p)
            RETURNING id, household_key
            """,
            (
                agency_id, upload_id,
                [s.household_key for s in seeds],
                [s.first_name for s in seeds],
                [s.last_name for s in seeds],
                [s.zip_code for s in seeds],
                [s.email for s in seeds],
                [s.phone for s in seeds],
            ),
        )
        return {r["household_key"]: str(r["id"]) for r in rows}

    def touch_household(
        self,
        household_id: str,
        email: str | None,
        phone: str | None,
        upload_id: str | None,
    ) -> None:
        self._execute(
            """
            UPDATE household SET
              email = COALESCE(%s, email),
              phone = COALESCE(%s, phone),
              last_upload_id = COALESCE(%s, last_upload_id),
              updated_at = now()
            WHERE id = %s
            """,
            (email, phone, upload_id, household_id),
        )

    def get_households(self, household_ids: Sequence[str]) -> list[HouseholdRow]:
        if not household_ids:
            return []
        rows = self._fetchall(
            f"""
            SELECT {_HOUSEHOLD_COLS}
            FROM household WHERE id = ANY(%s::uuid[])
            ORDER BY created_at ASC, id ASC
            """,
            (list(household_ids),),
        )
        return [_household_from_row(r) for r in rows]

    def link_contact_if_absent(self, household_id: str, contact_id: str) -> bool:
        cur = self._execute(
            """
            UPDATE household SET contact_id = %s, updated_at = now()
            WHERE id = %s AND contact_id IS NULL
            """,
            (contact_id, household_id),
        )
        return cur.rowcount == 1

    def ensure_winback_status(self, household_id: str) -> None:
        self._execute(
            """
            UPDATE household SET winback_status = 'untouched', updated_at = now()
            WHERE id = %s AND winback_status IS NULL
            """,
            (household_id,),
        )

    def update_winback_status(
        self,
        household_id: str,
        new_status: str,
        expected_old: str,
    ) -> bool:
        if new_status not in WINBACK_STATUSES:
            raise ValueError(f"unknown winback status {new_status!r}")
        cur = self._execute(
            """
            UPDATE household SET winback_status = %s, updated_at = now()
            WHERE id = %s AND winback_status = %s
            """,
            (new_status, household_id, expected_old),
        )
        return cur.rowcount == 1

    def mark_household_sold(self, household_id: str, sold_date: date | None) -> None:
        self._execute(
            """
            UPDATE household SET
              lqs_status = 'sold',
              sold_date = GREATEST(sold_date, %s::date),
              updated_at = now()
            WHERE id = %s
            """,
            (sold_date, household_id),
        )

    def promote_lqs_status(self, household_id: str, status: str) -> bool:
        below = list(lqs_statuses_below(status))
        cur = self._execute(
            """
            UPDATE household SET lqs_status = %s, updated_at = now()
            WHERE id = %s AND (lqs_status IS NULL OR lqs_status = ANY(%s::text[]))
            """,
            (status, household_id, below),
        )
        return cur.rowcount == 1

    # -- contacts ----------------------------------------------------------------

    def find_or_create_contact(
        self,
        agency_id: str,
        first_name: str | None,
        last_name: str,
        zip_code: str | None,
        phone: str | None,
        email: str | None,
    ) -> str:
        key = household_key(first_name, last_name, zip_code)
        phone_norm = normalize_phone(phone)
        email_norm = normalize_email(email)

        contact = self.find_contact(agency_id, household_key=key, phone=phone_norm, email=email_norm)
        if contact is not None:
            phones = merge_contact_values(contact.phones, phone_norm)
            emails = merge_contact_values(contact.emails, email_norm)
            if phones != list(contact.phones) or emails != list(contact.emails):
                self._execute(
                    """
                    UPDATE agency_contact SET phones = %s, emails = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (phones, emails, contact.id),
                )
            return contact.id

        row = self._fetchone(
            """
            INSERT INTO agency_contact
              (agency_id, first_name, last_name, household_key, zip_code, phones, emails)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (agency_id, household_key) DO UPDATE SET updated_at = now()
            RETURNING id
            """,
            (
                agency_id, trim(first_name), trim(last_name), key, trim(zip_code),
                [phone_norm] if phone_norm else [],
                [email_norm] if email_norm else [],
            ),
        )
        return str(row["id"])

    def get_contact(self, agency_id: str, contact_id: str) -> ContactRow | None:
        row = self._fetchone(
            "SELECT * FROM agency_contact WHERE agency_id = %s AND id = %s",
            (agency_id, contact_id),
        )
        return _contact_from_row(row) if row else None

    def find_contact(
        self,
        agency_id: str,
        household_key: str | None = None,
        phone: str | None = None,
        email: str | None = None,
    ) -> ContactRow | None:
        """Look a contact up by household key, then phone, then email."""
        lookups = (
            ("household_key = %s", household_key),
            ("%s = ANY(phones)", phone),
            ("%s = ANY(emails)", email),
        )
        for predicate, value in lookups:
            if not value:
                continue
            row = self._fetchone(
                f"""
                SELECT * FROM agency_contact
                WHERE agency_id = %s AND {predicate}
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (agency_id, value),
            )
            if row:
                return _contact_from_row(row)
        return None

    # -- detail rows -------------------------------------------------------------

    def deactivate_snapshot(
        self,
        table: DetailTable,
        agency_id: str,
        report_type: str,
    ) -> list[str]:
        if not table.snapshot:
            raise ValueError(f"{table.name} is not a snapshot table")
        rows = self._fetchall(
            sql.SQL(
                """
                UPDATE {} SET
                  is_active = false,
                  dropped_from_report_at = now(),
                  updated_at = now()
                WHERE agency_id = %s AND report_type = %s AND is_active
                RETURNING household_id
                """
            ).format(sql.Identifier(table.name)),
            (agency_id, report_type),
        )
        return [str(r["household_id"]) for r in rows]

    def find_detail(
        self,
        table: DetailTable,
        agency_id: str,
        natural_key: str,
    ) -> dict[str, Any] | None:
        return self._fetchone(
            sql.SQL("SELECT * FROM {} WHERE agency_id = %s AND {} = %s").format(
                sql.Identifier(table.name),
                sql.Identifier(table.natural_key_column),
            ),
            (agency_id, natural_key),
        )

    def insert_detail(self, table: DetailTable, row: dict[str, Any]) -> str:
        cols = list(row.keys())
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
            sql.Identifier(table.name),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(sql.Placeholder() for _ in cols),
        )
        return str(self._fetchone(query, [row[c] for c in cols])["id"])

    def update_detail(self, table: DetailTable, detail_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        cols = list(changes.keys())
        query = sql.SQL("UPDATE {} SET {}, updated_at = now() WHERE id = %s").format(
            sql.Identifier(table.name),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in cols
            ),
        )
        self._execute(query, [changes[c] for c in cols] + [detail_id])

    def recompute_household_aggregates(self, household_id: str) -> None:
        self._execute("SELECT recalculate_household_aggregates(%s)", (household_id,))

    # -- read side ---------------------------------------------------------------

    def linked_rows(
        self,
        agency_id: str,
        contact_ids: Sequence[str],
    ) -> dict[str, dict[str, list[dict[str, Any]]]]:
        result = {cid: empty_linked_rows() for cid in contact_ids}
        if not contact_ids:
            return result
        ids = list(contact_ids)
        queries = {
            "households": """
                SELECT h.*, h.contact_id AS link_contact_id
                FROM household h
                WHERE h.agency_id = %s AND h.contact_id = ANY(%s::uuid[])
                ORDER BY h.created_at ASC, h.id ASC
            """,
            "cancel_audit": """
                SELECT c.*, h.contact_id AS link_contact_id
                FROM cancel_audit_record c
                JOIN household h ON h.id = c.household_id
                WHERE c.agency_id = %s AND h.contact_id = ANY(%s::uuid[])
                ORDER BY c.created_at ASC, c.id ASC
            """,
            "renewals": """
                SELECT r.*, h.contact_id AS link_contact_id
                FROM renewal_record r
                JOIN household h ON h.id = r.household_id
                WHERE r.agency_id = %s AND h.contact_id = ANY(%s::uuid[])
                  AND r.is_active
                ORDER BY r.renewal_effective_date ASC, r.id ASC
            """,
            "sales": """
                SELECT s.*, h.contact_id AS link_contact_id
                FROM sale s
                JOIN household h ON h.id = s.household_id
                WHERE s.agency_id = %s AND h.contact_id = ANY(%s::uuid[])
                ORDER BY s.sale_date ASC, s.id ASC
            """,
        }
        for family, query in queries.items():
            for row in self._fetchall(query, (agency_id, ids)):
                result[str(row["link_contact_id"])][family].append(row)
        return result
