"""agency_etl.memory_store

Process-local HouseholdStore.  Mirrors the PostgreSQL schema closely enough
for unit tests and --dry-run CLI runs: natural-key uniqueness per agency,
oldest-first household ordering, fill-once contact links, transactional
rollback (savepoints included) and a per-(agency, report type) writer lock.
"""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator, Sequence

from agency_etl.normalize import household_key, normalize_email, normalize_phone, trim
from agency_etl.shared import ProvenanceWriteError
from agency_etl.store import (
    CANCEL_AUDIT_RECORD,
    DETAIL_TABLES,
    LQS_LEAD,
    LQS_QUOTE,
    RENEWAL_RECORD,
    SALE,
    TERMINATION_POLICY,
    WINBACK_STATUSES,
    ContactRow,
    DetailTable,
    HouseholdRow,
    HouseholdSeed,
    UploadRow,
    empty_linked_rows,
    lqs_statuses_below,
    merge_contact_values,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IntegrityError(Exception):
    """Raised on a natural-key uniqueness violation."""


class InMemoryStore:
    """HouseholdStore kept in Python dicts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._writer_locks: dict[tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        self._seq = itertools.count(1)
        self._epoch = _now()
        self._state: dict[str, Any] = {
            "households": {},
            "contacts": {},
            "uploads": {},
            "aggregates": {},
            "details": {t.name: {} for t in DETAIL_TABLES},
        }
        self._snapshots: list[dict[str, Any]] = []

    # -- introspection helpers for tests ---------------------------------------

    @property
    def households(self) -> dict[str, HouseholdRow]:
        return self._state["households"]

    @property
    def contacts(self) -> dict[str, ContactRow]:
        return self._state["contacts"]

    @property
    def uploads(self) -> dict[str, UploadRow]:
        return self._state["uploads"]

    def detail_rows(self, table: DetailTable) -> list[dict[str, Any]]:
        return list(self._state["details"][table.name].values())

    def aggregates(self, household_id: str) -> dict[str, Any]:
        return self._state["aggregates"].get(household_id, {})

    def seed_household(self, agency_id: str, seed: HouseholdSeed, **extra: Any) -> str:
        """Insert a household directly, bypassing the resolver."""
        with self._lock:
            hid = self._new_id()
            self.households[hid] = HouseholdRow(
                id=hid,
                agency_id=agency_id,
                household_key=seed.household_key,
                first_name=seed.first_name,
                last_name=seed.last_name,
                zip_code=seed.zip_code,
                email=seed.email,
                phone=seed.phone,
                created_at=self._stamp(),
                **extra,
            )
            return hid

    # -- internals ---------------------------------------------------------------

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _stamp(self) -> datetime:
        # Strictly increasing so oldest-first ordering is deterministic.
        return self._epoch + timedelta(microseconds=next(self._seq))

    def _ordered_households(self) -> list[HouseholdRow]:
        return sorted(self.households.values(), key=lambda h: (h.created_at, h.id))

    # -- transactions + locking --------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            self._snapshots.append(copy.deepcopy(self._state))
            try:
                yield
            except BaseException:
                self._state = self._snapshots.pop()
                raise
            else:
                self._snapshots.pop()

    @contextmanager
    def writer_lock(self, agency_id: str, report_type: str) -> Iterator[None]:
        with self._lock:
            lock = self._writer_locks[(agency_id, report_type)]
        with lock:
            yield

    # -- provenance ----------------------------------------------------------------

    def create_upload(
        self,
        agency_id: str,
        uploader_id: str | None,
        filename: str,
        report_type: str,
    ) -> str:
        with self._lock:
            upload_id = self._new_id()
            self.uploads[upload_id] = UploadRow(
                id=upload_id,
                agency_id=agency_id,
                uploader_id=uploader_id,
                filename=filename,
                report_type=report_type,
                status="processing",
                started_at=_now(),
            )
            return upload_id

    def finalize_upload(
        self,
        upload_id: str,
        status: str,
        counts: dict[str, int],
        errors: list[dict[str, Any]],
    ) -> None:
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None or upload.status != "processing":
                raise ProvenanceWriteError(f"upload {upload_id} missing or already finalized")
            self.uploads[upload_id] = replace(
                upload,
                status=status,
                counts=dict(counts),
                errors=list(errors),
                completed_at=_now(),
            )

    def get_upload(self, upload_id: str) -> UploadRow | None:
        return self.uploads.get(upload_id)

    # -- households ----------------------------------------------------------------

    def find_households_by_keys(
        self,
        agency_id: str,
        keys: Sequence[str],
    ) -> dict[str, HouseholdRow]:
        wanted = set(keys)
        found: dict[str, HouseholdRow] = {}
        with self._lock:
            for h in self._ordered_households():
                if h.agency_id == agency_id and h.household_key in wanted:
                    found.setdefault(h.household_key, h)
        return found

    def find_household_candidates(
        self,
        agency_id: str,
        last_names: Sequence[str],
    ) -> list[HouseholdRow]:
        lowered = {n.lower() for n in last_names if n}
        with self._lock:
            return [
                h for h in self._ordered_households()
                if h.agency_id == agency_id and (h.last_name or "").lower() in lowered
            ]

    def insert_households(
        self,
        agency_id: str,
        seeds: Sequence[HouseholdSeed],
        upload_id: str | None,
    ) -> dict[str, str]:
        created: dict[str, str] = {}
        with self._lock:
            for seed in seeds:
                created[seed.household_key] = self.seed_household(agency_id, seed)
        return created

    def touch_household(
        self,
        household_id: str,
        email: str | None,
        phone: str | None,
        upload_id: str | None,
    ) -> None:
        with self._lock:
            h = self.households[household_id]
            self.households[household_id] = replace(
                h, email=email or h.email, phone=phone or h.phone,
            )

    def get_households(self, household_ids: Sequence[str]) -> list[HouseholdRow]:
        wanted = set(household_ids)
        with self._lock:
            return [h for h in self._ordered_households() if h.id in wanted]

    def link_contact_if_absent(self, household_id: str, contact_id: str) -> bool:
        with self._lock:
            h = self.households[household_id]
            if h.contact_id is not None:
                return False
            self.households[household_id] = replace(h, contact_id=contact_id)
            return True

    def ensure_winback_status(self, household_id: str) -> None:
        with self._lock:
            h = self.households[household_id]
            if h.winback_status is None:
                self.households[household_id] = replace(h, winback_status="untouched")

    def update_winback_status(
        self,
        household_id: str,
        new_status: str,
        expected_old: str,
    ) -> bool:
        if new_status not in WINBACK_STATUSES:
            raise ValueError(f"unknown winback status {new_status!r}")
        with self._lock:
            h = self.households.get(household_id)
            if h is None or h.winback_status != expected_old:
                return False
            self.households[household_id] = replace(h, winback_status=new_status)
            return True

    def mark_household_sold(self, household_id: str, sold_date: date | None) -> None:
        with self._lock:
            h = self.households[household_id]
            known = [d for d in (sold_date, h.sold_date) if d is not None]
            self.households[household_id] = replace(
                h, lqs_status="sold", sold_date=max(known) if known else None,
            )

    def promote_lqs_status(self, household_id: str, status: str) -> bool:
        below = lqs_statuses_below(status)
        with self._lock:
            h = self.households[household_id]
            if h.lqs_status is not None and h.lqs_status not in below:
                return False
            self.households[household_id] = replace(h, lqs_status=status)
            return True

    # -- contacts ----------------------------------------------------------------------

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
        with self._lock:
            contact = self.find_contact(agency_id, household_key=key, phone=phone_norm, email=email_norm)
            if contact is not None:
                self.contacts[contact.id] = replace(
                    contact,
                    phones=tuple(merge_contact_values(contact.phones, phone_norm)),
                    emails=tuple(merge_contact_values(contact.emails, email_norm)),
                )
                return contact.id
            contact_id = self._new_id()
            self.contacts[contact_id] = ContactRow(
                id=contact_id,
                agency_id=agency_id,
                first_name=trim(first_name),
                last_name=trim(last_name),
                household_key=key,
                zip_code=trim(zip_code),
                phones=(phone_norm,) if phone_norm else (),
                emails=(email_norm,) if email_norm else (),
            )
            return contact_id

    def get_contact(self, agency_id: str, contact_id: str) -> ContactRow | None:
        contact = self.contacts.get(contact_id)
        if contact is None or contact.agency_id != agency_id:
            return None
        return contact

    def find_contact(
        self,
        agency_id: str,
        household_key: str | None = None,
        phone: str | None = None,
        email: str | None = None,
    ) -> ContactRow | None:
        with self._lock:
            contacts = [c for c in self.contacts.values() if c.agency_id == agency_id]
            if household_key:
                for c in contacts:
                    if c.household_key == household_key:
                        return c
            if phone:
                for c in contacts:
                    if phone in c.phones:
                        return c
            if email:
                for c in contacts:
                    if email in c.emails:
                        return c
        return None

    # -- detail rows -----------------------------------------------------------------------

    def _table(self, table: DetailTable) -> dict[str, dict[str, Any]]:
        return self._state["details"][table.name]

    def deactivate_snapshot(
        self,
        table: DetailTable,
        agency_id: str,
        report_type: str,
    ) -> list[str]:
        if not table.snapshot:
            raise ValueError(f"{table.name} is not a snapshot table")
        dropped: list[str] = []
        with self._lock:
            for row in self._table(table).values():
                if (
                    row["agency_id"] == agency_id
                    and row.get("report_type") == report_type
                    and row.get("is_active")
                ):
                    row["is_active"] = False
                    row["dropped_from_report_at"] = _now()
                    dropped.append(row["household_id"])
        return dropped

    def find_detail(
        self,
        table: DetailTable,
        agency_id: str,
        natural_key: str,
    ) -> dict[str, Any] | None:
        with self._lock:
            for row in self._table(table).values():
                if row["agency_id"] == agency_id and row[table.natural_key_column] == natural_key:
                    return dict(row)
        return None

    def insert_detail(self, table: DetailTable, row: dict[str, Any]) -> str:
        with self._lock:
            nk = row[table.natural_key_column]
            if self.find_detail(table, row["agency_id"], nk) is not None:
                raise IntegrityError(
                    f"duplicate key value violates unique constraint on {table.name}: {nk!r}"
                )
            detail_id = self._new_id()
            self._table(table)[detail_id] = {
                **row,
                "id": detail_id,
                "created_at": self._stamp(),
            }
            return detail_id

    def update_detail(self, table: DetailTable, detail_id: str, changes: dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[detail_id].update(changes)

    def recompute_household_aggregates(self, household_id: str) -> None:
        with self._lock:
            def rows(table: DetailTable) -> list[dict[str, Any]]:
                return [r for r in self._table(table).values() if r["household_id"] == household_id]

            terminations = rows(TERMINATION_POLICY)
            cancels = [r for r in rows(CANCEL_AUDIT_RECORD) if r.get("is_active")]
            renewals = [r for r in rows(RENEWAL_RECORD) if r.get("is_active")]
            sales = rows(SALE)
            lead_dates = [r["lead_date"] for r in rows(LQS_LEAD)]
            quotes = rows(LQS_QUOTE)
            winback_dates = [r["calculated_winback_date"] for r in terminations if r.get("calculated_winback_date")]
            term_dates = [r["termination_effective_date"] for r in terminations if r.get("termination_effective_date")]

            aggregates = self._state["aggregates"].setdefault(household_id, {})
            aggregates.update({
                "termination_policy_count": len(terminations),
                "earliest_winback_date": min(winback_dates) if winback_dates else None,
                "latest_termination_date": max(term_dates) if term_dates else None,
                "terminated_premium_cents": sum(r.get("premium_new_cents") or 0 for r in terminations),
                "active_cancel_count": len(cancels),
                "cancel_amount_due_cents": sum(r.get("amount_due_cents") or 0 for r in cancels),
                "active_renewal_count": len(renewals),
                "renewal_premium_cents": sum(r.get("premium_new_cents") or 0 for r in renewals),
                "sale_count": len(sales),
                "sold_premium_cents": sum(r.get("premium_cents") or 0 for r in sales),
                "sold_items": sum(r.get("items_sold") or 0 for r in sales),
                "lead_count": len(lead_dates),
                "first_lead_date": min(lead_dates) if lead_dates else None,
                "quote_count": len(quotes),
                "first_quote_date": min((r["quote_date"] for r in quotes), default=None),
                "quoted_premium_cents": sum(r.get("premium_cents") or 0 for r in quotes),
            })

    # -- read side -----------------------------------------------------------------------------

    def linked_rows(
        self,
        agency_id: str,
        contact_ids: Sequence[str],
    ) -> dict[str, dict[str, list[dict[str, Any]]]]:
        result = {cid: empty_linked_rows() for cid in contact_ids}
        with self._lock:
            household_contact = {
                h.id: h.contact_id for h in self._ordered_households()
                if h.agency_id == agency_id and h.contact_id in result
            }
            for h in self._ordered_households():
                if h.id in household_contact:
                    row = {
                        "id": h.id,
                        "winback_status": h.winback_status,
                        "lqs_status": h.lqs_status,
                        "sold_date": h.sold_date,
                        "created_at": h.created_at,
                        **self.aggregates(h.id),
                    }
                    result[h.contact_id]["households"].append(row)
            for family, table in (
                ("cancel_audit", CANCEL_AUDIT_RECORD),
                ("renewals", RENEWAL_RECORD),
                ("sales", SALE),
            ):
                for row in sorted(self._table(table).values(), key=lambda r: r["created_at"]):
                    contact_id = household_contact.get(row["household_id"])
                    if contact_id is None:
                        continue
                    if family == "renewals" and not row.get("is_active"):
                        continue
                    result[contact_id][family].append(dict(row))
        return result
