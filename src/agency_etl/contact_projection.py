"""agency_etl.contact_projection

Read-side projection of a contact across the four record families.

store.linked_rows() returns the raw rows per contact; this module reduces
them to LinkedRecords, runs the stage rules and builds the dated journey.
Nothing here writes.

Family mapping:
  winback       households with a winback_status (status = winback_status)
  lqs           households with an lqs_status, dated by the first lead,
                first quote or latest sale; plus every sale row ('sold')
  cancel_audit  cancel_audit_record rows; a workflow status of 'lost'
                overrides the reported cancel_status
  renewals      active renewal_record rows (status = current_status)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Sequence

from agency_etl.lifecycle_stage import LifecycleStage, LinkedRecord, normalize_status, resolve_stage
from agency_etl.normalize import household_key as make_household_key
from agency_etl.normalize import normalize_email, normalize_phone, trim
from agency_etl.store import ContactRow, HouseholdStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row -> LinkedRecord
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LinkedRecords:
    winback: tuple[LinkedRecord, ...] = ()
    cancel_audit: tuple[LinkedRecord, ...] = ()
    renewals: tuple[LinkedRecord, ...] = ()
    lqs: tuple[LinkedRecord, ...] = ()

    def stage(self) -> LifecycleStage:
        return resolve_stage(self.winback, self.cancel_audit, self.renewals, self.lqs)


def cancel_audit_effective_status(row: dict[str, Any]) -> str | None:
    if normalize_status(row.get("status")) == "lost":
        return "lost"
    return row.get("cancel_status")


_LQS_DATE_COLUMNS = {
    "lead": "first_lead_date",
    "quoted": "first_quote_date",
    "sold": "sold_date",
}


def lqs_status_date(household: dict[str, Any]) -> date | datetime | None:
    """Date the household reached its current lqs_status (created_at if unknown)."""
    column = _LQS_DATE_COLUMNS.get(normalize_status(household.get("lqs_status")))
    return (household.get(column) if column else None) or household.get("created_at")


def linked_records_from_rows(rows: dict[str, list[dict[str, Any]]]) -> LinkedRecords:
    households = rows.get("households", [])
    return LinkedRecords(
        winback=tuple(
            LinkedRecord("winback", str(h["id"]), h["winback_status"], h.get("created_at"))
            for h in households if h.get("winback_status")
        ),
        cancel_audit=tuple(
            LinkedRecord("cancel_audit", str(r["id"]), cancel_audit_effective_status(r), r.get("created_at"))
            for r in rows.get("cancel_audit", [])
        ),
        renewals=tuple(
            LinkedRecord("renewal", str(r["id"]), r.get("current_status"), r.get("renewal_effective_date"))
            for r in rows.get("renewals", [])
        ),
        lqs=tuple(
            [
                LinkedRecord("lqs", str(h["id"]), h["lqs_status"], lqs_status_date(h))
                for h in households if h.get("lqs_status")
            ]
            + [
                LinkedRecord("sale", str(s["id"]), "sold", s.get("sale_date"))
                for s in rows.get("sales", [])
            ]
        ),
    )


# ---------------------------------------------------------------------------
# Journey
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JourneyEvent:
    stage: str
    date: date | None
    label: str
    source_module: str
    source_record_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "date": self.date.isoformat() if self.date else None,
            "label": self.label,
            "source_module": self.source_module,
            "source_record_id": self.source_record_id,
        }


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


_LQS_EVENTS = {
    "lead": ("lead", "Lead Created"),
    "quoted": ("quoted", "Quote Provided"),
    "sold": ("customer", "Policy Sold"),
}


def build_journey(linked: LinkedRecords) -> list[JourneyEvent]:
    """Dated milestones across all families, oldest first (undated last)."""
    events: list[JourneyEvent] = []

    for r in linked.lqs:
        if r.source == "sale":
            events.append(JourneyEvent("customer", _as_date(r.date), "Sale Recorded", "sales", r.record_id))
            continue
        mapped = _LQS_EVENTS.get(normalize_status(r.status))
        if mapped:
            events.append(JourneyEvent(mapped[0], _as_date(r.date), mapped[1], "lqs", r.record_id))

    for r in linked.renewals:
        events.append(JourneyEvent("renewal", _as_date(r.date), "Renewal Pending", "renewal", r.record_id))
        if normalize_status(r.status) == "success":
            events.append(JourneyEvent("customer", _as_date(r.date), "Renewal Completed", "renewal", r.record_id))

    for r in linked.cancel_audit:
        events.append(JourneyEvent("cancel_audit", _as_date(r.date), "Cancel Request", "cancel_audit", r.record_id))
        if normalize_status(r.status) == "saved":
            events.append(JourneyEvent("customer", _as_date(r.date), "Account Saved", "cancel_audit", r.record_id))

    for r in linked.winback:
        events.append(JourneyEvent("winback", _as_date(r.date), "Win-back Started", "winback", r.record_id))
        if normalize_status(r.status) == "won_back":
            events.append(JourneyEvent("customer", _as_date(r.date), "Customer Won Back", "winback", r.record_id))

    # Stable sort: same-day events keep the family order above
    events.sort(key=lambda e: (e.date is None, e.date or date.min))
    return events


# ---------------------------------------------------------------------------
# Projector
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContactProfile:
    contact: ContactRow
    stage: LifecycleStage
    linked: LinkedRecords
    household_ids: tuple[str, ...] = ()
    journey: tuple[JourneyEvent, ...] = field(default=(), compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact.id,
            "first_name": self.contact.first_name,
            "last_name": self.contact.last_name,
            "household_key": self.contact.household_key,
            "phones": list(self.contact.phones),
            "emails": list(self.contact.emails),
            "current_stage": self.stage.value,
            "household_ids": list(self.household_ids),
            "record_counts": {
                "winback": len(self.linked.winback),
                "cancel_audit": len(self.linked.cancel_audit),
                "renewals": len(self.linked.renewals),
                "lqs": len(self.linked.lqs),
            },
            "journey": [e.to_dict() for e in self.journey],
        }


class ContactProjector:
    def __init__(self, store: HouseholdStore) -> None:
        self.store = store

    def project(self, agency_id: str, contact_ids: Sequence[str]) -> dict[str, ContactProfile]:
        """Profiles for every known contact id; unknown ids are left out."""
        ids = list(dict.fromkeys(contact_ids))
        contacts = {}
        for contact_id in ids:
            contact = self.store.get_contact(agency_id, contact_id)
            if contact is None:
                log.debug("contact %s not found for agency %s", contact_id, agency_id)
                continue
            contacts[contact_id] = contact
        rows = self.store.linked_rows(agency_id, list(contacts))

        profiles = {}
        for contact_id, contact in contacts.items():
            linked = linked_records_from_rows(rows[contact_id])
            profiles[contact_id] = ContactProfile(
                contact=contact,
                stage=linked.stage(),
                linked=linked,
                household_ids=tuple(str(h["id"]) for h in rows[contact_id]["households"]),
                journey=tuple(build_journey(linked)),
            )
        return profiles

    def stages(self, agency_id: str, contact_ids: Sequence[str]) -> dict[str, LifecycleStage]:
        return {cid: p.stage for cid, p in self.project(agency_id, contact_ids).items()}

    def lookup(
        self,
        agency_id: str,
        contact_id: str | None = None,
        household_key: str | None = None,
        phone: str | None = None,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        zip_code: str | None = None,
    ) -> ContactProfile | None:
        """Find one contact by id, then household key, then phone, then email.

        A household key is derived from first/last/zip when none is given
        and a last name is present.
        """
        contact: ContactRow | None = None
        if contact_id:
            contact = self.store.get_contact(agency_id, contact_id)
        if contact is None:
            key = household_key
            if key is None and trim(last_name):
                key = make_household_key(first_name, last_name, zip_code)
            contact = self.store.find_contact(
                agency_id,
                household_key=key,
                phone=normalize_phone(phone),
                email=normalize_email(email),
            )
        if contact is None:
            return None
        return self.project(agency_id, [contact.id]).get(contact.id)
