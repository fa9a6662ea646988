"""agency_etl.lifecycle_stage

Derive one current lifecycle stage per contact from its linked records.

Pure: no I/O, no persisted state.  The inputs are reduced to per-family
status sets before any rule runs, so the result cannot depend on record
order.  Rules are evaluated top to bottom; the first match wins:

  1. winback    any winback record in_progress or untouched
  2. won_back   any winback record won_back
  3. at_risk    any cancel-audit record with status 'cancel'
  4. cancelled  a cancel-audit record cancelled or lost, with no 'saved'
                cancel-audit record, no won_back record and no renewal
                record at all
  5. renewal    any renewal record uncontacted or pending
  6. customer   renewal success, or an LQS/sale record sold, or a 'saved'
                cancel-audit record
  7. lead       any LQS/sale record
  8. lead       (default)

Status comparison ignores case and surrounding whitespace; inner spaces
and hyphens compare equal to underscores ('In Progress' == 'in_progress').
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Iterable, Union


class LifecycleStage(str, Enum):
    WINBACK = "winback"
    WON_BACK = "won_back"
    AT_RISK = "at_risk"
    CANCELLED = "cancelled"
    RENEWAL = "renewal"
    CUSTOMER = "customer"
    LEAD = "lead"


@dataclass(frozen=True)
class LinkedRecord:
    """One record linked to a contact, reduced to what the rules read."""

    source: str
    record_id: str
    status: str | None
    date: date | datetime | None = None


StatusInput = Union[LinkedRecord, str, None]


def normalize_status(value: str | None) -> str:
    v = (value or "").strip().lower()
    return re.sub(r"[\s\-]+", "_", v)


def _statuses(records: Iterable[StatusInput]) -> frozenset[str]:
    out = set()
    for r in records:
        status = r.status if isinstance(r, LinkedRecord) else r
        out.add(normalize_status(status))
    return frozenset(out)


@dataclass(frozen=True)
class StageInputs:
    winback: frozenset[str]
    cancel_audit: frozenset[str]
    renewals: frozenset[str]
    lqs: frozenset[str]

    @classmethod
    def from_records(
        cls,
        winback: Iterable[StatusInput] = (),
        cancel_audit: Iterable[StatusInput] = (),
        renewals: Iterable[StatusInput] = (),
        lqs: Iterable[StatusInput] = (),
    ) -> "StageInputs":
        return cls(
            winback=_statuses(winback),
            cancel_audit=_statuses(cancel_audit),
            renewals=_statuses(renewals),
            lqs=_statuses(lqs),
        )


def _is_cancelled(s: StageInputs) -> bool:
    return (
        bool(s.cancel_audit & {"cancelled", "lost"})
        and "saved" not in s.cancel_audit
        and "won_back" not in s.winback
        and not s.renewals
    )


_RULES: tuple[tuple[LifecycleStage, Callable[[StageInputs], bool]], ...] = (
    (LifecycleStage.WINBACK, lambda s: bool(s.winback & {"in_progress", "untouched"})),
    (LifecycleStage.WON_BACK, lambda s: "won_back" in s.winback),
    (LifecycleStage.AT_RISK, lambda s: "cancel" in s.cancel_audit),
    (LifecycleStage.CANCELLED, _is_cancelled),
    (LifecycleStage.RENEWAL, lambda s: bool(s.renewals & {"uncontacted", "pending"})),
    (
        LifecycleStage.CUSTOMER,
        lambda s: "success" in s.renewals or "sold" in s.lqs or "saved" in s.cancel_audit,
    ),
    (LifecycleStage.LEAD, lambda s: bool(s.lqs)),
)


def evaluate(inputs: StageInputs) -> LifecycleStage:
    for stage, rule in _RULES:
        if rule(inputs):
            return stage
    return LifecycleStage.LEAD


def resolve_stage(
    winback: Iterable[StatusInput] = (),
    cancel_audit: Iterable[StatusInput] = (),
    renewals: Iterable[StatusInput] = (),
    lqs: Iterable[StatusInput] = (),
) -> LifecycleStage:
    """Return the single current stage for one contact's linked records."""
    return evaluate(StageInputs.from_records(winback, cancel_audit, renewals, lqs))
