"""agency_etl.contact_registry

Best-effort linking of households to the agency's canonical contacts.

For every resolved household with no contact_id yet and a usable last
name, look up (or create) the contact and fill household.contact_id only
if it is still null.  A failure here never fails the upload: it is logged,
counted, and the household stays unlinked until a later upload retries.
"""

from __future__ import annotations

import logging
from typing import Sequence

from agency_etl.normalize import trim
from agency_etl.shared import InfrastructureError, UploadCounters
from agency_etl.store import HouseholdRow, HouseholdStore

log = logging.getLogger(__name__)


class ContactRegistrar:
    def __init__(self, store: HouseholdStore) -> None:
        self.store = store

    def _link_one(self, agency_id: str, household: HouseholdRow) -> bool:
        contact_id = self.store.find_or_create_contact(
            agency_id,
            first_name=household.first_name,
            last_name=household.last_name or "",
            zip_code=household.zip_code,
            phone=household.phone,
            email=household.email,
        )
        return self.store.link_contact_if_absent(household.id, contact_id)

    def register(
        self,
        agency_id: str,
        household_ids: Sequence[str],
        counters: UploadCounters,
    ) -> int:
        """Link unlinked households to contacts.  Returns the number linked."""
        linked = 0
        for household in self.store.get_households(list(dict.fromkeys(household_ids))):
            if household.contact_id is not None:
                continue
            if trim(household.last_name) is None:
                continue
            try:
                if self._link_one(agency_id, household):
                    linked += 1
            except InfrastructureError:
                raise
            except Exception as exc:
                counters.contact_link_errors += 1
                counters.warnings.append(
                    f"contact link failed for household {household.id}: "
                    f"{type(exc).__name__}: {exc}"
                )
                log.warning(
                    "contact link failed for household %s: %s", household.id, exc,
                )
        counters.contacts_linked += linked
        return linked
