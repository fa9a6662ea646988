"""agency_etl.household_resolution

Batch household resolution for one upload file.

Resolution order per household key:
  1. Exact household_key match: one batched lookup for every key in the file
  2. Heuristic match (MatchStrategy): one batched candidate fetch by last name,
     then the strategy picks the first (oldest) acceptable candidate
  3. Create: every still-unmatched key, one batch insert

There is no score-based disambiguation: the first acceptable household wins.
Because the heuristic can resolve differently between runs, duplicate
households are possible and are never merged here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from agency_etl.normalize import normalize_name, zip_prefix
from agency_etl.store import HouseholdRow, HouseholdSeed, HouseholdStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity + result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HouseholdIdentity:
    """The identifying fields of one household group in an upload."""

    household_key: str
    first_name: str | None
    last_name: str | None
    zip_code: str | None
    email: str | None = None
    phone: str | None = None

    def to_seed(self) -> HouseholdSeed:
        return HouseholdSeed(
            household_key=self.household_key,
            first_name=self.first_name,
            last_name=self.last_name,
            zip_code=self.zip_code,
            email=self.email,
            phone=self.phone,
        )


@dataclass
class HouseholdResolution:
    household_ids: dict[str, str] = field(default_factory=dict)
    created: set[str] = field(default_factory=set)
    matched_exact: set[str] = field(default_factory=set)
    matched_heuristic: set[str] = field(default_factory=set)

    def get(self, key: str) -> str | None:
        return self.household_ids.get(key)


# ---------------------------------------------------------------------------
# Match strategies
# ---------------------------------------------------------------------------

class MatchStrategy(Protocol):
    name: str

    def match(
        self,
        identity: HouseholdIdentity,
        candidates: Sequence[HouseholdRow],
    ) -> HouseholdRow | None:
        """Return the household the identity belongs to, or None."""
        ...


def _same_name(a: str | None, b: str | None) -> bool:
    return (normalize_name(a) or "") == (normalize_name(b) or "")


@dataclass(frozen=True)
class NameZipPrefixStrategy:
    """Case-insensitive first+last name match plus a zip prefix match.

    'John Smith, 10001' matches a household stored as
    'john smith, 10001-2345'.  Identities without a usable zip never match.
    """

    prefix_length: int = 5
    name: str = "name_zip_prefix"

    def match(
        self,
        identity: HouseholdIdentity,
        candidates: Sequence[HouseholdRow],
    ) -> HouseholdRow | None:
        identity_zip = zip_prefix(identity.zip_code, self.prefix_length)
        if identity_zip is None or len(identity_zip) < self.prefix_length:
            return None
        for candidate in candidates:
            if not _same_name(candidate.last_name, identity.last_name):
                continue
            if not _same_name(candidate.first_name, identity.first_name):
                continue
            if zip_prefix(candidate.zip_code, self.prefix_length) == identity_zip:
                return candidate
        return None


@dataclass(frozen=True)
class ExactKeyStrategy:
    """Heuristic disabled: only exact household_key matches resolve."""

    name: str = "exact_key"

    def match(
        self,
        identity: HouseholdIdentity,
        candidates: Sequence[HouseholdRow],
    ) -> HouseholdRow | None:
        return None


def build_match_strategy(name: str, zip_prefix_length: int = 5) -> MatchStrategy:
    if name == "name_zip_prefix":
        return NameZipPrefixStrategy(prefix_length=zip_prefix_length)
    if name == "exact_key":
        return ExactKeyStrategy()
    raise ValueError(f"unknown match strategy {name!r}")


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class HouseholdResolver:
    def __init__(self, store: HouseholdStore, strategy: MatchStrategy | None = None) -> None:
        self.store = store
        self.strategy = strategy or NameZipPrefixStrategy()

    def resolve(
        self,
        agency_id: str,
        identities: Sequence[HouseholdIdentity],
        upload_id: str | None = None,
    ) -> HouseholdResolution:
        """Resolve (or create) one household per distinct identity key."""
        result = HouseholdResolution()
        by_key: dict[str, HouseholdIdentity] = {}
        for identity in identities:
            by_key.setdefault(identity.household_key, identity)
        if not by_key:
            return result

        # Step 1: exact key, one batched lookup
        exact = self.store.find_households_by_keys(agency_id, list(by_key))
        for key, household in exact.items():
            result.household_ids[key] = household.id
            result.matched_exact.add(key)

        # Step 2: heuristic, one batched candidate fetch
        unmatched = [p for k, p in by_key.items() if k not in result.household_ids]
        if unmatched:
            last_names = sorted({p.last_name.strip() for p in unmatched if p.last_name and p.last_name.strip()})
            candidates = self.store.find_household_candidates(agency_id, last_names)
            if candidates:
                for identity in unmatched:
                    household = self.strategy.match(identity, candidates)
                    if household is not None:
                        result.household_ids[identity.household_key] = household.id
                        result.matched_heuristic.add(identity.household_key)
                        log.debug(
                            "household %s matched %s via %s",
                            identity.household_key, household.id, self.strategy.name,
                        )

        # Step 3: batch-create the rest
        to_create = [p.to_seed() for k, p in by_key.items() if k not in result.household_ids]
        if to_create:
            created = self.store.insert_households(agency_id, to_create, upload_id)
            result.household_ids.update(created)
            result.created.update(created)

        # Matched households pick up fresh contact details
        for key in result.matched_exact | result.matched_heuristic:
            identity = by_key[key]
            self.store.touch_household(
                result.household_ids[key], identity.email, identity.phone, upload_id,
            )

        log.info(
            "resolved %d household keys: %d exact, %d heuristic, %d created",
            len(by_key), len(result.matched_exact),
            len(result.matched_heuristic), len(result.created),
        )
        return result
