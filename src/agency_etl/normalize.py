"""Normalization functions shared by all four upload pipelines.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%b %d, %Y")

UNKNOWN_NAME = "unknown"
NO_ZIP = "nozip"
ZIP_PREFIX_LENGTH = 5


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: str | None) -> str | None:
    """Return E.164-style phone or None.

    Keeps digits only.  10-digit → +1XXXXXXXXXX.
    11-digit starting with 1 → +1XXXXXXXXXX.
    Anything else → '+' prefixed digits, or None if fewer than 7 digits.
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) >= 7:
        return f"+{digits}"
    return None


# ---------------------------------------------------------------------------
# Rule 5: normalize_name
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces."""
    v = trim(value)
    if v is None:
        return None
    v = _strip_accents(v).lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


# ---------------------------------------------------------------------------
# Rule 6: zip handling
# ---------------------------------------------------------------------------

def normalize_zip(value: str | None) -> str | None:
    """Trim a zip code and drop everything except digits and a single '-'.

    '10001-2345' stays '10001-2345'; ' 10001 ' → '10001'.
    """
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"[^0-9-]", "", v).strip("-")
    return v if v else None


def zip_prefix(value: str | None, length: int = ZIP_PREFIX_LENGTH) -> str | None:
    """Return the leading `length` digits of a zip code, or None."""
    v = normalize_zip(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)[:length]
    return digits if digits else None


# ---------------------------------------------------------------------------
# Rule 7: household_key
# ---------------------------------------------------------------------------

def _key_part(value: str | None) -> str | None:
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"[^a-z0-9]", "", _strip_accents(v).lower())
    return v if v else None


def household_key(
    first_name: str | None,
    last_name: str | None,
    zip_code: str | None,
) -> str:
    """Deterministic household matching key: ``last_first_zip5``.

    Each name part is lower-cased with accents and every non-alphanumeric
    character removed.  Missing names become 'unknown', a missing zip
    'nozip'.  A heuristic, not a guarantee: distinct households may collide
    and the same household may produce two keys.
    """
    last = _key_part(last_name) or UNKNOWN_NAME
    first = _key_part(first_name) or UNKNOWN_NAME
    zip5 = zip_prefix(zip_code) or NO_ZIP
    return f"{last}_{first}_{zip5}"


# ---------------------------------------------------------------------------
# Rule 8: dates and money
# ---------------------------------------------------------------------------

def parse_date(value: str | date | None) -> date | None:
    """Parse ISO, US slash, or 'Jul 23, 2025' dates.  Unparseable → None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    v = trim(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_cents(value: str | None) -> int | None:
    """Parse a dollar amount like '$1,234.56' into integer cents."""
    v = trim(value)
    if v is None:
        return None
    negative = v.startswith("(") and v.endswith(")")
    v = re.sub(r"[^0-9.\-]", "", v)
    if not v or v in {"-", "."}:
        return None
    try:
        amount = Decimal(v)
    except InvalidOperation:
        return None
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return -cents if negative else cents


def parse_int(value: str | None) -> int | None:
    v = trim(value)
    if v is None:
        return None
    try:
        return int(Decimal(v.replace(",", "")))
    except InvalidOperation:
        return None


def parse_bool(value: str | None) -> bool:
    v = (trim(value) or "").lower()
    return v in {"1", "true", "t", "yes", "y"}


# ---------------------------------------------------------------------------
# Helper: fingerprint
# ---------------------------------------------------------------------------

def fingerprint(*parts: object) -> str:
    """Return a deterministic 32-hex key from the given parts.

    Used as a natural key for rows that carry no domain identifier.
    """
    key = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
