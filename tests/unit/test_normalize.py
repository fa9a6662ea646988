"""Unit tests for agency_etl.normalize."""

from datetime import date, datetime

import pytest

from agency_etl.normalize import (
    fingerprint,
    household_key,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_space,
    normalize_zip,
    parse_bool,
    parse_cents,
    parse_date,
    parse_int,
    trim,
    zip_prefix,
)


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("hello   world") == "hello world"

    def test_collapses_tabs(self):
        assert normalize_space("hello\t\tworld") == "hello world"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_email / normalize_phone
# ---------------------------------------------------------------------------

class TestNormalizeEmail:
    def test_lowercases(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    def test_blank(self):
        assert normalize_email("   ") is None


class TestNormalizePhone:
    def test_ten_digits(self):
        assert normalize_phone("(207) 555-1234") == "+12075551234"

    def test_eleven_digits_leading_one(self):
        assert normalize_phone("1-207-555-1234") == "+12075551234"

    def test_already_e164(self):
        assert normalize_phone("+12075551234") == "+12075551234"

    def test_too_short(self):
        assert normalize_phone("555-12") is None

    def test_none(self):
        assert normalize_phone(None) is None


# ---------------------------------------------------------------------------
# normalize_name
# ---------------------------------------------------------------------------

class TestNormalizeName:
    def test_lowercases_and_strips_punctuation(self):
        assert normalize_name("  O'Brien ") == "obrien"

    def test_strips_accents(self):
        assert normalize_name("José") == "jose"

    def test_collapses_spaces(self):
        assert normalize_name("Mary   Ann") == "mary ann"

    def test_punctuation_only(self):
        assert normalize_name("...") is None


# ---------------------------------------------------------------------------
# zip handling
# ---------------------------------------------------------------------------

class TestZip:
    def test_zip_plus_four_kept(self):
        assert normalize_zip("10001-2345") == "10001-2345"

    def test_trimmed(self):
        assert normalize_zip(" 10001 ") == "10001"

    def test_prefix_of_zip_plus_four(self):
        assert zip_prefix("10001-2345") == "10001"

    def test_prefix_of_short_zip(self):
        assert zip_prefix("0210") == "0210"

    def test_prefix_custom_length(self):
        assert zip_prefix("10001-2345", 3) == "100"

    def test_prefix_of_garbage(self):
        assert zip_prefix("n/a") is None

    def test_prefix_none(self):
        assert zip_prefix(None) is None


# ---------------------------------------------------------------------------
# household_key
# ---------------------------------------------------------------------------

class TestHouseholdKey:
    def test_basic(self):
        assert household_key("John", "Smith", "10001") == "smith_john_10001"

    def test_zip_plus_four_truncated(self):
        assert household_key("John", "Smith", "10001-2345") == "smith_john_10001"

    def test_case_and_whitespace_insensitive(self):
        assert household_key("  JOHN ", "smith  ", " 10001") == household_key("john", "SMITH", "10001")

    def test_non_alphanumerics_removed(self):
        assert household_key("Mary Ann", "de la Cruz", "02134") == "delacruz_maryann_02134"

    def test_accents_removed(self):
        assert household_key("Zoë", "Núñez", "10001") == "nunez_zoe_10001"

    def test_missing_parts(self):
        assert household_key(None, "O'Brien", None) == "obrien_unknown_nozip"

    def test_missing_last_name(self):
        assert household_key("Pat", "  ", "10001") == "unknown_pat_10001"

    @pytest.mark.parametrize("first,last,zip_code", [
        ("John", "Smith", "10001"),
        ("Ana-María", "García López", "90210-1234"),
        (None, None, None),
    ])
    def test_deterministic(self, first, last, zip_code):
        assert household_key(first, last, zip_code) == household_key(first, last, zip_code)


# ---------------------------------------------------------------------------
# dates, money, ints, bools
# ---------------------------------------------------------------------------

class TestParseDate:
    def test_iso(self):
        assert parse_date("2025-07-23") == date(2025, 7, 23)

    def test_us_slash(self):
        assert parse_date("07/23/2025") == date(2025, 7, 23)

    def test_us_slash_short_year(self):
        assert parse_date("7/23/25") == date(2025, 7, 23)

    def test_month_name(self):
        assert parse_date("Jul 23, 2025") == date(2025, 7, 23)

    def test_datetime_passthrough(self):
        assert parse_date(datetime(2025, 7, 23, 14, 5)) == date(2025, 7, 23)

    def test_date_passthrough(self):
        assert parse_date(date(2025, 7, 23)) == date(2025, 7, 23)

    def test_garbage(self):
        assert parse_date("next tuesday") is None

    def test_none(self):
        assert parse_date(None) is None


class TestParseCents:
    def test_dollars(self):
        assert parse_cents("$1,234.56") == 123456

    def test_whole_dollars(self):
        assert parse_cents("250") == 25000

    def test_accounting_negative(self):
        assert parse_cents("(12.50)") == -1250

    def test_rounds_half_up(self):
        assert parse_cents("12.345") == 1235

    def test_blank(self):
        assert parse_cents("  ") is None

    def test_no_digits(self):
        assert parse_cents("n/a") is None


class TestParseIntAndBool:
    def test_int_with_comma(self):
        assert parse_int("1,200") == 1200

    def test_int_from_decimal_text(self):
        assert parse_int("3.0") == 3

    def test_int_garbage(self):
        assert parse_int("three") is None

    @pytest.mark.parametrize("value", ["Yes", "y", "TRUE", "1", "t"])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["No", "0", "", None])
    def test_falsy(self, value):
        assert parse_bool(value) is False


# ---------------------------------------------------------------------------
# fingerprint
# ---------------------------------------------------------------------------

class TestFingerprint:
    def test_stable(self):
        assert fingerprint("smith_john_10001", "2025-07-01", "auto") == fingerprint(
            "smith_john_10001", "2025-07-01", "auto"
        )

    def test_length(self):
        assert len(fingerprint("a", "b")) == 32

    def test_differs_on_any_part(self):
        assert fingerprint("a", "b") != fingerprint("a", "c")
