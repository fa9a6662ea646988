"""agency_etl.config

YAML-based engine settings.

Responsibilities:
  - Load and validate the engine settings file (config/engine.yml)
  - Fill defaults for keys the file omits
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from agency_etl.config import load_settings

    settings = load_settings(Path("config/engine.yml"))
    settings.chunk_size   # → 50
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DSN_ENV_VAR = "AGENCY_ETL_DB_DSN"

VALID_MATCH_STRATEGIES = frozenset({"name_zip_prefix", "exact_key"})

KNOWN_KEYS = frozenset({
    "chunk_size",
    "contact_days_before",
    "match_strategy",
    "zip_prefix_length",
    "max_workers",
    "max_reported_errors",
})

DEFAULTS: dict[str, Any] = {
    "chunk_size": 50,
    "contact_days_before": 45,
    "match_strategy": "name_zip_prefix",
    "zip_prefix_length": 5,
    "max_workers": 4,
    "max_reported_errors": 500,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when the engine settings file fails validation."""


# ---------------------------------------------------------------------------
# EngineSettings dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineSettings:
    """Validated engine settings."""

    chunk_size: int = DEFAULTS["chunk_size"]
    contact_days_before: int = DEFAULTS["contact_days_before"]
    match_strategy: str = DEFAULTS["match_strategy"]
    zip_prefix_length: int = DEFAULTS["zip_prefix_length"]
    max_workers: int = DEFAULTS["max_workers"]
    max_reported_errors: int = DEFAULTS["max_reported_errors"]
    yaml_hash: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        validate_settings({
            "chunk_size": self.chunk_size,
            "contact_days_before": self.contact_days_before,
            "match_strategy": self.match_strategy,
            "zip_prefix_length": self.zip_prefix_length,
            "max_workers": self.max_workers,
            "max_reported_errors": self.max_reported_errors,
        })


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None) -> EngineSettings:
    """Load, validate, and return EngineSettings from a YAML file.

    A None path returns the defaults.

    Raises:
        SettingsValidationError: If a key is unknown or a value is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return EngineSettings()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")
    merged = {**DEFAULTS, **data}
    validate_settings(merged)
    return EngineSettings(
        **{k: merged[k] for k in KNOWN_KEYS},
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def _require_positive_int(data: dict[str, Any], key: str, minimum: int = 1) -> None:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise SettingsValidationError(f"{key} must be an integer, got {value!r}.")
    if value < minimum:
        raise SettingsValidationError(f"{key} must be >= {minimum}, got {value}.")


def validate_settings(data: dict[str, Any]) -> None:
    """Raise SettingsValidationError if data does not match the schema.

    Validates:
      - No unknown keys
      - chunk_size, max_workers, zip_prefix_length, max_reported_errors >= 1
      - contact_days_before >= 0
      - match_strategy is a known strategy name
    """
    unknown = set(data.keys()) - KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    for key in ("chunk_size", "max_workers", "zip_prefix_length", "max_reported_errors"):
        _require_positive_int(data, key)
    _require_positive_int(data, "contact_days_before", minimum=0)

    if data["match_strategy"] not in VALID_MATCH_STRATEGIES:
        raise SettingsValidationError(
            f"match_strategy must be one of {sorted(VALID_MATCH_STRATEGIES)}, "
            f"got {data['match_strategy']!r}."
        )
