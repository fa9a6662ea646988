"""Unit tests for agency_etl.config."""

from pathlib import Path

import pytest

from agency_etl.config import DEFAULTS, EngineSettings, SettingsValidationError, load_settings

PROJECT_ROOT = Path(__file__).parent.parent.parent


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "engine.yml"
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# load_settings
# ---------------------------------------------------------------------------

class TestLoadSettings:
    def test_none_path_gives_defaults(self):
        settings = load_settings(None)
        assert settings == EngineSettings()
        assert settings.chunk_size == 50
        assert settings.match_strategy == "name_zip_prefix"
        assert settings.yaml_hash is None

    def test_shipped_config_matches_defaults(self):
        settings = load_settings(PROJECT_ROOT / "config" / "engine.yml")
        for key, value in DEFAULTS.items():
            assert getattr(settings, key) == value

    def test_partial_file_fills_defaults(self, tmp_path):
        settings = load_settings(_write(tmp_path, "chunk_size: 10\n"))
        assert settings.chunk_size == 10
        assert settings.contact_days_before == 45

    def test_yaml_hash_recorded(self, tmp_path):
        settings = load_settings(_write(tmp_path, "chunk_size: 10\n"))
        assert settings.yaml_hash is not None
        assert len(settings.yaml_hash) == 64

    def test_empty_file_gives_defaults(self, tmp_path):
        assert load_settings(_write(tmp_path, "")) == EngineSettings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yml")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_unknown_key(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="Unknown settings keys"):
            load_settings(_write(tmp_path, "chunk_sise: 10\n"))

    def test_root_must_be_mapping(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="mapping"):
            load_settings(_write(tmp_path, "- chunk_size\n"))

    def test_zero_chunk_size(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="chunk_size"):
            load_settings(_write(tmp_path, "chunk_size: 0\n"))

    def test_bool_is_not_an_int(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="integer"):
            load_settings(_write(tmp_path, "max_workers: true\n"))

    def test_string_chunk_size(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="integer"):
            load_settings(_write(tmp_path, "chunk_size: fifty\n"))

    def test_unknown_strategy(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="match_strategy"):
            load_settings(_write(tmp_path, "match_strategy: fuzzy\n"))

    def test_contact_days_before_may_be_zero(self, tmp_path):
        assert load_settings(_write(tmp_path, "contact_days_before: 0\n")).contact_days_before == 0

    def test_negative_contact_days_before(self, tmp_path):
        with pytest.raises(SettingsValidationError, match="contact_days_before"):
            load_settings(_write(tmp_path, "contact_days_before: -1\n"))

    def test_dataclass_validates_directly(self):
        with pytest.raises(SettingsValidationError):
            EngineSettings(chunk_size=0)

    def test_settings_error_is_value_error(self):
        assert issubclass(SettingsValidationError, ValueError)
