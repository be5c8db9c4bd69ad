"""Tests for settings_manager.py."""

import json

import pytest

from capture_models import CompressionStrategy, Settings, SnapshotFormat
from settings_manager import SettingsManager
from utils.error_handler import SettingsValidationError


@pytest.fixture
def manager(tmp_path):
    return SettingsManager(storage_dir=str(tmp_path / "settings"))


class TestSettingsManager:
    """Tests for loading, saving and validating settings."""

    def test_defaults_when_nothing_stored(self, manager):
        settings = manager.load_settings()

        assert settings == Settings()
        assert settings.base_quality == 0.92
        assert settings.max_section_bytes == 3 * 1024 * 1024
        assert settings.section_max_height_px == 4096
        assert settings.compression_strategy == CompressionStrategy.AUTO

    def test_partial_update_is_merged_and_persisted(self, manager, tmp_path):
        saved = manager.save_settings({"compression_strategy": "lossless", "target_format": "jpeg"})

        assert saved.compression_strategy == CompressionStrategy.LOSSLESS
        assert saved.target_format == SnapshotFormat.JPEG
        assert saved.section_max_height_px == 4096

        reloaded = SettingsManager(storage_dir=str(tmp_path / "settings")).load_settings()
        assert reloaded == saved

    def test_out_of_range_value_rejected(self, manager):
        with pytest.raises(SettingsValidationError) as exc_info:
            manager.save_settings({"base_quality": 1.5})

        assert exc_info.value.details["field"] == "base_quality"
        assert manager.load_settings().base_quality == 0.92

    def test_unknown_field_rejected(self, manager):
        with pytest.raises(SettingsValidationError, match="Unknown setting"):
            manager.save_settings({"colour": "blue"})

    def test_corrupt_file_falls_back_to_defaults(self, manager):
        manager.settings_file.write_text("{not json")

        assert SettingsManager(storage_dir=str(manager.storage_dir)).load_settings() == Settings()

    def test_stored_file_missing_new_fields(self, manager):
        manager.settings_file.write_text(json.dumps({"split_enabled": False}))

        settings = SettingsManager(storage_dir=str(manager.storage_dir)).load_settings()

        assert settings.split_enabled is False
        assert settings.settle_delay_ms == 350

    def test_reset(self, manager):
        manager.save_settings({"split_enabled": False})

        settings = manager.reset_settings()

        assert settings.split_enabled is True
        assert not manager.settings_file.exists()

    def test_settings_are_frozen(self, manager):
        settings = manager.load_settings()

        with pytest.raises(Exception):
            settings.base_quality = 0.5

    @pytest.mark.parametrize("stored", ["[]", "\"lossless\"", "42"])
    def test_non_object_file_falls_back_to_defaults(self, manager, stored):
        """Valid JSON that is not an object is ignored like a corrupt file."""
        manager.settings_file.write_text(stored)

        assert SettingsManager(storage_dir=str(manager.storage_dir)).load_settings() == Settings()
