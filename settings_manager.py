"""
Page Gobbler - Settings Manager
Persists capture settings as JSON
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from capture_models import Settings
from utils.error_handler import SettingsValidationError

logger = logging.getLogger(__name__)


class SettingsManager:
    """
    Loads and saves capture settings
    Stored values are merged over the defaults, so new fields pick up defaults
    """

    def __init__(self, storage_dir: str = "config/settings"):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file = self.storage_dir / "settings.json"

        # In-memory cache
        self._settings: Optional[Settings] = None

        logger.info(f"[SettingsManager] Initialized with storage: {self.storage_dir}")

    def load_settings(self) -> Settings:
        """Get current settings (defaults when nothing valid is stored)"""
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    def _load_from_disk(self) -> Settings:
        if not self.settings_file.exists():
            return Settings()

        try:
            with open(self.settings_file, 'r') as f:
                data = json.load(f)
            return Settings(**{**Settings().model_dump(), **data})
        except (OSError, TypeError, ValueError, ValidationError) as e:
            logger.error(f"[SettingsManager] Failed to load settings, using defaults: {e}")
            return Settings()

    def save_settings(self, changes: Dict[str, Any]) -> Settings:
        """
        Merge changes into the current settings and persist them

        Args:
            changes: Partial settings; unknown keys are rejected

        Returns:
            The new Settings

        Raises:
            SettingsValidationError: Unknown field or value out of range
        """
        unknown = sorted(set(changes) - set(Settings.model_fields))
        if unknown:
            raise SettingsValidationError(f"Unknown setting(s): {', '.join(unknown)}", field=unknown[0])

        merged = {**self.load_settings().model_dump(), **changes}
        try:
            settings = Settings(**merged)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise SettingsValidationError(f"Invalid setting {field}: {first.get('msg')}", field=field) from e

        with open(self.settings_file, 'w') as f:
            json.dump(settings.model_dump(mode="json"), f, indent=2)

        self._settings = settings
        logger.info(f"[SettingsManager] Saved settings ({', '.join(sorted(changes)) or 'no changes'})")
        return settings

    def reset_settings(self) -> Settings:
        """Restore defaults and remove the stored file"""
        if self.settings_file.exists():
            self.settings_file.unlink()
        self._settings = Settings()
        logger.info("[SettingsManager] Settings reset to defaults")
        return self._settings
