"""
Scribey Companion - Configuration

Two layers:

- ``CompanionSettings``: process settings from environment variables
  (``SCRIBEY_*``) or a ``.env`` file, with sensible defaults.
- ``ConfigManager``: the user's persisted state (WoW path, server URL,
  auto-upload flag, device identity, per-character sync bookkeeping) in a
  JSON file validated by pydantic models.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .paths import DEFAULT_ADDON_FILE, DEFAULT_FLAVOR, validate_wow_path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".scribey_companion"


class CompanionSettings(BaseSettings):
    """Process-level settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SCRIBEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Scribey Companion"
    app_version: str = "1.0.4"
    server_url: str = "https://scribey.app"
    config_path: Path = Field(default=DEFAULT_CONFIG_DIR / "config.json")
    queue_db_path: Optional[Path] = Field(default=DEFAULT_CONFIG_DIR / "upload_queue.db")

    # SavedVariables
    addon_file: str = DEFAULT_ADDON_FILE
    global_name: str = "ScribeyDB"
    game_flavor: str = DEFAULT_FLAVOR

    # Watching
    use_polling: bool = True
    poll_interval: float = Field(default=1.0, gt=0)
    upload_cooldown_seconds: float = Field(default=30.0, ge=0)

    # Delivery
    http_timeout: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=5, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    backoff_step_seconds: float = Field(default=5.0, ge=0)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    max_item_failures: int = Field(default=5, ge=1)
    redrain_delay_seconds: float = Field(default=1.0, ge=0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[Path] = None


@lru_cache
def get_settings() -> CompanionSettings:
    """Get cached settings instance."""
    return CompanionSettings()


# =============================================================================
# Persisted Config Models
# =============================================================================


class CharacterConfig(BaseModel):
    name: str
    realm: str
    enabled: bool = True
    last_sync: Optional[int] = None


class AppSettings(BaseModel):
    minimize_to_tray: bool = False
    start_with_windows: bool = False
    auto_start_watching: bool = True
    log_level: Literal["error", "warn", "info", "debug"] = "info"
    retry_attempts: int = 3
    retry_delay: int = 5000


class StoredConfig(BaseModel):
    wow_path: str = ""
    server_url: str = "https://scribey.app"
    auto_upload: bool = True
    upload_interval: int = Field(default=30000, ge=5000)
    characters: list[CharacterConfig] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)
    device_id: Optional[str] = None


# =============================================================================
# Config Provider
# =============================================================================


class ConfigProvider(ABC):
    """What the pipeline needs from the application's settings store."""

    @abstractmethod
    def get_wow_path(self) -> str: ...

    @abstractmethod
    def set_wow_path(self, wow_path: str) -> None: ...

    @abstractmethod
    def get_server_url(self) -> str: ...

    @abstractmethod
    def set_server_url(self, url: str) -> None: ...

    @abstractmethod
    def is_auto_upload_enabled(self) -> bool: ...

    @abstractmethod
    def get_device_id(self) -> str: ...

    @abstractmethod
    def update_character_sync(self, name: str, realm: str, timestamp: int) -> None: ...

    def validate_wow_path(self, wow_path: str) -> bool:
        return validate_wow_path(wow_path)


class ConfigManager(ConfigProvider):
    """JSON-file backed config provider."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        settings: Optional[CompanionSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.config_path = Path(config_path or self.settings.config_path)
        self._config = self._load_config()
        self._device_id = self._init_device_id()

    def _defaults(self) -> StoredConfig:
        return StoredConfig(server_url=self.settings.server_url)

    def _load_config(self) -> StoredConfig:
        """Load configuration from file or create defaults."""
        if not self.config_path.exists():
            config = self._defaults()
            self._save_config(config)
            return config

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = StoredConfig.model_validate(json.load(f))
            logger.info(f"Loaded config from {self.config_path}")
            return config
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
            return self._defaults()

    def _save_config(self, config: Optional[StoredConfig] = None) -> None:
        """Save configuration to file."""
        config = config or self._config
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                f.write(config.model_dump_json(indent=2))
            logger.debug(f"Saved config to {self.config_path}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def _init_device_id(self) -> str:
        device_id = self._config.device_id
        if not device_id:
            device_id = str(uuid.uuid4())
            self._config.device_id = device_id
            self._save_config()
            logger.info(f"Generated device id {device_id}")
        return device_id

    # === Whole-config access ===

    def get_config(self) -> dict[str, Any]:
        return self._config.model_dump()

    def set_config(self, values: dict[str, Any]) -> None:
        """Merge ``values`` into the stored config. Device identity is fixed."""
        merged = {**self._config.model_dump(), **values, "device_id": self._device_id}
        self._config = StoredConfig.model_validate(merged)
        self._save_config()

    def reset(self) -> None:
        self._config = self._defaults()
        self._config.device_id = self._device_id
        self._save_config()

    # === ConfigProvider ===

    def get_wow_path(self) -> str:
        return self._config.wow_path

    def set_wow_path(self, wow_path: str) -> None:
        self._config.wow_path = str(wow_path)
        self._save_config()

    def get_server_url(self) -> str:
        return self._config.server_url.rstrip("/")

    def set_server_url(self, url: str) -> None:
        self._config.server_url = url
        self._save_config()

    def is_auto_upload_enabled(self) -> bool:
        return self._config.auto_upload

    def set_auto_upload_enabled(self, enabled: bool) -> None:
        self._config.auto_upload = bool(enabled)
        self._save_config()

    def get_device_id(self) -> str:
        return self._device_id

    def update_character_sync(self, name: str, realm: str, timestamp: int) -> None:
        """Record a successful upload for a tracked character."""
        for character in self._config.characters:
            if character.name == name and character.realm == realm:
                character.last_sync = timestamp
                self._save_config()
                return
        logger.debug(f"Sync for untracked character {name}-{realm} not recorded")

    # === Characters ===

    def get_characters(self) -> list[CharacterConfig]:
        return [c.model_copy() for c in self._config.characters]

    def add_character(self, character: CharacterConfig) -> None:
        characters = self._config.characters
        for i, existing in enumerate(characters):
            if existing.name == character.name and existing.realm == character.realm:
                characters[i] = character
                break
        else:
            characters.append(character)
        self._save_config()

    def remove_character(self, name: str, realm: str) -> None:
        self._config.characters = [
            c for c in self._config.characters
            if not (c.name == name and c.realm == realm)
        ]
        self._save_config()

    # === App settings ===

    def get_settings(self) -> AppSettings:
        return self._config.settings.model_copy()

    def update_settings(self, values: dict[str, Any]) -> None:
        merged = {**self._config.settings.model_dump(), **values}
        self._config.settings = AppSettings.model_validate(merged)
        self._save_config()

    def get_upload_interval(self) -> int:
        return self._config.upload_interval

    def get_addon_saved_variables_pattern(self) -> Path:
        """Glob pattern of the account-wide SavedVariables files."""
        wow_path = self.get_wow_path()
        if not wow_path:
            raise ValueError("WoW path not configured")
        return (
            Path(wow_path)
            / self.settings.game_flavor
            / "WTF"
            / "Account"
            / "*"
            / "SavedVariables"
            / self.settings.addon_file
        )
