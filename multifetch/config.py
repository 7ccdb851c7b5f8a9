"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
The engine never reads a global settings object: a `Settings` instance is handed
to the engine, the scheduler and every fetch strategy explicitly.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_DOWNLOAD_DIR


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    Durations are expressed in seconds.
    """
    # --- Output ---
    download_dir: Path = Field(default_factory=lambda: DEFAULT_DOWNLOAD_DIR)
    default_quality: str = 'best'
    output_format: str = 'mp4'
    save_metadata: bool = True
    cookie_file: Optional[Path] = None

    # --- Segmented downloader ---
    connections: int = Field(default=16, ge=1, le=16)
    segments: int = Field(default=16, ge=1, le=64)
    segment_size: str = '1M'

    # --- Queue ---
    max_concurrent_downloads: int = Field(default=3, ge=1, le=20)
    queue_enabled: bool = True
    retry_attempts: int = Field(default=2, ge=0, le=10)
    retry_delay: float = Field(default=5.0, ge=0)
    history_limit: int = Field(default=50, ge=1, le=1000)

    # --- BitTorrent ---
    torrent_engine: Literal['aria2c', 'embedded'] = 'aria2c'
    magnet_metadata_timeout: float = Field(default=180.0, gt=0)
    torrent_idle_timeout: float = Field(default=600.0, gt=0)

    # --- Timers ---
    stall_timeout: float = Field(default=600.0, gt=0)
    cancel_grace_period: float = Field(default=5.0, gt=0)
    broadcast_interval: float = Field(default=0.25, ge=0)
    progress_interval: float = Field(default=0.1, ge=0)
    save_debounce: float = Field(default=1.0, ge=0)

    # --- Tools & logging ---
    yt_dlp_path: Optional[Path] = None
    aria2c_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    log_level: str = 'INFO'

    @property
    def max_retries(self) -> int:
        return self.retry_attempts

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('segment_size')
    @classmethod
    def validate_segment_size(cls, value: str) -> str:
        """
        Validates an aria2c size expression such as '1M' or '512K'.

        Raises:
            ValueError: If the size is not a number with an optional K/M suffix.
        """
        value = value.strip().upper()
        if not re.fullmatch(r'\d+[KM]?', value):
            raise ValueError("Segment size must be a number optionally followed by K or M (e.g. '1M').")
        return value

    @field_validator('default_quality')
    @classmethod
    def validate_default_quality(cls, value: str) -> str:
        value = value.strip()
        return value or 'best'

    @field_validator('download_dir', mode='before')
    @classmethod
    def validate_download_dir(cls, value) -> Path:
        """Expands '~' so relative-to-home paths from the config file work."""
        if value in (None, ''):
            return DEFAULT_DOWNLOAD_DIR
        return Path(value).expanduser()


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
