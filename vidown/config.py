"""
Worker settings: a pydantic schema plus a small JSON-file persistence layer.

The coordinator never sends configuration over the control channel; everything
tunable lives in ``~/.vidown/config.json``.
"""

import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    DEFAULT_MAX_CONCURRENT, DEFAULT_MAX_RETRIES, PROGRESS_INTERVAL_SECONDS, REQUEST_TIMEOUTS, default_download_dir
)

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class Settings(BaseModel):
    """
    Tunables for scheduling, networking and the media toolchain.

    Attributes:
        max_concurrent_downloads: Jobs allowed to hold a slot at once.
        max_retries: Retry budget per job for network and toolchain failures.
        download_dir: Base directory for relative output targets.
        ffmpeg_path: Explicit ffmpeg executable; searched for when unset.
        ffprobe_path: Explicit ffprobe executable; searched for when unset.
        log_level: Minimum level for the log file and stderr.
        connect_timeout: Seconds allowed to establish a connection.
        read_timeout: Seconds allowed between two received chunks.
        progress_interval: Minimum seconds between progress events per job.
    """
    max_concurrent_downloads: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1, le=16)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=10)
    download_dir: Path = Field(default_factory=default_download_dir)
    ffmpeg_path: Optional[Path] = None
    ffprobe_path: Optional[Path] = None
    log_level: str = 'INFO'
    connect_timeout: float = Field(default=REQUEST_TIMEOUTS[0], gt=0)
    read_timeout: float = Field(default=REQUEST_TIMEOUTS[1], gt=0)
    progress_interval: float = Field(default=PROGRESS_INTERVAL_SECONDS, ge=0)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        upper_value = value.upper()
        if upper_value not in LOG_LEVELS:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {list(LOG_LEVELS)}.")
        return upper_value

    @field_validator('download_dir', mode='before')
    @classmethod
    def validate_download_dir(cls, value) -> Path:
        """Expands ``~``; an empty value falls back to the platform download directory."""
        if not value:
            return default_download_dir()
        return Path(value).expanduser()

    @field_validator('ffmpeg_path', 'ffprobe_path', mode='before')
    @classmethod
    def validate_tool_path(cls, value) -> Optional[Path]:
        if not value:
            return None
        return Path(value).expanduser()


class ConfigManager:
    """Reads and writes ``Settings`` as a JSON document."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Returns the stored settings, or defaults when there are none.

        A missing file is created with defaults. A file that cannot be read or
        fails validation is moved aside to a timestamped ``.bak`` and defaults
        are used for this run.
        """
        if not self.config_path.exists():
            self.logger.info(f"No config at {self.config_path}; writing defaults.")
            settings = Settings()
            self.save(settings)
            return settings

        try:
            raw: Dict[str, Any] = json.loads(self.config_path.read_text(encoding='utf-8'))
            settings = Settings.model_validate(raw)
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            self._back_up_invalid_file()
            return Settings()

        if missing := set(Settings.model_fields) - set(raw):
            self.logger.info(f"Config is missing {sorted(missing)}; saving with defaults filled in.")
            self.save(settings)
        return settings

    def _back_up_invalid_file(self):
        backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
        try:
            self.config_path.rename(backup_path)
            self.logger.info(f"Backed up invalid config to {backup_path}")
        except OSError as e:
            self.logger.error(f"Could not back up invalid config file: {e}")

    def save(self, settings: Settings):
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
