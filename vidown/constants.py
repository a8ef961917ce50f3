"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, network defaults, and subprocess
behavior, adapting to whether the worker is running from source or as a frozen executable.
"""

import os
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'vidown').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.vidown'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Per-job scratch directories are created beside the output file so the final
# rename never crosses a filesystem boundary.
JOB_TEMP_PREFIX = '.vidown-tmp-'
PART_SUFFIX = '.part'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0


def default_download_dir() -> Path:
    """
    Returns the platform download directory.

    Linux honours XDG_DOWNLOAD_DIR; every platform otherwise falls back to ~/Downloads.
    """
    if sys.platform.startswith('linux'):
        xdg_download = os.environ.get('XDG_DOWNLOAD_DIR')
        if xdg_download:
            return Path(xdg_download)
    return Path.home() / 'Downloads'


# --- Constants ---
FFMPEG_COMMON_PATHS = [
    Path('/usr/local/bin/ffmpeg'),
    Path('/opt/homebrew/bin/ffmpeg'),
    Path('/usr/bin/ffmpeg'),
    Path('/opt/local/bin/ffmpeg'),
]
REQUEST_HEADERS = {
    'User-Agent': 'Vidown/1.0 (Native Companion)'
}
# Headers the HTTP client computes itself; captured browser values are dropped.
HOP_BY_HOP_HEADERS = {'host', 'content-length', 'connection', 'transfer-encoding'}
REQUEST_TIMEOUTS = (10, 60)  # (connect_timeout, read_timeout)
STREAM_CHUNK_SIZE = 64 * 1024

# --- Scheduling ---
DEFAULT_MAX_CONCURRENT = 2
DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30000

# --- Progress ---
PROGRESS_INTERVAL_SECONDS = 0.5
SPEED_EMA_ALPHA = 0.25

# --- Control protocol ---
MAX_FRAME_BYTES = 64 * 1024 * 1024
