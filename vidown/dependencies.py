"""Discovers the ffmpeg and ffprobe executables and reports their versions."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .constants import APP_PATH, FFMPEG_COMMON_PATHS, SUBPROCESS_CREATION_FLAGS
from .ffmpeg import parse_version


class ToolchainLocator:
    """Finds the media toolchain, preferring explicit overrides and locally bundled copies."""

    def __init__(self, ffmpeg_override: Optional[Path] = None, ffprobe_override: Optional[Path] = None):
        self.logger = logging.getLogger(__name__)
        self.ffmpeg_override = ffmpeg_override
        self.ffprobe_override = ffprobe_override
        self.ffmpeg_path: Optional[Path] = None
        self.ffprobe_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to the executables to avoid blocking the event loop."""
        self.logger.info("Initializing toolchain paths...")
        self.ffmpeg_path = await asyncio.to_thread(self.find_ffmpeg)
        self.ffprobe_path = await asyncio.to_thread(self.find_ffprobe)
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")
        self.logger.info(f"FFprobe path: {self.ffprobe_path}")

    def find_ffmpeg(self) -> Optional[Path]:
        if self.ffmpeg_override and self.ffmpeg_override.is_file():
            return self.ffmpeg_override
        if self.ffmpeg_override:
            self.logger.warning(f"Configured ffmpeg path {self.ffmpeg_override} does not exist; searching instead.")
        return self._find_executable('ffmpeg', FFMPEG_COMMON_PATHS)

    def find_ffprobe(self) -> Optional[Path]:
        """Prefers the override, then the ffprobe installed next to the chosen ffmpeg."""
        if self.ffprobe_override and self.ffprobe_override.is_file():
            return self.ffprobe_override
        if self.ffmpeg_path is not None:
            sibling = self.ffmpeg_path.with_name(self.ffmpeg_path.name.replace('ffmpeg', 'ffprobe'))
            if sibling != self.ffmpeg_path and sibling.is_file():
                return sibling
        return self._find_executable('ffprobe', [p.with_name('ffprobe') for p in FFMPEG_COMMON_PATHS])

    def _find_executable(self, name: str, common_paths: Sequence[Path] = ()) -> Optional[Path]:
        """Finds an executable: locally bundled, then well-known install locations, then PATH."""
        local_path = APP_PATH / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.is_file():
            return local_path
        for candidate in common_paths:
            if candidate.is_file():
                return candidate
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> Optional[str]:
        """Runs ``-version``; returns e.g. ``ffmpeg version 6.0`` or None if it cannot be run."""
        if not executable_path:
            return None
        try:
            command: List[str] = [str(executable_path), '-version']
            kwargs: Dict[str, Any] = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            try:
                stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)
            except asyncio.TimeoutError:
                process.kill()
                self.logger.warning(f"Version check for {executable_path} timed out")
                return None

            if process.returncode != 0:
                return None
            return parse_version(stdout_bytes.decode('utf-8', 'replace'))
        except OSError as e:
            self.logger.warning(f"Cannot execute {executable_path}: {e}")
            return None

    async def ffmpeg_info(self) -> Dict[str, Any]:
        """The ``ffmpeg`` block of the hello reply; found means ``-version`` ran successfully."""
        version = await self.get_version(self.ffmpeg_path)
        return {'found': version is not None, 'version': version}
