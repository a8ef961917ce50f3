"""
Defines the data classes for a download job.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional

from .constants import DEFAULT_MAX_RETRIES, PART_SUFFIX
from .exceptions import UnsupportedModeError


class JobState(str, Enum):
    QUEUED = 'queued'
    ACTIVE = 'active'
    PAUSED = 'paused'
    RETRYING = 'retrying'
    COMPLETE = 'complete'
    ERROR = 'error'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETE, JobState.ERROR, JobState.CANCELLED})


class JobMode(str, Enum):
    DIRECT = 'direct'
    HLS = 'hls'
    DASH = 'dash'

    @classmethod
    def parse(cls, value: str) -> 'JobMode':
        """
        Maps a requested mode string to a known mode.

        Raises:
            UnsupportedModeError: If no acquisition strategy exists for the mode.
        """
        normalized = (value or '').strip().lower()
        if normalized == 'http':
            return cls.DIRECT
        try:
            return cls(normalized)
        except ValueError:
            raise UnsupportedModeError(f"Unsupported mode: {value!r}")


COPY = 'copy'


@dataclass(frozen=True)
class ConversionSpec:
    """Target container and codecs; ``copy`` in every slot means no transcode."""
    container: str = COPY
    vcodec: str = COPY
    acodec: str = COPY

    @property
    def requires_transcode(self) -> bool:
        return any(value not in (None, '', COPY) for value in (self.container, self.vcodec, self.acodec))


def needs_conversion(spec: Optional[ConversionSpec]) -> bool:
    return spec is not None and spec.requires_transcode


@dataclass
class DownloadJob:
    """
    Represents a single download task.

    Attributes:
        job_id: A unique identifier for the job, stable for its whole lifetime.
        mode: The mode string the coordinator asked for (direct, hls, dash).
        source_url: The manifest or file URL.
        output_target: The final destination path.
        request_headers: Headers to send with every request (cookies, auth, referer).
        expected_total_bytes: The known size, if any.
        conversion: Optional transcode target.
        subtitle_url: Optional subtitle track to embed after acquisition.
        state: The current lifecycle state.
    """
    job_id: str
    mode: str
    source_url: str
    output_target: Path
    request_headers: Dict[str, str] = field(default_factory=dict)
    expected_total_bytes: Optional[int] = None
    conversion: Optional[ConversionSpec] = None
    subtitle_url: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    state: JobState = JobState.QUEUED
    bytes_received: int = 0
    speed_ema: float = 0.0
    eta_seconds: Optional[int] = None
    percent: Optional[int] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def part_path(self) -> Path:
        return self.output_target.with_name(self.output_target.name + PART_SUFFIX)

    def reset_progress(self):
        """Clears the rate figures before a new attempt. Byte counts never move backwards."""
        self.speed_ema = 0.0
        self.eta_seconds = None

    def snapshot(self) -> Dict[str, Any]:
        """Returns the listing view used by ``listJobs``."""
        return {
            'id': self.job_id,
            'state': self.state.value,
            'mode': self.mode,
            'filename': self.output_target.name,
            'bytesReceived': self.bytes_received,
            'totalBytes': self.expected_total_bytes,
            'percent': self.percent,
            'speedBps': int(self.speed_ema),
            'etaSec': self.eta_seconds,
            'retryCount': self.retry_count,
            'error': self.last_error,
        }
