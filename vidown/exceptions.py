"""
Defines custom exceptions used throughout the worker.

Every failure an acquisition or assembly step can raise has its own type and a
stable ``code`` that travels to the coordinator in ``error`` events. Whether a
failure is retried is decided by the queue manager, not here.
"""

from typing import Optional


class VidownError(Exception):
    """Base class for all worker failures."""
    code = 'internal_error'


class NetworkError(VidownError):
    """Connection failure or non-2xx HTTP status during any fetch."""
    code = 'network_error'

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ManifestParseError(VidownError):
    """A playlist or MPD document is syntactically malformed."""
    code = 'manifest_parse_error'


class ManifestEmpty(VidownError):
    """A manifest parsed correctly but contains no media segments."""
    code = 'manifest_empty'


class NoVideoTrack(VidownError):
    """A DASH manifest has no representation with a video codec."""
    code = 'no_video_track'


class ToolchainError(VidownError):
    """The external media toolchain exited with a non-zero status."""
    code = 'toolchain_error'

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class FilesystemError(VidownError):
    """Temp directory creation, file write or final rename failed."""
    code = 'filesystem_error'


class DownloadCancelledError(VidownError):
    """Custom exception for cancelled downloads."""
    code = 'cancelled'


class UnsupportedModeError(VidownError):
    """A job asked for a mode that has no acquisition strategy."""
    code = 'unsupported_mode'


class ProtocolError(VidownError):
    """A control frame could not be read or decoded."""
    code = 'protocol_error'


class MalformedFrameError(ProtocolError):
    """A frame was read completely but its payload is not a JSON object."""
    code = 'bad_frame'


class DuplicateJobError(VidownError):
    """An enqueue reused a job id the manager has already seen."""
    code = 'duplicate_id'


class EncryptedStreamError(VidownError):
    """A playlist is protected by an encryption method the worker cannot decrypt."""
    code = 'unsupported_encryption'
