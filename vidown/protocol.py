"""
Framed control protocol shared by the coordinator and the worker.

Every message is a little-endian ``uint32`` length followed by that many bytes
of UTF-8 JSON. Messages are modelled as one pydantic class per kind; incoming
dictionaries are dispatched on their ``cmd`` (commands) or ``type`` (events).
"""

import asyncio
import json
import struct
import sys
from typing import Any, BinaryIO, ClassVar, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import MAX_FRAME_BYTES
from .exceptions import MalformedFrameError, ProtocolError

HEADER = struct.Struct('<I')


# --- Framing ---

def encode_frame(message: Dict[str, Any]) -> bytes:
    """Serializes a message into a length-prefixed frame."""
    payload = json.dumps(message, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    if len(payload) > MAX_FRAME_BYTES:
        raise ProtocolError(f"Frame of {len(payload)} bytes exceeds the {MAX_FRAME_BYTES} byte limit")
    return HEADER.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(payload.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFrameError(f"Invalid frame payload: {e}")
    if not isinstance(message, dict):
        raise MalformedFrameError("Frame payload is not a JSON object")
    return message


def decode_frame(buffer: bytes) -> Tuple[Optional[Dict[str, Any]], bytes]:
    """
    Pulls one message off the front of a byte buffer.

    Returns:
        ``(message, rest)``; ``message`` is None when the buffer does not yet
        hold a complete frame, in which case ``rest`` is the untouched buffer.
    """
    if len(buffer) < HEADER.size:
        return None, buffer
    (length,) = HEADER.unpack_from(buffer)
    if length > MAX_FRAME_BYTES:
        raise ProtocolError(f"Announced frame length {length} exceeds the limit")
    end = HEADER.size + length
    if len(buffer) < end:
        return None, buffer
    return decode_payload(buffer[HEADER.size:end]), buffer[end:]


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """Reads one message from a stream; returns None on a clean end of stream."""
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise ProtocolError("Stream ended inside a frame header")
    (length,) = HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise ProtocolError(f"Announced frame length {length} exceeds the limit")
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        raise ProtocolError("Stream ended inside a frame payload")
    return decode_payload(payload)


class FrameWriter:
    """Writes frames to a binary stream, one whole frame at a time."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self._lock = asyncio.Lock()

    async def send(self, message: Union['Message', Dict[str, Any]]):
        if isinstance(message, Message):
            message = message.to_message()
        frame = encode_frame(message)
        async with self._lock:
            await asyncio.to_thread(self._write, frame)

    def _write(self, frame: bytes):
        self.stream.write(frame)
        self.stream.flush()


class ProtocolEndpoint:
    """One side of the control channel: a frame reader plus a serialized writer."""

    def __init__(self, reader: asyncio.StreamReader, writer: FrameWriter):
        self.reader = reader
        self.writer = writer

    async def receive(self) -> Optional[Dict[str, Any]]:
        return await read_frame(self.reader)

    async def send(self, message: Union['Message', Dict[str, Any]]):
        await self.writer.send(message)


async def open_stdio_endpoint(stdin: Optional[BinaryIO] = None, stdout: Optional[BinaryIO] = None) -> ProtocolEndpoint:
    """Attaches an endpoint to the process's standard streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_FRAME_BYTES)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin or sys.stdin.buffer)
    return ProtocolEndpoint(reader, FrameWriter(stdout or sys.stdout.buffer))


# --- Message variants ---

class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')
    omit_none: ClassVar[bool] = False

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=self.omit_none)


def _string_map(value: Any) -> Dict[str, str]:
    """Keeps only the string-valued entries of a header mapping."""
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items() if isinstance(v, str)}


class HelloCommand(Message):
    cmd: Literal['hello'] = 'hello'


class ProbeCommand(Message):
    cmd: Literal['probe'] = 'probe'
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator('headers', mode='before')
    @classmethod
    def validate_headers(cls, value: Any) -> Dict[str, str]:
        return _string_map(value)


class ConvertOptions(Message):
    container: str = 'copy'
    vcodec: str = 'copy'
    acodec: str = 'copy'


class DownloadCommand(Message):
    cmd: Literal['download'] = 'download'
    job_id: Optional[str] = Field(default=None, alias='id')
    mode: str
    url: str
    out: str = ''
    headers: Dict[str, str] = Field(default_factory=dict)
    expected_total_bytes: Optional[int] = Field(default=None, alias='expectedTotalBytes')
    convert: Optional[ConvertOptions] = None
    subtitles: Optional[str] = None

    @field_validator('headers', mode='before')
    @classmethod
    def validate_headers(cls, value: Any) -> Dict[str, str]:
        return _string_map(value)

    @field_validator('expected_total_bytes')
    @classmethod
    def validate_expected_total(cls, value: Optional[int]) -> Optional[int]:
        """A zero or negative size means the size is unknown."""
        if value is None or value <= 0:
            return None
        return value


class CancelCommand(Message):
    cmd: Literal['cancel'] = 'cancel'
    job_id: str = Field(alias='id')


class PauseCommand(Message):
    cmd: Literal['pause'] = 'pause'
    job_id: str = Field(alias='id')


class ResumeCommand(Message):
    cmd: Literal['resume'] = 'resume'
    job_id: str = Field(alias='id')


class ListCommand(Message):
    cmd: Literal['list'] = 'list'


class ShutdownCommand(Message):
    cmd: Literal['shutdown'] = 'shutdown'


class UnknownCommand(Message):
    """Stands in for any ``cmd`` the worker does not recognise."""
    cmd: Any = None


COMMAND_TYPES: Dict[str, Type[Message]] = {
    'hello': HelloCommand,
    'probe': ProbeCommand,
    'download': DownloadCommand,
    'cancel': CancelCommand,
    'pause': PauseCommand,
    'resume': ResumeCommand,
    'list': ListCommand,
    'shutdown': ShutdownCommand,
}


def parse_command(message: Dict[str, Any]) -> Message:
    """
    Decodes an incoming dictionary into its command variant.

    Raises:
        pydantic.ValidationError: If a known command is missing required fields.
    """
    kind = message.get('cmd')
    command_type = COMMAND_TYPES.get(kind) if isinstance(kind, str) else None
    if command_type is None:
        return UnknownCommand(cmd=kind)
    return command_type.model_validate(message)


class FFmpegInfo(Message):
    found: bool
    version: Optional[str] = None


class HelloEvent(Message):
    type: Literal['hello'] = 'hello'
    ok: bool = True
    ffmpeg: FFmpegInfo


class ProbeFormat(Message):
    duration: str = ''
    size: str = ''
    bit_rate: str = ''


class ProbeStream(Message):
    codec_type: str = ''
    codec_name: str = ''
    width: Optional[int] = None
    height: Optional[int] = None


class ProbeResult(Message):
    format: ProbeFormat = Field(default_factory=ProbeFormat)
    streams: List[ProbeStream] = Field(default_factory=list)


class ProbeResultEvent(Message):
    type: Literal['probe-result'] = 'probe-result'
    url: str
    result: ProbeResult


class JobStartedEvent(Message):
    type: Literal['job-started'] = 'job-started'
    job_id: str = Field(alias='id')
    out: str


class ProgressEvent(Message):
    type: Literal['progress'] = 'progress'
    job_id: str = Field(alias='id')
    bytes_received: int = Field(alias='bytesReceived')
    total_bytes: Optional[int] = Field(default=None, alias='totalBytes')
    speed_bps: int = Field(default=0, alias='speedBps')
    eta_sec: Optional[int] = Field(default=None, alias='etaSec')
    percent: Optional[int] = None


class DoneEvent(Message):
    type: Literal['done'] = 'done'
    job_id: str = Field(alias='id')
    final: str
    bytes_written: int = Field(alias='bytesWritten')


class ErrorEvent(Message):
    omit_none: ClassVar[bool] = True

    type: Literal['error'] = 'error'
    job_id: Optional[str] = Field(default=None, alias='id')
    code: str
    msg: str
    url: Optional[str] = None
    cmd: Optional[str] = None


class CanceledEvent(Message):
    type: Literal['canceled'] = 'canceled'
    job_id: str = Field(alias='id')


class LogEvent(Message):
    model_config = ConfigDict(populate_by_name=True, extra='allow')
    omit_none: ClassVar[bool] = True

    type: Literal['log'] = 'log'
    level: str
    msg: str
    job_id: Optional[str] = Field(default=None, alias='id')
    cmd: Any = None


class JobsEvent(Message):
    type: Literal['jobs'] = 'jobs'
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


EVENT_TYPES: Dict[str, Type[Message]] = {
    'hello': HelloEvent,
    'probe-result': ProbeResultEvent,
    'job-started': JobStartedEvent,
    'progress': ProgressEvent,
    'done': DoneEvent,
    'error': ErrorEvent,
    'canceled': CanceledEvent,
    'log': LogEvent,
    'jobs': JobsEvent,
}


def parse_event(message: Dict[str, Any]) -> Message:
    """
    Decodes an outgoing worker message on the coordinator side.

    Raises:
        ProtocolError: If the ``type`` is not a known event kind.
        pydantic.ValidationError: If a known event is missing required fields.
    """
    kind = message.get('type')
    event_type = EVENT_TYPES.get(kind) if isinstance(kind, str) else None
    if event_type is None:
        raise ProtocolError(f"Unknown event type: {kind!r}")
    return event_type.model_validate(message)
