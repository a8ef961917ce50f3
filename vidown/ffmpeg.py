"""Runs ffmpeg/ffprobe and builds the concat, mux, convert, subtitle and stream invocations."""
import asyncio
import os
import sys
import json
import signal
import logging
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .constants import PART_SUFFIX, SUBPROCESS_CREATION_FLAGS
from .exceptions import ToolchainError
from .jobs import COPY, ConversionSpec

# Machine-readable progress on stdout, errors only on stderr.
PROGRESS_ARGS = ['-y', '-v', 'error', '-nostats', '-progress', 'pipe:1']
PROBE_ARGS = ['-v', 'quiet', '-print_format', 'json', '-show_format', '-show_streams']

VIDEO_ENCODERS = {
    'h264': ['-c:v', 'libx264', '-crf', '23', '-preset', 'medium'],
    'hevc': ['-c:v', 'libx265', '-crf', '28', '-preset', 'medium'],
}
AUDIO_ENCODERS = {
    'aac': ['-c:a', 'aac', '-b:a', '128k'],
    'opus': ['-c:a', 'libopus', '-b:a', '128k'],
    'mp3': ['-c:a', 'libmp3lame', '-b:a', '192k'],
}
# Container name or file extension -> ffmpeg muxer. Outputs end in ".part", so
# the muxer is always passed explicitly.
MUXERS = {
    'mp4': 'mp4', 'm4v': 'mp4', 'mov': 'mov', 'mkv': 'matroska', 'webm': 'webm',
    'ts': 'mpegts', 'm4a': 'ipod', 'mp3': 'mp3', 'aac': 'adts', 'ogg': 'ogg', 'opus': 'opus',
}
FASTSTART_MUXERS = {'mp4', 'mov', 'ipod'}
SUBTITLE_CODECS = {'mp4': 'mov_text', 'mov': 'mov_text', 'ipod': 'mov_text', 'matroska': 'srt', 'webm': 'webvtt'}
STDERR_TAIL_LINES = 20
# Protocols ffmpeg may open while reading a remote playlist, including AES-128 key fetches.
STREAM_PROTOCOL_WHITELIST = 'file,crypto,httpproxy,http,https,tcp,tls'


@dataclass
class ToolchainProgress:
    """One ``-progress`` block from ffmpeg."""
    total_size: int = 0
    out_time_ms: int = 0
    frame: int = 0
    speed: float = 0.0
    finished: bool = False


class ProgressParser:
    """Accumulates ``key=value`` lines and yields an update at every ``progress=`` line."""

    def __init__(self):
        self.current = ToolchainProgress()

    def feed(self, line: str) -> Optional[ToolchainProgress]:
        key, sep, value = line.strip().partition('=')
        if not sep:
            return None
        key, value = key.strip(), value.strip()
        if key == 'progress':
            self.current.finished = value == 'end'
            return replace(self.current)
        try:
            if key == 'total_size': self.current.total_size = int(value)
            elif key == 'out_time_ms': self.current.out_time_ms = int(value)
            elif key == 'frame': self.current.frame = int(value)
            elif key == 'speed': self.current.speed = float(value.rstrip('x'))
        except ValueError:
            pass  # ffmpeg reports "N/A" before the first packet
        return None


def build_header_string(headers: Optional[Dict[str, str]]) -> str:
    """Formats request headers for ffmpeg's ``-headers`` option."""
    return ''.join(f"{name}: {value}\r\n" for name, value in (headers or {}).items())


def muxer_for(output: Path, conversion: Optional[ConversionSpec] = None) -> str:
    """Picks the ffmpeg muxer from the requested container, else from the output's real extension."""
    if conversion is not None and conversion.container not in (None, '', COPY):
        key = conversion.container.lower().lstrip('.')
    else:
        name = output.name
        if name.endswith(PART_SUFFIX):
            name = name[:-len(PART_SUFFIX)]
        key = Path(name).suffix.lower().lstrip('.')
    if not key:
        return 'mp4'
    return MUXERS.get(key, key)


def build_codec_args(conversion: Optional[ConversionSpec]) -> List[str]:
    """Maps a conversion request to codec arguments; anything unrecognised is stream-copied."""
    if conversion is None or not conversion.requires_transcode:
        return ['-c', 'copy']
    vcodec = (conversion.vcodec or COPY).lower()
    acodec = (conversion.acodec or COPY).lower()
    args = VIDEO_ENCODERS.get(vcodec, ['-c:v', 'copy'])
    args = args + AUDIO_ENCODERS.get(acodec, ['-c:a', 'copy'])
    return args


def build_container_args(output: Path, conversion: Optional[ConversionSpec] = None) -> List[str]:
    muxer = muxer_for(output, conversion)
    args = ['-movflags', '+faststart'] if muxer in FASTSTART_MUXERS else []
    return args + ['-f', muxer]


def parse_version(output: str) -> str:
    """Returns e.g. ``ffmpeg version 6.0`` from the first line of ``-version`` output."""
    lines = output.strip().splitlines()
    if not lines:
        return 'unknown'
    return ' '.join(lines[0].split()[:3]) or 'unknown'


ProgressCallback = Callable[[ToolchainProgress], Awaitable[Any]]


class FFmpegToolchain:
    """Invokes the ffmpeg and ffprobe executables."""
    TERMINATE_TIMEOUT = 10
    PROBE_TIMEOUT = 30

    def __init__(self, ffmpeg_path: Optional[Path] = None, ffprobe_path: Optional[Path] = None):
        self.logger = logging.getLogger(__name__)
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def set_paths(self, ffmpeg_path: Optional[Path], ffprobe_path: Optional[Path]):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    @staticmethod
    def _process_kwargs() -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['start_new_session'] = True
        return kwargs

    async def run(self, args: Sequence[str], on_progress: Optional[ProgressCallback] = None):
        """
        Runs ffmpeg to completion, streaming progress blocks to ``on_progress``.

        Cancelling the calling task interrupts ffmpeg's process group and then
        kills it if it does not exit in time.

        Raises:
            ToolchainError: If ffmpeg cannot be started or exits non-zero.
        """
        command = [str(self.ffmpeg_path or 'ffmpeg'), *PROGRESS_ARGS, *args]
        self.logger.debug(f"Running: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(*command, **self._process_kwargs())
        except FileNotFoundError as e:
            raise ToolchainError(f"ffmpeg executable not found: {command[0]}") from e
        except OSError as e:
            raise ToolchainError(f"Could not start ffmpeg: {e}") from e

        stderr_lines: List[str] = []
        stderr_task = asyncio.create_task(self._collect_stderr(process.stderr, stderr_lines))
        try:
            await self._read_progress(process.stdout, on_progress)
            return_code = await process.wait()
            await stderr_task
        except (asyncio.CancelledError, Exception):
            stderr_task.cancel()
            await self._terminate(process)
            raise

        if return_code != 0:
            tail = '\n'.join(stderr_lines[-STDERR_TAIL_LINES:])
            raise ToolchainError(f"ffmpeg exited with code {return_code}: {tail}".strip(), returncode=return_code, stderr=tail)

    async def _read_progress(self, stream: asyncio.StreamReader, on_progress: Optional[ProgressCallback]):
        parser = ProgressParser()
        while True:
            line_bytes = await stream.readline()
            if not line_bytes: break
            update = parser.feed(line_bytes.decode('utf-8', 'replace'))
            if update is not None and on_progress is not None:
                await on_progress(update)

    async def _collect_stderr(self, stream: asyncio.StreamReader, lines: List[str]):
        while True:
            line_bytes = await stream.readline()
            if not line_bytes: break
            if clean_line := line_bytes.decode('utf-8', 'replace').strip():
                lines.append(clean_line)
                del lines[:-STDERR_TAIL_LINES]

    async def _terminate(self, process: asyncio.subprocess.Process):
        if process.returncode is not None:
            return
        self.logger.info(f"Terminating ffmpeg (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=self.TERMINATE_TIMEOUT)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of ffmpeg failed: {e}. Forcing termination...")
            try: process.kill()
            except (ProcessLookupError, OSError): pass  # Already gone

    async def probe(self, url: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Runs ffprobe against a URL and returns its parsed JSON report.

        Raises:
            ToolchainError: If ffprobe is missing, times out, fails or prints invalid JSON.
        """
        command = [str(self.ffprobe_path or 'ffprobe'), *PROBE_ARGS]
        if headers:
            command.extend(['-headers', build_header_string(headers)])
        command.append(url)
        try:
            process = await asyncio.create_subprocess_exec(*command, **self._process_kwargs())
        except FileNotFoundError as e:
            raise ToolchainError(f"ffprobe executable not found: {command[0]}") from e
        except OSError as e:
            raise ToolchainError(f"Could not start ffprobe: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.PROBE_TIMEOUT)
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise ToolchainError(f"ffprobe timed out after {self.PROBE_TIMEOUT}s")
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        if process.returncode != 0:
            stderr = stderr_bytes.decode('utf-8', 'replace').strip()
            raise ToolchainError(f"ffprobe exited with code {process.returncode}", returncode=process.returncode, stderr=stderr)
        try:
            report = json.loads(stdout_bytes.decode('utf-8', 'replace'))
        except json.JSONDecodeError as e:
            raise ToolchainError(f"ffprobe printed invalid JSON: {e}") from e
        if not isinstance(report, dict):
            raise ToolchainError("ffprobe report is not a JSON object")
        return report


class Assembler:
    """Turns downloaded pieces into one output file through ffmpeg."""

    def __init__(self, toolchain: FFmpegToolchain):
        self.toolchain = toolchain
        self.logger = logging.getLogger(__name__)

    async def concat(self, segments: Sequence[Path], output: Path, conversion: Optional[ConversionSpec] = None,
                     on_progress: Optional[ProgressCallback] = None):
        """Joins segment files in order using the concat demuxer."""
        if not segments:
            raise ValueError("concat needs at least one segment")
        list_file = Path(segments[0]).parent / 'concat.txt'
        lines = [f"file '{self._quote(Path(p).resolve())}'\n" for p in segments]
        await asyncio.to_thread(list_file.write_text, ''.join(lines), 'utf-8')
        self.logger.info(f"Concatenating {len(segments)} segment(s) into {output.name}")
        await self.toolchain.run(
            ['-f', 'concat', '-safe', '0', '-i', str(list_file),
             *build_codec_args(conversion), *build_container_args(output, conversion), str(output)],
            on_progress,
        )

    async def mux(self, video: Path, audio: Path, output: Path, conversion: Optional[ConversionSpec] = None,
                  on_progress: Optional[ProgressCallback] = None):
        """Combines one video and one audio input into a single container."""
        self.logger.info(f"Muxing {video.name} + {audio.name} into {output.name}")
        await self.toolchain.run(
            ['-i', str(video), '-i', str(audio), '-map', '0:v:0', '-map', '1:a:0',
             *build_codec_args(conversion), *build_container_args(output, conversion), str(output)],
            on_progress,
        )

    async def convert(self, source: Path, output: Path, conversion: Optional[ConversionSpec] = None,
                      on_progress: Optional[ProgressCallback] = None):
        self.logger.info(f"Converting {source.name} into {output.name}")
        await self.toolchain.run(
            ['-i', str(source), *build_codec_args(conversion), *build_container_args(output, conversion), str(output)],
            on_progress,
        )

    async def embed_subtitles(self, video: Path, subtitles: Path, output: Path,
                              conversion: Optional[ConversionSpec] = None,
                              on_progress: Optional[ProgressCallback] = None):
        """Copies every stream of ``video`` and adds ``subtitles`` as a text track."""
        muxer = muxer_for(output, conversion)
        subtitle_codec = SUBTITLE_CODECS.get(muxer, 'mov_text')
        await self.toolchain.run(
            ['-i', str(video), '-i', str(subtitles), '-map', '0', '-map', '1',
             '-c', 'copy', '-c:s', subtitle_codec, *build_container_args(output, conversion), str(output)],
            on_progress,
        )

    async def download_stream(self, url: str, output: Path, headers: Optional[Dict[str, str]] = None,
                              conversion: Optional[ConversionSpec] = None,
                              on_progress: Optional[ProgressCallback] = None):
        """
        Lets ffmpeg read a remote playlist itself, fetching keys and decrypting segments.

        Used for AES-128 HLS, where the segments cannot be concatenated as downloaded.
        """
        args = ['-protocol_whitelist', STREAM_PROTOCOL_WHITELIST]
        if header_string := build_header_string(headers):
            args += ['-headers', header_string]
        self.logger.info(f"Reading {url} through ffmpeg into {output.name}")
        await self.toolchain.run(
            [*args, '-i', url, *build_codec_args(conversion), *build_container_args(output, conversion), str(output)],
            on_progress,
        )

    @staticmethod
    def _quote(path: Path) -> str:
        """Escapes single quotes for the concat list syntax."""
        return str(path).replace("'", "'\\''")
