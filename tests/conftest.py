import asyncio
import shutil
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from vidown.acquisition import AcquisitionContext, AcquisitionStrategy
from vidown.jobs import ConversionSpec
from vidown.progress import NullSink


class FakeFetcher:
    """In-memory stand-in for HttpFetcher. Values that are exceptions are raised."""

    def __init__(self, texts: Optional[Dict[str, Union[str, Exception]]] = None,
                 bodies: Optional[Dict[str, Union[bytes, Exception]]] = None):
        self.texts = texts or {}
        self.bodies = bodies or {}
        self.text_requests: List[str] = []
        self.file_requests: List[str] = []
        self.file_headers: List[Dict[str, str]] = []
        self.closed = False

    async def fetch_text(self, url, headers=None):
        self.text_requests.append(url)
        value = self.texts[url]
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_to_file(self, url, dest, headers=None, on_bytes=None, append=False, on_length=None, checkpoint=None):
        self.file_requests.append(url)
        self.file_headers.append(dict(headers or {}))
        body = self.bodies[url]
        if isinstance(body, Exception):
            raise body
        if headers and 'Range' in headers:
            first, last = headers['Range'].removeprefix('bytes=').split('-')
            body = body[int(first):int(last) + 1]
        if on_length is not None:
            await on_length(len(body))
        with open(dest, 'ab' if append else 'wb') as f_out:
            f_out.write(body)
        if on_bytes is not None:
            await on_bytes(len(body))
        if checkpoint is not None:
            await checkpoint()
        return len(body)

    async def close(self):
        self.closed = True


class FakeAssembler:
    """Records assembly calls and produces outputs by plain byte concatenation."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.concat_inputs: List[List[str]] = []
        self.stream_urls: List[str] = []

    async def concat(self, segments, output, conversion=None, on_progress=None):
        self.calls.append(('concat', output, conversion))
        self.concat_inputs.append([Path(p).name for p in segments])
        output.write_bytes(b''.join(Path(p).read_bytes() for p in segments))

    async def mux(self, video, audio, output, conversion=None, on_progress=None):
        self.calls.append(('mux', output, conversion))
        output.write_bytes(video.read_bytes() + audio.read_bytes())

    async def convert(self, source, output, conversion=None, on_progress=None):
        self.calls.append(('convert', output, conversion))
        shutil.copyfile(source, output)

    async def embed_subtitles(self, video, subtitles, output, conversion=None, on_progress=None):
        self.calls.append(('embed_subtitles', output, conversion))
        output.write_bytes(video.read_bytes() + subtitles.read_bytes())

    async def download_stream(self, url, output, headers=None, conversion=None, on_progress=None):
        self.calls.append(('download_stream', output, conversion))
        self.stream_urls.append(url)
        output.write_bytes(b'decrypted')

    @property
    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]


class RecordingSink:
    def __init__(self):
        self.reports: List[int] = []
        self.total: Optional[int] = None

    async def report(self, bytes_received: int) -> None:
        self.reports.append(bytes_received)

    async def set_total(self, total_bytes: Optional[int]) -> None:
        self.total = total_bytes


class EventRecorder:
    """Async event callback that keeps every message it receives."""

    def __init__(self):
        self.events: List[Any] = []

    async def __call__(self, event):
        self.events.append(event)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [event.to_message() for event in self.events]

    def of_type(self, kind: str, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m['type'] == kind and (job_id is None or m.get('id') == job_id)]

    def terminal(self, job_id: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages
                if m['type'] in ('done', 'error', 'canceled') and m.get('id') == job_id]


class GatedStrategy(AcquisitionStrategy):
    """Writes a payload, then blocks until the test opens the job's gate."""

    def __init__(self, payload: bytes = b'payload'):
        super().__init__()
        self.payload = payload
        self.gates: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self.started: List[str] = []
        self.active = 0
        self.peak = 0

    async def acquire(self, ctx: AcquisitionContext) -> None:
        self.started.append(ctx.job_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            ctx.part_path.write_bytes(self.payload)
            await ctx.sink.report(len(self.payload))
            await self.gates[ctx.job_id].wait()
            await ctx.checkpoint()
        finally:
            self.active -= 1


class ScriptedStrategy(AcquisitionStrategy):
    """Raises the queued exceptions in order, then succeeds."""

    def __init__(self, failures: List[Exception], payload: bytes = b'payload'):
        super().__init__()
        self.failures = list(failures)
        self.payload = payload
        self.attempts = 0

    async def acquire(self, ctx: AcquisitionContext) -> None:
        self.attempts += 1
        ctx.part_path.write_bytes(self.payload[:1])
        if self.failures:
            raise self.failures.pop(0)
        ctx.part_path.write_bytes(self.payload)
        await ctx.sink.report(len(self.payload))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    """Polls ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def fake_assembler():
    return FakeAssembler()


@pytest.fixture
def make_context(tmp_path):
    """Builds an AcquisitionContext that writes into tmp_path."""
    def factory(fetcher, assembler=None, url='https://cdn.example.com/master.m3u8',
                conversion: Optional[ConversionSpec] = None, sink=None, expected_total_bytes=None):
        return AcquisitionContext(
            job_id='job-1',
            url=url,
            part_path=tmp_path / 'out.mp4.part',
            fetcher=fetcher,
            assembler=assembler or FakeAssembler(),
            sink=sink or NullSink(),
            conversion=conversion,
            expected_total_bytes=expected_total_bytes,
        )
    return factory
