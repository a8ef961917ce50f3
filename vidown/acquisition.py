"""
Acquisition strategies: how a job's bytes get from the network into its ``.part`` file.

Each mode (direct, HLS, DASH) is one strategy. A strategy only acquires and
assembles; it never retries and never decides whether a failure is retryable.
"""
import asyncio
import os
import logging
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, Optional

from .constants import JOB_TEMP_PREFIX
from .exceptions import FilesystemError
from .ffmpeg import Assembler, ToolchainProgress
from .jobs import ConversionSpec, needs_conversion
from .network import HttpFetcher
from .progress import ProgressSink


async def _no_checkpoint():
    return None


@dataclass
class AcquisitionContext:
    """Everything a strategy needs to run one attempt of one job."""
    job_id: str
    url: str
    part_path: Path
    fetcher: HttpFetcher
    assembler: Assembler
    sink: ProgressSink
    headers: Dict[str, str] = field(default_factory=dict)
    conversion: Optional[ConversionSpec] = None
    expected_total_bytes: Optional[int] = None
    checkpoint: Callable[[], Awaitable[None]] = _no_checkpoint

    @contextmanager
    def temp_dir(self, label: str) -> Iterator[Path]:
        """A scratch directory beside the output; removed on exit, success or not."""
        try:
            tmp = tempfile.TemporaryDirectory(prefix=f"{JOB_TEMP_PREFIX}{label}-", dir=self.part_path.parent,
                                              ignore_cleanup_errors=True)
        except OSError as e:
            raise FilesystemError(f"Could not create temp directory in {self.part_path.parent}: {e}") from e
        with tmp as path:
            yield Path(path)

    async def report_toolchain_progress(self, update: ToolchainProgress):
        """Forwards ffmpeg's output size as byte progress."""
        if update.total_size > 0:
            await self.sink.report(update.total_size)


async def replace_file(source: Path, target: Path):
    """Moves a finished file into place."""
    try:
        await asyncio.to_thread(os.replace, source, target)
    except OSError as e:
        raise FilesystemError(f"Could not move {source.name} to {target}: {e}") from e


class AcquisitionStrategy(ABC):
    """Acquires one job's media into ``ctx.part_path``."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__module__)

    @abstractmethod
    async def acquire(self, ctx: AcquisitionContext) -> None:
        ...


class DirectStrategy(AcquisitionStrategy):
    """A single progressive file fetched with one streaming GET."""

    async def acquire(self, ctx: AcquisitionContext) -> None:
        async def on_length(length: Optional[int]):
            if ctx.expected_total_bytes is None and length:
                await ctx.sink.set_total(length)

        if not needs_conversion(ctx.conversion):
            self.logger.info(f"[{ctx.job_id}] Streaming {ctx.url} to {ctx.part_path.name}")
            await ctx.fetcher.fetch_to_file(ctx.url, ctx.part_path, ctx.headers, on_bytes=ctx.sink.report,
                                            on_length=on_length, checkpoint=ctx.checkpoint)
            return

        with ctx.temp_dir('direct') as tmp:
            source = tmp / 'source'
            self.logger.info(f"[{ctx.job_id}] Streaming {ctx.url} for conversion")
            await ctx.fetcher.fetch_to_file(ctx.url, source, ctx.headers, on_bytes=ctx.sink.report,
                                            on_length=on_length, checkpoint=ctx.checkpoint)
            await ctx.assembler.convert(source, ctx.part_path, ctx.conversion, on_progress=ctx.report_toolchain_progress)
