"""
Defines the WorkerController, which connects the control channel to the queue manager.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError

from .config import Settings
from .dependencies import ToolchainLocator
from .downloads import QueueManager
from .exceptions import DuplicateJobError, MalformedFrameError, ProtocolError, VidownError
from .ffmpeg import Assembler, FFmpegToolchain
from .jobs import ConversionSpec
from .network import HttpFetcher
from .protocol import (
    CancelCommand, DownloadCommand, ErrorEvent, FFmpegInfo, HelloCommand, HelloEvent, JobsEvent, ListCommand,
    LogEvent, Message, PauseCommand, ProbeCommand, ProbeResult, ProbeResultEvent, ProtocolEndpoint,
    ResumeCommand, ShutdownCommand, UnknownCommand, parse_command,
)


def summarize_validation_error(error: ValidationError) -> str:
    """One line per failing field, e.g. ``url: Field required``."""
    parts = []
    for detail in error.errors():
        location = '.'.join(str(part) for part in detail.get('loc', ())) or 'message'
        parts.append(f"{location}: {detail.get('msg', 'invalid')}")
    return '; '.join(parts)


class WorkerController:
    """The central dispatcher for incoming commands and outgoing job events."""

    def __init__(self, config: Settings, endpoint: ProtocolEndpoint,
                 locator: Optional[ToolchainLocator] = None, manager: Optional[QueueManager] = None):
        """
        Initializes the WorkerController.

        Args:
            config: The loaded worker settings.
            endpoint: The framed control channel to the coordinator.
            locator: Finds ffmpeg/ffprobe; built from config when omitted.
            manager: The queue manager; built from config when omitted.
        """
        self.config = config
        self.endpoint = endpoint
        self.logger = logging.getLogger(__name__)
        self.background_tasks: Set[asyncio.Task] = set()

        self.locator = locator or ToolchainLocator(config.ffmpeg_path, config.ffprobe_path)
        self.toolchain = FFmpegToolchain()
        self.manager = manager or QueueManager(
            self._on_manager_event,
            max_concurrent=config.max_concurrent_downloads,
            max_retries=config.max_retries,
            download_dir=config.download_dir,
            fetcher=HttpFetcher(config.connect_timeout, config.read_timeout),
            assembler=Assembler(self.toolchain),
            progress_interval=config.progress_interval,
        )
        self.handler_map = {
            HelloCommand: self._handle_hello,
            ProbeCommand: self._handle_probe,
            DownloadCommand: self._handle_download,
            CancelCommand: self._handle_cancel,
            PauseCommand: self._handle_pause,
            ResumeCommand: self._handle_resume,
            ListCommand: self._handle_list,
            UnknownCommand: self._handle_unknown,
        }

    async def run_startup_checks(self):
        """Runs initial async checks after the event loop has started."""
        await self.locator.initialize()
        self.toolchain.set_paths(self.locator.ffmpeg_path, self.locator.ffprobe_path)
        await self.manager.initialize()

    async def run(self):
        """
        Serves commands until the coordinator closes the channel or asks for shutdown.

        A ``hello`` is sent unprompted once startup checks finish, so the
        coordinator learns the worker is ready without asking.
        """
        await self.run_startup_checks()
        await self._send_hello()
        try:
            while True:
                try:
                    message = await self.endpoint.receive()
                except MalformedFrameError as e:
                    self.logger.warning(f"Discarding malformed frame: {e}")
                    await self.send(LogEvent(level='error', msg='bad_frame', detail=str(e)))
                    continue
                except ProtocolError as e:
                    self.logger.error(f"Control channel broken: {e}")
                    break
                if message is None:
                    self.logger.info("Control channel closed by coordinator.")
                    break
                if not await self.dispatch(message):
                    self.logger.info("Shutdown command received.")
                    break
        finally:
            await self.shutdown()

    async def dispatch(self, message: Dict[str, Any]) -> bool:
        """Handles one decoded message; returns False when the worker should stop."""
        try:
            command = parse_command(message)
        except ValidationError as e:
            job_id = message.get('id')
            await self.send(ErrorEvent(
                code='bad_request',
                msg=summarize_validation_error(e),
                cmd=message.get('cmd'),
                job_id=job_id if isinstance(job_id, str) else None,
            ))
            return True

        if isinstance(command, ShutdownCommand):
            return False
        handler = self.handler_map.get(type(command))
        if handler:
            await handler(command)
        else:
            self.logger.warning(f"Unhandled command type: {type(command).__name__}")
        return True

    async def send(self, event: Message):
        try:
            await self.endpoint.send(event)
        except (OSError, ProtocolError) as e:
            self.logger.error(f"Could not send {event.__class__.__name__}: {e}")

    async def _on_manager_event(self, event: Message):
        """Relays job events from the queue manager to the coordinator."""
        await self.send(event)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self.background_tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def _handle_hello(self, _: HelloCommand):
        await self._send_hello()

    async def _send_hello(self):
        info = await self.locator.ffmpeg_info()
        await self.send(HelloEvent(ok=True, ffmpeg=FFmpegInfo(**info)))

    async def _handle_probe(self, command: ProbeCommand):
        task = asyncio.create_task(self._run_probe(command), name=f"probe-{command.url}")
        self.background_tasks.add(task)
        task.add_done_callback(self._handle_task_exception)

    async def _run_probe(self, command: ProbeCommand):
        try:
            report = await self.toolchain.probe(command.url, command.headers)
            result = ProbeResult.model_validate(report)
        except (VidownError, ValidationError) as e:
            self.logger.warning(f"Probe of {command.url} failed: {e}")
            await self.send(ErrorEvent(code='probe_failed', msg=str(e), url=command.url))
            return
        await self.send(ProbeResultEvent(url=command.url, result=result))

    async def _handle_download(self, command: DownloadCommand):
        conversion = ConversionSpec(**command.convert.model_dump()) if command.convert else None
        try:
            await self.manager.enqueue(
                mode=command.mode,
                url=command.url,
                out=command.out,
                headers=command.headers,
                job_id=command.job_id,
                expected_total_bytes=command.expected_total_bytes,
                conversion=conversion,
                subtitle_url=command.subtitles,
            )
        except DuplicateJobError as e:
            await self.send(ErrorEvent(job_id=command.job_id, code=e.code, msg=str(e)))

    async def _handle_cancel(self, command: CancelCommand):
        if await self.manager.cancel(command.job_id):
            return
        await self._reject(command.job_id)

    async def _handle_pause(self, command: PauseCommand):
        if await self.manager.pause(command.job_id):
            await self.send(LogEvent(level='info', msg='paused', job_id=command.job_id))
        else:
            await self._reject(command.job_id)

    async def _handle_resume(self, command: ResumeCommand):
        if await self.manager.resume(command.job_id):
            await self.send(LogEvent(level='info', msg='resumed', job_id=command.job_id))
        else:
            await self._reject(command.job_id)

    async def _reject(self, job_id: str):
        """Warns that a job-level command did not apply."""
        known = await self.manager.get_job(job_id) is not None
        await self.send(LogEvent(level='warn', msg='invalid_state' if known else 'unknown_job', job_id=job_id))

    async def _handle_list(self, _: ListCommand):
        await self.send(JobsEvent(jobs=await self.manager.list_jobs()))

    async def _handle_unknown(self, command: UnknownCommand):
        self.logger.warning(f"Unknown command: {command.cmd!r}")
        # A missing cmd is echoed as an empty string.
        cmd = '' if command.cmd is None else command.cmd
        await self.send(LogEvent(level='warn', msg='unknown_command', cmd=cmd))

    async def shutdown(self):
        """Cancels background work and stops the queue manager."""
        for task in list(self.background_tasks):
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)
        await self.manager.shutdown()
