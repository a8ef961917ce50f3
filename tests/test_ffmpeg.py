import sys
import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from conftest import wait_until
from vidown.exceptions import ToolchainError
from vidown.ffmpeg import (
    PROGRESS_ARGS, STREAM_PROTOCOL_WHITELIST, Assembler, FFmpegToolchain, ProgressParser, build_codec_args,
    build_container_args, build_header_string, muxer_for, parse_version,
)
from vidown.jobs import ConversionSpec

posix_only = pytest.mark.skipif(sys.platform == 'win32', reason="uses a shell script as a fake ffmpeg")


def test_progress_parser_emits_block_updates():
    """Test that key=value lines accumulate until a progress line."""
    parser = ProgressParser()
    lines = ['frame=10', 'total_size=N/A', 'out_time_ms=1000000', 'speed=1.5x', 'bitrate=N/A']

    assert [parser.feed(line) for line in lines] == [None] * len(lines)
    update = parser.feed('progress=continue')
    assert (update.frame, update.total_size, update.out_time_ms, update.speed, update.finished) == (10, 0, 1000000, 1.5, False)

    parser.feed('total_size=4096')
    final = parser.feed('progress=end')
    assert final.total_size == 4096
    assert final.finished
    assert update.total_size == 0


def test_progress_parser_ignores_noise():
    """Test that lines without '=' are skipped."""
    assert ProgressParser().feed('garbage') is None


def test_codec_args_for_stream_copy():
    """Test that no conversion, or an all-copy conversion, copies streams."""
    assert build_codec_args(None) == ['-c', 'copy']
    assert build_codec_args(ConversionSpec()) == ['-c', 'copy']


def test_codec_args_for_transcode():
    """Test the encoder mapping."""
    assert build_codec_args(ConversionSpec(vcodec='h264', acodec='aac')) == [
        '-c:v', 'libx264', '-crf', '23', '-preset', 'medium', '-c:a', 'aac', '-b:a', '128k']
    assert build_codec_args(ConversionSpec(vcodec='hevc', acodec='opus')) == [
        '-c:v', 'libx265', '-crf', '28', '-preset', 'medium', '-c:a', 'libopus', '-b:a', '128k']
    assert build_codec_args(ConversionSpec(acodec='mp3')) == ['-c:v', 'copy', '-c:a', 'libmp3lame', '-b:a', '192k']
    assert build_codec_args(ConversionSpec(container='mkv', vcodec='theora')) == ['-c:v', 'copy', '-c:a', 'copy']


def test_muxer_ignores_part_suffix():
    """Test that the muxer comes from the real extension or the requested container."""
    assert muxer_for(Path('clip.mkv.part')) == 'matroska'
    assert muxer_for(Path('clip.mp4.part'), ConversionSpec(container='webm')) == 'webm'
    assert muxer_for(Path('clip.part')) == 'mp4'
    assert muxer_for(Path('clip.flv.part')) == 'flv'


def test_container_args_add_faststart_for_mp4():
    """Test that MP4-family outputs get +faststart."""
    assert build_container_args(Path('a.mp4.part')) == ['-movflags', '+faststart', '-f', 'mp4']
    assert build_container_args(Path('a.mkv.part')) == ['-f', 'matroska']


def test_parse_version():
    """Test extracting the version from -version output."""
    assert parse_version('ffmpeg version 6.0 Copyright (c) 2000-2023\nbuilt with gcc\n') == 'ffmpeg version 6.0'
    assert parse_version('') == 'unknown'


def test_build_header_string():
    """Test the CRLF-terminated header format."""
    assert build_header_string({'Cookie': 'a=1', 'Referer': 'https://x/'}) == 'Cookie: a=1\r\nReferer: https://x/\r\n'
    assert build_header_string(None) == ''


@pytest.mark.asyncio
async def test_concat_writes_list_file(tmp_path):
    """Test the concat demuxer invocation."""
    segments = [tmp_path / 'segment-00000.ts', tmp_path / "it's-00001.ts"]
    for segment in segments:
        segment.write_bytes(b'x')
    toolchain = AsyncMock()
    output = tmp_path / 'out.mp4.part'

    await Assembler(toolchain).concat(segments, output)

    args = toolchain.run.await_args.args[0]
    assert args[:6] == ['-f', 'concat', '-safe', '0', '-i', str(tmp_path / 'concat.txt')]
    assert args[-5:] == ['-movflags', '+faststart', '-f', 'mp4', str(output)]
    listing = (tmp_path / 'concat.txt').read_text().splitlines()
    assert listing[0] == f"file '{segments[0].resolve()}'"
    assert "it'\\''s-00001.ts'" in listing[1]


@pytest.mark.asyncio
async def test_mux_maps_video_and_audio(tmp_path):
    """Test the mux invocation with a transcode request."""
    toolchain = AsyncMock()
    output = tmp_path / 'out.mkv.part'

    await Assembler(toolchain).mux(tmp_path / 'v.mp4', tmp_path / 'a.mp4', output, ConversionSpec(acodec='aac'))

    args = toolchain.run.await_args.args[0]
    assert args[:8] == ['-i', str(tmp_path / 'v.mp4'), '-i', str(tmp_path / 'a.mp4'), '-map', '0:v:0', '-map', '1:a:0']
    assert args[-3:] == ['-f', 'matroska', str(output)]
    assert '-c:a' in args and 'aac' in args


@pytest.mark.asyncio
async def test_embed_subtitles_uses_mov_text_for_mp4(tmp_path):
    """Test the subtitle codec choice."""
    toolchain = AsyncMock()

    await Assembler(toolchain).embed_subtitles(tmp_path / 'v.mp4.part', tmp_path / 's.vtt', tmp_path / 'e.mp4')

    args = toolchain.run.await_args.args[0]
    assert args[args.index('-c:s') + 1] == 'mov_text'


@pytest.mark.asyncio
async def test_download_stream_reads_the_playlist_with_crypto_allowed(tmp_path):
    """Test the invocation that lets ffmpeg fetch keys and decrypt segments."""
    toolchain = AsyncMock()
    output = tmp_path / 'out.mp4.part'

    await Assembler(toolchain).download_stream('https://x/index.m3u8', output, {'User-Agent': 'UA/1'})

    args = toolchain.run.await_args.args[0]
    assert args[:4] == ['-protocol_whitelist', STREAM_PROTOCOL_WHITELIST, '-headers', 'User-Agent: UA/1\r\n']
    assert 'crypto' in STREAM_PROTOCOL_WHITELIST.split(',')
    assert args[4:6] == ['-i', 'https://x/index.m3u8']
    assert args[-7:] == ['-c', 'copy', '-movflags', '+faststart', '-f', 'mp4', str(output)]


@pytest.mark.asyncio
async def test_missing_executable_is_a_toolchain_error(tmp_path):
    """Test that a missing ffmpeg surfaces as ToolchainError."""
    toolchain = FFmpegToolchain(ffmpeg_path=tmp_path / 'no-such-ffmpeg')

    with pytest.raises(ToolchainError):
        await toolchain.run(['-i', 'x', 'y'])


def _fake_tool(tmp_path: Path, body: str) -> Path:
    script = tmp_path / 'fake-ffmpeg'
    script.write_text('#!/bin/sh\n' + body)
    script.chmod(0o755)
    return script


@posix_only
@pytest.mark.asyncio
async def test_run_streams_progress(tmp_path):
    """Test that progress blocks reach the callback and a zero exit succeeds."""
    script = _fake_tool(tmp_path, 'printf "total_size=1024\\nprogress=continue\\ntotal_size=2048\\nprogress=end\\n"\n')
    updates = []

    async def on_progress(update):
        updates.append((update.total_size, update.finished))

    await FFmpegToolchain(ffmpeg_path=script).run(['-i', 'in', 'out'], on_progress)

    assert updates == [(1024, False), (2048, True)]


@posix_only
@pytest.mark.asyncio
async def test_run_non_zero_exit_raises_with_stderr_tail(tmp_path):
    """Test that a failing run raises ToolchainError carrying stderr."""
    script = _fake_tool(tmp_path, 'echo "Invalid data found when processing input" >&2\nexit 1\n')

    with pytest.raises(ToolchainError) as excinfo:
        await FFmpegToolchain(ffmpeg_path=script).run(['-i', 'in', 'out'])

    assert excinfo.value.returncode == 1
    assert 'Invalid data found' in excinfo.value.stderr


@posix_only
@pytest.mark.asyncio
async def test_run_passes_progress_flags_first(tmp_path):
    """Test that the machine-readable progress flags precede caller arguments."""
    record = tmp_path / 'argv.txt'
    script = _fake_tool(tmp_path, f'printf "%s\\n" "$@" > "{record}"\n')

    await FFmpegToolchain(ffmpeg_path=script).run(['-i', 'in', 'out'])

    assert record.read_text().splitlines() == PROGRESS_ARGS + ['-i', 'in', 'out']


@posix_only
@pytest.mark.asyncio
async def test_probe_parses_json_report(tmp_path):
    """Test that ffprobe's JSON report is returned."""
    script = _fake_tool(tmp_path, 'echo \'{"format": {"duration": "12.5"}, "streams": [{"codec_type": "video", "width": 640}]}\'\n')

    report = await FFmpegToolchain(ffprobe_path=script).probe('https://x/v.mp4', {'Cookie': 'a=1'})

    assert report['format']['duration'] == '12.5'
    assert report['streams'][0]['width'] == 640


@posix_only
@pytest.mark.asyncio
async def test_cancelling_run_interrupts_ffmpeg(tmp_path):
    """Test that cancelling the caller sends SIGINT to ffmpeg and waits for it to exit."""
    started, interrupted = tmp_path / 'started', tmp_path / 'interrupted'
    script = _fake_tool(tmp_path, f'trap \'echo yes > "{interrupted}"; exit 255\' INT\n'
                                  f'echo yes > "{started}"\n'
                                  'while true; do sleep 0.1; done\n')

    task = asyncio.create_task(FFmpegToolchain(ffmpeg_path=script).run(['-i', 'in', 'out']))
    await wait_until(started.exists)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert interrupted.read_text().strip() == 'yes'
