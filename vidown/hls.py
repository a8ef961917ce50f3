"""HLS acquisition: master/media playlist parsing, variant choice and segment download.

Clear playlists are fetched segment by segment (byte ranges included). AES-128
playlists are handed to ffmpeg, which fetches the keys and decrypts; any other
encryption method fails the job.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

import aiofiles

from .acquisition import AcquisitionContext, AcquisitionStrategy
from .exceptions import EncryptedStreamError, FilesystemError, ManifestEmpty, ManifestParseError, NetworkError
from .network import build_request_headers


ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
SEGMENT_EXTENSIONS = {'.ts', '.m4s', '.mp4', '.aac', '.m4a', '.mp3', '.vtt'}


@dataclass
class HlsVariant:
    uri: str
    bandwidth: int
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class HlsSegment:
    uri: str
    duration: Optional[float] = None
    # (offset, length) within ``uri`` when the playlist uses #EXT-X-BYTERANGE.
    byte_range: Optional[Tuple[int, int]] = None


@dataclass
class HlsPlaylist:
    """A parsed playlist: a master playlist has variants, a media playlist has segments."""
    variants: List[HlsVariant] = field(default_factory=list)
    segments: List[HlsSegment] = field(default_factory=list)
    init_uri: Optional[str] = None
    init_range: Optional[Tuple[int, int]] = None
    key_methods: Set[str] = field(default_factory=set)

    @property
    def is_master(self) -> bool:
        return bool(self.variants)


def parse_attributes(text: str) -> Dict[str, str]:
    """Parses an HLS attribute list; quoted values keep their commas."""
    return {key: value.strip('"') for key, value in ATTRIBUTE_RE.findall(text)}


def parse_byte_range(value: str, next_offset: int = 0) -> Tuple[int, int]:
    """
    Parses ``<length>[@<offset>]`` into ``(offset, length)``.

    Without an explicit offset the range starts at ``next_offset``, the byte after
    the previous range of the same resource.
    """
    length, _, offset = value.strip().partition('@')
    try:
        return (int(offset) if offset else next_offset), int(length)
    except ValueError:
        raise ManifestParseError(f"Malformed byte range: {value}")


def range_headers(headers: Dict[str, str], byte_range: Optional[Tuple[int, int]]) -> Dict[str, str]:
    if byte_range is None:
        return headers
    offset, length = byte_range
    return {**headers, 'Range': f"bytes={offset}-{offset + length - 1}"}


def _tag_value(line: str) -> str:
    return line.split(':', 1)[1] if ':' in line else ''


def parse_playlist(text: str, base_url: str) -> HlsPlaylist:
    """
    Parses a master or media playlist; every URI is resolved against ``base_url``.

    Raises:
        ManifestParseError: On a missing ``#EXTM3U`` header, a variant tag with no
            URI, or a malformed numeric attribute.
    """
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if not lines or not lines[0].lstrip('\ufeff').startswith('#EXTM3U'):
        raise ManifestParseError("Playlist is missing the #EXTM3U header")

    playlist = HlsPlaylist()
    pending_variant: Optional[Dict[str, str]] = None
    pending_duration: Optional[float] = None
    pending_range: Optional[str] = None
    range_ends: Dict[str, int] = {}
    for line in lines[1:]:
        if line.startswith('#EXT-X-STREAM-INF'):
            if pending_variant is not None:
                raise ManifestParseError("#EXT-X-STREAM-INF is not followed by a URI")
            pending_variant = parse_attributes(_tag_value(line))
        elif line.startswith('#EXTINF'):
            try: pending_duration = float(_tag_value(line).split(',', 1)[0])
            except ValueError: raise ManifestParseError(f"Malformed segment duration: {line}")
        elif line.startswith('#EXT-X-BYTERANGE'):
            pending_range = _tag_value(line)
        elif line.startswith('#EXT-X-KEY'):
            method = parse_attributes(_tag_value(line)).get('METHOD', 'NONE').upper()
            if method != 'NONE':
                playlist.key_methods.add(method)
        elif line.startswith('#EXT-X-MAP'):
            attributes = parse_attributes(_tag_value(line))
            if uri := attributes.get('URI'):
                playlist.init_uri = urljoin(base_url, uri)
                if 'BYTERANGE' in attributes:
                    playlist.init_range = parse_byte_range(attributes['BYTERANGE'])
        elif line.startswith('#'):
            continue
        elif pending_variant is not None:
            try: bandwidth = int(pending_variant.get('BANDWIDTH', '0'))
            except ValueError: raise ManifestParseError(f"Malformed BANDWIDTH: {pending_variant.get('BANDWIDTH')}")
            playlist.variants.append(HlsVariant(urljoin(base_url, line), bandwidth, pending_variant))
            pending_variant = None
        else:
            uri = urljoin(base_url, line)
            byte_range = None
            if pending_range is not None:
                byte_range = parse_byte_range(pending_range, range_ends.get(uri, 0))
                range_ends[uri] = byte_range[0] + byte_range[1]
            playlist.segments.append(HlsSegment(uri, pending_duration, byte_range))
            pending_duration = pending_range = None

    if pending_variant is not None:
        raise ManifestParseError("#EXT-X-STREAM-INF is not followed by a URI")
    return playlist


def rank_variants(variants: List[HlsVariant]) -> List[HlsVariant]:
    """Highest bandwidth first; equal bandwidths keep document order."""
    return sorted(variants, key=lambda v: v.bandwidth, reverse=True)


def select_variant(variants: List[HlsVariant]) -> Optional[HlsVariant]:
    ranked = rank_variants(variants)
    return ranked[0] if ranked else None


def segment_filename(index: int, count: int, uri: str) -> str:
    """``segment-00000.ts`` style names; zero-padded so lexical order is playback order."""
    width = max(5, len(str(max(count - 1, 0))))
    suffix = Path(urlparse(uri).path).suffix.lower()
    if suffix not in SEGMENT_EXTENSIONS:
        suffix = '.ts'
    return f"segment-{index:0{width}d}{suffix}"


class HlsStrategy(AcquisitionStrategy):
    """Downloads every segment of the best variant and concatenates them."""

    async def acquire(self, ctx: AcquisitionContext) -> None:
        text = await ctx.fetcher.fetch_text(ctx.url, ctx.headers)
        media, media_url = await self._resolve_media_playlist(ctx, parse_playlist(text, ctx.url))
        if not media.segments:
            raise ManifestEmpty(f"Playlist {media_url} has no segments")
        if media.key_methods:
            await self._acquire_encrypted(ctx, media, media_url)
            return
        self.logger.info(f"[{ctx.job_id}] {len(media.segments)} segment(s) from {media_url}")

        with ctx.temp_dir('hls') as tmp:
            paths = await self._download_segments(ctx, media, tmp)
            if media.init_uri:
                # fMP4 segments only decode behind their init section, so they are
                # joined byte-wise and remuxed instead of going through concat.
                joined = tmp / 'joined.mp4'
                await self._join_files(paths, joined)
                await ctx.assembler.convert(joined, ctx.part_path, ctx.conversion, on_progress=ctx.report_toolchain_progress)
            else:
                await ctx.assembler.concat(paths, ctx.part_path, ctx.conversion, on_progress=ctx.report_toolchain_progress)

    async def _acquire_encrypted(self, ctx: AcquisitionContext, media: HlsPlaylist, media_url: str):
        if unsupported := media.key_methods - {'AES-128'}:
            raise EncryptedStreamError(f"Playlist {media_url} uses unsupported encryption: {', '.join(sorted(unsupported))}")
        self.logger.info(f"[{ctx.job_id}] AES-128 playlist {media_url}; ffmpeg fetches keys and segments")
        await ctx.checkpoint()
        await ctx.assembler.download_stream(media_url, ctx.part_path, build_request_headers(ctx.headers),
                                            ctx.conversion, on_progress=ctx.report_toolchain_progress)

    async def _resolve_media_playlist(self, ctx: AcquisitionContext, playlist: HlsPlaylist) -> Tuple[HlsPlaylist, str]:
        """Follows the best variant, falling back to the next one only when its playlist cannot be fetched."""
        if not playlist.is_master:
            return playlist, ctx.url
        last_error = NetworkError(f"No variant playlist of {ctx.url} could be fetched", url=ctx.url)
        for variant in rank_variants(playlist.variants):
            try:
                text = await ctx.fetcher.fetch_text(variant.uri, ctx.headers)
            except NetworkError as e:
                self.logger.warning(f"[{ctx.job_id}] Variant {variant.uri} unavailable: {e}")
                last_error = e
                continue
            return parse_playlist(text, variant.uri), variant.uri
        raise last_error

    async def _download_segments(self, ctx: AcquisitionContext, media: HlsPlaylist, tmp: Path) -> List[Path]:
        paths: List[Path] = []
        received = 0
        parts = [(media.init_uri, media.init_range)] if media.init_uri else []
        parts += [(segment.uri, segment.byte_range) for segment in media.segments]
        for index, (uri, byte_range) in enumerate(parts):
            await ctx.checkpoint()
            path = tmp / segment_filename(index, len(parts), uri)
            base = received
            received += await ctx.fetcher.fetch_to_file(
                uri, path, range_headers(ctx.headers, byte_range),
                on_bytes=lambda n, base=base: ctx.sink.report(base + n),
                checkpoint=ctx.checkpoint,
            )
            paths.append(path)
        return paths

    @staticmethod
    async def _join_files(paths: List[Path], output: Path):
        try:
            async with aiofiles.open(output, 'wb') as f_out:
                for path in paths:
                    async with aiofiles.open(path, 'rb') as f_in:
                        while chunk := await f_in.read(1024 * 1024):
                            await f_out.write(chunk)
        except OSError as e:
            raise FilesystemError(f"Could not join segments into {output}: {e}") from e
