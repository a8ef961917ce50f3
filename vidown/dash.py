"""
DASH acquisition: MPD parsing, track selection and per-track segment download.

Only static (on-demand) manifests are supported, and only the first Period is
used. Segment addressing may be a SegmentTemplate (with ``$Number$`` or
``$Time$`` and an optional SegmentTimeline), a SegmentList, or a bare BaseURL.
"""
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urljoin

from .acquisition import AcquisitionContext, AcquisitionStrategy, replace_file
from .exceptions import ManifestEmpty, ManifestParseError, NoVideoTrack
from .jobs import needs_conversion

VIDEO_CODEC_PREFIXES = ('avc1', 'avc3', 'hvc1', 'hev1', 'vp09', 'vp9', 'vp8', 'av01')
AUDIO_CODEC_PREFIXES = ('mp4a', 'opus', 'ac-3', 'ec-3', 'flac', 'vorbis')

DURATION_RE = re.compile(
    r'^P(?:(?P<days>\d+(?:\.\d+)?)D)?'
    r'(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$'
)
TEMPLATE_RE = re.compile(r'\$\$|\$(RepresentationID|Number|Bandwidth|Time)(?:%0(\d+)d)?\$')


@dataclass
class Representation:
    rep_id: str
    bandwidth: int
    codecs: str = ''
    mime_type: str = ''
    content_type: str = ''
    segment_urls: List[str] = field(default_factory=list)

    @property
    def family(self) -> Optional[str]:
        """``video``, ``audio`` or None, judged by codec first and MIME type second."""
        codec = self.codecs.split(',')[0].strip().lower()
        if codec.startswith(VIDEO_CODEC_PREFIXES): return 'video'
        if codec.startswith(AUDIO_CODEC_PREFIXES): return 'audio'
        kind = self.content_type or self.mime_type.split('/')[0]
        return kind if kind in ('video', 'audio') else None


@dataclass
class AdaptationSet:
    set_id: str
    content_type: str
    representations: List[Representation] = field(default_factory=list)


@dataclass
class DashManifest:
    adaptation_sets: List[AdaptationSet] = field(default_factory=list)
    duration: Optional[float] = None

    @property
    def representations(self) -> List[Representation]:
        return [rep for aset in self.adaptation_sets for rep in aset.representations]


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parses an ISO-8601 duration such as ``PT1H2M3.5S`` into seconds."""
    if not value:
        return None
    match = DURATION_RE.match(value.strip())
    if not match:
        raise ManifestParseError(f"Malformed duration: {value}")
    parts = {k: float(v) for k, v in match.groupdict().items() if v}
    return (parts.get('days', 0) * 86400 + parts.get('hours', 0) * 3600
            + parts.get('minutes', 0) * 60 + parts.get('seconds', 0))


def expand_template(template: str, rep_id: str, bandwidth: int, number: Optional[int] = None,
                    time: Optional[int] = None) -> str:
    """Substitutes ``$RepresentationID$``, ``$Number$``, ``$Bandwidth$`` and ``$Time$`` (with ``%0Nd`` widths)."""
    values = {'RepresentationID': rep_id, 'Number': number, 'Bandwidth': bandwidth, 'Time': time}

    def substitute(match: re.Match) -> str:
        if match.group(0) == '$$':
            return '$'
        name, width = match.group(1), match.group(2)
        value = values[name]
        if value is None:
            raise ManifestParseError(f"Template {template!r} uses ${name}$ but no value is available")
        if width and name != 'RepresentationID':
            return f"{int(value):0{int(width)}d}"
        return str(value)

    return TEMPLATE_RE.sub(substitute, template)


def _int(value: Optional[str], default: int, what: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ManifestParseError(f"Malformed {what}: {value!r}")


def _strip_namespaces(root: ET.Element):
    for element in root.iter():
        if isinstance(element.tag, str) and '}' in element.tag:
            element.tag = element.tag.split('}', 1)[1]


def _resolve_base(base_url: str, element: ET.Element) -> str:
    base = element.find('BaseURL')
    if base is not None and base.text and base.text.strip():
        return urljoin(base_url, base.text.strip())
    return base_url


def _timeline_times(timeline: ET.Element, timescale: int, period_duration: Optional[float]) -> List[int]:
    times: List[int] = []
    current = 0
    entries = timeline.findall('S')
    for position, entry in enumerate(entries):
        if entry.get('t') is not None:
            current = _int(entry.get('t'), 0, 'S@t')
        duration = _int(entry.get('d'), 0, 'S@d')
        if duration <= 0:
            raise ManifestParseError("SegmentTimeline entry has no duration")
        repeat = _int(entry.get('r'), 0, 'S@r')
        if repeat < 0:
            # Repeat until the next entry's start, or the end of the period.
            if position + 1 < len(entries) and entries[position + 1].get('t') is not None:
                end = _int(entries[position + 1].get('t'), 0, 'S@t')
            elif period_duration is not None:
                end = int(period_duration * timescale)
            else:
                raise ManifestParseError("Open-ended SegmentTimeline repeat without a period duration")
            repeat = max(math.ceil((end - current) / duration) - 1, 0)
        for _ in range(repeat + 1):
            times.append(current)
            current += duration
    return times


def _template_urls(template: Dict[str, str], timeline: Optional[ET.Element], rep_id: str, bandwidth: int,
                   base_url: str, period_duration: Optional[float]) -> List[str]:
    urls: List[str] = []
    if init := template.get('initialization'):
        urls.append(urljoin(base_url, expand_template(init, rep_id, bandwidth)))
    media = template.get('media')
    if not media:
        return urls
    timescale = _int(template.get('timescale'), 1, 'timescale') or 1
    start_number = _int(template.get('startNumber'), 1, 'startNumber')

    if timeline is not None:
        for offset, start in enumerate(_timeline_times(timeline, timescale, period_duration)):
            urls.append(urljoin(base_url, expand_template(media, rep_id, bandwidth, number=start_number + offset, time=start)))
        return urls

    duration = _int(template.get('duration'), 0, 'duration')
    if duration <= 0:
        raise ManifestParseError("SegmentTemplate has neither a duration nor a SegmentTimeline")
    if period_duration is None:
        raise ManifestParseError("Cannot count template segments without a presentation duration")
    count = math.ceil(period_duration * timescale / duration)
    for offset in range(count):
        urls.append(urljoin(base_url, expand_template(media, rep_id, bandwidth, number=start_number + offset,
                                                      time=offset * duration)))
    return urls


def _list_urls(segment_list: ET.Element, base_url: str) -> List[str]:
    urls: List[str] = []
    init = segment_list.find('Initialization')
    if init is not None and init.get('sourceURL'):
        urls.append(urljoin(base_url, init.get('sourceURL')))
    for entry in segment_list.findall('SegmentURL'):
        urls.append(urljoin(base_url, entry.get('media') or ''))
    return urls


def parse_mpd(text: str, base_url: str) -> DashManifest:
    """
    Parses an MPD document into adaptation sets and per-representation segment URLs.

    Raises:
        ManifestParseError: On invalid XML, a non-MPD root, a dynamic manifest or
            malformed segment addressing.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ManifestParseError(f"Invalid MPD XML: {e}") from e
    _strip_namespaces(root)
    if root.tag != 'MPD':
        raise ManifestParseError(f"Expected an MPD root element, got <{root.tag}>")
    if root.get('type', 'static') == 'dynamic':
        raise ManifestParseError("Live (dynamic) manifests are not supported")

    manifest = DashManifest(duration=parse_duration(root.get('mediaPresentationDuration')))
    period = root.find('Period')
    if period is None:
        return manifest
    period_duration = parse_duration(period.get('duration')) or manifest.duration
    period_base = _resolve_base(_resolve_base(base_url, root), period)

    for set_index, aset in enumerate(period.findall('AdaptationSet')):
        aset_base = _resolve_base(period_base, aset)
        aset_template = aset.find('SegmentTemplate')
        adaptation = AdaptationSet(set_id=aset.get('id', str(set_index)), content_type=aset.get('contentType', ''))
        for rep_index, rep in enumerate(aset.findall('Representation')):
            rep_id = rep.get('id', str(rep_index))
            bandwidth = _int(rep.get('bandwidth'), 0, 'bandwidth')
            rep_base = _resolve_base(aset_base, rep)

            template_attrs: Dict[str, str] = dict(aset_template.attrib) if aset_template is not None else {}
            timeline = aset_template.find('SegmentTimeline') if aset_template is not None else None
            if (rep_template := rep.find('SegmentTemplate')) is not None:
                template_attrs.update(rep_template.attrib)
                if (rep_timeline := rep_template.find('SegmentTimeline')) is not None:
                    timeline = rep_timeline
            segment_list = rep.find('SegmentList')
            if segment_list is None:
                segment_list = aset.find('SegmentList')

            if template_attrs:
                urls = _template_urls(template_attrs, timeline, rep_id, bandwidth, rep_base, period_duration)
            elif segment_list is not None:
                urls = _list_urls(segment_list, rep_base)
            elif rep_base != base_url:
                urls = [rep_base]
            else:
                urls = []

            adaptation.representations.append(Representation(
                rep_id=rep_id,
                bandwidth=bandwidth,
                codecs=rep.get('codecs') or aset.get('codecs') or '',
                mime_type=rep.get('mimeType') or aset.get('mimeType') or '',
                content_type=aset.get('contentType', ''),
                segment_urls=urls,
            ))
        manifest.adaptation_sets.append(adaptation)
    return manifest


def _best(manifest: DashManifest, family: str) -> Optional[Representation]:
    candidates = [rep for rep in manifest.representations if rep.family == family]
    # max() keeps the first of equal bandwidths, i.e. document order.
    return max(candidates, key=lambda rep: rep.bandwidth) if candidates else None


def select_video(manifest: DashManifest) -> Representation:
    """The highest-bandwidth video representation; raises NoVideoTrack if there is none."""
    if (video := _best(manifest, 'video')) is None:
        raise NoVideoTrack("Manifest has no video representation")
    return video


def select_audio(manifest: DashManifest) -> Optional[Representation]:
    return _best(manifest, 'audio')


def track_extension(rep: Representation) -> str:
    return '.webm' if 'webm' in rep.mime_type else '.mp4'


class DashStrategy(AcquisitionStrategy):
    """Downloads the best video (and audio) track and muxes them into one file."""

    async def acquire(self, ctx: AcquisitionContext) -> None:
        text = await ctx.fetcher.fetch_text(ctx.url, ctx.headers)
        manifest = parse_mpd(text, ctx.url)
        video = select_video(manifest)
        audio = select_audio(manifest)
        if not video.segment_urls:
            raise ManifestEmpty(f"Video representation {video.rep_id} has no segments")
        self.logger.info(f"[{ctx.job_id}] DASH video {video.rep_id} ({video.bandwidth} bps), "
                         f"audio {audio.rep_id if audio else 'none'}")

        with ctx.temp_dir('dash') as tmp:
            video_path = tmp / f"video{track_extension(video)}"
            received = await self._download_track(ctx, video, video_path, 0)
            if audio is not None and audio.segment_urls:
                audio_path = tmp / f"audio{track_extension(audio)}"
                await self._download_track(ctx, audio, audio_path, received)
                await ctx.assembler.mux(video_path, audio_path, ctx.part_path, ctx.conversion,
                                        on_progress=ctx.report_toolchain_progress)
            elif needs_conversion(ctx.conversion):
                await ctx.assembler.convert(video_path, ctx.part_path, ctx.conversion,
                                            on_progress=ctx.report_toolchain_progress)
            else:
                await replace_file(video_path, ctx.part_path)

    async def _download_track(self, ctx: AcquisitionContext, rep: Representation, dest: Path, received: int) -> int:
        """Appends every segment of ``rep`` to ``dest``; returns the cumulative byte count."""
        for index, url in enumerate(rep.segment_urls):
            await ctx.checkpoint()
            base = received
            received += await ctx.fetcher.fetch_to_file(
                url, dest, ctx.headers,
                on_bytes=lambda n, base=base: ctx.sink.report(base + n),
                append=index > 0,
                checkpoint=ctx.checkpoint,
            )
        return received
