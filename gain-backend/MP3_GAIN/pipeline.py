"""
pipeline.py

File-level operations: inspect, apply gain, analyze, undo, delete tags, and a
batch runner that keeps one file's failure from stopping the others.

Every mutating operation builds the complete new file image in memory (edited
frames plus rewritten tag region), writes it to a temporary file next to the
original and swaps it in with os.replace. On any failure the temporary file is
removed and the original is left alone.
"""

import enum
import logging
import os
import shutil
import stat
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from MP3_GAIN.config import GainOptions
from MP3_GAIN.decoder import read_audio_float
from MP3_GAIN.errors import (AlbumAggregationError, DecodeFailure, MalformedStream, Mp3GainError, NoUndoRecord,
                             OutOfRangeGain, TagWriteFailure, UnsupportedFormat)
from MP3_GAIN.frames import FrameScanner, TagRegion, find_first_frame, skip_id3v2
from MP3_GAIN.gain_codec import Channel, FrameSummary, summarize
from MP3_GAIN.replaygain import PCM_SCALE, AlbumStatistics, LoudnessStatistics, analyze_pcm, pool_album
from MP3_GAIN.tags import (MP3GAIN_ALBUM_MINMAX, MP3GAIN_MINMAX, MP3GAIN_UNDO, ReplayGainInfo, UndoRecord,
                           delete_mp4_replaygain, format_minmax, read_ape_items, read_mp4_items,
                           read_undo_record, remove_gain_items, remove_items, set_items,
                           warn_foreign_records, with_tag_region, write_mp4_replaygain)
from MP3_GAIN.transform import (RangePolicy, TransformReport, apply_deltas, db_to_steps, gain_range,
                                limit_for_clipping, steps_to_db)

logger = logging.getLogger(__name__)


class Capability(enum.Enum):
    LOSSLESS_GAIN = 'lossless_gain'
    METADATA_ONLY = 'metadata_only'


# ---------- file access ----------
def _read_file(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise Mp3GainError(f"cannot read file: {e.strerror}", path) from e


def _remove_temp(tmp: str) -> None:
    try:
        os.remove(tmp)
    except FileNotFoundError:
        pass


def _replace_from_temp(path: str, fill: Callable[[str], None], options: GainOptions) -> None:
    """Create a temp file beside `path`, let `fill` write it, then swap it in."""
    try:
        st = os.stat(path)
        fd, tmp = tempfile.mkstemp(prefix='.mp3gain-', suffix='.tmp',
                                   dir=os.path.dirname(os.path.abspath(path)))
        os.close(fd)
    except OSError as e:
        raise TagWriteFailure(f"cannot create temporary file: {e.strerror}", path) from e
    try:
        fill(tmp)
        if options.safe_write:
            with open(tmp, 'rb+') as f:
                os.fsync(f.fileno())
        os.chmod(tmp, stat.S_IMODE(st.st_mode))
        if options.preserve_times:
            os.utime(tmp, ns=(st.st_atime_ns, st.st_mtime_ns))
        os.replace(tmp, path)
    except TagWriteFailure:
        _remove_temp(tmp)
        raise
    except Exception as e:
        _remove_temp(tmp)
        raise TagWriteFailure(f"could not rewrite file: {e}", path) from e


def write_tagged(path: str, data: bytes, region: TagRegion, items: Dict[str, Any], options: GainOptions) -> None:
    """Write `data` with its trailing APE tag rebuilt from `items`."""
    def fill(tmp):
        image = with_tag_region(data, region, items)
        with open(tmp, 'wb') as f:
            f.write(image)
        logger.debug("Rewrote %s (%d bytes)", path, len(image))

    _replace_from_temp(path, fill, options)


def _edit_copy(path: str, edit: Callable[[str], Any], options: GainOptions) -> None:
    """Run a mutagen in-place edit on a copy, then swap the copy in."""
    def fill(tmp):
        shutil.copyfile(path, tmp)
        edit(tmp)

    _replace_from_temp(path, fill, options)


# ---------- capability ----------
def capability_of(data: bytes, path: Optional[str] = None) -> Capability:
    if len(data) >= 8 and data[4:8] == b'ftyp':
        return Capability.METADATA_ONLY
    start = skip_id3v2(data)
    if find_first_frame(data, start, len(data)) is not None:
        return Capability.LOSSLESS_GAIN
    raise UnsupportedFormat("neither an MPEG audio stream nor an MP4 container", path)


def detect_capability(path: str) -> Capability:
    return capability_of(_read_file(path), path)


def _require_lossless(data: bytes, path: str, action: str) -> None:
    if capability_of(data, path) is Capability.METADATA_ONLY:
        raise UnsupportedFormat(f"{action} needs an MPEG audio stream; MP4 files only take ReplayGain tags",
                                path)


# ---------- inspection ----------
def inspect(path: str, options: Optional[GainOptions] = None) -> FrameSummary:
    options = options or GainOptions.from_env()
    data = _read_file(path)
    _require_lossless(data, path, "inspection")
    scanner = FrameScanner(data, path=path, resync=options.resync)
    summary = summarize(data, scanner, scanner.region.audio_end)
    if summary is None:
        raise UnsupportedFormat("no frame with readable side information", path)
    summary.skipped_bytes = scanner.skipped_bytes
    return summary


def read_gain_tags(path: str) -> Dict[str, str]:
    """MP3GAIN_* / REPLAYGAIN_* items currently stored in the file."""
    data = _read_file(path)
    if capability_of(data, path) is Capability.METADATA_ONLY:
        return read_mp4_items(path)
    warn_foreign_records(data, path)
    items = read_ape_items(data, path=path)
    return {k: v for k, v in items.items()
            if k.upper().startswith(('MP3GAIN_', 'REPLAYGAIN_')) and isinstance(v, str)}


# ---------- applying gain ----------
@dataclass
class ApplyResult:
    path: str
    report: Optional[TransformReport] = None
    undo_record: Optional[UndoRecord] = None
    replaygain: Optional[ReplayGainInfo] = None
    metadata_only: bool = False

    @property
    def frames_modified(self) -> int:
        return self.report.frames_modified if self.report else 0

    @property
    def clipping_reduced_by(self) -> int:
        return self.report.clipping_reduced_by if self.report else 0

    @property
    def clamp_events(self) -> int:
        return self.report.clamp_events if self.report else 0

    @property
    def requested_steps(self) -> Tuple[int, int]:
        if not self.report:
            return 0, 0
        return self.report.requested_left, self.report.requested_right

    @property
    def applied_steps(self) -> Tuple[int, int]:
        if not self.report:
            return 0, 0
        return self.report.applied_left, self.report.applied_right

    def to_dict(self):
        result = {'path': self.path, 'metadata_only': self.metadata_only}
        if self.report:
            result.update(self.report.to_dict())
        else:
            result.update({'frames_modified': 0, 'clipping_reduced_by': 0})
        if self.undo_record:
            result['undo'] = self.undo_record.to_dict()
        if self.replaygain:
            result['replaygain'] = self.replaygain.to_items()
        return result


def _stored_peak(items: Dict[str, str], record: Optional[UndoRecord]) -> Optional[float]:
    """Track peak on the 16-bit scale as the file plays now, from its tags."""
    info = ReplayGainInfo.from_items(items)
    if info.track_peak is None:
        return None
    peak = info.track_peak * PCM_SCALE
    if record is not None:
        # the stored peak describes the audio before any recorded edit
        peak *= 2.0 ** (max(record.left_steps, record.right_steps) / 4.0)
    return peak


def apply_gain(path: str, steps: Optional[int] = None, gain_db: Optional[float] = None,
               channel: Channel = Channel.BOTH, options: Optional[GainOptions] = None) -> ApplyResult:
    """Add `steps` (or the nearest whole step to `gain_db`) to every gain field
    of the selected channel(s)."""
    if (steps is None) == (gain_db is None):
        raise ValueError("give exactly one of steps or gain_db")
    if steps is None:
        steps = db_to_steps(gain_db)
    channel = Channel(channel)
    left = steps if channel in (Channel.BOTH, Channel.LEFT) else 0
    right = steps if channel in (Channel.BOTH, Channel.RIGHT) else 0
    return apply_channel_gain(path, left, right, options=options)


def apply_channel_gain(path: str, left_steps: int, right_steps: int, options: Optional[GainOptions] = None,
                       peak: Optional[float] = None, extra_items: Optional[Dict[str, str]] = None) -> ApplyResult:
    """Apply separate step counts to channel 0 and channel 1.

    `peak` (16-bit scale) is used for clipping prevention when given; otherwise
    a stored REPLAYGAIN_TRACK_PEAK, otherwise the gain field headroom.
    `extra_items` are written into the same APE tag (ReplayGain values).
    """
    options = options or GainOptions.from_env()
    data = bytearray(_read_file(path))
    _require_lossless(data, path, "lossless gain")

    scanner = FrameScanner(data, path=path, resync=options.resync)
    frames = list(scanner)
    region = scanner.region
    limit = region.audio_end

    warn_foreign_records(data, path)
    items = read_ape_items(data, region, path)
    record = read_undo_record(items, path)

    report = TransformReport(left_steps, right_steps, left_steps, right_steps, options.range_policy)

    mono = bool(frames) and all(f.channels == 1 for f in frames)
    if mono and right_steps and right_steps != left_steps:
        logger.warning("%s: mono stream has no right channel; right channel request ignored", path)
        report.notes.append("right channel ignored on mono stream")
        report.applied_right = right_steps = 0
    if left_steps != right_steps and any(f.mid_side for f in frames):
        logger.warning("%s: joint stereo with mid/side coding; channel 0 is mid and channel 1 is side", path)
        report.notes.append("mid/side stereo: per-channel gain applies to mid/side")

    if options.prevent_clipping and (left_steps > 0 or right_steps > 0):
        if peak is None:
            peak = _stored_peak(items, record)
        _, max_gain = gain_range(data, frames, limit)
        left_steps, left_cut = limit_for_clipping(left_steps, peak=peak, max_gain=max_gain)
        right_steps, right_cut = limit_for_clipping(right_steps, peak=peak, max_gain=max_gain)
        report.applied_left, report.applied_right = left_steps, right_steps
        report.clipping_reduced_by = max(left_cut, right_cut)
        if report.clipping_reduced_by:
            logger.warning("%s: adjustment reduced by %d step(s) to avoid clipping (applied %+d/%+d)",
                           path, report.clipping_reduced_by, left_steps, right_steps)

    if left_steps == 0 and right_steps == 0 and not extra_items:
        logger.info("%s: nothing to change", path)
        return ApplyResult(path, report=report, undo_record=record)

    try:
        apply_deltas(data, frames, left_steps, right_steps, limit, options.range_policy, report)
    except OutOfRangeGain as e:
        e.path = path
        raise

    if record is None:
        record = UndoRecord(min_gain=report.min_before, max_gain=report.max_before)
    record.add(left_steps, right_steps, wrap=options.range_policy == RangePolicy.WRAP)
    if record.is_identity and not report.clamp_events:
        # the frames are back where they started
        remove_items(items, MP3GAIN_UNDO, MP3GAIN_MINMAX)
        kept_record = None
    else:
        set_items(items, record.to_items())
        kept_record = record
    if extra_items:
        set_items(items, extra_items)

    write_tagged(path, data, region, items, options)
    logger.info("%s: applied %+d/%+d step(s) (%+.1f/%+.1f dB) to %d frame(s)", path,
                left_steps, right_steps, steps_to_db(left_steps), steps_to_db(right_steps),
                report.frames_modified)
    return ApplyResult(path, report=report, undo_record=kept_record)


# ---------- undo ----------
@dataclass
class UndoResult:
    path: str
    frames_restored: int
    record: UndoRecord

    def to_dict(self):
        return {'path': self.path, 'frames_restored': self.frames_restored, 'undo': self.record.to_dict()}


def undo(path: str, options: Optional[GainOptions] = None) -> UndoResult:
    """Reverse the net adjustment recorded in MP3GAIN_UNDO and drop the record."""
    options = options or GainOptions.from_env()
    data = bytearray(_read_file(path))
    _require_lossless(data, path, "undo")

    scanner = FrameScanner(data, path=path, resync=options.resync)
    frames = list(scanner)
    region = scanner.region

    items = read_ape_items(data, region, path)
    record = read_undo_record(items, path)
    if record is None:
        warn_foreign_records(data, path)
        raise NoUndoRecord("no MP3GAIN_UNDO record in the APE tag", path)

    policy = RangePolicy.WRAP if record.wrap else RangePolicy.CLAMP
    report = apply_deltas(data, frames, -record.left_steps, -record.right_steps, region.audio_end, policy)
    remove_items(items, MP3GAIN_UNDO, MP3GAIN_MINMAX)

    write_tagged(path, data, region, items, options)
    logger.info("%s: undid %+d/%+d step(s) on %d frame(s)", path,
                record.left_steps, record.right_steps, report.frames_modified)
    return UndoResult(path, report.frames_modified, record)


# ---------- tags ----------
def delete_tags(path: str, options: Optional[GainOptions] = None) -> int:
    """Remove every MP3GAIN_* and REPLAYGAIN_* item. Returns how many went."""
    options = options or GainOptions.from_env()
    data = _read_file(path)
    if capability_of(data, path) is Capability.METADATA_ONLY:
        removed = len(read_mp4_items(path))
        if removed:
            _edit_copy(path, delete_mp4_replaygain, options)
        return removed

    region = FrameScanner(data, path=path, resync=options.resync).region
    items = read_ape_items(data, region, path)
    removed = remove_gain_items(items)
    if removed:
        write_tagged(path, data, region, items, options)
        logger.info("%s: removed %d gain tag item(s)", path, removed)
    return removed


def store_replaygain(path: str, info: ReplayGainInfo, options: Optional[GainOptions] = None,
                     extra_items: Optional[Dict[str, str]] = None) -> None:
    """Write ReplayGain values without touching any frame."""
    options = options or GainOptions.from_env()
    data = _read_file(path)
    if capability_of(data, path) is Capability.METADATA_ONLY:
        _edit_copy(path, lambda tmp: write_mp4_replaygain(tmp, info), options)
        return
    region = FrameScanner(data, path=path, resync=options.resync).region
    items = read_ape_items(data, region, path)
    set_items(items, info.to_items())
    if extra_items:
        set_items(items, extra_items)
    write_tagged(path, data, region, items, options)


# ---------- analysis ----------
@dataclass
class FileAnalysis:
    path: str
    stats: LoudnessStatistics
    headroom_steps: Optional[int] = None
    min_gain: Optional[int] = None
    max_gain: Optional[int] = None

    @property
    def gain_db(self) -> Optional[float]:
        return self.stats.gain_db

    def to_dict(self):
        result = self.stats.to_dict()
        result.update({'path': self.path, 'headroom_steps': self.headroom_steps,
                       'min_gain': self.min_gain, 'max_gain': self.max_gain})
        if self.gain_db is not None:
            result['suggested_steps'] = db_to_steps(self.gain_db)
        return result


@dataclass
class AnalysisReport:
    per_file_stats: List[FileAnalysis]
    suggested_gain_db: Optional[float] = None
    headroom_steps: Optional[int] = None
    album: Optional[AlbumStatistics] = None
    failures: Dict[str, Exception] = field(default_factory=dict)

    @property
    def suggested_steps(self) -> Optional[int]:
        if self.suggested_gain_db is None:
            return None
        return db_to_steps(self.suggested_gain_db)

    def to_dict(self):
        return {
            'per_file_stats': [f.to_dict() for f in self.per_file_stats],
            'suggested_gain_db': None if self.suggested_gain_db is None else round(self.suggested_gain_db, 2),
            'suggested_steps': self.suggested_steps,
            'headroom_steps': self.headroom_steps,
            'album_peak': None if self.album is None else round(self.album.peak_ratio, 6),
            'failures': {p: str(e) for p, e in self.failures.items()},
        }


def _gain_fields(data: bytes, path: str, options: GainOptions) -> Tuple[Optional[int], Optional[int]]:
    """Min/max gain field value of an MPEG stream; (None, None) for anything else."""
    try:
        if capability_of(data, path) is Capability.METADATA_ONLY:
            return None, None
        scanner = FrameScanner(data, path=path, resync=options.resync)
        frames = list(scanner)
    except UnsupportedFormat:
        return None, None
    except MalformedStream as e:
        logger.warning("No gain headroom for analysis report: %s", e)
        return None, None
    return gain_range(data, frames, scanner.region.audio_end)


def analyze_file(path: str, options: Optional[GainOptions] = None) -> FileAnalysis:
    options = options or GainOptions.from_env()
    data = _read_file(path)
    min_gain, max_gain = _gain_fields(data, path, options)
    samples, samplerate = read_audio_float(path, options.decoder, options.resample_unsupported)
    stats = analyze_pcm(samples, samplerate, path=path)
    headroom = None if max_gain is None else 255 - max_gain
    logger.info("%s: track gain %s, peak %.6f", path,
                'n/a' if stats.gain_db is None else "%+.2f dB" % stats.gain_db, stats.peak_ratio)
    return FileAnalysis(path, stats, headroom, min_gain, max_gain)


def _analyze_all(paths: Sequence[str], options: GainOptions) -> Tuple[List[FileAnalysis], Dict[str, Exception]]:
    """Analyse every file, in parallel when there is more than one, and wait for all."""
    results: Dict[str, FileAnalysis] = {}
    failures: Dict[str, Exception] = {}
    if len(paths) == 1:
        try:
            results[paths[0]] = analyze_file(paths[0], options)
        except (Mp3GainError, OSError) as e:
            failures[paths[0]] = e
    else:
        with ThreadPoolExecutor(max_workers=options.workers) as pool:
            futures = {path: pool.submit(analyze_file, path, options) for path in paths}
            for path, future in futures.items():
                try:
                    results[path] = future.result()
                except (Mp3GainError, OSError) as e:
                    failures[path] = e
    for path, e in failures.items():
        logger.error("Analysis failed: %s", e)
    return [results[p] for p in paths if p in results], failures


def analyze(paths: Union[str, Sequence[str]], album: bool = False, store_tags: bool = False,
            options: Optional[GainOptions] = None, continue_on_error: bool = False) -> AnalysisReport:
    """ReplayGain analysis of one file or a group of files.

    In album mode the per-file window histograms are pooled into one after every
    file has finished; a failed member raises AlbumAggregationError unless
    `continue_on_error` is set. With `store_tags` the results are written as
    REPLAYGAIN_* tags (no frame is touched).
    """
    options = options or GainOptions.from_env()
    if isinstance(paths, str):
        paths = [paths]
    paths = list(paths)
    files, failures = _analyze_all(paths, options)

    report = AnalysisReport(files, failures=failures)
    if album:
        if failures and not continue_on_error:
            raise AlbumAggregationError(failures)
        report.album = pool_album([f.stats for f in files])
        report.album.failures = dict(failures)
        report.suggested_gain_db = report.album.gain_db
        headrooms = [f.headroom_steps for f in files if f.headroom_steps is not None]
        report.headroom_steps = min(headrooms) if headrooms else None
    elif len(paths) == 1 and files:
        report.suggested_gain_db = files[0].gain_db
        report.headroom_steps = files[0].headroom_steps

    if store_tags:
        for info_path, info, extra in _replaygain_updates(report, album):
            try:
                store_replaygain(info_path, info, options, extra)
            except Mp3GainError as e:
                logger.error("Storing tags failed: %s", e)
                report.failures[info_path] = e
    return report


def _album_minmax(report: AnalysisReport) -> Optional[str]:
    mins = [f.min_gain for f in report.per_file_stats if f.min_gain is not None]
    maxs = [f.max_gain for f in report.per_file_stats if f.max_gain is not None]
    if not mins:
        return None
    return format_minmax(min(mins), max(maxs))


def _replaygain_updates(report: AnalysisReport, album: bool):
    album_minmax = _album_minmax(report) if album else None
    for f in report.per_file_stats:
        info = ReplayGainInfo(track_gain=f.gain_db, track_peak=f.stats.peak_ratio)
        extra = {}
        if album and report.album is not None:
            info.album_gain = report.album.gain_db
            info.album_peak = report.album.peak_ratio
            if album_minmax is not None and f.max_gain is not None:
                extra[MP3GAIN_ALBUM_MINMAX] = album_minmax
        yield f.path, info, extra


# ---------- analysis-driven gain ----------
def apply_track_gain(path: str, offset_db: float = 0.0, options: Optional[GainOptions] = None) -> ApplyResult:
    """Analyse one file and apply its suggested gain (plus `offset_db`)."""
    options = options or GainOptions.from_env()
    report = analyze(path, options=options)
    if report.failures:
        raise report.failures[path]
    analysis = report.per_file_stats[0]
    if analysis.gain_db is None:
        raise DecodeFailure("too short for a loudness measurement", path)
    info = ReplayGainInfo(track_gain=analysis.gain_db, track_peak=analysis.stats.peak_ratio)
    return _apply_suggestion(path, analysis.gain_db + offset_db, analysis.stats.peak, info, {}, options)


def apply_album_gain(paths: Sequence[str], offset_db: float = 0.0, options: Optional[GainOptions] = None,
                     continue_on_error: bool = False) -> List['FileOutcome']:
    """Analyse the files as one album and apply the shared suggestion to each."""
    options = options or GainOptions.from_env()
    report = analyze(paths, album=True, options=options, continue_on_error=continue_on_error)
    if report.suggested_gain_db is None:
        raise DecodeFailure("album too short for a loudness measurement")
    gain_db = report.suggested_gain_db + offset_db
    album_peak = report.album.peak
    updates = {p: (info, extra) for p, info, extra in _replaygain_updates(report, album=True)}

    def operation(path):
        info, extra = updates[path]
        return _apply_suggestion(path, gain_db, album_peak, info, extra, options)

    outcomes = process_batch([f.path for f in report.per_file_stats], operation)
    outcomes.extend(FileOutcome(p, error=e) for p, e in report.failures.items())
    return outcomes


def _apply_suggestion(path: str, gain_db: float, peak: float, info: ReplayGainInfo,
                      extra: Dict[str, str], options: GainOptions) -> ApplyResult:
    data = _read_file(path)
    if capability_of(data, path) is Capability.METADATA_ONLY:
        _edit_copy(path, lambda tmp: write_mp4_replaygain(tmp, info), options)
        logger.info("%s: MP4 container, stored ReplayGain tags only", path)
        return ApplyResult(path, replaygain=info, metadata_only=True)
    steps = db_to_steps(gain_db)
    items = dict(info.to_items())
    items.update(extra)
    result = apply_channel_gain(path, steps, steps, options=options, peak=peak, extra_items=items)
    result.replaygain = info
    return result


# ---------- batches ----------
@dataclass
class FileOutcome:
    path: str
    result: Any = None
    error: Optional[Exception] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped

    def to_dict(self):
        if self.skipped:
            return {'path': self.path, 'skipped': True}
        if self.error is not None:
            return {'path': self.path, 'error': str(self.error)}
        result = self.result.to_dict() if hasattr(self.result, 'to_dict') else self.result
        return {'path': self.path, 'result': result}


def process_batch(paths: Sequence[str], operation: Callable[[str], Any],
                  should_stop: Optional[Callable[[], bool]] = None) -> List[FileOutcome]:
    """Run `operation` on each path in order. A failing file is recorded and the
    batch moves on; `should_stop` is checked between files only."""
    outcomes = []
    for i, path in enumerate(paths):
        if should_stop is not None and should_stop():
            logger.info("Batch stopped before %s; %d file(s) not processed", path, len(paths) - i)
            outcomes.extend(FileOutcome(p, skipped=True) for p in paths[i:])
            break
        try:
            outcomes.append(FileOutcome(path, result=operation(path)))
        except (Mp3GainError, OSError, ValueError) as e:
            logger.error("%s", e if isinstance(e, Mp3GainError) else f"{path}: {e}")
            outcomes.append(FileOutcome(path, error=e))
    return outcomes
