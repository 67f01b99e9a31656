"""
tags.py

Undo and ReplayGain records, stored the way the legacy mp3gain tool stores
them: text items of an APEv2 tag placed after the last audio frame and before
an ID3v1 tag, if there is one.

    MP3GAIN_UNDO           "+002,+002,N"   left steps, right steps, W(rap)/N
    MP3GAIN_MINMAX         "150,162"       gain range before the first edit
    MP3GAIN_ALBUM_MINMAX   "140,170"
    REPLAYGAIN_TRACK_GAIN  "-4.320000 dB"
    REPLAYGAIN_TRACK_PEAK  "0.987654"

mutagen encodes and decodes the APE items; the byte placement is done here
because the ID3v1 tag behind the APE tag has to survive untouched.

MP4 containers have no gain field to edit, so they only ever receive the
iTunes freeform replaygain atoms.
"""

import io
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from mutagen import MutagenError
from mutagen.apev2 import APEv2, APENoHeaderError, APETextValue, error as APEError
from mutagen.id3 import ID3, ID3NoHeaderError
from mutagen.mp4 import MP4, MP4FreeForm

from MP3_GAIN.frames import TagRegion, find_tag_region

logger = logging.getLogger(__name__)

MP3GAIN_UNDO = 'MP3GAIN_UNDO'
MP3GAIN_MINMAX = 'MP3GAIN_MINMAX'
MP3GAIN_ALBUM_MINMAX = 'MP3GAIN_ALBUM_MINMAX'
REPLAYGAIN_TRACK_GAIN = 'REPLAYGAIN_TRACK_GAIN'
REPLAYGAIN_TRACK_PEAK = 'REPLAYGAIN_TRACK_PEAK'
REPLAYGAIN_ALBUM_GAIN = 'REPLAYGAIN_ALBUM_GAIN'
REPLAYGAIN_ALBUM_PEAK = 'REPLAYGAIN_ALBUM_PEAK'

GAIN_PREFIXES = ('MP3GAIN_', 'REPLAYGAIN_')
MP4_FREEFORM = '----:com.apple.iTunes:'


# ---------- value formats ----------
def format_undo(left: int, right: int, wrap: bool) -> str:
    return "%+04d,%+04d,%s" % (left, right, 'W' if wrap else 'N')


def parse_undo(text: str) -> Tuple[int, int, bool]:
    parts = text.strip().split(',')
    if len(parts) < 2:
        raise ValueError(f"bad {MP3GAIN_UNDO} value {text!r}")
    left, right = int(parts[0]), int(parts[1])
    wrap = len(parts) > 2 and parts[2].strip().upper().startswith('W')
    return left, right, wrap


def format_minmax(min_gain: int, max_gain: int) -> str:
    return "%03d,%03d" % (min_gain, max_gain)


def parse_minmax(text: str) -> Tuple[int, int]:
    parts = text.strip().split(',')
    if len(parts) != 2:
        raise ValueError(f"bad min/max value {text!r}")
    return int(parts[0]), int(parts[1])


def format_gain_db(db: float) -> str:
    return "%+.6f dB" % db


def parse_gain_db(text: str) -> float:
    text = text.strip()
    if text.lower().endswith('db'):
        text = text[:-2]
    return float(text)


def format_peak(peak: float) -> str:
    return "%.6f" % peak


# ---------- records ----------
@dataclass
class UndoRecord:
    """Net steps applied since the file was first edited, and the gain range
    the file had before that edit."""
    left_steps: int = 0
    right_steps: int = 0
    wrap: bool = False
    min_gain: Optional[int] = None
    max_gain: Optional[int] = None

    @property
    def is_identity(self) -> bool:
        return self.left_steps == 0 and self.right_steps == 0

    def add(self, left: int, right: int, wrap: bool = False) -> None:
        self.left_steps += left
        self.right_steps += right
        self.wrap = self.wrap or wrap

    def to_items(self) -> Dict[str, str]:
        items = {MP3GAIN_UNDO: format_undo(self.left_steps, self.right_steps, self.wrap)}
        if self.min_gain is not None and self.max_gain is not None:
            items[MP3GAIN_MINMAX] = format_minmax(self.min_gain, self.max_gain)
        return items

    def to_dict(self):
        return {
            'left_steps': self.left_steps,
            'right_steps': self.right_steps,
            'wrap': self.wrap,
            'min_gain': self.min_gain,
            'max_gain': self.max_gain,
        }


@dataclass
class ReplayGainInfo:
    track_gain: Optional[float] = None
    track_peak: Optional[float] = None
    album_gain: Optional[float] = None
    album_peak: Optional[float] = None

    def to_items(self) -> Dict[str, str]:
        items = {}
        if self.track_gain is not None:
            items[REPLAYGAIN_TRACK_GAIN] = format_gain_db(self.track_gain)
        if self.track_peak is not None:
            items[REPLAYGAIN_TRACK_PEAK] = format_peak(self.track_peak)
        if self.album_gain is not None:
            items[REPLAYGAIN_ALBUM_GAIN] = format_gain_db(self.album_gain)
        if self.album_peak is not None:
            items[REPLAYGAIN_ALBUM_PEAK] = format_peak(self.album_peak)
        return items

    @classmethod
    def from_items(cls, items: Dict[str, str]) -> 'ReplayGainInfo':
        info = cls()
        for key, attr, parse in ((REPLAYGAIN_TRACK_GAIN, 'track_gain', parse_gain_db),
                                 (REPLAYGAIN_TRACK_PEAK, 'track_peak', float),
                                 (REPLAYGAIN_ALBUM_GAIN, 'album_gain', parse_gain_db),
                                 (REPLAYGAIN_ALBUM_PEAK, 'album_peak', float)):
            text = get_item(items, key)
            if text is None:
                continue
            try:
                setattr(info, attr, parse(text))
            except ValueError:
                logger.warning("Ignoring unreadable %s value %r", key, text)
        return info


# ---------- item dict helpers (APE keys are case-insensitive) ----------
def _find_key(items: Dict[str, str], key: str) -> Optional[str]:
    wanted = key.upper()
    for existing in items:
        if existing.upper() == wanted:
            return existing
    return None


def get_item(items: Dict[str, str], key: str) -> Optional[str]:
    existing = _find_key(items, key)
    if existing is None or not isinstance(items[existing], str):
        return None
    return items[existing]


def set_items(items: Dict[str, str], updates: Dict[str, str]) -> None:
    for key, value in updates.items():
        existing = _find_key(items, key)
        items[existing if existing is not None else key] = value


def remove_items(items: Dict[str, str], *keys: str) -> int:
    removed = 0
    for key in keys:
        existing = _find_key(items, key)
        if existing is not None:
            del items[existing]
            removed += 1
    return removed


def remove_gain_items(items: Dict[str, str]) -> int:
    """Drop every MP3GAIN_* and REPLAYGAIN_* item."""
    doomed = [k for k in items if k.upper().startswith(GAIN_PREFIXES)]
    for key in doomed:
        del items[key]
    return len(doomed)


def read_undo_record(items: Dict[str, str], path: Optional[str] = None) -> Optional[UndoRecord]:
    undo_text = get_item(items, MP3GAIN_UNDO)
    if undo_text is None:
        return None
    try:
        left, right, wrap = parse_undo(undo_text)
    except ValueError:
        logger.warning("%s: unreadable %s value %r", path or '<buffer>', MP3GAIN_UNDO, undo_text)
        return None
    record = UndoRecord(left, right, wrap)
    minmax_text = get_item(items, MP3GAIN_MINMAX)
    if minmax_text is not None:
        try:
            record.min_gain, record.max_gain = parse_minmax(minmax_text)
        except ValueError:
            logger.warning("%s: unreadable %s value %r", path or '<buffer>', MP3GAIN_MINMAX, minmax_text)
    return record


# ---------- APEv2 in the trailing region ----------
def read_ape_items(data: bytes, region: Optional[TagRegion] = None,
                   path: Optional[str] = None) -> "OrderedDict[str, Any]":
    """Items of the trailing APE tag, in stored order.

    Text items come back as str. Binary and external items (cover art, links)
    keep their mutagen value so a rewritten tag still carries them.
    """
    if region is None:
        region = find_tag_region(data)
    items = OrderedDict()
    if not region.has_ape:
        return items
    try:
        tag = APEv2(io.BytesIO(bytes(data[region.ape_start:region.ape_end])))
    except APENoHeaderError:
        return items
    except APEError as e:
        logger.warning("%s: ignoring unreadable APE tag: %s", path or '<buffer>', e)
        return items
    for key, value in tag.items():
        items[key] = str(value) if isinstance(value, APETextValue) else value
    return items


def build_ape_tag(items: Dict[str, Any]) -> bytes:
    """Serialized APEv2 tag (header, items, footer). Empty when there are no items."""
    if not items:
        return b''
    tag = APEv2()
    for key, value in items.items():
        tag[key] = value
    buf = io.BytesIO()
    tag.save(buf)
    return buf.getvalue()


def with_tag_region(data: bytes, region: TagRegion, items: Dict[str, Any]) -> bytes:
    """`data` with its APE tag replaced by `items` and its ID3v1 tag kept.

    Everything before `region.audio_end` is copied as-is.
    """
    id3v1 = bytes(data[region.id3v1_start:]) if region.id3v1_start is not None else b''
    return bytes(data[:region.audio_end]) + build_ape_tag(items) + id3v1


# ---------- foreign records ----------
def foreign_gain_records(data: bytes) -> List[str]:
    """Names of MP3GAIN_* TXXX frames in a leading ID3v2 tag."""
    if data[:3] != b'ID3':
        return []
    try:
        id3 = ID3(io.BytesIO(bytes(data)))
    except ID3NoHeaderError:
        return []
    except MutagenError as e:
        logger.debug("Could not parse ID3v2 tag: %s", e)
        return []
    return [frame.desc for frame in id3.getall('TXXX') if frame.desc.upper().startswith('MP3GAIN_')]


def warn_foreign_records(data: bytes, path: Optional[str] = None) -> List[str]:
    names = foreign_gain_records(data)
    if names:
        logger.warning("%s: ignoring %s stored in ID3v2 TXXX frames; only APEv2 records are used",
                       path or '<buffer>', ", ".join(names))
    return names


# ---------- MP4 (metadata only) ----------
def _mp4_key(name: str) -> str:
    return MP4_FREEFORM + name.lower()


def read_mp4_items(path: str) -> Dict[str, str]:
    mp4 = MP4(path)
    items = {}
    if mp4.tags is None:
        return items
    for name in (REPLAYGAIN_TRACK_GAIN, REPLAYGAIN_TRACK_PEAK, REPLAYGAIN_ALBUM_GAIN, REPLAYGAIN_ALBUM_PEAK):
        values = mp4.tags.get(_mp4_key(name))
        if values:
            items[name] = bytes(values[0]).decode('utf-8', 'replace')
    return items


def write_mp4_replaygain(path: str, info: ReplayGainInfo) -> None:
    """Store ReplayGain values as iTunes freeform atoms (gain to 2 decimals)."""
    mp4 = MP4(path)
    if mp4.tags is None:
        mp4.add_tags()
    values = {
        REPLAYGAIN_TRACK_GAIN: None if info.track_gain is None else "%+.2f dB" % info.track_gain,
        REPLAYGAIN_TRACK_PEAK: None if info.track_peak is None else format_peak(info.track_peak),
        REPLAYGAIN_ALBUM_GAIN: None if info.album_gain is None else "%+.2f dB" % info.album_gain,
        REPLAYGAIN_ALBUM_PEAK: None if info.album_peak is None else format_peak(info.album_peak),
    }
    for name, text in values.items():
        if text is not None:
            mp4.tags[_mp4_key(name)] = [MP4FreeForm(text.encode('utf-8'))]
    mp4.save()


def delete_mp4_replaygain(path: str) -> int:
    mp4 = MP4(path)
    if mp4.tags is None:
        return 0
    doomed = [k for k in mp4.tags.keys() if k.lower().startswith(MP4_FREEFORM.lower() + 'replaygain_')]
    for key in doomed:
        del mp4.tags[key]
    if doomed:
        mp4.save()
    return len(doomed)
