"""
frames.py

Walk the MPEG audio frames of an MP3 byte buffer.

 - Skips a leading ID3v2 tag and any junk before the first frame.
 - Stops before the trailing tag region (APEv2 and/or ID3v1), which belongs to
   the tag manager.
 - Validates every header; frames must follow each other back to back. A header
   that does not sit where the previous frame says it should is a
   MalformedStream, unless resync is enabled, in which case the scanner looks
   for the next pair of valid headers and carries on.

Only Layer III (MPEG 1, 2 and 2.5) is recognised: it is the only layer with a
global_gain field to adjust.
"""

import logging
import struct
from dataclasses import dataclass, replace
from typing import Iterator, Optional

from MP3_GAIN.errors import MalformedStream

logger = logging.getLogger(__name__)

MPEG1 = 'MPEG1'
MPEG2 = 'MPEG2'
MPEG25 = 'MPEG2.5'

STEREO, JOINT_STEREO, DUAL_CHANNEL, MONO = 0, 1, 2, 3
CHANNEL_MODE_NAMES = {
    STEREO: 'Stereo',
    JOINT_STEREO: 'Joint Stereo',
    DUAL_CHANNEL: 'Dual Channel',
    MONO: 'Mono',
}

# ---------- header tables (Layer III) ----------
BITRATE_TABLE_V1_L3 = [0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 0]
BITRATE_TABLE_V2_L3 = [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160, 0]
SAMPLERATE_TABLE = {
    MPEG1: [44100, 48000, 32000],
    MPEG2: [22050, 24000, 16000],
    MPEG25: [11025, 12000, 8000],
}
VERSION_BITS = {0b11: MPEG1, 0b10: MPEG2, 0b00: MPEG25}

APE_PREAMBLE = b'APETAGEX'
APE_FLAG_HAS_HEADER = 1 << 31
ID3V1_SIZE = 128


@dataclass(frozen=True)
class Frame:
    offset: int
    version: str
    layer: int
    protected: bool
    bitrate_index: int
    bitrate: int
    samplerate_index: int
    samplerate: int
    padding: int
    channel_mode: int
    mode_extension: int
    length: int
    truncated: bool = False
    is_metadata: bool = False

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def channels(self) -> int:
        return 1 if self.channel_mode == MONO else 2

    @property
    def granules(self) -> int:
        return 2 if self.version == MPEG1 else 1

    @property
    def side_info_offset(self) -> int:
        # a 16-bit CRC follows the header when the protection bit is cleared
        return 6 if self.protected else 4

    @property
    def side_info_size(self) -> int:
        if self.version == MPEG1:
            return 17 if self.channel_mode == MONO else 32
        return 9 if self.channel_mode == MONO else 17

    @property
    def channel_mode_name(self) -> str:
        return CHANNEL_MODE_NAMES[self.channel_mode]

    @property
    def mid_side(self) -> bool:
        return self.channel_mode == JOINT_STEREO and bool(self.mode_extension & 0b10)


@dataclass(frozen=True)
class TagRegion:
    """Byte ranges of the trailing tag region. `audio_end` is where frames stop."""
    audio_end: int
    ape_start: Optional[int] = None
    ape_end: Optional[int] = None
    id3v1_start: Optional[int] = None

    @property
    def has_ape(self) -> bool:
        return self.ape_start is not None


# ---------- MP3 parsing helpers ----------
def is_frame_sync(header: bytes) -> bool:
    return len(header) >= 2 and header[0] == 0xFF and (header[1] & 0xE0) == 0xE0


def parse_frame_header(header: bytes, offset: int = 0) -> Optional[Frame]:
    """Parse a 4-byte frame header. Returns None for anything that is not a
    valid Layer III header."""
    if len(header) < 4 or not is_frame_sync(header):
        return None
    b1, b2, b3 = header[1], header[2], header[3]

    version = VERSION_BITS.get((b1 >> 3) & 0x03)
    if version is None:
        return None
    if (b1 >> 1) & 0x03 != 0b01:
        return None
    protected = (b1 & 0x01) == 0

    bitrate_index = (b2 >> 4) & 0x0F
    if bitrate_index in (0, 15):
        return None
    samplerate_index = (b2 >> 2) & 0x03
    if samplerate_index == 3:
        return None
    padding = (b2 >> 1) & 0x01
    channel_mode = (b3 >> 6) & 0x03
    mode_extension = (b3 >> 4) & 0x03

    if version == MPEG1:
        bitrate = BITRATE_TABLE_V1_L3[bitrate_index]
        coefficient = 144000
    else:
        bitrate = BITRATE_TABLE_V2_L3[bitrate_index]
        coefficient = 72000
    samplerate = SAMPLERATE_TABLE[version][samplerate_index]
    length = coefficient * bitrate // samplerate + padding

    return Frame(
        offset=offset,
        version=version,
        layer=3,
        protected=protected,
        bitrate_index=bitrate_index,
        bitrate=bitrate,
        samplerate_index=samplerate_index,
        samplerate=samplerate,
        padding=padding,
        channel_mode=channel_mode,
        mode_extension=mode_extension,
        length=length,
    )


def skip_id3v2(data: bytes) -> int:
    if len(data) < 10 or data[0:3] != b'ID3':
        return 0
    size = ((data[6] & 0x7F) << 21) | ((data[7] & 0x7F) << 14) | ((data[8] & 0x7F) << 7) | (data[9] & 0x7F)
    footer = 10 if data[5] & 0x10 else 0
    return min(len(data), 10 + size + footer)


def find_tag_region(data: bytes) -> TagRegion:
    """Locate an APEv2 tag and/or an ID3v1 tag at the end of the buffer."""
    end = len(data)
    id3v1_start = None
    if end >= ID3V1_SIZE and data[end - ID3V1_SIZE:end - ID3V1_SIZE + 3] == b'TAG':
        id3v1_start = end - ID3V1_SIZE
        end = id3v1_start

    footer_start = end - 32
    if footer_start < 0 or data[footer_start:footer_start + 8] != APE_PREAMBLE:
        return TagRegion(audio_end=end, id3v1_start=id3v1_start)

    _version, tag_size, _count, flags = struct.unpack('<4I', data[footer_start + 8:footer_start + 24])
    header_size = 32 if flags & APE_FLAG_HAS_HEADER else 0
    ape_start = end - tag_size - header_size
    if tag_size < 32 or ape_start < 0:
        logger.warning("Ignoring APE footer with impossible size %d", tag_size)
        return TagRegion(audio_end=end, id3v1_start=id3v1_start)
    return TagRegion(audio_end=ape_start, ape_start=ape_start, ape_end=end, id3v1_start=id3v1_start)


def _is_metadata_frame(data: bytes, frame: Frame) -> bool:
    """Xing/Info (LAME) and VBRI (Fraunhofer) frames hold VBR headers, not audio."""
    tag_pos = frame.offset + frame.side_info_offset + frame.side_info_size
    if data[tag_pos:tag_pos + 4] in (b'Xing', b'Info'):
        return True
    return data[frame.offset + 36:frame.offset + 40] == b'VBRI'


def find_first_frame(data: bytes, pos: int, end: int) -> Optional[int]:
    """Return the offset of the first header at or after `pos` that is followed
    by a consistent header (or by the end of the audio region)."""
    while pos + 4 <= end:
        if data[pos] != 0xFF:
            pos = data.find(b'\xff', pos + 1, end)
            if pos < 0:
                return None
            continue
        frame = parse_frame_header(data[pos:pos + 4], pos)
        if frame is not None:
            next_pos = frame.end
            if next_pos <= end and end - next_pos < 4:
                return pos
            if next_pos + 4 <= end:
                successor = parse_frame_header(data[next_pos:next_pos + 4], next_pos)
                if (successor is not None and successor.version == frame.version
                        and successor.samplerate == frame.samplerate):
                    return pos
        pos += 1
    return None


# ---------- core scanning ----------
class FrameScanner:
    """Restartable, lazy sequence of the Frames in `data`, in file order.

    Iterating twice walks the buffer twice; nothing is cached. `region` tells
    where the audio stops and the trailing tag region starts.
    """

    def __init__(self, data: bytes, path: Optional[str] = None, resync: bool = False):
        self.data = data
        self.path = path
        self.resync = resync
        self.region = find_tag_region(data)
        self.audio_start = skip_id3v2(data)
        self.skipped_bytes = 0

    def __iter__(self) -> Iterator[Frame]:
        return self._walk()

    def _walk(self) -> Iterator[Frame]:
        data = self.data
        end = self.region.audio_end
        self.skipped_bytes = 0

        pos = find_first_frame(data, self.audio_start, end)
        if pos is None:
            raise MalformedStream("no MPEG Layer III frames found", self.path)
        if pos > self.audio_start:
            logger.debug("First frame at byte %d, %d leading bytes kept as-is", pos, pos - self.audio_start)

        first = None
        while pos < end:
            if end - pos < 4:
                logger.debug("Ignoring %d trailing bytes after the last frame", end - pos)
                break
            frame = parse_frame_header(data[pos:pos + 4], pos)
            reason = "invalid frame header at frame boundary"
            if frame is not None and first is not None and (
                    frame.version != first.version or frame.samplerate != first.samplerate):
                reason = (f"inconsistent frame header at frame boundary ({frame.version}, {frame.samplerate} Hz "
                          f"after {first.version}, {first.samplerate} Hz)")
                frame = None
            if frame is None:
                if not self.resync:
                    raise MalformedStream(reason, self.path, pos)
                next_pos = find_first_frame(data, pos + 1, end)
                if next_pos is None:
                    logger.warning("%s: %d bytes of non-frame data before the tag region",
                                   self.path or '<buffer>', end - pos)
                    self.skipped_bytes += end - pos
                    break
                logger.warning("%s: resynchronised, skipped %d bytes at byte %d",
                               self.path or '<buffer>', next_pos - pos, pos)
                self.skipped_bytes += next_pos - pos
                pos = next_pos
                continue

            if frame.end > end:
                logger.warning("%s: final frame at byte %d is truncated (%d of %d bytes)",
                               self.path or '<buffer>', pos, end - pos, frame.length)
                yield replace(frame, truncated=True, is_metadata=_is_metadata_frame(data, frame))
                break

            if first is None:
                first = frame
            yield replace(frame, is_metadata=_is_metadata_frame(data, frame))
            pos = frame.end


def scan_frames(data: bytes, path: Optional[str] = None, resync: bool = False) -> Iterator[Frame]:
    return iter(FrameScanner(data, path=path, resync=resync))
