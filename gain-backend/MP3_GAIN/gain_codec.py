"""
gain_codec.py

Read and write the 8-bit global_gain fields in a Layer III frame's side
information, without touching any other bit of the frame.

Side info layout (bits, big-endian, granule-major then channel):

  MPEG1:     main_data_begin(9) private(5 mono / 3 stereo) scfsi(4 per channel)
             then 2 granules x channels x 59 bits
  MPEG2/2.5: main_data_begin(8) private(1 mono / 2 stereo)
             then 1 granule x channels x 63 bits

Inside each granule/channel block global_gain starts after part2_3_length(12)
and big_values(9), i.e. 21 bits in. The field is rarely byte aligned.

Protected frames carry a CRC-16 over header bytes 2-3 and the side info; it is
recomputed after every write.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from MP3_GAIN.frames import MPEG1, Frame

logger = logging.getLogger(__name__)

GAIN_FIELD_BITS = 8
MIN_GAIN = 0
MAX_GAIN = 255


class Channel(enum.IntEnum):
    BOTH = -1
    LEFT = 0
    RIGHT = 1


@dataclass(frozen=True)
class GainLocation:
    byte_offset: int
    bit_offset: int
    granule: int
    channel: int


def gain_locations(frame: Frame) -> List[GainLocation]:
    """Absolute positions of every global_gain field in `frame`."""
    side_info_start = frame.offset + frame.side_info_offset
    channels = frame.channels

    if frame.version == MPEG1:
        bits_before_granules = 18 if channels == 1 else 20
        bits_per_block = 59
    else:
        bits_before_granules = 9 if channels == 1 else 10
        bits_per_block = 63

    locations = []
    for gr in range(frame.granules):
        for ch in range(channels):
            block_start = bits_before_granules + (gr * channels + ch) * bits_per_block
            gain_bit = block_start + 21
            locations.append(GainLocation(
                byte_offset=side_info_start + gain_bit // 8,
                bit_offset=gain_bit % 8,
                granule=gr,
                channel=ch,
            ))
    return locations


def select_locations(frame: Frame, channel: Channel = Channel.BOTH) -> List[GainLocation]:
    locations = gain_locations(frame)
    if channel == Channel.BOTH:
        return locations
    return [loc for loc in locations if loc.channel == int(channel)]


def side_info_complete(frame: Frame, limit: int) -> bool:
    return frame.offset + frame.side_info_offset + frame.side_info_size <= limit


# ---------- bit level access ----------
def read_gain(data: Sequence[int], loc: GainLocation) -> int:
    idx = loc.byte_offset
    shift = loc.bit_offset
    if shift == 0:
        return data[idx]
    return ((data[idx] << shift) & 0xFF) | (data[idx + 1] >> (8 - shift))


def write_gain(data: bytearray, loc: GainLocation, value: int) -> None:
    if not MIN_GAIN <= value <= MAX_GAIN:
        raise ValueError(f"gain value {value} does not fit in {GAIN_FIELD_BITS} bits")
    idx = loc.byte_offset
    shift = loc.bit_offset
    if shift == 0:
        data[idx] = value
        return
    mask_high = (0xFF << (8 - shift)) & 0xFF
    mask_low = 0xFF >> shift
    data[idx] = (data[idx] & mask_high) | (value >> shift)
    data[idx + 1] = (data[idx + 1] & mask_low) | ((value << (8 - shift)) & 0xFF)


# CRC16 (poly=0x8005, init=0xFFFF) as used by MPEG audio
def crc16_ibm(data: bytes, poly: int = 0x8005, init: int = 0xFFFF) -> int:
    crc = init
    for b in data:
        crc ^= (b << 8)
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ poly) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc & 0xFFFF


def frame_crc(data: Sequence[int], frame: Frame) -> int:
    start = frame.offset
    covered = bytes(data[start + 2:start + 4]) + bytes(data[start + 6:start + 6 + frame.side_info_size])
    return crc16_ibm(covered)


def update_crc(data: bytearray, frame: Frame) -> None:
    if not frame.protected:
        return
    crc = frame_crc(data, frame)
    data[frame.offset + 4] = crc >> 8
    data[frame.offset + 5] = crc & 0xFF


# ---------- frame level helpers ----------
def read_frame_gains(data: Sequence[int], frame: Frame, channel: Channel = Channel.BOTH) -> List[int]:
    return [read_gain(data, loc) for loc in select_locations(frame, channel)]


def write_frame_gains(data: bytearray, frame: Frame, values: Iterable[int],
                      channel: Channel = Channel.BOTH) -> None:
    locations = select_locations(frame, channel)
    values = list(values)
    if len(values) != len(locations):
        raise ValueError(f"expected {len(locations)} gain values, got {len(values)}")
    for loc, value in zip(locations, values):
        write_gain(data, loc, value)
    update_crc(data, frame)


def gain_capable(frame: Frame, limit: int) -> bool:
    """Frames the gain engine may read and modify."""
    return not frame.is_metadata and side_info_complete(frame, limit)


# ---------- statistics ----------
@dataclass
class FrameSummary:
    frame_count: int
    mpeg_version: str
    channel_mode: str
    samplerate: int
    min_gain: int
    max_gain: int
    avg_gain: float
    skipped_bytes: int = 0

    @property
    def headroom_steps(self) -> int:
        return MAX_GAIN - self.max_gain

    @property
    def headroom_db(self) -> float:
        return self.headroom_steps * 1.5

    def to_dict(self):
        return {
            'frame_count': self.frame_count,
            'mpeg_version': self.mpeg_version,
            'channel_mode': self.channel_mode,
            'samplerate': self.samplerate,
            'min_gain': self.min_gain,
            'max_gain': self.max_gain,
            'avg_gain': round(self.avg_gain, 2),
            'headroom_steps': self.headroom_steps,
            'headroom_db': self.headroom_db,
        }


def summarize(data: Sequence[int], frames: Iterable[Frame], limit: int,
              channel: Channel = Channel.BOTH) -> Optional[FrameSummary]:
    """Gain statistics over every gain-capable frame. None when there is none."""
    first = None
    count = 0
    total = 0
    fields = 0
    min_gain, max_gain = MAX_GAIN, MIN_GAIN
    for frame in frames:
        if not gain_capable(frame, limit):
            continue
        if first is None:
            first = frame
        count += 1
        for value in read_frame_gains(data, frame, channel):
            min_gain = min(min_gain, value)
            max_gain = max(max_gain, value)
            total += value
            fields += 1
    if first is None or fields == 0:
        return None
    return FrameSummary(
        frame_count=count,
        mpeg_version=first.version,
        channel_mode=first.channel_mode_name,
        samplerate=first.samplerate,
        min_gain=min_gain,
        max_gain=max_gain,
        avg_gain=total / fields,
    )
