"""
transform.py

Turn a requested adjustment into new global_gain values.

One step of the field is 1.5 dB (a factor of 2^(1/4) in amplitude). The range
policy decides what happens at the edges of the 8-bit field:

  clamp  (default) saturate at 0 / 255 and report a clamp event
  wrap   modulo 256, as the legacy tool does with its wrap option
  strict refuse with OutOfRangeGain before anything is written
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from MP3_GAIN.errors import OutOfRangeGain
from MP3_GAIN.frames import Frame
from MP3_GAIN.gain_codec import (MAX_GAIN, MIN_GAIN, gain_capable, gain_locations,
                                 read_gain, update_crc, write_gain)

logger = logging.getLogger(__name__)

GAIN_STEP_DB = 1.5
CLIP_CEILING = 32767.0


class RangePolicy(enum.Enum):
    CLAMP = 'clamp'
    WRAP = 'wrap'
    STRICT = 'strict'


def db_to_steps(db: float) -> int:
    """Nearest whole step, halves rounded away from zero."""
    steps = math.floor(abs(db) / GAIN_STEP_DB + 0.5)
    return int(steps if db >= 0 else -steps)


def steps_to_db(steps: int) -> float:
    return steps * GAIN_STEP_DB


def adjust_value(value: int, delta: int, policy: RangePolicy = RangePolicy.CLAMP) -> Tuple[int, bool]:
    """Return (new value, clamped)."""
    raw = value + delta
    if policy == RangePolicy.WRAP:
        return raw % 256, False
    if MIN_GAIN <= raw <= MAX_GAIN:
        return raw, False
    if policy == RangePolicy.STRICT:
        raise OutOfRangeGain(f"gain {value} {delta:+d} leaves the range {MIN_GAIN}..{MAX_GAIN}")
    return min(MAX_GAIN, max(MIN_GAIN, raw)), True


# ---------- clipping prevention ----------
def clip_safe_steps(peak: float, ceiling: float = CLIP_CEILING) -> Optional[int]:
    """Largest step count that keeps `peak` (16-bit scale) at or below `ceiling`."""
    if peak <= 0:
        return None
    return math.floor(4.0 * math.log2(ceiling / peak))


def limit_for_clipping(requested: int, peak: Optional[float] = None, max_gain: Optional[int] = None,
                       ceiling: float = CLIP_CEILING) -> Tuple[int, int]:
    """Cap a positive adjustment so it does not clip.

    With a known sample peak the cap comes from the peak; otherwise it is the
    headroom left in the gain field. Never raises the request, and leaves
    negative requests alone.

    Returns:
        (applied steps, steps the request was reduced by)
    """
    if requested <= 0:
        return requested, 0
    if peak is not None:
        limit = clip_safe_steps(peak, ceiling)
    elif max_gain is not None:
        limit = MAX_GAIN - max_gain
    else:
        limit = None
    if limit is None or requested <= limit:
        return requested, 0
    limit = max(0, limit)
    return limit, requested - limit


# ---------- frame transforms ----------
@dataclass
class TransformReport:
    requested_left: int
    requested_right: int
    applied_left: int
    applied_right: int
    policy: RangePolicy
    frames_modified: int = 0
    fields_modified: int = 0
    clamp_events: int = 0
    clipping_reduced_by: int = 0
    min_before: Optional[int] = None
    max_before: Optional[int] = None
    notes: List[str] = field(default_factory=list)

    @property
    def wrapped(self) -> bool:
        return self.policy == RangePolicy.WRAP

    def to_dict(self):
        return {
            'frames_modified': self.frames_modified,
            'clipping_reduced_by': self.clipping_reduced_by,
            'requested_steps': [self.requested_left, self.requested_right],
            'applied_steps': [self.applied_left, self.applied_right],
            'applied_db': [steps_to_db(self.applied_left), steps_to_db(self.applied_right)],
            'clamp_events': self.clamp_events,
            'policy': self.policy.value,
            'notes': list(self.notes),
        }


def channel_delta(channel: int, left: int, right: int) -> int:
    return left if channel == 0 else right


def gain_range(data: Sequence[int], frames: Sequence[Frame], limit: int) -> Tuple[Optional[int], Optional[int]]:
    values = [read_gain(data, loc) for frame in frames if gain_capable(frame, limit)
              for loc in gain_locations(frame)]
    if not values:
        return None, None
    return min(values), max(values)


def apply_deltas(data: bytearray, frames: Sequence[Frame], left: int, right: int, limit: int,
                 policy: RangePolicy = RangePolicy.CLAMP, report: Optional[TransformReport] = None) -> TransformReport:
    """Add `left` to every channel-0 gain field and `right` to every channel-1
    field (mono frames only have channel 0). Mutates `data` in place."""
    if report is None:
        report = TransformReport(left, right, left, right, policy)
    report.min_before, report.max_before = gain_range(data, frames, limit)

    targets = [f for f in frames if gain_capable(f, limit)]

    if policy == RangePolicy.STRICT:
        # check everything first so a refusal leaves the buffer untouched
        for frame in targets:
            for loc in gain_locations(frame):
                adjust_value(read_gain(data, loc), channel_delta(loc.channel, left, right), policy)

    for frame in targets:
        touched = False
        for loc in gain_locations(frame):
            delta = channel_delta(loc.channel, left, right)
            if delta == 0:
                continue
            new_value, clamped = adjust_value(read_gain(data, loc), delta, policy)
            if clamped:
                report.clamp_events += 1
            write_gain(data, loc, new_value)
            report.fields_modified += 1
            touched = True
        if touched:
            update_crc(data, frame)
            report.frames_modified += 1

    if report.clamp_events:
        logger.warning("%d gain field(s) saturated at %d..%d (requested %+d/%+d steps)",
                       report.clamp_events, MIN_GAIN, MAX_GAIN, left, right)
        report.notes.append(f"{report.clamp_events} gain field(s) clamped")
    return report
