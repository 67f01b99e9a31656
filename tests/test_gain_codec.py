import pytest

from MP3_GAIN.frames import scan_frames
from MP3_GAIN.gain_codec import (Channel, GainLocation, crc16_ibm, frame_crc, gain_locations, read_frame_gains,
                                 read_gain, select_locations, summarize, write_frame_gains, write_gain)

from mp3_fixtures import crc16, frame_gains, make_frame, make_stream, set_bits, gain_bit_positions


# ---------------------------------------------------------------------
# Bit level access
# ---------------------------------------------------------------------

def test_read_aligned():
    data = bytearray([0xAB, 0xCD, 0xEF, 0x12, 0x34])
    assert read_gain(data, GainLocation(1, 0, 0, 0)) == 0xCD


def test_read_unaligned():
    data = bytearray([0xAB, 0xCD, 0xEF, 0x12, 0x34])
    assert read_gain(data, GainLocation(1, 4, 0, 0)) == 0xDE


def test_write_unaligned_keeps_neighbouring_bits():
    data = bytearray([0xAB, 0xCD, 0xEF])
    write_gain(data, GainLocation(1, 4, 0, 0), 0x99)
    assert data == bytearray([0xAB, 0xC9, 0x9F])


def test_write_aligned():
    data = bytearray([0xAB, 0xCD, 0xEF])
    write_gain(data, GainLocation(1, 0, 0, 0), 0x42)
    assert data == bytearray([0xAB, 0x42, 0xEF])


def test_write_rejects_values_outside_byte():
    with pytest.raises(ValueError):
        write_gain(bytearray(4), GainLocation(0, 3, 0, 0), 256)


# ---------------------------------------------------------------------
# Side info layout
# ---------------------------------------------------------------------

@pytest.mark.parametrize('version,mode,expected_fields', [
    ('MPEG1', 'stereo', 4),
    ('MPEG1', 'mono', 2),
    ('MPEG2', 'stereo', 2),
    ('MPEG2', 'mono', 1),
    ('MPEG2.5', 'joint', 2),
])
def test_gain_locations_match_side_info_layout(version, mode, expected_fields):
    frame = next(scan_frames(make_stream(2, version=version, mode=mode)))
    locations = gain_locations(frame)
    assert len(locations) == expected_fields
    expected = gain_bit_positions(version, mode)
    assert [loc.byte_offset * 8 + loc.bit_offset for loc in locations] == expected


def test_mpeg1_stereo_first_gain_position():
    frame = next(scan_frames(make_stream(2)))
    first = gain_locations(frame)[0]
    assert (first.byte_offset, first.bit_offset) == (9, 1)


@pytest.mark.parametrize('version,mode,protected', [
    ('MPEG1', 'stereo', False),
    ('MPEG1', 'mono', True),
    ('MPEG2', 'stereo', True),
    ('MPEG2.5', 'mono', False),
])
def test_read_frame_gains(version, mode, protected):
    fields = len(gain_bit_positions(version, mode, protected))
    values = [10 + 37 * i for i in range(fields)]
    data = make_frame(values, version=version, mode=mode, protected=protected) * 2
    frame = next(scan_frames(data))
    assert read_frame_gains(data, frame) == values


def test_channel_selection():
    data = make_frame([1, 2, 3, 4]) * 2
    frame = next(scan_frames(data))
    assert read_frame_gains(data, frame, Channel.LEFT) == [1, 3]
    assert read_frame_gains(data, frame, Channel.RIGHT) == [2, 4]
    assert len(select_locations(frame, Channel.BOTH)) == 4


def test_write_touches_only_gain_bits():
    original = make_frame([100, 101, 102, 103]) + make_frame()
    data = bytearray(original)
    frame = next(scan_frames(bytes(data)))
    write_frame_gains(data, frame, [255, 0, 7, 200])
    assert frame_gains(bytes(data[:417])) == [255, 0, 7, 200]
    for pos, value in zip(gain_bit_positions(), [100, 101, 102, 103]):
        set_bits(data, pos, 8, value)
    assert bytes(data) == original


# ---------------------------------------------------------------------
# CRC
# ---------------------------------------------------------------------

def test_crc16_check_value():
    assert crc16_ibm(b'123456789') == 0xAEE7


def test_crc_recomputed_after_write():
    data = bytearray(make_frame(protected=True) * 2)
    frame = next(scan_frames(bytes(data)))
    assert (data[4] << 8 | data[5]) == frame_crc(data, frame)
    write_frame_gains(data, frame, [1, 2, 3, 4])
    expected = crc16(bytes(data[2:4]) + bytes(data[6:6 + 32]))
    assert (data[4] << 8 | data[5]) == expected


# ---------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------

def test_summarize():
    data = make_frame([100, 110, 120, 130]) + make_frame(140)
    summary = summarize(data, scan_frames(data), len(data))
    assert summary.frame_count == 2
    assert summary.min_gain == 100
    assert summary.max_gain == 140
    assert summary.avg_gain == pytest.approx((100 + 110 + 120 + 130 + 4 * 140) / 8)
    assert summary.headroom_steps == 115
    assert summary.mpeg_version == 'MPEG1'
    assert summary.channel_mode == 'Stereo'


def test_summarize_skips_truncated_side_info():
    data = make_stream(2, gains=150) + make_frame(gains=10)[:20]
    summary = summarize(data, scan_frames(data), len(data))
    assert summary.frame_count == 2
    assert summary.min_gain == 150
