import pytest

from MP3_GAIN.errors import MalformedStream
from MP3_GAIN.frames import (MPEG1, MPEG2, MPEG25, FrameScanner, find_tag_region, parse_frame_header,
                             scan_frames, skip_id3v2)
from MP3_GAIN.tags import build_ape_tag

from mp3_fixtures import id3v1_tag, id3v2_tag, make_frame, make_stream


# ---------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------

def test_parse_mpeg1_header():
    frame = parse_frame_header(make_frame()[:4], 0)
    assert frame.version == MPEG1
    assert frame.bitrate == 128
    assert frame.samplerate == 44100
    assert frame.length == 417
    assert frame.channels == 2
    assert frame.granules == 2
    assert frame.side_info_size == 32
    assert not frame.protected


def test_padding_adds_one_byte():
    frame = parse_frame_header(make_frame(padding=1)[:4], 0)
    assert frame.length == 418


def test_parse_mpeg2_and_mpeg25_headers():
    mpeg2 = parse_frame_header(make_frame(version='MPEG2', mode='mono')[:4], 0)
    assert mpeg2.version == MPEG2
    assert mpeg2.samplerate == 22050
    assert mpeg2.length == 208
    assert mpeg2.granules == 1
    assert mpeg2.side_info_size == 9

    mpeg25 = parse_frame_header(make_frame(version='MPEG2.5')[:4], 0)
    assert mpeg25.version == MPEG25
    assert mpeg25.samplerate == 11025
    assert mpeg25.side_info_size == 17


def test_protected_frame_has_crc_before_side_info():
    frame = parse_frame_header(make_frame(protected=True)[:4], 0)
    assert frame.protected
    assert frame.side_info_offset == 6


@pytest.mark.parametrize('header', [
    b'\xff\xfd\x90\x00',  # layer II
    b'\xff\xfb\xf0\x00',  # bitrate index 15
    b'\xff\xfb\x00\x00',  # free format
    b'\xff\xfb\x9c\x00',  # sample rate index 3
    b'\xff\xeb\x90\x00',  # reserved version
    b'\xfe\xfb\x90\x00',  # no sync
])
def test_invalid_headers_are_rejected(header):
    assert parse_frame_header(header, 0) is None


def test_joint_stereo_mid_side_flag():
    frame = parse_frame_header(make_frame(mode='joint', mode_extension=0b10)[:4], 0)
    assert frame.mid_side
    frame = parse_frame_header(make_frame(mode='joint', mode_extension=0b01)[:4], 0)
    assert not frame.mid_side


# ---------------------------------------------------------------------
# Leading and trailing regions
# ---------------------------------------------------------------------

def test_skip_id3v2():
    tag = id3v2_tag(padding=100)
    assert skip_id3v2(tag + make_stream(2)) == len(tag)
    assert skip_id3v2(make_stream(2)) == 0


def test_find_tag_region_with_ape_and_id3v1():
    audio = make_stream(3)
    ape = build_ape_tag({'MP3GAIN_UNDO': '+002,+002,N'})
    v1 = id3v1_tag()
    region = find_tag_region(audio + ape + v1)
    assert region.audio_end == len(audio)
    assert region.ape_start == len(audio)
    assert region.ape_end == len(audio) + len(ape)
    assert region.id3v1_start == len(audio) + len(ape)


def test_find_tag_region_without_tags():
    audio = make_stream(3)
    region = find_tag_region(audio)
    assert region.audio_end == len(audio)
    assert not region.has_ape
    assert region.id3v1_start is None


# ---------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------

def test_scan_yields_every_frame_in_order():
    data = make_stream(5)
    frames = list(scan_frames(data))
    assert [f.offset for f in frames] == [0, 417, 834, 1251, 1668]
    assert all(f.length == 417 for f in frames)


def test_scan_skips_id3v2_and_stops_at_tags():
    lead = id3v2_tag()
    audio = make_stream(4)
    data = lead + audio + build_ape_tag({'REPLAYGAIN_TRACK_GAIN': '-1.000000 dB'}) + id3v1_tag()
    frames = list(scan_frames(data))
    assert len(frames) == 4
    assert frames[0].offset == len(lead)
    assert frames[-1].end == len(lead) + len(audio)


def test_scanner_is_restartable():
    scanner = FrameScanner(make_stream(3))
    assert list(scanner) == list(scanner)


def test_strict_scan_fails_on_junk_between_frames():
    data = make_stream(2) + b'\x00' * 37 + make_stream(3)
    with pytest.raises(MalformedStream) as excinfo:
        list(scan_frames(data, path='song.mp3'))
    assert excinfo.value.offset == 834
    assert 'song.mp3' in str(excinfo.value)


def test_resync_skips_junk_between_frames():
    data = make_stream(2) + b'\x00' * 37 + make_stream(3)
    scanner = FrameScanner(data, resync=True)
    frames = list(scanner)
    assert len(frames) == 5
    assert frames[2].offset == 834 + 37
    assert scanner.skipped_bytes == 37


def test_strict_scan_rejects_version_change_mid_stream():
    data = make_stream(2) + make_frame(version=MPEG2) + make_stream(2)
    with pytest.raises(MalformedStream) as excinfo:
        list(scan_frames(data, path='mixed.mp3'))
    assert excinfo.value.offset == 834
    assert 'inconsistent' in str(excinfo.value)


def test_resync_skips_frame_with_other_version():
    data = make_stream(2) + make_frame(version=MPEG2) + make_stream(2)
    scanner = FrameScanner(data, resync=True)
    frames = list(scanner)
    assert len(frames) == 4
    assert all(f.version == MPEG1 for f in frames)
    assert frames[2].offset == 834 + 208
    assert scanner.skipped_bytes == 208


def test_truncated_final_frame():
    data = make_stream(3) + make_frame()[:100]
    frames = list(scan_frames(data))
    assert len(frames) == 4
    assert frames[-1].truncated
    assert not any(f.truncated for f in frames[:-1])


def test_tiny_trailing_fragment_is_ignored():
    data = make_stream(3) + b'\x00\x00'
    assert len(list(scan_frames(data))) == 3


def test_no_frames_is_malformed():
    with pytest.raises(MalformedStream):
        list(scan_frames(b'\x00' * 2000))


def test_xing_frame_is_metadata():
    first = bytearray(make_frame())
    xing_at = 4 + 32
    first[xing_at:xing_at + 4] = b'Xing'
    data = bytes(first) + make_stream(3)
    frames = list(scan_frames(data))
    assert frames[0].is_metadata
    assert not any(f.is_metadata for f in frames[1:])


def test_junk_before_first_frame_is_skipped():
    data = b'\x00\x01\x02' * 10 + make_stream(3)
    frames = list(scan_frames(data))
    assert frames[0].offset == 30
