import math

import numpy as np
import pytest
from scipy.signal import freqz

from MP3_GAIN.errors import DecodeFailure
from MP3_GAIN.replaygain import (ABBUTTER, ABYULE, HISTOGRAM_SIZE, PINK_REF, REFERENCE_LEVEL_DB,
                                 SUPPORTED_SAMPLERATES, AnalysisContext, analyze_pcm, energy_to_bucket,
                                 filter_coefficients, histogram_gain, pool_album, split_coefficients,
                                 window_length)


def sine(freq, seconds, samplerate, amplitude, channels=2):
    t = np.arange(int(seconds * samplerate)) / samplerate
    tone = amplitude * np.sin(2 * np.pi * freq * t)
    return np.tile(tone, (channels, 1))


# ---------------------------------------------------------------------
# Coefficient table
# ---------------------------------------------------------------------

def test_table_covers_the_nine_rates():
    assert sorted(SUPPORTED_SAMPLERATES) == [8000, 11025, 12000, 16000, 22050, 24000, 32000, 44100, 48000]
    assert set(ABYULE) == set(ABBUTTER)
    for rate in SUPPORTED_SAMPLERATES:
        assert len(ABYULE[rate]) == 21
        assert len(ABBUTTER[rate]) == 5


@pytest.mark.parametrize('rate,yule_first,yule_last,butter_b0,butter_a1', [
    (48000, 0.03857599435200, 0.00288463683916, 0.98621192462708, -1.97223372919527),
    (44100, 0.05418656406430, -0.00187763777362, 0.98500175787242, -1.96977855582618),
    (32000, 0.15457299681924, -0.00881362733839, 0.97938932735214, -1.95835380975398),
    (24000, 0.30296907319327, -0.02950134983287, 0.97531843204928, -1.95002759149878),
    (22050, 0.33642304856132, -0.01760176568150, 0.97316523498161, -1.94561023566527),
    (16000, 0.44915256608450, 0.00541907748707, 0.96454515552826, -1.92783286977036),
    (12000, 0.56619470757641, -0.00588215443421, 0.96009142950541, -1.91858953033784),
    (11025, 0.58100494960553, -0.00749618797172, 0.95856916599601, -1.91542108074780),
    (8000, 0.53648789255105, -0.02217936801134, 0.94597685600279, -1.88903307939452),
])
def test_rows_are_assigned_to_the_right_rate(rate, yule_first, yule_last, butter_b0, butter_a1):
    coeffs = filter_coefficients(rate)
    b, a = coeffs['yule']
    assert b[0] == yule_first
    assert b[-1] == yule_last
    b, a = coeffs['butter']
    assert b[0] == butter_b0
    assert b[-1] == butter_b0
    assert a[1] == butter_a1


def test_yule_feedback_terms():
    b, a = filter_coefficients(44100)['yule']
    assert a[1] == -3.47845948550071
    b, a = filter_coefficients(48000)['yule']
    assert a[1] == -3.84664617118067


def test_split_coefficients():
    b, a = split_coefficients(ABYULE[44100])
    assert len(b) == 11
    assert len(a) == 11
    assert a[0] == 1.0
    b, a = split_coefficients(ABBUTTER[44100])
    assert len(b) == 3 and len(a) == 3


@pytest.mark.parametrize('rate', SUPPORTED_SAMPLERATES)
def test_filters_are_stable(rate):
    for b, a in filter_coefficients(rate).values():
        assert np.abs(np.roots(a)).max() < 1.0


@pytest.mark.parametrize('rate', SUPPORTED_SAMPLERATES)
def test_butterworth_is_a_unity_high_pass(rate):
    b, a = filter_coefficients(rate)['butter']
    assert b[0] == pytest.approx(b[2])
    assert b[1] == pytest.approx(-2 * b[0])
    # zero at DC, unity at Nyquist
    assert abs(sum(b)) < 1e-9
    nyquist = (b[0] - b[1] + b[2]) / (a[0] - a[1] + a[2])
    assert nyquist == pytest.approx(1.0, abs=1e-6)


def test_unsupported_rate():
    with pytest.raises(DecodeFailure):
        filter_coefficients(96000)
    with pytest.raises(DecodeFailure):
        AnalysisContext(96000, 2)


@pytest.mark.parametrize('rate,window', [
    (48000, 2400), (44100, 2205), (32000, 1600), (22050, 1103), (11025, 552), (8000, 400),
])
def test_window_length_rounds_up(rate, window):
    assert window_length(rate) == window


# ---------------------------------------------------------------------
# Histogram and calibration
# ---------------------------------------------------------------------

def test_reference_constants():
    assert REFERENCE_LEVEL_DB == 89.0
    assert PINK_REF == pytest.approx(89.0 - 24.18)


def test_constant_energy_golden_gain():
    hist = np.zeros(HISTOGRAM_SIZE, dtype=np.int64)
    hist[energy_to_bucket(1e6)] += 200
    assert energy_to_bucket(1e6) == 6000
    assert histogram_gain(hist) == pytest.approx(4.82)


def test_empty_histogram_has_no_gain():
    assert histogram_gain(np.zeros(HISTOGRAM_SIZE, dtype=np.int64)) is None


def test_percentile_count_rounds_up_like_legacy():
    # ceil(100 * (1 - 0.95)) is 6 in double precision
    hist = np.zeros(HISTOGRAM_SIZE, dtype=np.int64)
    hist[1000] = 94
    hist[5000] = 6
    assert histogram_gain(hist) == pytest.approx(PINK_REF - 50.0)
    hist[1000] = 95
    hist[5000] = 5
    assert histogram_gain(hist) == pytest.approx(PINK_REF - 10.0)


def test_bucket_index_is_clamped():
    assert energy_to_bucket(0.0) == 0
    assert energy_to_bucket(1e30) == HISTOGRAM_SIZE - 1


def test_sine_calibration_golden():
    rate, freq, amplitude = 44100, 1000.0, 0.25
    stats = analyze_pcm(sine(freq, 10, rate, amplitude), rate)

    coeffs = filter_coefficients(rate)
    response = 1.0
    for b, a in coeffs.values():
        _, h = freqz(b, a, worN=[2 * np.pi * freq / rate])
        response *= abs(h[0])
    mean_square = (amplitude * 32768 * response) ** 2 / 2
    expected = PINK_REF - math.floor(1000 * math.log10(mean_square)) / 100

    assert stats.gain_db == pytest.approx(expected, abs=0.1)
    assert stats.window_count == 200
    assert stats.peak == pytest.approx(amplitude * 32768, rel=1e-3)


@pytest.mark.parametrize('amplitude,gain', [(0.25, -2.13), (0.5, -8.15)])
def test_sine_gain_fixed_values(amplitude, gain):
    stats = analyze_pcm(sine(1000.0, 10, 44100, amplitude), 44100)
    assert stats.gain_db == pytest.approx(gain, abs=0.005)


def test_louder_signal_gets_less_gain():
    quiet = analyze_pcm(sine(1000, 3, 44100, 0.1), 44100)
    loud = analyze_pcm(sine(1000, 3, 44100, 0.2), 44100)
    # twice the amplitude is 6.02 dB louder
    assert quiet.gain_db - loud.gain_db == pytest.approx(6.02, abs=0.05)


# ---------------------------------------------------------------------
# Context behaviour
# ---------------------------------------------------------------------

def test_mono_matches_identical_stereo():
    mono = analyze_pcm(sine(440, 2, 48000, 0.3, channels=1), 48000)
    stereo = analyze_pcm(sine(440, 2, 48000, 0.3, channels=2), 48000)
    assert mono.gain_db == stereo.gain_db
    np.testing.assert_allclose(mono.energies, stereo.energies)


def test_chunking_does_not_change_results():
    samples = sine(523.25, 2, 22050, 0.4)
    whole = analyze_pcm(samples, 22050, chunk_size=len(samples[0]))
    pieces = analyze_pcm(samples, 22050, chunk_size=777)
    np.testing.assert_allclose(whole.energies, pieces.energies, rtol=1e-9)
    assert whole.gain_db == pytest.approx(pieces.gain_db)


def test_partial_window_is_discarded():
    samples = sine(1000, 1, 44100, 0.5)[:, :2205 * 3 + 100]
    stats = analyze_pcm(samples, 44100)
    assert stats.window_count == 3
    assert len(stats.energies) == 3


def test_too_short_for_one_window():
    stats = analyze_pcm(sine(1000, 1, 44100, 0.5)[:, :1000], 44100)
    assert stats.gain_db is None
    assert stats.loudness_db is None


def test_channel_count_must_match_context():
    ctx = AnalysisContext(44100, 2)
    with pytest.raises(DecodeFailure):
        ctx.feed(np.zeros((1, 100)))


def test_contexts_are_independent():
    a = AnalysisContext(44100, 2)
    b = AnalysisContext(44100, 2)
    a.feed(sine(1000, 1, 44100, 0.5))
    assert b.histogram.sum() == 0
    assert b.peak == 0.0


def test_statistics_report():
    stats = analyze_pcm(sine(1000, 2, 44100, 0.5), 44100, path='tone.wav')
    info = stats.to_dict()
    assert info['path'] == 'tone.wav'
    assert info['windows'] == 40
    assert stats.loudness_db == pytest.approx(REFERENCE_LEVEL_DB - stats.gain_db)
    assert stats.min_energy_db <= stats.max_energy_db


# ---------------------------------------------------------------------
# Album pooling
# ---------------------------------------------------------------------

def test_album_pools_histograms():
    quiet = analyze_pcm(sine(1000, 3, 44100, 0.05), 44100)
    loud = analyze_pcm(sine(1000, 1, 44100, 0.5), 44100)
    album = pool_album([quiet, loud])

    np.testing.assert_array_equal(album.histogram, quiet.histogram + loud.histogram)
    pooled = np.bincount(energy_to_bucket(np.concatenate([quiet.energies, loud.energies])),
                         minlength=HISTOGRAM_SIZE)
    np.testing.assert_array_equal(album.histogram, pooled)
    assert album.gain_db == histogram_gain(pooled)
    assert album.peak == max(quiet.peak, loud.peak)
    assert loud.gain_db <= album.gain_db <= quiet.gain_db


def test_single_track_album_equals_track():
    track = analyze_pcm(sine(1000, 2, 44100, 0.3), 44100)
    assert pool_album([track]).gain_db == track.gain_db
