"""
decoder.py

Decode a file to float PCM for loudness analysis.

Backends: librosa (default), soundfile, pydub (needs ffmpeg). All return
samples shaped (channels, n) in [-1, 1) and the native sample rate.
"""

import logging
import os

import librosa
import numpy as np
import soundfile as sf
from pydub import AudioSegment

from MP3_GAIN.errors import DecodeFailure
from MP3_GAIN.replaygain import SUPPORTED_SAMPLERATES

logger = logging.getLogger(__name__)

DECODERS = ('librosa', 'soundfile', 'pydub')
RESAMPLE_TARGET = 44100


def _read_librosa(path):
    y, sr = librosa.load(path, sr=None, mono=False)  # y shape: (n,) or (channels, n)
    if y.ndim == 1:
        y = np.expand_dims(y, 0)
    return y, sr


def _read_soundfile(path):
    data, sr = sf.read(path, dtype='float32', always_2d=True)
    return data.T, sr


def _read_pydub(path):
    audio = AudioSegment.from_file(path)
    sr = audio.frame_rate
    samples = np.array(audio.get_array_of_samples())
    channels = audio.channels
    samples = samples.reshape((-1, channels)).T.astype(np.float32)
    # convert from PCM range to [-1,1] using sample_width
    max_val = float(1 << (8 * audio.sample_width - 1))
    return samples / max_val, sr


_BACKENDS = {
    'librosa': _read_librosa,
    'soundfile': _read_soundfile,
    'pydub': _read_pydub,
}


def read_audio_float(path, backend=None, resample_unsupported=False):
    """Return (samples, samplerate) with samples shaped (channels, n).

    With `resample_unsupported`, audio at a rate the loudness filters have no
    coefficients for is resampled to 44.1 kHz first.
    """
    backend = backend or 'librosa'
    if backend not in _BACKENDS:
        raise DecodeFailure(f"unknown decoder '{backend}' (choose from {', '.join(DECODERS)})", path)
    if not os.path.isfile(path):
        raise DecodeFailure("file not found", path)
    try:
        y, sr = _BACKENDS[backend](path)
    except Exception as e:
        raise DecodeFailure(f"{backend} could not decode the file: {e}", path) from e

    if y.shape[-1] == 0:
        raise DecodeFailure("decoded stream is empty", path)

    if sr not in SUPPORTED_SAMPLERATES and resample_unsupported:
        logger.info("%s: resampling %d Hz to %d Hz for analysis", path, sr, RESAMPLE_TARGET)
        y = librosa.resample(y, orig_sr=sr, target_sr=RESAMPLE_TARGET)
        sr = RESAMPLE_TARGET
    return np.asarray(y, dtype=np.float64), int(sr)
