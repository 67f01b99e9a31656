import pytest

from MP3_GAIN.config import GainOptions, get_processing_options
from MP3_GAIN.transform import RangePolicy

ENV_NAMES = ('MP3GAIN_RANGE_POLICY', 'MP3GAIN_RESYNC', 'MP3GAIN_PREVENT_CLIPPING', 'MP3GAIN_SAFE_WRITE',
             'MP3GAIN_PRESERVE_TIMES', 'MP3GAIN_RESAMPLE_UNSUPPORTED', 'MP3GAIN_DECODER', 'MP3GAIN_WORKERS',
             'MP3GAIN_LOG_LEVEL')


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    opts = get_processing_options()
    assert opts['range_policy'] == 'clamp'
    assert opts['resync'] is False
    assert opts['decoder'] == 'librosa'
    assert opts['log_level'] == 'INFO'
    assert GainOptions.from_env() == GainOptions()


def test_environment(monkeypatch):
    monkeypatch.setenv('MP3GAIN_RANGE_POLICY', 'STRICT')
    monkeypatch.setenv('MP3GAIN_PREVENT_CLIPPING', 'true')
    monkeypatch.setenv('MP3GAIN_PRESERVE_TIMES', 'True')
    monkeypatch.setenv('MP3GAIN_DECODER', 'pydub')
    monkeypatch.setenv('MP3GAIN_WORKERS', '0')
    options = GainOptions.from_env()
    assert options.range_policy is RangePolicy.STRICT
    assert options.prevent_clipping
    assert options.preserve_times
    assert options.decoder == 'pydub'
    assert options.workers == 1


def test_overrides_win(monkeypatch):
    monkeypatch.setenv('MP3GAIN_RESYNC', 'true')
    assert GainOptions.from_env(resync=False).resync is False


def test_bad_policy(monkeypatch):
    monkeypatch.setenv('MP3GAIN_RANGE_POLICY', 'sometimes')
    with pytest.raises(ValueError):
        GainOptions.from_env()
