"""
config.py

Processing defaults, read from MP3GAIN_* environment variables.
"""

import os
from dataclasses import dataclass, replace

from MP3_GAIN.transform import RangePolicy


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() == 'true'


def get_processing_options():
    """Return a dict of processing options from environment variables.

    Returns:
        Dictionary with processing options:
        - range_policy: 'clamp', 'wrap' or 'strict'
        - resync: scan forward past junk between frames instead of failing
        - prevent_clipping: cap positive adjustments at the clipping limit
        - safe_write: fsync the temporary file before it replaces the original
        - preserve_times: keep the original access/modification times
        - decoder: decoder backend used for analysis
        - workers: threads used for per-file album analysis
        - log_level: logging level name
    """
    return {
        'range_policy': os.environ.get('MP3GAIN_RANGE_POLICY', 'clamp').lower(),
        'resync': _env_flag('MP3GAIN_RESYNC'),
        'prevent_clipping': _env_flag('MP3GAIN_PREVENT_CLIPPING'),
        'safe_write': _env_flag('MP3GAIN_SAFE_WRITE'),
        'preserve_times': _env_flag('MP3GAIN_PRESERVE_TIMES'),
        'resample_unsupported': _env_flag('MP3GAIN_RESAMPLE_UNSUPPORTED'),
        'decoder': os.environ.get('MP3GAIN_DECODER', 'librosa').lower(),
        'workers': int(os.environ.get('MP3GAIN_WORKERS', '4')),
        'log_level': os.environ.get('MP3GAIN_LOG_LEVEL', 'INFO').upper(),
    }


@dataclass(frozen=True)
class GainOptions:
    range_policy: RangePolicy = RangePolicy.CLAMP
    resync: bool = False
    prevent_clipping: bool = False
    safe_write: bool = False
    preserve_times: bool = False
    resample_unsupported: bool = False
    decoder: str = 'librosa'
    workers: int = 4

    @classmethod
    def from_env(cls, **overrides) -> 'GainOptions':
        opts = get_processing_options()
        base = cls(
            range_policy=RangePolicy(opts['range_policy']),
            resync=opts['resync'],
            prevent_clipping=opts['prevent_clipping'],
            safe_write=opts['safe_write'],
            preserve_times=opts['preserve_times'],
            resample_unsupported=opts['resample_unsupported'],
            decoder=opts['decoder'],
            workers=max(1, opts['workers']),
        )
        return replace(base, **overrides)
