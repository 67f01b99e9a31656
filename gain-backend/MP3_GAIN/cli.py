"""
cli.py

Command line front end.

    python -m MP3_GAIN.cli info song.mp3
    python -m MP3_GAIN.cli apply -g 2 song.mp3
    python -m MP3_GAIN.cli apply -d -4.5 -l 1 song.mp3
    python -m MP3_GAIN.cli analyze -a -s disc1/*.mp3
    python -m MP3_GAIN.cli album-gain -k disc1/*.mp3
    python -m MP3_GAIN.cli undo song.mp3

Exit status is 1 when any file failed.
"""

import argparse
import logging
import sys
from typing import List, Optional

from MP3_GAIN.config import GainOptions, get_processing_options
from MP3_GAIN.errors import AlbumAggregationError, Mp3GainError
from MP3_GAIN.gain_codec import Channel
from MP3_GAIN.pipeline import (FileOutcome, analyze, apply_album_gain, apply_gain, apply_track_gain,
                               delete_tags, inspect, process_batch, read_gain_tags, undo)
from MP3_GAIN.transform import RangePolicy


def _print_outcomes(outcomes: List[FileOutcome]) -> int:
    failed = 0
    for outcome in outcomes:
        if outcome.skipped:
            print(f"{outcome.path}: skipped")
        elif outcome.error is not None:
            failed += 1
            print(f"[!] {outcome.error}", file=sys.stderr)
    return 1 if failed else 0


# ---------- CLI operations ----------
def cmd_info(paths, options: GainOptions) -> int:
    def show(path):
        summary = inspect(path, options)
        print(f"{path}")
        print(f"  {summary.mpeg_version} Layer III, {summary.samplerate} Hz, {summary.channel_mode}")
        print(f"  frames: {summary.frame_count}")
        print(f"  global_gain min/max/avg: {summary.min_gain}/{summary.max_gain}/{summary.avg_gain:.2f}")
        print(f"  headroom: {summary.headroom_steps} step(s) ({summary.headroom_db:+.1f} dB)")
        if summary.skipped_bytes:
            print(f"  skipped bytes (resync): {summary.skipped_bytes}")
        for key, value in read_gain_tags(path).items():
            print(f"  {key}: {value}")
        return summary

    return _print_outcomes(process_batch(paths, show))


def cmd_apply(paths, steps: Optional[int], gain_db: Optional[float], channel: Channel,
              options: GainOptions) -> int:
    def run(path):
        result = apply_gain(path, steps=steps, gain_db=gain_db, channel=channel, options=options)
        left, right = result.applied_steps
        line = f"{path}: {result.frames_modified} frame(s), applied {left:+d}/{right:+d} step(s)"
        if result.clipping_reduced_by:
            req_left, req_right = result.requested_steps
            line += f" (requested {req_left:+d}/{req_right:+d}, reduced by {result.clipping_reduced_by} to avoid clipping)"
        if result.clamp_events:
            line += f", {result.clamp_events} field(s) clamped"
        print(line)
        return result

    return _print_outcomes(process_batch(paths, run))


def cmd_analyze(paths, album: bool, store_tags: bool, options: GainOptions) -> int:
    try:
        report = analyze(paths, album=album, store_tags=store_tags, options=options)
    except AlbumAggregationError as e:
        print(f"[!] {e}", file=sys.stderr)
        for err in e.failures.values():
            print(f"[!]   {err}", file=sys.stderr)
        return 1
    for f in report.per_file_stats:
        gain = 'n/a' if f.gain_db is None else f"{f.gain_db:+.2f} dB"
        steps = '' if f.gain_db is None else f" ({f.to_dict()['suggested_steps']:+d} steps)"
        headroom = '' if f.headroom_steps is None else f", headroom {f.headroom_steps} step(s)"
        print(f"{f.path}: track gain {gain}{steps}, peak {f.stats.peak_ratio:.6f}{headroom}")
    if album and report.suggested_gain_db is not None:
        print(f"Album gain: {report.suggested_gain_db:+.2f} dB ({report.suggested_steps:+d} steps), "
              f"album peak {report.album.peak_ratio:.6f}")
    for err in report.failures.values():
        print(f"[!] {err}", file=sys.stderr)
    return 1 if report.failures else 0


def cmd_track_gain(paths, offset_db: float, options: GainOptions) -> int:
    def run(path):
        result = apply_track_gain(path, offset_db=offset_db, options=options)
        if result.metadata_only:
            print(f"{path}: ReplayGain tags written (no lossless gain for this container)")
        else:
            left, right = result.applied_steps
            print(f"{path}: applied {left:+d}/{right:+d} step(s) to {result.frames_modified} frame(s)")
        return result

    return _print_outcomes(process_batch(paths, run))


def cmd_album_gain(paths, offset_db: float, options: GainOptions, continue_on_error: bool) -> int:
    try:
        outcomes = apply_album_gain(paths, offset_db=offset_db, options=options,
                                    continue_on_error=continue_on_error)
    except Mp3GainError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    for outcome in outcomes:
        if outcome.ok:
            left, right = outcome.result.applied_steps
            print(f"{outcome.path}: applied {left:+d}/{right:+d} step(s)")
    return _print_outcomes(outcomes)


def cmd_undo(paths, options: GainOptions) -> int:
    def run(path):
        result = undo(path, options)
        print(f"{path}: restored {result.frames_restored} frame(s)")
        return result

    return _print_outcomes(process_batch(paths, run))


def cmd_delete_tags(paths, options: GainOptions) -> int:
    def run(path):
        removed = delete_tags(path, options)
        print(f"{path}: removed {removed} tag item(s)")
        return removed

    return _print_outcomes(process_batch(paths, run))


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Lossless MP3 volume adjustment and ReplayGain analysis.")
    p.add_argument('-q', '--quiet', action='store_true', help='only log warnings and errors')
    p.add_argument('--resync', action='store_true', default=None,
                   help='skip over damaged data between frames instead of failing')
    p.add_argument('-p', '--preserve-times', action='store_true', default=None,
                   help='keep the original file timestamps')
    p.add_argument('--safe-write', action='store_true', default=None,
                   help='fsync the new file before it replaces the original')
    p.add_argument('--decoder', choices=['librosa', 'soundfile', 'pydub'], help='decoder used for analysis')
    sub = p.add_subparsers(dest='cmd', required=True)

    pi = sub.add_parser('info', help='Show frame gain statistics and stored gain tags')
    pi.add_argument('files', nargs='+', help='input mp3 paths')

    pa = sub.add_parser('apply', help='Add a fixed gain to every frame')
    amount = pa.add_mutually_exclusive_group(required=True)
    amount.add_argument('-g', '--gain', type=int, help='gain in 1.5 dB steps')
    amount.add_argument('-d', '--db', type=float, help='gain in dB, rounded to the nearest step')
    pa.add_argument('-l', '--channel', type=int, choices=[0, 1], help='only change channel 0 (left) or 1 (right)')
    policy = pa.add_mutually_exclusive_group()
    policy.add_argument('--wrap', action='store_true', help='wrap gain values modulo 256 instead of clamping')
    policy.add_argument('--strict', action='store_true', help='fail instead of clamping out-of-range values')
    pa.add_argument('-k', '--prevent-clipping', action='store_true', help='lower the gain to avoid clipping')
    pa.add_argument('files', nargs='+', help='input mp3 paths')

    pn = sub.add_parser('analyze', help='ReplayGain analysis (no audio change)')
    pn.add_argument('-a', '--album', action='store_true', help='treat the files as one album')
    pn.add_argument('-s', '--store-tags', action='store_true', help='store results as REPLAYGAIN_* tags')
    pn.add_argument('files', nargs='+', help='input paths')

    pt = sub.add_parser('track-gain', help='Apply each file\'s own suggested gain')
    pt.add_argument('-d', '--offset', type=float, default=0.0, help='extra dB on top of the suggestion')
    pt.add_argument('-k', '--prevent-clipping', action='store_true', help='lower the gain to avoid clipping')
    pt.add_argument('files', nargs='+', help='input paths')

    pl = sub.add_parser('album-gain', help='Apply one shared suggested gain to an album')
    pl.add_argument('-d', '--offset', type=float, default=0.0, help='extra dB on top of the suggestion')
    pl.add_argument('-k', '--prevent-clipping', action='store_true', help='lower the gain to avoid clipping')
    pl.add_argument('--continue-on-error', action='store_true',
                    help='compute the album gain from the files that could be analysed')
    pl.add_argument('files', nargs='+', help='input paths')

    pu = sub.add_parser('undo', help='Undo changes recorded in the MP3GAIN_UNDO tag')
    pu.add_argument('files', nargs='+', help='input mp3 paths')

    pd = sub.add_parser('delete-tags', help='Remove MP3GAIN_* and REPLAYGAIN_* tag items')
    pd.add_argument('files', nargs='+', help='input paths')
    return p.parse_args(argv)


def options_from_args(args) -> GainOptions:
    overrides = {}
    for name in ('resync', 'preserve_times', 'safe_write', 'decoder'):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, 'prevent_clipping', False):
        overrides['prevent_clipping'] = True
    if getattr(args, 'wrap', False):
        overrides['range_policy'] = RangePolicy.WRAP
    elif getattr(args, 'strict', False):
        overrides['range_policy'] = RangePolicy.STRICT
    return GainOptions.from_env(**overrides)


def main(argv=None) -> int:
    args = parse_args(argv)
    level = 'WARNING' if args.quiet else get_processing_options()['log_level']
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
    options = options_from_args(args)

    if args.cmd == 'info':
        return cmd_info(args.files, options)
    elif args.cmd == 'apply':
        channel = Channel.BOTH if args.channel is None else Channel(args.channel)
        return cmd_apply(args.files, args.gain, args.db, channel, options)
    elif args.cmd == 'analyze':
        return cmd_analyze(args.files, args.album, args.store_tags, options)
    elif args.cmd == 'track-gain':
        return cmd_track_gain(args.files, args.offset, options)
    elif args.cmd == 'album-gain':
        return cmd_album_gain(args.files, args.offset, options, args.continue_on_error)
    elif args.cmd == 'undo':
        return cmd_undo(args.files, options)
    elif args.cmd == 'delete-tags':
        return cmd_delete_tags(args.files, options)
    print("unknown command")
    return 2


if __name__ == "__main__":
    sys.exit(main())
