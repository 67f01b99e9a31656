"""
errors.py

Error taxonomy for the gain tools. Every error knows which file it is about
(when there is one) so batch and album reports can name it.
"""

from typing import Dict, Optional


class Mp3GainError(Exception):
    def __init__(self, reason: str, path: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.path = path

    def __str__(self):
        if self.path:
            return f"{self.path}: {self.reason}"
        return self.reason


class MalformedStream(Mp3GainError):
    """Header inconsistency found while walking frames."""

    def __init__(self, reason: str, path: Optional[str] = None, offset: Optional[int] = None):
        if offset is not None:
            reason = f"{reason} (at byte {offset})"
        super().__init__(reason, path)
        self.offset = offset


class OutOfRangeGain(Mp3GainError):
    """Raised only under the strict range policy."""


class DecodeFailure(Mp3GainError):
    pass


class NoUndoRecord(Mp3GainError):
    pass


class TagWriteFailure(Mp3GainError):
    pass


class UnsupportedFormat(Mp3GainError):
    pass


class AlbumAggregationError(Mp3GainError):
    """One or more album members could not be analyzed.

    `failures` maps each failed path to the error it raised.
    """

    def __init__(self, failures: Dict[str, Exception]):
        names = ", ".join(sorted(failures))
        super().__init__(f"album analysis failed for {len(failures)} file(s): {names}")
        self.failures = failures
