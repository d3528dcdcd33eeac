"""
Exception taxonomy for peerwatch.

Every error raised on purpose by the package derives from PeerWatchError,
so callers that only want to survive a bad line or a stale checkpoint can
catch one type.
"""

from __future__ import annotations


class PeerWatchError(Exception):
    """Base class for all peerwatch errors."""


class InvalidArgument(PeerWatchError, ValueError):
    """A malformed call into the directory or the group registry."""


class MalformedEvent(InvalidArgument):
    """A raw event line that cannot be decoded into a typed event."""


class InvalidConfig(PeerWatchError, ValueError):
    """Window size or network depth out of range."""


class UnsupportedOperation(PeerWatchError):
    """Live resizing of the window or re-depthing of the graph."""


class NumericError(PeerWatchError, ArithmeticError):
    """Negative variance from floating-point drift. Recovered by clamping."""


class CheckpointError(PeerWatchError):
    """A checkpoint that is missing, unreadable or corrupt."""


class VersionMismatch(CheckpointError):
    """A checkpoint written by a different format version."""
