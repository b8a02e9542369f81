"""
Exception types raised by chunkstatpy.

Every error derives from ``ChunkStatsError`` and also from the closest
builtin, so callers can catch either ``ValueError`` / ``OSError`` /
``IndexError`` or the package-specific type.
"""

from typing import Optional

__all__ = [
    'ChunkStatsError',
    'InvalidArgumentError',
    'ChunkReadError',
    'ChunkOutOfRangeError',
    'WorkerFailure',
    'RunCancelledError',
]


class ChunkStatsError(Exception):
    """Base class for all chunkstatpy errors."""


class InvalidArgumentError(ChunkStatsError, ValueError):
    """Bad planning argument (chunk size, column count, chunk limit)."""


class _ChunkError(ChunkStatsError):
    """Error tied to one chunk of a run."""

    def __init__(self, message: str, chunk_index: Optional[int] = None):
        self.chunk_index = chunk_index
        if chunk_index is not None:
            message = f"chunk {chunk_index}: {message}"
        super().__init__(message)


class ChunkReadError(_ChunkError, OSError):
    """Reading a chunk from the backing storage failed."""


class ChunkOutOfRangeError(_ChunkError, IndexError):
    """A chunk descriptor lies outside the matrix extent."""


class WorkerFailure(_ChunkError, RuntimeError):
    """A chunk failed inside a pooled worker.

    The original exception is available as ``cause`` and is also chained
    as ``__cause__``.
    """

    def __init__(self, chunk_index: int, cause: BaseException):
        self.cause = cause
        super().__init__(f"{type(cause).__name__} in worker: {cause}", chunk_index)


class RunCancelledError(ChunkStatsError):
    """The run was cancelled through its cancel event."""
