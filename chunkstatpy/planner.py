"""
Column chunk planning.

Splits the column axis of a matrix into contiguous, non-overlapping
chunks. Column ranges are half-open: a descriptor with ``start=4`` and
``end=8`` covers columns 4, 5, 6 and 7.

Usage:
------
    >>> from chunkstatpy.planner import plan_chunks
    >>> plan = plan_chunks(total_columns=10, chunk_size=4)
    >>> [(d.start, d.end) for d in plan]
    [(0, 4), (4, 8), (8, 10)]
    >>>
    >>> # Explore a prefix only
    >>> len(plan_chunks(10, 1, max_chunks=2))
    2
"""

import numbers
from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import InvalidArgumentError

__all__ = ['ChunkDescriptor', 'ChunkPlan', 'ChunkCursor', 'plan_chunks']


@dataclass(frozen=True)
class ChunkDescriptor:
    """Half-open column range ``[start, end)`` of chunk number ``index``."""

    index: int
    start: int
    end: int

    @property
    def n_cols(self) -> int:
        return self.end - self.start


def _check_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidArgumentError(f"{name} must be an integer, got {value!r}")
    return int(value)


class ChunkPlan:
    """Lazy, finite partition of ``[0, total_columns)`` into chunks.

    Iterating a plan always starts again from column 0, so the same plan
    can be walked more than once (e.g. for a two-pass computation).

    Parameters
    ----------
    total_columns : int
        Number of columns to partition (>= 0).
    chunk_size : int
        Columns per chunk (> 0). The last chunk may be shorter.
    max_chunks : int or None
        If set, only the first ``max_chunks`` chunks are produced.
        Truncation takes precedence: a truncated plan ends on a full-size
        chunk unless the truncation point is the natural last chunk.
    """

    def __init__(self, total_columns: int, chunk_size: int, max_chunks: Optional[int] = None):
        total_columns = _check_int("total_columns", total_columns)
        chunk_size = _check_int("chunk_size", chunk_size)
        if total_columns < 0:
            raise InvalidArgumentError(f"total_columns must be >= 0, got {total_columns}")
        if chunk_size <= 0:
            raise InvalidArgumentError(f"chunk_size must be > 0, got {chunk_size}")
        if max_chunks is not None:
            max_chunks = _check_int("max_chunks", max_chunks)
            if max_chunks < 0:
                raise InvalidArgumentError(f"max_chunks must be >= 0, got {max_chunks}")

        self.total_columns = total_columns
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks

    @property
    def n_chunks(self) -> int:
        """Number of descriptors this plan yields."""
        n = -(-self.total_columns // self.chunk_size)
        if self.max_chunks is not None:
            n = min(n, self.max_chunks)
        return n

    @property
    def n_columns_planned(self) -> int:
        """Number of columns covered by the plan."""
        return min(self.n_chunks * self.chunk_size, self.total_columns)

    def descriptor(self, index: int) -> ChunkDescriptor:
        """Return the descriptor of chunk ``index``."""
        if not 0 <= index < self.n_chunks:
            raise IndexError(f"chunk index {index} out of range for {self.n_chunks} chunks")
        start = index * self.chunk_size
        end = min(start + self.chunk_size, self.total_columns)
        return ChunkDescriptor(index=index, start=start, end=end)

    def cursor(self) -> "ChunkCursor":
        """Return a fresh cursor positioned before the first chunk."""
        return ChunkCursor(self)

    def __iter__(self) -> Iterator[ChunkDescriptor]:
        cursor = self.cursor()
        while True:
            desc = cursor.next_chunk()
            if desc is None:
                return
            yield desc

    def __len__(self) -> int:
        return self.n_chunks

    def __repr__(self) -> str:
        return (
            f"ChunkPlan(total_columns={self.total_columns}, "
            f"chunk_size={self.chunk_size}, max_chunks={self.max_chunks})"
        )


class ChunkCursor:
    """Single-owner position in a ``ChunkPlan``.

    ``next_chunk()`` returns ``None`` once the plan is exhausted and keeps
    returning ``None`` on every later call.
    """

    def __init__(self, plan: ChunkPlan):
        self.plan = plan
        self.position = 0

    @property
    def exhausted(self) -> bool:
        return self.position >= self.plan.n_chunks

    def next_chunk(self) -> Optional[ChunkDescriptor]:
        if self.exhausted:
            return None
        desc = self.plan.descriptor(self.position)
        self.position += 1
        return desc


def plan_chunks(total_columns: int, chunk_size: int, max_chunks: Optional[int] = None) -> ChunkPlan:
    """Build a ``ChunkPlan``; see that class for parameter details."""
    return ChunkPlan(total_columns, chunk_size, max_chunks=max_chunks)
