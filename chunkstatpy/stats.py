"""
Per-chunk summary statistics and how chunk results combine.

For every chunk three statistics are computed along both axes:

    n      count of strictly non-zero entries
    sum    arithmetic sum
    sumsq  sum of squared values

Row statistics have one entry per matrix row and add up across chunks
(``merge_rows``: element-wise addition, order-free). Column statistics have
one entry per column of the chunk and are concatenated across chunks
(``merge_columns``: order matters, ``b`` goes after ``a``).

Signed integer and boolean chunks accumulate in int64, unsigned integer
chunks in uint64, floating chunks in float64.

Usage:
------
    >>> import numpy as np
    >>> from chunkstatpy.stats import reduce_chunk, merge
    >>> X = np.arange(12).reshape(3, 4)
    >>> total = merge(reduce_chunk(X[:, :2]), reduce_chunk(X[:, 2:]))
    >>> total.row.sum
    array([ 6, 22, 38])
    >>> total.column.n
    array([2, 3, 3, 3])
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse as sps

__all__ = [
    'AxisStats',
    'PartialStats',
    'RunningTotal',
    'reduce_chunk',
    'merge_rows',
    'merge_columns',
    'merge',
    'empty_stats',
    'accumulator_dtype',
]


# =============================================================================
# Containers
# =============================================================================


@dataclass
class AxisStats:
    """Statistics along one axis: equally long ``n``, ``sum``, ``sumsq``."""

    n: np.ndarray
    sum: np.ndarray
    sumsq: np.ndarray

    def __post_init__(self):
        if not (len(self.n) == len(self.sum) == len(self.sumsq)):
            raise ValueError(
                f"n, sum and sumsq must have equal length, got "
                f"{len(self.n)}, {len(self.sum)}, {len(self.sumsq)}"
            )

    def __len__(self) -> int:
        return len(self.n)

    @classmethod
    def zeros(cls, length: int, dtype=np.int64) -> "AxisStats":
        return cls(
            n=np.zeros(length, dtype=np.int64),
            sum=np.zeros(length, dtype=dtype),
            sumsq=np.zeros(length, dtype=dtype),
        )

    def frame(self, extent: int, index: Optional[Sequence] = None) -> pd.DataFrame:
        """Tabulate with mean and sample variance.

        ``extent`` is the number of entries each statistic was taken over
        (zeros included), i.e. the length of the other axis.
        """
        total = self.sum.astype(np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            mean = total / extent if extent > 0 else np.full(len(self), np.nan)
            if extent > 1:
                var = (self.sumsq - total * total / extent) / (extent - 1)
                var = np.maximum(var, 0)
            else:
                var = np.full(len(self), np.nan)
        return pd.DataFrame(
            {"n": self.n, "sum": self.sum, "sumsq": self.sumsq, "mean": mean, "var": var},
            index=index,
        )


@dataclass
class PartialStats:
    """Row and column statistics of some prefix of the matrix columns."""

    row: AxisStats
    column: AxisStats

    @property
    def n_rows(self) -> int:
        return len(self.row)

    @property
    def n_cols(self) -> int:
        """Number of columns these statistics cover."""
        return len(self.column)

    def row_frame(self, names: Optional[Sequence] = None) -> pd.DataFrame:
        """Per-row statistics as a DataFrame (index ``names`` if given)."""
        return self.row.frame(self.n_cols, index=names)

    def column_frame(self, names: Optional[Sequence] = None) -> pd.DataFrame:
        """Per-column statistics as a DataFrame (index ``names`` if given)."""
        return self.column.frame(self.n_rows, index=names)


# =============================================================================
# Chunk reduction
# =============================================================================


def accumulator_dtype(dtype) -> np.dtype:
    """int64 for signed integer/boolean input, uint64 for unsigned, float64 otherwise."""
    dtype = np.dtype(dtype)
    if dtype.kind == "u":
        return np.dtype(np.uint64)
    if dtype.kind in ("b", "i"):
        return np.dtype(np.int64)
    return np.dtype(np.float64)


def _ravel(x) -> np.ndarray:
    return np.asarray(x).ravel()


def reduce_chunk(chunk) -> PartialStats:
    """Compute row and column statistics of one chunk.

    Parameters
    ----------
    chunk : ndarray or scipy sparse matrix
        ``(n_rows, chunk_cols)`` block. Explicitly stored zeros in a sparse
        chunk are not counted in ``n``. Duplicate entries of a
        non-canonical sparse chunk are summed before counting.

    Returns
    -------
    PartialStats
        Row vectors of length ``n_rows``, column vectors of length
        ``chunk_cols``.
    """
    acc = accumulator_dtype(chunk.dtype)

    if sps.issparse(chunk):
        values = chunk.tocsc().astype(acc)
        values.sum_duplicates()
        nonzero = values.copy()
        nonzero.data = (nonzero.data != 0).astype(np.int64)
        squares = values.multiply(values)

        row = AxisStats(
            n=_ravel(nonzero.sum(axis=1)).astype(np.int64),
            sum=_ravel(values.sum(axis=1)).astype(acc),
            sumsq=_ravel(squares.sum(axis=1)).astype(acc),
        )
        column = AxisStats(
            n=_ravel(nonzero.sum(axis=0)).astype(np.int64),
            sum=_ravel(values.sum(axis=0)).astype(acc),
            sumsq=_ravel(squares.sum(axis=0)).astype(acc),
        )
    else:
        values = np.asarray(chunk)
        if values.ndim != 2:
            raise ValueError(f"chunk must be 2D, got {values.ndim}D")
        values = values.astype(acc, copy=False)
        squares = values * values

        row = AxisStats(
            n=np.count_nonzero(values, axis=1).astype(np.int64),
            sum=values.sum(axis=1),
            sumsq=squares.sum(axis=1),
        )
        column = AxisStats(
            n=np.count_nonzero(values, axis=0).astype(np.int64),
            sum=values.sum(axis=0),
            sumsq=squares.sum(axis=0),
        )

    return PartialStats(row=row, column=column)


# =============================================================================
# Merging
# =============================================================================


def merge_rows(a: AxisStats, b: AxisStats) -> AxisStats:
    """Element-wise sum of two row statistics of the same matrix."""
    if len(a) != len(b):
        raise ValueError(f"row statistics differ in length: {len(a)} != {len(b)}")
    return AxisStats(n=a.n + b.n, sum=a.sum + b.sum, sumsq=a.sumsq + b.sumsq)


def merge_columns(a: AxisStats, b: AxisStats) -> AxisStats:
    """Column statistics of ``a`` followed by those of ``b``."""
    return AxisStats(
        n=np.concatenate([a.n, b.n]),
        sum=np.concatenate([a.sum, b.sum]),
        sumsq=np.concatenate([a.sumsq, b.sumsq]),
    )


def merge(a: PartialStats, b: PartialStats) -> PartialStats:
    """Combine statistics of adjacent column ranges, ``a`` left of ``b``."""
    return PartialStats(row=merge_rows(a.row, b.row), column=merge_columns(a.column, b.column))


def empty_stats(n_rows: int, dtype=np.int64) -> PartialStats:
    """Identity of ``merge``: zero row vectors, empty column vectors."""
    return PartialStats(row=AxisStats.zeros(n_rows, dtype), column=AxisStats.zeros(0, dtype))


# =============================================================================
# Running total
# =============================================================================


class RunningTotal:
    """Fold of chunk statistics, owned by a single coordinator.

    Row statistics are summed as chunks arrive. Column pieces are
    kept in a list and concatenated once by ``result()``, which gives the
    same answer as folding with ``merge`` without re-copying the growing
    column vectors on every chunk.
    """

    def __init__(self, n_rows: int, dtype=np.int64):
        self.row = AxisStats.zeros(n_rows, accumulator_dtype(dtype))
        self._column_pieces: List[AxisStats] = []
        self.n_chunks = 0

    @property
    def n_cols(self) -> int:
        return sum(len(piece) for piece in self._column_pieces)

    def fold(self, partial: PartialStats):
        """Add ``partial`` to the right of everything folded so far."""
        self.row = merge_rows(self.row, partial.row)
        self._column_pieces.append(partial.column)
        self.n_chunks += 1

    def result(self) -> PartialStats:
        if not self._column_pieces:
            column = AxisStats.zeros(0, self.row.sum.dtype)
        else:
            column = AxisStats(
                n=np.concatenate([p.n for p in self._column_pieces]),
                sum=np.concatenate([p.sum for p in self._column_pieces]),
                sumsq=np.concatenate([p.sumsq for p in self._column_pieces]),
            )
        return PartialStats(row=self.row, column=column)
