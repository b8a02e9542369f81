"""
chunkstatpy: chunked summary statistics for matrices too large for memory.

Reads a genes x cells count matrix (dense or CSC, in memory or in HDF5)
one column chunk at a time and computes per-row and per-column non-zero
counts, sums and sums of squares, sequentially or with a worker pool.

Usage:
------
    >>> import chunkstatpy
    >>>
    >>> stats = chunkstatpy.chunked_stats("counts.h5", chunk_size=10_000,
    ...                                   concurrency=4)
    >>> stats.row.sum          # total counts per gene
    >>> stats.column.n         # detected genes per cell
    >>> stats.row_frame()      # DataFrame with mean and variance
"""

from .errors import (
    ChunkOutOfRangeError,
    ChunkReadError,
    ChunkStatsError,
    InvalidArgumentError,
    RunCancelledError,
    WorkerFailure,
)
from .locator import DatasetLocator, list_datasets
from .planner import ChunkCursor, ChunkDescriptor, ChunkPlan, plan_chunks
from .scheduler import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONCURRENCY,
    ChunkScheduler,
    SchedulerState,
    chunked_stats,
)
from .sources import DenseSource, MatrixSource, SparseCscSource, load_chunk, open_h5_matrix
from .stats import (
    AxisStats,
    PartialStats,
    RunningTotal,
    empty_stats,
    merge,
    merge_columns,
    merge_rows,
    reduce_chunk,
)

__version__ = "0.1.0"

__all__ = [
    # planning
    'ChunkDescriptor',
    'ChunkPlan',
    'ChunkCursor',
    'plan_chunks',
    # sources
    'MatrixSource',
    'DenseSource',
    'SparseCscSource',
    'open_h5_matrix',
    'load_chunk',
    # statistics
    'AxisStats',
    'PartialStats',
    'RunningTotal',
    'reduce_chunk',
    'merge_rows',
    'merge_columns',
    'merge',
    'empty_stats',
    # scheduling
    'ChunkScheduler',
    'SchedulerState',
    'chunked_stats',
    'DEFAULT_CHUNK_SIZE',
    'DEFAULT_CONCURRENCY',
    # datasets
    'DatasetLocator',
    'list_datasets',
    # errors
    'ChunkStatsError',
    'InvalidArgumentError',
    'ChunkReadError',
    'ChunkOutOfRangeError',
    'WorkerFailure',
    'RunCancelledError',
]
