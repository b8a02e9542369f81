"""
Chunked streaming reduction of a large matrix.

Walks a ``ChunkPlan`` over the matrix columns, loads and reduces each chunk,
and folds the chunk statistics into one ``RunningTotal``:

    plan -> load_chunk -> reduce_chunk -> RunningTotal.fold

With ``concurrency=1`` every chunk is processed synchronously on the
calling thread. With ``concurrency > 1`` chunks go to a thread or process
pool; the calling thread only plans and merges. At most
``2 * concurrency`` chunks are in flight or waiting to be merged, so peak
memory is bounded by the chunk size, not the matrix size.

Column statistics are positional. With ``in_order=True`` (default)
finished chunks are held back until every chunk to their left has been
merged, so the result is identical to the sequential one.

The run is all-or-nothing: the first failing chunk cancels queued work
and is re-raised as ``WorkerFailure``; no partial result is returned.

Usage:
------
    >>> from chunkstatpy import chunked_stats
    >>>
    >>> stats = chunked_stats("1M_neurons.h5", chunk_size=10_000,
    ...                       concurrency=4, verbose=True)
    >>> genes = stats.row_frame()       # per-gene n / sum / sumsq / mean / var
    >>> cells = stats.column_frame()    # per-cell library size etc.
"""

import threading
import time
import warnings
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from typing import Dict, Literal, Optional, Union

from .errors import InvalidArgumentError, RunCancelledError, WorkerFailure
from .planner import ChunkDescriptor, ChunkPlan, _check_int
from .sources import MatrixSource, load_chunk, open_h5_matrix
from .stats import PartialStats, RunningTotal, reduce_chunk

__all__ = [
    'ChunkScheduler',
    'SchedulerState',
    'chunked_stats',
    'process_chunk',
    'DEFAULT_CHUNK_SIZE',
    'DEFAULT_CONCURRENCY',
]


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_CONCURRENCY = 1

_EXECUTORS = {
    'thread': ThreadPoolExecutor,
    'process': ProcessPoolExecutor,
}

# Progress line every this many merged chunks when verbose
_REPORT_EVERY = 10


class SchedulerState(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


def process_chunk(
    source: MatrixSource,
    descriptor: ChunkDescriptor,
    cancel_event: Optional[threading.Event] = None,
) -> PartialStats:
    """Load and reduce one chunk. Runs inside pool workers."""
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelledError(f"run cancelled before chunk {descriptor.index}")
    return reduce_chunk(load_chunk(source, descriptor))


# Source of the current process pool, set once per worker process.
_worker_source: Optional[MatrixSource] = None


def _init_worker(source: MatrixSource):
    global _worker_source
    _worker_source = source


def _process_chunk_in_worker(descriptor: ChunkDescriptor) -> PartialStats:
    """``process_chunk`` on the source handed over by ``_init_worker``."""
    return process_chunk(_worker_source, descriptor)


# =============================================================================
# Scheduler
# =============================================================================


class ChunkScheduler:
    """Single-use driver of one chunked reduction run.

    Parameters
    ----------
    source : MatrixSource
        Matrix to summarize; read-only and shared by all workers.
    chunk_size : int
        Columns per chunk.
    concurrency : int
        Number of pool workers. 1 runs sequentially without a pool.
    max_chunks : int or None
        Only process the first ``max_chunks`` chunks.
    in_order : bool
        Merge chunk results in ascending column order. When False, results
        are merged as they complete and column statistics follow
        completion order; row statistics are unaffected.
    executor : {"thread", "process"}
        Pool type used when ``concurrency > 1``. Process pools need a
        picklable source (in-memory arrays or ``*.from_h5`` sources). It is
        sent to each worker process once, when the worker starts, and
        chunk tasks only carry their ``ChunkDescriptor``.
    cancel_event : threading.Event, optional
        Setting it stops the run with ``RunCancelledError``. Checked
        before every dispatch and, for thread pools, by workers before
        they load a chunk.
    verbose : bool
        Print progress.
    """

    def __init__(
        self,
        source: MatrixSource,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_chunks: Optional[int] = None,
        in_order: bool = True,
        executor: Literal["thread", "process"] = "thread",
        cancel_event: Optional[threading.Event] = None,
        verbose: bool = False,
    ):
        concurrency = _check_int("concurrency", concurrency)
        if concurrency < 1:
            raise InvalidArgumentError(f"concurrency must be an integer >= 1, got {concurrency!r}")
        if executor not in _EXECUTORS:
            raise InvalidArgumentError(
                f"Unknown executor={executor!r}. Choose from: {', '.join(_EXECUTORS)}"
            )

        self.source = source
        self.plan = ChunkPlan(source.n_cols, chunk_size, max_chunks=max_chunks)
        self.concurrency = concurrency
        self.in_order = in_order
        self.executor = executor
        self.cancel_event = cancel_event
        self.verbose = verbose
        self.state = SchedulerState.IDLE

        self._total: Optional[RunningTotal] = None
        self._t_start = 0.0

        if concurrency > 1 and not in_order:
            warnings.warn(
                "in_order=False: column statistics are merged in chunk completion "
                "order and may not follow column order"
            )

    # -- public ---------------------------------------------------------------

    def run(self) -> PartialStats:
        """Process every planned chunk and return the folded statistics."""
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(
                f"ChunkScheduler is single-use (state: {self.state.value}); "
                "create a new one to process the matrix again"
            )

        self._t_start = time.time()
        self._total = RunningTotal(self.source.n_rows, self.source.dtype)

        if self.verbose:
            print(f"  Matrix: {self.source.n_rows} rows × {self.source.n_cols} columns")
            print(
                f"  Chunk size: {self.plan.chunk_size}, chunks: {self.plan.n_chunks}, "
                f"workers: {self.concurrency}"
            )

        try:
            if self.concurrency == 1:
                self._run_sequential()
            else:
                self._run_parallel()
        except BaseException:
            self.state = SchedulerState.FAILED
            self._total = None
            raise

        result = self._total.result()
        self._total = None
        self.state = SchedulerState.DONE

        if self.verbose:
            print(
                f"  Done: {self.plan.n_chunks} chunks, {result.n_cols} columns "
                f"in {time.time() - self._t_start:.1f}s"
            )
        return result

    # -- internals ------------------------------------------------------------

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelledError(
                f"run cancelled after {self._total.n_chunks}/{self.plan.n_chunks} chunks"
            )

    def _fold(self, partial: PartialStats):
        self._total.fold(partial)
        n_done = self._total.n_chunks
        if self.verbose and n_done % _REPORT_EVERY == 0:
            elapsed = time.time() - self._t_start
            print(f"    chunk {n_done}/{self.plan.n_chunks} ({elapsed:.1f}s)")

    def _run_sequential(self):
        cursor = self.plan.cursor()
        while True:
            self.state = SchedulerState.PLANNING
            desc = cursor.next_chunk()
            if desc is None:
                break
            self._check_cancelled()
            self.state = SchedulerState.DISPATCHING
            self._fold(process_chunk(self.source, desc))
        self.state = SchedulerState.DRAINING

    def _make_pool(self):
        pool_cls = _EXECUTORS[self.executor]
        if self.executor == "process":
            return pool_cls(
                max_workers=self.concurrency,
                initializer=_init_worker,
                initargs=(self.source,),
            )
        return pool_cls(max_workers=self.concurrency)

    def _run_parallel(self):
        max_in_flight = 2 * self.concurrency
        # Events cannot be shared with worker processes; the coordinator
        # still checks it between dispatches.
        worker_event = self.cancel_event if self.executor == "thread" else None

        cursor = self.plan.cursor()
        pending: Dict = {}  # future -> chunk index
        buffered: Dict[int, PartialStats] = {}
        next_to_merge = 0

        with self._make_pool() as pool:
            try:
                while True:
                    self._check_cancelled()

                    self.state = SchedulerState.PLANNING
                    while len(pending) + len(buffered) < max_in_flight:
                        desc = cursor.next_chunk()
                        if desc is None:
                            break
                        if self.executor == "process":
                            future = pool.submit(_process_chunk_in_worker, desc)
                        else:
                            future = pool.submit(process_chunk, self.source, desc, worker_event)
                        pending[future] = desc.index

                    if not pending:
                        break
                    self.state = (
                        SchedulerState.DRAINING if cursor.exhausted else SchedulerState.DISPATCHING
                    )

                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in sorted(done, key=pending.get):
                        index = pending.pop(future)
                        try:
                            partial = future.result()
                        except RunCancelledError:
                            raise
                        except Exception as exc:
                            raise WorkerFailure(index, exc) from exc

                        if not self.in_order:
                            self._fold(partial)
                            continue
                        buffered[index] = partial
                        while next_to_merge in buffered:
                            self._fold(buffered.pop(next_to_merge))
                            next_to_merge += 1
            except BaseException:
                for future in pending:
                    future.cancel()
                buffered.clear()
                raise


# =============================================================================
# High-Level Wrapper
# =============================================================================


def chunked_stats(
    source: Union[MatrixSource, str, Path],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    concurrency: int = DEFAULT_CONCURRENCY,
    max_chunks: Optional[int] = None,
    in_order: bool = True,
    executor: Literal["thread", "process"] = "thread",
    key: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    verbose: bool = False,
) -> PartialStats:
    """Row and column statistics of a matrix, computed chunk by chunk.

    Parameters
    ----------
    source : MatrixSource, str or Path
        An open source, or the path of an HDF5 file opened with
        ``open_h5_matrix(source, key)`` for the duration of the run.
    key : str, optional
        Dataset/group inside the HDF5 file (only used with a path).

    See ``ChunkScheduler`` for the remaining parameters.

    Returns
    -------
    PartialStats
        ``row`` statistics of length ``n_rows`` and ``column`` statistics
        for every processed column.
    """
    options = dict(
        chunk_size=chunk_size,
        concurrency=concurrency,
        max_chunks=max_chunks,
        in_order=in_order,
        executor=executor,
        cancel_event=cancel_event,
        verbose=verbose,
    )
    if isinstance(source, (str, Path)):
        if verbose:
            print(f"  File: {source}")
        with open_h5_matrix(source, key=key) as opened:
            return ChunkScheduler(opened, **options).run()
    return ChunkScheduler(source, **options).run()
