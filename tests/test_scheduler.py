"""
Tests for the chunked reduction scheduler.

Verifies that sequential and pooled runs give identical results, that
in-order merging survives out-of-order completion, and that a failing or
cancelled chunk aborts the whole run.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from chunkstatpy import chunked_stats
from chunkstatpy.errors import (
    ChunkReadError,
    InvalidArgumentError,
    RunCancelledError,
    WorkerFailure,
)
from chunkstatpy import scheduler as scheduler_module
from chunkstatpy.planner import ChunkDescriptor
from chunkstatpy.scheduler import ChunkScheduler, SchedulerState
from chunkstatpy.sources import DenseSource, MatrixSource, SparseCscSource
from chunkstatpy.stats import reduce_chunk


def _csc_source(Y):
    return SparseCscSource(Y.data, Y.indices, Y.indptr, Y.shape)


def _assert_stats_equal(result, expected, label=""):
    for axis in ("row", "column"):
        for field in ("n", "sum", "sumsq"):
            np.testing.assert_array_equal(
                getattr(getattr(result, axis), field),
                getattr(getattr(expected, axis), field),
                err_msg=f"{label} {axis}.{field} mismatch"
            )


class _SlowEarlySource(DenseSource):
    """Earlier chunks take longer, so pooled chunks complete in reverse."""

    def __init__(self, array, chunk_size):
        super().__init__(array)
        self.chunk_size = chunk_size

    def read_columns(self, start, end):
        n_chunks = -(-self.n_cols // self.chunk_size)
        time.sleep(0.02 * (n_chunks - start // self.chunk_size))
        return super().read_columns(start, end)


class _FailingSource(DenseSource):
    """Raises an I/O error when asked for the chunk starting at ``fail_start``."""

    def __init__(self, array, fail_start):
        super().__init__(array)
        self.fail_start = fail_start
        self.reads = []

    def read_columns(self, start, end):
        self.reads.append(start)
        if start == self.fail_start:
            raise OSError("Can't read data (file read failed)")
        return super().read_columns(start, end)


# ---------------------------------------------------------------------------
# Correctness and determinism
# ---------------------------------------------------------------------------

def test_sequential_matches_whole_matrix(counts):
    expected = reduce_chunk(counts)
    scheduler = ChunkScheduler(_csc_source(counts), chunk_size=5)
    result = scheduler.run()
    assert scheduler.state is SchedulerState.DONE
    _assert_stats_equal(result, expected, "sequential")


@pytest.mark.parametrize("concurrency", [2, 4])
def test_concurrency_does_not_change_result(counts, concurrency):
    sequential = chunked_stats(_csc_source(counts), chunk_size=4, concurrency=1)
    pooled = chunked_stats(_csc_source(counts), chunk_size=4, concurrency=concurrency)
    _assert_stats_equal(pooled, sequential, f"concurrency={concurrency}")


def test_in_order_merge_with_reversed_completion(counts):
    dense = counts.toarray()
    source = _SlowEarlySource(dense, chunk_size=5)
    result = chunked_stats(source, chunk_size=5, concurrency=8, in_order=True)
    _assert_stats_equal(result, reduce_chunk(dense), "reversed completion")


def test_unordered_merge_keeps_row_stats(counts):
    dense = counts.toarray()
    source = _SlowEarlySource(dense, chunk_size=5)
    with pytest.warns(UserWarning, match="in_order=False"):
        scheduler = ChunkScheduler(source, chunk_size=5, concurrency=8, in_order=False)
    result = scheduler.run()
    expected = reduce_chunk(dense)

    np.testing.assert_array_equal(result.row.sum, expected.row.sum)
    np.testing.assert_array_equal(result.row.n, expected.row.n)
    # columns are all there, possibly permuted
    np.testing.assert_array_equal(np.sort(result.column.sum), np.sort(expected.column.sum))


def test_process_pool_matches_sequential(counts):
    sequential = chunked_stats(_csc_source(counts), chunk_size=7)
    pooled = chunked_stats(_csc_source(counts), chunk_size=7, concurrency=2, executor="process")
    _assert_stats_equal(pooled, sequential, "process pool")


def test_process_pool_sends_source_once_per_worker(counts, monkeypatch):
    """Process tasks carry only a descriptor; the source goes to the initializer."""
    submitted = []
    started = []

    class _RecordingPool(ThreadPoolExecutor):
        def __init__(self, max_workers, initializer=None, initargs=()):
            started.append(initargs)
            super().__init__(max_workers=max_workers, initializer=initializer, initargs=initargs)

        def submit(self, fn, *args, **kwargs):
            submitted.append(args)
            return super().submit(fn, *args, **kwargs)

    monkeypatch.setitem(scheduler_module._EXECUTORS, "process", _RecordingPool)
    source = _csc_source(counts)
    result = chunked_stats(source, chunk_size=4, concurrency=3, executor="process")

    assert len(started) == 1
    assert started[0] == (source,)
    assert len(submitted) == 10
    for args in submitted:
        assert len(args) == 1
        assert isinstance(args[0], ChunkDescriptor)
        assert not any(isinstance(a, MatrixSource) for a in args)
    _assert_stats_equal(result, reduce_chunk(counts), "initializer pool")


def test_h5_path_input(tenx_h5, counts):
    result = chunked_stats(tenx_h5, chunk_size=10, concurrency=3)
    _assert_stats_equal(result, reduce_chunk(counts), "h5 path")


def test_max_chunks_processes_prefix(counts):
    dense = counts.toarray()
    result = chunked_stats(DenseSource(dense), chunk_size=3, max_chunks=2, concurrency=2)

    assert result.n_cols == 6
    assert result.n_rows == dense.shape[0]
    _assert_stats_equal(result, reduce_chunk(dense[:, :6]), "max_chunks=2")


def test_duplicate_csc_entries_match_dense():
    """A row index stored twice in a column counts once, like the dense matrix."""
    source = SparseCscSource(
        data=np.array([1, 2]), indices=np.array([1, 1]), indptr=np.array([0, 2, 2]), shape=(3, 2)
    )
    dense = np.array([[0, 0], [3, 0], [0, 0]])
    for concurrency in (1, 2):
        result = chunked_stats(source, chunk_size=1, concurrency=concurrency)
        _assert_stats_equal(result, reduce_chunk(dense), f"concurrency={concurrency}")
        assert result.row.n[1] == 1
        assert result.row.sum[1] == 3


def test_uint64_totals_do_not_wrap():
    big = 2**63 + 5
    X = np.array([[big, 1], [0, 2]], dtype=np.uint64)
    result = chunked_stats(DenseSource(X), chunk_size=1)
    assert result.row.sum.dtype == np.uint64
    assert int(result.row.sum[0]) == big + 1
    assert int(result.column.sum[0]) == big


def test_empty_plan_returns_identity(counts):
    result = chunked_stats(_csc_source(counts), chunk_size=4, max_chunks=0)
    assert result.n_cols == 0
    np.testing.assert_array_equal(result.row.sum, np.zeros(counts.shape[0]))


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

def test_sequential_failure_surfaces_chunk(counts):
    """IOError on chunk 2 of 5 fails the run with no result."""
    source = _FailingSource(counts.toarray()[:, :25], fail_start=10)
    scheduler = ChunkScheduler(source, chunk_size=5)

    with pytest.raises(ChunkReadError) as excinfo:
        scheduler.run()
    assert excinfo.value.chunk_index == 2
    assert scheduler.state is SchedulerState.FAILED
    # nothing after the failing chunk was read
    assert source.reads == [0, 5, 10]


def test_pooled_failure_is_worker_failure(counts):
    source = _FailingSource(counts.toarray()[:, :25], fail_start=10)
    scheduler = ChunkScheduler(source, chunk_size=5, concurrency=2)

    with pytest.raises(WorkerFailure) as excinfo:
        scheduler.run()
    err = excinfo.value
    assert err.chunk_index == 2
    assert isinstance(err.cause, ChunkReadError)
    assert err.__cause__ is err.cause
    assert "chunk 2" in str(err)
    assert scheduler.state is SchedulerState.FAILED


def test_scheduler_is_single_use(counts):
    scheduler = ChunkScheduler(_csc_source(counts), chunk_size=10)
    scheduler.run()
    with pytest.raises(RuntimeError, match="single-use"):
        scheduler.run()


def test_failed_scheduler_cannot_rerun(counts):
    source = _FailingSource(counts.toarray(), fail_start=0)
    scheduler = ChunkScheduler(source, chunk_size=10)
    with pytest.raises(ChunkReadError):
        scheduler.run()
    with pytest.raises(RuntimeError):
        scheduler.run()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def test_cancel_before_start(counts):
    event = threading.Event()
    event.set()
    scheduler = ChunkScheduler(_csc_source(counts), chunk_size=5, cancel_event=event)
    with pytest.raises(RunCancelledError):
        scheduler.run()
    assert scheduler.state is SchedulerState.FAILED


class _CancellingSource(DenseSource):
    def __init__(self, array, event, after_start):
        super().__init__(array)
        self.event = event
        self.after_start = after_start

    def read_columns(self, start, end):
        if start == self.after_start:
            self.event.set()
        return super().read_columns(start, end)


@pytest.mark.parametrize("concurrency", [1, 2])
def test_cancel_during_run(counts, concurrency):
    event = threading.Event()
    source = _CancellingSource(counts.toarray(), event, after_start=5)
    scheduler = ChunkScheduler(source, chunk_size=5, concurrency=concurrency, cancel_event=event)
    with pytest.raises(RunCancelledError):
        scheduler.run()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("concurrency", [0, -2, 1.5, True])
def test_invalid_concurrency(counts, concurrency):
    with pytest.raises(InvalidArgumentError, match="concurrency"):
        ChunkScheduler(_csc_source(counts), chunk_size=5, concurrency=concurrency)


def test_numpy_integer_concurrency(counts):
    scheduler = ChunkScheduler(_csc_source(counts), chunk_size=5, concurrency=np.int64(4))
    assert scheduler.concurrency == 4
    assert type(scheduler.concurrency) is int
    _assert_stats_equal(scheduler.run(), reduce_chunk(counts), "np.int64 concurrency")


def test_invalid_executor(counts):
    with pytest.raises(InvalidArgumentError, match="executor"):
        ChunkScheduler(_csc_source(counts), chunk_size=5, concurrency=2, executor="gpu")


def test_bad_chunk_size_fails_before_any_read(counts):
    source = _FailingSource(counts.toarray(), fail_start=0)
    with pytest.raises(InvalidArgumentError):
        ChunkScheduler(source, chunk_size=0)
    assert source.reads == []


def test_verbose_progress(counts, capsys):
    chunked_stats(_csc_source(counts), chunk_size=1, verbose=True)
    out = capsys.readouterr().out
    assert "Chunk size: 1, chunks: 37" in out
    assert "chunk 30/37" in out
    assert "Done: 37 chunks, 37 columns" in out
