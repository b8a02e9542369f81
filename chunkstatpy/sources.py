"""
Column-range access to large matrices, in memory or on disk.

Two storage layouts share one ``MatrixSource`` contract:

- ``DenseSource``      -- any 2-D sliceable array (``ndarray`` or
                          ``h5py.Dataset``); reads exactly the requested block.
- ``SparseCscSource``  -- compressed sparse column storage as three parallel
                          arrays ``data``, ``indices`` and ``indptr``.

``indptr`` has length ``n_cols + 1`` and ``indptr[j]`` is the 0-based
offset of column ``j``'s first entry in ``data``/``indices``. A column
slice ``[start, end)`` therefore needs ``indptr[start:end + 1]`` followed by
one contiguous read of ``data[indptr[start]:indptr[end]]``.

HDF5-backed sources only remember ``(path, key)`` when pickled and reopen
the file lazily, so they can be handed to worker processes.

Usage:
------
    >>> from chunkstatpy.sources import open_h5_matrix, load_chunk
    >>> from chunkstatpy.planner import plan_chunks
    >>>
    >>> with open_h5_matrix("1M_neurons.h5") as source:
    ...     for desc in plan_chunks(source.n_cols, 10_000, max_chunks=2):
    ...         chunk = load_chunk(source, desc)
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from scipy import sparse as sps

from .errors import ChunkOutOfRangeError, ChunkReadError, ChunkStatsError
from .planner import ChunkDescriptor

try:
    import h5py

    H5PY_AVAILABLE = True
except ImportError:
    H5PY_AVAILABLE = False

__all__ = [
    'MatrixSource',
    'DenseSource',
    'SparseCscSource',
    'open_h5_matrix',
    'load_chunk',
    'H5PY_AVAILABLE',
]

MatrixChunk = Union[np.ndarray, sps.csc_matrix]


# =============================================================================
# HDF5 handle
# =============================================================================


class _H5Node:
    """Lazily opened ``file[key]`` reference that survives pickling."""

    def __init__(self, path: Union[str, Path], key: str):
        if not H5PY_AVAILABLE:
            raise ImportError("h5py is required for reading HDF5 matrices")
        self.path = str(path)
        self.key = key
        self._file = None

    def get(self):
        if self._file is None:
            self._file = h5py.File(self.path, "r")
        return self._file[self.key]

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_file"] = None
        return state

    def __repr__(self):
        return f"{self.path}:{self.key}"


def _get_str_attr(node, key: str) -> str:
    if key not in node.attrs:
        return ""
    val = node.attrs[key]
    if isinstance(val, bytes):
        return val.decode()
    return str(val)


# =============================================================================
# Source types
# =============================================================================


class MatrixSource(ABC):
    """Read-only matrix that can be read one column range at a time."""

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, int]:
        ...

    @property
    @abstractmethod
    def dtype(self) -> np.dtype:
        ...

    @abstractmethod
    def read_columns(self, start: int, end: int) -> MatrixChunk:
        """Return columns ``[start, end)`` with all rows."""

    @property
    def n_rows(self) -> int:
        return self.shape[0]

    @property
    def n_cols(self) -> int:
        return self.shape[1]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class DenseSource(MatrixSource):
    """Dense block-backed matrix.

    Parameters
    ----------
    array : array-like
        2-D array supporting ``array[rows, cols]`` slicing, e.g. an
        ``ndarray`` or an ``h5py.Dataset``. Use ``from_h5`` instead of an
        open dataset when the source has to be pickled.
    transpose : bool
        Expose the transpose of ``array``. Column chunks are then read as
        row blocks of the stored array, e.g. genes x cells chunks of an
        AnnData cells x genes ``X``.
    """

    def __init__(self, array, transpose: bool = False):
        if isinstance(array, _H5Node):
            self._node = array
            self._array = None
            node = array.get()
        else:
            self._node = None
            self._array = array
            node = array
        if len(node.shape) != 2:
            raise ValueError(f"dense matrix must be 2D, got {len(node.shape)}D")
        self._transpose = bool(transpose)
        n_a, n_b = int(node.shape[0]), int(node.shape[1])
        self._shape = (n_b, n_a) if self._transpose else (n_a, n_b)
        self._dtype = np.dtype(node.dtype)

    @classmethod
    def from_h5(
        cls, path: Union[str, Path], dataset: str, transpose: bool = False
    ) -> "DenseSource":
        return cls(_H5Node(path, dataset), transpose=transpose)

    @property
    def shape(self) -> Tuple[int, int]:
        return self._shape

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    def _block_array(self):
        if self._node is not None:
            return self._node.get()
        return self._array

    def get_dense_block(self, row_range: slice, col_range: slice) -> np.ndarray:
        """Read exactly ``array[row_range, col_range]`` into memory."""
        if self._transpose:
            return np.asarray(self._block_array()[col_range, row_range]).T
        return np.asarray(self._block_array()[row_range, col_range])

    def read_columns(self, start: int, end: int) -> np.ndarray:
        return self.get_dense_block(slice(0, self.n_rows), slice(start, end))

    def close(self):
        if self._node is not None:
            self._node.close()

    def __repr__(self):
        where = self._node if self._node is not None else type(self._array).__name__
        flag = ", transposed" if self._transpose else ""
        return f"DenseSource({where}, shape={self.shape}, dtype={self.dtype}{flag})"


class SparseCscSource(MatrixSource):
    """Compressed sparse column matrix stored as three parallel arrays.

    Parameters
    ----------
    data : array-like
        Non-zero values in column-major order.
    indices : array-like
        Row index of each entry in ``data``.
    indptr : array-like
        ``n_cols + 1`` 0-based offsets into ``data``/``indices``.
    shape : tuple of int
        ``(n_rows, n_cols)``.
    """

    def __init__(self, data, indices, indptr, shape: Tuple[int, int]):
        self._node = None
        self._arrays = (data, indices, indptr)
        self._init_shape(shape, len(indptr), np.dtype(data.dtype))

    @classmethod
    def from_h5(
        cls,
        path: Union[str, Path],
        group: str,
        shape: Optional[Tuple[int, int]] = None,
    ) -> "SparseCscSource":
        """Open a CSC group holding ``data``, ``indices`` and ``indptr``.

        ``shape`` defaults to the group's ``shape`` attribute or dataset.
        """
        node = _H5Node(path, group)
        grp = node.get()
        for name in ("data", "indices", "indptr"):
            if name not in grp:
                node.close()
                raise ValueError(f"sparse group '{group}' in {path} has no '{name}' dataset")
        if shape is None:
            shape = _read_group_shape(grp)
        source = cls.__new__(cls)
        source._node = node
        source._arrays = None
        source._init_shape(shape, grp["indptr"].shape[0], np.dtype(grp["data"].dtype))
        return source

    def _init_shape(self, shape, indptr_len: int, dtype: np.dtype):
        self._shape = (int(shape[0]), int(shape[1]))
        self._dtype = dtype
        if indptr_len != self._shape[1] + 1:
            raise ValueError(
                f"indptr has length {indptr_len}, expected n_cols + 1 = {self._shape[1] + 1}"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return self._shape

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    def _csc_arrays(self):
        if self._node is not None:
            grp = self._node.get()
            return grp["data"], grp["indices"], grp["indptr"]
        return self._arrays

    def get_sparse_columns(self, start: int, end: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Read the entries of columns ``[start, end)``.

        Returns
        -------
        values : ndarray
            Stored values of the slice.
        row_indices : ndarray
            Row index of each value.
        col_offsets : ndarray, length ``end - start + 1``
            Offsets into ``values`` rebased so the first column starts at 0.
        """
        data, indices, indptr = self._csc_arrays()

        offsets = np.asarray(indptr[start : end + 1], dtype=np.int64)
        nnz_start = int(offsets[0])
        nnz_end = int(offsets[-1])

        if nnz_end > nnz_start:
            values = np.asarray(data[nnz_start:nnz_end])
            row_indices = np.asarray(indices[nnz_start:nnz_end])
        else:
            values = np.array([], dtype=self.dtype)
            row_indices = np.array([], dtype=np.int64)

        return values, row_indices, offsets - nnz_start

    def read_columns(self, start: int, end: int) -> sps.csc_matrix:
        values, row_indices, col_offsets = self.get_sparse_columns(start, end)
        return sps.csc_matrix(
            (values, row_indices, col_offsets),
            shape=(self.n_rows, end - start),
        )

    def close(self):
        if self._node is not None:
            self._node.close()

    def __repr__(self):
        where = self._node if self._node is not None else "memory"
        return f"SparseCscSource({where}, shape={self.shape}, dtype={self.dtype})"


# =============================================================================
# HDF5 layout detection
# =============================================================================


def _read_group_shape(grp) -> Tuple[int, int]:
    """Shape from an AnnData ``shape`` attribute or a 10x ``shape`` dataset."""
    shape = grp.attrs.get("shape", None)
    if shape is None and "shape" in grp:
        shape = grp["shape"][:]
    if shape is None:
        raise ValueError(f"Cannot determine matrix shape of HDF5 group '{grp.name}'")
    return int(shape[0]), int(shape[1])


def _is_sparse_group(node) -> bool:
    return (
        isinstance(node, h5py.Group)
        and "data" in node
        and "indices" in node
        and "indptr" in node
    )


def _detect_matrix_key(f) -> str:
    """Find the count matrix in an HDF5 file.

    Preference: AnnData ``raw/X`` then ``X``, 10x v3 ``matrix``, then the
    first group (10x v2 genome group such as ``mm10``) or 2-D dataset.
    """
    for key in ("raw/X", "X", "matrix"):
        if key in f:
            return key
    for key in sorted(f.keys()):
        node = f[key]
        if _is_sparse_group(node):
            return key
        if isinstance(node, h5py.Dataset) and node.ndim == 2:
            return key
    raise ValueError(f"Cannot find a matrix in HDF5 file {f.filename}")


def _is_anndata_dense(f, key: str, node) -> bool:
    """Dense AnnData ``X`` / ``raw/X``, stored cells x genes."""
    if _get_str_attr(node, "encoding-type") == "array":
        return True
    return key.strip("/") in ("X", "raw/X") and "obs" in f


def open_h5_matrix(path: Union[str, Path], key: Optional[str] = None) -> MatrixSource:
    """Open a dense or CSC matrix stored in an HDF5 file.

    Parameters
    ----------
    path : str or Path
        HDF5 file (10x Genomics ``.h5``, AnnData ``.h5ad`` or plain HDF5).
    key : str, optional
        Dataset or group holding the matrix. Detected when omitted.

    Returns
    -------
    MatrixSource
        ``DenseSource`` for a 2-D dataset, ``SparseCscSource`` for a
        sparse group. AnnData matrices are stored cells x genes and are
        returned as genes x cells: ``csr_matrix`` storage is read as CSC
        and a dense ``X`` through a transposed ``DenseSource``.
    """
    if not H5PY_AVAILABLE:
        raise ImportError("h5py is required for reading HDF5 matrices")

    path = str(path)
    with h5py.File(path, "r") as f:
        if key is None:
            key = _detect_matrix_key(f)
        elif key not in f:
            raise KeyError(f"'{key}' not found in {path}. Available: {list(f.keys())}")

        node = f[key]
        transpose = False
        if isinstance(node, h5py.Dataset):
            is_sparse = False
            transpose = _is_anndata_dense(f, key, node)
        elif _is_sparse_group(node):
            is_sparse = True
            encoding = _get_str_attr(node, "encoding-type") or _get_str_attr(node, "h5sparse_format")
            n_a, n_b = _read_group_shape(node)
            indptr_len = node["indptr"].shape[0]
            if "csr" in encoding:
                shape = (n_b, n_a)
            elif "csc" in encoding or indptr_len == n_b + 1:
                shape = (n_a, n_b)
            elif indptr_len == n_a + 1:
                shape = (n_b, n_a)
            else:
                raise ValueError(
                    f"indptr of '{key}' has length {indptr_len}, "
                    f"which matches neither axis of shape {(n_a, n_b)}"
                )
        else:
            raise ValueError(f"'{key}' in {path} is neither a 2-D dataset nor a sparse group")

    if is_sparse:
        return SparseCscSource.from_h5(path, key, shape=shape)
    return DenseSource.from_h5(path, key, transpose=transpose)


# =============================================================================
# Chunk loading
# =============================================================================


def load_chunk(source: MatrixSource, descriptor: ChunkDescriptor) -> MatrixChunk:
    """Materialize one chunk of ``source``.

    Raises
    ------
    ChunkOutOfRangeError
        If the descriptor's columns fall outside ``source``.
    ChunkReadError
        If the storage layer fails (``OSError`` / ``KeyError``) or returns
        a block of the wrong shape.
    """
    start, end = descriptor.start, descriptor.end
    if start < 0 or end < start or end > source.n_cols:
        raise ChunkOutOfRangeError(
            f"columns [{start}, {end}) outside matrix with {source.n_cols} columns",
            chunk_index=descriptor.index,
        )

    try:
        chunk = source.read_columns(start, end)
    except ChunkStatsError:
        raise
    except (OSError, KeyError) as exc:
        raise ChunkReadError(
            f"failed to read columns [{start}, {end}) from {source!r}: {exc}",
            chunk_index=descriptor.index,
        ) from exc

    expected = (source.n_rows, end - start)
    if chunk.shape != expected:
        raise ChunkReadError(
            f"read returned shape {chunk.shape}, expected {expected}",
            chunk_index=descriptor.index,
        )
    return chunk
