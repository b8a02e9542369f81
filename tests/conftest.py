"""
Shared fixtures: a small sparse count matrix and HDF5 files holding it in
the layouts ``open_h5_matrix`` understands.
"""

import h5py
import numpy as np
import scipy.sparse as sps
import pytest


@pytest.fixture
def counts():
    """(50 genes, 37 cells) CSC count matrix, ~10% dense, int32."""
    Y = sps.random(50, 37, density=0.1, format='csc',
                   random_state=42, dtype=np.float64)
    Y.data = np.ceil(Y.data * 20)
    return Y.astype(np.int32).tocsc()


@pytest.fixture
def tenx_h5(tmp_path, counts):
    """10x Genomics v3 style file: CSC group ``matrix`` with a shape dataset."""
    path = tmp_path / "tenx.h5"
    with h5py.File(path, "w") as f:
        grp = f.create_group("matrix")
        grp.create_dataset("data", data=counts.data)
        grp.create_dataset("indices", data=counts.indices.astype(np.int64))
        grp.create_dataset("indptr", data=counts.indptr.astype(np.int64))
        grp.create_dataset("shape", data=np.array(counts.shape, dtype=np.int32))
    return path


@pytest.fixture
def h5ad_csr(tmp_path, counts):
    """AnnData style file: cells x genes CSR stored in group ``X``."""
    path = tmp_path / "cells.h5ad"
    cells_by_genes = counts.T.tocsr()
    with h5py.File(path, "w") as f:
        grp = f.create_group("X")
        grp.attrs["encoding-type"] = "csr_matrix"
        grp.attrs["shape"] = np.array(cells_by_genes.shape)
        grp.create_dataset("data", data=cells_by_genes.data)
        grp.create_dataset("indices", data=cells_by_genes.indices)
        grp.create_dataset("indptr", data=cells_by_genes.indptr)
    return path


@pytest.fixture
def dense_h5(tmp_path, counts):
    """Plain HDF5 file with the matrix as a chunked 2-D dataset."""
    path = tmp_path / "dense.h5"
    with h5py.File(path, "w") as f:
        f.create_dataset("counts", data=counts.toarray(), chunks=(50, 8))
    return path


@pytest.fixture
def h5ad_dense(tmp_path, counts):
    """AnnData style file: cells x genes dense array stored as dataset ``X``."""
    path = tmp_path / "cells_dense.h5ad"
    with h5py.File(path, "w") as f:
        X = f.create_dataset("X", data=counts.T.toarray(), chunks=(8, 50))
        X.attrs["encoding-type"] = "array"
        f.create_group("obs")
        f.create_group("var")
    return path


@pytest.fixture
def tenx_v2_h5(tmp_path, counts):
    """10x Genomics v2 style file: CSC group named after the genome."""
    path = tmp_path / "tenx_v2.h5"
    with h5py.File(path, "w") as f:
        grp = f.create_group("mm10")
        grp.create_dataset("barcodes", data=np.array([b"AAAC-1"] * counts.shape[1]))
        grp.create_dataset("data", data=counts.data)
        grp.create_dataset("indices", data=counts.indices.astype(np.int64))
        grp.create_dataset("indptr", data=counts.indptr.astype(np.int64))
        grp.create_dataset("shape", data=np.array(counts.shape, dtype=np.int32))
    return path
