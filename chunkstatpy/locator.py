"""
Resolve dataset identifiers to local HDF5 files.

Files are looked up in a cache directory; fetching them is left to the
caller. The cache directory is, in order of preference, the ``cache_dir``
argument, the ``CHUNKSTATPY_CACHE_DIR`` environment variable, or
``~/.cache/chunkstatpy``.

Usage:
------
    >>> from chunkstatpy.locator import DatasetLocator
    >>>
    >>> locator = DatasetLocator()
    >>> locator.resolve("tenx_brain")
    PosixPath('/home/me/.cache/chunkstatpy/1M_neurons_filtered_gene_bc_matrices_h5.h5')
    >>>
    >>> with locator.open("tenx_brain") as source:
    ...     print(source.shape)
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .sources import MatrixSource, open_h5_matrix

__all__ = [
    'DatasetLocator',
    'KNOWN_DATASETS',
    'DEFAULT_CACHE_DIR',
    'list_datasets',
]


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CACHE_DIR = Path.home() / ".cache" / "chunkstatpy"

KNOWN_DATASETS = {
    'tenx_brain': {
        'filename': '1M_neurons_filtered_gene_bc_matrices_h5.h5',
        'description': '1.3 million mouse brain cells, 10x Genomics CSC layout',
        'key': 'mm10',
    },
    'tenx_brain_20k': {
        'filename': '1M_neurons_neuron20k.h5',
        'description': '20k-cell subsample of the 1.3 million brain cell dataset',
        'key': 'mm10',
    },
    'pbmc_10k': {
        'filename': 'pbmc_10k_v3_filtered_feature_bc_matrix.h5',
        'description': '10k PBMCs, 10x Genomics v3 layout',
        'key': 'matrix',
    },
}


def list_datasets() -> List[str]:
    """Identifiers of the built-in datasets."""
    return sorted(KNOWN_DATASETS)


# =============================================================================
# Locator
# =============================================================================


class DatasetLocator:
    """Map dataset identifiers to files in a local cache directory.

    Parameters
    ----------
    cache_dir : str or Path, optional
        Directory holding dataset files.
    registry : mapping, optional
        ``{dataset_id: {"filename": ..., "key": ...}}``. Defaults to
        ``KNOWN_DATASETS``.
    """

    def __init__(
        self,
        cache_dir: Optional[Union[str, Path]] = None,
        registry: Optional[Mapping[str, Dict]] = None,
    ):
        if cache_dir is None:
            cache_dir = os.environ.get('CHUNKSTATPY_CACHE_DIR', DEFAULT_CACHE_DIR)
        self.cache_dir = Path(cache_dir).expanduser()
        self.registry = dict(KNOWN_DATASETS if registry is None else registry)

    def resolve(self, dataset: Union[str, Path]) -> Path:
        """Return the local path of ``dataset``.

        An existing file path resolves to itself; a registered identifier
        resolves to its file in the cache directory.

        Raises
        ------
        FileNotFoundError
            If the file is not present.
        """
        candidate = Path(dataset).expanduser()
        if candidate.is_file():
            return candidate

        info = self.registry.get(str(dataset))
        if info is None:
            raise FileNotFoundError(
                f"'{dataset}' is neither an existing file nor a known dataset. "
                f"Known datasets: {sorted(self.registry)}"
            )

        path = self.cache_dir / info['filename']
        if not path.is_file():
            raise FileNotFoundError(
                f"Dataset '{dataset}' not found at {path}. "
                f"Place {info['filename']} there or set CHUNKSTATPY_CACHE_DIR."
            )
        return path

    def open(self, dataset: Union[str, Path], key: Optional[str] = None) -> MatrixSource:
        """Resolve ``dataset`` and open its matrix.

        ``key`` defaults to the registry entry's key, then to layout
        detection.
        """
        path = self.resolve(dataset)
        if key is None:
            key = self.registry.get(str(dataset), {}).get('key')
        return open_h5_matrix(path, key=key)

    def __repr__(self):
        return f"DatasetLocator(cache_dir={str(self.cache_dir)!r}, datasets={len(self.registry)})"
