"""
Tests for dataset path resolution.
"""

import pytest

from chunkstatpy.locator import KNOWN_DATASETS, DatasetLocator, list_datasets
from chunkstatpy.sources import SparseCscSource


def test_cache_dir_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("CHUNKSTATPY_CACHE_DIR", str(tmp_path))
    assert DatasetLocator().cache_dir == tmp_path


def test_explicit_cache_dir_wins(monkeypatch, tmp_path):
    monkeypatch.setenv("CHUNKSTATPY_CACHE_DIR", "/does/not/matter")
    assert DatasetLocator(cache_dir=tmp_path).cache_dir == tmp_path


def test_existing_path_resolves_to_itself(tenx_h5):
    assert DatasetLocator().resolve(tenx_h5) == tenx_h5
    assert DatasetLocator().resolve(str(tenx_h5)) == tenx_h5


def test_known_dataset_in_cache(tmp_path, tenx_h5):
    registry = {"toy": {"filename": tenx_h5.name, "key": "matrix"}}
    locator = DatasetLocator(cache_dir=tenx_h5.parent, registry=registry)
    assert locator.resolve("toy") == tenx_h5

    with locator.open("toy") as source:
        assert isinstance(source, SparseCscSource)
        assert source.shape == (50, 37)


def test_known_dataset_missing_from_cache(tmp_path):
    locator = DatasetLocator(cache_dir=tmp_path)
    with pytest.raises(FileNotFoundError, match="CHUNKSTATPY_CACHE_DIR"):
        locator.resolve("tenx_brain")


def test_unknown_dataset(tmp_path):
    with pytest.raises(FileNotFoundError, match="Known datasets"):
        DatasetLocator(cache_dir=tmp_path).resolve("no_such_dataset")


def test_list_datasets():
    assert list_datasets() == sorted(KNOWN_DATASETS)
    assert "tenx_brain" in list_datasets()
