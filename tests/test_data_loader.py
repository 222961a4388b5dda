"""Tests for dataset download, loading and metadata preparation."""

import io
import zipfile
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import requests

from pseudobulk_utils.data_loader import (
    download_dataset,
    find_dataset,
    get_counts,
    label_for_group,
    load_dataset,
    prepare_layers,
    results_path,
    set_reference_level,
    subset_celltype,
    validate_metadata,
)


def _zip_bytes(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, payload in members.items():
            zf.writestr(name, payload)
    return buffer.getvalue()


def _mock_response(payload=b"", status_error=None):
    response = MagicMock()
    response.__enter__.return_value = response
    response.iter_content.return_value = [payload[:100], payload[100:]]
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


@pytest.mark.unit
class TestDownloadDataset:
    """Test download_dataset with a mocked HTTP response."""

    def test_moves_dataset_and_cleans_up(self, tmp_path):
        payload = _zip_bytes({
            "Pseudobulk_workshop/data/BAT_GSE160585_final.rds": b"rds-bytes",
            "Pseudobulk_workshop/README.txt": b"readme",
            "__MACOSX/Pseudobulk_workshop/._data": b"junk",
        })
        with patch("pseudobulk_utils.data_loader.requests.get",
                   return_value=_mock_response(payload)) as mock_get:
            moved = download_dataset(url="https://example.org/archive.zip", workdir=tmp_path)

        mock_get.assert_called_once()
        assert mock_get.call_args.kwargs["stream"] is True
        assert moved == [tmp_path / "data" / "BAT_GSE160585_final.rds"]
        assert moved[0].read_bytes() == b"rds-bytes"
        assert (tmp_path / "results").is_dir()
        assert not (tmp_path / "Pseudobulk_workshop.zip").exists()
        assert not (tmp_path / "Pseudobulk_workshop").exists()
        assert not (tmp_path / "__MACOSX").exists()

    def test_http_error_propagates(self, tmp_path):
        response = _mock_response(status_error=requests.HTTPError("404 Not Found"))
        with patch("pseudobulk_utils.data_loader.requests.get", return_value=response):
            with pytest.raises(requests.HTTPError):
                download_dataset(url="https://example.org/missing.zip", workdir=tmp_path)

    def test_missing_data_folder(self, tmp_path):
        payload = _zip_bytes({"something_else/file.txt": b"x"})
        with patch("pseudobulk_utils.data_loader.requests.get",
                   return_value=_mock_response(payload)):
            with pytest.raises(FileNotFoundError, match="Pseudobulk_workshop/data"):
                download_dataset(url="https://example.org/archive.zip", workdir=tmp_path)
        assert not (tmp_path / "Pseudobulk_workshop.zip").exists()


@pytest.mark.unit
class TestLoading:
    """Test locating and reading the dataset."""

    def test_find_prefers_h5ad(self, tmp_path):
        (tmp_path / "BAT.rds").write_bytes(b"")
        (tmp_path / "BAT.h5ad").write_bytes(b"")
        assert find_dataset(tmp_path, "BAT") == tmp_path / "BAT.h5ad"

    def test_find_falls_back_to_rds(self, tmp_path):
        (tmp_path / "BAT.rds").write_bytes(b"")
        assert find_dataset(tmp_path, "BAT") == tmp_path / "BAT.rds"

    def test_find_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="download_data.py"):
            find_dataset(tmp_path, "BAT")

    def test_rds_needs_conversion(self, tmp_path):
        path = tmp_path / "BAT.rds"
        path.write_bytes(b"")
        with pytest.raises(ValueError, match="h5ad"):
            load_dataset(path)

    def test_unsupported_suffix(self, tmp_path):
        with pytest.raises(ValueError, match="Unsupported"):
            load_dataset(tmp_path / "BAT.loom")

    def test_missing_h5ad(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_dataset(tmp_path / "BAT.h5ad")

    def test_reads_h5ad(self, bat_adata, tmp_path):
        path = tmp_path / "BAT.h5ad"
        bat_adata.write_h5ad(path)
        loaded = load_dataset(path)
        assert loaded.shape == bat_adata.shape
        assert list(loaded.obs["condition"].cat.categories) == ["TN", "cold7"]


@pytest.mark.unit
class TestMetadata:
    """Test metadata checks and layer preparation."""

    def test_validate_metadata_ok(self, bat_adata):
        assert validate_metadata(bat_adata) is bat_adata

    def test_validate_metadata_missing(self, bat_adata):
        del bat_adata.obs["condition"]
        with pytest.raises(ValueError, match="condition"):
            validate_metadata(bat_adata)

    def test_prepare_layers_keeps_counts(self, bat_adata):
        raw = bat_adata.X.copy()
        adata = prepare_layers(bat_adata)
        np.testing.assert_array_equal(adata.layers["counts"], raw)
        assert adata.X.max() < raw.max()
        counts, genes = get_counts(adata)
        np.testing.assert_array_equal(counts, raw)
        assert list(genes) == list(adata.var_names)

    def test_prepare_layers_is_idempotent(self, bat_adata):
        adata = prepare_layers(bat_adata)
        once = adata.X.copy()
        adata = prepare_layers(adata)
        np.testing.assert_allclose(adata.X, once)

    def test_prepare_layers_rejects_normalized_only(self, bat_adata):
        bat_adata.X = np.log1p(bat_adata.X) + 0.5
        with pytest.raises(ValueError, match="raw counts"):
            prepare_layers(bat_adata)

    def test_set_reference_level(self, bat_adata):
        adata = set_reference_level(bat_adata, "condition", reference="cold7")
        assert list(adata.obs["condition"].cat.categories) == ["cold7", "TN"]

    def test_set_reference_level_with_levels(self, bat_adata):
        adata = set_reference_level(
            bat_adata, "condition", reference="TN", levels=["TN", "RT", "cold2", "cold7"]
        )
        assert list(adata.obs["condition"].cat.categories) == ["TN", "cold7"]

    def test_set_reference_level_unknown(self, bat_adata):
        with pytest.raises(ValueError, match="RT"):
            set_reference_level(bat_adata, "condition", reference="RT")

    def test_subset_celltype(self, bat_adata):
        vsm = subset_celltype(bat_adata, "VSM")
        assert set(vsm.obs["celltype"]) == {"VSM"}
        assert vsm.n_obs == (bat_adata.obs["celltype"] == "VSM").sum()

    def test_subset_unknown_celltype(self, bat_adata):
        with pytest.raises(ValueError, match="Pericyte"):
            subset_celltype(bat_adata, "Pericyte")


@pytest.mark.unit
def test_results_path_naming(tmp_path):
    path = results_path("pseudobulk_DE", "VSM", "cold7_vs_TN", results_dir=tmp_path / "out")
    assert path == tmp_path / "out" / "VSM_cold7_vs_TN_pseudobulk_DE.csv"
    assert path.parent.is_dir()
    assert label_for_group("Smooth muscle/pericyte") == "Smooth_muscle-pericyte"
