"""Tests for dataset overview tables and plots."""

import pytest

from pseudobulk_utils.cell_type import (
    cells_per_sample,
    condition_breakdown,
    plot_cell_type_summary,
    plot_umap_overview,
    sample_metadata,
)


@pytest.mark.unit
class TestTables:
    """Test per-sample summaries."""

    def test_cells_per_sample(self, bat_adata):
        table = cells_per_sample(bat_adata)
        assert list(table.columns) == ["Adipocyte", "Endo", "VSM", "Total"]
        assert table["Total"].sum() == bat_adata.n_obs
        assert len(table) == 6

    def test_cells_per_sample_missing_column(self, bat_adata):
        with pytest.raises(KeyError, match="donor"):
            cells_per_sample(bat_adata, sample_col="donor")

    def test_sample_metadata(self, bat_adata):
        meta = sample_metadata(bat_adata)
        assert meta.loc["cold7_1", "condition"] == "cold7"
        assert meta["n_cells"].sum() == bat_adata.n_obs

    def test_sample_metadata_not_constant(self, bat_adata):
        with pytest.raises(ValueError, match="celltype"):
            sample_metadata(bat_adata, columns=["celltype"])

    def test_condition_breakdown(self, bat_adata):
        table = condition_breakdown(bat_adata)
        assert list(table.columns) == ["TN", "cold7"]
        assert table.loc["Adipocyte", "cold7"] > table.loc["Adipocyte", "TN"]


@pytest.mark.unit
class TestPlots:
    """Overview plots save to the requested directory."""

    def test_summary_plot(self, bat_adata, tmp_path):
        plot_cell_type_summary(bat_adata, normalize=True, save_dir=tmp_path)
        assert (tmp_path / "celltype_distribution.png").exists()

    def test_umap_overview(self, bat_adata, tmp_path):
        plot_umap_overview(bat_adata, save_dir=tmp_path)
        assert (tmp_path / "umap_embeddings.png").exists()

    def test_umap_requires_embedding(self, bat_adata):
        del bat_adata.obsm["X_umap"]
        with pytest.raises(KeyError, match="X_umap"):
            plot_umap_overview(bat_adata)

    def test_umap_requires_columns(self, bat_adata):
        with pytest.raises(ValueError):
            plot_umap_overview(bat_adata, colors=["genotype"])
