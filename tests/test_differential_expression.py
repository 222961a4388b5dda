"""Tests for pseudobulk aggregation and DESeq2 testing."""

import numpy as np
import pandas as pd
import pytest

from pseudobulk_utils.differential_expression import (
    RESULT_COLUMNS,
    add_significance_flags,
    create_pseudobulk,
    filter_genes_for_de,
    plot_de_summary,
    run_de_for_celltype,
    run_de_with_deseq2,
    save_de_results,
    significant_genes,
    summarize_de_results,
)

from conftest import SPIKED_GENE, make_bat_adata


@pytest.fixture(scope="module")
def pseudobulk():
    adata = make_bat_adata()
    return adata, *create_pseudobulk(adata)


@pytest.fixture(scope="module")
def vsm_de(pseudobulk):
    _, pb_df, sample_info = pseudobulk
    vsm_info = sample_info[sample_info["celltype"] == "VSM"]
    counts = filter_genes_for_de(pb_df[vsm_info["group_id"]])
    return run_de_with_deseq2(
        counts, vsm_info, "cold7_vs_TN", "cold7", "TN", cell_type="VSM", shrink=True,
    )


@pytest.mark.unit
class TestCreatePseudobulk:
    """Test aggregation of cells into pseudobulk samples."""

    def test_sums_match_cells(self, pseudobulk):
        adata, pb_df, sample_info = pseudobulk
        mask = ((adata.obs["sample"] == "TN_1") & (adata.obs["celltype"] == "VSM")).values
        expected = np.asarray(adata.X[mask].sum(axis=0)).ravel()
        np.testing.assert_allclose(pb_df["TN_1--VSM"].values, expected)

    def test_one_column_per_sample_and_celltype(self, pseudobulk):
        adata, pb_df, sample_info = pseudobulk
        assert pb_df.shape == (adata.n_vars, 18)
        assert list(pb_df.columns) == sample_info["group_id"].tolist()
        assert list(pb_df.index) == list(adata.var_names)

    def test_sample_info(self, pseudobulk):
        adata, _, sample_info = pseudobulk
        row = sample_info.set_index("group_id").loc["cold7_2--Adipocyte"]
        assert row["sample_id"] == "cold7_2"
        assert row["celltype"] == "Adipocyte"
        assert row["condition"] == "cold7"
        n_cells = ((adata.obs["sample"] == "cold7_2") & (adata.obs["celltype"] == "Adipocyte")).sum()
        assert row["n_cells"] == n_cells

    def test_condition_order_preserved(self, pseudobulk):
        _, _, sample_info = pseudobulk
        assert list(sample_info["condition"].cat.categories) == ["TN", "cold7"]

    def test_min_cells_drops_small_groups(self):
        adata = make_bat_adata()
        _, sample_info = create_pseudobulk(adata, min_cells=50)
        assert set(sample_info["celltype"]) == {"Adipocyte"}
        assert set(sample_info["condition"].astype(str)) == {"cold7"}

    def test_no_group_left(self):
        adata = make_bat_adata()
        with pytest.raises(ValueError, match="at least"):
            create_pseudobulk(adata, min_cells=10_000)

    def test_missing_column(self):
        adata = make_bat_adata()
        with pytest.raises(ValueError, match="donor"):
            create_pseudobulk(adata, sample_col="donor")

    def test_uses_counts_layer(self):
        from pseudobulk_utils.data_loader import prepare_layers

        adata = make_bat_adata()
        raw_total = adata.X.sum()
        adata = prepare_layers(adata)
        pb_df, _ = create_pseudobulk(adata, min_cells=1)
        assert pb_df.values.sum() == pytest.approx(float(raw_total), rel=1e-4)


@pytest.mark.unit
def test_filter_genes_for_de():
    pb_df = pd.DataFrame(
        {"s1": [0, 20, 50], "s2": [5, 20, 9], "s3": [12, 3, 30]},
        index=["low", "mid", "high"],
    )
    filtered = filter_genes_for_de(pb_df, min_count=10, min_samples=2)
    assert list(filtered.index) == ["mid", "high"]


@pytest.mark.unit
class TestDeseq2:
    """Test DESeq2 fits on the synthetic data."""

    def test_result_columns(self, vsm_de):
        results, dds = vsm_de
        assert list(results.columns) == RESULT_COLUMNS + ["logFC_shrunk"]
        assert set(results["contrast"]) == {"cold7_vs_TN"}
        assert set(results["cell_type"]) == {"VSM"}
        assert dds.n_obs == 6

    def test_spiked_gene_detected(self, vsm_de):
        results, _ = vsm_de
        top = results.sort_values("P.Value").iloc[0]
        assert top["gene"] == SPIKED_GENE
        assert top["significant"] and top["upregulated"]
        assert top["logFC"] == pytest.approx(np.log2(8), abs=0.7)
        assert SPIKED_GENE in significant_genes(results, "up")
        assert SPIKED_GENE not in significant_genes(results, "down")

    def test_shrinkage_reduces_magnitude(self, vsm_de):
        results, _ = vsm_de
        valid = results.dropna(subset=["logFC", "logFC_shrunk"])
        assert (valid["logFC_shrunk"].abs() <= valid["logFC"].abs() + 1e-6).mean() > 0.9

    def test_too_few_replicates(self, pseudobulk):
        _, pb_df, sample_info = pseudobulk
        vsm_info = sample_info[
            (sample_info["celltype"] == "VSM")
            & ~sample_info["sample_id"].isin(["TN_2", "TN_3"])
        ]
        results, dds = run_de_with_deseq2(
            pb_df[vsm_info["group_id"]], vsm_info, "cold7_vs_TN", "cold7", "TN", cell_type="VSM",
        )
        assert results is None and dds is None

    def test_run_de_for_celltype_skips_missing_conditions(self, pseudobulk):
        _, pb_df, sample_info = pseudobulk
        results, dds = run_de_for_celltype(pb_df, sample_info, "VSM")
        assert dds is not None
        # cold2 and RT have no samples in the synthetic data
        assert set(results["contrast"]) == {"cold7_vs_TN"}
        summary = summarize_de_results(results)
        assert list(summary.columns) == ["Significant", "Upregulated", "Downregulated", "Total_genes"]
        assert summary.loc[("VSM", "cold7_vs_TN"), "Upregulated"] >= 1

    def test_unknown_celltype(self, pseudobulk):
        _, pb_df, sample_info = pseudobulk
        assert run_de_for_celltype(pb_df, sample_info, "Pericyte") == (None, None)


@pytest.mark.unit
class TestResultTables:
    """Test significance flags and CSV output."""

    def test_significance_flags(self):
        df = pd.DataFrame({
            "gene": ["a", "b", "c", "d"],
            "logFC": [2.0, -1.5, 0.1, 3.0],
            "adj.P.Val": [0.01, 0.001, 0.01, np.nan],
        })
        flagged = add_significance_flags(df, fdr_threshold=0.05, fc_threshold=0.5)
        assert flagged["significant"].tolist() == [True, True, False, False]
        assert flagged["upregulated"].tolist() == [True, False, False, False]
        assert flagged["downregulated"].tolist() == [False, True, False, False]

    def test_significant_genes_bad_direction(self):
        with pytest.raises(ValueError):
            significant_genes(pd.DataFrame(), "sideways")

    def test_save_de_results(self, tmp_path):
        df = pd.DataFrame({
            "gene": ["a", "b", "a"],
            "P.Value": [0.5, 0.01, 0.2],
            "cell_type": ["VSM", "VSM", "Endo"],
            "contrast": ["cold7_vs_TN"] * 3,
        })
        paths = save_de_results(df, results_dir=tmp_path)
        names = sorted(p.name for p in paths)
        assert names == ["Endo_cold7_vs_TN_pseudobulk_DE.csv", "VSM_cold7_vs_TN_pseudobulk_DE.csv"]
        vsm = pd.read_csv(tmp_path / "VSM_cold7_vs_TN_pseudobulk_DE.csv")
        assert vsm["gene"].tolist() == ["b", "a"]


@pytest.mark.unit
def test_plot_de_summary(vsm_de, tmp_path):
    results, _ = vsm_de
    out = tmp_path / "summary.png"
    summary = plot_de_summary(results, save_path=out)
    assert out.exists()
    assert summary.loc[0, "cell_type"] == "VSM"
    assert summary.loc[0, "Significant"] == results["significant"].sum()
