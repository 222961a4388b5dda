"""Smoke tests for DE plots."""

import numpy as np
import pandas as pd
import pytest

from pseudobulk_utils.de_visualization import (
    log_cpm,
    plot_de_heatmap,
    plot_gene_umap,
    plot_ma,
    plot_top_genes_expression,
    plot_volcano,
    top_de_genes,
)
from pseudobulk_utils.differential_expression import create_pseudobulk

from conftest import SPIKED_GENE


@pytest.fixture
def de_results(bat_adata):
    rng = np.random.default_rng(3)
    genes = list(bat_adata.var_names)
    n = len(genes)
    df = pd.DataFrame({
        "gene": genes,
        "logFC": rng.normal(0, 0.3, n),
        "AveExpr": rng.gamma(2, 50, n),
        "P.Value": rng.uniform(0.05, 1, n),
        "cell_type": "VSM",
        "contrast": "cold7_vs_TN",
    })
    df.loc[:4, "logFC"] = [3.0, 2.0, -2.5, 1.5, -1.2]
    df.loc[:4, "P.Value"] = [1e-10, 1e-6, 1e-5, 1e-4, 1e-3]
    df["adj.P.Val"] = (df["P.Value"] * 20).clip(upper=1)
    df["logFC_shrunk"] = df["logFC"] * 0.8
    df["significant"] = (df["adj.P.Val"] < 0.05) & (df["logFC"].abs() > 0.5)
    return df


@pytest.mark.unit
class TestDePlots:
    """DE plots save figures and skip empty selections."""

    def test_top_de_genes(self, de_results):
        assert top_de_genes(de_results, n=2) == [SPIKED_GENE, de_results.loc[1, "gene"]]

    def test_volcano(self, de_results, tmp_path):
        out = tmp_path / "volcano.png"
        fig = plot_volcano(de_results, "VSM", "cold7_vs_TN", save_path=out)
        assert fig is not None and out.exists()

    def test_volcano_no_rows(self, de_results):
        assert plot_volcano(de_results, "Endo", "cold7_vs_TN") is None

    def test_ma_shrunk(self, de_results, tmp_path):
        out = tmp_path / "ma.png"
        plot_ma(de_results, "VSM", "cold7_vs_TN", lfc_col="logFC_shrunk", save_path=out)
        assert out.exists()

    def test_ma_unknown_column(self, de_results):
        with pytest.raises(KeyError, match="lfc_apeglm"):
            plot_ma(de_results, lfc_col="lfc_apeglm")

    def test_log_cpm(self):
        counts = pd.DataFrame({"s1": [10, 0], "s2": [5, 5]}, index=["a", "b"])
        cpm = log_cpm(counts)
        assert cpm.loc["b", "s1"] == 0
        assert cpm.loc["a", "s2"] == pytest.approx(np.log2(5e5 + 1))

    def test_heatmap(self, bat_adata, de_results, tmp_path):
        pb_df, sample_info = create_pseudobulk(bat_adata)
        out = tmp_path / "heatmap.png"
        grid = plot_de_heatmap(pb_df, sample_info, de_results, "VSM", "cold7_vs_TN",
                               top_n=4, save_path=out)
        assert out.exists()
        assert grid.data2d.shape == (4, 6)

    def test_heatmap_no_significant(self, bat_adata, de_results):
        pb_df, sample_info = create_pseudobulk(bat_adata)
        de_results["significant"] = False
        assert plot_de_heatmap(pb_df, sample_info, de_results, "VSM", "cold7_vs_TN") is None

    def test_top_genes_expression(self, tmp_path):
        samples = [f"s{i}" for i in range(6)]
        norm = pd.DataFrame({"Ucp1": [10, 12, 11, 90, 80, 85], "Actb": [50] * 6}, index=samples)
        info = pd.DataFrame({"condition": ["TN"] * 3 + ["cold7"] * 3}, index=samples)
        out = tmp_path / "genes.png"
        fig = plot_top_genes_expression(norm, info, ["Ucp1", "Actb", "Missing"], save_path=out)
        assert out.exists()
        assert [ax.get_title() for ax in fig.axes[:2]] == ["Ucp1", "Actb"]
        assert plot_top_genes_expression(norm, info, ["Missing"]) is None

    def test_gene_umap_split(self, normalized_adata, tmp_path):
        out = tmp_path / "umap.png"
        plot_gene_umap(normalized_adata, [SPIKED_GENE], split_by="condition", save_path=out)
        assert out.exists()
