"""Tests for ORA and GSEA wrappers around gseapy."""

from types import SimpleNamespace
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from pseudobulk_utils.pathway_analysis import (
    ORA_COLUMNS,
    compute_rank_vector,
    filter_gene_sets,
    load_gene_sets,
    run_gsea,
    run_ora,
    run_ora_by_direction,
    safe_negative_log10,
    significant_pathways,
    standardize_enrichment_columns,
    tested_genes as universe_of_tested_genes,
)

THERMOGENESIS = ["Ucp1", "Cidea", "Elovl3", "Dio2", "Ppargc1a", "Cox8b"]
CONTRACTION = ["Acta2", "Myh11", "Tagln", "Cnn1", "Myl9"]
UNIVERSE = THERMOGENESIS + CONTRACTION + [f"Gene{i}" for i in range(40)]


@pytest.fixture
def gene_sets():
    return {
        "custom": {
            "THERMOGENESIS": THERMOGENESIS,
            "CONTRACTION": CONTRACTION,
            "TINY": ["Ucp1", "Cidea"],
        }
    }


@pytest.fixture
def de_results():
    rng = np.random.default_rng(1)
    df = pd.DataFrame({
        "gene": UNIVERSE,
        "logFC": rng.normal(0, 0.2, len(UNIVERSE)),
        "P.Value": rng.uniform(0.2, 1, len(UNIVERSE)),
    })
    df.loc[df["gene"].isin(THERMOGENESIS), ["logFC", "P.Value"]] = [2.5, 1e-6]
    df.loc[df["gene"].isin(CONTRACTION), ["logFC", "P.Value"]] = [-1.8, 1e-4]
    df["stat"] = np.sign(df["logFC"]) * -np.log10(df["P.Value"])
    df["adj.P.Val"] = df["P.Value"] * 3
    df.loc[df["gene"] == "Gene0", "adj.P.Val"] = np.nan
    df["upregulated"] = df["gene"].isin(THERMOGENESIS)
    df["downregulated"] = df["gene"].isin(CONTRACTION)
    return df


def _fake_enrich(gene_list, gene_sets, background, **kwargs):
    rows = []
    for term, genes in gene_sets.items():
        hits = sorted(set(gene_list) & set(genes))
        if not hits:
            continue
        rows.append({
            "Gene_set": "gs_ind_0",
            "Term": term,
            "Overlap": f"{len(hits)}/{len(genes)}",
            "P-value": 10.0 ** -len(hits),
            "Adjusted P-value": 10.0 ** -len(hits) * 2,
            "Odds Ratio": float(len(hits)),
            "Combined Score": float(len(hits)) * 3,
            "Genes": ";".join(hits),
        })
    return SimpleNamespace(results=pd.DataFrame(rows))


def _fake_prerank(rnk, gene_sets, **kwargs):
    terms = list(gene_sets)
    res2d = pd.DataFrame({
        "Name": ["prerank"] * len(terms),
        "Term": terms,
        "ES": [0.9, -0.8, 0.1][: len(terms)],
        "NES": [2.1, -1.9, 0.3][: len(terms)],
        "NOM p-val": ["0.001", "0.002", "0.8"][: len(terms)],
        "FDR q-val": ["0.01", "0.02", "0.9"][: len(terms)],
        "FWER p-val": ["0.01", "0.03", "1.0"][: len(terms)],
        "Tag %": ["3/6", "2/5", "1/2"][: len(terms)],
        "Gene %": ["5%", "9%", "50%"][: len(terms)],
        "Lead_genes": ["Ucp1;Cidea;Elovl3", "Acta2;Myh11", "Ucp1"][: len(terms)],
    })
    return SimpleNamespace(res2d=res2d, results={}, ranking=rnk)


@pytest.mark.unit
class TestRankVector:
    """Test building the preranked list."""

    def test_stat_metric(self, de_results):
        ranking = compute_rank_vector(de_results, "stat")
        assert ranking.index[0] in THERMOGENESIS
        assert ranking.index[-1] in CONTRACTION
        assert ranking.is_monotonic_decreasing
        assert ranking.index.is_unique

    def test_signed_pval(self, de_results):
        ranking = compute_rank_vector(de_results, "signed_pval")
        assert ranking["Ucp1"] == pytest.approx(2.5 * 6, rel=1e-6)

    def test_duplicates_keep_largest_score(self):
        df = pd.DataFrame({"gene": ["a", "a", "b"], "stat": [1.0, -4.0, 2.0]})
        ranking = compute_rank_vector(df, "stat")
        assert ranking.to_dict() == {"b": 2.0, "a": -4.0}

    def test_ties_become_strict(self):
        df = pd.DataFrame({"gene": ["a", "b", "c"], "stat": [1.0, 1.0, 0.5]})
        ranking = compute_rank_vector(df, "stat")
        assert ranking.is_unique
        assert ranking.is_monotonic_decreasing

    def test_missing_values_dropped(self):
        df = pd.DataFrame({"gene": ["a", "b"], "stat": [np.nan, 1.0]})
        assert list(compute_rank_vector(df, "stat").index) == ["b"]

    def test_unknown_metric(self, de_results):
        with pytest.raises(ValueError, match="rank metric"):
            compute_rank_vector(de_results, "pi_score")

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="stat"):
            compute_rank_vector(pd.DataFrame({"gene": ["a"]}), "stat")

    def test_safe_negative_log10(self):
        values = safe_negative_log10(pd.Series([0.0, 0.01, 1.0]))
        assert np.isfinite(values).all()
        assert values.iloc[1] == pytest.approx(2.0)
        assert values.iloc[2] == 0


@pytest.mark.unit
class TestGeneSets:
    """Test loading and filtering gene set libraries."""

    def test_filter_gene_sets(self, gene_sets):
        filtered = filter_gene_sets(gene_sets["custom"], UNIVERSE[:8], min_size=3, max_size=10)
        assert list(filtered) == ["THERMOGENESIS"]
        assert filtered["THERMOGENESIS"] == sorted(THERMOGENESIS)

    def test_failed_download_is_skipped(self):
        def fake_get_library(name, organism=None):
            if name == "broken":
                raise ConnectionError("offline")
            return {"TERM": ["A", "B"]}

        with patch("pseudobulk_utils.pathway_analysis.gp.get_library",
                   side_effect=fake_get_library) as mock_get:
            loaded = load_gene_sets(
                collections={"ok": ("KEGG_2019_Mouse", "Mouse"), "bad": ("broken", None)},
                custom={"mine": {"SET": ("X", "Y")}},
            )

        assert set(loaded) == {"ok", "mine"}
        assert loaded["mine"] == {"SET": ["X", "Y"]}
        mock_get.assert_any_call(name="KEGG_2019_Mouse", organism="Mouse")
        mock_get.assert_any_call(name="broken")

    def test_gmt_file(self, tmp_path):
        gmt = tmp_path / "sets.gmt"
        gmt.write_text("THERMO\tna\tUcp1\tCidea\tDio2\n")
        with patch("pseudobulk_utils.pathway_analysis.gp.read_gmt",
                   return_value={"THERMO": ["Ucp1", "Cidea", "Dio2"]}) as mock_read:
            loaded = load_gene_sets(collections={}, gmt_files={"local": gmt})
        mock_read.assert_called_once_with(str(gmt))
        assert loaded["local"]["THERMO"] == ["Ucp1", "Cidea", "Dio2"]

    def test_standardize_columns(self):
        raw = pd.DataFrame({"Term": ["t"], "NOM p-val": ["0.01"], "FDR q-val": ["0.2"], "Tag %": ["1/2"]})
        out = standardize_enrichment_columns(raw)
        assert list(out.columns) == ["term", "pval", "fdr", "tag_percent"]
        assert out.loc[0, "pval"] == pytest.approx(0.01)


@pytest.mark.unit
class TestOra:
    """Test over-representation with a mocked enrichment call."""

    def test_run_ora(self, gene_sets):
        with patch("pseudobulk_utils.pathway_analysis.gp.enrich",
                   side_effect=_fake_enrich) as mock_enrich:
            results = run_ora(THERMOGENESIS + ["NotInUniverse"], gene_sets, UNIVERSE,
                              min_size=3, max_size=500)

        kwargs = mock_enrich.call_args.kwargs
        assert "NotInUniverse" not in kwargs["gene_list"]
        assert kwargs["background"] == sorted(UNIVERSE)
        assert "TINY" not in kwargs["gene_sets"]

        assert list(results.columns) == ORA_COLUMNS
        top = results.iloc[0]
        assert top["term"] == "THERMOGENESIS"
        assert top["collection"] == "custom"
        assert top["gene_ratio"] == pytest.approx(1.0)
        assert top["bg_ratio"] == pytest.approx(6 / len(UNIVERSE))
        assert "/" in top["genes"]

    def test_no_query_genes(self, gene_sets):
        with patch("pseudobulk_utils.pathway_analysis.gp.enrich") as mock_enrich:
            results = run_ora(["Unknown"], gene_sets, UNIVERSE)
        mock_enrich.assert_not_called()
        assert results.empty
        assert list(results.columns) == ORA_COLUMNS

    def test_by_direction(self, gene_sets, de_results):
        with patch("pseudobulk_utils.pathway_analysis.gp.enrich", side_effect=_fake_enrich):
            results = run_ora_by_direction(de_results, gene_sets, min_size=3, max_size=500)

        top_terms = results.groupby("direction")["term"].first()
        assert top_terms["up"] == "THERMOGENESIS"
        assert top_terms["down"] == "CONTRACTION"

    def test_tested_genes_excludes_untested(self, de_results):
        genes = universe_of_tested_genes(de_results)
        assert "Gene0" not in genes
        assert len(genes) == len(UNIVERSE) - 1


@pytest.mark.unit
class TestGsea:
    """Test preranked GSEA with a mocked gseapy call."""

    def test_run_gsea(self, gene_sets, de_results, tmp_path):
        ranking = compute_rank_vector(de_results, "stat")
        with patch("pseudobulk_utils.pathway_analysis.gp.prerank",
                   side_effect=_fake_prerank) as mock_prerank:
            results, objects = run_gsea(ranking, gene_sets, min_size=3, outdir=tmp_path)

        assert mock_prerank.call_args.kwargs["seed"] is not None
        assert set(objects) == {"custom"}
        assert {"pathway", "nes", "pval", "fdr", "collection", "ranking_size"} <= set(results.columns)
        assert "name" not in results.columns
        assert results.iloc[0]["pathway"] == "THERMOGENESIS"
        assert results["fdr"].is_monotonic_increasing
        assert (tmp_path / "custom" / "gsea_results.csv").exists()

        hits = significant_pathways(results, "fdr", 0.05)
        assert set(hits["pathway"]) == {"THERMOGENESIS", "CONTRACTION"}

    def test_short_ranking_skipped(self, gene_sets):
        with patch("pseudobulk_utils.pathway_analysis.gp.prerank") as mock_prerank:
            results, objects = run_gsea(pd.Series([1.0, 0.5], index=["a", "b"]), gene_sets, min_size=5)
        mock_prerank.assert_not_called()
        assert results.empty and objects == {}

    def test_significant_pathways_empty(self):
        assert significant_pathways(pd.DataFrame()).empty
