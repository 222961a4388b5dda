"""
Comparison of differential expression results.

Two kinds of comparison are used in the lessons: the same contrast tested
with two methods (single-cell Wilcoxon vs pseudobulk DESeq2), and several
contrasts tested with the same method.
"""

from __future__ import annotations

from itertools import combinations
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

OVERLAP_CATEGORIES = ["both", "single-cell only", "pseudobulk only", "neither"]


def compare_de_methods(
    sc_results: pd.DataFrame,
    pb_results: pd.DataFrame,
    sc_padj_threshold: float = 0.05,
    pb_padj_threshold: float = 0.05,
) -> pd.DataFrame:
    """Merge a marker table with a pseudobulk DE table on gene.

    Returns:
        DataFrame with gene, sc_log2FC, sc_padj, pb_log2FC, pb_padj, the
        significance flag from each method and an overlap category.
    """
    sc_df = sc_results[["gene", "avg_log2FC", "p_val_adj"]].rename(
        columns={"avg_log2FC": "sc_log2FC", "p_val_adj": "sc_padj"}
    )
    pb_df = pb_results[["gene", "logFC", "adj.P.Val"]].rename(
        columns={"logFC": "pb_log2FC", "adj.P.Val": "pb_padj"}
    )
    merged = sc_df.merge(pb_df, on="gene", how="outer")

    merged["sc_significant"] = merged["sc_padj"] < sc_padj_threshold
    merged["pb_significant"] = merged["pb_padj"] < pb_padj_threshold

    merged["overlap"] = np.select(
        [
            merged["sc_significant"] & merged["pb_significant"],
            merged["sc_significant"] & ~merged["pb_significant"],
            ~merged["sc_significant"] & merged["pb_significant"],
        ],
        OVERLAP_CATEGORIES[:3],
        default="neither",
    )
    return merged


def overlap_summary(comparison: pd.DataFrame) -> pd.Series:
    """Number of genes per overlap category, in a fixed order."""
    return comparison["overlap"].value_counts().reindex(OVERLAP_CATEGORIES, fill_value=0)


def fold_change_agreement(comparison: pd.DataFrame) -> Dict[str, float]:
    """Spearman correlation and sign agreement of fold changes on shared genes."""
    shared = comparison.dropna(subset=["sc_log2FC", "pb_log2FC"])
    if len(shared) < 3:
        return {"n_genes": len(shared), "spearman_r": np.nan, "sign_agreement": np.nan}

    rho, _ = stats.spearmanr(shared["sc_log2FC"], shared["pb_log2FC"])
    same_sign = np.sign(shared["sc_log2FC"]) == np.sign(shared["pb_log2FC"])
    return {
        "n_genes": len(shared),
        "spearman_r": float(rho),
        "sign_agreement": float(same_sign.mean()),
    }


def plot_method_comparison(
    comparison: pd.DataFrame,
    title: str = "Single-cell vs pseudobulk",
    output_path: Optional[Path] = None,
) -> plt.Figure:
    """Fold-change scatter coloured by overlap category, plus category counts."""
    colors = {
        "both": "#6a3d9a",
        "single-cell only": "#e31a1c",
        "pseudobulk only": "#1f78b4",
        "neither": "lightgray",
    }
    shared = comparison.dropna(subset=["sc_log2FC", "pb_log2FC"])

    fig, axes = plt.subplots(1, 2, figsize=(14, 6))

    ax = axes[0]
    for category in reversed(OVERLAP_CATEGORIES):
        data = shared[shared["overlap"] == category]
        ax.scatter(data["pb_log2FC"], data["sc_log2FC"], s=10, alpha=0.7,
                   c=colors[category], label=f"{category} (n={len(data)})")
    ax.axhline(0, color="black", linewidth=0.8, alpha=0.5)
    ax.axvline(0, color="black", linewidth=0.8, alpha=0.5)
    ax.set_xlabel("Pseudobulk log2FC", fontsize=12)
    ax.set_ylabel("Single-cell avg_log2FC", fontsize=12)
    agreement = fold_change_agreement(comparison)
    ax.set_title(f"Fold changes (Spearman r = {agreement['spearman_r']:.2f})",
                 fontsize=12, fontweight="bold")
    ax.legend(loc="best", fontsize=9)

    ax = axes[1]
    counts = overlap_summary(comparison).drop("neither")
    ax.bar(counts.index, counts.values, color=[colors[c] for c in counts.index], alpha=0.8)
    for i, value in enumerate(counts.values):
        ax.text(i, value, str(value), ha="center", va="bottom")
    ax.set_ylabel("Significant genes", fontsize=12)
    ax.set_title("Significant genes by method", fontsize=12, fontweight="bold")

    fig.suptitle(title, fontsize=14, fontweight="bold")
    plt.tight_layout()
    _finish(fig, output_path)
    return fig


def significant_gene_sets(
    de_results: pd.DataFrame,
    group_col: str = "contrast",
    flag_col: str = "significant",
) -> Dict[str, set]:
    """Map each group (e.g. contrast) to its set of flagged genes."""
    return {
        str(group): set(df.loc[df[flag_col], "gene"])
        for group, df in de_results.groupby(group_col)
    }


def membership_matrix(gene_sets: Dict[str, set]) -> pd.DataFrame:
    """Boolean gene × set matrix."""
    all_genes = sorted(set().union(*gene_sets.values())) if gene_sets else []
    return pd.DataFrame(
        {name: [g in genes for g in all_genes] for name, genes in gene_sets.items()},
        index=all_genes,
    )


def intersection_counts(gene_sets: Dict[str, set]) -> pd.DataFrame:
    """Exclusive intersection sizes, as shown in an UpSet plot.

    Each gene is counted once, under the exact combination of sets it
    belongs to.
    """
    matrix = membership_matrix(gene_sets)
    if matrix.empty:
        return pd.DataFrame(columns=["sets", "n_genes"])

    combos = matrix.apply(lambda row: " & ".join(matrix.columns[row.values]), axis=1)
    counts = combos.value_counts().rename_axis("sets").reset_index(name="n_genes")
    return counts.sort_values("n_genes", ascending=False).reset_index(drop=True)


def pairwise_overlap(gene_sets: Dict[str, set]) -> pd.DataFrame:
    """Shared genes and Jaccard index for every pair of sets."""
    rows: List[dict] = []
    for (a, genes_a), (b, genes_b) in combinations(gene_sets.items(), 2):
        union = genes_a | genes_b
        rows.append({
            "set_a": a,
            "set_b": b,
            "shared": len(genes_a & genes_b),
            "jaccard": len(genes_a & genes_b) / len(union) if union else np.nan,
        })
    return pd.DataFrame(rows)


def plot_intersections(
    gene_sets: Dict[str, set],
    max_bars: int = 15,
    output_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """Bar chart of exclusive intersections with a dot matrix underneath."""
    counts = intersection_counts(gene_sets).head(max_bars)
    if counts.empty:
        print("No significant genes to compare.")
        return None

    names = list(gene_sets.keys())
    fig, (ax_bar, ax_dots) = plt.subplots(
        2, 1, figsize=(max(6, len(counts) * 0.6), 6),
        gridspec_kw={"height_ratios": [3, 1]}, sharex=True,
    )

    x = np.arange(len(counts))
    ax_bar.bar(x, counts["n_genes"], color="#404040")
    for xi, n in zip(x, counts["n_genes"]):
        ax_bar.text(xi, n, str(n), ha="center", va="bottom", fontsize=8)
    ax_bar.set_ylabel("Genes")
    ax_bar.set_title("Overlap of significant genes", fontweight="bold")

    for xi, combo in zip(x, counts["sets"]):
        members = combo.split(" & ")
        ys = [names.index(m) for m in members]
        ax_dots.scatter([xi] * len(names), range(len(names)), c="lightgray", s=40)
        ax_dots.scatter([xi] * len(ys), ys, c="black", s=40)
        if len(ys) > 1:
            ax_dots.plot([xi, xi], [min(ys), max(ys)], c="black", lw=1.5)
    ax_dots.set_yticks(range(len(names)))
    ax_dots.set_yticklabels(names)
    ax_dots.set_xticks([])

    plt.tight_layout()
    _finish(fig, output_path)
    return fig


def _finish(fig, output_path):
    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches="tight")
        print(f"Saved figure to {output_path}")
        plt.close(fig)
    else:
        plt.show()
