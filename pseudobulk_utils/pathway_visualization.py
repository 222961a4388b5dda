"""
Visualization functions for functional analysis results.

This module provides dot plots for over-representation results, NES bar
plots for GSEA results, and a heatmap comparing pathways across groups
(cell types, contrasts or regulation directions).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import gseapy as gp


def _truncate(names: pd.Series, width: int = 60) -> list:
    return [name[:width] + "..." if len(name) > width else name for name in names.astype(str)]


def _finish(fig, output_path):
    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches="tight")
        print(f"Saved figure to {output_path}")
        plt.close(fig)
    else:
        plt.show()


def plot_ora_dotplot(
    ora_results: pd.DataFrame,
    max_terms: int = 15,
    padj_threshold: float = 0.05,
    title: str = "Over-representation analysis",
    output_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """Dot plot of the top ORA terms.

    x = gene ratio, dot size = number of overlapping genes, colour = adjusted
    p-value, in the layout of clusterProfiler's dotplot.
    """
    if ora_results.empty:
        print("No enrichment results to plot.")
        return None

    subset = ora_results[ora_results["padj"] <= padj_threshold].copy()
    if subset.empty:
        print(f"No terms pass padj ≤ {padj_threshold}")
        return None

    subset = subset.nsmallest(max_terms, "padj").sort_values("gene_ratio")
    subset["count"] = subset["overlap"].astype(str).str.split("/").str[0].astype(int)

    fig, ax = plt.subplots(figsize=(9, max(4, 0.4 * len(subset))))
    scatter = ax.scatter(
        subset["gene_ratio"],
        range(len(subset)),
        s=subset["count"] * 20,
        c=subset["padj"],
        cmap="RdBu",
        edgecolors="black",
        linewidths=0.5,
    )
    ax.set_yticks(range(len(subset)))
    ax.set_yticklabels(_truncate(subset["term"]), fontsize=9)
    ax.set_xlabel("Gene ratio", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    plt.colorbar(scatter, ax=ax, label="Adjusted p-value")

    for count in sorted(set(np.quantile(subset["count"], [0, 0.5, 1]).astype(int))):
        ax.scatter([], [], s=count * 20, c="gray", label=str(count))
    ax.legend(title="Count", loc="lower right", frameon=True, labelspacing=1.2)

    plt.tight_layout()
    _finish(fig, output_path)
    return fig


def plot_gsea_barplot(
    gsea_results: pd.DataFrame,
    max_terms: int = 12,
    fdr_threshold: float = 0.25,
    title: str = "Top GSEA pathways",
    output_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """Horizontal bar plot of the strongest positive and negative NES."""
    if gsea_results.empty:
        print("No enrichment results to plot.")
        return None

    subset = gsea_results[gsea_results["fdr"] <= fdr_threshold].copy()
    if subset.empty:
        print(f"No pathways pass FDR ≤ {fdr_threshold}")
        return None

    top_up = subset[subset["nes"] > 0].nlargest(max_terms // 2, "nes")
    top_down = subset[subset["nes"] < 0].nsmallest(max_terms // 2, "nes")
    top_hits = pd.concat([top_up, top_down]).sort_values("nes")

    fig, ax = plt.subplots(figsize=(9, max(4, 0.4 * len(top_hits))))
    colors = top_hits["nes"].apply(lambda x: "#d7301f" if x > 0 else "#225ea8")
    ax.barh(range(len(top_hits)), top_hits["nes"], color=colors)
    ax.set_yticks(range(len(top_hits)))
    ax.set_yticklabels(_truncate(top_hits["pathway"]), fontsize=9)
    ax.axvline(0, color="black", linewidth=1)
    ax.set_xlabel("Normalized Enrichment Score (NES)")
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(axis="x", alpha=0.3, linestyle="--")
    plt.tight_layout()

    _finish(fig, output_path)
    return fig


def plot_enrichment_heatmap(
    results_df: pd.DataFrame,
    group_col: str = "contrast",
    value_col: str = "nes",
    significance_col: str = "fdr",
    threshold: float = 0.25,
    max_pathways: int = 20,
    term_col: str = "pathway",
    figsize: tuple = (10, 8),
    output_path: Optional[Path] = None,
) -> Optional[plt.Figure]:
    """Heatmap of pathways (rows) x groups (columns).

    For GSEA tables the cells hold NES; for ORA tables pass
    value_col="neg_log10_padj" after adding it, significance_col="padj".
    Only pathways significant in at least one group are shown.
    """
    if results_df.empty:
        print("No enrichment results to plot.")
        return None

    filtered_df = results_df[results_df[significance_col] <= threshold]
    if filtered_df.empty:
        print(f"No pathways pass filters ({significance_col} ≤ {threshold})")
        return None

    agg_df = (
        filtered_df.groupby([term_col, group_col])[value_col]
        .agg(lambda x: x.loc[x.abs().idxmax()])
        .reset_index()
    )
    pathway_scores = (
        agg_df.groupby(term_col)[value_col].apply(lambda x: x.abs().max()).sort_values(ascending=False)
    )
    top_pathways = pathway_scores.head(max_pathways).index.tolist()

    pivot_data = agg_df[agg_df[term_col].isin(top_pathways)].pivot(
        index=term_col, columns=group_col, values=value_col
    ).reindex(top_pathways)

    fig, ax = plt.subplots(figsize=figsize)
    vmax = np.nanmax(np.abs(pivot_data.values))
    diverging = bool((pivot_data.values < 0).any())
    im = ax.imshow(
        pivot_data.values,
        aspect="auto",
        cmap="RdBu_r" if diverging else "Reds",
        vmin=-vmax if diverging else 0,
        vmax=vmax,
    )

    ax.set_xticks(range(len(pivot_data.columns)))
    ax.set_xticklabels(pivot_data.columns, rotation=45, ha="right")
    ax.set_yticks(range(len(pivot_data.index)))
    ax.set_yticklabels(_truncate(pd.Series(pivot_data.index)))
    plt.colorbar(im, ax=ax, label=value_col)

    for i in range(len(pivot_data.index)):
        for j in range(len(pivot_data.columns)):
            value = pivot_data.iloc[i, j]
            if not pd.isna(value):
                text_color = "white" if abs(value) > vmax * 0.6 else "black"
                ax.text(j, i, f"{value:.2f}", ha="center", va="center",
                        color=text_color, fontsize=8)

    ax.set_xlabel(group_col, fontsize=12, fontweight="bold")
    ax.set_ylabel("Pathway", fontsize=12, fontweight="bold")
    ax.set_title(f"Enrichment across {group_col} ({significance_col} ≤ {threshold})",
                 fontsize=14, fontweight="bold", pad=20)
    plt.tight_layout()

    _finish(fig, output_path)
    return fig


def plot_gsea_running_score(prerank_res, term: str, output_path: Optional[Path] = None):
    """Classic GSEA enrichment plot for one term of a gseapy Prerank result."""
    if term not in prerank_res.results:
        raise KeyError(f"Term '{term}' not found in GSEA results")

    axes = gp.gseaplot(
        rank_metric=prerank_res.ranking,
        term=term,
        ofname=None,
        **prerank_res.results[term],
    )
    # gseapy returns a list of axes sharing one figure
    first = axes[0] if isinstance(axes, (list, tuple)) else axes
    _finish(first.figure, output_path)
    return axes
