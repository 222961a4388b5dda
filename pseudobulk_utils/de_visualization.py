#!/usr/bin/env python3
"""
Visualization of pseudobulk differential expression results
Volcano, MA, heatmap and per-gene expression plots
"""

from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import scanpy as sc

from pseudobulk_utils.config import METADATA_COLS, VIZ_PARAMS


def _finish(fig, save_path):
    if save_path:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=VIZ_PARAMS["dpi"], bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def _select_results(de_results, cell_type=None, contrast=None):
    subset = de_results
    if cell_type is not None and "cell_type" in subset.columns:
        subset = subset[subset["cell_type"] == cell_type]
    if contrast is not None and "contrast" in subset.columns:
        subset = subset[subset["contrast"] == contrast]
    return subset.copy()


def top_de_genes(de_results, n=VIZ_PARAMS["top_n_genes"], by="adj.P.Val"):
    """Top n significant genes ranked by adjusted p-value"""
    sig = de_results[de_results["significant"]]
    return sig.nsmallest(n, by)["gene"].tolist()


def plot_volcano(de_results, cell_type=None, contrast=None,
                 fc_threshold=VIZ_PARAMS["volcano_fc_threshold"],
                 pval_threshold=VIZ_PARAMS["volcano_padj_threshold"],
                 n_labels=VIZ_PARAMS["n_labels"], save_path=None):
    """Plot volcano plot for DE results

    Args:
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        n_labels: Number of top genes to label
        save_path: Path to save figure
    """
    ct_results = _select_results(de_results, cell_type, contrast)
    ct_results = ct_results.dropna(subset=["P.Value", "logFC"])

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return None

    ct_results["neg_log10_padj"] = -np.log10(ct_results["adj.P.Val"].fillna(1) + 1e-300)

    ct_results["category"] = "Not significant"
    ct_results.loc[
        (ct_results["adj.P.Val"] < pval_threshold) & (ct_results["logFC"] > fc_threshold),
        "category",
    ] = "Upregulated"
    ct_results.loc[
        (ct_results["adj.P.Val"] < pval_threshold) & (ct_results["logFC"] < -fc_threshold),
        "category",
    ] = "Downregulated"

    fig, ax = plt.subplots(figsize=(10, 8))

    colors = {"Not significant": "gray", "Upregulated": "red", "Downregulated": "blue"}
    for category, color in colors.items():
        data = ct_results[ct_results["category"] == category]
        if len(data) == 0:
            continue
        label = category if category == "Not significant" else f"{category} (n={len(data)})"
        ax.scatter(data["logFC"], data["neg_log10_padj"], c=color,
                   alpha=0.5 if color == "gray" else 0.7, s=20, label=label)

    to_label = ct_results[ct_results["category"] != "Not significant"].nsmallest(
        n_labels, "adj.P.Val"
    )
    for _, row in to_label.iterrows():
        ax.annotate(row["gene"], (row["logFC"], row["neg_log10_padj"]),
                    fontsize=8, xytext=(3, 3), textcoords="offset points")

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axhline(-np.log10(pval_threshold), color="black", linestyle="--",
               linewidth=1, alpha=0.5)

    title = " - ".join(str(x) for x in (cell_type, contrast) if x is not None)
    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-Log10(adjusted p-value)", fontsize=12)
    ax.set_title(f"{title}\nVolcano Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)
    plt.tight_layout()

    _finish(fig, save_path)
    return fig


def plot_ma(de_results, cell_type=None, contrast=None, lfc_col="logFC",
            fdr_threshold=VIZ_PARAMS["volcano_padj_threshold"], save_path=None):
    """MA plot: log2 fold change against mean normalized expression

    Use lfc_col="logFC_shrunk" to compare shrunken with raw estimates.
    """
    ct_results = _select_results(de_results, cell_type, contrast)
    if lfc_col not in ct_results.columns:
        raise KeyError(f"Column '{lfc_col}' not found in DE results")
    ct_results = ct_results[ct_results["AveExpr"] > 0].dropna(subset=[lfc_col])

    if len(ct_results) == 0:
        print(f"No results for {cell_type} - {contrast}")
        return None

    sig = ct_results["adj.P.Val"] < fdr_threshold

    fig, ax = plt.subplots(figsize=(9, 6))
    ax.scatter(ct_results.loc[~sig, "AveExpr"], ct_results.loc[~sig, lfc_col],
               c="gray", s=8, alpha=0.5, label="Not significant")
    ax.scatter(ct_results.loc[sig, "AveExpr"], ct_results.loc[sig, lfc_col],
               c="dodgerblue", s=10, alpha=0.8, label=f"padj < {fdr_threshold} (n={sig.sum()})")
    ax.axhline(0, color="red", linewidth=1)
    ax.set_xscale("log")
    ax.set_xlabel("Mean of normalized counts", fontsize=12)
    ax.set_ylabel(lfc_col, fontsize=12)
    title = " - ".join(str(x) for x in (cell_type, contrast) if x is not None)
    ax.set_title(f"{title}\nMA Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    plt.tight_layout()

    _finish(fig, save_path)
    return fig


def log_cpm(pb_df):
    """log2(CPM + 1) of a genes × samples count table"""
    lib_sizes = pb_df.sum(axis=0)
    return np.log2(pb_df.div(lib_sizes, axis=1) * 1e6 + 1)


def plot_de_heatmap(pb_df, sample_info_df, de_results, cell_type, contrast,
                    top_n=VIZ_PARAMS["top_n_genes"],
                    condition_col=METADATA_COLS["condition"], save_path=None):
    """Plot heatmap of top DE genes (row-scaled log2 CPM)

    Args:
        pb_df: Pseudobulk expression DataFrame
        sample_info_df: Sample metadata DataFrame
        de_results: DE results DataFrame
        cell_type: Cell type to plot
        contrast: Contrast name
        top_n: Number of top genes to show
        condition_col: Column used to order and annotate samples
        save_path: Path to save figure
    """
    ct_results = _select_results(de_results, cell_type, contrast)
    top_genes = top_de_genes(ct_results, n=top_n)

    if not top_genes:
        print(f"No significant genes for {cell_type} - {contrast}")
        return None

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type]
    ct_samples = ct_samples.sort_values(condition_col)
    heatmap_data = log_cpm(pb_df[ct_samples["group_id"]]).loc[top_genes]

    # z-score per gene
    heatmap_data = heatmap_data.sub(heatmap_data.mean(axis=1), axis=0).div(
        heatmap_data.std(axis=1).replace(0, 1), axis=0
    )

    conditions = ct_samples.set_index("group_id")[condition_col].astype(str)
    palette = dict(zip(sorted(conditions.unique()),
                       sns.color_palette("Set2", conditions.nunique())))

    grid = sns.clustermap(
        heatmap_data,
        cmap=sns.diverging_palette(220, 20, as_cmap=True),
        center=0,
        col_cluster=False,
        col_colors=conditions.map(palette),
        yticklabels=True,
        xticklabels=True,
        cbar_kws={"label": "z-score log2(CPM + 1)"},
        figsize=(10, max(6, len(top_genes) * 0.3)),
    )
    grid.fig.suptitle(f"{cell_type} - {contrast}\nTop {len(top_genes)} DE genes",
                      fontsize=14, fontweight="bold", y=1.03)

    _finish(grid.fig, save_path)
    return grid


def plot_top_genes_expression(norm_counts, sample_info, genes,
                              condition_col=METADATA_COLS["condition"],
                              n_cols=4, save_path=None):
    """Strip plot of normalized counts per sample for selected genes

    Args:
        norm_counts: Normalized counts, samples × genes
        sample_info: Sample metadata indexed like norm_counts
        genes: Genes to plot
        condition_col: Column used for the x axis
        n_cols: Panels per row
        save_path: Path to save figure
    """
    genes = [g for g in genes if g in norm_counts.columns]
    if not genes:
        print("None of the requested genes are present")
        return None

    long_df = (
        norm_counts[genes]
        .join(sample_info[[condition_col]])
        .melt(id_vars=condition_col, var_name="gene", value_name="normalized_count")
    )

    n_cols = min(n_cols, len(genes))
    n_rows = int(np.ceil(len(genes) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False)
    axes = axes.flatten()

    for ax, gene in zip(axes, genes):
        data = long_df[long_df["gene"] == gene]
        sns.stripplot(data=data, x=condition_col, y="normalized_count",
                      hue=condition_col, size=7, ax=ax, legend=False)
        ax.set_yscale("log")
        ax.set_title(gene, fontweight="bold")
        ax.set_xlabel("")
        ax.set_ylabel("Normalized counts")

    for ax in axes[len(genes):]:
        ax.axis("off")

    plt.tight_layout()
    _finish(fig, save_path)
    return fig


def plot_gene_umap(adata, genes, split_by=None, save_path=None):
    """UMAP coloured by expression of selected genes

    Args:
        adata: AnnData object with X_umap
        genes: Genes to plot
        split_by: Optional obs column; one row of panels per level
        save_path: Path to save figure
    """
    genes = [g for g in genes if g in adata.var_names]
    if not genes:
        print("None of the requested genes are present")
        return None

    if split_by is None:
        fig = sc.pl.umap(adata, color=genes, show=False, return_fig=True)
    else:
        levels = list(adata.obs[split_by].astype(str).unique())
        fig, axes = plt.subplots(len(levels), len(genes),
                                 figsize=(4 * len(genes), 4 * len(levels)), squeeze=False)
        for i, level in enumerate(levels):
            sub = adata[(adata.obs[split_by].astype(str) == level).values].copy()
            for j, gene in enumerate(genes):
                sc.pl.umap(sub, color=gene, ax=axes[i, j], show=False,
                           title=f"{gene} ({level})")
        plt.tight_layout()

    _finish(fig, save_path)
    return fig
