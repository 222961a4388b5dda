"""
Sample-level quality control for pseudobulk DESeq2 models.

PCA and correlation of variance-stabilized counts show whether replicates
cluster by condition before any test is run; the dispersion plot shows how
DESeq2 shrank gene-wise estimates toward the fitted trend.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from sklearn.decomposition import PCA

from pseudobulk_utils.config import METADATA_COLS


def variance_stabilize(dds) -> pd.DataFrame:
    """Return VST counts (samples × genes), computing them once."""
    if "vst_counts" not in dds.layers:
        dds.vst(use_design=False)
    return pd.DataFrame(dds.layers["vst_counts"], index=dds.obs_names, columns=dds.var_names)


def normalized_counts(dds) -> pd.DataFrame:
    """Size-factor normalized counts (samples × genes)."""
    return pd.DataFrame(dds.layers["normed_counts"], index=dds.obs_names, columns=dds.var_names)


def fitted_values(dds, key: str, axis: str = "var") -> np.ndarray:
    """Per-sample or per-gene values stored on a fitted DeseqDataSet.

    pydeseq2 0.5.0 keeps size factors and dispersions in obsm/varm; later
    0.5.x releases keep them as obs/var columns. Both layouts are read.

    Args:
        dds: Fitted DeseqDataSet
        key: Name such as "size_factors" or "genewise_dispersions"
        axis: "obs" for per-sample values, "var" for per-gene values
    """
    if axis not in ("obs", "var"):
        raise ValueError(f"Unknown axis: {axis}")
    frame = dds.obs if axis == "obs" else dds.var
    if key in frame.columns:
        return np.asarray(frame[key]).ravel()
    mapping = dds.obsm if axis == "obs" else dds.varm
    if key in mapping:
        return np.asarray(mapping[key]).ravel()
    raise KeyError(f"'{key}' not found on the fitted model; run dds.deseq2() first")


def size_factor_table(dds) -> pd.DataFrame:
    """Size factor and library size per pseudobulk sample."""
    return pd.DataFrame(
        {
            "size_factor": fitted_values(dds, "size_factors", axis="obs"),
            "library_size": np.asarray(dds.X).sum(axis=1),
        },
        index=dds.obs_names,
    )


def pseudobulk_pca(
    dds,
    n_components: int = 2,
    n_top_genes: int = 500,
) -> tuple[pd.DataFrame, np.ndarray]:
    """PCA on the most variable VST genes, as plotPCA does in DESeq2.

    Returns:
        Tuple of (sample scores joined with metadata, explained variance ratio)
    """
    vst = variance_stabilize(dds)
    top = vst.var(axis=0).sort_values(ascending=False).index[:n_top_genes]
    n_components = min(n_components, vst.shape[0], len(top))

    pca = PCA(n_components=n_components)
    scores = pca.fit_transform(vst[top].values)
    scores_df = pd.DataFrame(
        scores, index=vst.index, columns=[f"PC{i + 1}" for i in range(n_components)]
    )
    return scores_df.join(dds.obs), pca.explained_variance_ratio_


def plot_pseudobulk_pca(
    dds,
    color_by: str = METADATA_COLS["condition"],
    n_top_genes: int = 500,
    output_path: Optional[Path] = None,
) -> plt.Figure:
    """Scatter of PC1 vs PC2 coloured by a sample-level column."""
    scores, variance = pseudobulk_pca(dds, n_components=2, n_top_genes=n_top_genes)
    if "PC2" not in scores.columns:
        raise ValueError("PCA needs at least two samples and two genes")

    fig, ax = plt.subplots(figsize=(7, 6))
    sns.scatterplot(data=scores, x="PC1", y="PC2", hue=color_by, s=80, ax=ax)
    ax.set_xlabel(f"PC1 ({variance[0] * 100:.1f}% variance)")
    ax.set_ylabel(f"PC2 ({variance[1] * 100:.1f}% variance)")
    ax.set_title("Pseudobulk samples (VST)", fontweight="bold")
    ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", title=color_by)
    plt.tight_layout()

    _finish(fig, output_path)
    return fig


def sample_correlation(dds) -> pd.DataFrame:
    """Pearson correlation between samples on VST counts."""
    return variance_stabilize(dds).T.corr(method="pearson")


def plot_sample_correlation(
    dds,
    annotate_by: str = METADATA_COLS["condition"],
    output_path: Optional[Path] = None,
):
    """Hierarchically clustered heatmap of sample correlations."""
    corr = sample_correlation(dds)
    groups = dds.obs[annotate_by].astype(str)
    palette = dict(zip(sorted(groups.unique()), sns.color_palette("Set2", groups.nunique())))
    row_colors = groups.map(palette)

    grid = sns.clustermap(
        corr, cmap="viridis", row_colors=row_colors, col_colors=row_colors,
        figsize=(8, 8), xticklabels=True, yticklabels=True,
    )
    grid.fig.suptitle("Sample correlation (VST)", fontweight="bold", y=1.02)

    _finish(grid.fig, output_path)
    return grid


def plot_dispersion_estimates(dds, output_path: Optional[Path] = None) -> plt.Figure:
    """Gene-wise, fitted and final dispersions against mean normalized count."""
    means = normalized_counts(dds).mean(axis=0).values
    disp = pd.DataFrame(
        {
            "mean": means,
            "genewise": fitted_values(dds, "genewise_dispersions"),
            "fitted": fitted_values(dds, "fitted_dispersions"),
            "final": fitted_values(dds, "dispersions"),
        }
    )
    disp = disp[(disp["mean"] > 0) & disp["genewise"].notna()]

    fig, ax = plt.subplots(figsize=(7, 6))
    ax.scatter(disp["mean"], disp["genewise"], s=4, c="black", alpha=0.4, label="gene-est")
    ax.scatter(disp["mean"], disp["final"], s=4, c="dodgerblue", alpha=0.6, label="final")
    order = np.argsort(disp["mean"].values)
    ax.plot(disp["mean"].values[order], disp["fitted"].values[order], c="red", lw=1.5, label="fitted")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Mean of normalized counts")
    ax.set_ylabel("Dispersion")
    ax.set_title("Dispersion estimates", fontweight="bold")
    ax.legend(loc="best")
    plt.tight_layout()

    _finish(fig, output_path)
    return fig


def _finish(fig, output_path):
    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {output_path}")
        plt.close(fig)
    else:
        plt.show()
