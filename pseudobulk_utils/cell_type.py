import scanpy as sc
import matplotlib.pyplot as plt
import pandas as pd
from pathlib import Path

from pseudobulk_utils.config import METADATA_COLS


def cells_per_sample(adata, sample_col=METADATA_COLS["sample"],
                     celltype_col=METADATA_COLS["celltype"]):
    """Number of cells per sample and cell type

    Args:
        adata: AnnData object with sample and cell type annotations
        sample_col: Column in adata.obs identifying samples
        celltype_col: Column in adata.obs identifying cell types

    Returns:
        DataFrame with samples as rows, cell types as columns and a Total column
    """
    for col in (sample_col, celltype_col):
        if col not in adata.obs.columns:
            raise KeyError(f"Column '{col}' not found in adata.obs")

    table = (
        adata.obs.groupby([sample_col, celltype_col], observed=True)
        .size()
        .unstack(fill_value=0)
    )
    table["Total"] = table.sum(axis=1)
    return table


def sample_metadata(adata, sample_col=METADATA_COLS["sample"], columns=None):
    """One row per sample with its sample-level metadata and cell count"""
    if columns is None:
        columns = [METADATA_COLS["condition"]]
    meta = (
        adata.obs[[sample_col] + list(columns)]
        .drop_duplicates()
        .set_index(sample_col)
    )
    if meta.index.duplicated().any():
        raise ValueError(
            f"Columns {list(columns)} are not constant within each {sample_col}"
        )
    meta["n_cells"] = adata.obs[sample_col].value_counts()
    return meta.sort_index()


def plot_cell_type_summary(adata, sample_col=METADATA_COLS["sample"],
                           celltype_col=METADATA_COLS["celltype"],
                           normalize=False, save_dir=None):
    """Plot summary of cell types across samples

    Args:
        adata: AnnData object with cell type annotations
        sample_col: Column used for the x axis
        celltype_col: Column used for the stacked bars
        normalize: Plot proportions instead of counts
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    # Cell type counts
    celltype_counts = cells_per_sample(adata, sample_col, celltype_col).drop(columns="Total")
    if normalize:
        celltype_counts = celltype_counts.div(celltype_counts.sum(axis=1), axis=0)

    # Plot stacked bar chart
    fig, ax = plt.subplots(figsize=(12, 6))
    celltype_counts.plot(kind="bar", stacked=True, ax=ax)
    plt.title("Cell type distribution across samples")
    plt.xlabel("Sample")
    plt.ylabel("Proportion of cells" if normalize else "Number of cells")
    plt.xticks(rotation=45, ha="right")
    plt.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(
            save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight"
        )
        print(f"  Saved: {save_dir}/celltype_distribution.png")
        plt.close(fig)
    else:
        plt.show()

    # Print summary table
    print("\nCell type summary:")
    print(adata.obs[celltype_col].value_counts().sort_index())
    return fig


def plot_umap_overview(adata, colors=None, save_dir=None):
    """Plot UMAP embeddings coloured by metadata columns

    Args:
        adata: AnnData object with UMAP coordinates
        colors: obs columns to colour by (default: cluster, cell type, condition, sample)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if "X_umap" not in adata.obsm:
        raise KeyError("adata.obsm has no 'X_umap' embedding")

    if colors is None:
        colors = [
            METADATA_COLS["cluster"],
            METADATA_COLS["celltype"],
            METADATA_COLS["condition"],
            METADATA_COLS["sample"],
        ]
    colors = [c for c in colors if c in adata.obs.columns]
    if not colors:
        raise ValueError("None of the requested columns are present in adata.obs")

    print("Plotting embeddings...")

    n_cols = 2 if len(colors) > 1 else 1
    n_rows = (len(colors) + n_cols - 1) // n_cols
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(6 * n_cols, 5 * n_rows), squeeze=False)
    axes = axes.flatten()

    for ax, color in zip(axes, colors):
        on_data = color in (METADATA_COLS["cluster"], METADATA_COLS["celltype"])
        sc.pl.umap(
            adata,
            color=color,
            legend_loc="on data" if on_data else "right margin",
            title=color,
            ax=ax,
            show=False,
        )

    for ax in axes[len(colors):]:
        ax.axis("off")

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "umap_embeddings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/umap_embeddings.png")
        plt.close(fig)
    else:
        plt.show()
    return fig


def condition_breakdown(adata, celltype_col=METADATA_COLS["celltype"],
                        condition_col=METADATA_COLS["condition"]):
    """Cells per cell type and condition"""
    return pd.crosstab(adata.obs[celltype_col], adata.obs[condition_col])
