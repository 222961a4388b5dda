"""Single-cell level differential expression (Wilcoxon rank-sum per gene)."""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from pseudobulk_utils.config import MARKER_PARAMS, METADATA_COLS
from pseudobulk_utils.data_loader import results_path

MARKER_COLUMNS = ["gene", "avg_log2FC", "pct.1", "pct.2", "p_val", "p_val_adj"]


def _detection_fraction(X):
    """Fraction of cells with non-zero expression per gene"""
    if X.shape[0] == 0:
        return np.zeros(X.shape[1])
    if sparse.issparse(X):
        return np.asarray((X > 0).sum(axis=0)).ravel() / X.shape[0]
    return (np.asarray(X) > 0).sum(axis=0) / X.shape[0]


def find_markers(
    adata,
    group_by,
    ident_1,
    ident_2,
    min_pct=MARKER_PARAMS["min_pct"],
    logfc_threshold=MARKER_PARAMS["logfc_threshold"],
    layer=None,
):
    """Compare two groups of cells with a Wilcoxon rank-sum test.

    Every cell is treated as an independent observation, which is what makes
    this test anti-conservative for sample-level questions.

    Args:
        adata: AnnData object with log-normalized expression in X (or layer)
        group_by: Column in adata.obs defining the groups
        ident_1: Test group
        ident_2: Reference group
        min_pct: Keep genes detected in at least this fraction of cells in
            either group
        logfc_threshold: Keep genes with |avg_log2FC| at least this large
        layer: Layer holding log-normalized expression (default: X)

    Returns:
        DataFrame with gene, avg_log2FC, pct.1, pct.2, p_val, p_val_adj,
        sorted by p-value. p_val_adj is Bonferroni over all genes.
    """
    if group_by not in adata.obs:
        raise KeyError(f"Groupby key '{group_by}' not found in adata.obs")

    labels = adata.obs[group_by].astype(str)
    for ident in (ident_1, ident_2):
        if not (labels == ident).any():
            raise ValueError(f"No cells with {group_by} == '{ident}'")

    mask = labels.isin([ident_1, ident_2]).values
    sub = adata[mask].copy()
    sub.obs[group_by] = pd.Categorical(labels[mask], categories=[ident_2, ident_1])

    print(f"Wilcoxon test: {ident_1} ({(labels == ident_1).sum():,} cells) vs "
          f"{ident_2} ({(labels == ident_2).sum():,} cells)")

    key = f"markers_{ident_1}_vs_{ident_2}"
    sc.tl.rank_genes_groups(
        sub,
        groupby=group_by,
        groups=[ident_1],
        reference=ident_2,
        method="wilcoxon",
        layer=layer,
        use_raw=False,
        key_added=key,
    )
    ranked = sc.get.rank_genes_groups_df(sub, group=ident_1, key=key)

    X = sub.layers[layer] if layer else sub.X
    in_1 = (sub.obs[group_by] == ident_1).values
    pct = pd.DataFrame(
        {
            "pct.1": _detection_fraction(X[in_1]),
            "pct.2": _detection_fraction(X[~in_1]),
        },
        index=sub.var_names,
    )

    markers = pd.DataFrame({
        "gene": ranked["names"].values,
        "avg_log2FC": ranked["logfoldchanges"].values,
        "p_val": ranked["pvals"].values,
    })
    markers = markers.join(pct, on="gene")
    markers["p_val_adj"] = np.minimum(markers["p_val"] * adata.n_vars, 1.0)

    keep = (markers[["pct.1", "pct.2"]].max(axis=1) >= min_pct) & (
        markers["avg_log2FC"].abs() >= logfc_threshold
    )
    markers = markers.loc[keep, MARKER_COLUMNS].sort_values("p_val").reset_index(drop=True)

    n_sig = (markers["p_val_adj"] < MARKER_PARAMS["padj_threshold"]).sum()
    print(f"  ✓ {len(markers):,} genes tested after filters, {n_sig:,} with p_val_adj < "
          f"{MARKER_PARAMS['padj_threshold']}")

    return markers


def find_markers_by_celltype(
    adata,
    ident_1,
    ident_2,
    group_by=METADATA_COLS["condition"],
    celltype_col=METADATA_COLS["celltype"],
    celltypes=None,
    min_cells=3,
    **kwargs,
):
    """Run find_markers within each cell type and stack the results.

    Cell types with fewer than min_cells cells in either group are skipped.
    """
    if celltypes is None:
        celltypes = sorted(adata.obs[celltype_col].astype(str).unique())

    frames = []
    for celltype in celltypes:
        ct_mask = (adata.obs[celltype_col].astype(str) == celltype).values
        labels = adata.obs.loc[ct_mask, group_by].astype(str)
        n_1, n_2 = (labels == ident_1).sum(), (labels == ident_2).sum()
        if n_1 < min_cells or n_2 < min_cells:
            print(f"⚠️  Skipping {celltype}: {n_1} vs {n_2} cells")
            continue
        print(f"\n{celltype}")
        markers = find_markers(adata[ct_mask], group_by, ident_1, ident_2, **kwargs)
        markers.insert(0, "cell_type", celltype)
        frames.append(markers)

    if not frames:
        return pd.DataFrame(columns=["cell_type"] + MARKER_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def save_markers(markers, cell_type, contrast, results_dir=None):
    """Write a marker table to results/<celltype>_<contrast>_FindMarkers.csv"""
    kwargs = {} if results_dir is None else {"results_dir": results_dir}
    path = results_path("FindMarkers", cell_type, contrast, **kwargs)
    markers.to_csv(path, index=False)
    print(f"  Saved: {path}")
    return path
