#!/usr/bin/env python3
"""
Differential expression analysis utilities for single-cell RNA-seq analysis
Handles pseudobulk creation and DESeq2 testing
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from pseudobulk_utils.config import (
    CONTRASTS,
    DE_PARAMS,
    METADATA_COLS,
    PSEUDOBULK_PARAMS,
    REFERENCE_CONDITION,
)
from pseudobulk_utils.data_loader import get_counts, results_path

RESULT_COLUMNS = [
    "gene", "logFC", "lfcSE", "stat", "P.Value", "adj.P.Val", "AveExpr",
    "cell_type", "contrast", "significant", "upregulated", "downregulated",
]


def create_pseudobulk(
    adata,
    sample_col=METADATA_COLS["sample"],
    celltype_col=METADATA_COLS["celltype"],
    min_cells=PSEUDOBULK_PARAMS["min_cells"],
    metadata_cols=None,
    layer="counts",
):
    """Create pseudobulk samples by aggregating cells

    Counts are summed over all cells sharing a sample and a cell type, so the
    sample becomes the unit of replication.

    Args:
        adata: AnnData object
        sample_col: Column identifying the biological sample
        celltype_col: Column identifying the cell type
        min_cells: Minimum cells required per pseudobulk sample
        metadata_cols: Sample-level columns carried into the sample table
            (default: condition column)
        layer: Layer holding raw counts (falls back to raw, then X)

    Returns:
        Tuple of (pseudobulk_df, sample_info_df)
    """
    print("Creating pseudobulk samples...")

    if metadata_cols is None:
        metadata_cols = [METADATA_COLS["condition"]]
    missing = [c for c in [sample_col, celltype_col] + list(metadata_cols) if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    X, var_names = get_counts(adata, layer=layer)

    group_ids = (
        adata.obs[sample_col].astype(str) + "--" + adata.obs[celltype_col].astype(str)
    )

    pseudobulk_data = []
    sample_info = []
    n_dropped = 0

    for group_id in pd.unique(group_ids):
        mask_array = (group_ids == group_id).values
        n_cells = int(mask_array.sum())

        if n_cells < min_cells:
            n_dropped += 1
            continue

        group_counts = X[mask_array].sum(axis=0)
        group_counts = np.asarray(group_counts).ravel()
        pseudobulk_data.append(group_counts)

        sample_meta = adata.obs.loc[mask_array].iloc[0]
        info = {
            "group_id": group_id,
            "sample_id": str(sample_meta[sample_col]),
            "celltype": str(sample_meta[celltype_col]),
        }
        for col in metadata_cols:
            info[col] = sample_meta[col]
        info["n_cells"] = n_cells
        sample_info.append(info)

    if not pseudobulk_data:
        raise ValueError(f"No sample/cell type group has at least {min_cells} cells")

    pb_matrix = np.array(pseudobulk_data).T  # genes x samples
    pb_df = pd.DataFrame(
        pb_matrix, index=list(var_names), columns=[info["group_id"] for info in sample_info]
    )
    sample_info_df = pd.DataFrame(sample_info)

    for col in metadata_cols:
        if isinstance(adata.obs[col].dtype, pd.CategoricalDtype):
            present = set(sample_info_df[col].astype(str))
            categories = [c for c in adata.obs[col].cat.categories if c in present]
            sample_info_df[col] = pd.Categorical(
                sample_info_df[col].astype(str), categories=categories
            )

    print(f"Created {pb_df.shape[1]} pseudobulk samples from {pb_df.shape[0]} genes")
    if n_dropped:
        print(f"  ⚠️  Dropped {n_dropped} groups with fewer than {min_cells} cells")

    return pb_df, sample_info_df


def filter_genes_for_de(pb_df, min_count=DE_PARAMS["min_count"], min_samples=DE_PARAMS["min_samples_expr"]):
    """Filter genes for differential expression analysis

    Args:
        pb_df: Pseudobulk expression DataFrame (genes × samples)
        min_count: Minimum count threshold
        min_samples: Minimum number of samples reaching min_count

    Returns:
        Filtered pseudobulk DataFrame
    """
    print("Filtering genes for DE analysis...")

    expressed_mask = (pb_df >= min_count).sum(axis=1) >= min_samples
    pb_filtered = pb_df.loc[expressed_mask]

    print(f"Kept {pb_filtered.shape[0]} of {pb_df.shape[0]} genes after filtering")

    return pb_filtered


def _to_deseq_inputs(counts_df, sample_info_df, condition_col, reference, levels=None):
    """Samples × genes integer counts plus indexed metadata for PyDESeq2"""
    samples = sample_info_df.copy()
    counts = counts_df[samples["group_id"]]

    present = samples[condition_col].astype(str).unique().tolist()
    if levels is None:
        levels = sorted(present)
    levels = [lvl for lvl in levels if lvl in present]
    if reference is not None:
        levels = [reference] + [lvl for lvl in levels if lvl != reference]
    samples[condition_col] = pd.Categorical(samples[condition_col].astype(str), categories=levels)

    # PyDESeq2 expects integer counts with samples as rows
    counts_int = pd.DataFrame(
        np.round(counts.values).astype(int).T,
        index=counts.columns,
        columns=counts.index,
    )
    metadata = samples.set_index("group_id")

    assert all(counts_int.index == metadata.index), \
        "Sample IDs in counts and metadata do not match"

    return counts_int, metadata


def fit_deseq2(
    counts_df,
    sample_info_df,
    condition_col=METADATA_COLS["condition"],
    reference=REFERENCE_CONDITION,
    n_cpus=DE_PARAMS["n_cpus"],
):
    """Fit a DESeq2 model with design ~condition

    Args:
        counts_df: Count matrix (genes × samples)
        sample_info_df: Sample metadata DataFrame with a group_id column
        condition_col: Design factor
        reference: Reference level of the design factor
        n_cpus: Processes used by PyDESeq2

    Returns:
        Fitted DeseqDataSet
    """
    if reference is not None and reference not in set(sample_info_df[condition_col].astype(str)):
        raise ValueError(f"Reference level '{reference}' has no samples")

    levels = None
    if isinstance(sample_info_df[condition_col].dtype, pd.CategoricalDtype):
        levels = list(sample_info_df[condition_col].cat.categories)

    counts_int, metadata = _to_deseq_inputs(
        counts_df, sample_info_df, condition_col, reference, levels=levels
    )
    print(f"    Input: {counts_int.shape[1]} genes × {counts_int.shape[0]} samples")

    inference = DefaultInference(n_cpus=n_cpus)
    dds = DeseqDataSet(
        counts=counts_int,
        metadata=metadata,
        design=f"~{condition_col}",
        refit_cooks=True,
        inference=inference,
        quiet=True,
    )
    dds.deseq2()
    return dds


def _shrinkage_coeff(dds, condition_col, group1):
    """Name of the LFC column for group1 vs the reference level"""
    for coeff in dds.varm["LFC"].columns:
        if coeff == f"{condition_col}[T.{group1}]" or coeff.startswith(f"{condition_col}_{group1}_vs_"):
            return coeff
    return None


def add_significance_flags(results_df, fdr_threshold=DE_PARAMS["fdr_threshold"], fc_threshold=DE_PARAMS["fc_threshold"]):
    """Flag significant, upregulated and downregulated genes"""
    results_df["significant"] = (
        (results_df["adj.P.Val"] < fdr_threshold)
        & (results_df["logFC"].abs() > fc_threshold)
        & (results_df["adj.P.Val"].notna())
    )
    results_df["upregulated"] = results_df["significant"] & (results_df["logFC"] > 0)
    results_df["downregulated"] = results_df["significant"] & (results_df["logFC"] < 0)
    return results_df


def extract_deseq2_results(
    dds,
    contrast_name,
    group1,
    group2,
    de_params=DE_PARAMS,
    cell_type=None,
    condition_col=METADATA_COLS["condition"],
    shrink=None,
):
    """Wald test results for group1 vs group2 from a fitted model

    Args:
        dds: Fitted DeseqDataSet
        contrast_name: Name of the contrast
        group1: Test condition
        group2: Reference condition
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed
        condition_col: Design factor
        shrink: Add shrunken fold changes (default: de_params['shrink_lfc'])

    Returns:
        DataFrame with DE results
    """
    if shrink is None:
        shrink = de_params.get("shrink_lfc", False)

    inference = DefaultInference(n_cpus=de_params.get("n_cpus", 1))
    stat_res = DeseqStats(
        dds,
        contrast=[condition_col, group1, group2],
        alpha=de_params["fdr_threshold"],
        inference=inference,
        quiet=True,
    )
    stat_res.summary()
    results_df = stat_res.results_df.copy()

    results_df = results_df.rename(columns={
        "log2FoldChange": "logFC",
        "pvalue": "P.Value",
        "padj": "adj.P.Val",
        "baseMean": "AveExpr",
    })
    results_df["gene"] = results_df.index
    results_df["cell_type"] = cell_type
    results_df["contrast"] = contrast_name
    results_df = add_significance_flags(
        results_df, de_params["fdr_threshold"], de_params["fc_threshold"]
    )
    columns = list(RESULT_COLUMNS)

    if shrink:
        # Shrinkage is only defined for coefficients against the reference level
        coeff = _shrinkage_coeff(dds, condition_col, group1)
        group2_is_reference = _shrinkage_coeff(dds, condition_col, group2) is None
        if coeff is not None and group2_is_reference:
            stat_res.lfc_shrink(coeff=coeff)
            results_df["logFC_shrunk"] = stat_res.results_df["log2FoldChange"].values
            columns.append("logFC_shrunk")
        else:
            print(f"    ⚠️  No shrinkage for {contrast_name}: {group2} is not the reference level")

    n_sig = results_df["significant"].sum()
    n_up = results_df["upregulated"].sum()
    n_down = results_df["downregulated"].sum()
    print(f"    ✓ {contrast_name}: {n_sig} significant genes ({n_up} up, {n_down} down)")

    return results_df[columns].reset_index(drop=True)


def _enough_replicates(sample_info_df, condition_col, groups, min_samples_per_group):
    counts = sample_info_df[condition_col].astype(str).value_counts()
    return {g: int(counts.get(g, 0)) for g in groups}, all(
        counts.get(g, 0) >= min_samples_per_group for g in groups
    )


def run_de_with_deseq2(
    counts_df,
    sample_info_df,
    contrast_name,
    group1,
    group2,
    de_params=DE_PARAMS,
    cell_type=None,
    condition_col=METADATA_COLS["condition"],
    min_samples_per_group=PSEUDOBULK_PARAMS["min_samples_per_group"],
    shrink=None,
):
    """Run DESeq2 differential expression for a single contrast

    Only the samples of the two groups enter the model.

    Args:
        counts_df: Count matrix (genes × samples)
        sample_info_df: Sample metadata DataFrame
        contrast_name: Name of the contrast
        group1: First condition
        group2: Second condition (reference)
        de_params: DE parameters dictionary
        cell_type: Cell type being analyzed
        condition_col: Design factor
        min_samples_per_group: Minimum replicates per condition
        shrink: Add shrunken fold changes

    Returns:
        Tuple of (results DataFrame, fitted DeseqDataSet), or (None, None)
    """
    mask = sample_info_df[condition_col].astype(str).isin([group1, group2])
    contrast_samples = sample_info_df[mask].copy()

    n_per_group, ok = _enough_replicates(
        contrast_samples, condition_col, [group1, group2], min_samples_per_group
    )
    if not ok:
        print(f"  ⚠️  Skipping {contrast_name}: {n_per_group} samples per group "
              f"(need {min_samples_per_group})")
        return None, None

    print(f"  Testing {contrast_name} ({n_per_group[group1]} vs {n_per_group[group2]} samples)")
    contrast_samples[condition_col] = contrast_samples[condition_col].astype(str)

    try:
        dds = fit_deseq2(
            counts_df,
            contrast_samples,
            condition_col=condition_col,
            reference=group2,
            n_cpus=de_params.get("n_cpus", 1),
        )
    except (ValueError, np.linalg.LinAlgError) as e:
        print(f"  ✗ Error running DESeq2: {e}")
        return None, None

    results_df = extract_deseq2_results(
        dds, contrast_name, group1, group2, de_params, cell_type, condition_col, shrink
    )
    return results_df, dds


def run_de_for_celltype(
    pb_df,
    sample_info_df,
    cell_type,
    de_params=DE_PARAMS,
    contrasts=CONTRASTS,
    condition_col=METADATA_COLS["condition"],
    reference=REFERENCE_CONDITION,
    min_samples_per_group=PSEUDOBULK_PARAMS["min_samples_per_group"],
):
    """Run differential expression analysis for a specific cell type

    One model (~condition) is fitted on all samples of the cell type and each
    contrast is extracted from it.

    Args:
        pb_df: Pseudobulk expression DataFrame (genes × samples)
        sample_info_df: Sample metadata DataFrame
        cell_type: Cell type to analyze
        de_params: Dictionary of DE parameters
        contrasts: List of (name, group1, group2) tuples
        condition_col: Design factor
        reference: Reference level
        min_samples_per_group: Minimum replicates per condition

    Returns:
        Tuple of (DE results DataFrame or None, fitted DeseqDataSet or None)
    """
    print(f"\n{'='*60}")
    print(f"ANALYZING: {cell_type}")
    print(f"{'='*60}")

    ct_samples = sample_info_df[sample_info_df["celltype"] == cell_type].copy()
    if len(ct_samples) < min_samples_per_group * 2:
        print(f"⚠️  Skipping {cell_type}: Only {len(ct_samples)} samples")
        return None, None

    ct_counts = filter_genes_for_de(
        pb_df[ct_samples["group_id"]],
        min_count=de_params["min_count"],
        min_samples=de_params["min_samples_expr"],
    )
    if ct_counts.shape[0] < de_params.get("min_genes", 0):
        print(f"⚠️  Skipping {cell_type}: Only {ct_counts.shape[0]} genes after filtering")
        return None, None

    # Drop conditions without enough replicates before fitting
    counts = ct_samples[condition_col].astype(str).value_counts()
    keep_levels = [lvl for lvl, n in counts.items() if n >= min_samples_per_group]
    ct_samples = ct_samples[ct_samples[condition_col].astype(str).isin(keep_levels)]
    if reference not in keep_levels or len(keep_levels) < 2:
        print(f"⚠️  Skipping {cell_type}: not enough replicates for {reference} and another condition")
        return None, None

    print(f"  Analyzing {ct_counts.shape[0]:,} genes across {len(ct_samples)} samples")
    print("  Method: DESeq2 (negative binomial model)")

    try:
        dds = fit_deseq2(
            ct_counts, ct_samples, condition_col=condition_col,
            reference=reference, n_cpus=de_params.get("n_cpus", 1),
        )
    except (ValueError, np.linalg.LinAlgError) as e:
        print(f"  ✗ Error running DESeq2: {e}")
        return None, None

    results = []
    for contrast_name, group1, group2 in contrasts:
        if group1 not in keep_levels or group2 not in keep_levels:
            print(f"  ⚠️  Skipping {contrast_name}: missing replicates")
            continue
        results.append(
            extract_deseq2_results(
                dds, contrast_name, group1, group2, de_params, cell_type, condition_col
            )
        )

    if results:
        return pd.concat(results, ignore_index=True), dds
    return None, dds


def summarize_de_results(de_results):
    """Count significant, up- and downregulated genes per cell type and contrast"""
    summary = de_results.groupby(["cell_type", "contrast"]).agg({
        "significant": "sum",
        "upregulated": "sum",
        "downregulated": "sum",
        "gene": "count",
    }).astype(int)
    summary.columns = ["Significant", "Upregulated", "Downregulated", "Total_genes"]
    return summary


def significant_genes(de_results, direction=None):
    """Gene symbols passing the significance flags

    Args:
        de_results: DE results DataFrame
        direction: None for all significant genes, "up" or "down"
    """
    column = {None: "significant", "up": "upregulated", "down": "downregulated"}.get(direction)
    if column is None:
        raise ValueError(f"Unknown direction: {direction}")
    return de_results.loc[de_results[column], "gene"].tolist()


def save_de_results(de_results, kind="pseudobulk_DE", results_dir=None):
    """Write one CSV per cell type and contrast

    Returns:
        List of written paths
    """
    paths = []
    for (cell_type, contrast), group_df in de_results.groupby(["cell_type", "contrast"]):
        kwargs = {} if results_dir is None else {"results_dir": results_dir}
        path = results_path(kind, cell_type, contrast, **kwargs)
        group_df.sort_values("P.Value").to_csv(path, index=False)
        print(f"  Saved: {path}")
        paths.append(path)
    return paths


def plot_de_summary(de_results, save_path=None):
    """Plot summary of differential expression results

    Args:
        de_results: DataFrame with DE results
        save_path: Path to save figure

    Returns:
        DataFrame with counts summary
    """
    print("Plotting DE summary...")

    summary = summarize_de_results(de_results)
    up_matrix = summary["Upregulated"].unstack(fill_value=0)
    down_matrix = summary["Downregulated"].unstack(fill_value=0)

    fig, axes = plt.subplots(1, 2, figsize=(14, max(4, len(up_matrix) * 0.5)))
    for ax, matrix, cmap, title in [
        (axes[0], up_matrix, "Reds", "Upregulated Genes"),
        (axes[1], down_matrix, "Blues", "Downregulated Genes"),
    ]:
        sns.heatmap(matrix, annot=True, fmt="d", cmap=cmap, ax=ax,
                    linewidths=0.5, linecolor="gray")
        ax.set_title(title, fontsize=14, fontweight="bold")
        ax.set_xlabel("Contrast", fontsize=12)
        ax.set_ylabel("Cell type", fontsize=12)
        ax.tick_params(axis="x", rotation=45)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()

    return summary.reset_index()
