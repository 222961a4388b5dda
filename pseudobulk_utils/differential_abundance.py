#!/usr/bin/env python3
"""
Differential abundance utilities
Tests whether cell type proportions change between conditions, with the
sample as the unit of replication
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.stats.multitest import multipletests

from pseudobulk_utils.config import DA_PARAMS, METADATA_COLS, REFERENCE_CONDITION


def compute_cell_proportions(
    adata,
    sample_col=METADATA_COLS["sample"],
    celltype_col=METADATA_COLS["celltype"],
    condition_col=METADATA_COLS["condition"],
):
    """Count cells per sample and cell type

    Args:
        adata: AnnData object
        sample_col: Column identifying the biological sample
        celltype_col: Column identifying the cell type
        condition_col: Sample-level condition column

    Returns:
        Tuple of (counts, proportions, sample_conditions) where counts and
        proportions are samples × cell types DataFrames
    """
    missing = [c for c in (sample_col, celltype_col, condition_col) if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    obs = adata.obs[[sample_col, celltype_col, condition_col]].copy()
    obs[sample_col] = obs[sample_col].astype(str)
    obs[celltype_col] = obs[celltype_col].astype(str)

    counts = pd.crosstab(obs[sample_col], obs[celltype_col])
    proportions = counts.div(counts.sum(axis=1), axis=0)

    per_sample = obs.groupby(sample_col, observed=True)[condition_col].agg(
        lambda x: x.astype(str).unique().tolist()
    )
    inconsistent = per_sample[per_sample.apply(len) > 1]
    if len(inconsistent):
        raise ValueError(
            f"Samples with more than one {condition_col}: {inconsistent.index.tolist()}"
        )
    sample_conditions = per_sample.str[0].reindex(counts.index)
    if isinstance(adata.obs[condition_col].dtype, pd.CategoricalDtype):
        categories = [str(c) for c in adata.obs[condition_col].cat.categories]
        sample_conditions = sample_conditions.astype(
            pd.CategoricalDtype(categories=categories)
        )

    return counts, proportions, sample_conditions


def transform_proportions(counts, transform=DA_PARAMS["transform"]):
    """Variance-stabilize proportions before linear modeling

    logit uses a pseudo-count of 0.5 so empty cell types stay finite;
    asin is the arcsine square root transform.
    """
    totals = counts.sum(axis=1)
    if transform == "logit":
        props = (counts + 0.5).div(totals + 1, axis=0)
        return np.log(props / (1 - props))
    if transform == "asin":
        props = counts.div(totals, axis=0)
        return np.arcsin(np.sqrt(props))
    raise ValueError(f"Unknown transform: {transform}")


def _group_levels(sample_conditions, reference):
    if isinstance(sample_conditions.dtype, pd.CategoricalDtype):
        levels = [lvl for lvl in sample_conditions.cat.categories if lvl in set(sample_conditions)]
    else:
        levels = sorted(sample_conditions.unique())
    if reference is not None and reference in levels:
        levels = [reference] + [lvl for lvl in levels if lvl != reference]
    return levels


def run_propeller(
    adata=None,
    counts=None,
    sample_conditions=None,
    transform=DA_PARAMS["transform"],
    reference=REFERENCE_CONDITION,
    **kwargs,
):
    """Test each cell type for a change in proportion between conditions

    Proportions are transformed per sample, then compared with a two-sample
    t-test (two conditions) or a one-way ANOVA (more conditions). P-values
    are adjusted with Benjamini-Hochberg across cell types.

    Args:
        adata: AnnData object (or pass counts and sample_conditions)
        counts: Samples × cell types count table
        sample_conditions: Series mapping sample to condition
        transform: "logit" or "asin"
        reference: Condition used as denominator of PropRatio
        **kwargs: Column names forwarded to compute_cell_proportions

    Returns:
        DataFrame with one row per cell type sorted by P.Value
    """
    if adata is not None:
        counts, _, sample_conditions = compute_cell_proportions(adata, **kwargs)
    if counts is None or sample_conditions is None:
        raise ValueError("Provide adata or both counts and sample_conditions")

    sample_conditions = sample_conditions.reindex(counts.index)
    levels = _group_levels(sample_conditions, reference)
    if len(levels) < 2:
        raise ValueError("Need at least two conditions to test differential abundance")

    n_per_group = sample_conditions.astype(str).value_counts()
    too_small = [lvl for lvl in levels if n_per_group.get(lvl, 0) < 2]
    if too_small:
        raise ValueError(f"Conditions with fewer than 2 samples: {too_small}")

    print(f"Testing {counts.shape[1]} cell types across {len(levels)} conditions "
          f"({counts.shape[0]} samples, {transform} transform)")

    proportions = counts.div(counts.sum(axis=1), axis=0)
    transformed = transform_proportions(counts, transform)
    groups = sample_conditions.astype(str)

    rows = []
    for celltype in counts.columns:
        values = [transformed.loc[groups == lvl, celltype].values for lvl in levels]
        row = {
            "celltype": celltype,
            "BaselineProp": counts[celltype].sum() / counts.values.sum(),
        }
        for lvl in levels:
            row[f"PropMean.{lvl}"] = proportions.loc[groups == lvl, celltype].mean()

        if len(levels) == 2:
            stat, pval = stats.ttest_ind(values[1], values[0], equal_var=True)
            reference_mean = row[f"PropMean.{levels[0]}"]
            row["PropRatio"] = (
                row[f"PropMean.{levels[1]}"] / reference_mean if reference_mean > 0 else np.inf
            )
            row["Tstatistic"] = stat
        else:
            stat, pval = stats.f_oneway(*values)
            row["Fstatistic"] = stat
        row["P.Value"] = pval
        rows.append(row)

    results = pd.DataFrame(rows)
    valid = results["P.Value"].notna()
    results["FDR"] = np.nan
    if valid.any():
        results.loc[valid, "FDR"] = multipletests(results.loc[valid, "P.Value"], method="fdr_bh")[1]

    n_sig = (results["FDR"] < DA_PARAMS["fdr_threshold"]).sum()
    print(f"  ✓ {n_sig} cell types with FDR < {DA_PARAMS['fdr_threshold']}")

    return results.sort_values("P.Value").reset_index(drop=True)


def run_count_glm_da(
    adata=None,
    counts=None,
    sample_conditions=None,
    reference=REFERENCE_CONDITION,
    min_cells=DA_PARAMS["min_cells_per_celltype"],
    **kwargs,
):
    """Negative binomial GLM of cell counts per cell type

    For each cell type, counts per sample are modeled as
    count ~ condition with log(total cells) as offset, and the condition
    effect is assessed with a likelihood ratio test against the
    intercept-only model. Cell types whose fit gives no finite likelihood
    (for instance, absent from every sample of one condition) are skipped;
    the converged column flags fits that hit the iteration limit.

    Returns:
        DataFrame with one row per cell type: log2FC per non-reference
        condition, LR statistic, P.Value, converged and FDR
    """
    if adata is not None:
        counts, _, sample_conditions = compute_cell_proportions(adata, **kwargs)
    if counts is None or sample_conditions is None:
        raise ValueError("Provide adata or both counts and sample_conditions")

    sample_conditions = sample_conditions.reindex(counts.index)
    levels = _group_levels(sample_conditions, reference)
    if len(levels) < 2:
        raise ValueError("Need at least two conditions to test differential abundance")

    totals = counts.sum(axis=1)
    offset = np.log(totals.values)
    design = pd.DataFrame({
        "condition": pd.Categorical(sample_conditions.astype(str).values, categories=levels),
    }, index=counts.index)

    rows = []
    for celltype in counts.columns:
        if counts[celltype].sum() < min_cells:
            print(f"  ⚠️  Skipping {celltype}: fewer than {min_cells} cells")
            continue

        data = design.assign(count=counts[celltype].values)
        try:
            full = smf.negativebinomial("count ~ condition", data, offset=offset).fit(
                disp=0, maxiter=500
            )
            null = smf.negativebinomial("count ~ 1", data, offset=offset).fit(
                disp=0, maxiter=500
            )
        except (np.linalg.LinAlgError, ValueError) as e:
            print(f"  ⚠️  Skipping {celltype}: model did not fit ({e})")
            continue

        lr_stat = 2 * (full.llf - null.llf)
        if not np.isfinite(lr_stat):
            # e.g. a cell type absent from every sample of one condition
            print(f"  ⚠️  Skipping {celltype}: model did not converge")
            continue
        lr_stat = max(lr_stat, 0.0)
        converged = all(fit.mle_retvals.get("converged", True) for fit in (full, null))
        df_diff = len(levels) - 1
        row = {
            "celltype": celltype,
            "n_cells": int(counts[celltype].sum()),
            "LR": lr_stat,
            "P.Value": stats.chi2.sf(lr_stat, df_diff),
            "converged": converged,
        }
        for lvl in levels[1:]:
            coef = full.params.get(f"condition[T.{lvl}]", np.nan)
            row[f"log2FC.{lvl}"] = coef / np.log(2)
        rows.append(row)

    results = pd.DataFrame(rows)
    if results.empty:
        return results

    valid = results["P.Value"].notna()
    results["FDR"] = np.nan
    if valid.any():
        results.loc[valid, "FDR"] = multipletests(results.loc[valid, "P.Value"], method="fdr_bh")[1]
    return results.sort_values("P.Value").reset_index(drop=True)


def plot_composition(proportions, sample_conditions=None, save_path=None):
    """Stacked bar chart of cell type proportions per sample

    Args:
        proportions: Samples × cell types proportions
        sample_conditions: Optional Series used to order samples
        save_path: Path to save figure
    """
    data = proportions
    if sample_conditions is not None:
        order = sample_conditions.reindex(proportions.index).sort_values(kind="stable").index
        data = proportions.loc[order]

    fig, ax = plt.subplots(figsize=(12, 6))
    data.plot(kind="bar", stacked=True, ax=ax, width=0.85,
              color=sns.color_palette("tab20", data.shape[1]))
    ax.set_title("Cell type composition per sample")
    ax.set_xlabel("Sample")
    ax.set_ylabel("Proportion of cells")
    ax.set_ylim(0, 1)
    plt.xticks(rotation=45, ha="right")
    plt.legend(bbox_to_anchor=(1.02, 1), loc="upper left")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
    return fig


def plot_celltype_proportions(proportions, sample_conditions, celltypes=None,
                              n_cols=4, save_path=None):
    """Box plots of per-sample proportions by condition, one panel per cell type"""
    if celltypes is None:
        celltypes = list(proportions.columns)

    long_df = (
        proportions[celltypes]
        .assign(condition=sample_conditions.reindex(proportions.index).astype(str).values)
        .melt(id_vars="condition", var_name="celltype", value_name="proportion")
    )
    order = _group_levels(sample_conditions.reindex(proportions.index), REFERENCE_CONDITION)

    n_cols = min(n_cols, len(celltypes))
    n_rows = int(np.ceil(len(celltypes) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False)
    axes = axes.flatten()

    for ax, celltype in zip(axes, celltypes):
        data = long_df[long_df["celltype"] == celltype]
        sns.boxplot(data=data, x="condition", y="proportion", order=order,
                    color="white", showfliers=False, ax=ax)
        sns.stripplot(data=data, x="condition", y="proportion", order=order,
                      hue="condition", hue_order=order, size=6, ax=ax, legend=False)
        ax.set_title(celltype, fontweight="bold")
        ax.set_xlabel("")

    for ax in axes[len(celltypes):]:
        ax.axis("off")

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()
    return fig
