# %% [markdown]
# # Pseudobulk counts and the DESeq2 model
#
# **Day 1 Self-learning**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
# **📤 Output:** `results/VSM_pseudobulk_counts.csv`, `results/VSM_size_factors.csv`
#
# ---
#
# ## Overview
#
# Summing counts over all cells of one cell type in one sample gives a
# pseudobulk sample. The samples are now the replicates, and bulk RNA-seq
# methods such as DESeq2 apply directly. We use PyDESeq2, a Python
# implementation of DESeq2.
#
# **Key Steps:**
# 1. Aggregate counts per sample and cell type
# 2. Filter lowly expressed genes
# 3. Fit the negative binomial model with design `~condition`
# 4. Sample-level QC: size factors, PCA, correlation, dispersions
#
# ---

# %%
import numpy as np
import pandas as pd
import scanpy as sc
from IPython.display import display

from pseudobulk_utils.config import (
    CONDITIONS,
    DATASET,
    DE_PARAMS,
    EXAMPLE_CELLTYPE,
    METADATA_COLS,
    PATHS,
    PSEUDOBULK_PARAMS,
    REFERENCE_CONDITION,
)
from pseudobulk_utils.data_loader import (
    find_dataset,
    load_dataset,
    prepare_layers,
    results_path,
    set_reference_level,
)
from pseudobulk_utils.differential_expression import (
    create_pseudobulk,
    filter_genes_for_de,
    fit_deseq2,
)
from pseudobulk_utils.pseudobulk_qc import (
    plot_dispersion_estimates,
    plot_pseudobulk_pca,
    plot_sample_correlation,
    sample_correlation,
    size_factor_table,
)

sc.settings.verbosity = 1

adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata = prepare_layers(adata)
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)

# %% [markdown]
# ## 1. Aggregate counts
#
# Groups with fewer than `min_cells` cells are dropped: a sum over a handful
# of cells is too noisy to be a useful replicate.

# %%
pb_df, sample_info = create_pseudobulk(
    adata,
    sample_col=METADATA_COLS["sample"],
    celltype_col=METADATA_COLS["celltype"],
    min_cells=PSEUDOBULK_PARAMS["min_cells"],
)
display(sample_info.head())
display(sample_info.groupby(["celltype", METADATA_COLS["condition"]], observed=True).size().unstack())

# %% [markdown]
# ## 2. One cell type

# %%
vsm_info = sample_info[sample_info["celltype"] == EXAMPLE_CELLTYPE]
vsm_counts = pb_df[vsm_info["group_id"]]
print(f"{EXAMPLE_CELLTYPE}: {vsm_counts.shape[1]} pseudobulk samples, {vsm_counts.shape[0]:,} genes")

vsm_counts.to_csv(results_path("pseudobulk_counts", EXAMPLE_CELLTYPE))

# %%
vsm_filtered = filter_genes_for_de(
    vsm_counts, min_count=DE_PARAMS["min_count"], min_samples=DE_PARAMS["min_samples_expr"]
)

# %% [markdown]
# ## 3. Fit the model
#
# DESeq2 estimates a size factor per sample, a dispersion per gene (shrunk
# towards a fitted mean-dispersion trend) and one coefficient per condition
# relative to the reference level.

# %%
dds = fit_deseq2(
    vsm_filtered, vsm_info,
    condition_col=METADATA_COLS["condition"],
    reference=REFERENCE_CONDITION,
    n_cpus=DE_PARAMS["n_cpus"],
)
print(dds.varm["LFC"].columns.tolist())

# %% [markdown]
# ## 4. Sample-level QC
#
# Size factors should track library size. In the PCA and correlation heatmap,
# samples are expected to group by condition; an outlier sample is worth
# investigating before trusting the DE results.

# %%
size_factors = size_factor_table(dds)
display(size_factors)
size_factors.to_csv(results_path("size_factors", EXAMPLE_CELLTYPE))

# %%
plot_pseudobulk_pca(dds, color_by=METADATA_COLS["condition"])

# %%
plot_sample_correlation(dds, annotate_by=METADATA_COLS["condition"])

# %% [markdown]
# Gene-wise dispersion estimates (black) are shrunk towards the fitted trend
# (red) to give the final estimates (blue) used for testing.

# %%
plot_dispersion_estimates(dds)

# %% [markdown]
# ## Exercise
#
# For each sample, find the other sample it correlates with most strongly
# and record whether the two share a condition. Save the table as
# `results/VSM_closest_samples.csv` with the columns `sample`,
# `closest_sample`, `correlation` and `same_condition`. Does any sample sit
# closer to another condition than to its own replicates?

# %% [markdown]
# ## Answer key

# %%
corr = sample_correlation(dds)
others = corr.where(~np.eye(len(corr), dtype=bool))
conditions = dds.obs[METADATA_COLS["condition"]].astype(str)
closest = pd.DataFrame({
    "sample": corr.index,
    "closest_sample": others.idxmax(axis=1).values,
    "correlation": others.max(axis=1).values,
})
closest["same_condition"] = (
    conditions.loc[closest["sample"]].values == conditions.loc[closest["closest_sample"]].values
)
closest.to_csv(results_path("closest_samples", EXAMPLE_CELLTYPE), index=False)
display(closest)

# %% [markdown]
# ## Key takeaways
#
# - Pseudobulk turns thousands of correlated cells into a few independent
#   replicates per condition.
# - Check samples with PCA and correlation before testing.
