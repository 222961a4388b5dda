# %% [markdown]
# # Differential abundance of cell types
#
# **Day 3**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
# **📤 Output:** `results/all_celltypes_<contrast>_DA_propeller.csv`,
# `results/all_celltypes_DA_count_glm.csv`
#
# ---
#
# ## Overview
#
# Differential expression asks whether genes change within a cell type.
# Differential abundance (DA) asks whether the cell types themselves change
# in frequency: does cold exposure expand or shrink a population?
#
# As with DE, the sample is the unit of replication. We count cells per
# sample and cell type, then test the per-sample proportions.
#
# **Key Steps:**
# 1. Cell counts and proportions per sample
# 2. Visualize composition
# 3. Proportion test on transformed proportions (propeller-style)
# 4. Negative binomial model of cell counts
#
# ---

# %%
import scanpy as sc
from IPython.display import display

from pseudobulk_utils.config import (
    CONDITIONS,
    DA_PARAMS,
    DATASET,
    METADATA_COLS,
    PATHS,
    REFERENCE_CONDITION,
)
from pseudobulk_utils.data_loader import (
    find_dataset,
    load_dataset,
    results_path,
    set_reference_level,
)
from pseudobulk_utils.differential_abundance import (
    compute_cell_proportions,
    plot_celltype_proportions,
    plot_composition,
    run_count_glm_da,
    run_propeller,
)

sc.settings.verbosity = 1

adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)

# %% [markdown]
# ## 1. Counts and proportions

# %%
counts, proportions, sample_conditions = compute_cell_proportions(adata)
display(counts)
display(proportions.round(3))

# %% [markdown]
# ## 2. Composition

# %%
plot_composition(proportions, sample_conditions)

# %%
plot_celltype_proportions(proportions, sample_conditions)

# %% [markdown]
# ## 3. Proportion test
#
# Proportions are bounded and their variance depends on the mean, so they are
# transformed before testing. The logit transform uses a pseudo-count of 0.5
# to keep empty cell types finite. With two conditions each cell type gets a
# t-test; with more, a one-way ANOVA asks whether any condition differs.

# %%
two_groups = sample_conditions.astype(str).isin([REFERENCE_CONDITION, "cold7"])
propeller_cold7 = run_propeller(
    counts=counts[two_groups.values],
    sample_conditions=sample_conditions[two_groups.values],
    transform=DA_PARAMS["transform"],
)
display(propeller_cold7)
propeller_cold7.to_csv(results_path("DA_propeller", "all_celltypes", "cold7_vs_TN"), index=False)

# %%
propeller_all = run_propeller(counts=counts, sample_conditions=sample_conditions)
display(propeller_all)
propeller_all.to_csv(results_path("DA_propeller", "all_celltypes", "all_conditions"), index=False)

# %% [markdown]
# ## 4. Count model
#
# Instead of transforming proportions, cell counts can be modeled directly
# with a negative binomial GLM, using the total number of cells in the sample
# as an offset. The likelihood ratio test compares `count ~ condition` with
# an intercept-only model.

# %%
glm_res = run_count_glm_da(counts=counts, sample_conditions=sample_conditions)
display(glm_res)
glm_res.to_csv(results_path("DA_count_glm", "all_celltypes"), index=False)

# %% [markdown]
# ## Exercise
#
# Does the choice of transform change the conclusions? Rerun the cold7 vs TN
# proportion test with the arcsine square root transform and save it as
# `results/all_celltypes_cold7_vs_TN_DA_propeller_asin.csv`. Compare the
# cell types with FDR < 0.05 under both transforms.

# %% [markdown]
# ## Answer key

# %%
propeller_asin = run_propeller(
    counts=counts[two_groups.values],
    sample_conditions=sample_conditions[two_groups.values],
    transform="asin",
)
propeller_asin.to_csv(
    results_path("DA_propeller_asin", "all_celltypes", "cold7_vs_TN"), index=False
)
display(
    propeller_cold7[["celltype", "FDR"]]
    .merge(propeller_asin[["celltype", "FDR"]], on="celltype", suffixes=("_logit", "_asin"))
)

# %% [markdown]
# ## Key takeaways
#
# - Compare proportions per sample, never pooled cell counts.
# - Because proportions sum to one, a large expansion of one cell type makes
#   the others appear to shrink. Interpret DA results together.
