# %% [markdown]
# # Setup and introduction to the dataset
#
# **Day 1**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
#
# ---
#
# ## Overview
#
# We load the BAT dataset, check the metadata the rest of the workshop relies
# on and get a feel for how cells are distributed across samples, conditions
# and cell types.
#
# **Key Steps:**
# 1. Load the dataset and check metadata columns
# 2. Keep raw counts in a layer and log-normalize
# 3. Set TN as the reference condition
# 4. Explore cells per sample and cell type
# 5. Plot UMAPs by cluster, cell type, condition and sample
#
# ---

# %%
import scanpy as sc
from IPython.display import display

from pseudobulk_utils.config import (
    CONDITIONS,
    DATASET,
    METADATA_COLS,
    PATHS,
    REFERENCE_CONDITION,
    get_config_summary,
)
from pseudobulk_utils.data_loader import (
    find_dataset,
    load_dataset,
    prepare_layers,
    results_path,
    set_reference_level,
    validate_metadata,
)
from pseudobulk_utils.cell_type import (
    cells_per_sample,
    condition_breakdown,
    plot_cell_type_summary,
    plot_umap_overview,
    sample_metadata,
)

sc.settings.verbosity = 1
print(get_config_summary())

# %% [markdown]
# ## 1. Load data

# %%
adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
validate_metadata(adata)

print(f"  Samples: {adata.obs[METADATA_COLS['sample']].nunique()}")
print(f"  Conditions: {adata.obs[METADATA_COLS['condition']].nunique()}")
print(f"  Cell types: {adata.obs[METADATA_COLS['celltype']].nunique()}")

# %% [markdown]
# ## 2. Counts and normalized values
#
# Pseudobulk DE needs the raw counts, while plots use log-normalized values.
# `prepare_layers` stores the counts in `adata.layers["counts"]` (if they are
# not there already) and log-normalizes `adata.X` when it still holds counts.

# %%
adata = prepare_layers(adata)
print(adata.layers["counts"][:5, :5])

# %% [markdown]
# ## 3. Reference level
#
# Fold changes are reported relative to a reference condition. Mice housed at
# thermoneutrality have minimal thermogenic activation, so TN is the baseline.

# %%
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)
print(adata.obs[METADATA_COLS["condition"]].cat.categories.tolist())

# %% [markdown]
# ## 4. Samples and cell types
#
# Each sample belongs to exactly one condition. The number of samples per
# condition, not the number of cells, determines the power of a DE test.

# %%
display(sample_metadata(adata))

# %%
display(cells_per_sample(adata))

# %%
display(condition_breakdown(adata))

# %%
plot_cell_type_summary(adata)
plot_cell_type_summary(adata, normalize=True)

# %% [markdown]
# ## 5. UMAP overview

# %%
plot_umap_overview(adata)

# %% [markdown]
# ## Exercise
#
# A pseudobulk sample needs enough cells to give a stable sum. Using the
# cells-per-sample table, list every sample and cell type combination with
# fewer than 10 cells and save it as
# `results/all_celltypes_small_samples.csv` (columns: sample, cell type,
# number of cells). Which cell types are most affected?

# %% [markdown]
# ## Answer key

# %%
per_sample = cells_per_sample(adata).drop(columns="Total")
small_samples = (
    per_sample.stack()
    .rename("n_cells")
    .reset_index()
    .query("n_cells < 10")
)
small_samples.to_csv(results_path("small_samples", "all_celltypes"), index=False)
display(small_samples[METADATA_COLS["celltype"]].value_counts())

# %% [markdown]
# ## Key takeaways
#
# - Four housing conditions with several biological replicates each.
# - Cell types differ widely in abundance; rare types will have few cells per
#   sample, which matters once cells are summed into pseudobulk samples.
