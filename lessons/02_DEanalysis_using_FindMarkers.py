# %% [markdown]
# # Single-cell DE with a Wilcoxon test (FindMarkers)
#
# **Day 1**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
# **📤 Output:** `results/VSM_cold7_vs_TN_FindMarkers.csv`
#
# ---
#
# ## Overview
#
# The quickest way to compare two conditions is to treat every cell as an
# observation and run a Wilcoxon rank-sum test per gene, as Seurat's
# `FindMarkers` does. Here we use scanpy's implementation and then look at why
# the resulting p-values are too optimistic.
#
# **Key Steps:**
# 1. Subset vascular smooth muscle (VSM) cells
# 2. Compare cold7 with TN cell by cell
# 3. Inspect detection rates and fold changes
# 4. Repeat across all cell types
#
# ---

# %%
import scanpy as sc
from IPython.display import display

from pseudobulk_utils.config import (
    CONDITIONS,
    DATASET,
    EXAMPLE_CELLTYPE,
    MARKER_PARAMS,
    METADATA_COLS,
    PATHS,
    REFERENCE_CONDITION,
)
from pseudobulk_utils.data_loader import (
    find_dataset,
    load_dataset,
    prepare_layers,
    results_path,
    set_reference_level,
    subset_celltype,
)
from pseudobulk_utils.markers import find_markers, find_markers_by_celltype, save_markers

sc.settings.verbosity = 1

adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata = prepare_layers(adata)
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)

# %% [markdown]
# ## 1. Subset one cell type
#
# DE between conditions is only meaningful within a cell type; otherwise
# composition changes would show up as expression changes.

# %%
vsm = subset_celltype(adata, EXAMPLE_CELLTYPE)
display(vsm.obs.groupby(METADATA_COLS["condition"], observed=True).size())

# %% [markdown]
# ## 2. cold7 vs TN
#
# `ident_1` is the test group and `ident_2` the reference, so a positive
# `avg_log2FC` means higher expression in cold7. Genes detected in fewer than
# `min_pct` of cells in both groups are not tested.

# %%
contrast = "cold7_vs_TN"
vsm_markers = find_markers(
    vsm,
    group_by=METADATA_COLS["condition"],
    ident_1="cold7",
    ident_2=REFERENCE_CONDITION,
    min_pct=MARKER_PARAMS["min_pct"],
    logfc_threshold=MARKER_PARAMS["logfc_threshold"],
)
display(vsm_markers.head(20))

# %%
save_markers(vsm_markers, EXAMPLE_CELLTYPE, contrast)

# %% [markdown]
# ## 3. How many genes are "significant"?
#
# With thousands of cells per group, even tiny shifts reach very small
# p-values. Cells from the same mouse are not independent, so the test
# overstates the evidence. This is the pseudoreplication problem that
# pseudobulk analysis addresses.

# %%
sig = vsm_markers[vsm_markers["p_val_adj"] < MARKER_PARAMS["padj_threshold"]]
print(f"{len(sig):,} genes with p_val_adj < {MARKER_PARAMS['padj_threshold']}")
print(f"  up in cold7: {(sig['avg_log2FC'] > 0).sum():,}")
print(f"  down in cold7: {(sig['avg_log2FC'] < 0).sum():,}")

# %% [markdown]
# ## 4. All cell types

# %%
all_markers = find_markers_by_celltype(
    adata, ident_1="cold7", ident_2=REFERENCE_CONDITION,
)
summary = (
    all_markers[all_markers["p_val_adj"] < MARKER_PARAMS["padj_threshold"]]
    .groupby("cell_type")
    .size()
    .sort_values(ascending=False)
)
display(summary)

# %% [markdown]
# ## Exercise
#
# Repeat the VSM comparison for two days of cold exposure: test cold2
# against TN with the same thresholds and save the table as
# `results/VSM_cold2_vs_TN_FindMarkers.csv`. Lesson 06 reads this file. How
# many genes pass `p_val_adj` compared with cold7?

# %% [markdown]
# ## Answer key

# %%
cold2_markers = find_markers(
    vsm,
    group_by=METADATA_COLS["condition"],
    ident_1="cold2",
    ident_2=REFERENCE_CONDITION,
    min_pct=MARKER_PARAMS["min_pct"],
    logfc_threshold=MARKER_PARAMS["logfc_threshold"],
)
cold2_markers.to_csv(results_path("FindMarkers", EXAMPLE_CELLTYPE, "cold2_vs_TN"), index=False)
n_cold2 = (cold2_markers["p_val_adj"] < MARKER_PARAMS["padj_threshold"]).sum()
print(f"cold2: {n_cold2:,} genes, cold7: {len(sig):,} genes")

# %% [markdown]
# ## Key takeaways
#
# - Cell-level tests are fast and useful for finding markers of clusters.
# - For condition comparisons they ignore sample-to-sample variation and
#   produce inflated numbers of significant genes.
