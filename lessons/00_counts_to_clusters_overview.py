# %% [markdown]
# # From counts to clusters: a refresher
#
# **Pre-reading**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
#
# ---
#
# ## Overview
#
# Every differential analysis in this workshop starts from a dataset that has
# already been through the standard single-cell workflow. This lesson reviews
# those steps so that the objects used on Day 1 are familiar.
#
# **Key Steps:**
# 1. Quality control: remove empty droplets, dying cells and doublets
# 2. Normalization: correct for sequencing depth and log-transform
# 3. Feature selection and PCA
# 4. Neighbour graph, clustering and UMAP
# 5. Cell type annotation from marker genes
#
# The dataset is brown adipose tissue (BAT) from mice housed at thermoneutrality
# (TN), room temperature (RT), or in the cold for 2 or 7 days (cold2, cold7),
# published as GEO GSE160585.
#
# ---

# %% [markdown]
# ## 1. Setup
#
# Run `python download_data.py` once from the repository root before starting.
# It downloads the workshop archive, moves the dataset into `data/` and creates
# `results/`.

# %%
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt

from pseudobulk_utils.config import DATASET, METADATA_COLS, PATHS
from pseudobulk_utils.data_loader import find_dataset, load_dataset, results_path

sc.settings.verbosity = 1

# %%
adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata

# %% [markdown]
# ## 2. What is stored where
#
# An `AnnData` object holds a cells × genes matrix plus annotations:
#
# | Slot | Contents |
# |------|----------|
# | `adata.X` | expression matrix used for plotting |
# | `adata.layers["counts"]` | raw UMI counts, needed for pseudobulk |
# | `adata.obs` | per-cell metadata: sample, condition, cluster, cell type |
# | `adata.var` | per-gene metadata |
# | `adata.obsm["X_umap"]` | 2D embedding |
#
# Note that Seurat stores genes × cells; scanpy stores cells × genes.

# %%
print(adata.obs.columns.tolist())
print(f"\nClusters: {adata.obs[METADATA_COLS['cluster']].nunique()}")
print(f"Cell types: {adata.obs[METADATA_COLS['celltype']].nunique()}")

# %% [markdown]
# ## 3. Clusters and cell types
#
# Clusters come from community detection on a k-nearest-neighbour graph built
# in PCA space. Cell types are assigned to clusters by inspecting known marker
# genes. Several clusters can share one cell type label.

# %%
fig, axes = plt.subplots(1, 2, figsize=(14, 6))
sc.pl.umap(adata, color=METADATA_COLS["cluster"], legend_loc="on data",
           title="Clusters", ax=axes[0], show=False)
sc.pl.umap(adata, color=METADATA_COLS["celltype"], legend_loc="on data",
           title="Cell types", ax=axes[1], show=False)
plt.tight_layout()
plt.show()

# %% [markdown]
# ## Exercise
#
# How many cells of each cell type does every cluster contain? Build a
# clusters × cell types table of cell counts and save it as
# `results/all_celltypes_cluster_composition.csv`. Are there clusters that
# mix two cell types?

# %% [markdown]
# ## Answer key

# %%
cluster_composition = pd.crosstab(
    adata.obs[METADATA_COLS["cluster"]], adata.obs[METADATA_COLS["celltype"]]
)
cluster_composition.to_csv(results_path("cluster_composition", "all_celltypes"))
print((cluster_composition > 0).sum(axis=1).sort_values(ascending=False).head())

# %% [markdown]
# ## Key takeaways
#
# - Differential expression compares conditions **within** a cell type, so
#   the annotation must be settled first.
# - Raw counts must be kept alongside normalized values: pseudobulk methods
#   model counts, not log-normalized expression.
# - Samples, not cells, are the independent replicates of the experiment.
