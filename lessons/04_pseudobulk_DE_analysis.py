# %% [markdown]
# # Pseudobulk differential expression
#
# **Day 1 Self-learning**
#
# **📥 Input:** `data/BAT_GSE160585_final.h5ad`
# **📤 Output:** `results/<celltype>_<contrast>_pseudobulk_DE.csv`
#
# ---
#
# ## Overview
#
# With the model from the previous lesson we now test each condition against
# TN. DESeq2 reports a Wald statistic, a p-value and a Benjamini-Hochberg
# adjusted p-value per gene. Fold changes of lowly expressed genes are noisy,
# so we also compute shrunken log2 fold changes for ranking and plotting.
#
# **Key Steps:**
# 1. Test cold7 vs TN in VSM cells
# 2. Add shrunken fold changes
# 3. Run every contrast for every cell type
# 4. Summarize and save the results
#
# ---

# %%
import pandas as pd
import scanpy as sc
from IPython.display import display

from pseudobulk_utils.config import (
    CONDITIONS,
    CONTRASTS,
    DATASET,
    DE_PARAMS,
    EXAMPLE_CELLTYPE,
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
)
from pseudobulk_utils.differential_expression import (
    create_pseudobulk,
    filter_genes_for_de,
    plot_de_summary,
    run_de_for_celltype,
    run_de_with_deseq2,
    save_de_results,
    significant_genes,
)

sc.settings.verbosity = 1

adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata = prepare_layers(adata)
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)
pb_df, sample_info = create_pseudobulk(adata)

# %% [markdown]
# ## 1. One contrast
#
# `run_de_with_deseq2` keeps only the samples of the two conditions being
# compared, fits the model and extracts the Wald test. Contrasts with fewer
# than two replicates in either group are skipped.

# %%
vsm_info = sample_info[sample_info["celltype"] == EXAMPLE_CELLTYPE]
vsm_counts = filter_genes_for_de(pb_df[vsm_info["group_id"]])

vsm_res, vsm_dds = run_de_with_deseq2(
    vsm_counts,
    vsm_info,
    contrast_name="cold7_vs_TN",
    group1="cold7",
    group2=REFERENCE_CONDITION,
    cell_type=EXAMPLE_CELLTYPE,
    shrink=True,
)
display(vsm_res.sort_values("P.Value").head(20))

# %% [markdown]
# ## 2. Raw vs shrunken fold changes
#
# Shrinkage pulls large, uncertain fold changes towards zero. Genes with
# high counts keep their estimate; genes with few counts lose most of it.
# P-values are unchanged.

# %%
display(
    vsm_res.assign(difference=vsm_res["logFC"] - vsm_res["logFC_shrunk"])
    .nlargest(10, "difference")[["gene", "AveExpr", "logFC", "logFC_shrunk", "adj.P.Val"]]
)

# %%
up = significant_genes(vsm_res, "up")
down = significant_genes(vsm_res, "down")
print(f"Upregulated in cold7: {len(up)}")
print(f"Downregulated in cold7: {len(down)}")
print(up[:20])

# %% [markdown]
# ## 3. All cell types and contrasts
#
# For the full analysis one model is fitted per cell type on all conditions
# with enough replicates, and each contrast is extracted from it.

# %%
all_results = []
for cell_type in sorted(sample_info["celltype"].unique()):
    res, _ = run_de_for_celltype(
        pb_df, sample_info, cell_type, de_params=DE_PARAMS, contrasts=CONTRASTS,
    )
    if res is not None:
        all_results.append(res)

de_results = pd.concat(all_results, ignore_index=True)
print(f"\n✓ {len(de_results):,} gene tests across "
      f"{de_results['cell_type'].nunique()} cell types")

# %% [markdown]
# ## 4. Summary and export

# %%
summary = plot_de_summary(de_results)
display(summary)

# %%
paths = save_de_results(de_results)
print(f"\n✓ Wrote {len(paths)} result tables to {PATHS['results_dir']}/")

# %% [markdown]
# ## Exercise
#
# Which VSM genes are already upregulated after two days of cold and stay
# upregulated at seven days? From `de_results`, take the significant
# upregulated VSM genes of `cold2_vs_TN` and of `cold7_vs_TN`, keep those
# found in both, and save them with their two fold changes as
# `results/VSM_sustained_upregulated.csv`.

# %% [markdown]
# ## Answer key

# %%
vsm_all = de_results[de_results["cell_type"] == EXAMPLE_CELLTYPE]
up_by_contrast = {
    name: set(significant_genes(vsm_all[vsm_all["contrast"] == name], "up"))
    for name in ("cold2_vs_TN", "cold7_vs_TN")
}
sustained = sorted(up_by_contrast["cold2_vs_TN"] & up_by_contrast["cold7_vs_TN"])
sustained_df = (
    vsm_all[vsm_all["gene"].isin(sustained) & vsm_all["contrast"].isin(list(up_by_contrast))]
    .pivot(index="gene", columns="contrast", values="logFC")
    .reset_index()
)
sustained_df.to_csv(results_path("sustained_upregulated", EXAMPLE_CELLTYPE), index=False)
print(f"{len(sustained)} genes up at both time points")

# %% [markdown]
# ## Key takeaways
#
# - Pseudobulk DE reports far fewer genes than the cell-level test; those it
#   reports are consistent across biological replicates.
# - Use shrunken fold changes to rank and visualize genes, and adjusted
#   p-values to call significance.
