# %% [markdown]
# # Visualizing pseudobulk DE results
#
# **Day 2**
#
# **📥 Input:** `results/VSM_cold7_vs_TN_pseudobulk_DE.csv` (from lesson 04),
# `data/BAT_GSE160585_final.h5ad`
# **📤 Output:** `results/VSM_cold7_vs_TN_*.png`
#
# ---
#
# ## Overview
#
# Tables of thousands of genes are hard to read. This lesson shows the
# standard views of a DE result, each answering a different question:
#
# | Plot | Question |
# |------|----------|
# | Volcano | Which genes change a lot **and** reliably? |
# | MA | Does the fold change depend on expression level? |
# | Heatmap | Do replicates agree on the top genes? |
# | Per-gene strip plot | What do the counts of one gene look like? |
# | UMAP feature plot | Where is the gene expressed, per condition? |
#
# ---

# %%
import pandas as pd
import scanpy as sc

from pseudobulk_utils.config import (
    CONDITIONS,
    DATASET,
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
    subset_celltype,
)
from pseudobulk_utils.differential_expression import (
    create_pseudobulk,
    filter_genes_for_de,
    fit_deseq2,
)
from pseudobulk_utils.pseudobulk_qc import normalized_counts
from pseudobulk_utils.de_visualization import (
    plot_de_heatmap,
    plot_gene_umap,
    plot_ma,
    plot_top_genes_expression,
    plot_volcano,
    top_de_genes,
)

sc.settings.verbosity = 1
contrast = "cold7_vs_TN"

# %% [markdown]
# ## 1. Load results

# %%
de_path = results_path("pseudobulk_DE", EXAMPLE_CELLTYPE, contrast)
if not de_path.exists():
    raise FileNotFoundError(f"{de_path} not found. Run lesson 04 first.")
vsm_res = pd.read_csv(de_path)
print(f"✓ Loaded {len(vsm_res):,} genes, {vsm_res['significant'].sum()} significant")

# %% [markdown]
# ## 2. Volcano plot

# %%
plot_volcano(vsm_res, EXAMPLE_CELLTYPE, contrast,
             save_path=results_path("volcano", EXAMPLE_CELLTYPE, contrast, ext="png"))

# %% [markdown]
# ## 3. MA plots
#
# Raw fold changes fan out at low expression. The shrunken estimates stay
# close to zero unless the counts support a change.

# %%
plot_ma(vsm_res, EXAMPLE_CELLTYPE, contrast, lfc_col="logFC")
if "logFC_shrunk" in vsm_res.columns:
    plot_ma(vsm_res, EXAMPLE_CELLTYPE, contrast, lfc_col="logFC_shrunk")

# %% [markdown]
# ## 4. Heatmap of the top genes
#
# Rows are z-scored log2 CPM values, so colours compare samples within each
# gene.

# %%
adata = load_dataset(find_dataset(PATHS["data_dir"], DATASET["stem"]))
adata = prepare_layers(adata)
adata = set_reference_level(
    adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
)
pb_df, sample_info = create_pseudobulk(adata)

# %%
plot_de_heatmap(pb_df, sample_info, vsm_res, EXAMPLE_CELLTYPE, contrast,
                save_path=results_path("heatmap", EXAMPLE_CELLTYPE, contrast, ext="png"))

# %% [markdown]
# ## 5. Normalized counts of individual genes
#
# DESeq2's normalized counts divide each sample by its size factor. Each dot
# is one pseudobulk sample.

# %%
vsm_info = sample_info[sample_info["celltype"] == EXAMPLE_CELLTYPE]
dds = fit_deseq2(filter_genes_for_de(pb_df[vsm_info["group_id"]]), vsm_info)
norm = normalized_counts(dds)

top_genes = top_de_genes(vsm_res, n=8)
plot_top_genes_expression(norm, dds.obs, top_genes)

# %% [markdown]
# ## 6. Expression on the UMAP
#
# Splitting by condition shows whether a change is spread across the cell
# type or concentrated in a subset of cells.

# %%
vsm = subset_celltype(adata, EXAMPLE_CELLTYPE)
vsm = vsm[vsm.obs[METADATA_COLS["condition"]].isin([REFERENCE_CONDITION, "cold7"])].copy()
plot_gene_umap(vsm, top_genes[:3], split_by=METADATA_COLS["condition"])

# %% [markdown]
# ## Exercise
#
# Draw the volcano plot for the cold2 vs TN contrast of VSM cells (lesson 04
# wrote `results/VSM_cold2_vs_TN_pseudobulk_DE.csv`) and save it as
# `results/VSM_cold2_vs_TN_volcano.png`. Compare it with the cold7 plot:
# which side of the volcano changes most?

# %% [markdown]
# ## Answer key

# %%
cold2_res = pd.read_csv(results_path("pseudobulk_DE", EXAMPLE_CELLTYPE, "cold2_vs_TN"))
plot_volcano(cold2_res, EXAMPLE_CELLTYPE, "cold2_vs_TN",
             save_path=results_path("volcano", EXAMPLE_CELLTYPE, "cold2_vs_TN", ext="png"))

# %% [markdown]
# ## Key takeaways
#
# - Combine significance and effect size when picking genes to follow up.
# - Always check the per-sample values behind a top hit.
