# %% [markdown]
# # Comparing DE results
#
# **Day 2**
#
# **📥 Input:** `results/VSM_cold7_vs_TN_FindMarkers.csv` (lesson 02),
# `results/VSM_*_pseudobulk_DE.csv` (lesson 04)
# **📤 Output:** `results/VSM_cold7_vs_TN_method_comparison.csv`,
# `results/VSM_contrast_overlap.csv`
#
# ---
#
# ## Overview
#
# Two comparisons:
#
# 1. **Methods.** The same contrast tested cell by cell (Wilcoxon) and by
#    pseudobulk (DESeq2). How many genes do they share, and do fold changes
#    agree?
# 2. **Contrasts.** RT, cold2 and cold7 each tested against TN. Which genes
#    respond to any cooling, and which only to prolonged cold?
#
# ---

# %%
import pandas as pd
from IPython.display import display

from pseudobulk_utils.config import CONTRASTS, EXAMPLE_CELLTYPE, MARKER_PARAMS, DE_PARAMS
from pseudobulk_utils.data_loader import results_path
from pseudobulk_utils.de_comparison import (
    compare_de_methods,
    fold_change_agreement,
    intersection_counts,
    overlap_summary,
    pairwise_overlap,
    plot_intersections,
    plot_method_comparison,
    significant_gene_sets,
)

contrast = "cold7_vs_TN"


def read_result(kind, contrast):
    path = results_path(kind, EXAMPLE_CELLTYPE, contrast)
    if not path.exists():
        raise FileNotFoundError(f"{path} not found. Run the earlier lessons first.")
    return pd.read_csv(path)


# %% [markdown]
# ## 1. Single-cell vs pseudobulk

# %%
sc_res = read_result("FindMarkers", contrast)
pb_res = read_result("pseudobulk_DE", contrast)

comparison = compare_de_methods(
    sc_res, pb_res,
    sc_padj_threshold=MARKER_PARAMS["padj_threshold"],
    pb_padj_threshold=DE_PARAMS["fdr_threshold"],
)
display(overlap_summary(comparison))

# %%
agreement = fold_change_agreement(comparison)
print(f"Genes tested by both methods: {agreement['n_genes']:,}")
print(f"Spearman correlation of fold changes: {agreement['spearman_r']:.2f}")
print(f"Same direction: {agreement['sign_agreement'] * 100:.1f}%")

# %%
plot_method_comparison(comparison, title=f"{EXAMPLE_CELLTYPE} {contrast}")

# %% [markdown]
# Most pseudobulk hits are also found by the cell-level test, but the reverse
# is not true. Genes significant only in the single-cell test tend to have
# small fold changes: they reach significance through the number of cells,
# not through consistency between mice.

# %%
display(
    comparison[comparison["overlap"] == "single-cell only"]
    .sort_values("sc_padj")
    .head(15)
)
comparison.to_csv(results_path("method_comparison", EXAMPLE_CELLTYPE, contrast), index=False)

# %% [markdown]
# ## 2. Across contrasts

# %%
pb_all = pd.concat(
    [read_result("pseudobulk_DE", name) for name, _, _ in CONTRASTS],
    ignore_index=True,
)
gene_sets = significant_gene_sets(pb_all, group_col="contrast")
for name, genes in gene_sets.items():
    print(f"{name}: {len(genes)} significant genes")

# %%
overlaps = intersection_counts(gene_sets)
display(overlaps)
display(pairwise_overlap(gene_sets))
overlaps.to_csv(results_path("contrast_overlap", EXAMPLE_CELLTYPE), index=False)

# %%
plot_intersections(gene_sets)

# %% [markdown]
# ## Exercise
#
# Repeat the single-cell vs pseudobulk comparison for cold2 vs TN, using the
# FindMarkers table from the lesson 02 exercise. Save the merged table as
# `results/VSM_cold2_vs_TN_method_comparison.csv`. Is the agreement between
# the two methods better or worse than for cold7?

# %% [markdown]
# ## Answer key

# %%
cold2_comparison = compare_de_methods(
    read_result("FindMarkers", "cold2_vs_TN"),
    read_result("pseudobulk_DE", "cold2_vs_TN"),
    sc_padj_threshold=MARKER_PARAMS["padj_threshold"],
    pb_padj_threshold=DE_PARAMS["fdr_threshold"],
)
cold2_comparison.to_csv(
    results_path("method_comparison", EXAMPLE_CELLTYPE, "cold2_vs_TN"), index=False
)
display(overlap_summary(cold2_comparison))
print(f"Spearman r: {fold_change_agreement(cold2_comparison)['spearman_r']:.2f}")

# %% [markdown]
# ## Key takeaways
#
# - Cell-level and pseudobulk tests agree on direction for strong effects but
#   differ greatly in the number of calls.
# - Intersections between contrasts separate shared cold-response genes from
#   time-dependent ones.
