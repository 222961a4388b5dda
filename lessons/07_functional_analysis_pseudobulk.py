# %% [markdown]
# # Functional analysis of pseudobulk DE results
#
# **Day 2 Self-learning**
#
# **📥 Input:** `results/VSM_cold7_vs_TN_pseudobulk_DE.csv` (lesson 04)
# **📤 Output:** `results/VSM_cold7_vs_TN_ORA.csv`, `results/VSM_cold7_vs_TN_GSEA.csv`
#
# ---
#
# ## Overview
#
# A list of DE genes becomes easier to interpret once it is mapped to
# biological processes. Two complementary approaches:
#
# - **Over-representation analysis (ORA)**: are significant genes enriched in
#   a gene set, compared with all genes that were tested? Uses a
#   hypergeometric test and needs a significance cutoff.
# - **Gene set enrichment analysis (GSEA)**: are the genes of a set
#   concentrated at the top or bottom of the full ranked list? No cutoff;
#   picks up coordinated small changes.
#
# Gene sets come from Enrichr libraries (GO Biological Process, MSigDB
# Hallmark) via gseapy.
#
# ---

# %%
import pandas as pd
from IPython.display import display

from pseudobulk_utils.config import ENRICHMENT_PARAMS, EXAMPLE_CELLTYPE
from pseudobulk_utils.data_loader import results_path
from pseudobulk_utils.pathway_analysis import (
    compute_rank_vector,
    load_gene_sets,
    run_gsea,
    run_ora_by_direction,
    safe_negative_log10,
    significant_pathways,
    tested_genes,
)
from pseudobulk_utils.pathway_visualization import (
    plot_enrichment_heatmap,
    plot_gsea_barplot,
    plot_gsea_running_score,
    plot_ora_dotplot,
)

contrast = "cold7_vs_TN"

de_path = results_path("pseudobulk_DE", EXAMPLE_CELLTYPE, contrast)
if not de_path.exists():
    raise FileNotFoundError(f"{de_path} not found. Run lesson 04 first.")
vsm_res = pd.read_csv(de_path)

# %% [markdown]
# ## 1. Gene sets

# %%
gene_sets = load_gene_sets(ENRICHMENT_PARAMS["collections"])
for name, sets in gene_sets.items():
    print(f"{name}: {len(sets):,} gene sets")

# %% [markdown]
# ## 2. Over-representation analysis
#
# The background (universe) is every gene DESeq2 tested, not the whole
# genome: genes filtered out for low expression could never have been called
# significant.

# %%
universe = tested_genes(vsm_res)
print(f"Background: {len(universe):,} genes")

ora = run_ora_by_direction(vsm_res, gene_sets, background=universe)
display(significant_pathways(ora, column="padj",
                             threshold=ENRICHMENT_PARAMS["ora_padj_threshold"]).head(20))
ora.to_csv(results_path("ORA", EXAMPLE_CELLTYPE, contrast), index=False)

# %%
for direction in ("up", "down"):
    plot_ora_dotplot(
        ora[ora["direction"] == direction],
        padj_threshold=ENRICHMENT_PARAMS["ora_padj_threshold"],
        title=f"{EXAMPLE_CELLTYPE} {contrast}: {direction}regulated genes",
    )

# %% [markdown]
# ## 3. GSEA
#
# Genes are ranked by the Wald statistic, which combines fold change and its
# uncertainty. A positive NES means the set is enriched among genes up in
# cold7.

# %%
ranking = compute_rank_vector(vsm_res, metric=ENRICHMENT_PARAMS["rank_metric"])
print(f"Ranked genes: {ranking.size:,}")
display(ranking.head())

gsea, prerank_objects = run_gsea(ranking, gene_sets)
display(significant_pathways(gsea).head(20))
gsea.to_csv(results_path("GSEA", EXAMPLE_CELLTYPE, contrast), index=False)

# %%
plot_gsea_barplot(gsea, fdr_threshold=ENRICHMENT_PARAMS["gsea_fdr_threshold"],
                  title=f"{EXAMPLE_CELLTYPE} {contrast}")

# %%
hallmark = gsea[gsea["collection"] == "Hallmark"]
if not hallmark.empty and "Hallmark" in prerank_objects:
    plot_gsea_running_score(prerank_objects["Hallmark"], hallmark.iloc[0]["pathway"])

# %% [markdown]
# ## 4. Up vs down in one view
#
# Cells hold -log10 adjusted p-values; a pathway present in only one column
# responds in one direction only.

# %%
ora["neg_log10_padj"] = safe_negative_log10(ora["padj"])
plot_enrichment_heatmap(
    ora,
    group_col="direction",
    value_col="neg_log10_padj",
    significance_col="padj",
    threshold=ENRICHMENT_PARAMS["ora_padj_threshold"],
    term_col="term",
)

# %% [markdown]
# ## Exercise
#
# GSEA results depend on how genes are ranked. Rerun GSEA with the
# `signed_pval` ranking (logFC × -log10 p-value) and save the table as
# `results/VSM_cold7_vs_TN_GSEA_signed_pval.csv`. Which significant
# pathways are shared with the Wald statistic ranking?

# %% [markdown]
# ## Answer key

# %%
signed_ranking = compute_rank_vector(vsm_res, metric="signed_pval")
gsea_signed, _ = run_gsea(signed_ranking, gene_sets)
gsea_signed.to_csv(results_path("GSEA_signed_pval", EXAMPLE_CELLTYPE, contrast), index=False)

shared = set(significant_pathways(gsea)["pathway"]) & set(
    significant_pathways(gsea_signed)["pathway"]
)
print(f"{len(shared)} significant pathways shared by both rankings")

# %% [markdown]
# ## Key takeaways
#
# - ORA depends on the cutoff and the background; always use the tested genes
#   as the universe.
# - GSEA uses every gene and can find pathways where many genes shift a
#   little.
