#!/usr/bin/env python3
"""
Analysis parameters for the pseudobulk workshop

This file centralizes the dataset location, metadata column names and all
thresholds used by the lessons. Modify these values to adapt the workshop
to a different dataset.
"""

# Dataset download and locations
DATASET = {
    "url": (
        "https://www.dropbox.com/scl/fi/c3ggrdttuk3cqovqocy1a/Pseudobulk_workshop.zip"
        "?rlkey=nehku3i8mrtkbibe4wvt04n40&st=t8noj7w8&dl=1"
    ),
    "archive_name": "Pseudobulk_workshop.zip",
    "archive_dir": "Pseudobulk_workshop",
    "archive_data_dir": "Pseudobulk_workshop/data",
    "stem": "BAT_GSE160585_final",
    "filename": "BAT_GSE160585_final.h5ad",
}

PATHS = {
    "data_dir": "data",
    "results_dir": "results",
    "lessons_dir": "lessons",
    "docs_dir": "docs",
}

# Columns expected in adata.obs
METADATA_COLS = {
    "sample": "sample",
    "condition": "condition",
    "celltype": "celltype",
    "cluster": "seurat_clusters",
}

# Condition levels, reference first (thermoneutral housing)
CONDITIONS = ["TN", "RT", "cold2", "cold7"]
REFERENCE_CONDITION = "TN"

# Contrasts tested in the lessons: (name, test group, reference group)
CONTRASTS = [
    ("cold7_vs_TN", "cold7", "TN"),
    ("cold2_vs_TN", "cold2", "TN"),
    ("RT_vs_TN", "RT", "TN"),
]

# Cell type used for the worked example
EXAMPLE_CELLTYPE = "VSM"

PSEUDOBULK_PARAMS = {
    "min_cells": 10,  # Minimum cells per pseudobulk sample
    "min_samples_per_group": 2,  # Minimum replicates per condition for DE
}

DE_PARAMS = {
    "min_count": 10,  # Minimum count threshold for gene filtering
    "min_samples_expr": 3,  # Minimum samples reaching min_count
    "min_genes": 100,  # Skip a cell type with fewer genes after filtering
    "fdr_threshold": 0.05,  # Adjusted p-value cutoff
    "fc_threshold": 0.0,  # Absolute log2 fold change cutoff
    "shrink_lfc": True,  # Add shrunken log2 fold changes
    "n_cpus": 1,
}

# Single-cell Wilcoxon test (FindMarkers analogue)
MARKER_PARAMS = {
    "min_pct": 0.1,
    "logfc_threshold": 0.1,
    "padj_threshold": 0.05,
}

ENRICHMENT_PARAMS = {
    "collections": {
        "GO_BP": ("GO_Biological_Process_2023", "Mouse"),
        "Hallmark": ("MSigDB_Hallmark_2020", "Mouse"),
    },
    "ora_padj_threshold": 0.05,
    "min_gene_set_size": 15,
    "max_gene_set_size": 500,
    "n_permutations": 1000,
    "gsea_fdr_threshold": 0.25,
    "rank_metric": "stat",  # "stat" or "signed_pval"
    "seed": 42,
    "threads": 1,
}

DA_PARAMS = {
    "transform": "logit",  # "logit" or "asin"
    "fdr_threshold": 0.05,
    "min_cells_per_celltype": 20,
}

VIZ_PARAMS = {
    "top_n_genes": 20,
    "volcano_fc_threshold": 0.58,
    "volcano_padj_threshold": 0.05,
    "n_labels": 10,
    "dpi": 300,
}

# Sidebar ordering of the rendered lessons
LESSON_SCHEDULE = [
    ("Pre-reading", ["00_counts_to_clusters_overview"]),
    ("Day 1", ["01_setup_intro_dataset", "02_DEanalysis_using_FindMarkers"]),
    ("Day 1 Self-learning", ["03_pseudobulk_DESeq2", "04_pseudobulk_DE_analysis"]),
    ("Day 2", ["05_pseudobulk_DE_visualizations", "06_DE_comparisons"]),
    ("Day 2 Self-learning", ["07_functional_analysis_pseudobulk"]),
    ("Day 3", ["08_differential_abundance"]),
]

SITE = {
    "title": "Pseudobulk for single-cell RNA-seq",
    "footer": (
        "These are open access materials distributed under the terms of the "
        "Creative Commons Attribution license (CC BY 4.0)."
    ),
}


def get_config_summary():
    """Return a formatted summary of current analysis settings"""
    summary = [
        "=== Workshop Settings ===",
        f"\nDataset: {PATHS['data_dir']}/{DATASET['filename']}",
        f"  - Sample column: {METADATA_COLS['sample']}",
        f"  - Condition column: {METADATA_COLS['condition']} "
        f"(reference: {REFERENCE_CONDITION})",
        f"  - Cell type column: {METADATA_COLS['celltype']}",
        "\nPseudobulk:",
        f"  - Min cells per sample: {PSEUDOBULK_PARAMS['min_cells']}",
        f"  - Min replicates per condition: {PSEUDOBULK_PARAMS['min_samples_per_group']}",
        "\nDifferential expression:",
        f"  - Gene filter: >= {DE_PARAMS['min_count']} counts in "
        f">= {DE_PARAMS['min_samples_expr']} samples",
        f"  - Significance: padj < {DE_PARAMS['fdr_threshold']}, "
        f"|log2FC| > {DE_PARAMS['fc_threshold']}",
        "\nDifferential abundance:",
        f"  - Transform: {DA_PARAMS['transform']}",
        f"  - FDR < {DA_PARAMS['fdr_threshold']}",
    ]

    if CONTRASTS:
        summary.append("\nContrasts:")
        summary.extend(f"  - {name}: {g1} vs {g2}" for name, g1, g2 in CONTRASTS)

    return "\n".join(summary)


def validate_params():
    """Validate that analysis parameters make sense"""
    errors = []

    for label, value in [
        ("DE_PARAMS['fdr_threshold']", DE_PARAMS["fdr_threshold"]),
        ("MARKER_PARAMS['padj_threshold']", MARKER_PARAMS["padj_threshold"]),
        ("ENRICHMENT_PARAMS['ora_padj_threshold']", ENRICHMENT_PARAMS["ora_padj_threshold"]),
        ("DA_PARAMS['fdr_threshold']", DA_PARAMS["fdr_threshold"]),
    ]:
        if not 0 < value < 1:
            errors.append(f"{label} must be between 0 and 1")

    if not 0 <= MARKER_PARAMS["min_pct"] <= 1:
        errors.append("MARKER_PARAMS['min_pct'] must be between 0 and 1")

    if DE_PARAMS["fc_threshold"] < 0:
        errors.append("DE_PARAMS['fc_threshold'] must be non-negative")

    if PSEUDOBULK_PARAMS["min_cells"] < 1:
        errors.append("PSEUDOBULK_PARAMS['min_cells'] must be at least 1")

    if PSEUDOBULK_PARAMS["min_samples_per_group"] < 2:
        errors.append("PSEUDOBULK_PARAMS['min_samples_per_group'] must be at least 2")

    if ENRICHMENT_PARAMS["min_gene_set_size"] >= ENRICHMENT_PARAMS["max_gene_set_size"]:
        errors.append("min_gene_set_size must be less than max_gene_set_size")

    if ENRICHMENT_PARAMS["rank_metric"] not in ("stat", "signed_pval"):
        errors.append("ENRICHMENT_PARAMS['rank_metric'] must be 'stat' or 'signed_pval'")

    if DA_PARAMS["transform"] not in ("logit", "asin"):
        errors.append("DA_PARAMS['transform'] must be 'logit' or 'asin'")

    if REFERENCE_CONDITION not in CONDITIONS:
        errors.append(f"REFERENCE_CONDITION '{REFERENCE_CONDITION}' not in CONDITIONS")

    for name, group1, group2 in CONTRASTS:
        if group1 not in CONDITIONS or group2 not in CONDITIONS:
            errors.append(f"Contrast {name} uses an unknown condition")
        if group1 == group2:
            errors.append(f"Contrast {name} compares a condition with itself")

    lessons = [lesson for _, section in LESSON_SCHEDULE for lesson in section]
    if len(lessons) != len(set(lessons)):
        errors.append("LESSON_SCHEDULE lists a lesson more than once")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
