#!/usr/bin/env python3
"""
Pseudobulk differential expression, enrichment and abundance pipeline

Runs the workshop analyses end to end without the notebooks:
1. Pseudobulk DESeq2 per cell type for every contrast
2. ORA and GSEA for each cell type and contrast with significant genes
3. Differential abundance of cell types between conditions

All tables are written to results/ as <celltype>_<contrast>_<kind>.csv.
"""

import argparse
import warnings
from pathlib import Path

import matplotlib
import pandas as pd
import scanpy as sc

from pseudobulk_utils.config import (
    CONDITIONS,
    CONTRASTS,
    DATASET,
    DE_PARAMS,
    ENRICHMENT_PARAMS,
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
from pseudobulk_utils.differential_expression import (
    create_pseudobulk,
    plot_de_summary,
    run_de_for_celltype,
    save_de_results,
)
from pseudobulk_utils.pathway_analysis import (
    compute_rank_vector,
    load_gene_sets,
    run_gsea,
    run_ora_by_direction,
)
from pseudobulk_utils.differential_abundance import (
    compute_cell_proportions,
    plot_composition,
    run_count_glm_da,
    run_propeller,
)

# Configure
sc.settings.verbosity = 1
warnings.filterwarnings("ignore")


def run_enrichment(de_results, gene_sets, results_dir):
    """ORA and GSEA for each cell type and contrast"""
    for (cell_type, contrast), res in de_results.groupby(["cell_type", "contrast"]):
        print(f"\nEnrichment: {cell_type} {contrast}")
        if res["significant"].any():
            ora = run_ora_by_direction(res, gene_sets)
            ora.to_csv(results_path("ORA", cell_type, contrast, results_dir), index=False)
        else:
            print("  ⚠️  No significant genes; skipping ORA")

        ranking = compute_rank_vector(res, metric=ENRICHMENT_PARAMS["rank_metric"])
        gsea, _ = run_gsea(ranking, gene_sets)
        if not gsea.empty:
            gsea.to_csv(results_path("GSEA", cell_type, contrast, results_dir), index=False)


def run_abundance(adata, results_dir):
    """Propeller-style proportion test and count GLM across all cell types"""
    counts, proportions, sample_conditions = compute_cell_proportions(adata)
    plot_composition(
        proportions, sample_conditions,
        save_path=results_path("composition", "all_celltypes", None, results_dir, ext="png"),
    )

    try:
        propeller = run_propeller(counts=counts, sample_conditions=sample_conditions)
    except ValueError as e:
        print(f"⚠️  Skipping proportion test: {e}")
    else:
        propeller.to_csv(results_path("DA_propeller", "all_celltypes", None, results_dir), index=False)

    glm = run_count_glm_da(counts=counts, sample_conditions=sample_conditions)
    glm.to_csv(results_path("DA_count_glm", "all_celltypes", None, results_dir), index=False)


def main(data_path=None, results_dir=PATHS["results_dir"], celltypes=None,
         skip_enrichment=False, skip_da=False):
    """Main analysis pipeline

    Args:
        data_path: Dataset .h5ad file (default: data/BAT_GSE160585_final.h5ad)
        results_dir: Directory for result tables and figures
        celltypes: Cell types to test (default: all with enough samples)
        skip_enrichment: Do not run ORA/GSEA
        skip_da: Do not run differential abundance

    Returns:
        DataFrame with all DE results, or None
    """
    print("Starting pseudobulk workshop pipeline...")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)

    print("\n" + get_config_summary() + "\n")

    # Step 1: Load data
    if data_path is None:
        data_path = find_dataset(PATHS["data_dir"], DATASET["stem"])
    adata = load_dataset(data_path)
    validate_metadata(adata)
    adata = prepare_layers(adata)
    adata = set_reference_level(
        adata, METADATA_COLS["condition"], reference=REFERENCE_CONDITION, levels=CONDITIONS
    )

    # Step 2: Pseudobulk
    pb_df, sample_info = create_pseudobulk(adata)
    if celltypes is None:
        celltypes = sorted(sample_info["celltype"].unique())

    # Step 3: DE per cell type
    de_results_list = []
    for cell_type in celltypes:
        res, _ = run_de_for_celltype(pb_df, sample_info, cell_type, DE_PARAMS, CONTRASTS)
        if res is not None:
            de_results_list.append(res)

    all_de_results = None
    if de_results_list:
        all_de_results = pd.concat(de_results_list, ignore_index=True)
        save_de_results(all_de_results, results_dir=results_dir)
        summary = plot_de_summary(
            all_de_results,
            save_path=results_path("DE_summary", "all_celltypes", None, results_dir, ext="png"),
        )
        summary.to_csv(results_path("DE_summary", "all_celltypes", None, results_dir), index=False)

        # Step 4: Enrichment
        if not skip_enrichment:
            gene_sets = load_gene_sets(ENRICHMENT_PARAMS["collections"])
            if gene_sets:
                run_enrichment(all_de_results, gene_sets, results_dir)
            else:
                print("⚠️  No gene sets available; skipping enrichment")
    else:
        print("No differential expression results generated")

    # Step 5: Differential abundance
    if not skip_da:
        print(f"\n{'='*60}")
        print("DIFFERENTIAL ABUNDANCE")
        print(f"{'='*60}")
        run_abundance(adata, results_dir)

    print("\nAnalysis complete!")
    return all_de_results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Pseudobulk DE, enrichment and differential abundance"
    )
    parser.add_argument(
        "--data",
        default=None,
        help="Path to the .h5ad dataset (default: data/BAT_GSE160585_final.h5ad)",
    )
    parser.add_argument(
        "--results-dir",
        default=PATHS["results_dir"],
        help=f"Directory to write results to (default: '{PATHS['results_dir']}')",
    )
    parser.add_argument(
        "--celltypes",
        nargs="+",
        help="Cell types to analyze (default: all)",
    )
    parser.add_argument(
        "--skip-enrichment",
        action="store_true",
        help="Skip ORA and GSEA",
    )
    parser.add_argument(
        "--skip-da",
        action="store_true",
        help="Skip differential abundance",
    )
    args = parser.parse_args()

    main(
        data_path=args.data,
        results_dir=args.results_dir,
        celltypes=args.celltypes,
        skip_enrichment=args.skip_enrichment,
        skip_da=args.skip_da,
    )
