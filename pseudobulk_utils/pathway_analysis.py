"""
Functional analysis of pseudobulk DE results.

Over-representation analysis (ORA) asks whether significant genes are
enriched in a gene set relative to a background of all tested genes
(hypergeometric test). Gene set enrichment analysis (GSEA) uses the full
ranked gene list instead of a hard cutoff. Both tests are run by gseapy.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
import gseapy as gp

from pseudobulk_utils.config import ENRICHMENT_PARAMS

RANKING_EPS = np.finfo(float).eps

ORA_COLUMNS = [
    "collection", "term", "overlap", "gene_ratio", "bg_ratio",
    "pval", "padj", "odds_ratio", "combined_score", "genes",
]


def load_gene_sets(
    collections: Optional[Dict[str, tuple]] = None,
    gmt_files: Optional[Dict[str, str]] = None,
    custom: Optional[Dict[str, Dict[str, List[str]]]] = None,
) -> Dict[str, Dict[str, List[str]]]:
    """Collect gene set libraries keyed by collection label.

    Args:
        collections: label -> (Enrichr library name, organism or None),
            fetched with gseapy.get_library
        gmt_files: label -> path of a local GMT file
        custom: label -> {term: genes} supplied directly
    """
    if collections is None:
        collections = ENRICHMENT_PARAMS["collections"]

    loaded_sets: Dict[str, Dict[str, List[str]]] = {}
    for label, (library_name, organism) in collections.items():
        kwargs = {"name": library_name}
        if organism:
            kwargs["organism"] = organism
        print(f"Loading {label} from {library_name}" + (f" (organism={organism})" if organism else "") + "...")
        try:
            gene_set = gp.get_library(**kwargs)
        except Exception as exc:
            print(f"⚠️  Failed to load {label}: {exc}")
            continue
        loaded_sets[label] = gene_set
        print(f"  ✓ Loaded {label} ({len(gene_set)} gene sets)")

    for label, path in (gmt_files or {}).items():
        loaded_sets[label] = gp.read_gmt(str(path))
        print(f"  ✓ Loaded {label} from {path} ({len(loaded_sets[label])} gene sets)")

    for label, gene_set in (custom or {}).items():
        loaded_sets[label] = {term: list(genes) for term, genes in gene_set.items()}

    return loaded_sets


def filter_gene_sets(
    gene_set: Dict[str, List[str]],
    universe: Iterable[str],
    min_size: int = ENRICHMENT_PARAMS["min_gene_set_size"],
    max_size: int = ENRICHMENT_PARAMS["max_gene_set_size"],
) -> Dict[str, List[str]]:
    """Restrict gene sets to the universe and keep those within the size range."""
    universe = set(universe)
    filtered = {}
    for term, genes in gene_set.items():
        kept = sorted(set(genes) & universe)
        if min_size <= len(kept) <= max_size:
            filtered[term] = kept
    return filtered


def standardize_enrichment_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Lowercase/slugify gseapy columns and map vendor-specific names to canonical ones."""
    normalized = df.copy()
    normalized.columns = [
        col.strip().lower().replace(" ", "_").replace("-", "_") for col in normalized.columns
    ]

    column_aliases = {
        "nom_p_val": "pval",
        "p_value": "pval",
        "adjusted_p_value": "padj",
        "fdr_q_val": "fdr",
        "fwer_p_val": "fwer",
        "tag_%": "tag_percent",
        "gene_%": "gene_percent",
        "gene_set": "collection",
    }
    for source, target in column_aliases.items():
        if source in normalized.columns and target not in normalized.columns:
            normalized = normalized.rename(columns={source: target})

    for col in ("pval", "padj", "fdr", "fwer", "es", "nes", "odds_ratio", "combined_score"):
        if col in normalized.columns:
            normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    return normalized


def run_ora(
    gene_list: Iterable[str],
    gene_sets: Dict[str, Dict[str, List[str]]],
    background: Iterable[str],
    min_size: int = ENRICHMENT_PARAMS["min_gene_set_size"],
    max_size: int = ENRICHMENT_PARAMS["max_gene_set_size"],
) -> pd.DataFrame:
    """Hypergeometric over-representation test against an explicit universe.

    Args:
        gene_list: Genes of interest (e.g. significant DE genes)
        gene_sets: Collections from load_gene_sets
        background: All genes that could have been called significant
        min_size: Minimum gene set size within the universe
        max_size: Maximum gene set size within the universe

    Returns:
        DataFrame with ORA_COLUMNS sorted by p-value; empty when nothing
        can be tested.
    """
    background = sorted(set(background))
    query = sorted(set(gene_list) & set(background))
    if not query:
        print("⚠️  No query genes in the background; skipping ORA")
        return pd.DataFrame(columns=ORA_COLUMNS)

    frames = []
    for collection_name, gene_set in gene_sets.items():
        tested_sets = filter_gene_sets(gene_set, background, min_size, max_size)
        if not tested_sets:
            print(f"  ⚠️  {collection_name}: no gene sets of size {min_size}-{max_size} in background")
            continue
        print(f"  • ORA {collection_name}: {len(query)} genes, {len(tested_sets)} sets")

        enr = gp.enrich(
            gene_list=query,
            gene_sets=tested_sets,
            background=background,
            outdir=None,
            no_plot=True,
            verbose=False,
        )
        res = standardize_enrichment_columns(enr.results)
        if res.empty:
            continue
        res["collection"] = collection_name
        frames.append(res)

    if not frames:
        return pd.DataFrame(columns=ORA_COLUMNS)

    results = pd.concat(frames, ignore_index=True)
    hits = results["overlap"].astype(str).str.split("/").str[0].astype(int)
    set_sizes = results["overlap"].astype(str).str.split("/").str[1].astype(int)
    results["gene_ratio"] = hits / len(query)
    results["bg_ratio"] = set_sizes / len(background)
    results["genes"] = results["genes"].astype(str).str.replace(";", "/")

    return results[ORA_COLUMNS].sort_values("pval").reset_index(drop=True)


def tested_genes(de_results: pd.DataFrame) -> List[str]:
    """Genes with a defined adjusted p-value, used as the ORA universe."""
    return de_results.loc[de_results["adj.P.Val"].notna(), "gene"].unique().tolist()


def run_ora_by_direction(
    de_results: pd.DataFrame,
    gene_sets: Dict[str, Dict[str, List[str]]],
    background: Optional[Iterable[str]] = None,
    **kwargs,
) -> pd.DataFrame:
    """ORA separately for upregulated and downregulated genes."""
    if background is None:
        background = tested_genes(de_results)

    frames = []
    for direction, flag in (("up", "upregulated"), ("down", "downregulated")):
        genes = de_results.loc[de_results[flag], "gene"].tolist()
        print(f"ORA for {len(genes)} {direction}regulated genes")
        res = run_ora(genes, gene_sets, background, **kwargs)
        res.insert(0, "direction", direction)
        frames.append(res)

    return pd.concat(frames, ignore_index=True)


def safe_negative_log10(values: pd.Series) -> pd.Series:
    """Numerically stable -log10 for p-values that may contain zeros."""
    clipped = pd.to_numeric(values, errors="coerce").clip(lower=RANKING_EPS)
    return -np.log10(clipped)


def compute_rank_vector(
    df: pd.DataFrame,
    metric: str = ENRICHMENT_PARAMS["rank_metric"],
) -> pd.Series:
    """Return a preranked Series indexed by gene symbol.

    metric="stat" ranks by the Wald statistic; metric="signed_pval" ranks by
    logFC × -log10(p).
    """
    if metric == "stat":
        required_cols = ["gene", "stat"]
    elif metric == "signed_pval":
        required_cols = ["gene", "logFC", "P.Value"]
    else:
        raise ValueError(f"Unknown rank metric: {metric}")

    missing = [col for col in required_cols if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    clean = df.dropna(subset=required_cols).copy()
    if clean.empty:
        return pd.Series(dtype=float)

    if metric == "stat":
        clean["rank_score"] = clean["stat"]
    else:
        clean["rank_score"] = clean["logFC"] * safe_negative_log10(clean["P.Value"])

    # Deduplicate genes by retaining the entry with the largest absolute score.
    clean["abs_rank"] = clean["rank_score"].abs()
    clean = (
        clean.sort_values("abs_rank", ascending=False)
        .drop_duplicates(subset="gene", keep="first")
        .sort_values("rank_score", ascending=False)
    )
    ranking = clean.set_index("gene")["rank_score"]

    # Break ties deterministically so GSEA receives strictly monotonic ranks.
    if ranking.duplicated().any():
        tie_break = ranking.rank(method="first", ascending=False) * 1e-12
        ranking = ranking - tie_break

    return ranking


def run_gsea(
    ranking: pd.Series,
    gene_sets: Dict[str, Dict[str, List[str]]],
    min_size: int = ENRICHMENT_PARAMS["min_gene_set_size"],
    max_size: int = ENRICHMENT_PARAMS["max_gene_set_size"],
    permutation_num: int = ENRICHMENT_PARAMS["n_permutations"],
    seed: int = ENRICHMENT_PARAMS["seed"],
    threads: int = ENRICHMENT_PARAMS["threads"],
    outdir: Optional[Path] = None,
) -> Tuple[pd.DataFrame, Dict[str, object]]:
    """Preranked GSEA across all collections.

    Returns:
        Tuple of (standardized results sorted by FDR, collection -> gseapy
        Prerank object for running-score plots)
    """
    frames: List[pd.DataFrame] = []
    prerank_objects: Dict[str, object] = {}

    if ranking.size < min_size:
        print(f"Skipping GSEA: ranking has only {ranking.size} genes (< {min_size}).")
        return pd.DataFrame(), prerank_objects

    for collection_name, gene_set in gene_sets.items():
        print(f"  • GSEA {collection_name} ({len(gene_set)} sets, {ranking.size} ranked genes)")
        collection_dir = None
        if outdir is not None:
            collection_dir = Path(outdir) / collection_name
            collection_dir.mkdir(parents=True, exist_ok=True)

        prerank_res = gp.prerank(
            rnk=ranking,
            gene_sets=gene_set,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            outdir=str(collection_dir) if collection_dir else None,
            seed=seed,
            threads=threads,
            no_plot=True,
            verbose=False,
        )

        res_df = prerank_res.res2d.copy()
        if "Term" in res_df.columns:
            res_df = res_df.reset_index(drop=True).rename(columns={"Term": "pathway"})
        else:
            res_df = res_df.reset_index().rename(columns={"index": "pathway"})
        res_df = standardize_enrichment_columns(res_df)
        res_df["collection"] = collection_name
        res_df["ranking_size"] = ranking.size

        if collection_dir is not None:
            res_df.to_csv(collection_dir / "gsea_results.csv", index=False)

        frames.append(res_df)
        prerank_objects[collection_name] = prerank_res

    if not frames:
        return pd.DataFrame(), prerank_objects

    results = pd.concat(frames, ignore_index=True)
    results = results.drop(columns=[c for c in ("name",) if c in results.columns])
    return results.sort_values(["fdr", "pval"]).reset_index(drop=True), prerank_objects


def significant_pathways(
    results: pd.DataFrame,
    column: str = "fdr",
    threshold: float = ENRICHMENT_PARAMS["gsea_fdr_threshold"],
) -> pd.DataFrame:
    """Rows of an ORA (column="padj") or GSEA (column="fdr") table below threshold."""
    if results.empty:
        return results
    return results[results[column] < threshold].reset_index(drop=True)
