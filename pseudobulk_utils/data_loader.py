#!/usr/bin/env python3
"""
Data loading utilities for the pseudobulk workshop
Handles dataset download, h5ad loading and metadata checks
"""

import shutil
import zipfile
from pathlib import Path

import numpy as np
import pandas as pd
import requests
import scanpy as sc
from scipy import sparse

from pseudobulk_utils.config import DATASET, METADATA_COLS, PATHS

CHUNK_SIZE = 32768


def download_dataset(
    url=DATASET["url"],
    data_dir=PATHS["data_dir"],
    results_dir=PATHS["results_dir"],
    archive_name=DATASET["archive_name"],
    archive_dir=DATASET["archive_dir"],
    archive_data_dir=DATASET["archive_data_dir"],
    workdir=".",
    timeout=60,
):
    """Download the workshop archive and unpack the dataset into data/

    Args:
        url: Location of the zipped workshop archive
        data_dir: Directory receiving the dataset files
        results_dir: Directory created for lesson outputs
        archive_name: Filename used for the downloaded archive
        archive_dir: Top-level folder inside the archive
        archive_data_dir: Folder inside the archive holding the dataset
        workdir: Directory in which data/ and results/ are created
        timeout: Request timeout in seconds

    Returns:
        List of paths of the dataset files moved into data_dir
    """
    workdir = Path(workdir)
    data_path = workdir / data_dir
    data_path.mkdir(parents=True, exist_ok=True)
    (workdir / results_dir).mkdir(parents=True, exist_ok=True)

    archive_path = workdir / archive_name
    print(f"Downloading {archive_name}...")

    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(archive_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    f.write(chunk)

    print(f"  Saved archive: {archive_path} ({archive_path.stat().st_size:,} bytes)")

    try:
        with zipfile.ZipFile(archive_path) as zf:
            zf.extractall(workdir)

        source_dir = workdir / archive_data_dir
        if not source_dir.is_dir():
            raise FileNotFoundError(
                f"Archive does not contain the expected folder '{archive_data_dir}'"
            )

        moved = []
        for item in sorted(source_dir.iterdir()):
            if item.is_file():
                target = data_path / item.name
                shutil.move(str(item), str(target))
                moved.append(target)
                print(f"  ✓ {target}")
    finally:
        archive_path.unlink(missing_ok=True)
        shutil.rmtree(workdir / "__MACOSX", ignore_errors=True)
        shutil.rmtree(workdir / archive_dir, ignore_errors=True)

    if not moved:
        raise FileNotFoundError(f"No dataset files found under '{archive_data_dir}'")

    return moved


def find_dataset(data_dir=PATHS["data_dir"], stem=DATASET["stem"]):
    """Locate the dataset in data_dir, preferring an h5ad file

    Args:
        data_dir: Directory holding the dataset
        stem: Dataset filename without extension

    Returns:
        Path to the dataset file
    """
    data_dir = Path(data_dir)
    for suffix in (".h5ad", ".rds"):
        candidate = data_dir / f"{stem}{suffix}"
        if candidate.exists():
            return candidate
    raise FileNotFoundError(
        f"No {stem}.h5ad or {stem}.rds in {data_dir}. Run download_data.py first."
    )


def load_dataset(path):
    """Load the single-cell dataset

    Args:
        path: Path to an .h5ad file

    Returns:
        AnnData object
    """
    path = Path(path)
    if path.suffix == ".rds":
        raise ValueError(
            f"{path} is a Seurat object saved from R. Convert it to h5ad "
            "(for example with SeuratDisk or zellkonverter) and load the .h5ad file."
        )
    if path.suffix != ".h5ad":
        raise ValueError(f"Unsupported dataset format: {path.suffix}")
    if not path.exists():
        raise FileNotFoundError(f"{path} not found. Run download_data.py first.")

    adata = sc.read_h5ad(path)
    print(f"✓ Loaded: {adata.n_obs:,} cells × {adata.n_vars:,} genes")
    return adata


def validate_metadata(adata, required=None):
    """Check that the expected metadata columns are present

    Args:
        adata: AnnData object
        required: Column names to check (default: sample, condition, celltype)

    Returns:
        AnnData object, unchanged
    """
    if required is None:
        required = [
            METADATA_COLS["sample"],
            METADATA_COLS["condition"],
            METADATA_COLS["celltype"],
        ]
    missing = [c for c in required if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    return adata


def _is_count_matrix(X):
    values = X.data if sparse.issparse(X) else np.asarray(X)
    # First 10k stored values are enough to tell counts from normalized data
    sample = np.asarray(values).ravel()[:10000]
    if sample.size == 0:
        return True
    return bool(np.all(sample >= 0) and np.allclose(sample, np.round(sample)))


def get_counts(adata, layer="counts"):
    """Return the raw count matrix (cells × genes) and matching gene names"""
    if layer in adata.layers:
        return adata.layers[layer], adata.var_names
    if adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def prepare_layers(adata, target_sum=1e4):
    """Keep raw counts in a layer and log-normalize X

    Args:
        adata: AnnData object with counts in X or layers["counts"]
        target_sum: Library size after normalization

    Returns:
        AnnData object with layers["counts"] and log-normalized X
    """
    if "counts" not in adata.layers:
        if not _is_count_matrix(adata.X):
            raise ValueError(
                "adata.X does not hold raw counts and no 'counts' layer is present"
            )
        adata.layers["counts"] = adata.X.copy()
        print("Saved raw counts to adata.layers['counts']")

    if _is_count_matrix(adata.X):
        print("Normalizing and log-transforming...")
        sc.pp.normalize_total(adata, target_sum=target_sum)
        sc.pp.log1p(adata)

    return adata


def set_reference_level(adata, column=METADATA_COLS["condition"], reference=None, levels=None):
    """Make a metadata column categorical with the reference level first

    Args:
        adata: AnnData object
        column: Column in adata.obs
        reference: Level to put first
        levels: Optional full level order

    Returns:
        AnnData object with the column converted
    """
    present = pd.Series(adata.obs[column].astype(str)).unique().tolist()
    if levels is None:
        levels = sorted(present)
    else:
        levels = [lvl for lvl in levels if lvl in present] + [
            lvl for lvl in sorted(present) if lvl not in levels
        ]

    if reference is not None:
        if reference not in present:
            raise ValueError(f"Reference level '{reference}' not found in '{column}'")
        levels = [reference] + [lvl for lvl in levels if lvl != reference]

    adata.obs[column] = pd.Categorical(adata.obs[column].astype(str), categories=levels)
    return adata


def label_for_group(cell_type, contrast=None):
    """Sanitized label for filesystem paths."""
    parts = [str(cell_type)] + ([str(contrast)] if contrast else [])
    return "_".join(p.replace(" ", "_").replace("/", "-") for p in parts)


def results_path(kind, cell_type, contrast=None, results_dir=PATHS["results_dir"], ext="csv"):
    """Build results/<celltype>_<contrast>_<kind>.<ext> and create the directory"""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    return results_dir / f"{label_for_group(cell_type, contrast)}_{kind}.{ext}"


def subset_celltype(adata, celltype, celltype_col=METADATA_COLS["celltype"]):
    """Return a copy of the cells belonging to one cell type"""
    if celltype_col not in adata.obs.columns:
        raise KeyError(f"Column '{celltype_col}' not found in adata.obs")
    mask = (adata.obs[celltype_col] == celltype).values
    if not mask.any():
        raise ValueError(f"No cells annotated as '{celltype}'")
    sub = adata[mask].copy()
    print(f"Subset to {celltype}: {sub.n_obs:,} cells")
    return sub
