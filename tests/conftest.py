"""
Shared fixtures: a small synthetic single-cell dataset with the BAT metadata
layout (sample, condition, celltype, seurat_clusters) and raw counts.
"""

import matplotlib

matplotlib.use("Agg")

import anndata as ad
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

SPIKED_GENE = "Ucp1"
SPIKE_FOLD = 8.0

SAMPLES = {
    "TN_1": "TN", "TN_2": "TN", "TN_3": "TN",
    "cold7_1": "cold7", "cold7_2": "cold7", "cold7_3": "cold7",
}

# cells per sample for each cell type; Adipocyte expands in the cold
CELLS_PER_SAMPLE = {
    "VSM": {"TN": 30, "cold7": 30},
    "Adipocyte": {"TN": 25, "cold7": 60},
    "Endo": {"TN": 40, "cold7": 40},
}


def make_bat_adata(n_genes=200, seed=0):
    rng = np.random.default_rng(seed)
    genes = [SPIKED_GENE] + [f"Gene{i:03d}" for i in range(1, n_genes)]
    base_mu = rng.gamma(shape=2.0, scale=0.75, size=n_genes) + 0.3

    blocks, obs_rows = [], []
    for sample, condition in SAMPLES.items():
        sample_effect = rng.lognormal(0, 0.1, size=n_genes)
        for ct_index, (celltype, n_by_cond) in enumerate(CELLS_PER_SAMPLE.items()):
            n_cells = n_by_cond[condition] + int(rng.integers(-4, 5))
            mu = base_mu * sample_effect
            if celltype == "VSM" and condition == "cold7":
                mu = mu.copy()
                mu[0] *= SPIKE_FOLD
            size = 5.0
            counts = rng.negative_binomial(size, size / (size + mu), size=(n_cells, n_genes))
            blocks.append(counts)
            obs_rows.extend(
                {
                    "sample": sample,
                    "condition": condition,
                    "celltype": celltype,
                    "seurat_clusters": str(ct_index),
                }
                for _ in range(n_cells)
            )

    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs_rows, index=[f"cell_{i}" for i in range(len(obs_rows))])
    obs["condition"] = pd.Categorical(obs["condition"], categories=["TN", "cold7"])
    obs["celltype"] = pd.Categorical(obs["celltype"])
    obs["seurat_clusters"] = pd.Categorical(obs["seurat_clusters"])

    adata = ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=genes))
    adata.obsm["X_umap"] = rng.normal(size=(adata.n_obs, 2))
    return adata


@pytest.fixture
def bat_adata():
    """Synthetic BAT-like dataset with raw counts in X."""
    return make_bat_adata()


@pytest.fixture
def normalized_adata(bat_adata):
    """Synthetic dataset with layers['counts'] and log-normalized X."""
    from pseudobulk_utils.data_loader import prepare_layers

    return prepare_layers(bat_adata)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture(autouse=True)
def no_show(monkeypatch):
    monkeypatch.setattr(plt, "show", lambda *args, **kwargs: None)
