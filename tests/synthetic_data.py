from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd


@dataclass
class SyntheticTruth:
    size_factors: np.ndarray
    base_mean: np.ndarray
    log2_fold_change: np.ndarray
    dispersion: np.ndarray
    dropout: np.ndarray
    is_de: np.ndarray
    condition: np.ndarray


def make_zinb_counts(
    rng: np.random.Generator,
    n_genes: int = 100,
    n_cells: int = 40,
    n_de: int = 10,
    lfc: float = 2.0,
    dropout_rate: float = 0.3,
    dispersion: float = 0.1,
    extra_pois: float = 2.0,
    mean_range: Tuple[float, float] = (5.0, 30.0),
    sf_sdlog: float = 0.25,
    gene_names: Optional[list] = None,
) -> Tuple[pd.DataFrame, SyntheticTruth]:
    """
    Two-group ZINB counts; the first ``n_de`` genes are up in group B.

    Dispersions follow dispersion + extra_pois / mean.
    """
    n_a = n_cells // 2
    condition = np.array(["A"] * n_a + ["B"] * (n_cells - n_a))
    sf = rng.lognormal(0.0, sf_sdlog, n_cells)
    sf = sf / np.exp(np.mean(np.log(sf)))
    base = rng.uniform(*mean_range, n_genes)
    log2fc = np.zeros(n_genes)
    log2fc[:n_de] = lfc
    disp = dispersion + extra_pois / base

    in_b = (condition == "B")[None, :]
    mu = base[:, None] * sf[None, :] * np.where(in_b, 2.0 ** log2fc[:, None], 1.0)
    r = 1.0 / disp[:, None]
    nb = rng.negative_binomial(r, r / (r + mu))
    dropout = rng.random((n_genes, n_cells)) < dropout_rate
    counts = np.where(dropout, 0, nb)

    if gene_names is None:
        gene_names = [f"gene_{i}" for i in range(n_genes)]
    frame = pd.DataFrame(counts, index=gene_names, columns=[f"cell_{j}" for j in range(n_cells)])
    truth = SyntheticTruth(
        size_factors=sf,
        base_mean=base,
        log2_fold_change=log2fc,
        dispersion=disp,
        dropout=dropout,
        is_de=log2fc != 0,
        condition=condition,
    )
    return frame, truth
