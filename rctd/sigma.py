"""Search for the dispersion sigma that best explains a sample of locations."""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .batch import BatchScheduler
from .config import RCTDConfig, SolveMode
from .data import ReferenceProfile, SpatialDataset, validate_gene_set
from .likelihood import QuadratureStore, default_sigma_grid

logger = logging.getLogger(__name__)

SIGMA_INIT = 100
MULT_FACTORS = (0.8, 0.9, 1.0, 1.1, 1.2)
MAX_SCORED_VALUES = 1_000_000


def _window(grid: Sequence[int], sigma: int, half_width: int = 8) -> List[int]:
    pos = grid.index(sigma) if sigma in grid else 0
    return list(grid[max(0, pos - half_width) : min(pos + half_width + 1, len(grid))])


def choose_sigma(
    reference: ReferenceProfile,
    spatial: SpatialDataset,
    gene_set: Sequence[str],
    store: QuadratureStore,
    config: Optional[RCTDConfig] = None,
    rng: Optional[np.random.RandomState] = None,
    fit_idx: Optional[Sequence[str]] = None,
    n_fit: int = 1000,
    n_epoch: int = 8,
    umi_min_sigma: float = 300,
) -> Tuple[float, List[str]]:
    """Pick sigma by alternating unconstrained fits and a likelihood scan over nearby sigmas.

    Returns the chosen sigma and the names of the locations used for fitting.
    """
    gene_set = validate_gene_set(reference, spatial, gene_set)
    config = config if config is not None else RCTDConfig()
    rng = rng if rng is not None else np.random.RandomState()
    names = np.asarray(spatial.location_names)
    if fit_idx is None:
        eligible = names[spatial.n_umi > umi_min_sigma]
        if eligible.size == 0:
            raise ValueError(f"choose_sigma: no locations with total count above {umi_min_sigma}.")
        fit_idx = rng.choice(eligible, size=min(n_fit, eligible.size), replace=False).tolist()
    fit_idx = [str(s) for s in fit_idx]
    position = {s: i for i, s in enumerate(spatial.location_names)}
    cols = [position[s] for s in fit_idx]

    sample = SpatialDataset(spatial.counts[:, cols], spatial.gene_names, fit_idx, spatial.n_umi[cols])
    counts = sample.restrict(gene_set)
    profiles = reference.restrict(gene_set)
    grid = default_sigma_grid()
    sigma = SIGMA_INIT
    for epoch in range(n_epoch):
        fit_config = dataclasses.replace(config, mode=SolveMode.UNCONSTRAINED, sigma=sigma / 100.0)
        fitted = BatchScheduler(reference, store.get(sigma / 100.0), fit_config).fit_full(sample, gene_set)
        weights = np.nan_to_num(fitted.weights.to_numpy())
        # Column-major flattening keeps each location's genes together.
        prediction = ((profiles @ weights.T) * sample.n_umi).ravel(order="F")
        prediction = np.maximum(prediction, 1e-4)
        observed = counts.ravel(order="F")
        if prediction.size > MAX_SCORED_VALUES:
            keep = rng.choice(prediction.size, size=MAX_SCORED_VALUES, replace=False)
            prediction = prediction[keep]
            observed = observed[keep]

        scores = {}
        for candidate in _window(grid, sigma):
            model = store.get(candidate / 100.0)
            scores[candidate] = min(model.neg_log_likelihood(prediction * mult, observed) for mult in MULT_FACTORS)
        new_sigma = min(scores, key=lambda s: (scores[s], s))
        logger.info("choose_sigma: epoch %d sigma %.2f -> %.2f", epoch + 1, sigma / 100.0, new_sigma / 100.0)
        if new_sigma == sigma:
            break
        sigma = new_sigma
    return sigma / 100.0, fit_idx
