"""Platform-effect normalization of the reference against the pooled spatial counts."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence, Tuple

import numpy as np

from .config import SolveMode
from .data import ReferenceProfile, SpatialDataset, validate_gene_set
from .solver import WeightFit, solve_irwls_weights

logger = logging.getLogger(__name__)

MIN_OBS_BULK = 10
DEFAULT_MIN_CHANGE_BULK = 1e-4
DEFAULT_IRWLS_ITERS_BULK = 100


@dataclass(frozen=True)
class BulkFit:
    proportions: np.ndarray
    gene_list: Tuple[str, ...]
    converged: bool


def fit_bulk(
    reference: ReferenceProfile,
    spatial: SpatialDataset,
    gene_set: Sequence[str],
    min_obs: int = MIN_OBS_BULK,
    solver: str = "quadprog",
) -> BulkFit:
    """Cell-type proportions of all locations pooled into one observation."""
    gene_set = validate_gene_set(reference, spatial, gene_set)
    bulk_vec = np.sum(spatial.restrict(gene_set), axis=1)
    keep = bulk_vec >= min_obs
    gene_list = [g for g, k in zip(gene_set, keep) if k]
    if not gene_list:
        raise ValueError(f"fit_bulk: no gene has at least {min_obs} pooled counts.")
    total_umi = float(np.sum(spatial.n_umi))
    logger.info("fit_bulk: decomposing bulk over %d genes.", len(gene_list))
    fit: WeightFit = solve_irwls_weights(
        reference.restrict(gene_list) * total_umi,
        bulk_vec[keep],
        total_umi,
        None,
        mode=SolveMode.UNCONSTRAINED,
        n_iter=DEFAULT_IRWLS_ITERS_BULK,
        min_change=DEFAULT_MIN_CHANGE_BULK,
        bulk_mode=True,
        solver=solver,
    )
    return BulkFit(np.asarray(fit.weights), tuple(gene_list), fit.converged)


def get_norm_ref(
    reference: ReferenceProfile,
    spatial: SpatialDataset,
    gene_set: Sequence[str],
    proportions: np.ndarray,
) -> ReferenceProfile:
    """Rescale each gene so the proportion-weighted reference matches the bulk profile."""
    proportions = np.asarray(proportions, dtype=float)
    total = float(np.sum(proportions))
    if total <= 0:
        raise ValueError("get_norm_ref: proportions must have a positive sum.")
    gene_set = validate_gene_set(reference, spatial, gene_set)
    means = reference.restrict(gene_set)
    weight_avg = means @ (proportions / total)
    target = np.sum(spatial.restrict(gene_set), axis=1) / float(np.sum(spatial.n_umi))
    scale = np.ones_like(weight_avg)
    np.divide(target, weight_avg, out=scale, where=weight_avg > 0)
    return ReferenceProfile(means * scale[:, None], gene_set, reference.cell_type_names)


def normalize_reference(
    reference: ReferenceProfile,
    spatial: SpatialDataset,
    gene_set: Sequence[str],
    min_obs: int = MIN_OBS_BULK,
    solver: str = "quadprog",
) -> Tuple[ReferenceProfile, BulkFit]:
    bulk = fit_bulk(reference, spatial, gene_set, min_obs=min_obs, solver=solver)
    if not bulk.converged:
        logger.warning("fit_bulk did not converge; using the last iterate.")
    return get_norm_ref(reference, spatial, gene_set, bulk.proportions), bulk
