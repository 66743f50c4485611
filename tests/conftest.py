"""
Shared fixtures: a small quadrature table and a synthetic four-type reference.
"""
import numpy as np
import pytest

from rctd import QuadratureModel, ReferenceProfile, SpatialDataset

N_GENES = 20
CELL_TYPES = ["A", "B", "C", "D"]
MARKER = 0.04
BACKGROUND = 0.004


def make_means(n_types=len(CELL_TYPES), n_genes=N_GENES):
    """Each type expresses its own block of five marker genes."""
    means = np.full((n_genes, n_types), BACKGROUND)
    for t in range(n_types):
        means[5 * t : 5 * t + 5, t] = MARKER
    return means


def mixture_counts(means, weights, n_umi):
    return np.round(n_umi * means @ np.asarray(weights, dtype=float))


@pytest.fixture(scope="session")
def quad_model():
    return QuadratureModel.build(0.3, k_max=100, x_max=150.0)


@pytest.fixture
def reference():
    return ReferenceProfile(make_means(), [f"g{i}" for i in range(N_GENES)], CELL_TYPES)


@pytest.fixture
def spatial(reference):
    """Pure A, a 0.7/0.3 A-B mix, a 0.5/0.5 B-C mix, pure D and an empty location."""
    means = np.asarray(reference.means)
    columns = [
        mixture_counts(means, [1, 0, 0, 0], 1000),
        mixture_counts(means, [0.7, 0.3, 0, 0], 1000),
        mixture_counts(means, [0, 0.5, 0.5, 0], 800),
        mixture_counts(means, [0, 0, 0, 1], 600),
        np.zeros(N_GENES),
    ]
    counts = np.column_stack(columns)
    locations = ["pureA", "mixAB", "mixBC", "pureD", "empty"]
    return SpatialDataset(counts, reference.gene_names, locations)
