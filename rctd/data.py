"""Input containers: reference profiles, spatial counts and gene sets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import MissingGene


def _to_dense(x) -> np.ndarray:
    return x.toarray() if sp.issparse(x) else np.asarray(x)


def _readonly(x, dtype=float) -> np.ndarray:
    arr = np.array(_to_dense(x), dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class ReferenceProfile:
    """Genes x cell-types matrix of expected expression per unit count."""

    means: np.ndarray
    gene_names: Tuple[str, ...]
    cell_type_names: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "means", _readonly(self.means))
        object.__setattr__(self, "gene_names", tuple(str(g) for g in self.gene_names))
        object.__setattr__(self, "cell_type_names", tuple(str(c) for c in self.cell_type_names))
        if self.means.shape != (len(self.gene_names), len(self.cell_type_names)):
            raise ValueError(
                f"Reference means shape {self.means.shape} does not match "
                f"{len(self.gene_names)} genes x {len(self.cell_type_names)} cell types."
            )
        if len(set(self.cell_type_names)) != len(self.cell_type_names):
            raise ValueError("Reference cell type names must be unique.")
        if np.any(self.means < 0) or not np.all(np.isfinite(self.means)):
            raise ValueError("Reference means must be finite and non-negative.")

    @classmethod
    def from_frame(cls, means: pd.DataFrame) -> "ReferenceProfile":
        """Genes as index, cell types as columns."""
        return cls(means.to_numpy(dtype=float), means.index.astype(str), means.columns.astype(str))

    @property
    def n_cell_types(self) -> int:
        return len(self.cell_type_names)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(np.array(self.means), index=list(self.gene_names), columns=list(self.cell_type_names))

    def restrict(self, gene_set: Sequence[str]) -> np.ndarray:
        index = {g: i for i, g in enumerate(self.gene_names)}
        missing = [g for g in gene_set if g not in index]
        if missing:
            raise MissingGene(missing, "reference profile")
        return self.means[[index[g] for g in gene_set], :]


@dataclass(frozen=True)
class SpatialDataset:
    """Genes x locations raw counts with the total count of every location."""

    counts: np.ndarray
    gene_names: Tuple[str, ...]
    location_names: Tuple[str, ...]
    n_umi: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "counts", _readonly(self.counts))
        object.__setattr__(self, "gene_names", tuple(str(g) for g in self.gene_names))
        object.__setattr__(self, "location_names", tuple(str(s) for s in self.location_names))
        if self.counts.shape != (len(self.gene_names), len(self.location_names)):
            raise ValueError(
                f"Spatial counts shape {self.counts.shape} does not match "
                f"{len(self.gene_names)} genes x {len(self.location_names)} locations."
            )
        n_umi = np.sum(self.counts, axis=0) if self.n_umi is None else self.n_umi
        n_umi = _readonly(n_umi)
        if n_umi.shape != (self.counts.shape[1],):
            raise ValueError("Provided n_umi does not match number of spatial locations.")
        object.__setattr__(self, "n_umi", n_umi)

    @classmethod
    def from_frame(cls, counts: pd.DataFrame, n_umi: Optional[pd.Series] = None) -> "SpatialDataset":
        """Locations as index and genes as columns, as in a ``cnts.csv`` file."""
        if n_umi is not None:
            n_umi = n_umi.reindex(counts.index).to_numpy(dtype=float)
        return cls(counts.to_numpy(dtype=float).T, counts.columns.astype(str), counts.index.astype(str), n_umi)

    @property
    def n_locations(self) -> int:
        return len(self.location_names)

    def restrict(self, gene_set: Sequence[str]) -> np.ndarray:
        index = {g: i for i, g in enumerate(self.gene_names)}
        missing = [g for g in gene_set if g not in index]
        if missing:
            raise MissingGene(missing, "spatial dataset")
        return self.counts[[index[g] for g in gene_set], :]


def shared_genes(reference: ReferenceProfile, spatial: SpatialDataset, allowed: Optional[Iterable[str]] = None) -> List[str]:
    """Reference-ordered genes present in both inputs (and in ``allowed`` if given)."""
    spatial_genes = set(spatial.gene_names)
    allowed_set = None if allowed is None else set(allowed)
    return [g for g in reference.gene_names if g in spatial_genes and (allowed_set is None or g in allowed_set)]


def validate_gene_set(reference: ReferenceProfile, spatial: SpatialDataset, gene_set: Sequence[str]) -> List[str]:
    """Check that every gene is present in both inputs; raises ``MissingGene``."""
    gene_set = [str(g) for g in gene_set]
    if not gene_set:
        raise ValueError("Gene set is empty.")
    if len(set(gene_set)) != len(gene_set):
        raise ValueError("Gene set contains duplicate genes.")
    for source, names in (("reference profile", reference.gene_names), ("spatial dataset", spatial.gene_names)):
        present = set(names)
        missing = [g for g in gene_set if g not in present]
        if missing:
            raise MissingGene(missing, source)
    return gene_set


def class_codes(cell_type_names: Sequence[str], class_mapping: Optional[Mapping[str, str] | pd.DataFrame] = None) -> np.ndarray:
    """Integer class code per cell type; identity when no mapping is given."""
    if class_mapping is None:
        return np.arange(len(cell_type_names))
    if isinstance(class_mapping, pd.DataFrame):
        class_mapping = class_mapping["class"].to_dict()
    missing = [ct for ct in cell_type_names if ct not in class_mapping]
    if missing:
        raise ValueError(f"Class mapping has no entry for cell type(s): {', '.join(missing)}")
    codes: Dict[str, int] = {}
    return np.array([codes.setdefault(str(class_mapping[ct]), len(codes)) for ct in cell_type_names], dtype=int)
