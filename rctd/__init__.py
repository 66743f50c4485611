from .batch import BatchScheduler, DoubletModeResult, FullModeResult, WorkerContext
from .benchmark import LabelComparison, compare_labels, predicted_labels
from .config import RCTDConfig, SolveMode
from .data import ReferenceProfile, SpatialDataset, class_codes, shared_genes, validate_gene_set
from .doublet import DoubletCall, DoubletClassifier, SpotClass
from .errors import (
    EmptyLocation,
    InfeasibleConstraint,
    MissingGene,
    NumericNonConvergence,
    RCTDError,
    WorkerPoolUnavailable,
)
from .likelihood import QuadratureModel, QuadratureStore, load_quadrature, save_quadrature
from .normalize import fit_bulk, get_norm_ref, normalize_reference
from .sigma import choose_sigma
from .solver import WeightFit, fit_location, solve_irwls_weights

__all__ = [
    "BatchScheduler",
    "DoubletModeResult",
    "FullModeResult",
    "WorkerContext",
    "LabelComparison",
    "compare_labels",
    "predicted_labels",
    "RCTDConfig",
    "SolveMode",
    "ReferenceProfile",
    "SpatialDataset",
    "class_codes",
    "shared_genes",
    "validate_gene_set",
    "DoubletCall",
    "DoubletClassifier",
    "SpotClass",
    "EmptyLocation",
    "InfeasibleConstraint",
    "MissingGene",
    "NumericNonConvergence",
    "RCTDError",
    "WorkerPoolUnavailable",
    "QuadratureModel",
    "QuadratureStore",
    "load_quadrature",
    "save_quadrature",
    "fit_bulk",
    "get_norm_ref",
    "normalize_reference",
    "choose_sigma",
    "WeightFit",
    "fit_location",
    "solve_irwls_weights",
]
