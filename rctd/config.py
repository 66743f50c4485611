"""Run configuration for the deconvolution engine."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Mapping, Optional

DEFAULT_MIN_CHANGE = 1e-3
DEFAULT_IRWLS_ITERS = 50
DEFAULT_IRWLS_ITERS_SCORE = 25
DEFAULT_DOUBLET_THRESH = 25.0
DEFAULT_CONF_THRESH = 10.0
DEFAULT_SIGMA = 1.0
SOLVERS = ("quadprog", "slsqp", "nnls")


class SolveMode(Enum):
    """How a location's weights are fitted."""

    CONSTRAINED = "constrained"
    UNCONSTRAINED = "unconstrained"
    OLS_CONSTRAINED = "ols_constrained"
    OLS_UNCONSTRAINED = "ols_unconstrained"

    @property
    def constrain(self) -> bool:
        return self in (SolveMode.CONSTRAINED, SolveMode.OLS_CONSTRAINED)

    @property
    def ols(self) -> bool:
        return self in (SolveMode.OLS_CONSTRAINED, SolveMode.OLS_UNCONSTRAINED)

    @classmethod
    def from_flags(cls, constrain: bool = True, ols: bool = False) -> "SolveMode":
        if ols:
            return cls.OLS_CONSTRAINED if constrain else cls.OLS_UNCONSTRAINED
        return cls.CONSTRAINED if constrain else cls.UNCONSTRAINED


@dataclass(frozen=True)
class RCTDConfig:
    """Settings shared by every location of a run.

    ``doublet_threshold`` is the minimum score improvement of the best pair over
    the best singlet for a doublet call, ``confidence_threshold`` the margin the
    runner-up pair must trail by for the second type to be trusted, and
    ``min_fit_quality`` an optional ceiling on the best singlet's mean negative
    log-likelihood per gene above which a location is rejected.
    """

    mode: SolveMode = SolveMode.CONSTRAINED
    max_workers: int = 1
    sigma: float = DEFAULT_SIGMA
    min_change: float = DEFAULT_MIN_CHANGE
    n_iter: int = DEFAULT_IRWLS_ITERS
    n_iter_score: int = DEFAULT_IRWLS_ITERS_SCORE
    doublet_threshold: float = DEFAULT_DOUBLET_THRESH
    confidence_threshold: float = DEFAULT_CONF_THRESH
    min_fit_quality: Optional[float] = None
    solver: str = "quadprog"
    chunksize: Optional[int] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.mode, str):
            object.__setattr__(self, "mode", SolveMode(self.mode))
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        if self.sigma <= 0:
            raise ValueError("sigma must be positive.")
        if self.min_change <= 0:
            raise ValueError("min_change must be positive.")
        if self.n_iter < 1 or self.n_iter_score < 1:
            raise ValueError("iteration caps must be at least 1.")
        if self.doublet_threshold < 0 or self.confidence_threshold < 0:
            raise ValueError("doublet margins must be non-negative.")
        if self.solver not in SOLVERS:
            raise ValueError(f"Unknown solver {self.solver!r}; expected one of {', '.join(SOLVERS)}.")
        if self.chunksize is not None and self.chunksize < 1:
            raise ValueError("chunksize must be at least 1.")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "RCTDConfig":
        """Build from a mapping, accepting ``constrain``/``ols`` flags for the mode."""
        values = dict(values)
        constrain = values.pop("constrain", None)
        ols = values.pop("ols", None)
        if "mode" not in values and (constrain is not None or ols is not None):
            values["mode"] = SolveMode.from_flags(
                constrain=True if constrain is None else bool(constrain), ols=bool(ols)
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**values)

    @classmethod
    def from_args(cls, args) -> "RCTDConfig":
        return cls.from_mapping(
            {
                "constrain": args.constrain,
                "ols": args.ols,
                "max_workers": args.num_workers,
                "sigma": args.sigma if args.sigma is not None else DEFAULT_SIGMA,
                "min_change": args.min_change,
                "n_iter": args.n_iter,
                "doublet_threshold": args.doublet_threshold,
                "confidence_threshold": args.confidence_threshold,
                "min_fit_quality": args.min_fit_quality,
                "solver": args.solver,
            }
        )
