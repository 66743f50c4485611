"""Singlet / doublet classification of a single location."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import RCTDConfig, SolveMode
from .likelihood import QuadratureModel
from .solver import WeightFit, score_fit, solve_irwls_weights

logger = logging.getLogger(__name__)

SCORE_TOL = 1e-9


class SpotClass(str, Enum):
    REJECT = "reject"
    SINGLET = "singlet"
    DOUBLET_CERTAIN = "doublet_certain"
    DOUBLET_UNCERTAIN = "doublet_uncertain"


@dataclass(frozen=True)
class DoubletCall:
    """Classification of one location; cell types are column indices of the reference."""

    spot_class: SpotClass
    first_type: Optional[int] = None
    second_type: Optional[int] = None
    first_weight: Optional[float] = None
    second_weight: Optional[float] = None
    singlet_score: float = np.nan
    doublet_score: float = np.nan
    converged: bool = True
    fallback: bool = False

    def weight_vector(self, n_cell_types: int) -> np.ndarray:
        weights = np.zeros(n_cell_types, dtype=float)
        if self.first_type is not None:
            weights[self.first_type] = self.first_weight
        if self.second_type is not None:
            weights[self.second_type] = self.second_weight
        return weights


@dataclass(frozen=True)
class _PairFit:
    second_type: int
    score: float
    fit: WeightFit


class DoubletClassifier:
    """Decides whether a location holds one or two reference cell types.

    ``profiles`` is the genes x cell-types reference restricted to the model genes
    and ``classes`` an integer class code per cell type; two types sharing a code
    are never paired.
    """

    def __init__(
        self,
        profiles: np.ndarray,
        model: QuadratureModel,
        classes: Optional[Sequence[int]] = None,
        config: Optional[RCTDConfig] = None,
    ):
        self.profiles = np.asarray(profiles, dtype=float)
        self.model = model
        n_types = self.profiles.shape[1]
        self.classes = np.arange(n_types) if classes is None else np.asarray(classes)
        if self.classes.shape != (n_types,):
            raise ValueError("classes must hold one entry per cell type.")
        self.config = config if config is not None else RCTDConfig()

    def singlet_scores(self, s_mat: np.ndarray, bead: np.ndarray, n_umi: float) -> np.ndarray:
        one = np.ones(1)
        return np.array([score_fit(s_mat[:, [t]], bead, one, n_umi, self.model) for t in range(s_mat.shape[1])])

    def _fit_pairs(self, s_mat: np.ndarray, bead: np.ndarray, n_umi: float, first: int) -> List[_PairFit]:
        cfg = self.config
        pairs = []
        for second in range(s_mat.shape[1]):
            if self.classes[second] == self.classes[first]:
                continue
            sub = s_mat[:, [first, second]]
            fit = solve_irwls_weights(
                sub,
                bead,
                n_umi,
                self.model,
                mode=SolveMode.UNCONSTRAINED,
                n_iter=cfg.n_iter_score,
                min_change=cfg.min_change,
                solver=cfg.solver,
            )
            pairs.append(_PairFit(second, score_fit(sub, bead, fit.weights, n_umi, self.model), fit))
        pairs.sort(key=lambda p: (p.score, p.second_type))
        if not pairs:
            return pairs
        # Scores within tolerance of the best count as ties; the lowest type index wins.
        tied = [p for p in pairs if p.score <= pairs[0].score + SCORE_TOL]
        top = min(tied, key=lambda p: p.second_type)
        return [top] + [p for p in pairs if p is not top]

    def classify(self, bead: np.ndarray, n_umi: float) -> DoubletCall:
        cfg = self.config
        bead = np.asarray(bead, dtype=float)
        if not n_umi > 0:
            return DoubletCall(SpotClass.REJECT)

        s_mat = self.profiles * n_umi
        scores = self.singlet_scores(s_mat, bead, n_umi)
        best = float(np.min(scores))
        first = int(np.flatnonzero(scores <= best + SCORE_TOL)[0])

        if cfg.min_fit_quality is not None and best / max(bead.size, 1) > cfg.min_fit_quality:
            logger.debug("Best singlet score %.3f fails the fit-quality floor.", best)
            return DoubletCall(SpotClass.REJECT, singlet_score=best)

        pairs = self._fit_pairs(s_mat, bead, n_umi, first)
        if not pairs:
            return DoubletCall(SpotClass.SINGLET, first, None, 1.0, None, singlet_score=best)

        top = pairs[0]
        improvement = best - top.score
        if improvement < cfg.doublet_threshold or improvement <= SCORE_TOL:
            return DoubletCall(
                SpotClass.SINGLET, first, None, 1.0, None, singlet_score=best, doublet_score=top.score
            )

        first_weight, second_weight = _proportions(top.fit.weights)
        runner_up: Optional[_PairFit] = pairs[1] if len(pairs) > 1 else None
        if runner_up is not None and runner_up.score - top.score < cfg.confidence_threshold:
            spot_class = SpotClass.DOUBLET_UNCERTAIN
        else:
            spot_class = SpotClass.DOUBLET_CERTAIN
        return DoubletCall(
            spot_class,
            first,
            top.second_type,
            first_weight,
            second_weight,
            singlet_score=best,
            doublet_score=top.score,
            converged=top.fit.converged,
            fallback=top.fit.fallback,
        )


def _proportions(weights: np.ndarray) -> Tuple[float, float]:
    total = float(np.sum(weights))
    if total <= 0:
        return 0.5, 0.5
    return float(weights[0] / total), float(weights[1] / total)
