"""Constrained iteratively reweighted least squares for one location."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Sequence

import numpy as np
import quadprog
from scipy.optimize import minimize, nnls

from .config import DEFAULT_IRWLS_ITERS, DEFAULT_MIN_CHANGE, SolveMode
from .errors import EmptyLocation, InfeasibleConstraint
from .likelihood import QuadratureModel

logger = logging.getLogger(__name__)

EPS_LAM = 1e-4
EPS_QP = 1e-7
EPS_QP_CHOL = 1e-8


@dataclass(frozen=True)
class WeightFit:
    """Weights fitted for one location."""

    weights: np.ndarray
    converged: bool
    n_iter: int
    fallback: bool = False

    def __post_init__(self) -> None:
        weights = np.array(self.weights, dtype=float, copy=True)
        weights.setflags(write=False)
        object.__setattr__(self, "weights", weights)


def _project_simplex(x: np.ndarray, s: float) -> np.ndarray:
    u = np.sort(x)[::-1]
    cssv = np.cumsum(u)
    rho = np.nonzero(u * np.arange(1, u.size + 1) > (cssv - s))[0]
    if rho.size == 0:
        return np.full_like(x, s / x.size)
    rho = rho[-1]
    theta = (cssv[rho] - s) / float(rho + 1)
    return np.maximum(x - theta, 0.0)


def _qp_to_lsq(d_mat: np.ndarray, d_vec: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # 1/2 x'Dx - d'x equals 1/2 ||Rx - y||^2 up to a constant when R'R = D and R'y = d.
    d_mat = d_mat + EPS_QP_CHOL * np.eye(d_mat.shape[0])
    try:
        r_mat = np.linalg.cholesky(d_mat).T
    except np.linalg.LinAlgError:
        eigvals, eigvecs = np.linalg.eigh(d_mat)
        r_mat = np.diag(np.sqrt(np.maximum(eigvals, EPS_QP_CHOL))) @ eigvecs.T
    return r_mat, np.linalg.solve(r_mat.T, d_vec)


def solve_qp(d_mat: np.ndarray, d_vec: np.ndarray, constrain: bool, solver: str = "quadprog") -> np.ndarray:
    """Minimise ``1/2 x'Dx - d'x`` subject to ``x >= 0`` and, if ``constrain``, ``sum(x) == 1``."""
    n = d_vec.size
    if solver == "quadprog":
        c_mat = np.eye(n)
        b_vec = np.zeros(n)
        meq = 0
        if constrain:
            c_mat = np.column_stack([np.ones(n), c_mat])
            b_vec = np.concatenate([[1.0], b_vec])
            meq = 1
        try:
            return quadprog.solve_qp(d_mat, d_vec, c_mat, b_vec, meq)[0]
        except ValueError as exc:
            raise InfeasibleConstraint(f"quadprog: {exc}") from exc

    if solver == "nnls":
        try:
            r_mat, y_vec = _qp_to_lsq(d_mat, d_vec)
        except np.linalg.LinAlgError as exc:
            raise InfeasibleConstraint(f"nnls: {exc}") from exc
        try:
            x, _ = nnls(r_mat, y_vec)
        except RuntimeError as exc:
            raise InfeasibleConstraint(f"nnls: {exc}") from exc
        return _project_simplex(x, 1.0) if constrain else x

    if solver == "slsqp":
        constraints = []
        if constrain:
            constraints.append({"type": "eq", "fun": lambda x: np.sum(x) - 1.0, "jac": lambda x: np.ones_like(x)})
        res = minimize(
            lambda x: 0.5 * float(x @ d_mat @ x) - float(d_vec @ x),
            np.full(n, 1.0 / n),
            jac=lambda x: d_mat @ x - d_vec,
            bounds=[(0.0, None)] * n,
            constraints=constraints,
            method="SLSQP",
        )
        if res.status == 4:
            raise InfeasibleConstraint(f"slsqp: {res.message}")
        return res.x

    raise ValueError(f"Unknown solver: {solver}")


def _normalized_qp(d_mat: np.ndarray, d_vec: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    d_mat = (d_mat + d_mat.T) / 2.0
    norm_factor = np.linalg.norm(d_mat, 2)
    if norm_factor > 0:
        d_mat = d_mat / norm_factor
        d_vec = d_vec / norm_factor
    return d_mat + EPS_QP * np.eye(d_mat.shape[0]), d_vec


def solve_ols(s_mat: np.ndarray, b: np.ndarray, constrain: bool = True, solver: str = "quadprog") -> np.ndarray:
    d_mat, d_vec = _normalized_qp(s_mat.T @ s_mat, s_mat.T @ b)
    return solve_qp(d_mat, d_vec, constrain, solver=solver)


def predict(s_mat: np.ndarray, weights: np.ndarray, n_umi: float) -> np.ndarray:
    """Expected counts of a fit, floored away from zero."""
    prediction = np.abs(s_mat @ weights)
    return np.maximum(prediction, max(EPS_LAM, n_umi * 1e-7))


def solve_wls(
    s_mat: np.ndarray,
    b: np.ndarray,
    solution: np.ndarray,
    n_umi: float,
    model: Optional[QuadratureModel],
    constrain: bool = False,
    bulk_mode: bool = False,
    solver: str = "quadprog",
) -> np.ndarray:
    """One reweighting step: inverse-variance weights at the current fit, then a QP solve."""
    prediction = predict(s_mat, np.maximum(solution, 0), n_umi)
    if bulk_mode:
        variance = prediction**2
    else:
        variance = model.variance(prediction)
    inv_var = 1.0 / np.maximum(variance, EPS_LAM)
    weighted = s_mat * inv_var[:, None]
    d_mat, d_vec = _normalized_qp(weighted.T @ s_mat, weighted.T @ b)
    return solve_qp(d_mat, d_vec, constrain, solver=solver)


def _initial_solution(s_mat: np.ndarray, b: np.ndarray) -> np.ndarray:
    n_types = s_mat.shape[1]
    try:
        solution, _ = nnls(s_mat, b)
    except RuntimeError:
        logger.debug("NNLS start did not converge; starting from uniform weights.")
        return np.full(n_types, 1.0 / n_types)
    if not np.any(solution > 0):
        return np.full(n_types, 1.0 / n_types)
    return solution


def _finalize(weights: np.ndarray, constrain: bool) -> np.ndarray:
    if not np.all(np.isfinite(weights)):
        raise InfeasibleConstraint("solver returned non-finite weights")
    weights = np.maximum(weights, 0.0)
    if constrain:
        total = float(np.sum(weights))
        if total <= 0:
            raise InfeasibleConstraint("constrained weights collapsed to zero")
        weights = weights / total
    return weights


def solve_irwls_weights(
    s_mat: np.ndarray,
    b: np.ndarray,
    n_umi: float,
    model: Optional[QuadratureModel],
    mode: SolveMode = SolveMode.CONSTRAINED,
    n_iter: int = DEFAULT_IRWLS_ITERS,
    min_change: float = DEFAULT_MIN_CHANGE,
    bulk_mode: bool = False,
    solver: str = "quadprog",
) -> WeightFit:
    """Fit weights of the design matrix ``s_mat`` (profiles scaled by ``n_umi``) to counts ``b``.

    Reaching ``n_iter`` is not an error: the last iterate is returned with
    ``converged=False``. A failed QP solve yields uniform weights with
    ``fallback=True``.
    """
    b = np.asarray(b, dtype=float)
    if not bulk_mode:
        b = np.minimum(b, model.k_val)
    n_types = s_mat.shape[1]
    try:
        if mode.ols:
            return WeightFit(_finalize(solve_ols(s_mat, b, constrain=mode.constrain, solver=solver), mode.constrain), True, 1)

        solution = _initial_solution(s_mat, b)
        iterations = 0
        change = np.inf
        while change > min_change and iterations < n_iter:
            new_solution = solve_wls(
                s_mat, b, solution, n_umi, model, constrain=mode.constrain, bulk_mode=bulk_mode, solver=solver
            )
            change = float(np.sum(np.abs(new_solution - solution)))
            solution = new_solution
            iterations += 1
        solution = _finalize(solution, mode.constrain)
    except (InfeasibleConstraint, np.linalg.LinAlgError) as exc:
        logger.warning("Weight solve failed (%s); substituting uniform weights.", exc)
        return WeightFit(np.full(n_types, 1.0 / n_types), False, 0, fallback=True)

    converged = change <= min_change
    if not converged:
        logger.debug("IRWLS reached %d iterations (change=%.3g).", iterations, change)
    return WeightFit(solution, converged, iterations)


def fit_location(
    profiles: np.ndarray,
    bead: np.ndarray,
    n_umi: float,
    model: QuadratureModel,
    mode: SolveMode = SolveMode.CONSTRAINED,
    cell_types: Optional[Sequence[int]] = None,
    n_iter: int = DEFAULT_IRWLS_ITERS,
    min_change: float = DEFAULT_MIN_CHANGE,
    solver: str = "quadprog",
) -> WeightFit:
    """Fit one location against reference ``profiles`` (genes x types, per unit count)."""
    if not n_umi > 0:
        raise EmptyLocation(f"total count {n_umi} is not positive")
    s_mat = np.asarray(profiles, dtype=float) * n_umi
    if cell_types is not None:
        s_mat = s_mat[:, list(cell_types)]
    return solve_irwls_weights(s_mat, bead, n_umi, model, mode=mode, n_iter=n_iter, min_change=min_change, solver=solver)


def score_fit(s_mat: np.ndarray, b: np.ndarray, weights: np.ndarray, n_umi: float, model: QuadratureModel) -> float:
    """Negative log-likelihood of counts ``b`` under the fitted mixture."""
    return model.neg_log_likelihood(predict(s_mat, weights, n_umi), b)
