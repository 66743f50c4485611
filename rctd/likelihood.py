"""Likelihood quadrature tables and spline lookups for the count model.

Counts are modelled as ``y ~ Poisson(lam * exp(eps))`` where ``eps`` is a
random multiplicative effect with dispersion ``sigma``. The log-probability of
every observable count is tabulated on a grid of expected counts ``lam`` and
interpolated with a natural cubic spline, which gives the negative
log-likelihood and its first two derivatives in ``lam`` for any expected count.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
from numpy.polynomial.hermite import hermgauss
from scipy.special import erf, gammaln, logsumexp

logger = logging.getLogger(__name__)

DELTA_LAM = 1e-6
DEFAULT_K_MAX = 300
DEFAULT_X_MAX = 200.0
DEFAULT_GH_N = 30
DEFAULT_NY = 5000
DEFAULT_GAMMA = 0.004
QMAT_MODES = ("neglog", "log", "prob", "raw", "auto")


def sigma_key(sigma: float) -> str:
    """Key of a sigma value in a quadrature npz (sigma in hundredths)."""
    return str(int(round(sigma * 100)))


def default_sigma_grid() -> list[int]:
    return list(range(10, 71)) + [i * 2 for i in range(36, 101)]


def build_x_vals(x_max: float, delta: float = DELTA_LAM) -> np.ndarray:
    """Grid of expected counts, dense near zero and sparser for large ``lam``."""
    if x_max <= 0:
        raise ValueError("x_max must be positive.")
    l_max = max(int(np.floor(np.sqrt(x_max / delta))), 10)

    def knot(l_val: int) -> int:
        m_r = min(l_val - 9, 40) + max(int(np.ceil(np.sqrt(max(l_val - 48.7499, 0) * 4))) - 2, 0)
        return max(m_r - 1, 0)

    x_vals = []
    prev = None
    for l_val in range(10, l_max + 1):
        m = knot(l_val)
        if m != prev:
            x_vals.append(delta * l_val * l_val)
            prev = m
    x_vals.append(delta * (l_max + 1) ** 2)
    return np.asarray(x_vals, dtype=float)


def _heavy_tail_pdf(z: np.ndarray, sigma: float) -> np.ndarray:
    # Gaussian core on |x| < 3 with inverse-square tails, scaled by sigma.
    x = z / sigma
    a = 4.0 / 9.0 * np.exp(-9.0 / 2.0) / np.sqrt(2.0 * np.pi)
    c = 7.0 / 3.0
    norm = 1.0 / ((a / (3.0 - c) - 0.5 * (1.0 + erf(-3.0 / np.sqrt(2.0)))) * 2.0 + 1.0)
    p = np.empty_like(x, dtype=float)
    core = np.abs(x) < 3.0
    p[core] = norm / np.sqrt(2.0 * np.pi) * np.exp(-(x[core] ** 2) / 2.0)
    p[~core] = norm * a / (np.abs(x[~core]) - c) ** 2
    return p / sigma


def _quadrature_nodes(
    sigma: float,
    method: str,
    gh_n: int = DEFAULT_GH_N,
    ny: int = DEFAULT_NY,
    gamma: float = DEFAULT_GAMMA,
) -> Tuple[np.ndarray, np.ndarray]:
    """Log-multipliers ``eps`` and log-weights of the random effect."""
    if method == "gh":
        nodes, weights = hermgauss(gh_n)
        return sigma * np.sqrt(2.0) * nodes, np.log(weights) - 0.5 * np.log(np.pi)
    if method == "heavy_tail":
        grid = np.arange(-ny, ny + 1, dtype=float) * gamma
        return grid, np.log(_heavy_tail_pdf(grid, sigma)) + np.log(gamma)
    raise ValueError(f"Unknown quadrature method: {method}")


def log_prob_table(
    sigma: float,
    x_vals: np.ndarray,
    k_max: int = DEFAULT_K_MAX,
    method: str = "gh",
    **node_kwargs,
) -> np.ndarray:
    """``log p(y | lam)`` for y = 0..k_max+2 (rows) at every grid point (columns)."""
    eps, log_w = _quadrature_nodes(sigma, method, **node_kwargs)
    log_x = np.log(x_vals)
    scaled = x_vals[:, None] * np.exp(eps)[None, :]
    table = np.empty((k_max + 3, x_vals.size), dtype=float)
    for y in range(k_max + 3):
        log_terms = log_w[None, :] + y * (log_x[:, None] + eps[None, :]) - scaled - gammaln(y + 1.0)
        table[y, :] = logsumexp(log_terms, axis=1)
    return table


def spline_second_derivatives(q_mat: np.ndarray, x_vals: np.ndarray) -> np.ndarray:
    """Natural cubic spline second derivatives of every table row."""
    n = x_vals.size - 1
    h = np.diff(x_vals)
    system = np.diag(2 * (h[: n - 1] + h[1:n]))
    off = np.arange(1, n - 1)
    system[off, off - 1] = h[1 : n - 1]
    system[off - 1, off] = h[1 : n - 1]

    slopes = np.diff(q_mat.T, axis=0) / h[:, None]
    rhs = 6 * np.diff(slopes, axis=0)
    inner = np.linalg.solve(system, rhs).T
    edge = np.zeros((q_mat.shape[0], 1), dtype=float)
    return np.concatenate([edge, inner, edge], axis=1)


def _to_log_prob(q_mat: np.ndarray, mode: str) -> Tuple[np.ndarray, str]:
    mode = mode.lower()
    if mode not in QMAT_MODES:
        raise ValueError(f"Unknown qmat mode: {mode}")
    if mode == "auto":
        q_min = float(np.nanmin(q_mat))
        q_max = float(np.nanmax(q_mat))
        if q_min >= 0.0 and q_max <= 1.0:
            mode = "prob"
        elif q_min >= 0.0:
            mode = "neglog"
        else:
            mode = "log"
    if mode == "prob":
        return np.log(np.clip(q_mat, 1e-300, 1.0)), mode
    if mode == "neglog":
        return -q_mat, mode
    return np.asarray(q_mat, dtype=float), mode


def node_variance(sigma: float, x_vals: np.ndarray, method: str = "gh", **node_kwargs) -> np.ndarray:
    """Count variance at each grid point from the moments of the random effect.

    ``Var[y | lam] = lam * E[e^eps] + lam^2 * Var[e^eps]``, with the moments taken
    over the same quadrature nodes as the probability table, so it does not
    depend on where the table stops counting.
    """
    eps, log_w = _quadrature_nodes(sigma, method, **node_kwargs)
    w = np.exp(log_w - logsumexp(log_w))
    m1 = float(np.sum(w * np.exp(eps)))
    m2 = float(np.sum(w * np.exp(2.0 * eps)))
    x_vals = np.asarray(x_vals, dtype=float)
    return x_vals * m1 + x_vals**2 * max(m2 - m1**2, 0.0)


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class QuadratureModel:
    """Likelihood quadrature for one dispersion ``sigma``.

    ``q_mat[y, k]`` holds ``log p(y | x_vals[k])``, ``sq_mat`` the matching spline
    second derivatives and ``variance_table[k]`` the count variance at
    ``x_vals[k]``. Instances are read-only and shared across all solves.
    """

    sigma: float
    x_vals: np.ndarray
    q_mat: np.ndarray
    sq_mat: np.ndarray
    variance_table: np.ndarray
    qmat_mode: str = "log"

    def __post_init__(self) -> None:
        x_vals = np.asarray(self.x_vals)
        if x_vals.ndim != 1 or x_vals.size < 3:
            raise ValueError("x_vals must be a 1-D grid with at least 3 points.")
        if np.any(np.diff(x_vals) <= 0):
            raise ValueError("x_vals must be strictly increasing.")
        if self.q_mat.shape[1] != x_vals.size or self.sq_mat.shape != self.q_mat.shape:
            raise ValueError("q_mat/sq_mat columns must match the x_vals grid.")
        if np.shape(self.variance_table) != x_vals.shape:
            raise ValueError("variance_table must have one value per grid point.")
        for name in ("x_vals", "q_mat", "sq_mat", "variance_table"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @property
    def k_val(self) -> int:
        """Largest count kept as-is; larger observations are truncated to it."""
        return self.q_mat.shape[0] - 3

    @property
    def n_grid(self) -> int:
        return self.x_vals.size

    @classmethod
    def from_table(
        cls,
        q_mat: np.ndarray,
        x_vals: np.ndarray,
        sigma: float,
        qmat_mode: str = "auto",
        method: str = "gh",
        **node_kwargs,
    ) -> "QuadratureModel":
        """Wrap a precomputed table in any of the supported encodings.

        The variance table is rebuilt from ``sigma`` with the given quadrature
        ``method``, since a stored table only carries truncated counts.
        """
        x_vals = np.asarray(x_vals, dtype=float)
        log_p, mode = _to_log_prob(np.asarray(q_mat, dtype=float), qmat_mode)
        return cls(
            sigma=float(sigma),
            x_vals=x_vals,
            q_mat=log_p,
            sq_mat=spline_second_derivatives(log_p, x_vals),
            variance_table=node_variance(sigma, x_vals, method, **node_kwargs),
            qmat_mode=mode,
        )

    @classmethod
    def build(
        cls,
        sigma: float,
        k_max: int = DEFAULT_K_MAX,
        x_max: float = DEFAULT_X_MAX,
        method: str = "gh",
        x_vals: Optional[np.ndarray] = None,
        delta: float = DELTA_LAM,
        **node_kwargs,
    ) -> "QuadratureModel":
        if sigma <= 0:
            raise ValueError("sigma must be positive.")
        if x_vals is None:
            x_vals = build_x_vals(x_max, delta=delta)
        x_vals = np.asarray(x_vals, dtype=float)
        logger.debug("Building quadrature: sigma=%s k_max=%d grid=%d method=%s", sigma, k_max, x_vals.size, method)
        log_p = log_prob_table(sigma, x_vals, k_max=k_max, method=method, **node_kwargs)
        return cls.from_table(log_p, x_vals, sigma, qmat_mode="log", method=method, **node_kwargs)

    def variance(self, lam: np.ndarray | float) -> np.ndarray:
        """Count variance at expected count ``lam``; out-of-range values are clamped."""
        return np.interp(lam, self.x_vals, self.variance_table)

    def calc_q_all(self, y: np.ndarray, lam: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Spline value and first two ``lam``-derivatives of ``log p(y | lam)``."""
        y = np.minimum(np.asarray(y, dtype=int), self.k_val)
        lam = np.clip(np.asarray(lam, dtype=float), self.x_vals[0], self.x_vals[-1])
        m = np.clip(np.searchsorted(self.x_vals, lam, side="right") - 1, 0, self.n_grid - 2)

        t_lo = self.x_vals[m]
        t_hi = self.x_vals[m + 1]
        h = t_hi - t_lo
        f_lo = self.q_mat[y, m]
        f_hi = self.q_mat[y, m + 1]
        z_lo = self.sq_mat[y, m] / h
        z_hi = self.sq_mat[y, m + 1] / h

        left = lam - t_lo
        right = t_hi - lam
        c_hi = f_hi / h - self.sq_mat[y, m + 1] * h / 6.0
        c_lo = f_lo / h - self.sq_mat[y, m] * h / 6.0

        d0 = z_hi * left**3 / 6.0 + z_lo * right**3 / 6.0 + c_hi * left + c_lo * right
        d1 = z_hi * left**2 / 2.0 - z_lo * right**2 / 2.0 + c_hi - c_lo
        d2 = z_hi * left + z_lo * right
        return d0, d1, d2

    def neg_log_likelihood(self, lam: np.ndarray, y: np.ndarray, return_vec: bool = False) -> float | np.ndarray:
        """Negative log-likelihood of counts ``y`` at expected counts ``lam`` (lower is better)."""
        d0, _, _ = self.calc_q_all(y, lam)
        if return_vec:
            return -d0
        return float(-np.sum(d0))


def load_quadrature_tables(path: str) -> Tuple[Dict[str, np.ndarray], np.ndarray]:
    """Raw tables keyed by sigma (hundredths) and the shared ``X_vals`` grid."""
    data = np.load(path, allow_pickle=False)
    x_vals = data["X_vals"]
    return {k: data[k] for k in data.files if k != "X_vals"}, x_vals


def load_quadrature(path: str, sigma: float, qmat_mode: str = "auto") -> QuadratureModel:
    tables, x_vals = load_quadrature_tables(path)
    key = sigma_key(sigma)
    if key not in tables:
        raise ValueError(f"sigma={sigma} (key {key}) is not available in {path}.")
    return QuadratureModel.from_table(tables[key], x_vals, sigma, qmat_mode=qmat_mode)


def save_quadrature(path: str, models: Iterable[QuadratureModel]) -> None:
    """Write models sharing one grid as ``-log p`` tables keyed by sigma."""
    models = list(models)
    if not models:
        raise ValueError("No quadrature models to save.")
    x_vals = models[0].x_vals
    payload: Dict[str, np.ndarray] = {"X_vals": np.asarray(x_vals)}
    for model in models:
        if not np.array_equal(model.x_vals, x_vals):
            raise ValueError("All quadrature models must share the same x_vals grid.")
        payload[sigma_key(model.sigma)] = -np.asarray(model.q_mat)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    np.savez_compressed(path, **payload)


class QuadratureStore:
    """Lazily built or loaded quadrature models, one per sigma."""

    def __init__(
        self,
        tables: Optional[Mapping[str, np.ndarray]] = None,
        x_vals: Optional[np.ndarray] = None,
        qmat_mode: str = "auto",
        **build_kwargs,
    ):
        self._tables = dict(tables) if tables is not None else None
        self._x_vals = x_vals
        self._qmat_mode = qmat_mode
        self._build_kwargs = build_kwargs
        self._models: Dict[str, QuadratureModel] = {}

    @classmethod
    def from_npz(cls, path: str, qmat_mode: str = "auto") -> "QuadratureStore":
        tables, x_vals = load_quadrature_tables(path)
        return cls(tables, x_vals, qmat_mode=qmat_mode)

    def get(self, sigma: float) -> QuadratureModel:
        key = sigma_key(sigma)
        if key not in self._models:
            if self._tables is not None:
                if key not in self._tables:
                    raise ValueError(f"sigma={sigma} (key {key}) is not available in the quadrature tables.")
                model = QuadratureModel.from_table(self._tables[key], self._x_vals, int(key) / 100.0, self._qmat_mode)
            else:
                model = QuadratureModel.build(int(key) / 100.0, **self._build_kwargs)
            self._models[key] = model
        return self._models[key]
