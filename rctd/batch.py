"""Fan-out of the per-location fits over a whole spatial dataset."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import multiprocessing as mp
from typing import List, Mapping, Optional, Sequence, Tuple
import warnings

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .config import RCTDConfig
from .data import ReferenceProfile, SpatialDataset, class_codes, shared_genes, validate_gene_set
from .doublet import DoubletCall, DoubletClassifier, SpotClass
from .errors import EmptyLocation, NumericNonConvergence, WorkerPoolUnavailable
from .likelihood import QuadratureModel
from .solver import WeightFit, fit_location

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FALLBACK = "fallback"
STATUS_EMPTY = "empty"


@dataclass(frozen=True)
class WorkerContext:
    """Read-only inputs shared by every location of a batch."""

    profiles: np.ndarray
    model: QuadratureModel
    config: RCTDConfig
    classes: np.ndarray
    doublet: bool = False


@dataclass(frozen=True)
class _Task:
    context: WorkerContext
    start: int
    counts: np.ndarray
    n_umi: np.ndarray


def _solve_location(
    ctx: WorkerContext, bead: np.ndarray, n_umi: float, classifier: Optional[DoubletClassifier] = None
) -> Tuple[str, object]:
    cfg = ctx.config
    if classifier is not None:
        if not n_umi > 0:
            return STATUS_EMPTY, DoubletCall(SpotClass.REJECT)
        call = classifier.classify(bead, n_umi)
        return (STATUS_FALLBACK if call.fallback else STATUS_OK), call
    try:
        fit = fit_location(
            ctx.profiles,
            bead,
            n_umi,
            ctx.model,
            mode=cfg.mode,
            n_iter=cfg.n_iter,
            min_change=cfg.min_change,
            solver=cfg.solver,
        )
    except EmptyLocation as exc:
        logger.debug("Skipping location: %s", exc)
        return STATUS_EMPTY, None
    return (STATUS_FALLBACK if fit.fallback else STATUS_OK), fit


def _solve_chunk(task: _Task) -> List[Tuple[int, str, object]]:
    ctx = task.context
    classifier = DoubletClassifier(ctx.profiles, ctx.model, ctx.classes, ctx.config) if ctx.doublet else None
    out = []
    for offset in range(task.counts.shape[1]):
        status, result = _solve_location(ctx, task.counts[:, offset], float(task.n_umi[offset]), classifier)
        out.append((task.start + offset, status, result))
    return out


def _make_pool(n_workers: int):
    try:
        ctx = mp.get_context("fork") if "fork" in mp.get_all_start_methods() else mp.get_context()
        return ctx.Pool(processes=n_workers)
    except (OSError, ValueError, NotImplementedError, ImportError) as exc:
        raise WorkerPoolUnavailable(f"could not start {n_workers} workers: {exc}") from exc


@dataclass(frozen=True)
class FullModeResult:
    weights: pd.DataFrame
    status: pd.Series
    converged: pd.Series


@dataclass(frozen=True)
class DoubletModeResult:
    results_df: pd.DataFrame
    weights: sp.csr_matrix
    cell_type_names: Tuple[str, ...]
    location_names: Tuple[str, ...]

    def weights_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.weights.toarray(), index=list(self.location_names), columns=list(self.cell_type_names)
        )


class BatchScheduler:
    """Solves every location independently, optionally across worker processes.

    The worker count only affects wall-clock time: locations share nothing but
    the read-only ``WorkerContext`` and results are gathered by location index.
    """

    def __init__(
        self,
        reference: ReferenceProfile,
        model: QuadratureModel,
        config: Optional[RCTDConfig] = None,
        class_mapping: Optional[Mapping[str, str] | pd.DataFrame] = None,
    ):
        self.reference = reference
        self.model = model
        self.config = config if config is not None else RCTDConfig()
        self.classes = class_codes(reference.cell_type_names, class_mapping)

    def _prepare(self, spatial: SpatialDataset, gene_set: Optional[Sequence[str]], doublet: bool):
        if gene_set is None:
            gene_set = shared_genes(self.reference, spatial)
        gene_set = validate_gene_set(self.reference, spatial, gene_set)
        context = WorkerContext(
            profiles=self.reference.restrict(gene_set),
            model=self.model,
            config=self.config,
            classes=self.classes,
            doublet=doublet,
        )
        return context, spatial.restrict(gene_set)

    def _tasks(self, context: WorkerContext, counts: np.ndarray, spatial: SpatialDataset) -> List[_Task]:
        n_locations = spatial.n_locations
        n_umi = spatial.n_umi
        chunksize = self.config.chunksize or max(1, math.ceil(n_locations / (self.config.max_workers * 4)))
        return [
            _Task(context, start, counts[:, start : start + chunksize], n_umi[start : start + chunksize])
            for start in range(0, n_locations, chunksize)
        ]

    def _run(self, context: WorkerContext, counts: np.ndarray, spatial: SpatialDataset) -> List[Tuple[str, object]]:
        tasks = self._tasks(context, counts, spatial)
        results: List[Optional[Tuple[str, object]]] = [None] * spatial.n_locations
        n_workers = min(self.config.max_workers, len(tasks))
        pool = None
        if n_workers > 1:
            try:
                pool = _make_pool(n_workers)
            except WorkerPoolUnavailable as exc:
                logger.warning("%s; running sequentially.", exc)

        logger.info("Fitting %d locations with %d worker(s).", spatial.n_locations, n_workers if pool is not None else 1)
        if pool is None:
            for task in tasks:
                for index, status, result in _solve_chunk(task):
                    results[index] = (status, result)
        else:
            with pool:
                for chunk in pool.imap_unordered(_solve_chunk, tasks):
                    for index, status, result in chunk:
                        results[index] = (status, result)
        return results

    def _report(self, status: pd.Series, converged: pd.Series) -> None:
        counts = status.value_counts()
        if counts.get(STATUS_EMPTY, 0):
            logger.warning("%d location(s) with non-positive total count were not fitted.", counts[STATUS_EMPTY])
        if counts.get(STATUS_FALLBACK, 0):
            logger.warning("%d location(s) fell back to uniform weights.", counts[STATUS_FALLBACK])
        n_slow = int(((status == STATUS_OK) & ~converged).sum())
        if n_slow:
            warnings.warn(
                f"{n_slow} location(s) reached the IRWLS iteration cap before converging.",
                NumericNonConvergence,
                stacklevel=3,
            )

    def fit_full(self, spatial: SpatialDataset, gene_set: Optional[Sequence[str]] = None) -> FullModeResult:
        """Weights over every cell type for every location."""
        context, counts = self._prepare(spatial, gene_set, doublet=False)
        results = self._run(context, counts, spatial)

        n_types = self.reference.n_cell_types
        weights = np.full((len(results), n_types), np.nan)
        status = []
        converged = []
        for i, (state, fit) in enumerate(results):
            status.append(state)
            if isinstance(fit, WeightFit):
                weights[i, :] = fit.weights
                converged.append(fit.converged)
            else:
                converged.append(False)
        index = list(spatial.location_names)
        out = FullModeResult(
            weights=pd.DataFrame(weights, index=index, columns=list(self.reference.cell_type_names)),
            status=pd.Series(status, index=index, name="status"),
            converged=pd.Series(converged, index=index, name="converged", dtype=bool),
        )
        self._report(out.status, out.converged)
        return out

    def fit_doublet(self, spatial: SpatialDataset, gene_set: Optional[Sequence[str]] = None) -> DoubletModeResult:
        """Singlet / doublet calls for every location."""
        context, counts = self._prepare(spatial, gene_set, doublet=True)
        results = self._run(context, counts, spatial)

        names = self.reference.cell_type_names
        n_types = len(names)
        rows = []
        coords: List[Tuple[int, int, float]] = []
        for i, (state, call) in enumerate(results):
            coords.extend((i, int(j), w) for j, w in enumerate(call.weight_vector(n_types)) if w != 0)
            rows.append(
                {
                    "spot_class": call.spot_class.value,
                    "first_type": names[call.first_type] if call.first_type is not None else None,
                    "second_type": names[call.second_type] if call.second_type is not None else None,
                    "first_weight": call.first_weight,
                    "second_weight": call.second_weight,
                    "singlet_score": call.singlet_score,
                    "doublet_score": call.doublet_score,
                    "converged": call.converged,
                    "status": state,
                }
            )
        index = list(spatial.location_names)
        results_df = pd.DataFrame(rows, index=index)
        self._report(results_df["status"], results_df["converged"].astype(bool))
        r_idx, c_idx, vals = zip(*coords) if coords else ((), (), ())
        weights = sp.csr_matrix((vals, (r_idx, c_idx)), shape=(len(results), n_types), dtype=float)
        return DoubletModeResult(results_df, weights, names, spatial.location_names)
