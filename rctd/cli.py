import argparse
import dataclasses
import logging
import os
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from .batch import BatchScheduler
from .benchmark import compare_labels
from .config import (
    DEFAULT_CONF_THRESH,
    DEFAULT_DOUBLET_THRESH,
    DEFAULT_IRWLS_ITERS,
    DEFAULT_MIN_CHANGE,
    SOLVERS,
    RCTDConfig,
)
from .data import ReferenceProfile, SpatialDataset, shared_genes
from .likelihood import (
    DEFAULT_GAMMA,
    DEFAULT_GH_N,
    DEFAULT_K_MAX,
    DEFAULT_NY,
    DEFAULT_X_MAX,
    DELTA_LAM,
    QMAT_MODES,
    QuadratureModel,
    QuadratureStore,
    build_x_vals,
    default_sigma_grid,
    save_quadrature,
)
from .normalize import normalize_reference
from .sigma import choose_sigma

logger = logging.getLogger("rctd")


def _read_lines(path: str) -> List[str]:
    return [line.strip().split()[0] for line in Path(path).read_text().splitlines() if line.strip()]


def _parse_sigma_list(raw: Optional[str], grid: str) -> List[int]:
    if raw:
        vals = [int(x.strip()) for x in raw.split(",") if x.strip()]
        if not vals:
            raise ValueError("Empty --sigma-list.")
        return sorted(set(vals))
    if grid == "rctd":
        return default_sigma_grid()
    return list(range(10, 201))


def build_qmat(args: argparse.Namespace) -> None:
    sigma_vals = _parse_sigma_list(args.sigma_list, args.sigma_grid)
    x_vals = build_x_vals(args.x_max, delta=args.delta)
    node_kwargs = {"gh_n": args.gh_n} if args.method == "gh" else {"ny": args.ny, "gamma": args.gamma}
    logger.info("k_max=%d, x_max=%s, grid=%d, sigma values=%d", args.k_max, args.x_max, x_vals.size, len(sigma_vals))
    models = []
    for s in sigma_vals:
        logger.info("Generating sigma=%d...", s)
        models.append(QuadratureModel.build(s / 100.0, k_max=args.k_max, x_vals=x_vals, method=args.method, **node_kwargs))
    save_quadrature(args.out, models)
    logger.info("Quadrature tables written to %s", args.out)


def fit(args: argparse.Namespace) -> None:
    os.makedirs(args.outdir, exist_ok=True)
    rng = np.random.RandomState(args.seed)

    logger.info("Loading reference profiles...")
    reference = ReferenceProfile.from_frame(pd.read_csv(args.reference_csv, index_col=0))
    logger.info("Loading spatial counts...")
    spatial = SpatialDataset.from_frame(pd.read_csv(args.cnts_csv, index_col=0))
    gene_set = _read_lines(args.gene_list) if args.gene_list else shared_genes(reference, spatial)
    if not gene_set:
        raise ValueError("No overlapping genes between reference and spatial datasets.")
    class_mapping = None
    if args.class_csv:
        class_mapping = pd.read_csv(args.class_csv, index_col=0).iloc[:, 0].astype(str).to_dict()

    if args.qmat:
        store = QuadratureStore.from_npz(args.qmat, qmat_mode=args.qmat_mode)
    else:
        store = QuadratureStore(k_max=args.k_max, x_max=args.x_max)

    config = RCTDConfig.from_args(args)
    if not args.skip_normalize:
        logger.info("Normalizing reference...")
        reference, _ = normalize_reference(reference, spatial, gene_set, solver=config.solver)

    if args.sigma is None:
        logger.info("Choosing sigma...")
        sigma, _ = choose_sigma(reference, spatial, gene_set, store, config=config, rng=rng)
        config = dataclasses.replace(config, sigma=sigma)
    logger.info("Using sigma=%.2f", config.sigma)

    scheduler = BatchScheduler(reference, store.get(config.sigma), config, class_mapping=class_mapping)
    outdir = Path(args.outdir)
    if args.doublet_mode:
        result = scheduler.fit_doublet(spatial, gene_set)
        result.results_df.to_csv(outdir / "doublet_results.csv")
        result.weights_frame().to_csv(outdir / "proportion_celltype.csv")
    else:
        result = scheduler.fit_full(spatial, gene_set)
        result.weights.to_csv(outdir / "proportion_celltype.csv")
        pd.concat([result.status, result.converged], axis=1).to_csv(outdir / "fit_status.csv")
        if args.labels_csv:
            labels = pd.read_csv(args.labels_csv, index_col=0).iloc[:, 0]
            labels.index = labels.index.astype(str)
            comparison = compare_labels(result, labels)
            comparison.confusion.to_csv(outdir / "confusion_matrix.csv")
            logger.info("Label accuracy: %.3f", comparison.accuracy)
    (outdir / "sigma.txt").write_text(f"{config.sigma}\n")
    logger.info("Done. Results saved to: %s", args.outdir)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cell-type deconvolution of spatial transcriptomics counts.")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    qmat = sub.add_parser("build-qmat", help="Generate likelihood quadrature tables.")
    qmat.add_argument("--out", default=os.path.join("data", "qmat.npz"))
    qmat.add_argument("--k-max", type=int, default=DEFAULT_K_MAX, help="Max count (k). Tables hold k_max+3 rows.")
    qmat.add_argument("--x-max", type=float, default=DEFAULT_X_MAX, help="Max lambda value for the grid.")
    qmat.add_argument("--sigma-list", default=None, help="Comma-separated sigma integers (e.g., 10,12,14).")
    qmat.add_argument("--sigma-grid", choices=["rctd", "full"], default="rctd")
    qmat.add_argument("--method", choices=["gh", "heavy_tail"], default="gh")
    qmat.add_argument("--gh-n", type=int, default=DEFAULT_GH_N, help="Gauss-Hermite nodes.")
    qmat.add_argument("--ny", type=int, default=DEFAULT_NY)
    qmat.add_argument("--gamma", type=float, default=DEFAULT_GAMMA)
    qmat.add_argument("--delta", type=float, default=DELTA_LAM)
    qmat.set_defaults(func=build_qmat)

    run = sub.add_parser("fit", help="Fit cell-type weights for every location.")
    run.add_argument("reference_csv", help="Cell type means: genes as rows, cell types as columns.")
    run.add_argument("cnts_csv", help="Spatial counts: locations as rows, genes as columns.")
    run.add_argument("outdir")
    run.add_argument("--num-workers", type=int, default=1)
    run.add_argument("--doublet-mode", action="store_true")
    run.add_argument("--gene-list", default=None)
    run.add_argument("--class-csv", default=None, help="Two columns: cell type, class.")
    run.add_argument("--labels-csv", default=None, help="Two columns: location, known cell type (full mode).")
    run.add_argument("--sigma", type=float, default=None)
    run.add_argument("--qmat", default=None)
    run.add_argument("--qmat-mode", choices=QMAT_MODES, default="auto")
    run.add_argument("--k-max", type=int, default=DEFAULT_K_MAX)
    run.add_argument("--x-max", type=float, default=DEFAULT_X_MAX)
    run.add_argument("--skip-normalize", action="store_true")
    run.add_argument("--constrain", action="store_true")
    run.add_argument("--ols", action="store_true")
    run.add_argument("--min-change", type=float, default=DEFAULT_MIN_CHANGE)
    run.add_argument("--n-iter", type=int, default=DEFAULT_IRWLS_ITERS)
    run.add_argument("--doublet-threshold", type=float, default=DEFAULT_DOUBLET_THRESH)
    run.add_argument("--confidence-threshold", type=float, default=DEFAULT_CONF_THRESH)
    run.add_argument("--min-fit-quality", type=float, default=None)
    run.add_argument("--solver", choices=SOLVERS, default="quadprog")
    run.add_argument("--seed", type=int, default=0)
    run.set_defaults(func=fit)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = _parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
