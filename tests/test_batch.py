import logging

import numpy as np
import pandas as pd
import pytest

from rctd import (
    BatchScheduler,
    InfeasibleConstraint,
    MissingGene,
    NumericNonConvergence,
    RCTDConfig,
    SolveMode,
    SpatialDataset,
    WorkerPoolUnavailable,
)
from rctd import batch as batch_mod
from rctd import solver as solver_mod


def test_full_mode_weights_and_status(reference, spatial, quad_model):
    result = BatchScheduler(reference, quad_model).fit_full(spatial)

    assert list(result.weights.columns) == ["A", "B", "C", "D"]
    assert list(result.weights.index) == list(spatial.location_names)
    fitted = result.weights.drop(index="empty")
    np.testing.assert_allclose(fitted.sum(axis=1), 1.0, atol=1e-7)
    assert (fitted.to_numpy() >= 0).all()
    assert result.weights.loc["empty"].isna().all()
    assert result.status.to_dict() == {
        "pureA": "ok",
        "mixAB": "ok",
        "mixBC": "ok",
        "pureD": "ok",
        "empty": "empty",
    }
    assert result.weights.loc["mixAB", "A"] == pytest.approx(0.7, abs=0.03)
    assert result.weights.loc["pureD", "D"] == pytest.approx(1.0, abs=0.03)
    assert not result.converged["empty"]


def test_unconstrained_mode_runs(reference, spatial, quad_model):
    config = RCTDConfig(mode=SolveMode.UNCONSTRAINED)
    result = BatchScheduler(reference, quad_model, config).fit_full(spatial)
    assert (result.weights.drop(index="empty").to_numpy() >= 0).all()


def test_missing_gene_raises_before_work(reference, spatial, quad_model, monkeypatch):
    def fail(task):
        raise AssertionError("no location should be solved")

    monkeypatch.setattr(batch_mod, "_solve_chunk", fail)
    scheduler = BatchScheduler(reference, quad_model)
    with pytest.raises(MissingGene) as info:
        scheduler.fit_full(spatial, gene_set=["g0", "g1", "not_a_gene"])
    assert info.value.genes == ["not_a_gene"]

    partial = SpatialDataset(np.asarray(spatial.counts)[:10], spatial.gene_names[:10], spatial.location_names)
    with pytest.raises(MissingGene):
        scheduler.fit_doublet(partial, gene_set=list(reference.gene_names))


def test_doublet_mode_results(reference, spatial, quad_model):
    result = BatchScheduler(reference, quad_model).fit_doublet(spatial)
    df = result.results_df

    assert df.loc["pureA", "spot_class"] == "singlet"
    assert df.loc["pureA", "first_type"] == "A"
    assert df.loc["mixAB", "spot_class"] == "doublet_certain"
    assert (df.loc["mixAB", "first_type"], df.loc["mixAB", "second_type"]) == ("A", "B")
    assert (df.loc["mixBC", "first_type"], df.loc["mixBC", "second_type"]) == ("B", "C")
    assert df.loc["empty", "spot_class"] == "reject"
    assert df.loc["empty", "status"] == "empty"

    assert result.weights.shape == (5, 4)
    assert result.weights.nnz <= 2 * 5
    frame = result.weights_frame()
    assert frame.loc["mixAB", "A"] == pytest.approx(df.loc["mixAB", "first_weight"])
    assert frame.loc["pureA", "A"] == 1.0
    np.testing.assert_allclose(frame.drop(index="empty").sum(axis=1), 1.0)
    assert frame.loc["empty"].sum() == 0.0


def test_class_mapping_blocks_pairs(reference, spatial, quad_model):
    mapping = {"A": "epithelial", "B": "epithelial", "C": "immune", "D": "stromal"}
    df = BatchScheduler(reference, quad_model, class_mapping=mapping).fit_doublet(spatial).results_df
    assert df.loc["mixAB", "spot_class"] == "singlet"

    with pytest.raises(ValueError):
        BatchScheduler(reference, quad_model, class_mapping={"A": "x"})


@pytest.mark.parametrize("doublet", [False, True])
def test_worker_count_does_not_change_results(reference, spatial, quad_model, doublet):
    serial = BatchScheduler(reference, quad_model, RCTDConfig(max_workers=1))
    parallel = BatchScheduler(reference, quad_model, RCTDConfig(max_workers=3, chunksize=2))
    if doublet:
        one = serial.fit_doublet(spatial)
        many = parallel.fit_doublet(spatial)
        pd.testing.assert_frame_equal(one.results_df, many.results_df)
        np.testing.assert_array_equal(one.weights.toarray(), many.weights.toarray())
    else:
        one = serial.fit_full(spatial)
        many = parallel.fit_full(spatial)
        pd.testing.assert_frame_equal(one.weights, many.weights)
        pd.testing.assert_series_equal(one.status, many.status)


def test_pool_failure_runs_sequentially(reference, spatial, quad_model, monkeypatch, caplog):
    def no_pool(n_workers):
        raise WorkerPoolUnavailable("process creation is not permitted")

    monkeypatch.setattr(batch_mod, "_make_pool", no_pool)
    with caplog.at_level(logging.WARNING, logger="rctd.batch"):
        result = BatchScheduler(reference, quad_model, RCTDConfig(max_workers=4)).fit_full(spatial)
    assert "running sequentially" in caplog.text
    assert (result.status != "empty").sum() == 4


def test_solver_failures_are_marked_fallback(reference, spatial, quad_model, monkeypatch):
    def broken(*args, **kwargs):
        raise InfeasibleConstraint("constraints are inconsistent, no solution")

    monkeypatch.setattr(solver_mod, "solve_qp", broken)
    result = BatchScheduler(reference, quad_model).fit_full(spatial)
    assert result.status["mixAB"] == "fallback"
    np.testing.assert_allclose(result.weights.loc["mixAB"], 0.25)


def test_iteration_cap_warns(reference, spatial, quad_model):
    config = RCTDConfig(n_iter=1, min_change=1e-300)
    with pytest.warns(NumericNonConvergence):
        result = BatchScheduler(reference, quad_model, config).fit_full(spatial)
    assert not result.converged.drop(index="empty").any()
    assert (result.status.drop(index="empty") == "ok").all()


def test_nnls_failures_do_not_abort_the_batch(reference, spatial, quad_model, monkeypatch):
    def exhausted(*args, **kwargs):
        raise RuntimeError("Maximum number of iterations reached.")

    monkeypatch.setattr(solver_mod, "nnls", exhausted)
    result = BatchScheduler(reference, quad_model, RCTDConfig(solver="nnls")).fit_full(spatial)
    assert (result.status.drop(index="empty") == "fallback").all()
    assert result.status["empty"] == "empty"


def test_doublet_classifier_is_built_once_per_chunk(reference, spatial, quad_model, monkeypatch):
    built = []

    class CountingClassifier(batch_mod.DoubletClassifier):
        def __init__(self, *args, **kwargs):
            built.append(1)
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(batch_mod, "DoubletClassifier", CountingClassifier)
    BatchScheduler(reference, quad_model, RCTDConfig(chunksize=2)).fit_doublet(spatial)
    assert len(built) == 3
