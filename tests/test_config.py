import argparse

import pytest

from rctd import RCTDConfig, SolveMode


@pytest.mark.parametrize(
    "constrain, ols, expected",
    [
        (True, False, SolveMode.CONSTRAINED),
        (False, False, SolveMode.UNCONSTRAINED),
        (True, True, SolveMode.OLS_CONSTRAINED),
        (False, True, SolveMode.OLS_UNCONSTRAINED),
    ],
)
def test_mode_from_flags(constrain, ols, expected):
    mode = SolveMode.from_flags(constrain=constrain, ols=ols)
    assert mode is expected
    assert mode.constrain == constrain
    assert mode.ols == ols


def test_defaults():
    config = RCTDConfig()
    assert config.mode is SolveMode.CONSTRAINED
    assert config.max_workers == 1
    assert config.doublet_threshold == 25.0
    assert config.confidence_threshold == 10.0
    assert config.min_fit_quality is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_workers": 0},
        {"sigma": 0.0},
        {"min_change": 0.0},
        {"n_iter": 0},
        {"doublet_threshold": -1.0},
        {"solver": "cvxopt"},
        {"chunksize": 0},
    ],
)
def test_invalid_values_raise(kwargs):
    with pytest.raises(ValueError):
        RCTDConfig(**kwargs)


def test_from_mapping():
    config = RCTDConfig.from_mapping({"constrain": False, "max_workers": 2})
    assert config.mode is SolveMode.UNCONSTRAINED
    assert config.max_workers == 2
    assert RCTDConfig.from_mapping({"mode": "ols_constrained"}).mode is SolveMode.OLS_CONSTRAINED
    with pytest.raises(ValueError):
        RCTDConfig.from_mapping({"workers": 2})


def test_from_args():
    args = argparse.Namespace(
        constrain=True,
        ols=False,
        num_workers=3,
        sigma=None,
        min_change=1e-4,
        n_iter=10,
        doublet_threshold=20.0,
        confidence_threshold=5.0,
        min_fit_quality=None,
        solver="nnls",
    )
    config = RCTDConfig.from_args(args)
    assert config.mode is SolveMode.CONSTRAINED
    assert config.max_workers == 3
    assert config.sigma == 1.0
    assert config.solver == "nnls"
