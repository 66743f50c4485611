import numpy as np
import pytest

from rctd import BatchScheduler, compare_labels, predicted_labels


@pytest.fixture
def full_result(reference, spatial, quad_model):
    return BatchScheduler(reference, quad_model).fit_full(spatial)


def test_predicted_labels_take_the_largest_weight(full_result):
    labels = predicted_labels(full_result)
    assert labels["pureA"] == "A"
    assert labels["mixAB"] == "A"
    assert labels["pureD"] == "D"
    assert labels.isna()["empty"]


def test_confusion_matrix_over_labelled_locations(full_result):
    truth = {"pureA": "A", "mixAB": "B", "pureD": "D", "empty": "C"}
    comparison = compare_labels(full_result, truth)

    assert comparison.confusion.shape == (4, 4)
    assert comparison.confusion.to_numpy().sum() == 3
    assert comparison.confusion.loc["A", "A"] == 1
    assert comparison.confusion.loc["A", "B"] == 1
    assert comparison.confusion.loc["D", "D"] == 1
    assert comparison.accuracy == pytest.approx(2 / 3)
    np.testing.assert_array_equal(comparison.confusion.loc["C"].to_numpy(), 0)


def test_unknown_labels_are_rejected(full_result):
    with pytest.raises(ValueError):
        compare_labels(full_result, {"pureA": "Z"})
    with pytest.raises(ValueError):
        compare_labels(full_result, {"empty": "A"})
