"""Agreement of full-mode fits with known location labels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import numpy as np
import pandas as pd

from .batch import FullModeResult


@dataclass(frozen=True)
class LabelComparison:
    predicted: pd.Series
    confusion: pd.DataFrame
    accuracy: float


def predicted_labels(result: FullModeResult) -> pd.Series:
    """Cell type with the largest weight at every location; NaN where nothing was fitted."""
    weights = result.weights
    fitted = weights.dropna(how="all")
    return fitted.idxmax(axis=1).reindex(weights.index).rename("predicted")


def compare_labels(result: FullModeResult, true_labels: Mapping[str, str] | pd.Series) -> LabelComparison:
    """Confusion matrix (predicted rows, true columns) over labelled, fitted locations."""
    cell_types = list(result.weights.columns)
    truth = pd.Series(true_labels, dtype=object).astype(str)
    unknown = sorted(set(truth) - set(cell_types))
    if unknown:
        raise ValueError(f"Labels not among the reference cell types: {', '.join(unknown)}")

    predicted = predicted_labels(result)
    keep = [loc for loc in predicted.index if loc in truth.index and pd.notna(predicted[loc])]
    if not keep:
        raise ValueError("No fitted location carries a known label.")
    confusion = pd.crosstab(
        pd.Categorical(predicted[keep], categories=cell_types),
        pd.Categorical(truth[keep], categories=cell_types),
        rownames=["predicted"],
        colnames=["true"],
        dropna=False,
    )
    accuracy = float(np.trace(confusion.to_numpy()) / len(keep))
    return LabelComparison(predicted, confusion, accuracy)
