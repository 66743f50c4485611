import numpy as np
import pandas as pd
import pytest

from rctd import MissingGene, ReferenceProfile, SpatialDataset, class_codes, shared_genes, validate_gene_set


def test_reference_from_frame_round_trip(reference):
    frame = reference.to_frame()
    again = ReferenceProfile.from_frame(frame)
    assert again.gene_names == reference.gene_names
    assert again.cell_type_names == ("A", "B", "C", "D")
    assert again.n_cell_types == 4
    np.testing.assert_array_equal(again.means, reference.means)


def test_reference_rejects_bad_input():
    with pytest.raises(ValueError):
        ReferenceProfile(np.ones((2, 2)), ["g0", "g1"], ["A"])
    with pytest.raises(ValueError):
        ReferenceProfile(np.ones((2, 2)), ["g0", "g1"], ["A", "A"])
    with pytest.raises(ValueError):
        ReferenceProfile(-np.ones((2, 2)), ["g0", "g1"], ["A", "B"])


def test_reference_is_read_only(reference):
    with pytest.raises(ValueError):
        reference.means[0, 0] = 1.0


def test_restrict_reports_missing_genes(reference):
    rows = reference.restrict(["g3", "g1"])
    np.testing.assert_array_equal(rows, np.asarray(reference.means)[[3, 1]])
    with pytest.raises(MissingGene) as info:
        reference.restrict(["g1", "x1", "x2"])
    assert info.value.genes == ["x1", "x2"]
    assert info.value.source == "reference profile"
    assert "x1" in str(info.value)
    # Still a KeyError for callers that treat it as a lookup failure.
    assert isinstance(info.value, KeyError)


def test_spatial_from_frame_orientation():
    frame = pd.DataFrame([[1, 2, 0], [0, 5, 5]], index=["s1", "s2"], columns=["g0", "g1", "g2"])
    spatial = SpatialDataset.from_frame(frame)
    assert spatial.counts.shape == (3, 2)
    assert spatial.location_names == ("s1", "s2")
    np.testing.assert_array_equal(spatial.n_umi, [3, 10])
    assert spatial.n_locations == 2

    n_umi = pd.Series({"s2": 20.0, "s1": 6.0})
    np.testing.assert_array_equal(SpatialDataset.from_frame(frame, n_umi).n_umi, [6.0, 20.0])


def test_spatial_rejects_mismatched_n_umi():
    with pytest.raises(ValueError):
        SpatialDataset(np.ones((2, 3)), ["g0", "g1"], ["a", "b", "c"], n_umi=np.ones(2))


def test_shared_genes_keep_reference_order(reference):
    spatial = SpatialDataset(np.ones((3, 1)), ["g5", "g2", "other"], ["s"])
    assert shared_genes(reference, spatial) == ["g2", "g5"]
    assert shared_genes(reference, spatial, allowed=["g5"]) == ["g5"]


def test_validate_gene_set(reference, spatial):
    assert validate_gene_set(reference, spatial, ["g1", "g0"]) == ["g1", "g0"]
    with pytest.raises(ValueError):
        validate_gene_set(reference, spatial, [])
    with pytest.raises(ValueError):
        validate_gene_set(reference, spatial, ["g1", "g1"])
    short = SpatialDataset(np.ones((1, 1)), ["g0"], ["s"])
    with pytest.raises(MissingGene) as info:
        validate_gene_set(reference, short, ["g0", "g1"])
    assert info.value.source == "spatial dataset"


def test_class_codes():
    np.testing.assert_array_equal(class_codes(["A", "B", "C"]), [0, 1, 2])
    codes = class_codes(["A", "B", "C"], {"A": "t", "B": "t", "C": "b"})
    assert codes[0] == codes[1] != codes[2]
    frame = pd.DataFrame({"class": ["x", "y", "x"]}, index=["A", "B", "C"])
    codes = class_codes(["A", "B", "C"], frame)
    assert codes[0] == codes[2] != codes[1]
    with pytest.raises(ValueError):
        class_codes(["A", "B"], {"A": "t"})
