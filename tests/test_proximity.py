"""Tests for local / distant pair classification."""

import numpy as np
import pytest

from meqtl.io.positions import PositionIndex
from meqtl.scan.proximity import (
    DISTANT,
    EXCLUDED,
    LOCAL,
    ProximityClassifier,
    classify_block,
    classify_pair,
)

pytestmark = pytest.mark.tier0


class TestClassifyPair:
    def test_inside_interval(self):
        assert classify_pair(("chr1", 150, 150), ("chr1", 100, 200), 0) == "local"

    @pytest.mark.parametrize("pos", [50, 250])
    def test_boundaries_inclusive(self, pos):
        assert classify_pair(("chr1", pos, pos), ("chr1", 100, 200), 50) == "local"

    @pytest.mark.parametrize("pos", [49, 251])
    def test_just_outside(self, pos):
        assert classify_pair(("chr1", pos, pos), ("chr1", 100, 200), 50) == "distant"

    def test_other_chromosome_is_distant(self):
        assert classify_pair(("chr2", 150, 150), ("chr1", 100, 200), 10**9) == "distant"

    def test_chromosome_names_compared_as_strings(self):
        assert classify_pair(("1", 150, 150), ("chr1", 100, 200), 0) == "distant"

    def test_unknown_position(self):
        assert classify_pair(None, ("chr1", 100, 200), 0) is None
        assert classify_pair(("chr1", 1, 1), None, 0) is None


def test_classify_block_matches_pairwise():
    variants = PositionIndex(
        {
            "v1": ("chr1", 1000, 1000),
            "v2": ("chr1", 5000, 5000),
            "v3": ("chr2", 1000, 1000),
        }
    )
    traits = PositionIndex(
        {"g1": ("chr1", 1100, 1200), "g2": ("chr2", 3000, 4000)}
    )
    v_ids = ("v1", "v2", "v3", "v4")
    t_ids = ("g1", "g2", "g3")

    codes = classify_block(variants.lookup(v_ids), traits.lookup(t_ids), 500)

    expected = {"local": LOCAL, "distant": DISTANT, None: EXCLUDED}
    for i, v in enumerate(v_ids):
        for j, t in enumerate(t_ids):
            category = classify_pair(variants.get(v), traits.get(t), 500)
            assert codes[i, j] == expected[category], (v, t)
    assert codes.dtype == np.int8
    assert codes[0, 0] == LOCAL
    assert codes[2, 1] == DISTANT
    assert (codes[3] == EXCLUDED).all()
    assert (codes[:, 2] == EXCLUDED).all()


class TestProximityClassifier:
    def test_classify(self):
        classifier = ProximityClassifier(
            PositionIndex({"v": ("chr1", 300, 300)}),
            PositionIndex({"g": ("chr1", 100, 200)}),
            radius=100,
        )
        assert classifier.classify("v", "g") == "local"
        assert classifier.classify("v", "missing") is None

        codes = classifier.classify_block(
            classifier.lookup_variants(("v",)), classifier.lookup_traits(("g",))
        )
        assert codes.tolist() == [[LOCAL]]

    def test_negative_radius(self):
        with pytest.raises(ValueError, match="non-negative"):
            ProximityClassifier(PositionIndex(), PositionIndex(), radius=-1)
