"""
Unit tests for dimension reconciliation.
"""
import math

import pytest
from taskmail.embeddings.dimensions import (
    FILLER_EPSILON,
    cosine_similarity,
    filler_vector,
    reconcile_dimensionality,
)


class TestReconcileDimensionality:
    """Every provider vector comes out with exactly `dim` components."""

    def test_matching_length_unchanged(self):
        assert reconcile_dimensionality([0.1, 0.2, 0.3, 0.4], 4) == [0.1, 0.2, 0.3, 0.4]

    def test_double_length_keeps_even_indices(self):
        """A 1536-wide hosted vector is subsampled into a 768-wide column."""
        vector = [float(i) for i in range(1536)]

        result = reconcile_dimensionality(vector, 768)

        assert len(result) == 768
        assert result[:4] == [0.0, 2.0, 4.0, 6.0]
        assert result[-1] == 1534.0

    def test_short_within_tolerance_is_padded(self):
        result = reconcile_dimensionality([1.0, 2.0, 3.0], 4, tolerance=2)

        assert result == [1.0, 2.0, 3.0, FILLER_EPSILON]

    def test_long_within_tolerance_is_truncated(self):
        result = reconcile_dimensionality([1.0, 2.0, 3.0, 4.0, 5.0], 4, tolerance=2)

        assert result == [1.0, 2.0, 3.0, 4.0]

    def test_outside_tolerance_becomes_filler(self):
        result = reconcile_dimensionality([1.0] * 20, 4, tolerance=2)

        assert result == filler_vector(4)

    def test_non_finite_values_become_filler(self):
        result = reconcile_dimensionality([1.0, math.nan, 3.0, 4.0], 4)

        assert result == filler_vector(4)

    def test_never_returns_zero_vector(self):
        """Padding and filler use a non-zero epsilon so cosine stays defined."""
        for vector in ([], [0.0], [1.0] * 100):
            result = reconcile_dimensionality(vector, 8, tolerance=8)
            assert len(result) == 8
            assert any(v != 0.0 for v in result)

    @pytest.mark.parametrize("length", [1, 3, 4, 5, 8, 9, 40])
    def test_output_length_always_canonical(self, length):
        result = reconcile_dimensionality([0.5] * length, 4, tolerance=1)

        assert len(result) == 4


class TestFillerVector:
    def test_filler_is_constant_epsilon(self):
        assert filler_vector(3, epsilon=0.001) == [0.001, 0.001, 0.001]


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_mismatched_or_zero_vectors(self):
        assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
