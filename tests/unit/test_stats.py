#!/usr/bin/env python3
"""
Unit tests for NaN-aware statistics.

Tests zero-as-missing means, voxel-wise NaN removal, NaN row insertion
and PCA component scores.
"""

import warnings

import numpy as np
import pytest
from sklearn.decomposition import PCA

from tissuecomp.stats import (
    compartment_mean,
    naninsert,
    nanremove,
    pca_decomposition,
    pca_scores,
    zeros_to_nan,
)


@pytest.fixture
def random_data():
    rng = np.random.default_rng(0)
    return rng.standard_normal((10, 40)) + 5.0


class TestZerosToNan:
    def test_replaces_zeros_only(self):
        data = np.array([[0.0, 1.0], [2.0, 0.0]])
        out = zeros_to_nan(data)
        assert np.isnan(out[0, 0]) and np.isnan(out[1, 1])
        assert out[0, 1] == 1.0

    def test_does_not_modify_input(self):
        data = np.array([[0.0, 1.0]])
        zeros_to_nan(data)
        assert data[0, 0] == 0.0


class TestNanremove:
    def test_removes_columns_with_any_nan(self):
        data = np.array([
            [1.0, np.nan, 3.0, 4.0],
            [1.0, 2.0, 3.0, np.nan],
        ])
        wasnan, cleaned = nanremove(data)
        np.testing.assert_array_equal(wasnan, [False, True, False, True])
        np.testing.assert_array_equal(cleaned, [[1.0, 3.0], [1.0, 3.0]])

    def test_no_nans_keeps_everything(self, random_data):
        wasnan, cleaned = nanremove(random_data)
        assert not wasnan.any()
        np.testing.assert_array_equal(cleaned, random_data)

    def test_rejects_non_2d(self):
        with pytest.raises(ValueError, match="2D"):
            nanremove(np.zeros(5))


class TestNaninsert:
    def test_inserts_rows(self):
        removed = np.array([False, True, False, True])
        values = np.array([[1.0, 2.0], [3.0, 4.0]])
        out = naninsert(removed, values)
        assert out.shape == (4, 2)
        np.testing.assert_array_equal(out[0], [1.0, 2.0])
        np.testing.assert_array_equal(out[2], [3.0, 4.0])
        assert np.isnan(out[1]).all() and np.isnan(out[3]).all()

    def test_1d_values(self):
        out = naninsert(np.array([True, False]), np.array([7.0]))
        assert np.isnan(out[0])
        assert out[1] == 7.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="not removed"):
            naninsert(np.array([False, False, True]), np.array([1.0]))


class TestCompartmentMean:
    def test_ignores_zeros(self):
        data = np.array([
            [2.0, 0.0, 4.0],
            [1.0, 1.0, 1.0],
        ])
        np.testing.assert_allclose(compartment_mean(data), [3.0, 1.0])

    def test_ignores_nans(self):
        data = np.array([[np.nan, 6.0, 2.0]])
        np.testing.assert_allclose(compartment_mean(data), [4.0])

    def test_all_missing_row_is_nan_without_warning(self):
        data = np.array([
            [0.0, np.nan],
            [1.0, 3.0],
        ])
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            means = compartment_mean(data)
        assert np.isnan(means[0])
        assert means[1] == 2.0

    def test_no_voxels(self):
        means = compartment_mean(np.zeros((3, 0)))
        assert means.shape == (3,)
        assert np.isnan(means).all()


class TestPCA:
    def test_scores_shape(self, random_data):
        scores = pca_scores(random_data, n_components=5)
        assert scores.shape == (10, 5)

    def test_matches_sklearn(self, random_data):
        scores = pca_scores(random_data, n_components=3)
        expected = PCA(n_components=3, svd_solver="full").fit_transform(random_data)
        np.testing.assert_allclose(np.abs(scores), np.abs(expected), atol=1e-10)

    def test_scores_are_centred(self, random_data):
        scores = pca_scores(random_data, n_components=4)
        np.testing.assert_allclose(scores.mean(axis=0), 0.0, atol=1e-10)

    def test_capped_by_observations(self):
        rng = np.random.default_rng(1)
        data = rng.standard_normal((3, 50))
        result = pca_decomposition(data, n_components=5)
        # Centring leaves n_images - 1 components
        assert result["scores"].shape == (3, 2)
        assert result["explained_variance_ratio"].shape == (2,)
        assert result["loadings"].shape == (50, 2)

    def test_capped_by_voxels(self):
        rng = np.random.default_rng(2)
        data = rng.standard_normal((20, 2))
        assert pca_scores(data, n_components=5).shape == (20, 2)

    def test_no_components_available(self):
        assert pca_scores(np.ones((1, 10)), n_components=5).shape == (1, 0)
        assert pca_scores(np.zeros((8, 0)), n_components=5).shape == (8, 0)

    def test_explained_variance_decreasing(self, random_data):
        ratios = pca_decomposition(random_data, n_components=5)["explained_variance_ratio"]
        assert np.all(np.diff(ratios) <= 1e-12)
        assert ratios.sum() <= 1.0 + 1e-12

    def test_rejects_nan(self):
        data = np.ones((4, 4))
        data[0, 0] = np.nan
        with pytest.raises(ValueError, match="NaN"):
            pca_scores(data)

    def test_rejects_bad_component_count(self, random_data):
        with pytest.raises(ValueError, match="n_components"):
            pca_scores(random_data, n_components=0)

    def test_constant_voxels_give_zero_scores(self):
        data = np.tile(np.linspace(1.0, 2.0, 10), (6, 1))
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = pca_decomposition(data, n_components=5)
        np.testing.assert_array_equal(result["scores"], np.zeros((6, 5)))
        np.testing.assert_array_equal(result["explained_variance_ratio"], np.zeros(5))
        assert np.isfinite(result["loadings"]).all()
