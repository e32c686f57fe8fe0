from __future__ import annotations

import numpy as np
import pytest

from rgbdcalib.core.depth_models import (
    GLOBAL_SIZE,
    GlobalModel,
    LocalModel,
    global_corrected_depth,
    global_design_matrix,
    reconcile_global_polynomial,
)
from rgbdcalib.core.distortion import Polynomial, poly_eval


def test_polynomial_min_degree():
    p = Polynomial(coeffs=np.array([1.0, 0.5]), min_degree=1)
    assert p.degree == 2
    assert p(2.0) == pytest.approx(1.0 * 2.0 + 0.5 * 4.0)
    assert poly_eval(np.array([0.0, 0.0, 0.0035]), 2.0) == pytest.approx(0.014)


def test_reconciled_corner_matches_sum_rule():
    rng = np.random.default_rng(0)
    c00, c01, c10 = (rng.normal(size=GLOBAL_SIZE) for _ in range(3))
    c11 = reconcile_global_polynomial(c00, c01, c10)
    np.testing.assert_allclose(c11, c01 + c10 - c00, atol=1e-12)


def test_identity_models_leave_depth_unchanged():
    rng = np.random.default_rng(1)
    u = rng.uniform(0, 159, size=200)
    v = rng.uniform(0, 119, size=200)
    z = rng.uniform(0.5, 4.0, size=200)

    local = LocalModel.identity((160, 120), (16, 16))
    glob = GlobalModel.identity((160, 120))
    np.testing.assert_allclose(local.corrected_depth(u, v, z), z, atol=1e-12)
    np.testing.assert_allclose(glob.corrected_depth(u, v, z), z, atol=1e-12)

    pts = np.stack([0.1 * z, -0.2 * z, z], axis=-1)
    np.testing.assert_allclose(glob.undistort_points(pts, u, v), pts, atol=1e-12)


def test_local_model_bins_and_scaling_along_line_of_sight():
    local = LocalModel.identity((100, 50), (16, 16))
    assert local.bins_shape == (4, 7)
    iy, ix = local.bin_index(np.array([0.0, 99.0, 150.0]), np.array([0.0, 49.0, -3.0]))
    np.testing.assert_array_equal(ix, [0, 6, 6])
    np.testing.assert_array_equal(iy, [0, 3, 0])

    local.coeffs[:, :] = [0.01, 1.02, 0.0]
    pts = np.array([[0.2, 0.1, 2.0]])
    out = local.undistort_points(pts, np.array([10.0]), np.array([10.0]))
    np.testing.assert_allclose(out[0, 2], 0.01 + 1.02 * 2.0)
    np.testing.assert_allclose(out[0, :2] / out[0, 2], pts[0, :2] / pts[0, 2])


def test_global_free_parameters_roundtrip_and_design_matrix():
    rng = np.random.default_rng(2)
    model = GlobalModel.identity((640, 480))
    params = model.free_parameters() + rng.normal(scale=0.01, size=3 * GLOBAL_SIZE)
    model.set_free_parameters(params)
    np.testing.assert_allclose(model.free_parameters(), params)
    np.testing.assert_allclose(model.coeffs[1, 1], model.coeffs[0, 1] + model.coeffs[1, 0] - model.coeffs[0, 0], atol=1e-12)

    u = rng.uniform(0, 639, size=50)
    v = rng.uniform(0, 479, size=50)
    z = rng.uniform(0.5, 4.0, size=50)
    A = global_design_matrix(u, v, z, model.image_size)
    np.testing.assert_allclose(A @ model.coeffs.reshape(-1), global_corrected_depth(u, v, z, model.coeffs, model.image_size))


def test_global_model_corners_use_their_own_polynomial():
    model = GlobalModel.identity((101, 51))
    c = model.coeffs.copy()
    c[1, 0] = [1.1, 0.0]
    model.coeffs = c
    z = np.array([2.0])
    assert model.corrected_depth(np.array([0.0]), np.array([0.0]), z)[0] == pytest.approx(2.0)
    assert model.corrected_depth(np.array([100.0]), np.array([0.0]), z)[0] == pytest.approx(2.2)
    assert model.corrected_depth(np.array([50.0]), np.array([0.0]), z)[0] == pytest.approx(2.1)
