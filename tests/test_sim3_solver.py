import random

import numpy as np
import pytest

from slamgeom.epnp import Intrinsics
from slamgeom.sim3_solver import (
    Sim3Match,
    Sim3Result,
    Sim3Solver,
    Sim3Transform,
    camera_to_image,
    compute_sim3,
    project,
)

K = Intrinsics(fu=500.0, fv=500.0, uc=320.0, vc=240.0)


def _axis_angle(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    kx = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + np.sin(angle) * kx + (1 - np.cos(angle)) * kx @ kx


def _truth(scale=1.5):
    return Sim3Transform(
        rotation=_axis_angle([0.2, 1.0, 0.1], 0.15),
        translation=np.array([0.3, -0.1, 0.2]),
        scale=scale,
    )


def _points1(n, seed=0):
    rs = np.random.default_rng(seed)
    xy = rs.uniform(-1.5, 1.5, size=(n, 2))
    z = rs.uniform(4.0, 8.0, size=(n, 1))
    return np.hstack((xy, z))


def _scene(n=20, outliers=(), scale=1.5):
    t12 = _truth(scale)
    p1 = _points1(n)
    p2 = t12.inverse().apply(p1)
    for i in outliers:
        p2[i] += np.array([0.8, -0.6, 0.0])
    return t12, p1, p2


def test_compute_sim3_recovers_exact_transform():
    t12, p1, p2 = _scene(10)
    est = compute_sim3(p1, p2)
    assert est.scale == pytest.approx(t12.scale, rel=1e-9)
    np.testing.assert_allclose(est.rotation, t12.rotation, atol=1e-9)
    np.testing.assert_allclose(est.translation, t12.translation, atol=1e-9)


def test_compute_sim3_from_three_points():
    t12, p1, p2 = _scene(3)
    est = compute_sim3(p1, p2)
    np.testing.assert_allclose(est.apply(p2), p1, atol=1e-9)


def test_compute_sim3_fixed_scale_is_rigid():
    t12, p1, p2 = _scene(8, scale=1.0)
    est = compute_sim3(p1, p2, fix_scale=True)
    assert est.scale == 1.0
    np.testing.assert_allclose(est.rotation @ est.rotation.T, np.eye(3), atol=1e-9)
    np.testing.assert_allclose(est.apply(p2), p1, atol=1e-9)


def test_compute_sim3_identity():
    p = _points1(5)
    est = compute_sim3(p, p)
    np.testing.assert_allclose(est.matrix, np.eye(4), atol=1e-9)


def test_compute_sim3_rejects_shape_mismatch():
    with pytest.raises(ValueError):
        compute_sim3(_points1(4), _points1(5))


def test_compute_sim3_degenerate_scale():
    p = np.ones((3, 3))
    with pytest.raises(ValueError):
        compute_sim3(p, p)


def test_inverse_composes_to_identity():
    t = _truth()
    p = _points1(6)
    np.testing.assert_allclose(t.inverse().apply(t.apply(p)), p, atol=1e-9)
    np.testing.assert_allclose(t.matrix @ t.inverse().matrix, np.eye(4), atol=1e-9)


def test_project_matches_camera_to_image_of_applied_points():
    t = _truth()
    p = _points1(6)
    expected = camera_to_image(t.apply(p), K)
    np.testing.assert_allclose(project(p, t, K), expected, atol=1e-9)
    np.testing.assert_allclose(project(p, t.matrix, K), expected, atol=1e-9)


def test_camera_to_image_principal_point_and_matrix_intrinsics():
    kmat = [[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]]
    out = camera_to_image([[0.0, 0.0, 2.0]], kmat)
    np.testing.assert_allclose(out, [[320.0, 240.0]])


def test_project_rejects_bad_matrix():
    with pytest.raises(ValueError):
        project(_points1(2), np.eye(3), K)


def _matches(p1, p2, offset=0):
    return [Sim3Match(index=i + offset, point1=tuple(a), point2=tuple(b)) for i, (a, b) in enumerate(zip(p1, p2))]


def test_solver_finds_transform_and_inliers_with_outliers():
    outliers = (2, 7, 11, 15)
    t12, p1, p2 = _scene(20, outliers=outliers)
    solver = Sim3Solver(_matches(p1, p2, offset=1), 22, K, K, False, random.Random(3))
    result = solver.find()
    assert result.found
    assert result.transform.scale == pytest.approx(t12.scale, rel=1e-6)
    np.testing.assert_allclose(result.transform.rotation, t12.rotation, atol=1e-6)
    np.testing.assert_allclose(result.transform.translation, t12.translation, atol=1e-6)
    expected = [False] * 22
    for i in range(20):
        if i not in outliers:
            expected[i + 1] = True
    assert result.inliers == tuple(expected)
    assert result.n_inliers == 20 - len(outliers)


def test_solver_fixed_scale():
    t12, p1, p2 = _scene(12, scale=1.0)
    solver = Sim3Solver(_matches(p1, p2), 12, K, K, True, random.Random(1))
    result = solver.find()
    assert result.found
    assert result.transform.scale == 1.0
    assert result.n_inliers == 12


def test_solver_too_few_matches_reports_no_more():
    _, p1, p2 = _scene(4)
    solver = Sim3Solver(_matches(p1, p2), 4, K, K, False, random.Random(0))
    result = solver.iterate(5)
    assert isinstance(result, Sim3Result)
    assert result.transform is None
    assert result.no_more is True
    assert result.inliers == (False, False, False, False)


def test_solver_all_outliers_exhausts_budget():
    rs = np.random.default_rng(5)
    p1 = _points1(10)
    p2 = _points1(10, seed=9) + rs.uniform(-1, 1, size=(10, 3)) * np.array([1, 1, 0])
    solver = Sim3Solver(_matches(p1, p2), 10, K, K, False, random.Random(2))
    solver.set_ransac_parameters(0.99, 9, 20)
    result = solver.find()
    assert result.transform is None
    assert result.no_more is True
    assert solver.iterations_done == solver.max_iterations


def test_set_ransac_parameters_min_inliers_equal_to_count():
    _, p1, p2 = _scene(8)
    solver = Sim3Solver(_matches(p1, p2), 8, K, K, False, random.Random(0))
    solver.set_ransac_parameters(0.99, 8, 300)
    assert solver.max_iterations == 1
    assert solver.iterations_done == 0


def test_set_ransac_parameters_capped_by_max_iterations():
    _, p1, p2 = _scene(20)
    solver = Sim3Solver(_matches(p1, p2), 20, K, K, False, random.Random(0))
    solver.set_ransac_parameters(0.99, 6, 5)
    assert solver.max_iterations == 5


def test_iterate_budget_respected():
    _, p1, p2 = _scene(20)
    solver = Sim3Solver(_matches(p1, p2), 20, K, K, False, random.Random(0))
    solver.set_ransac_parameters(0.99, 30, 300)
    result = solver.iterate(3)
    assert result.no_more is True
    assert solver.iterations_done == 0


def test_solver_rejects_index_out_of_range():
    with pytest.raises(ValueError):
        Sim3Solver([Sim3Match(index=5, point1=(0, 0, 1), point2=(0, 0, 1))], 3, K, K)


def test_solver_rejects_negative_match_count():
    with pytest.raises(ValueError):
        Sim3Solver([], -1, K, K)