import numpy as np
import pytest

from slamgeom.epnp import (
    EPnP,
    Intrinsics,
    SingularMatrixError,
    mat_to_quat,
    qr_solve,
    relative_error,
)

INTRINSICS = Intrinsics(fu=520.0, fv=515.0, uc=320.0, vc=240.0)


def _axis_angle(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + np.sin(angle) * k + (1 - np.cos(angle)) * (k @ k)


def _scene(seed=0, n=30):
    rng = np.random.default_rng(seed)
    world = rng.uniform(-1.0, 1.0, size=(n, 3))
    rotation = _axis_angle(rng.normal(size=3), rng.uniform(0.1, 0.6))
    translation = np.array([0.1, -0.2, 5.0])
    image = INTRINSICS.project(world @ rotation.T + translation)
    return world, image, rotation, translation


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_compute_pose_recovers_true_pose(seed):
    world, image, rotation, translation = _scene(seed)
    r_est, t_est, error = EPnP(INTRINSICS).compute_pose(world, image)
    assert np.allclose(r_est, rotation, atol=1e-6)
    assert np.allclose(t_est, translation, atol=1e-5)
    assert error < 1e-4


def test_compute_pose_rotation_is_proper():
    world, image, _, _ = _scene(5)
    r_est, _, _ = EPnP(INTRINSICS).compute_pose(world, image)
    assert np.allclose(r_est @ r_est.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(r_est) == pytest.approx(1.0)


def test_compute_pose_minimal_set():
    world, image, rotation, translation = _scene(7, n=4)
    r_est, t_est, _ = EPnP(INTRINSICS).compute_pose(world, image)
    rot_err, transl_err = relative_error(rotation, translation, r_est, t_est)
    assert rot_err < 1e-4
    assert transl_err < 1e-4


def test_compute_pose_with_noise_is_close():
    world, image, rotation, translation = _scene(9, n=60)
    rng = np.random.default_rng(42)
    noisy = image + rng.normal(scale=0.5, size=image.shape)
    r_est, t_est, error = EPnP(INTRINSICS).compute_pose(world, noisy)
    rot_err, transl_err = relative_error(rotation, translation, r_est, t_est)
    assert rot_err < 0.02
    assert transl_err < 0.05
    assert error < 2.0


def test_compute_pose_rejects_mismatched_counts():
    world, image, _, _ = _scene(0)
    with pytest.raises(ValueError):
        EPnP(INTRINSICS).compute_pose(world, image[:-1])


def test_compute_pose_rejects_bad_shape():
    with pytest.raises(ValueError):
        EPnP(INTRINSICS).compute_pose(np.zeros((5, 2)), np.zeros((5, 2)))


def test_reprojection_error_zero_for_true_pose():
    world, image, rotation, translation = _scene(3)
    error = EPnP(INTRINSICS).reprojection_error(world, image, rotation, translation)
    assert error == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_of_constant_shift():
    world, image, rotation, translation = _scene(4)
    shifted = image + np.array([3.0, 4.0])
    error = EPnP(INTRINSICS).reprojection_error(world, shifted, rotation, translation)
    assert error == pytest.approx(5.0)


def test_intrinsics_from_matrix_round_trip():
    k = np.array([[INTRINSICS.fu, 0, INTRINSICS.uc], [0, INTRINSICS.fv, INTRINSICS.vc], [0, 0, 1]])
    assert Intrinsics.from_matrix(k) == INTRINSICS


def test_intrinsics_from_matrix_rejects_wrong_shape():
    with pytest.raises(ValueError):
        Intrinsics.from_matrix(np.eye(4))


def test_project_optical_axis_hits_principal_point():
    pixels = INTRINSICS.project([[0.0, 0.0, 2.0]])
    assert np.allclose(pixels, [[INTRINSICS.uc, INTRINSICS.vc]])


def test_qr_solve_matches_least_squares():
    rng = np.random.default_rng(1)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(a, b, rcond=None)[0]
    assert np.allclose(qr_solve(a, b), expected)


def test_qr_solve_does_not_modify_inputs():
    rng = np.random.default_rng(2)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.ones((6, 4))
    a[:, 2] = 0.0
    with pytest.raises(SingularMatrixError):
        qr_solve(a, np.ones(6))


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("angle", [0.3, 1.5, 2.9, 3.1])
def test_mat_to_quat_unit_norm_and_axis(angle):
    axis = np.array([1.0, 2.0, -0.5])
    q = mat_to_quat(_axis_angle(axis, angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)
    vector = q[:3]
    cross = np.cross(vector, axis)
    assert np.allclose(cross, 0.0, atol=1e-9)


def test_relative_error_identical_poses():
    rotation = _axis_angle([0, 1, 0], 0.7)
    translation = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(rotation, translation, rotation, translation)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_grows_with_translation_offset():
    rotation = np.eye(3)
    translation = np.array([0.0, 0.0, 2.0])
    _, small = relative_error(rotation, translation, rotation, translation + [0.0, 0.0, 0.1])
    _, large = relative_error(rotation, translation, rotation, translation + [0.0, 0.0, 0.5])
    assert 0.0 < small < large