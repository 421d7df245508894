"""Efficient Perspective-n-Point (EPnP) camera pose estimation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))

# (first beta, second beta, factor) for each column of the 6x10 L matrix:
# [B11 B12 B22 B13 B23 B33 B14 B24 B34 B44]
_L_TERMS = (
    (0, 0, 1.0),
    (0, 1, 2.0),
    (1, 1, 1.0),
    (0, 2, 2.0),
    (1, 2, 2.0),
    (2, 2, 1.0),
    (0, 3, 2.0),
    (1, 3, 2.0),
    (2, 3, 2.0),
    (3, 3, 1.0),
)

_GAUSS_NEWTON_ITERATIONS = 5


class SingularMatrixError(ArithmeticError):
    """Raised when a linear system has no unique solution."""


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole camera intrinsics: focal lengths and principal point."""

    fu: float
    fv: float
    uc: float
    vc: float

    @classmethod
    def from_matrix(cls, k) -> "Intrinsics":
        """Build intrinsics from a 3x3 calibration matrix."""
        k = np.asarray(k, dtype=float)
        if k.shape != (3, 3):
            raise ValueError(f"calibration matrix must be 3x3, got {k.shape}")
        return cls(fu=float(k[0, 0]), fv=float(k[1, 1]), uc=float(k[0, 2]), vc=float(k[1, 2]))

    def project(self, points) -> np.ndarray:
        """Project camera-frame points (N x 3) to pixel coordinates (N x 2)."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        if pts.shape[1] != 3:
            raise ValueError("points must have three coordinates")
        inv_z = 1.0 / pts[:, 2]
        u = self.uc + self.fu * pts[:, 0] * inv_z
        v = self.vc + self.fv * pts[:, 1] * inv_z
        return np.column_stack((u, v))


def qr_solve(a, b) -> np.ndarray:
    """Solve the least-squares system ``a @ x = b`` by Householder QR.

    Raises SingularMatrixError when a column of ``a`` is entirely zero.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    nr, nc = a.shape
    if b.shape[0] != nr:
        raise ValueError("right-hand side length does not match matrix rows")
    if nr < nc:
        raise ValueError("system has fewer rows than columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        column = a[k:, k]
        eta = np.max(np.abs(column))
        if eta == 0:
            raise SingularMatrixError("matrix is singular")
        column /= eta
        sigma = np.sqrt(np.dot(column, column))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = np.dot(a[k:, k], a[k:, j]) / a1[k]
            a[k:, j] -= tau * a[k:, k]

    # b <- Q^T b
    for j in range(nc):
        tau = np.dot(a[j:, j], b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    # x = R^-1 b
    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - np.dot(a[i, i + 1:nc], x[i + 1:])) / a2[i]
    return x


def mat_to_quat(rotation) -> np.ndarray:
    """Convert a 3x3 rotation matrix to a quaternion ``[x, y, z, w]``."""
    r = np.asarray(rotation, dtype=float)
    if r.shape != (3, 3):
        raise ValueError("rotation must be 3x3")
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / np.sqrt(n4))


def relative_error(r_true, t_true, r_est, t_est) -> tuple[float, float]:
    """Return the relative rotation and translation errors of an estimate."""
    q_true = mat_to_quat(r_true)
    q_est = mat_to_quat(r_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(
        np.linalg.norm(q_true - q_est) / q_norm,
        np.linalg.norm(q_true + q_est) / q_norm,
    )
    t_true = np.asarray(t_true, dtype=float).reshape(3)
    t_est = np.asarray(t_est, dtype=float).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def _choose_control_points(pws: np.ndarray) -> np.ndarray:
    n = len(pws)
    c0 = pws.mean(axis=0)
    centred = pws - c0
    u, dc, _ = np.linalg.svd(centred.T @ centred)
    cws = np.empty((4, 3))
    cws[0] = c0
    for i in range(3):
        cws[i + 1] = c0 + np.sqrt(dc[i] / n) * u[:, i]
    return cws


def _barycentric_coordinates(pws: np.ndarray, cws: np.ndarray) -> np.ndarray:
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    rest = (pws - cws[0]) @ cc_inv.T
    return np.column_stack((1.0 - rest.sum(axis=1), rest))


def _compute_l_6x10(ut: np.ndarray) -> np.ndarray:
    v = ut[[11, 10, 9, 8]].reshape(4, 4, 3)
    dv = np.stack([np.stack([v[i, a] - v[i, b] for a, b in _PAIRS]) for i in range(4)])
    return np.column_stack(
        [factor * np.einsum("ij,ij->i", dv[p], dv[q]) for p, q, factor in _L_TERMS]
    )


def _compute_rho(cws: np.ndarray) -> np.ndarray:
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _PAIRS])


def _betas_approx_1(l: np.ndarray, rho: np.ndarray) -> np.ndarray:
    # [B11 B12 B13 B14]
    b4 = np.linalg.lstsq(l[:, [0, 1, 3, 6]], rho, rcond=None)[0]
    if b4[0] < 0:
        beta0 = np.sqrt(-b4[0])
        return np.array([beta0, -b4[1] / beta0, -b4[2] / beta0, -b4[3] / beta0])
    beta0 = np.sqrt(b4[0])
    return np.array([beta0, b4[1] / beta0, b4[2] / beta0, b4[3] / beta0])


def _leading_betas(b: np.ndarray) -> tuple[float, float]:
    if b[0] < 0:
        beta0 = np.sqrt(-b[0])
        beta1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        beta0 = np.sqrt(b[0])
        beta1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        beta0 = -beta0
    return beta0, beta1


def _betas_approx_2(l: np.ndarray, rho: np.ndarray) -> np.ndarray:
    # [B11 B12 B22]
    b3 = np.linalg.lstsq(l[:, :3], rho, rcond=None)[0]
    beta0, beta1 = _leading_betas(b3)
    return np.array([beta0, beta1, 0.0, 0.0])


def _betas_approx_3(l: np.ndarray, rho: np.ndarray) -> np.ndarray:
    # [B11 B12 B22 B13 B23]
    b5 = np.linalg.lstsq(l[:, :5], rho, rcond=None)[0]
    beta0, beta1 = _leading_betas(b5)
    return np.array([beta0, beta1, b5[3] / beta0, 0.0])


def _gauss_newton(l: np.ndarray, rho: np.ndarray, betas: np.ndarray) -> np.ndarray:
    betas = betas.astype(float).copy()
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        b0, b1, b2, b3 = betas
        a = np.column_stack((
            2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
            l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
            l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
            l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
        ))
        products = np.array([betas[p] * betas[q] for p, q, _ in _L_TERMS])
        residual = rho - l @ products
        try:
            betas += qr_solve(a, residual)
        except SingularMatrixError:
            break
    return betas


def _estimate_rotation_translation(pcs: np.ndarray, pws: np.ndarray):
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation[2] = -rotation[2]
    translation = pc0 - rotation @ pw0
    return rotation, translation


_Approximation = Callable[[np.ndarray, np.ndarray], np.ndarray]


class EPnP:
    """Camera pose from 3D-2D correspondences with the EPnP method."""

    def __init__(self, intrinsics: Intrinsics):
        self.intrinsics = intrinsics

    @staticmethod
    def _validate(world_points, image_points) -> tuple[np.ndarray, np.ndarray]:
        pws = np.atleast_2d(np.asarray(world_points, dtype=float))
        us = np.atleast_2d(np.asarray(image_points, dtype=float))
        if pws.ndim != 2 or pws.shape[1] != 3:
            raise ValueError("world points must be an N x 3 array")
        if us.ndim != 2 or us.shape[1] != 2:
            raise ValueError("image points must be an N x 2 array")
        if len(pws) != len(us):
            raise ValueError("world and image point counts differ")
        if len(pws) == 0:
            raise ValueError("at least one correspondence is required")
        return pws, us

    def _build_m(self, alphas: np.ndarray, us: np.ndarray) -> np.ndarray:
        k = self.intrinsics
        n = len(alphas)
        rows_u = np.zeros((n, 4, 3))
        rows_u[:, :, 0] = alphas * k.fu
        rows_u[:, :, 2] = alphas * (k.uc - us[:, 0])[:, None]
        rows_v = np.zeros((n, 4, 3))
        rows_v[:, :, 1] = alphas * k.fv
        rows_v[:, :, 2] = alphas * (k.vc - us[:, 1])[:, None]
        m = np.empty((2 * n, 12))
        m[0::2] = rows_u.reshape(n, 12)
        m[1::2] = rows_v.reshape(n, 12)
        return m

    def _candidate(self, ut, betas, alphas, pws, us):
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if not np.all(np.isfinite(pcs)):
            return None
        if pcs[0, 2] < 0.0:
            pcs = -pcs
        rotation, translation = _estimate_rotation_translation(pcs, pws)
        error = self.reprojection_error(pws, us, rotation, translation)
        return rotation, translation, error

    def compute_pose(self, world_points, image_points) -> tuple[np.ndarray, np.ndarray, float]:
        """Estimate rotation and translation mapping world points into the camera.

        Returns ``(rotation, translation, mean_reprojection_error)``.
        """
        pws, us = self._validate(world_points, image_points)
        with np.errstate(all="ignore"):
            cws = _choose_control_points(pws)
            alphas = _barycentric_coordinates(pws, cws)
            m = self._build_m(alphas, us)
            u, _, _ = np.linalg.svd(m.T @ m)
            ut = u.T
            l = _compute_l_6x10(ut)
            rho = _compute_rho(cws)

            approximations: tuple[_Approximation, ...] = (
                _betas_approx_1,
                _betas_approx_2,
                _betas_approx_3,
            )
            best = None
            for approximate in approximations:
                betas = _gauss_newton(l, rho, approximate(l, rho))
                candidate = self._candidate(ut, betas, alphas, pws, us)
                if candidate is None:
                    continue
                if best is None or candidate[2] < best[2]:
                    best = candidate
        if best is None:
            raise SingularMatrixError("no finite pose could be computed")
        return best

    def reprojection_error(self, world_points, image_points, rotation, translation) -> float:
        """Mean pixel distance between observed and reprojected points."""
        pws, us = self._validate(world_points, image_points)
        rotation = np.asarray(rotation, dtype=float)
        translation = np.asarray(translation, dtype=float).reshape(3)
        projected = self.intrinsics.project(pws @ rotation.T + translation)
        return float(np.mean(np.linalg.norm(us - projected, axis=1)))