"""RANSAC similarity transform (Sim3) between two keyframes' 3D points."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

import numpy as np

from slamgeom.epnp import Intrinsics

# Chi-square value at 95% for two degrees of freedom, scaled by level sigma.
_CHI2_TWO_DOF = 9.210
_MIN_SET = 3

IntrinsicsLike = Union[Intrinsics, np.ndarray, list]


def _as_intrinsics(k: IntrinsicsLike) -> Intrinsics:
    if isinstance(k, Intrinsics):
        return k
    return Intrinsics.from_matrix(k)


def _as_points(points) -> np.ndarray:
    pts = np.atleast_2d(np.asarray(points, dtype=float))
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError("points must be an N x 3 array")
    return pts


@dataclass(frozen=True, eq=False)
class Sim3Transform:
    """Similarity transform ``x -> scale * rotation @ x + translation``."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float = 1.0

    @property
    def matrix(self) -> np.ndarray:
        """4x4 homogeneous matrix with ``scale * rotation`` in the upper block."""
        m = np.eye(4)
        m[:3, :3] = self.scale * np.asarray(self.rotation, dtype=float)
        m[:3, 3] = np.asarray(self.translation, dtype=float).reshape(3)
        return m

    def inverse(self) -> "Sim3Transform":
        """The transform that undoes this one."""
        r_inv = np.asarray(self.rotation, dtype=float).T
        s_inv = 1.0 / self.scale
        t_inv = -s_inv * (r_inv @ np.asarray(self.translation, dtype=float).reshape(3))
        return Sim3Transform(rotation=r_inv, translation=t_inv, scale=s_inv)

    def apply(self, points) -> np.ndarray:
        """Transform N x 3 points."""
        pts = _as_points(points)
        return self.scale * pts @ np.asarray(self.rotation, dtype=float).T + np.asarray(
            self.translation, dtype=float
        ).reshape(3)


@dataclass(frozen=True)
class Sim3Match:
    """A pair of matched map points, each in its own keyframe's camera frame.

    ``index`` is the position of the match in keyframe 1's match list;
    ``sigma2_1`` and ``sigma2_2`` are the squared scale uncertainties of the
    observing keypoints in keyframes 1 and 2.
    """

    index: int
    point1: tuple[float, float, float]
    point2: tuple[float, float, float]
    sigma2_1: float = 1.0
    sigma2_2: float = 1.0


@dataclass
class Sim3Result:
    """Outcome of a batch of RANSAC iterations.

    ``transform`` maps keyframe-2 camera coordinates into keyframe 1 (T12),
    or is None when no transform was accepted. ``inliers`` is indexed like
    keyframe 1's match list.
    """

    transform: Optional[Sim3Transform] = None
    inliers: tuple[bool, ...] = field(default_factory=tuple)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.transform is not None


def compute_sim3(points1, points2, fix_scale: bool = False) -> Sim3Transform:
    """Closed-form transform mapping ``points2`` onto ``points1`` (Horn, unit quaternions).

    With ``fix_scale`` the scale is held at 1 (rigid transform).
    """
    p1 = _as_points(points1)
    p2 = _as_points(points2)
    if p1.shape != p2.shape:
        raise ValueError("point sets must have the same shape")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    m = pr2.T @ pr1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array([
        [n11, n12, n13, n14],
        [n12, n22, n23, n24],
        [n13, n23, n33, n34],
        [n14, n24, n34, n44],
    ])

    _, eigenvectors = np.linalg.eigh(n)
    w, x, y, z = eigenvectors[:, -1]
    rotation = np.array([
        [w * w + x * x - y * y - z * z, 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), w * w - x * x + y * y - z * z, 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), w * w - x * x - y * y + z * z],
    ])

    rotated = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        den = float(np.sum(rotated ** 2))
        if den == 0.0:
            raise ValueError("points are degenerate: scale is undefined")
        scale = float(np.sum(pr1 * rotated)) / den

    translation = o1 - scale * rotation @ o2
    return Sim3Transform(rotation=rotation, translation=translation, scale=scale)


def project(points, transform, intrinsics: IntrinsicsLike) -> np.ndarray:
    """Transform points with a 4x4 matrix (or Sim3Transform) and project them to pixels."""
    matrix = transform.matrix if isinstance(transform, Sim3Transform) else np.asarray(transform, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError("transform must be a 4x4 matrix")
    pts = _as_points(points)
    camera = pts @ matrix[:3, :3].T + matrix[:3, 3]
    return _as_intrinsics(intrinsics).project(camera)


def camera_to_image(points, intrinsics: IntrinsicsLike) -> np.ndarray:
    """Project camera-frame points to pixels."""
    return _as_intrinsics(intrinsics).project(_as_points(points))


class Sim3Solver:
    """Robust Sim3 between two keyframes from matched map points (RANSAC)."""

    def __init__(
        self,
        matches: Iterable[Sim3Match],
        n_matches: int,
        k1: IntrinsicsLike,
        k2: IntrinsicsLike,
        fix_scale: bool = False,
        rng: Optional[random.Random] = None,
    ):
        if n_matches < 0:
            raise ValueError("n_matches must not be negative")
        self._matches = list(matches)
        for match in self._matches:
            if not 0 <= match.index < n_matches:
                raise ValueError(f"match index {match.index} outside 0..{n_matches - 1}")
        self.n_matches = n_matches
        self.k1 = _as_intrinsics(k1)
        self.k2 = _as_intrinsics(k2)
        self.fix_scale = fix_scale
        self._rng = rng if rng is not None else random.Random()

        n = len(self._matches)
        self._x3d_c1 = np.array([m.point1 for m in self._matches], dtype=float).reshape(n, 3)
        self._x3d_c2 = np.array([m.point2 for m in self._matches], dtype=float).reshape(n, 3)
        self._max_error1 = np.array([_CHI2_TWO_DOF * m.sigma2_1 for m in self._matches], dtype=float)
        self._max_error2 = np.array([_CHI2_TWO_DOF * m.sigma2_2 for m in self._matches], dtype=float)
        self._indices = [m.index for m in self._matches]

        with np.errstate(all="ignore"):
            self._p1_im1 = self.k1.project(self._x3d_c1) if n else np.zeros((0, 2))
            self._p2_im2 = self.k2.project(self._x3d_c2) if n else np.zeros((0, 2))

        self._best_n_inliers = 0
        self._best_inliers = np.zeros(n, dtype=bool)
        self._best: Optional[Sim3Transform] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self._matches)

    def set_ransac_parameters(
        self, probability: float = 0.99, min_inliers: int = 6, max_iterations: int = 300
    ) -> None:
        """Configure RANSAC and reset the iteration count."""
        n = self.n_correspondences
        self.probability = probability
        self.min_inliers = min_inliers

        if n == 0 or min_inliers == n:
            n_iterations = 1
        else:
            epsilon = min_inliers / n
            if epsilon >= 1.0:
                n_iterations = 1
            elif probability >= 1.0 or epsilon <= 0.0:
                n_iterations = max_iterations
            else:
                n_iterations = math.ceil(math.log(1 - probability) / math.log(1 - epsilon ** 3))

        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self.iterations_done = 0

    def _inlier_mask(self, t12: Sim3Transform) -> np.ndarray:
        with np.errstate(all="ignore"):
            p2_im1 = project(self._x3d_c2, t12, self.k1)
            p1_im2 = project(self._x3d_c1, t12.inverse(), self.k2)
            err1 = np.sum((self._p1_im1 - p2_im1) ** 2, axis=1)
            err2 = np.sum((p1_im2 - self._p2_im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _frame_inliers(self, mask: np.ndarray) -> tuple[bool, ...]:
        inliers = [False] * self.n_matches
        for flagged, index in zip(mask, self._indices):
            if flagged:
                inliers[index] = True
        return tuple(inliers)

    def iterate(self, n_iterations: int) -> Sim3Result:
        """Run up to ``n_iterations`` RANSAC iterations."""
        n = self.n_correspondences
        no_inliers = tuple([False] * self.n_matches)
        if n < self.min_inliers or n < _MIN_SET:
            return Sim3Result(inliers=no_inliers, no_more=True)

        current = 0
        while self.iterations_done < self.max_iterations and current < n_iterations:
            current += 1
            self.iterations_done += 1

            available = list(range(n))
            subset = []
            for _ in range(_MIN_SET):
                pick = self._rng.randint(0, len(available) - 1)
                subset.append(available[pick])
                available[pick] = available[-1]
                available.pop()

            try:
                with np.errstate(all="ignore"):
                    t12 = compute_sim3(self._x3d_c1[subset], self._x3d_c2[subset], self.fix_scale)
            except (ValueError, np.linalg.LinAlgError):
                continue
            if not (np.isfinite(t12.scale) and t12.scale != 0.0):
                continue

            mask = self._inlier_mask(t12)
            n_inliers = int(mask.sum())

            if n_inliers >= self._best_n_inliers:
                self._best_inliers = mask.copy()
                self._best_n_inliers = n_inliers
                self._best = t12
                if n_inliers > self.min_inliers:
                    return Sim3Result(
                        transform=t12,
                        inliers=self._frame_inliers(mask),
                        n_inliers=n_inliers,
                    )

        return Sim3Result(
            inliers=no_inliers, no_more=self.iterations_done >= self.max_iterations
        )

    def find(self) -> Sim3Result:
        """Run the full RANSAC budget."""
        return self.iterate(self.max_iterations)