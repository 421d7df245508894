"""RANSAC camera pose estimation from 3D-2D matches using EPnP hypotheses."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from slamgeom.epnp import EPnP, Intrinsics, SingularMatrixError


@dataclass(frozen=True)
class Correspondence:
    """A map point matched to a keypoint.

    ``index`` is the position of the keypoint in the frame's match list,
    ``sigma2`` the squared scale uncertainty of the keypoint's pyramid level.
    """

    index: int
    world_point: tuple[float, float, float]
    image_point: tuple[float, float]
    sigma2: float = 1.0


@dataclass
class PnPResult:
    """Outcome of a batch of RANSAC iterations.

    ``pose`` is a 4x4 world-to-camera transform, or None when no pose was
    found. ``inliers`` is indexed like the frame's match list and is empty
    when there is no pose. ``no_more`` tells that the iteration budget is
    spent.
    """

    pose: Optional[np.ndarray] = None
    inliers: tuple[bool, ...] = field(default_factory=tuple)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None

    @property
    def rotation(self) -> Optional[np.ndarray]:
        return None if self.pose is None else self.pose[:3, :3].copy()

    @property
    def translation(self) -> Optional[np.ndarray]:
        return None if self.pose is None else self.pose[:3, 3].copy()


def _make_pose(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


class PnPSolver:
    """Robust camera pose from 3D-2D correspondences (EPnP inside RANSAC)."""

    def __init__(
        self,
        correspondences: Iterable[Correspondence],
        n_matches: int,
        intrinsics: Intrinsics,
        rng: Optional[random.Random] = None,
    ):
        self._correspondences = list(correspondences)
        if n_matches < 0:
            raise ValueError("n_matches must not be negative")
        for c in self._correspondences:
            if not 0 <= c.index < n_matches:
                raise ValueError(f"correspondence index {c.index} outside 0..{n_matches - 1}")
        self.n_matches = n_matches
        self.intrinsics = intrinsics
        self._epnp = EPnP(intrinsics)
        self._rng = rng if rng is not None else random.Random()

        n = len(self._correspondences)
        self._world = np.array([c.world_point for c in self._correspondences], dtype=float).reshape(n, 3)
        self._image = np.array([c.image_point for c in self._correspondences], dtype=float).reshape(n, 2)
        self._sigma2 = np.array([c.sigma2 for c in self._correspondences], dtype=float)
        self._indices = [c.index for c in self._correspondences]

        self.iterations_done = 0
        self._best_inliers = np.zeros(n, dtype=bool)
        self._best_n_inliers = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self._correspondences)

    def set_ransac_parameters(
        self,
        probability: float = 0.99,
        min_inliers: int = 8,
        max_iterations: int = 300,
        min_set: int = 4,
        epsilon: float = 0.4,
        th2: float = 5.991,
    ) -> None:
        """Configure RANSAC, adapting thresholds to the number of correspondences."""
        n = self.n_correspondences
        self.probability = probability
        self.min_set = min_set

        n_min_inliers = max(int(n * epsilon), min_inliers, min_set)
        self.min_inliers = n_min_inliers

        if n > 0 and epsilon < n_min_inliers / n:
            epsilon = n_min_inliers / n
        self.epsilon = epsilon

        if n_min_inliers == n or n == 0 or epsilon >= 1.0:
            n_iterations = 1
        elif probability >= 1.0 or epsilon <= 0.0:
            n_iterations = max_iterations
        else:
            n_iterations = math.ceil(math.log(1 - probability) / math.log(1 - epsilon ** 3))

        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self._max_error = self._sigma2 * th2

    def _inlier_mask(self, rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
        with np.errstate(all="ignore"):
            projected = self.intrinsics.project(self._world @ rotation.T + translation)
            error2 = np.sum((self._image - projected) ** 2, axis=1)
            return error2 < self._max_error

    def _hypothesis(self, subset: list[int]):
        try:
            rotation, translation, _ = self._epnp.compute_pose(
                self._world[subset], self._image[subset]
            )
        except (SingularMatrixError, np.linalg.LinAlgError):
            return None
        return rotation, translation, self._inlier_mask(rotation, translation)

    def _frame_inliers(self, mask: np.ndarray) -> tuple[bool, ...]:
        inliers = [False] * self.n_matches
        for flagged, index in zip(mask, self._indices):
            if flagged:
                inliers[index] = True
        return tuple(inliers)

    def _refine(self) -> Optional[PnPResult]:
        subset = [i for i, flagged in enumerate(self._best_inliers) if flagged]
        hypothesis = self._hypothesis(subset)
        if hypothesis is None:
            return None
        rotation, translation, mask = hypothesis
        n_inliers = int(mask.sum())
        if n_inliers > self.min_inliers:
            return PnPResult(
                pose=_make_pose(rotation, translation),
                inliers=self._frame_inliers(mask),
                n_inliers=n_inliers,
            )
        return None

    def iterate(self, n_iterations: int) -> PnPResult:
        """Run RANSAC iterations and return the pose found, if any."""
        n = self.n_correspondences
        if n < self.min_inliers:
            return PnPResult(no_more=True)

        current = 0
        while self.iterations_done < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations_done += 1

            available = list(range(n))
            subset = []
            for _ in range(self.min_set):
                pick = self._rng.randint(0, len(available) - 1)
                subset.append(available[pick])
                available[pick] = available[-1]
                available.pop()

            hypothesis = self._hypothesis(subset)
            if hypothesis is None:
                continue
            rotation, translation, mask = hypothesis
            n_inliers = int(mask.sum())

            if n_inliers >= self.min_inliers:
                if n_inliers > self._best_n_inliers:
                    self._best_inliers = mask.copy()
                    self._best_n_inliers = n_inliers
                    self._best_pose = _make_pose(rotation, translation)

                refined = self._refine()
                if refined is not None:
                    return refined

        if self.iterations_done >= self.max_iterations:
            if self._best_pose is not None and self._best_n_inliers >= self.min_inliers:
                return PnPResult(
                    pose=self._best_pose.copy(),
                    inliers=self._frame_inliers(self._best_inliers),
                    n_inliers=self._best_n_inliers,
                    no_more=True,
                )
            return PnPResult(no_more=True)
        return PnPResult()

    def find(self) -> PnPResult:
        """Run the full RANSAC budget."""
        return self.iterate(self.max_iterations)