# slamgeom

Geometric building blocks for a feature-based visual SLAM system, written on
top of NumPy.

## Modules

- `slamgeom.epnp`: the EPnP closed-form camera pose solver.
  - `Intrinsics(fu, fv, uc, vc)` holds pinhole intrinsics;
    `Intrinsics.from_matrix(k)` reads them from a 3x3 calibration matrix and
    `project(points)` maps camera-frame points (N x 3) to pixels (N x 2).
  - `EPnP(intrinsics).compute_pose(world_points, image_points)` returns
    `(rotation, translation, mean_reprojection_error)`;
    `reprojection_error(...)` gives the mean pixel distance for any pose.
  - Helpers: `qr_solve(a, b)` (Householder least squares, raises
    `SingularMatrixError` on a zero column), `mat_to_quat(rotation)`
    (quaternion as `[x, y, z, w]`) and `relative_error(r_true, t_true, r_est, t_est)`.
- `slamgeom.pnp_ransac`: `PnPSolver`, EPnP inside RANSAC. It takes
  `Correspondence(index, world_point, image_point, sigma2)` objects, the
  length of the frame's match list and the intrinsics, plus an optional
  `random.Random`. `set_ransac_parameters(probability=0.99, min_inliers=8,
  max_iterations=300, min_set=4, epsilon=0.4, th2=5.991)` adapts the thresholds
  to the number of correspondences; a point is an inlier when its squared
  reprojection error is below `sigma2 * th2`. `iterate(n)` runs a batch of
  iterations and `find()` the whole budget; both return a `PnPResult` with
  `pose` (4x4 world-to-camera, or `None`), `inliers` (indexed like the match
  list), `n_inliers`, `no_more`, and the `found`, `rotation` and
  `translation` properties.
- `slamgeom.sim3_solver`: similarity transforms between two keyframes.
  `compute_sim3(points1, points2, fix_scale=False)` is Horn's closed-form
  method and returns a `Sim3Transform` (`rotation`, `translation`, `scale`,
  with `matrix`, `inverse()` and `apply(points)`). `Sim3Solver(matches,
  n_matches, k1, k2, fix_scale=False, rng=None)` runs RANSAC over
  `Sim3Match` pairs, accepting a point when its reprojection error in both
  images is below `9.210 * sigma2`; `set_ransac_parameters(probability=0.99,
  min_inliers=6, max_iterations=300)`, `iterate(n)` and `find()` return a
  `Sim3Result`. `project(points, transform, intrinsics)` and
  `camera_to_image(points, intrinsics)` project points to pixels.
- `slamgeom.settings`: `parse_settings(text)` and `load_settings(path)` read
  YAML settings files, accepting the `%YAML:1.0` header and
  `opencv-matrix` nodes (returned as NumPy arrays). `viewer_settings(values)`
  derives a `ViewerSettings` (frame period in ms, image size, viewpoint),
  falling back to 30 fps and 640x480 when the values are missing or below 1.
  `Sensor` enumerates `MONOCULAR`, `STEREO` and `RGBD`.
- `slamgeom.viewer_control`: `ViewerControl`, a thread-safe stop/finish
  handshake for a display loop (`request_finish`, `check_finish`,
  `set_finish`, `is_finished`, `request_stop`, `is_stopped`, `stop`,
  `release`). A new control reports the loop as stopped and finished unless
  created with `running=True`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
import numpy as np
from slamgeom.epnp import EPnP, Intrinsics

camera = Intrinsics(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
world = np.random.default_rng(0).uniform(-1.0, 1.0, size=(20, 3)) + [0.0, 0.0, 5.0]
image = camera.project(world)

rotation, translation, error = EPnP(camera).compute_pose(world, image)
```

```python
import random
from slamgeom.pnp_ransac import Correspondence, PnPSolver

matches = [
    Correspondence(index=i, world_point=tuple(p), image_point=tuple(q))
    for i, (p, q) in enumerate(zip(world, image))
]
solver = PnPSolver(matches, len(matches), camera, random.Random(1))
result = solver.find()
if result.found:
    print(result.n_inliers, result.pose)
```

```python
from slamgeom.sim3_solver import compute_sim3

t12 = compute_sim3(points_in_kf1, points_in_kf2)
aligned = t12.apply(points_in_kf2)
```

## What it does not do

This package holds the geometric solvers and small support pieces only. It
does not extract features, track frames, build or store a map, detect loops,
write trajectory files, build occupancy grids or draw anything; a caller
supplies the 3D points, keypoints and calibration itself. There is no
command-line program.