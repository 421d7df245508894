"""Geometric solvers for visual SLAM: EPnP, RANSAC PnP, Sim3, settings and viewer control."""

__version__ = "0.1.0"

__all__ = [
    "epnp",
    "pnp_ransac",
    "sim3_solver",
    "settings",
    "viewer_control",
]