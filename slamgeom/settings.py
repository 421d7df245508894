"""Settings files for the SLAM system and the values the viewer takes from them."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Union

import numpy as np
import yaml

_DEFAULT_FPS = 30.0
_DEFAULT_WIDTH = 640
_DEFAULT_HEIGHT = 480


class Sensor(enum.IntEnum):
    """Input sensor of the SLAM system."""

    MONOCULAR = 0
    STEREO = 1
    RGBD = 2


@dataclass(frozen=True)
class ViewerSettings:
    """Display parameters read from a settings file."""

    frame_period_ms: float
    image_width: int
    image_height: int
    viewpoint_x: float
    viewpoint_y: float
    viewpoint_z: float
    viewpoint_f: float


class _SettingsLoader(yaml.SafeLoader):
    """Safe YAML loader that also understands OpenCV matrix nodes."""


def _construct_opencv_matrix(loader: yaml.SafeLoader, node: yaml.Node) -> np.ndarray:
    fields = loader.construct_mapping(node, deep=True)
    try:
        rows = int(fields["rows"])
        cols = int(fields["cols"])
        data = fields["data"]
    except KeyError as exc:
        raise ValueError(f"matrix node lacks field {exc.args[0]!r}") from None
    values = np.asarray(data, dtype=float)
    if values.size != rows * cols:
        raise ValueError(f"matrix data has {values.size} values, expected {rows * cols}")
    return values.reshape(rows, cols)


_SettingsLoader.add_constructor("tag:yaml.org,2002:opencv-matrix", _construct_opencv_matrix)


def parse_settings(text: str) -> dict[str, Any]:
    """Parse the text of a settings file into a flat mapping of keys to values.

    The ``%YAML:1.0`` header written by OpenCV is accepted.
    """
    body = "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("%YAML")
    )
    try:
        data = yaml.load(body, Loader=_SettingsLoader)
    except yaml.YAMLError as exc:
        raise ValueError(f"malformed settings: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("settings must be a mapping of keys to values")
    return {str(key): value for key, value in data.items()}


def load_settings(path: Union[str, Path]) -> dict[str, Any]:
    """Read and parse a settings file.

    Raises FileNotFoundError when the file cannot be opened.
    """
    return parse_settings(Path(path).read_text(encoding="utf-8"))


def _number(values: Mapping[str, Any], key: str) -> float:
    value = values.get(key, 0)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"setting {key!r} is not a number: {value!r}") from None


def viewer_settings(values: Mapping[str, Any]) -> ViewerSettings:
    """Derive viewer parameters from settings; missing numbers count as zero."""
    fps = _number(values, "Camera.fps")
    if fps < 1:
        fps = _DEFAULT_FPS

    width = int(_number(values, "Camera.width"))
    height = int(_number(values, "Camera.height"))
    if width < 1 or height < 1:
        width, height = _DEFAULT_WIDTH, _DEFAULT_HEIGHT

    return ViewerSettings(
        frame_period_ms=1e3 / fps,
        image_width=width,
        image_height=height,
        viewpoint_x=_number(values, "Viewer.ViewpointX"),
        viewpoint_y=_number(values, "Viewer.ViewpointY"),
        viewpoint_z=_number(values, "Viewer.ViewpointZ"),
        viewpoint_f=_number(values, "Viewer.ViewpointF"),
    )