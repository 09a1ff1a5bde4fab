"""Undistortion maps: optimal output camera, remap tables and image remapping.

Remap tables are built by back-projecting every output pixel through the
output camera and projecting the bearing through the input camera. The
tables are consumed by ``cv2.remap``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import cv2
import numpy as np
import torch

from .camera import MINIMUM_DEPTH, Camera, PinholeCamera
from .types import InterpolationMethod, Mat3, UndistortionParams

if TYPE_CHECKING:
    from .unified import UnifiedProjectionCamera

logger = logging.getLogger(__name__)

# Samples per image axis when estimating the undistorted image rectangles.
_RECTANGLE_GRID_SIZE = 9


def _bound(values: np.ndarray, mask: np.ndarray, reduce, fallback: float) -> float:
    return float(reduce(values[mask])) if mask.any() else fallback


def _undistorted_rectangles(
    camera: Camera, undistort_to_pinhole: bool
) -> tuple[tuple[float, float, float, float], tuple[float, float, float, float]]:
    """Inner and outer rectangles of the image border on the undistorted plane.

    Returns:
        inner: ``(x0, y0, x1, y1)`` of the largest rectangle inside the
            undistorted image border.
        outer: ``(x0, y0, x1, y1)`` bounding all undistorted grid points.

    Raises:
        ValueError: If no grid pixel can be undistorted.
    """
    n = _RECTANGLE_GRID_SIZE
    grid_x, grid_y = np.meshgrid(
        np.linspace(0.0, camera.image_width - 1, n),
        np.linspace(0.0, camera.image_height - 1, n),
    )
    pixels = np.stack([grid_x.ravel(), grid_y.ravel()], axis=1)  # (n*n, 2)
    bearings, valid = camera.back_project_keypoints(pixels)  # (n*n, 3), (n*n,)

    if undistort_to_pinhole:
        denom = bearings[:, 2]
        valid = valid & (denom > MINIMUM_DEPTH)
    else:
        xi = camera.xi  # type: ignore[attr-defined]
        denom = bearings[:, 2] + xi * np.linalg.norm(bearings, axis=1)
        valid = valid & (denom > 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        points = bearings[:, :2] / denom[:, None]
    valid = valid & np.all(np.isfinite(points), axis=1)

    if not valid.any():
        raise ValueError("No pixel of the input camera could be undistorted.")

    points = points.reshape(n, n, 2)  # [row (y), col (x)]
    valid = valid.reshape(n, n)
    xs = points[..., 0]
    ys = points[..., 1]

    outer = (
        float(xs[valid].min()),
        float(ys[valid].min()),
        float(xs[valid].max()),
        float(ys[valid].max()),
    )
    inner = (
        _bound(xs[:, 0], valid[:, 0], np.max, outer[0]),  # left column
        _bound(ys[0, :], valid[0, :], np.max, outer[1]),  # top row
        _bound(xs[:, -1], valid[:, -1], np.min, outer[2]),  # right column
        _bound(ys[-1, :], valid[-1, :], np.min, outer[3]),  # bottom row
    )
    return inner, outer


def get_optimal_new_camera_matrix(
    camera: Camera, alpha: float, scale: float, undistort_to_pinhole: bool
) -> Mat3:
    """Compute the calibration matrix of a distortion-free output camera.

    Interpolates between the matrix mapping the inscribed rectangle of the
    undistorted image onto the output viewport (``alpha = 0``, no invalid
    pixels) and the one mapping the bounding rectangle (``alpha = 1``, no
    source pixels lost).

    Args:
        camera: Input camera.
        alpha: Free scaling in [0, 1].
        scale: Output image size relative to the input image, > 0.
        undistort_to_pinhole: If True, the output is a pinhole camera and the
            undistorted plane is ``(x/z, y/z)``; otherwise the output is a
            unified camera with the input's mirror parameter and the plane is
            ``(x, y) / (z + xi * |p|)``.

    Returns:
        The 3x3 matrix ``[[fu, 0, cu], [0, fv, cv], [0, 0, 1]]``.

    Raises:
        ValueError: If alpha or scale are out of range, or the undistorted
            image region is degenerate.
    """
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be in [0, 1], got {alpha}.")
    if not scale > 0.0:
        raise ValueError(f"scale must be positive, got {scale}.")

    (ix0, iy0, ix1, iy1), (ox0, oy0, ox1, oy1) = _undistorted_rectangles(
        camera, undistort_to_pinhole
    )
    if ix1 <= ix0 or iy1 <= iy0 or ox1 <= ox0 or oy1 <= oy0:
        raise ValueError("Undistorted image region is degenerate.")

    output_width = int(scale * camera.image_width)
    output_height = int(scale * camera.image_height)

    # Projection mapping the inner rectangle to the viewport
    fx0 = (output_width - 1) / (ix1 - ix0)
    fy0 = (output_height - 1) / (iy1 - iy0)
    cx0 = -fx0 * ix0
    cy0 = -fy0 * iy0

    # Projection mapping the outer rectangle to the viewport
    fx1 = (output_width - 1) / (ox1 - ox0)
    fy1 = (output_height - 1) / (oy1 - oy0)
    cx1 = -fx1 * ox0
    cy1 = -fy1 * oy0

    return np.array(
        [
            [fx0 * (1.0 - alpha) + fx1 * alpha, 0.0, cx0 * (1.0 - alpha) + cx1 * alpha],
            [0.0, fy0 * (1.0 - alpha) + fy1 * alpha, cy0 * (1.0 - alpha) + cy1 * alpha],
            [0.0, 0.0, 1.0],
        ]
    )


def build_undistort_map(
    input_camera: Camera,
    output_camera: Camera,
    undistort_to_pinhole: bool,
    map_type: int = cv2.CV_32FC1,
) -> tuple[np.ndarray, np.ndarray]:
    """Build per-pixel lookup tables from output pixels to input pixels.

    Args:
        input_camera: Camera that took the source images.
        output_camera: Distortion-free camera defining the output images.
        undistort_to_pinhole: Whether the output camera is a pinhole model.
        map_type: ``cv2.CV_32FC1`` for two float32 maps of shape (H, W), or
            ``cv2.CV_16SC2`` for OpenCV's fixed-point pair (int16 (H, W, 2),
            uint16 (H, W)).

    Returns:
        Tuple ``(map_u, map_v)`` for ``cv2.remap``. Output pixels without a
        valid source location map to -1.

    Raises:
        ValueError: If the output camera does not match undistort_to_pinhole
            or map_type is unsupported.
    """
    if undistort_to_pinhole != isinstance(output_camera, PinholeCamera):
        raise ValueError(
            f"undistort_to_pinhole={undistort_to_pinhole} does not match output "
            f"camera type {type(output_camera).__name__}."
        )
    if map_type not in (cv2.CV_32FC1, cv2.CV_16SC2):
        raise ValueError(f"Unsupported map type {map_type}; use CV_32FC1 or CV_16SC2.")

    width = output_camera.image_width
    height = output_camera.image_height
    grid_u, grid_v = np.meshgrid(
        np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64)
    )
    pixels = np.stack([grid_u.ravel(), grid_v.ravel()], axis=1)  # (H*W, 2)

    bearings, lift_valid = output_camera.back_project_keypoints(pixels)
    source, project_valid = input_camera.project_points(bearings)
    valid = lift_valid & project_valid & np.all(np.isfinite(source), axis=1)
    source = np.where(valid[:, None], source, -1.0)

    map_u = source[:, 0].reshape(height, width).astype(np.float32)
    map_v = source[:, 1].reshape(height, width).astype(np.float32)
    logger.info(
        "Built %dx%d undistortion map, %d pixels without source",
        width,
        height,
        int((~valid).sum()),
    )

    if map_type == cv2.CV_16SC2:
        map_u, map_v = cv2.convertMaps(map_u, map_v, cv2.CV_16SC2)
    return map_u, map_v


class MappedUndistorter:
    """Undistorts images with precomputed remap tables.

    Args:
        input_camera: Camera that took the source images.
        output_camera: Camera describing the undistorted images.
        map_u: First ``cv2.remap`` table.
        map_v: Second ``cv2.remap`` table.
        interpolation: Pixel interpolation method.
    """

    def __init__(
        self,
        input_camera: Camera,
        output_camera: Camera,
        map_u: np.ndarray,
        map_v: np.ndarray,
        interpolation: InterpolationMethod = InterpolationMethod.LINEAR,
    ) -> None:
        self._input_camera = input_camera
        self._output_camera = output_camera
        self._map_u = map_u
        self._map_v = map_v
        self._interpolation = interpolation

    @property
    def input_camera(self) -> Camera:
        return self._input_camera

    @property
    def output_camera(self) -> Camera:
        return self._output_camera

    @property
    def map_u(self) -> np.ndarray:
        return self._map_u

    @property
    def map_v(self) -> np.ndarray:
        return self._map_v

    @property
    def interpolation(self) -> InterpolationMethod:
        return self._interpolation

    def process_image(self, image: np.ndarray) -> np.ndarray:
        """Remap an image from the input camera into the output camera.

        Args:
            image: Image array, shape (H, W) or (H, W, C), matching the input
                camera size.

        Returns:
            Undistorted image with the output camera size and the input dtype.
        """
        return cv2.remap(
            np.ascontiguousarray(image),
            self._map_u,
            self._map_v,
            interpolation=self._interpolation.value,
        )


# ---------------------------------------------------------------------------
# Tensor boundary
# ---------------------------------------------------------------------------


def compute_undistortion_maps(
    camera: UnifiedProjectionCamera,
    params: UndistortionParams | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Compute float32 remap tables for a unified projection camera.

    Args:
        camera: Camera whose images are to be undistorted.
        params: Undistortion settings; defaults to ``UndistortionParams()``
            (alpha 0, scale 1, unified output model).

    Returns:
        Tuple ``(map_x, map_y)`` of float32 arrays, shape (H_out, W_out).
    """
    params = UndistortionParams() if params is None else params
    if params.undistort_to_pinhole:
        undistorter = camera.create_mapped_undistorter_to_pinhole(
            params.alpha, params.scale, params.interpolation, cv2.CV_32FC1
        )
    else:
        undistorter = camera.create_mapped_undistorter(
            params.alpha, params.scale, params.interpolation, cv2.CV_32FC1
        )
    return undistorter.map_u, undistorter.map_v


def undistort_image(
    image: torch.Tensor,
    maps: tuple[np.ndarray, np.ndarray],
    interpolation: InterpolationMethod = InterpolationMethod.LINEAR,
) -> torch.Tensor:
    """Undistort an image tensor with precomputed remap tables.

    Args:
        image: Image tensor, shape (H, W) or (H, W, C), any device.
        maps: ``(map_x, map_y)`` from ``compute_undistortion_maps``.
        interpolation: Pixel interpolation method.

    Returns:
        Undistorted image tensor with the map's spatial size, the input dtype
        and on the input device.
    """
    map_x, map_y = maps
    image_np = np.ascontiguousarray(image.detach().cpu().numpy())
    out_np = cv2.remap(image_np, map_x, map_y, interpolation=interpolation.value)
    return torch.from_numpy(out_np).to(image.device)
