"""Foundation value types shared by the camera, distortion and undistortion modules."""

from dataclasses import dataclass
from enum import Enum

import cv2
import numpy as np

# Type aliases (documentation only; all camera math runs on float64 arrays)
Vec2 = np.ndarray  # (2,)
Vec3 = np.ndarray  # (3,)
Mat3 = np.ndarray  # (3, 3)


class ProjectionStatus(Enum):
    """Outcome of projecting a single 3D point into a camera."""

    KEYPOINT_VISIBLE = "keypoint_visible"
    KEYPOINT_OUTSIDE_IMAGE_BOX = "keypoint_outside_image_box"
    POINT_BEHIND_CAMERA = "point_behind_camera"
    PROJECTION_INVALID = "projection_invalid"


@dataclass(frozen=True)
class ProjectionResult:
    """Classification of a forward projection.

    Truthiness mirrors the common caller question "did the point land in the
    image?": ``bool(result)`` is True only for ``KEYPOINT_VISIBLE``.

    Attributes:
        status: The projection outcome.
    """

    status: ProjectionStatus

    def is_keypoint_visible(self) -> bool:
        return self.status is ProjectionStatus.KEYPOINT_VISIBLE

    def __bool__(self) -> bool:
        return self.is_keypoint_visible()

    def __str__(self) -> str:
        return self.status.name


def _optional_array_equal(a: np.ndarray | None, b: np.ndarray | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return bool(np.array_equal(a, b))


@dataclass(frozen=True, eq=False)
class Projection:
    """Keypoint, classification and the Jacobians requested from a projection.

    Attributes:
        keypoint: Pixel coordinates, shape (2,), float64. ``(0, 0)`` when the
            projection is invalid.
        result: Classification of the projection.
        jacobian_point: d(keypoint)/d(point), shape (2, 3), or None if not
            requested (or the projection was invalid).
        jacobian_intrinsics: d(keypoint)/d(intrinsics), shape (2, P), or None.
        jacobian_distortion: d(keypoint)/d(distortion coefficients), shape
            (2, D), or None (also None when the camera has no distortion).
    """

    keypoint: np.ndarray
    result: ProjectionResult
    jacobian_point: np.ndarray | None = None
    jacobian_intrinsics: np.ndarray | None = None
    jacobian_distortion: np.ndarray | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Projection):
            return NotImplemented
        return (
            self.result == other.result
            and _optional_array_equal(self.keypoint, other.keypoint)
            and _optional_array_equal(self.jacobian_point, other.jacobian_point)
            and _optional_array_equal(self.jacobian_intrinsics, other.jacobian_intrinsics)
            and _optional_array_equal(self.jacobian_distortion, other.jacobian_distortion)
        )


class InterpolationMethod(Enum):
    """Pixel interpolation used when remapping images, mapped onto OpenCV flags."""

    NEAREST = cv2.INTER_NEAREST
    LINEAR = cv2.INTER_LINEAR
    CUBIC = cv2.INTER_CUBIC
    LANCZOS = cv2.INTER_LANCZOS4


@dataclass(frozen=True)
class UndistortionParams:
    """Settings for building an undistortion map.

    Attributes:
        alpha: Free scaling in [0, 1]. 0 keeps only valid source pixels
            (inscribed rectangle); 1 keeps every source pixel (bounding
            rectangle).
        scale: Output image size relative to the input image, > 0.
        undistort_to_pinhole: If True, the output camera is a pinhole model;
            otherwise a distortion-free unified camera with the same mirror
            parameter.
        interpolation: Interpolation used by ``MappedUndistorter``.

    Raises:
        ValueError: If alpha is outside [0, 1] or scale is not positive.
    """

    alpha: float = 0.0
    scale: float = 1.0
    undistort_to_pinhole: bool = False
    interpolation: InterpolationMethod = InterpolationMethod.LINEAR

    def __post_init__(self) -> None:
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {self.alpha}.")
        if not self.scale > 0.0:
            raise ValueError(f"scale must be positive, got {self.scale}.")
