"""Camera base class, pinhole model and the create_camera factory.

Single-point projection, back-projection and Jacobians run on float64 NumPy
arrays. The batched project() and back_project() calls accept torch tensors
and are NOT differentiable: inputs cross to NumPy on the CPU and results are
returned on the original device.
"""

from __future__ import annotations

import io
import sys
from abc import ABC, abstractmethod
from typing import TextIO, TypeVar

import numpy as np
import torch

from .distortion import Distortion
from .types import Projection, ProjectionResult, ProjectionStatus

# Minimal depth (or distance from the center) for a valid projection.
MINIMUM_DEPTH = 1e-10

CameraT = TypeVar("CameraT", bound="Camera")

# ---------------------------------------------------------------------------
# Base camera model
# ---------------------------------------------------------------------------


class Camera(ABC):
    """Base camera model: validated intrinsics, image box and optional distortion.

    The camera keeps the distortion object it is given; ``clone()`` gives the
    copy its own distortion instance.

    Args:
        intrinsics: Intrinsic parameter vector, layout defined by the subclass.
        image_width: Image width in pixels.
        image_height: Image height in pixels.
        distortion: Distortion model, or None for an undistorted camera.

    Raises:
        ValueError: If the intrinsics fail the subclass validation or the
            image size is not positive.
    """

    camera_type: str = ""
    parameter_names: tuple[str, ...] = ()

    def __init__(
        self,
        intrinsics: np.ndarray | list[float],
        image_width: int,
        image_height: int,
        distortion: Distortion | None = None,
    ) -> None:
        self._intrinsics = self._validated(intrinsics)
        if image_width <= 0 or image_height <= 0:
            raise ValueError(
                f"Image size must be positive, got {image_width}x{image_height}."
            )
        self._image_width = int(image_width)
        self._image_height = int(image_height)
        self._distortion = distortion

    @classmethod
    def parameter_count(cls) -> int:
        return len(cls.parameter_names)

    @classmethod
    @abstractmethod
    def intrinsics_valid(cls, intrinsics: np.ndarray) -> bool:
        """Check an intrinsics vector against the model's invariants."""

    @classmethod
    def _validated(cls, intrinsics: np.ndarray | list[float]) -> np.ndarray:
        params = np.array(intrinsics, dtype=np.float64).reshape(-1)
        if not cls.intrinsics_valid(params):
            raise ValueError(
                f"Invalid intrinsics for {cls.__name__}: expected "
                f"{cls.parameter_count()} values {cls.parameter_names}, "
                f"got {params.tolist()}."
            )
        return params

    # --- Accessors ---------------------------------------------------------

    @property
    def image_width(self) -> int:
        return self._image_width

    @property
    def image_height(self) -> int:
        return self._image_height

    @property
    def distortion(self) -> Distortion | None:
        return self._distortion

    def get_parameters(self) -> np.ndarray:
        """Return a copy of the intrinsics vector."""
        return self._intrinsics.copy()

    def set_parameters(self, intrinsics: np.ndarray | list[float]) -> None:
        """Replace the whole intrinsics vector (re-validated)."""
        self._intrinsics = self._validated(intrinsics)

    def is_keypoint_visible(self, keypoint: np.ndarray) -> bool:
        """True if the keypoint lies inside ``[0, width) x [0, height)``."""
        return bool(self._keypoints_visible(np.asarray(keypoint, dtype=np.float64)))

    def _keypoints_visible(self, keypoints: np.ndarray) -> np.ndarray:
        u = keypoints[..., 0]
        v = keypoints[..., 1]
        return (u >= 0.0) & (u < self._image_width) & (v >= 0.0) & (v < self._image_height)

    def _resolve_intrinsics(self, intrinsics_external: np.ndarray | None) -> np.ndarray:
        """Return the external intrinsics if given, else the stored ones."""
        if intrinsics_external is None:
            return self._intrinsics
        intrinsics = np.asarray(intrinsics_external, dtype=np.float64).reshape(-1)
        if intrinsics.shape != (self.parameter_count(),):
            raise ValueError(
                f"intrinsics: invalid size! Expected {self.parameter_count()}, "
                f"got {intrinsics.shape[0]}."
            )
        return intrinsics

    # --- Projection --------------------------------------------------------

    def project3(
        self,
        point_3d: np.ndarray,
        *,
        jacobian_point: bool = False,
        jacobian_intrinsics: bool = False,
        jacobian_distortion: bool = False,
    ) -> Projection:
        """Project a camera-frame point with the camera's own parameters."""
        return self.project3_functional(
            point_3d,
            None,
            None,
            jacobian_point=jacobian_point,
            jacobian_intrinsics=jacobian_intrinsics,
            jacobian_distortion=jacobian_distortion,
        )

    @abstractmethod
    def project3_functional(
        self,
        point_3d: np.ndarray,
        intrinsics_external: np.ndarray | None = None,
        distortion_coefficients_external: np.ndarray | None = None,
        *,
        jacobian_point: bool = False,
        jacobian_intrinsics: bool = False,
        jacobian_distortion: bool = False,
    ) -> Projection:
        """Project a camera-frame point, optionally with external parameters."""

    @abstractmethod
    def back_project3(self, keypoint: np.ndarray) -> tuple[np.ndarray, bool]:
        """Back-project a keypoint to a (non-normalized) bearing vector."""

    @abstractmethod
    def project_points(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Vectorized projection, (N, 3) -> pixels (N, 2) and valid mask (N,)."""

    @abstractmethod
    def back_project_keypoints(self, keypoints: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Vectorized back-projection, (N, 2) -> bearings (N, 3) and valid mask (N,)."""

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project camera-frame 3D points to 2D pixel coordinates.

        Args:
            points: Camera-frame 3D points, shape (N, 3).

        Returns:
            Tuple of:
                pixels: Pixel coordinates, shape (N, 2), same dtype as points.
                    Rows where the projection is undefined are NaN.
                valid: Boolean mask, shape (N,). True where the projection is
                    defined (the keypoint may still lie outside the image).
        """
        points_np = points.detach().cpu().numpy().astype(np.float64)
        pixels_np, valid_np = self.project_points(points_np.reshape(-1, 3))
        pixels = torch.from_numpy(pixels_np).to(device=points.device, dtype=points.dtype)
        valid = torch.from_numpy(valid_np).to(points.device)
        return pixels, valid

    def back_project(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Back-project 2D pixel coordinates to camera-frame bearing vectors.

        Args:
            pixels: Pixel coordinates, shape (N, 2).

        Returns:
            Tuple of:
                bearings: Non-normalized bearing vectors, shape (N, 3), same
                    dtype as pixels.
                valid: Boolean mask, shape (N,). True where the pixel is
                    liftable.
        """
        pixels_np = pixels.detach().cpu().numpy().astype(np.float64)
        bearings_np, valid_np = self.back_project_keypoints(pixels_np.reshape(-1, 2))
        bearings = torch.from_numpy(bearings_np).to(device=pixels.device, dtype=pixels.dtype)
        valid = torch.from_numpy(valid_np).to(pixels.device)
        return bearings, valid

    # --- Test support ------------------------------------------------------

    @abstractmethod
    def create_random_keypoint(self, rng: np.random.Generator | None = None) -> np.ndarray:
        """Sample a keypoint that is visible and can be back-projected."""

    def create_random_visible_point(
        self, depth: float, rng: np.random.Generator | None = None
    ) -> np.ndarray:
        """Sample a visible 3D point at the given distance from the camera center.

        Args:
            depth: Distance from the camera center, > 0.
            rng: Random generator; a fresh one is created if None.

        Returns:
            Camera-frame point, shape (3,), with norm ``depth``.

        Raises:
            ValueError: If depth is not positive.
            RuntimeError: If the sampled keypoint cannot be back-projected.
        """
        if not depth > 0.0:
            raise ValueError(f"Depth needs to be positive, got {depth}.")
        keypoint = self.create_random_keypoint(rng)
        bearing, success = self.back_project3(keypoint)
        if not success:
            raise RuntimeError(
                f"Back-projection of random keypoint {keypoint.tolist()} was unsuccessful."
            )
        return bearing / np.linalg.norm(bearing) * depth

    # --- Object protocol ---------------------------------------------------

    def clone(self: CameraT) -> CameraT:
        """Return an independent deep copy, including the distortion model."""
        distortion = self._distortion.clone() if self._distortion is not None else None
        return type(self)(
            self._intrinsics.copy(), self._image_width, self._image_height, distortion
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Camera):
            return NotImplemented
        return (
            type(self) is type(other)
            and np.array_equal(self._intrinsics, other._intrinsics)
            and self._image_width == other._image_width
            and self._image_height == other._image_height
            and self._distortion_equal(other)
        )

    def _distortion_equal(self, other: Camera) -> bool:
        if self._distortion is None or other._distortion is None:
            return self._distortion is None and other._distortion is None
        return self._distortion == other._distortion

    def print_parameters(self, out: TextIO | None = None, text: str = "") -> None:
        """Write the camera parameters in human-readable form.

        Args:
            out: Text stream; defaults to stdout.
            text: Prefix used by the caller to tell cameras apart.
        """
        out = sys.stdout if out is None else out
        out.write(f"{text}Camera({self.camera_type}):\n")
        out.write(
            f"  image (cols,rows): {self._image_width}, {self._image_height}\n"
        )

    def __str__(self) -> str:
        buffer = io.StringIO()
        self.print_parameters(buffer)
        return buffer.getvalue()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(intrinsics={self._intrinsics.tolist()}, "
            f"image_width={self._image_width}, image_height={self._image_height}, "
            f"distortion={self._distortion!r})"
        )


# ---------------------------------------------------------------------------
# Concrete camera models
# ---------------------------------------------------------------------------


class PinholeCamera(Camera):
    """Pinhole camera with optional distortion. Intrinsics: fu, fv, cu, cv."""

    camera_type = "pinhole"
    parameter_names = ("fu", "fv", "cu", "cv")

    @classmethod
    def intrinsics_valid(cls, intrinsics: np.ndarray) -> bool:
        return intrinsics.shape == (cls.parameter_count(),) and bool(np.all(intrinsics > 0.0))

    @property
    def fu(self) -> float:
        return float(self._intrinsics[0])

    @property
    def fv(self) -> float:
        return float(self._intrinsics[1])

    @property
    def cu(self) -> float:
        return float(self._intrinsics[2])

    @property
    def cv(self) -> float:
        return float(self._intrinsics[3])

    def camera_matrix(self) -> np.ndarray:
        """Return the 3x3 calibration matrix K."""
        return np.array(
            [[self.fu, 0.0, self.cu], [0.0, self.fv, self.cv], [0.0, 0.0, 1.0]]
        )

    def evaluate_projection_result(
        self, keypoint: np.ndarray, point_3d: np.ndarray
    ) -> ProjectionResult:
        if point_3d[2] <= MINIMUM_DEPTH:
            return ProjectionResult(ProjectionStatus.POINT_BEHIND_CAMERA)
        if self.is_keypoint_visible(keypoint):
            return ProjectionResult(ProjectionStatus.KEYPOINT_VISIBLE)
        return ProjectionResult(ProjectionStatus.KEYPOINT_OUTSIDE_IMAGE_BOX)

    def project3_functional(
        self,
        point_3d: np.ndarray,
        intrinsics_external: np.ndarray | None = None,
        distortion_coefficients_external: np.ndarray | None = None,
        *,
        jacobian_point: bool = False,
        jacobian_intrinsics: bool = False,
        jacobian_distortion: bool = False,
    ) -> Projection:
        fu, fv, cu, cv = self._resolve_intrinsics(intrinsics_external)
        point_3d = np.asarray(point_3d, dtype=np.float64)
        x, y, z = point_3d

        if z <= MINIMUM_DEPTH:
            return Projection(
                keypoint=np.zeros(2),
                result=ProjectionResult(ProjectionStatus.POINT_BEHIND_CAMERA),
            )

        rz = 1.0 / z
        undistorted = np.array([x * rz, y * rz])
        distorted = undistorted
        J_d = np.eye(2)
        if self._distortion is not None:
            distorted, J = self._distortion.distort_using_external_coefficients(
                undistorted,
                distortion_coefficients_external,
                jacobian=jacobian_point or jacobian_intrinsics,
            )
            if J is not None:
                J_d = J
        focal = np.array([[fu], [fv]])

        J_point = None
        if jacobian_point:
            J_proj = np.array([[rz, 0.0, -x * rz * rz], [0.0, rz, -y * rz * rz]])
            J_point = focal * (J_d @ J_proj)

        J_intrinsics = None
        if jacobian_intrinsics:
            J_intrinsics = np.zeros((2, self.parameter_count()))
            J_intrinsics[0, 0] = distorted[0]
            J_intrinsics[1, 1] = distorted[1]
            J_intrinsics[0, 2] = 1.0
            J_intrinsics[1, 3] = 1.0

        J_distortion = None
        if jacobian_distortion and self._distortion is not None:
            J_distortion = focal * self._distortion.distort_parameter_jacobian(
                undistorted, distortion_coefficients_external
            )

        keypoint = np.array([fu * distorted[0] + cu, fv * distorted[1] + cv])
        return Projection(
            keypoint=keypoint,
            result=self.evaluate_projection_result(keypoint, point_3d),
            jacobian_point=J_point,
            jacobian_intrinsics=J_intrinsics,
            jacobian_distortion=J_distortion,
        )

    def back_project3(self, keypoint: np.ndarray) -> tuple[np.ndarray, bool]:
        keypoint = np.asarray(keypoint, dtype=np.float64)
        normalized = np.array(
            [(keypoint[0] - self.cu) / self.fu, (keypoint[1] - self.cv) / self.fv]
        )
        if self._distortion is not None:
            normalized = self._distortion.undistort(normalized)
        return np.array([normalized[0], normalized[1], 1.0]), True

    def project_points(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        z = points[:, 2]
        valid = z > MINIMUM_DEPTH
        with np.errstate(divide="ignore", invalid="ignore"):
            normalized = points[:, :2] / z[:, None]
        normalized = np.where(valid[:, None], normalized, np.nan)
        if self._distortion is not None:
            normalized = self._distortion.distort(normalized)
        pixels = normalized * self._intrinsics[:2] + self._intrinsics[2:]
        return pixels, valid

    def back_project_keypoints(self, keypoints: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        normalized = (keypoints - self._intrinsics[2:]) / self._intrinsics[:2]
        if self._distortion is not None:
            normalized = self._distortion.undistort(normalized)
        ones = np.ones((normalized.shape[0], 1))
        bearings = np.concatenate([normalized, ones], axis=1)
        return bearings, np.all(np.isfinite(bearings), axis=1)

    def create_random_keypoint(self, rng: np.random.Generator | None = None) -> np.ndarray:
        rng = np.random.default_rng() if rng is None else rng
        return rng.uniform([0.0, 0.0], [self._image_width, self._image_height])

    def print_parameters(self, out: TextIO | None = None, text: str = "") -> None:
        out = sys.stdout if out is None else out
        super().print_parameters(out, text)
        out.write(f"  focal length (cols,rows): {self.fu}, {self.fv}\n")
        out.write(f"  optical center (cols,rows): {self.cu}, {self.cv}\n")
        if self._distortion is not None:
            out.write("  distortion: ")
            self._distortion.print_parameters(out, text)


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def create_camera(
    camera_type: type[CameraT],
    intrinsics: np.ndarray | list[float],
    image_width: int,
    image_height: int,
    distortion: Distortion | None = None,
) -> CameraT:
    """Create a camera of the given model from its intrinsics and image size.

    Args:
        camera_type: Concrete camera class, e.g. ``PinholeCamera`` or
            ``UnifiedProjectionCamera``.
        intrinsics: Intrinsic parameter vector in the model's layout.
        image_width: Image width in pixels.
        image_height: Image height in pixels.
        distortion: Optional distortion model, owned by the new camera.

    Returns:
        The constructed camera.

    Raises:
        TypeError: If camera_type is not a concrete Camera subclass.
        ValueError: If the intrinsics or image size are invalid.
    """
    if not (isinstance(camera_type, type) and issubclass(camera_type, Camera)):
        raise TypeError(f"camera_type must be a Camera subclass, got {camera_type!r}.")
    return camera_type(intrinsics, image_width, image_height, distortion)
