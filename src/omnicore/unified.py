"""Unified projection camera model for catadioptric and wide-angle lenses.

A point is first projected onto the unit sphere, then through a pinhole
displaced by the mirror parameter ``xi`` along the optical axis, optionally
distorted, and finally scaled by the affine intrinsics. ``xi = 0`` reduces to
a pinhole camera.

Intrinsics layout: ``[xi, fu, fv, cu, cv]``.

References:
    C. Geyer and K. Daniilidis, "A unifying theory for central panoramic
    systems and practical implications", ECCV 2000.
    J. P. Barreto and H. Araujo, "Issues on the geometry of central
    catadioptric image formation", CVPR 2001.
"""

from __future__ import annotations

import logging
import math
import sys
from typing import TextIO

import cv2
import numpy as np

from .camera import MINIMUM_DEPTH, Camera, PinholeCamera, create_camera
from .distortion import Distortion
from .types import InterpolationMethod, Projection, ProjectionResult, ProjectionStatus
from .undistortion import (
    MappedUndistorter,
    build_undistort_map,
    get_optimal_new_camera_matrix,
)

logger = logging.getLogger(__name__)

RANDOM_KEYPOINT_MAX_TRIES = 10


class UnifiedProjectionCamera(Camera):
    """Unified projection camera with optional distortion.

    Args:
        intrinsics: ``[xi, fu, fv, cu, cv]`` with ``xi >= 0`` and the focal
            lengths and principal point strictly positive.
        image_width: Image width in pixels.
        image_height: Image height in pixels.
        distortion: Distortion model applied on the normalized image plane,
            or None.

    Raises:
        ValueError: If the intrinsics are invalid.
    """

    camera_type = "unified-projection"
    parameter_names = ("xi", "fu", "fv", "cu", "cv")

    @classmethod
    def intrinsics_valid(cls, intrinsics: np.ndarray) -> bool:
        return (
            intrinsics.shape == (cls.parameter_count(),)
            and intrinsics[0] >= 0.0  # xi
            and intrinsics[1] > 0.0  # fu
            and intrinsics[2] > 0.0  # fv
            and intrinsics[3] > 0.0  # cu
            and intrinsics[4] > 0.0  # cv
        )

    @classmethod
    def create_test_camera(
        cls, distortion: Distortion | None = None
    ) -> UnifiedProjectionCamera:
        """Reference camera used by the test suite (640x480, xi = 0.9)."""
        return cls([0.9, 400.0, 400.0, 320.0, 240.0], 640, 480, distortion)

    # --- Accessors ---------------------------------------------------------

    @property
    def xi(self) -> float:
        """The mirror parameter."""
        return float(self._intrinsics[0])

    @property
    def fu(self) -> float:
        """The horizontal focal length in pixels."""
        return float(self._intrinsics[1])

    @property
    def fv(self) -> float:
        """The vertical focal length in pixels."""
        return float(self._intrinsics[2])

    @property
    def cu(self) -> float:
        """The horizontal image center in pixels."""
        return float(self._intrinsics[3])

    @property
    def cv(self) -> float:
        """The vertical image center in pixels."""
        return float(self._intrinsics[4])

    @staticmethod
    def fov_parameter(xi: float) -> float:
        """Bound on the valid field of view: ``xi`` if ``xi <= 1`` else ``1/xi``."""
        return xi if xi <= 1.0 else 1.0 / xi

    # --- Validity ----------------------------------------------------------

    def evaluate_projection_result(
        self, keypoint: np.ndarray, point_3d: np.ndarray
    ) -> ProjectionResult:
        """Classify a projected keypoint by image-box visibility and point depth."""
        visible = self.is_keypoint_visible(keypoint)
        deep_enough = float(np.dot(point_3d, point_3d)) > MINIMUM_DEPTH * MINIMUM_DEPTH

        if not deep_enough:
            return ProjectionResult(ProjectionStatus.PROJECTION_INVALID)
        if visible:
            return ProjectionResult(ProjectionStatus.KEYPOINT_VISIBLE)
        return ProjectionResult(ProjectionStatus.KEYPOINT_OUTSIDE_IMAGE_BOX)

    @staticmethod
    def is_undistorted_keypoint_valid(rho2_d: float, xi: float) -> bool:
        """True if a point with squared normalized radius ``rho2_d`` can be lifted.

        For ``xi > 1`` the inverse map is only defined inside the disk
        ``rho2_d <= 1 / (xi^2 - 1)`` of the normalized image plane.
        """
        return xi <= 1.0 or rho2_d <= 1.0 / (xi * xi - 1.0)

    def _normalized(self, keypoint: np.ndarray) -> np.ndarray:
        """Undo the affine step and the distortion."""
        normalized = (np.asarray(keypoint, dtype=np.float64) - self._intrinsics[3:]) / (
            self._intrinsics[1:3]
        )
        if self._distortion is not None:
            normalized = self._distortion.undistort(normalized)
        return normalized

    def is_liftable(self, keypoint: np.ndarray) -> bool:
        """True if the keypoint can be back-projected to a valid bearing vector."""
        normalized = self._normalized(keypoint)
        rho2_d = float(normalized[0] ** 2 + normalized[1] ** 2)
        return self.is_undistorted_keypoint_valid(rho2_d, self.xi)

    # --- Projection --------------------------------------------------------

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
        """Project a camera-frame point, optionally with external parameters.

        External parameters let an optimizer evaluate perturbed intrinsics or
        distortion coefficients without mutating the camera. A Jacobian flag
        left False skips that computation entirely.

        Args:
            point_3d: Camera-frame point, shape (3,).
            intrinsics_external: ``[xi, fu, fv, cu, cv]`` overriding the
                stored intrinsics, or None.
            distortion_coefficients_external: Coefficients overriding the
                stored distortion coefficients, or None. Ignored without
                distortion.
            jacobian_point: Compute d(keypoint)/d(point), shape (2, 3).
            jacobian_intrinsics: Compute d(keypoint)/d(intrinsics), shape (2, 5).
            jacobian_distortion: Compute d(keypoint)/d(coefficients), shape
                (2, D). Only available when the camera has distortion.

        Returns:
            Projection holding the keypoint, its classification and the
            requested Jacobians. An invalid projection carries a zero keypoint
            and no Jacobians.

        Raises:
            ValueError: If the external intrinsics do not have 5 elements.
        """
        xi, fu, fv, cu, cv = self._resolve_intrinsics(intrinsics_external)
        point_3d = np.asarray(point_3d, dtype=np.float64)
        x, y, z = point_3d

        d = math.sqrt(x * x + y * y + z * z)

        # The projection is only defined inside the mirror's field of view.
        if not z > -(self.fov_parameter(xi) * d):
            return Projection(
                keypoint=np.zeros(2),
                result=ProjectionResult(ProjectionStatus.PROJECTION_INVALID),
            )

        rz = 1.0 / (z + xi * d)
        undistorted = np.array([x * rz, y * rz])

        # Distort the point and get the Jacobian w.r.t. the keypoint.
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
            rz2 = rz * rz / d
            du_dy = -rz2 * xi * x * y
            J_proj = np.array(
                [
                    [rz2 * (d * z + xi * (y * y + z * z)), du_dy, -x * rz2 * (xi * z + d)],
                    [du_dy, rz2 * (d * z + xi * (x * x + z * z)), -y * rz2 * (xi * z + d)],
                ]
            )
            J_point = focal * (J_d @ J_proj)

        J_intrinsics = None
        if jacobian_intrinsics:
            J_intrinsics = np.zeros((2, self.parameter_count()))
            J_xi = np.array([-undistorted[0] * d * rz, -undistorted[1] * d * rz])
            J_intrinsics[:, 0] = (focal * J_d) @ J_xi
            J_intrinsics[0, 1] = distorted[0]
            J_intrinsics[0, 3] = 1.0
            J_intrinsics[1, 2] = distorted[1]
            J_intrinsics[1, 4] = 1.0

        J_distortion = None
        if jacobian_distortion and self._distortion is not None:
            J_distortion = focal * self._distortion.distort_parameter_jacobian(
                undistorted, distortion_coefficients_external
            )

        # Normalized image plane to camera plane.
        keypoint = np.array([fu * distorted[0] + cu, fv * distorted[1] + cv])
        return Projection(
            keypoint=keypoint,
            result=self.evaluate_projection_result(keypoint, point_3d),
            jacobian_point=J_point,
            jacobian_intrinsics=J_intrinsics,
            jacobian_distortion=J_distortion,
        )

    def back_project3(self, keypoint: np.ndarray) -> tuple[np.ndarray, bool]:
        """Compute the bearing vector of a keypoint.

        Args:
            keypoint: Pixel coordinates, shape (2,).

        Returns:
            Tuple of:
                bearing: Non-normalized bearing vector ``(u, v, w)``, shape (3,),
                    where ``(u, v)`` is the undistorted normalized keypoint.
                valid: True if the keypoint lies in the liftable region. Image
                    box visibility is not checked.
        """
        xi = self.xi
        u, v = self._normalized(keypoint)
        rho2_d = float(u * u + v * v)
        # Clamp rounding noise below zero.
        tmp_d = max(1.0 + (1.0 - xi * xi) * rho2_d, 0.0)
        bearing = np.array([u, v, 1.0 - xi * (rho2_d + 1.0) / (xi + math.sqrt(tmp_d))])
        return bearing, self.is_undistorted_keypoint_valid(rho2_d, xi)

    def project_points(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        xi = self.xi
        z = points[:, 2]
        d = np.linalg.norm(points, axis=1)
        valid = (z > -(self.fov_parameter(xi) * d)) & (d * d > MINIMUM_DEPTH * MINIMUM_DEPTH)
        with np.errstate(divide="ignore", invalid="ignore"):
            normalized = points[:, :2] / (z + xi * d)[:, None]
        normalized = np.where(valid[:, None], normalized, np.nan)
        if self._distortion is not None:
            with np.errstate(over="ignore", invalid="ignore"):
                normalized = self._distortion.distort(normalized)
        pixels = normalized * self._intrinsics[1:3] + self._intrinsics[3:]
        return pixels, valid

    def back_project_keypoints(self, keypoints: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        xi = self.xi
        with np.errstate(over="ignore", invalid="ignore"):
            normalized = self._normalized(keypoints)
        rho2_d = np.sum(normalized * normalized, axis=1)
        tmp_d = np.maximum(1.0 + (1.0 - xi * xi) * rho2_d, 0.0)
        w = 1.0 - xi * (rho2_d + 1.0) / (xi + np.sqrt(tmp_d))
        bearings = np.concatenate([normalized, w[:, None]], axis=1)
        if xi <= 1.0:
            valid = np.isfinite(rho2_d)
        else:
            valid = rho2_d <= 1.0 / (xi * xi - 1.0)
        return bearings, valid

    # --- Test support ------------------------------------------------------

    def _max_normalized_radius(self) -> float:
        if self.xi > 1.0:
            # Edge of the liftable disk: u^2 + v^2 = 1 / (xi^2 - 1).
            return math.sqrt(1.0 / (self.xi * self.xi - 1.0))
        corners = np.array(
            [
                [0.0, 0.0],
                [self._image_width, 0.0],
                [0.0, self._image_height],
                [self._image_width, self._image_height],
            ]
        )
        normalized = (corners - self._intrinsics[3:]) / self._intrinsics[1:3]
        return float(np.max(np.linalg.norm(normalized, axis=1)))

    def create_random_keypoint(self, rng: np.random.Generator | None = None) -> np.ndarray:
        """Sample a keypoint that is both liftable and inside the image box.

        Points are drawn on the normalized image plane inside the liftable
        region, distorted and mapped to pixels. After
        ``RANDOM_KEYPOINT_MAX_TRIES`` rejected draws the principal point is
        returned instead.

        Args:
            rng: Random generator; a fresh one is created if None.

        Returns:
            Keypoint, shape (2,).
        """
        rng = np.random.default_rng() if rng is None else rng
        max_radius = self._max_normalized_radius()

        for _ in range(RANDOM_KEYPOINT_MAX_TRIES):
            angle = rng.uniform(0.0, 2.0 * math.pi)
            radius = rng.uniform(0.0, 1.0) * max_radius
            normalized = radius * np.array([math.cos(angle), math.sin(angle)])
            if self._distortion is not None:
                normalized = self._distortion.distort(normalized)
            keypoint = normalized * self._intrinsics[1:3] + self._intrinsics[3:]
            if self.is_liftable(keypoint) and self.is_keypoint_visible(keypoint):
                return keypoint

        logger.debug(
            "UnifiedProjectionCamera.create_random_keypoint failed to produce a "
            "random keypoint after %d tries; returning the image center.",
            RANDOM_KEYPOINT_MAX_TRIES,
        )
        return np.array([self.cu, self.cv])

    # --- Undistortion ------------------------------------------------------

    def _create_mapped_undistorter(
        self,
        alpha: float,
        scale: float,
        interpolation: InterpolationMethod,
        undistort_to_pinhole: bool,
        map_type: int,
    ) -> MappedUndistorter:
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {alpha}.")
        if not scale > 0.0:
            raise ValueError(f"scale must be positive, got {scale}.")

        input_camera = self.clone()
        K = get_optimal_new_camera_matrix(input_camera, alpha, scale, undistort_to_pinhole)

        output_width = int(scale * self._image_width)
        output_height = int(scale * self._image_height)
        focal_and_center = [K[0, 0], K[1, 1], K[0, 2], K[1, 2]]
        if undistort_to_pinhole:
            output_camera: Camera = create_camera(
                PinholeCamera, focal_and_center, output_width, output_height
            )
        else:
            output_camera = create_camera(
                UnifiedProjectionCamera, [self.xi, *focal_and_center], output_width, output_height
            )

        map_u, map_v = build_undistort_map(
            input_camera, output_camera, undistort_to_pinhole, map_type
        )
        return MappedUndistorter(input_camera, output_camera, map_u, map_v, interpolation)

    def create_mapped_undistorter(
        self,
        alpha: float,
        scale: float,
        interpolation: InterpolationMethod = InterpolationMethod.LINEAR,
        map_type: int = cv2.CV_16SC2,
    ) -> MappedUndistorter:
        """Build an undistorter that only removes the lens distortion.

        The output camera is a distortion-free unified camera with the same
        mirror parameter.

        Args:
            alpha: Free scaling in [0, 1]; 0 keeps only valid pixels, 1 keeps
                all source pixels.
            scale: Output image size relative to this camera, > 0.
            interpolation: Interpolation used when remapping images.
            map_type: ``cv2.CV_16SC2`` for OpenCV's fixed-point maps (faster
                remapping) or ``cv2.CV_32FC1`` for float32 maps.

        Raises:
            ValueError: If alpha or scale are out of range, or map_type is
                unsupported.
        """
        return self._create_mapped_undistorter(alpha, scale, interpolation, False, map_type)

    def create_mapped_undistorter_to_pinhole(
        self,
        alpha: float,
        scale: float,
        interpolation: InterpolationMethod = InterpolationMethod.LINEAR,
        map_type: int = cv2.CV_16SC2,
    ) -> MappedUndistorter:
        """Build an undistorter that maps this camera onto a pinhole camera.

        Arguments as for ``create_mapped_undistorter``.

        Raises:
            ValueError: If alpha or scale are out of range, or map_type is
                unsupported.
        """
        return self._create_mapped_undistorter(alpha, scale, interpolation, True, map_type)

    # --- Object protocol ---------------------------------------------------

    def print_parameters(self, out: TextIO | None = None, text: str = "") -> None:
        out = sys.stdout if out is None else out
        super().print_parameters(out, text)
        out.write(f"  mirror parameter (xi): {self.xi}\n")
        out.write(f"  focal length (cols,rows): {self.fu}, {self.fv}\n")
        out.write(f"  optical center (cols,rows): {self.cu}, {self.cv}\n")
        if self._distortion is not None:
            out.write("  distortion: ")
            self._distortion.print_parameters(out, text)
