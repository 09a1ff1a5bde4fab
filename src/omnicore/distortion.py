"""Lens distortion models acting on normalized image-plane coordinates.

Every model works on arrays of shape (..., 2): a single point (2,) or a batch
(N, 2) go through the same code. Distortion is applied after the central
projection and before the affine intrinsic step, so coordinates are unitless.

The warps, their Jacobians and their inverses are evaluated by OpenCV: a
normalized point ``(u, v)`` is fed to ``cv2.projectPoints`` (or
``cv2.fisheye.projectPoints``) as the camera-frame point ``(u, v, 1)`` with a
zero pose and an identity camera matrix.
"""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from typing import Callable, TextIO

import cv2
import numpy as np

_IDENTITY_K = np.eye(3, dtype=np.float64)
_ZERO_VEC = np.zeros(3, dtype=np.float64)

# Iterative undistortion stops after 50 steps or once the update is below 1e-14.
_UNDISTORT_CRITERIA = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, 50, 1e-14)


def _homogeneous(points: np.ndarray) -> np.ndarray:
    """(N, 2) normalized points -> (N, 1, 3) camera-frame points at z = 1."""
    ones = np.ones((points.shape[0], 1), dtype=np.float64)
    return np.concatenate([points, ones], axis=1).reshape(-1, 1, 3)


# ---------------------------------------------------------------------------
# Base distortion model
# ---------------------------------------------------------------------------


class Distortion(ABC):
    """Abstract distortion model with its own coefficient vector.

    Subclasses evaluate the forward warp together with its Jacobians w.r.t.
    the point and the coefficients, and the inverse warp. Non-finite input
    rows are never handed to OpenCV; they come back as NaN.

    Args:
        parameters: Distortion coefficients, length ``parameter_count()``.

    Raises:
        ValueError: If the coefficient vector has the wrong length or holds
            non-finite values.
    """

    distortion_type: str = ""
    parameter_names: tuple[str, ...] = ()

    def __init__(self, parameters: np.ndarray | list[float]) -> None:
        self._parameters = self._validated(parameters)

    @classmethod
    def parameter_count(cls) -> int:
        return len(cls.parameter_names)

    @classmethod
    def parameters_valid(cls, parameters: np.ndarray) -> bool:
        return parameters.shape == (cls.parameter_count(),) and bool(
            np.all(np.isfinite(parameters))
        )

    @classmethod
    def _validated(cls, parameters: np.ndarray | list[float]) -> np.ndarray:
        params = np.array(parameters, dtype=np.float64).reshape(-1)
        if not cls.parameters_valid(params):
            raise ValueError(
                f"{cls.__name__} expects {cls.parameter_count()} finite coefficients "
                f"{cls.parameter_names}, got {params.tolist()}."
            )
        return params

    def get_parameters(self) -> np.ndarray:
        """Return a copy of the coefficient vector."""
        return self._parameters.copy()

    def set_parameters(self, parameters: np.ndarray | list[float]) -> None:
        """Replace the coefficient vector (re-validated)."""
        self._parameters = self._validated(parameters)

    def _resolve(self, coefficients: np.ndarray | None) -> np.ndarray:
        """Return external coefficients if given, else the model's own."""
        if coefficients is None:
            return self._parameters
        coeffs = np.asarray(coefficients, dtype=np.float64).reshape(-1)
        if coeffs.shape != (self.parameter_count(),):
            raise ValueError(
                f"External distortion coefficients must have length "
                f"{self.parameter_count()}, got {coeffs.shape[0]}."
            )
        return coeffs

    # --- Public warp API ---------------------------------------------------

    def distort(self, point: np.ndarray) -> np.ndarray:
        """Apply the distortion to normalized points, shape (..., 2)."""
        distorted, _, _ = self._evaluate(point, self._parameters)
        return distorted

    def undistort(self, point: np.ndarray) -> np.ndarray:
        """Remove the distortion from normalized points, shape (..., 2)."""
        point = np.asarray(point, dtype=np.float64)
        flat = point.reshape(-1, 2)
        (undistorted,) = self._on_finite_rows(
            flat, lambda rows: (self._undistort(rows, self._parameters),), [(2,)]
        )
        return undistorted.reshape(point.shape)

    def distort_using_external_coefficients(
        self,
        point: np.ndarray,
        coefficients: np.ndarray | None = None,
        *,
        jacobian: bool = False,
    ) -> tuple[np.ndarray, np.ndarray | None]:
        """Distort a point with (optionally) externally supplied coefficients.

        Args:
            point: Normalized point(s), shape (..., 2).
            coefficients: Coefficient vector overriding the stored one, or
                None to use the stored coefficients.
            jacobian: If True, also return d(distorted)/d(point).

        Returns:
            distorted: Distorted point(s), shape (..., 2).
            jacobian: Shape (..., 2, 2), or None if not requested.
        """
        distorted, J_point, _ = self._evaluate(point, self._resolve(coefficients))
        return distorted, (J_point if jacobian else None)

    def distort_parameter_jacobian(
        self,
        point: np.ndarray,
        coefficients: np.ndarray | None = None,
    ) -> np.ndarray:
        """Jacobian of the distorted point w.r.t. the coefficients.

        Args:
            point: Undistorted normalized point(s), shape (..., 2).
            coefficients: Coefficients to evaluate at, or None for the stored
                ones.

        Returns:
            Jacobian, shape (..., 2, parameter_count()).
        """
        _, _, J_coeffs = self._evaluate(point, self._resolve(coefficients))
        return J_coeffs

    # --- Evaluation plumbing -----------------------------------------------

    @staticmethod
    def _on_finite_rows(
        flat: np.ndarray,
        fn: Callable[[np.ndarray], tuple[np.ndarray, ...]],
        trailing_shapes: list[tuple[int, ...]],
    ) -> list[np.ndarray]:
        """Run ``fn`` on the finite rows of (N, 2) input, NaN elsewhere."""
        outputs = [np.full((flat.shape[0], *shape), np.nan) for shape in trailing_shapes]
        finite = np.all(np.isfinite(flat), axis=1)
        if finite.any():
            for out, values in zip(outputs, fn(flat[finite])):
                out[finite] = values
        return outputs

    def _evaluate(
        self, point: np.ndarray, coeffs: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        point = np.asarray(point, dtype=np.float64)
        lead = point.shape[:-1]
        count = self.parameter_count()
        distorted, J_point, J_coeffs = self._on_finite_rows(
            point.reshape(-1, 2),
            lambda rows: self._project(rows, coeffs),
            [(2,), (2, 2), (2, count)],
        )
        return (
            distorted.reshape(*lead, 2),
            J_point.reshape(*lead, 2, 2),
            J_coeffs.reshape(*lead, 2, count),
        )

    # --- Model hooks -------------------------------------------------------

    @abstractmethod
    def _project(
        self, points: np.ndarray, coeffs: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Forward warp of (N, 2) finite points.

        Returns:
            distorted (N, 2), d(distorted)/d(point) (N, 2, 2) and
            d(distorted)/d(coeffs) (N, 2, P).
        """

    @abstractmethod
    def _undistort(self, points: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """Inverse warp of (N, 2) finite points."""

    # --- Object protocol ---------------------------------------------------

    def clone(self) -> Distortion:
        """Return an independent copy of this model."""
        return type(self)(self._parameters.copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Distortion):
            return NotImplemented
        return type(self) is type(other) and np.array_equal(
            self._parameters, other._parameters
        )

    def print_parameters(self, out: TextIO | None = None, text: str = "") -> None:
        """Write the coefficients in human-readable form."""
        out = sys.stdout if out is None else out
        out.write(f"{text}Distortion: ({self.distortion_type})\n")
        for name, value in zip(self.parameter_names, self._parameters):
            out.write(f"    {name}: {value}\n")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._parameters.tolist()})"


# ---------------------------------------------------------------------------
# Concrete distortion models
# ---------------------------------------------------------------------------


class RadTanDistortion(Distortion):
    """Radial-tangential (plumb bob) distortion with coefficients k1, k2, p1, p2.

    Evaluated with ``cv2.projectPoints`` / ``cv2.undistortPoints``. The
    projectPoints Jacobian columns are rvec (0:3), tvec (3:6), focal (6:8),
    principal point (8:10) and the coefficients (10:14); at ``z = 1`` the
    tvec x/y columns equal the derivative w.r.t. the normalized point.
    """

    distortion_type = "radial-tangential"
    parameter_names = ("k1", "k2", "p1", "p2")

    @classmethod
    def create_test_distortion(cls) -> RadTanDistortion:
        return cls([-0.05, 0.01, 0.001, -0.002])

    def _project(
        self, points: np.ndarray, coeffs: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        distorted, jacobian = cv2.projectPoints(
            _homogeneous(points),
            rvec=_ZERO_VEC,
            tvec=_ZERO_VEC,
            cameraMatrix=_IDENTITY_K,
            distCoeffs=coeffs,
        )
        jacobian = jacobian.reshape(-1, 2, jacobian.shape[1])  # (N, 2, 14)
        return distorted.squeeze(1), jacobian[:, :, 3:5], jacobian[:, :, 10:14]

    def _undistort(self, points: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        src = points.reshape(-1, 1, 2)
        if hasattr(cv2, "undistortPointsIter"):
            # OpenCV 4.x only takes termination criteria through this overload
            undistorted = cv2.undistortPointsIter(
                src, _IDENTITY_K, coeffs, None, None, _UNDISTORT_CRITERIA
            )
        else:
            undistorted = cv2.undistortPoints(
                src,
                cameraMatrix=_IDENTITY_K,
                distCoeffs=coeffs,
                R=None,
                P=None,
                criteria=_UNDISTORT_CRITERIA,
            )
        return undistorted.squeeze(1)  # (N, 1, 2) -> (N, 2)


class EquidistantDistortion(Distortion):
    """Equidistant (Kannala-Brandt) fisheye distortion with coefficients k1..k4.

    ``theta_d = theta * (1 + k1 theta^2 + k2 theta^4 + k3 theta^6 + k4 theta^8)``
    with ``theta = atan(r)``; the point is rescaled radially by ``theta_d / r``.
    Evaluated with ``cv2.fisheye``, whose projectPoints Jacobian columns are
    focal (0:2), principal point (2:4), coefficients (4:8), rvec (8:11), tvec
    (11:14) and skew (14).
    """

    distortion_type = "equidistant"
    parameter_names = ("k1", "k2", "k3", "k4")

    @classmethod
    def create_test_distortion(cls) -> EquidistantDistortion:
        return cls([0.02, -0.005, 0.001, -0.0002])

    def _project(
        self, points: np.ndarray, coeffs: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        distorted, jacobian = cv2.fisheye.projectPoints(
            _homogeneous(points),  # cv2.fisheye expects (N, 1, 3)
            rvec=_ZERO_VEC,
            tvec=_ZERO_VEC,
            K=_IDENTITY_K,
            D=coeffs,
        )
        jacobian = jacobian.reshape(-1, 2, jacobian.shape[1])  # (N, 2, 15)
        return distorted.squeeze(1), jacobian[:, :, 11:13], jacobian[:, :, 4:8]

    def _undistort(self, points: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        undistorted = cv2.fisheye.undistortPoints(
            points.reshape(-1, 1, 2),
            K=_IDENTITY_K,
            D=coeffs,
            R=None,
            P=None,
            criteria=_UNDISTORT_CRITERIA,
        )
        return undistorted.squeeze(1)  # (N, 1, 2) -> (N, 2)


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------

_DISTORTION_TYPES: dict[str, type[Distortion]] = {
    RadTanDistortion.distortion_type: RadTanDistortion,
    EquidistantDistortion.distortion_type: EquidistantDistortion,
}


def create_distortion(name: str, parameters: np.ndarray | list[float]) -> Distortion:
    """Create a distortion model by its type name.

    Args:
        name: ``"radial-tangential"`` or ``"equidistant"``.
        parameters: Coefficient vector for the chosen model.

    Returns:
        The constructed distortion model.

    Raises:
        ValueError: If the name is unknown or the coefficients are invalid.
    """
    try:
        distortion_cls = _DISTORTION_TYPES[name]
    except KeyError as err:
        raise ValueError(
            f"Unknown distortion type '{name}'. Expected one of {sorted(_DISTORTION_TYPES)}."
        ) from err
    return distortion_cls(parameters)
