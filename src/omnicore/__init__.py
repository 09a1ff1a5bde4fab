"""OmniCore: unified projection camera model for omnidirectional cameras."""

from importlib.metadata import PackageNotFoundError, version

from .camera import MINIMUM_DEPTH, Camera, PinholeCamera, create_camera
from .distortion import (
    Distortion,
    EquidistantDistortion,
    RadTanDistortion,
    create_distortion,
)
from .types import (
    InterpolationMethod,
    Mat3,
    Projection,
    ProjectionResult,
    ProjectionStatus,
    UndistortionParams,
    Vec2,
    Vec3,
)
from .undistortion import (
    MappedUndistorter,
    build_undistort_map,
    compute_undistortion_maps,
    get_optimal_new_camera_matrix,
    undistort_image,
)
from .unified import UnifiedProjectionCamera

__all__ = [
    "MINIMUM_DEPTH",
    "Camera",
    "Distortion",
    "EquidistantDistortion",
    "InterpolationMethod",
    "MappedUndistorter",
    "Mat3",
    "PinholeCamera",
    "Projection",
    "ProjectionResult",
    "ProjectionStatus",
    "RadTanDistortion",
    "UndistortionParams",
    "UnifiedProjectionCamera",
    "Vec2",
    "Vec3",
    "build_undistort_map",
    "compute_undistortion_maps",
    "create_camera",
    "create_distortion",
    "get_optimal_new_camera_matrix",
    "undistort_image",
]

try:
    __version__ = version(__name__)
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
