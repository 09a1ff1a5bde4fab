"""Tests for undistortion.py: output camera, remap tables and image remapping."""

import logging

import cv2
import numpy as np
import pytest
import torch

from omnicore import (
    InterpolationMethod,
    PinholeCamera,
    RadTanDistortion,
    UndistortionParams,
    UnifiedProjectionCamera,
    build_undistort_map,
    compute_undistortion_maps,
    get_optimal_new_camera_matrix,
    undistort_image,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

_IMAGE_SIZE = (640, 480)  # (width, height)
_W, _H = _IMAGE_SIZE


@pytest.fixture
def distorted_camera() -> UnifiedProjectionCamera:
    """Reference unified camera with radial-tangential distortion."""
    return UnifiedProjectionCamera.create_test_camera(RadTanDistortion.create_test_distortion())


@pytest.fixture
def undistorted_camera() -> UnifiedProjectionCamera:
    """Reference unified camera without distortion."""
    return UnifiedProjectionCamera.create_test_camera()


@pytest.fixture
def rgb_image() -> torch.Tensor:
    """Synthetic (H, W, 3) uint8 image tensor."""
    return torch.randint(0, 255, (_H, _W, 3), dtype=torch.uint8)


@pytest.fixture
def gray_image() -> torch.Tensor:
    """Synthetic (H, W) uint8 image tensor."""
    return torch.randint(0, 255, (_H, _W), dtype=torch.uint8)


def _identity_grid(width: int, height: int) -> tuple[np.ndarray, np.ndarray]:
    return np.meshgrid(np.arange(width, dtype=np.float32), np.arange(height, dtype=np.float32))


# ---------------------------------------------------------------------------
# get_optimal_new_camera_matrix
# ---------------------------------------------------------------------------


def test_optimal_matrix_without_distortion_is_identity(
    undistorted_camera: UnifiedProjectionCamera,
) -> None:
    """Without distortion the unified output camera keeps the input intrinsics."""
    K = get_optimal_new_camera_matrix(undistorted_camera, 0.0, 1.0, False)
    expected = np.array([[400.0, 0.0, 320.0], [0.0, 400.0, 240.0], [0.0, 0.0, 1.0]])
    np.testing.assert_allclose(K, expected, atol=1e-9)


def test_optimal_matrix_scales_with_output(undistorted_camera: UnifiedProjectionCamera) -> None:
    """Halving the output size roughly halves the focal length."""
    K_full = get_optimal_new_camera_matrix(undistorted_camera, 0.0, 1.0, False)
    K_half = get_optimal_new_camera_matrix(undistorted_camera, 0.0, 0.5, False)
    assert K_half[0, 0] == pytest.approx(K_full[0, 0] * 319.0 / 639.0)
    assert K_half[1, 1] == pytest.approx(K_full[1, 1] * 239.0 / 479.0)


@pytest.mark.parametrize("to_pinhole", [False, True])
def test_optimal_matrix_alpha_zooms_out(
    distorted_camera: UnifiedProjectionCamera, to_pinhole: bool
) -> None:
    """alpha = 1 (all source pixels) never has a longer focal length than alpha = 0."""
    K0 = get_optimal_new_camera_matrix(distorted_camera, 0.0, 1.0, to_pinhole)
    K1 = get_optimal_new_camera_matrix(distorted_camera, 1.0, 1.0, to_pinhole)
    assert K1[0, 0] <= K0[0, 0]
    assert K1[1, 1] <= K0[1, 1]
    np.testing.assert_array_equal(K0[2], [0.0, 0.0, 1.0])


@pytest.mark.parametrize(("alpha", "scale"), [(-0.5, 1.0), (1.5, 1.0), (0.5, 0.0)])
def test_optimal_matrix_rejects_parameters(
    distorted_camera: UnifiedProjectionCamera, alpha: float, scale: float
) -> None:
    """Out-of-range alpha or scale raise ValueError."""
    with pytest.raises(ValueError):
        get_optimal_new_camera_matrix(distorted_camera, alpha, scale, False)


# ---------------------------------------------------------------------------
# MappedUndistorter
# ---------------------------------------------------------------------------


def test_mapped_undistorter_output_camera(distorted_camera: UnifiedProjectionCamera) -> None:
    """The unified output camera keeps xi, drops distortion and has the scaled size."""
    undistorter = distorted_camera.create_mapped_undistorter(0.0, 0.5)
    output = undistorter.output_camera
    assert isinstance(output, UnifiedProjectionCamera)
    assert output.xi == distorted_camera.xi
    assert output.distortion is None
    assert (output.image_width, output.image_height) == (320, 240)
    assert undistorter.map_u.shape == (240, 320, 2)
    assert undistorter.interpolation is InterpolationMethod.LINEAR


@pytest.mark.parametrize("to_pinhole", [False, True])
def test_mapped_undistorter_defaults_to_fixed_point(
    distorted_camera: UnifiedProjectionCamera, to_pinhole: bool
) -> None:
    """Undistorters build CV_16SC2 maps unless float maps are requested."""
    if to_pinhole:
        fixed = distorted_camera.create_mapped_undistorter_to_pinhole(0.0, 1.0)
        floating = distorted_camera.create_mapped_undistorter_to_pinhole(
            0.0, 1.0, map_type=cv2.CV_32FC1
        )
    else:
        fixed = distorted_camera.create_mapped_undistorter(0.0, 1.0)
        floating = distorted_camera.create_mapped_undistorter(0.0, 1.0, map_type=cv2.CV_32FC1)

    assert fixed.map_u.dtype == np.int16
    assert fixed.map_u.shape == (_H, _W, 2)
    assert fixed.map_v.dtype == np.uint16
    assert fixed.map_v.shape == (_H, _W)
    assert floating.map_u.dtype == np.float32
    assert floating.map_u.shape == (_H, _W)

    # Both layouts remap a smooth image to the same result up to rounding
    grid_u, grid_v = _identity_grid(_W, _H)
    image = (grid_u * 0.2 + grid_v * 0.2).astype(np.uint8)
    diff = fixed.process_image(image).astype(int) - floating.process_image(image).astype(int)
    assert np.abs(diff[10:-10, 10:-10]).max() <= 2


def test_mapped_undistorter_to_pinhole(distorted_camera: UnifiedProjectionCamera) -> None:
    """The to-pinhole undistorter produces a pinhole output camera."""
    undistorter = distorted_camera.create_mapped_undistorter_to_pinhole(
        0.0, 1.0, InterpolationMethod.CUBIC
    )
    assert isinstance(undistorter.output_camera, PinholeCamera)
    assert undistorter.interpolation is InterpolationMethod.CUBIC


def test_mapped_undistorter_clones_input(distorted_camera: UnifiedProjectionCamera) -> None:
    """The undistorter holds its own copy of the input camera."""
    undistorter = distorted_camera.create_mapped_undistorter(0.0, 1.0)
    assert undistorter.input_camera == distorted_camera
    assert undistorter.input_camera is not distorted_camera
    assert undistorter.input_camera.distortion is not distorted_camera.distortion


@pytest.mark.parametrize(("alpha", "scale"), [(-0.1, 1.0), (1.1, 1.0), (0.5, -1.0)])
def test_mapped_undistorter_rejects_parameters(
    distorted_camera: UnifiedProjectionCamera, alpha: float, scale: float
) -> None:
    """Out-of-range alpha or scale raise ValueError for both variants."""
    with pytest.raises(ValueError):
        distorted_camera.create_mapped_undistorter(alpha, scale)
    with pytest.raises(ValueError):
        distorted_camera.create_mapped_undistorter_to_pinhole(alpha, scale)


@pytest.mark.parametrize("to_pinhole", [False, True])
def test_map_consistent_with_projection(
    distorted_camera: UnifiedProjectionCamera, to_pinhole: bool
) -> None:
    """Each map entry is the input-camera projection of the output pixel's bearing."""
    if to_pinhole:
        undistorter = distorted_camera.create_mapped_undistorter_to_pinhole(
            0.0, 1.0, map_type=cv2.CV_32FC1
        )
    else:
        undistorter = distorted_camera.create_mapped_undistorter(0.0, 1.0, map_type=cv2.CV_32FC1)

    for u, v in [(320, 240), (10, 15), (600, 50), (100, 450), (630, 470)]:
        bearing, success = undistorter.output_camera.back_project3(np.array([u, v], float))
        assert success
        expected = distorted_camera.project3(bearing).keypoint
        np.testing.assert_allclose(
            [undistorter.map_u[v, u], undistorter.map_v[v, u]], expected, atol=1e-2
        )


def test_invalid_pixels_map_to_minus_one() -> None:
    """Output pixels outside the liftable region get -1 in both maps."""
    cam = UnifiedProjectionCamera([2.0, 400.0, 400.0, 320.0, 240.0], _W, _H)
    undistorter = cam.create_mapped_undistorter(0.0, 1.0, map_type=cv2.CV_32FC1)
    assert undistorter.map_u[0, 0] == -1.0
    assert undistorter.map_v[0, 0] == -1.0
    assert undistorter.map_u[_H // 2, _W // 2] >= 0.0


def test_process_image_shape(distorted_camera: UnifiedProjectionCamera) -> None:
    """process_image returns an image of the output camera size and input dtype."""
    undistorter = distorted_camera.create_mapped_undistorter(0.0, 0.5)
    image = np.random.default_rng(0).integers(0, 255, (_H, _W, 3), dtype=np.uint8)
    out = undistorter.process_image(image)
    assert out.shape == (240, 320, 3)
    assert out.dtype == np.uint8


# ---------------------------------------------------------------------------
# build_undistort_map
# ---------------------------------------------------------------------------


def test_build_map_identity(undistorted_camera: UnifiedProjectionCamera) -> None:
    """Identical input and output cameras give an identity map."""
    map_u, map_v = build_undistort_map(
        undistorted_camera, undistorted_camera.clone(), False
    )
    grid_u, grid_v = _identity_grid(_W, _H)
    np.testing.assert_allclose(map_u, grid_u, atol=1e-3)
    np.testing.assert_allclose(map_v, grid_v, atol=1e-3)


def test_build_map_fixed_point(distorted_camera: UnifiedProjectionCamera) -> None:
    """CV_16SC2 maps use OpenCV's fixed-point layout."""
    output = UnifiedProjectionCamera.create_test_camera()
    map_xy, map_frac = build_undistort_map(distorted_camera, output, False, cv2.CV_16SC2)
    assert map_xy.shape == (_H, _W, 2)
    assert map_xy.dtype == np.int16
    assert map_frac.shape == (_H, _W)
    assert map_frac.dtype == np.uint16


def test_build_map_rejects_unknown_type(distorted_camera: UnifiedProjectionCamera) -> None:
    """Unsupported map types raise ValueError."""
    with pytest.raises(ValueError, match="Unsupported map type"):
        build_undistort_map(
            distorted_camera, UnifiedProjectionCamera.create_test_camera(), False, cv2.CV_32FC2
        )


def test_build_map_rejects_mismatched_output(distorted_camera: UnifiedProjectionCamera) -> None:
    """A to-pinhole map needs a pinhole output camera, and vice versa."""
    pinhole = PinholeCamera([400.0, 400.0, 320.0, 240.0], _W, _H)
    with pytest.raises(ValueError, match="undistort_to_pinhole"):
        build_undistort_map(distorted_camera, UnifiedProjectionCamera.create_test_camera(), True)
    with pytest.raises(ValueError, match="undistort_to_pinhole"):
        build_undistort_map(distorted_camera, pinhole, False)


def test_build_map_logs_summary(
    distorted_camera: UnifiedProjectionCamera, caplog: pytest.LogCaptureFixture
) -> None:
    """Map construction logs a one-line summary at info level."""
    with caplog.at_level(logging.INFO, logger="omnicore.undistortion"):
        distorted_camera.create_mapped_undistorter(0.0, 0.25)
    assert "Built 160x120 undistortion map" in caplog.text


# ---------------------------------------------------------------------------
# compute_undistortion_maps
# ---------------------------------------------------------------------------


def test_maps_shape(distorted_camera: UnifiedProjectionCamera) -> None:
    """Maps have shape (H, W)."""
    map_x, map_y = compute_undistortion_maps(distorted_camera)
    assert map_x.shape == (_H, _W), f"map_x shape {map_x.shape} != ({_H}, {_W})"
    assert map_y.shape == (_H, _W), f"map_y shape {map_y.shape} != ({_H}, {_W})"


def test_maps_dtype(distorted_camera: UnifiedProjectionCamera) -> None:
    """Maps are np.float32 arrays."""
    map_x, map_y = compute_undistortion_maps(distorted_camera)
    assert map_x.dtype == np.float32, f"map_x dtype {map_x.dtype} != float32"
    assert map_y.dtype == np.float32, f"map_y dtype {map_y.dtype} != float32"


def test_maps_scaled_output(distorted_camera: UnifiedProjectionCamera) -> None:
    """The scale parameter sets the output size."""
    map_x, _ = compute_undistortion_maps(distorted_camera, UndistortionParams(scale=0.5))
    assert map_x.shape == (_H // 2, _W // 2)


def test_maps_to_pinhole(distorted_camera: UnifiedProjectionCamera) -> None:
    """Pinhole output maps have the input size and finite values."""
    map_x, map_y = compute_undistortion_maps(
        distorted_camera, UndistortionParams(undistort_to_pinhole=True)
    )
    assert map_x.shape == (_H, _W)
    assert np.all(np.isfinite(map_x))
    assert np.all(np.isfinite(map_y))


def test_maps_contain_valid_coordinates(distorted_camera: UnifiedProjectionCamera) -> None:
    """Most map coordinate values are within valid pixel bounds."""
    map_x, map_y = compute_undistortion_maps(distorted_camera)
    assert not np.any(np.isnan(map_x)), "map_x contains NaN"
    assert not np.any(np.isnan(map_y)), "map_y contains NaN"
    frac_x_valid = np.mean((map_x >= 0) & (map_x < _W))
    frac_y_valid = np.mean((map_y >= 0) & (map_y < _H))
    assert frac_x_valid > 0.8, f"Only {frac_x_valid:.1%} of map_x within range"
    assert frac_y_valid > 0.8, f"Only {frac_y_valid:.1%} of map_y within range"


# ---------------------------------------------------------------------------
# undistort_image
# ---------------------------------------------------------------------------


def test_output_shape_matches_input(
    distorted_camera: UnifiedProjectionCamera, rgb_image: torch.Tensor
) -> None:
    """Output shape matches input shape (H, W, 3)."""
    maps = compute_undistortion_maps(distorted_camera)
    out = undistort_image(rgb_image, maps)
    assert out.shape == rgb_image.shape, f"Shape mismatch: {out.shape} != {rgb_image.shape}"


def test_output_dtype_uint8(
    distorted_camera: UnifiedProjectionCamera, rgb_image: torch.Tensor
) -> None:
    """uint8 input produces uint8 output."""
    maps = compute_undistortion_maps(distorted_camera)
    out = undistort_image(rgb_image, maps)
    assert out.dtype == torch.uint8, f"dtype {out.dtype} != uint8"


def test_output_device_matches_input(
    distorted_camera: UnifiedProjectionCamera, rgb_image: torch.Tensor, device: torch.device
) -> None:
    """Output tensor is on the same device as the input tensor."""
    maps = compute_undistortion_maps(distorted_camera)
    image = rgb_image.to(device)
    out = undistort_image(image, maps)
    assert out.device == image.device, (
        f"Device mismatch: output {out.device} != input {image.device}"
    )


def test_grayscale_image(
    distorted_camera: UnifiedProjectionCamera, gray_image: torch.Tensor
) -> None:
    """Single-channel (H, W) image is undistorted correctly."""
    maps = compute_undistortion_maps(distorted_camera)
    out = undistort_image(gray_image, maps, InterpolationMethod.NEAREST)
    assert out.shape == gray_image.shape, f"Shape mismatch: {out.shape} != {gray_image.shape}"
    assert out.dtype == torch.uint8


def test_identity_distortion(
    undistorted_camera: UnifiedProjectionCamera, rgb_image: torch.Tensor
) -> None:
    """Without distortion the undistorted image matches the original."""
    maps = compute_undistortion_maps(undistorted_camera)
    out = undistort_image(rgb_image, maps)
    orig_np = rgb_image.numpy().astype(np.int32)
    out_np = out.numpy().astype(np.int32)
    # Centre crop avoids border effects from remap
    margin = 40
    orig_crop = orig_np[margin : _H - margin, margin : _W - margin]
    out_crop = out_np[margin : _H - margin, margin : _W - margin]
    max_diff = np.max(np.abs(orig_crop - out_crop))
    assert max_diff <= 2, f"Max pixel diff {max_diff} exceeds tolerance 2 for zero distortion"
