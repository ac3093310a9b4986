"""
Tests for the residual functors.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose
from rasterio.transform import Affine

from sfs_refine.camera import PinholeCamera
from sfs_refine.config import CameraIntrinsics
from sfs_refine.errors import Failure, FailureReason
from sfs_refine.geometry import NoDataReporter
from sfs_refine.georef import MOON_RADIUS, GeoReference
from sfs_refine.observation import BilinearImage, ImageModelParams, compute_reflectance_and_intensity
from sfs_refine.reflectance import ReflectanceModel, ReflectanceParams
from sfs_refine.residuals import SENTINEL, IntensityResidual, SmoothnessResidual

NODATA = -32768.0


def neighborhood(fn):
    """Heights fn(dcol, drow) in (tl, top, tr, left, center, right, bl, bottom, br) order."""
    offsets = [(-1, 1), (0, 1), (1, 1), (-1, 0), (0, 0), (1, 0), (-1, -1), (0, -1), (1, -1)]
    return [fn(dc, dr) for dc, dr in offsets]


class TestSmoothnessResidual:
    """Tests for the second-order smoothness term."""

    def test_constant_is_zero(self):
        residual = SmoothnessResidual(smoothness_weight=1.0, grid_size=2.0)
        result = residual(*neighborhood(lambda dc, dr: 7.0))
        assert result.ok
        assert_allclose(result.values, np.zeros(4), atol=1e-15)

    def test_plane_is_zero(self):
        residual = SmoothnessResidual(smoothness_weight=3.0, grid_size=5.0)
        result = residual(*neighborhood(lambda dc, dr: 10.0 + 2.0 * dc - 0.5 * dr))
        assert_allclose(result.values, np.zeros(4), atol=1e-12)

    def test_paraboloid(self):
        """u = x^2 + y^2 gives u_xx = u_yy = 2/gs^2 and no cross term."""
        gs = 2.0
        residual = SmoothnessResidual(smoothness_weight=1.0, grid_size=gs)
        result = residual(*neighborhood(lambda dc, dr: float(dc * dc + dr * dr)))
        assert_allclose(result.values, [2 / gs ** 2, 0.0, 0.0, 2 / gs ** 2])

    def test_saddle_cross_term(self):
        """u = x*y gives u_xy = u_yx = 1/gs^2."""
        gs = 3.0
        residual = SmoothnessResidual(smoothness_weight=2.0, grid_size=gs)
        result = residual(*neighborhood(lambda dc, dr: float(dc * dr)))
        assert_allclose(result.values, [0.0, 2.0 / gs ** 2, 2.0 / gs ** 2, 0.0])

    def test_weight_scales_linearly(self):
        heights = neighborhood(lambda dc, dr: float(dc ** 3 + dr))
        one = SmoothnessResidual(1.0, 1.0)(*heights).values
        five = SmoothnessResidual(5.0, 1.0)(*heights).values
        assert_allclose(five, 5.0 * one)

    def test_non_finite_gives_sentinel(self):
        heights = neighborhood(lambda dc, dr: 1.0)
        heights[4] = np.nan
        result = SmoothnessResidual(1.0, 1.0)(*heights)
        assert not result.ok
        assert_allclose(result.values, np.full(4, SENTINEL))


class TestIntensityResidual:
    """Tests for the photometric term."""

    @pytest.fixture
    def scene(self):
        georef = GeoReference(Affine(0.001, 0.0, -0.0025, 0.0, -0.001, 0.0025))
        center = np.array([MOON_RADIUS + 1000.0 + 1e5, 0.0, 0.0])
        camera = PinholeCamera(CameraIntrinsics(1000.0, 1000.0, 16.0, 16.0), center)
        ys, xs = np.mgrid[0:32, 0:32]
        image = BilinearImage(0.2 + 0.01 * xs + 0.005 * ys)
        model_params = ImageModelParams(
            name="img",
            sun_position=np.array([1.0e11, 1.0e11, 0.0]),
            camera_position=center,
        )
        return dict(
            georef=georef,
            camera=camera,
            image=image,
            model_params=model_params,
            reflectance_params=ReflectanceParams(model=ReflectanceModel.LAMBERTIAN),
        )

    def make(self, scene, col, row, reporter):
        return IntensityResidual(
            col, row, (5, 5), scene['georef'], scene['reflectance_params'],
            scene['model_params'], scene['image'], scene['camera'], NODATA, reporter,
        )

    def test_matches_observation_model(self, scene):
        reporter = NoDataReporter()
        heights = neighborhood(lambda dc, dr: 1000.0 + 3.0 * dc + 1.0 * dr)
        A = np.array([0.8, 0.05])

        result = self.make(scene, 2, 2, reporter)(A, *heights)

        expected = compute_reflectance_and_intensity(
            heights[4], heights[5], heights[1], 2, 2, scene['georef'], (5, 5), NODATA,
            scene['reflectance_params'], scene['model_params'], scene['image'],
            scene['camera'], reporter,
        )
        reflectance, intensity = expected
        assert result.ok
        assert result.values[0] == pytest.approx(intensity - A[0] * reflectance - A[1])

    def test_ignores_unused_neighbors(self, scene):
        reporter = NoDataReporter()
        A = np.array([1.0, 0.0])
        heights = neighborhood(lambda dc, dr: 1000.0)
        base = self.make(scene, 2, 2, reporter)(A, *heights).values[0]

        for i in (0, 2, 3, 6, 7, 8):  # tl, tr, left, bl, bottom, br
            changed = list(heights)
            changed[i] += 50.0
            assert self.make(scene, 2, 2, reporter)(A, *changed).values[0] == base

    def test_nodata_gives_sentinel(self, scene):
        reporter = NoDataReporter()
        heights = neighborhood(lambda dc, dr: 1000.0)
        heights[5] = NODATA  # right

        result = self.make(scene, 2, 2, reporter)(np.array([1.0, 0.0]), *heights)

        assert not result.ok
        assert result.failure.reason is FailureReason.NO_DATA
        assert result.values[0] == SENTINEL
        assert reporter.count == 1

    def test_outside_grid_gives_sentinel(self, scene):
        heights = neighborhood(lambda dc, dr: 1000.0)
        result = self.make(scene, 4, 2, NoDataReporter())(np.array([1.0, 0.0]), *heights)
        assert not result.ok
        assert isinstance(result.failure, Failure)
        assert result.values[0] == SENTINEL
