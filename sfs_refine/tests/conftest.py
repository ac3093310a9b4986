"""
Shared synthetic scene: a small lunar DEM around lon 0, lat 0 viewed by a
camera 100 km overhead, with the sun far away along +X.
"""

import pytest
import numpy as np
from rasterio.transform import Affine

from sfs_refine.camera import PinholeCamera
from sfs_refine.config import CameraIntrinsics, SolverOptions
from sfs_refine.geometry import NoDataReporter
from sfs_refine.georef import MOON_RADIUS, GeoReference
from sfs_refine.observation import BilinearImage, ImageModelParams
from sfs_refine.reflectance import ReflectanceModel, ReflectanceParams
from sfs_refine.solver import SolveContext

NODATA = -32768.0
HEIGHT = 1000.0


class RecordingWriter:
    """Stands in for RasterWriter, keeping copies of what would be written."""

    def __init__(self):
        self.written = {}

    def write(self, path, array, nodata):
        self.written[path] = (np.array(array, copy=True), nodata)


def grid_transform(size: int) -> Affine:
    """Geographic transform of 0.001 deg cells centered on lon 0, lat 0."""
    half = 0.0005 * size
    return Affine(0.001, 0.0, -half, 0.0, -0.001, half)


@pytest.fixture
def make_context(tmp_path):
    """Factory for a SolveContext over a synthetic scene."""

    def _make(dem, intensity=0.5, sun=None, model=ReflectanceModel.LAMBERTIAN, **options):
        rows, cols = dem.shape
        georef = GeoReference(grid_transform(cols))
        center = np.array([MOON_RADIUS + HEIGHT + 1e5, 0.0, 0.0])
        camera = PinholeCamera(CameraIntrinsics(1000.0, 1000.0, 16.0, 16.0), center)
        sun = np.array([1.5e11, 0.0, 0.0]) if sun is None else np.asarray(sun, dtype=float)
        return SolveContext(
            output_prefix=str(tmp_path / "run" / "out"),
            dem=dem,
            georef=georef,
            nodata=NODATA,
            reflectance_params=ReflectanceParams(model=model),
            model_params=[ImageModelParams(name="img", sun_position=sun, camera_position=center)],
            images=[BilinearImage(np.full((32, 32), intensity))],
            cameras=[camera],
            writer=RecordingWriter(),
            options=SolverOptions(**options),
            reporter=NoDataReporter(),
        )

    return _make
