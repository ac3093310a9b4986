"""
Tests for the sfs-refine command-line entry point.
"""

import pytest
import numpy as np
import rasterio
from rasterio.transform import Affine

from sfs_refine.cli import main

DEM_TRANSFORM = Affine(0.001, 0.0, -0.0025, 0.0, -0.001, 0.0025)


def write_raw(path, array, transform=DEM_TRANSFORM, nodata=None):
    profile = {
        'driver': 'GTiff',
        'dtype': 'float32',
        'width': array.shape[1],
        'height': array.shape[0],
        'count': 1,
        'transform': transform,
    }
    if nodata is not None:
        profile['nodata'] = nodata
    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(array.astype(np.float32), 1)


class TestCommandLine:
    """Runs the sfs-refine entry point on files."""

    @pytest.fixture
    def scene(self, tmp_path):
        rng = np.random.default_rng(0)
        write_raw(tmp_path / "dem.tif", 1000.0 + rng.normal(0.0, 2.0, size=(5, 5)), nodata=-32768.0)
        write_raw(tmp_path / "img0.tif", np.full((32, 32), 0.5), transform=Affine(1, 0, 0, 0, -1, 32))

        (tmp_path / "sun.txt").write_text("img0 1.0e11 0.5e11 0.0\n")
        (tmp_path / "spacecraft.txt").write_text("img0 1838400.0 0.0 0.0\n")

        (tmp_path / "config.yaml").write_text(
            "dem: dem.tif\n"
            "output_prefix: run/out\n"
            "images:\n"
            "  - path: img0.tif\n"
            "    camera: {fx: 1000.0, fy: 1000.0, cx: 16.0, cy: 16.0}\n"
            "sun_positions: sun.txt\n"
            "spacecraft_positions: spacecraft.txt\n"
            "reflectance: {model: lambertian}\n"
        )
        return tmp_path

    def test_refines(self, scene):
        status = main([str(scene / "config.yaml"), "-n", "2"])

        assert status == 0
        assert (scene / "run" / "out-final-DEM-0.tif").exists()
        assert (scene / "run" / "out-measured-intensity-0.tif").exists()
        assert (scene / "run" / "out-computed-intensity-0.tif").exists()

    def test_output_prefix_override(self, scene):
        status = main([str(scene / "config.yaml"), "-n", "0", "-o", str(scene / "other" / "run")])

        assert status == 0
        assert (scene / "other" / "run-final-DEM-0.tif").exists()

    def test_missing_position_record(self, scene):
        (scene / "sun.txt").write_text("img1 1.0e11 0.5e11 0.0\n")
        assert main([str(scene / "config.yaml")]) == 1

    def test_negative_iterations(self, scene):
        assert main([str(scene / "config.yaml"), "-n", "-1"]) == 1
