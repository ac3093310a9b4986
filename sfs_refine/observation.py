"""
Pixel observation model.

Combines the surface geometry sampler, the reflectance model and a camera
to produce, for one DEM grid point, the modelled reflectance and the
intensity observed in an image.
"""

import numpy as np
from typing import Tuple, Union
from dataclasses import dataclass
import logging

from scipy.ndimage import map_coordinates

from .camera import PinholeCamera
from .errors import Failure, FailureReason, ProjectionError
from .geometry import NoDataReporter, sample_surface
from .georef import GeoReference
from .reflectance import ReflectanceParams, compute_reflectance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageModelParams:
    """
    Illumination and viewing geometry of one image.

    Attributes:
        name: Image name (file stem)
        sun_position: Sun position relative to the planet center (meters)
        camera_position: Camera center relative to the planet center (meters)
    """
    name: str
    sun_position: np.ndarray
    camera_position: np.ndarray


class BilinearImage:
    """
    Single-band image with bilinear sampling at fractional pixels.

    Pixel (x, y) addresses column x and row y.
    """

    def __init__(self, data: np.ndarray):
        self.data = np.asarray(data, dtype=np.float64)
        if self.data.ndim != 2:
            raise ValueError(f"Expected a 2D image, got shape {self.data.shape}")

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    def sample(self, x: float, y: float) -> float:
        """Bilinear interpolation at column x, row y."""
        value = map_coordinates(self.data, [[y], [x]], order=1, mode='nearest')
        return float(value[0])


def project_and_sample(
    camera: PinholeCamera,
    surface_point: np.ndarray,
    image: BilinearImage,
) -> Union[float, Failure]:
    """
    Project a surface point into an image and sample its intensity.

    A one-pixel margin is kept at the right and bottom so that the bilinear
    stencil stays inside the image.

    Returns:
        Intensity, or a Failure if the projection failed or fell outside
        [0, cols-2] x [0, rows-2]
    """
    try:
        x, y = camera.point_to_pixel(surface_point)
    except ProjectionError as e:
        return Failure(FailureReason.PROJECTION_FAILED, str(e))

    if x < 0 or x >= image.cols - 1 or y < 0 or y >= image.rows - 1:
        return Failure(FailureReason.OUT_OF_BOUNDS, f"pixel ({x:.2f}, {y:.2f})")

    return image.sample(x, y)


def compute_reflectance_and_intensity(
    center_h: float,
    right_h: float,
    top_h: float,
    col: int,
    row: int,
    georef: GeoReference,
    shape: Tuple[int, int],
    nodata: float,
    reflectance_params: ReflectanceParams,
    model_params: ImageModelParams,
    image: BilinearImage,
    camera: PinholeCamera,
    reporter: NoDataReporter,
) -> Union[Tuple[float, float], Failure]:
    """
    Model reflectance and sample observed intensity at one grid point.

    Args:
        center_h, right_h, top_h: Heights at (col, row), (col+1, row), (col, row+1)
        col, row: Grid position
        georef: DEM geo-reference
        shape: DEM shape as (rows, cols)
        nodata: DEM no-data value
        reflectance_params: Reflectance model selection
        model_params: Sun and camera positions of the image
        image: Image to sample
        camera: Camera of the image
        reporter: No-data reporter for this run

    Returns:
        (reflectance, intensity), or a Failure
    """
    surface = sample_surface(
        center_h, right_h, top_h, col, row, georef, shape, nodata, reporter
    )
    if isinstance(surface, Failure):
        return surface

    reflectance, _ = compute_reflectance(
        surface.normal, surface.base,
        model_params.sun_position, model_params.camera_position,
        reflectance_params,
    )

    intensity = project_and_sample(camera, surface.base, image)
    if isinstance(intensity, Failure):
        return intensity

    return reflectance, intensity


def reflectance_and_intensity_images(
    dem: np.ndarray,
    georef: GeoReference,
    nodata: float,
    reflectance_params: ReflectanceParams,
    model_params: ImageModelParams,
    image: BilinearImage,
    camera: PinholeCamera,
    reporter: NoDataReporter,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Evaluate reflectance and intensity over the whole DEM.

    The last row and column have no right/top neighbors and are never valid.

    Returns:
        Tuple of (reflectance, intensity, valid) arrays shaped like the DEM;
        invalid pixels hold 0
    """
    rows, cols = dem.shape
    reflectance = np.zeros((rows, cols))
    intensity = np.zeros((rows, cols))
    valid = np.zeros((rows, cols), dtype=bool)

    for row in range(rows - 1):
        for col in range(cols - 1):
            result = compute_reflectance_and_intensity(
                dem[row, col], dem[row, col + 1], dem[row + 1, col],
                col, row, georef, dem.shape, nodata,
                reflectance_params, model_params, image, camera, reporter,
            )
            if isinstance(result, Failure):
                continue
            reflectance[row, col], intensity[row, col] = result
            valid[row, col] = True

    logger.debug(f"Valid reflectance/intensity samples: {int(valid.sum())}/{valid.size}")
    return reflectance, intensity, valid
