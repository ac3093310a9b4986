"""
Residual functors for shape-from-shading.

Each functor is a pure function of the heights of a 3x3 neighborhood
centered at grid point (col, row):

    tl   = u(c-1, r+1)  top    = u(c, r+1)  tr    = u(c+1, r+1)
    left = u(c-1, r  )  center = u(c, r  )  right = u(c+1, r  )
    bl   = u(c-1, r-1)  bottom = u(c, r-1)  br    = u(c+1, r-1)

Functors never raise for per-sample problems. They return a
ResidualResult whose values are the SENTINEL on failure, so that the solver
sees a large, flat residual instead of an exception.
"""

import numpy as np
from typing import Optional, Sequence
from dataclasses import dataclass
import logging

from .camera import PinholeCamera
from .errors import Failure
from .geometry import NoDataReporter
from .georef import GeoReference
from .observation import BilinearImage, ImageModelParams, compute_reflectance_and_intensity
from .reflectance import ReflectanceParams

logger = logging.getLogger(__name__)

SENTINEL = 1e20

# Offsets (dcol, drow) of the neighborhood, in argument order
NEIGHBORHOOD = (
    (-1, 1), (0, 1), (1, 1),     # tl, top, tr
    (-1, 0), (0, 0), (1, 0),     # left, center, right
    (-1, -1), (0, -1), (1, -1),  # bl, bottom, br
)


@dataclass
class ResidualResult:
    """Residual values of one block and whether they could be computed."""
    values: np.ndarray
    ok: bool = True
    failure: Optional[Failure] = None


class IntensityResidual:
    """
    Discrepancy between observed intensity and scaled reflectance:

        residual = I - A[0]*reflectance - A[1]

    Only center, right and top heights influence the value; the full
    neighborhood is bound so that both residual kinds share one stencil.
    """

    num_residuals = 1

    def __init__(
        self,
        col: int,
        row: int,
        shape: Sequence[int],
        georef: GeoReference,
        reflectance_params: ReflectanceParams,
        model_params: ImageModelParams,
        image: BilinearImage,
        camera: PinholeCamera,
        nodata: float,
        reporter: NoDataReporter,
    ):
        self.col = col
        self.row = row
        self.shape = tuple(shape)
        self.georef = georef
        self.reflectance_params = reflectance_params
        self.model_params = model_params
        self.image = image
        self.camera = camera
        self.nodata = nodata
        self.reporter = reporter

    def __call__(
        self, A,
        tl, top, tr,
        left, center, right,
        bl, bottom, br,
    ) -> ResidualResult:
        residuals = np.full(1, SENTINEL)

        result = compute_reflectance_and_intensity(
            center, right, top,
            self.col, self.row, self.georef, self.shape, self.nodata,
            self.reflectance_params, self.model_params,
            self.image, self.camera, self.reporter,
        )
        if isinstance(result, Failure):
            return ResidualResult(residuals, ok=False, failure=result)

        reflectance, intensity = result
        residuals[0] = intensity - A[0] * reflectance - A[1]
        return ResidualResult(residuals)


class SmoothnessResidual:
    """
    Weighted second-order finite differences of the height field:

        weight * (u_xx, u_xy, u_yx, u_yy)

    See https://en.wikipedia.org/wiki/Finite_difference for the formulas.
    """

    num_residuals = 4

    def __init__(self, smoothness_weight: float, grid_size: float):
        self.smoothness_weight = smoothness_weight
        self.grid_size = grid_size

    def __call__(
        self,
        tl, top, tr,
        left, center, right,
        bl, bottom, br,
    ) -> ResidualResult:
        heights = (tl, top, tr, left, center, right, bl, bottom, br)
        if not np.all(np.isfinite(heights)):
            return ResidualResult(np.full(4, SENTINEL), ok=False)

        gs = self.grid_size * self.grid_size
        u_xy = (tr + bl - tl - br) / 4.0 / gs
        residuals = np.array([
            (left + right - 2 * center) / gs,  # u_xx
            u_xy,                              # u_xy
            u_xy,                              # u_yx
            (top + bottom - 2 * center) / gs,  # u_yy
        ])
        return ResidualResult(residuals * self.smoothness_weight)
