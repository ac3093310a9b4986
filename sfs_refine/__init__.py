"""
Shape-from-Shading DEM Refinement Package

Refines a digital elevation model so that the intensities predicted by a
photometric reflectance model match those observed in orbital images,
balanced against a second-order smoothness term.

Coordinate System Chain:
    DEM grid (col, row) → Geodetic (lon, lat, h) → Planet-centered XYZ → Image (x, y)

Conventions:
    - Heights in meters above the datum, grid positions at pixel centers
    - Sun and camera positions in planet-centered Cartesian meters
    - Camera frame: X-right, Y-down, Z-forward

Supported Reflectance Models:
    - none (constant reflectance)
    - Lambertian
    - Lunar-Lambertian with phase-angle correction
"""

from .config import Config, CameraIntrinsics, ImageEntry, SolverOptions
from .errors import (
    SfsError,
    PreconditionError,
    InvariantViolation,
    ProjectionError,
    Failure,
    FailureReason,
)
from .reflectance import ReflectanceModel, ReflectanceParams, compute_reflectance
from .georef import Datum, GeoReference
from .camera import PinholeCamera
from .geometry import NoDataReporter, sample_surface
from .observation import BilinearImage, ImageModelParams, compute_reflectance_and_intensity
from .residuals import IntensityResidual, SmoothnessResidual
from .problem import AffineParams, Problem, ProblemAssembler, estimate_affine_params
from .solver import SolveContext, SolveState, SolveSummary, refine_dem, run_refinement
from .raster_io import RasterWriter, read_dem, read_image
from .positions import read_position_file

__version__ = "0.1.0"
__all__ = [
    "Config",
    "CameraIntrinsics",
    "ImageEntry",
    "SolverOptions",
    "SfsError",
    "PreconditionError",
    "InvariantViolation",
    "ProjectionError",
    "Failure",
    "FailureReason",
    "ReflectanceModel",
    "ReflectanceParams",
    "compute_reflectance",
    "Datum",
    "GeoReference",
    "PinholeCamera",
    "NoDataReporter",
    "sample_surface",
    "BilinearImage",
    "ImageModelParams",
    "compute_reflectance_and_intensity",
    "IntensityResidual",
    "SmoothnessResidual",
    "AffineParams",
    "Problem",
    "ProblemAssembler",
    "estimate_affine_params",
    "SolveContext",
    "SolveState",
    "SolveSummary",
    "refine_dem",
    "run_refinement",
    "RasterWriter",
    "read_dem",
    "read_image",
    "read_position_file",
]
