"""
Surface geometry sampler.

Turns DEM heights at a grid point and its right and top neighbors into a
Cartesian base point and a unit surface normal.
"""

import numpy as np
from typing import Tuple, Union
from dataclasses import dataclass
import logging

from .errors import Failure, FailureReason
from .georef import GeoReference

logger = logging.getLogger(__name__)


def is_nodata(value, nodata: float):
    """
    Elementwise no-data test for a height or an array of heights.

    A NaN marker matches NaN heights, since NaN never compares equal.
    """
    if np.isnan(nodata):
        return np.isnan(value)
    return np.equal(value, nodata)


class NoDataReporter:
    """
    Run-scoped sink for the "DEM has no-data" condition.

    The first occurrence is logged as an error and counted; later
    occurrences are only tallied as suppressed so that millions of grid
    cells do not flood the log. Not thread-safe; a race can at worst
    produce a duplicate log line.
    """

    def __init__(self):
        self.count = 0
        self.suppressed = 0

    def report(self, col: int, row: int) -> None:
        if self.count == 0:
            logger.error(f"Cannot handle DEMs with no-data (first found near col={col}, row={row}).")
            self.count += 1
        else:
            self.suppressed += 1


@dataclass(frozen=True)
class SurfaceSample:
    """Cartesian position of a grid point and the unit surface normal there."""
    base: np.ndarray
    normal: np.ndarray


def surface_normal(
    base: np.ndarray, right: np.ndarray, top: np.ndarray
) -> Union[np.ndarray, Failure]:
    """
    Unit normal of the surface through three points.

    The sign is fixed so that the normal points away from the planet for a
    north-up grid: n = -normalize((right - base) x (top - base)).
    """
    n = np.cross(right - base, top - base)
    length = np.linalg.norm(n)
    if length == 0 or not np.isfinite(length):
        return Failure(FailureReason.DEGENERATE_NORMAL, f"|n|={length}")
    return -n / length


def sample_surface(
    center_h: float,
    right_h: float,
    top_h: float,
    col: int,
    row: int,
    georef: GeoReference,
    shape: Tuple[int, int],
    nodata: float,
    reporter: NoDataReporter,
) -> Union[SurfaceSample, Failure]:
    """
    Sample position and normal at grid point (col, row).

    Args:
        center_h: Height at (col, row)
        right_h: Height at (col+1, row)
        top_h: Height at (col, row+1)
        col: Grid column
        row: Grid row
        georef: DEM geo-reference
        shape: DEM shape as (rows, cols)
        nodata: DEM no-data value
        reporter: Sink for the no-data condition

    Returns:
        SurfaceSample, or a Failure
    """
    rows, cols = shape
    if col >= cols - 1 or row >= rows - 1:
        return Failure(FailureReason.OUTSIDE_GRID, f"({col}, {row})")

    if is_nodata(center_h, nodata) or is_nodata(right_h, nodata) or is_nodata(top_h, nodata):
        reporter.report(col, row)
        return Failure(FailureReason.NO_DATA, f"({col}, {row})")

    base = georef.pixel_to_cartesian(col, row, center_h)
    right = georef.pixel_to_cartesian(col + 1, row, right_h)
    top = georef.pixel_to_cartesian(col, row + 1, top_h)

    normal = surface_normal(base, right, top)
    if isinstance(normal, Failure):
        return normal

    return SurfaceSample(base=base, normal=normal)
