"""
Error taxonomy for DEM refinement.

Two kinds of problems are distinguished:
    - Input-level problems (bad DEM, missing geo-reference, non-unit normal)
      raise exceptions and abort the run.
    - Sample-level problems (projection failure, out-of-bounds pixel,
      no-data height) are returned as ``Failure`` values so that residual
      evaluation never unwinds the solver.
"""

from dataclasses import dataclass
from enum import Enum


class SfsError(Exception):
    """Base class for all refinement errors."""


class PreconditionError(SfsError):
    """Fatal input condition, the run cannot proceed."""


class InvariantViolation(SfsError):
    """An internal invariant does not hold (e.g. non-unit normal)."""


class ProjectionError(SfsError):
    """A camera could not map a point to a pixel."""


class FailureReason(Enum):
    NO_DATA = "no_data"
    OUTSIDE_GRID = "outside_grid"
    DEGENERATE_NORMAL = "degenerate_normal"
    PROJECTION_FAILED = "projection_failed"
    OUT_OF_BOUNDS = "out_of_bounds"


@dataclass(frozen=True)
class Failure:
    """A recoverable per-sample failure."""
    reason: FailureReason
    detail: str = ""
