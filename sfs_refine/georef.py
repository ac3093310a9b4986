"""
Geo-reference and datum module.

Maps DEM grid positions to geodetic coordinates and geodetic coordinates to
planet-centered Cartesian (XYZ) coordinates.

Coordinate System Chain:
    Grid (col, row) → CRS (x, y) → Geodetic (lon, lat) → Cartesian (X, Y, Z)

Conventions:
    - Grid positions refer to pixel centers
    - Longitude/latitude in degrees, heights in meters above the datum
    - Cartesian frame: X towards 0°lon, Y towards 90°E, Z towards the north pole
"""

import numpy as np
from typing import Optional, Tuple
from dataclasses import dataclass
import logging

from rasterio.transform import Affine
from pyproj import CRS, Transformer

logger = logging.getLogger(__name__)

# Lunar reference sphere
MOON_RADIUS = 1737400.0


@dataclass(frozen=True)
class Datum:
    """
    Reference ellipsoid used to convert geodetic to Cartesian coordinates.

    Attributes:
        semi_major: Equatorial radius in meters
        semi_minor: Polar radius in meters
        name: Human-readable name
    """
    semi_major: float = MOON_RADIUS
    semi_minor: float = MOON_RADIUS
    name: str = "D_MOON"

    @property
    def e2(self) -> float:
        """First eccentricity squared."""
        return 1.0 - (self.semi_minor / self.semi_major) ** 2

    @classmethod
    def from_crs(cls, crs: CRS) -> "Datum":
        """Build a datum from the ellipsoid of a CRS."""
        ellipsoid = crs.ellipsoid
        if ellipsoid is None:
            raise ValueError(f"CRS has no ellipsoid: {crs}")
        return cls(
            semi_major=ellipsoid.semi_major_metre,
            semi_minor=ellipsoid.semi_minor_metre,
            name=ellipsoid.name,
        )

    def geodetic_to_cartesian(
        self, lon: float, lat: float, h: float
    ) -> np.ndarray:
        """
        Convert geodetic coordinates to planet-centered Cartesian.

        Args:
            lon: Longitude in degrees
            lat: Latitude in degrees
            h: Height above the datum in meters

        Returns:
            Cartesian coordinates as (X, Y, Z) in meters
        """
        lat_rad = np.deg2rad(lat)
        lon_rad = np.deg2rad(lon)

        # Radius of curvature in the prime vertical
        N = self.semi_major / np.sqrt(1 - self.e2 * np.sin(lat_rad) ** 2)

        X = (N + h) * np.cos(lat_rad) * np.cos(lon_rad)
        Y = (N + h) * np.cos(lat_rad) * np.sin(lon_rad)
        Z = (N * (1 - self.e2) + h) * np.sin(lat_rad)

        return np.array([X, Y, Z])


class GeoReference:
    """
    Read-only mapping from DEM grid positions to geodetic coordinates.

    For a geographic CRS (or no CRS at all) the affine transform yields
    longitude/latitude directly. For a projected CRS the projected
    coordinates are converted to the CRS's own geodetic system with pyproj.
    """

    def __init__(
        self,
        transform: Affine,
        crs: Optional[CRS] = None,
        datum: Optional[Datum] = None,
    ):
        """
        Initialize the geo-reference.

        Args:
            transform: Affine transform from (col, row) to CRS coordinates
            crs: Coordinate reference system of the grid, if known
            datum: Datum for Cartesian conversion (default: from CRS, else lunar sphere)
        """
        self.transform = transform
        self.crs = crs
        self._to_lonlat: Optional[Transformer] = None

        if datum is None:
            datum = Datum.from_crs(crs) if crs is not None else Datum()
        self.datum = datum

        if crs is not None and crs.is_projected:
            self._to_lonlat = Transformer.from_crs(
                crs, crs.geodetic_crs, always_xy=True
            )

        logger.debug(f"GeoReference with datum {self.datum.name}, projected={self._to_lonlat is not None}")

    def pixel_to_point(self, col: float, row: float) -> Tuple[float, float]:
        """Map a grid position (pixel center) to CRS coordinates."""
        x, y = self.transform @ (col + 0.5, row + 0.5)
        return x, y

    def pixel_to_lonlat(self, col: float, row: float) -> Tuple[float, float]:
        """Map a grid position (pixel center) to longitude/latitude in degrees."""
        x, y = self.pixel_to_point(col, row)
        if self._to_lonlat is not None:
            x, y = self._to_lonlat.transform(x, y)
        return x, y

    def pixel_to_cartesian(self, col: float, row: float, height: float) -> np.ndarray:
        """Map a grid position and height to planet-centered Cartesian."""
        lon, lat = self.pixel_to_lonlat(col, row)
        return self.datum.geodetic_to_cartesian(lon, lat, height)

    def grid_size(self, cols: int, rows: int) -> float:
        """
        Average linear distance between adjacent grid points, in meters.

        Measured on the datum surface along the diagonal from the first to
        the last grid point.
        """
        if cols < 2 and rows < 2:
            raise ValueError("Need at least two grid points to compute a grid size")
        ul = self.pixel_to_cartesian(0, 0, 0.0)
        lr = self.pixel_to_cartesian(cols - 1, rows - 1, 0.0)
        return float(np.linalg.norm(ul - lr) / np.hypot(cols - 1, rows - 1))
