"""
Raster input/output with rasterio.

Reads the input DEM and images, and writes the per-iteration GeoTIFF
artifacts with the DEM's geo-reference.
"""

import numpy as np
from pathlib import Path
from typing import Optional
from dataclasses import dataclass
import logging

import rasterio
from rasterio.transform import Affine
from pyproj import CRS

from .errors import PreconditionError
from .georef import GeoReference

logger = logging.getLogger(__name__)

# No-data value assumed when the DEM declares none
DEFAULT_NODATA = -32768.0


@dataclass
class DemRaster:
    """A DEM band and its geo-reference."""
    heights: np.ndarray
    georef: GeoReference
    nodata: float
    crs: Optional[CRS] = None

    @property
    def shape(self):
        return self.heights.shape


def read_dem(path: str) -> DemRaster:
    """
    Read band 1 of a georeferenced DEM as float64.

    Raises:
        FileNotFoundError: If the file does not exist
        PreconditionError: If the DEM carries no geo-reference
    """
    if not Path(path).exists():
        raise FileNotFoundError(f"DEM file not found: {path}")

    with rasterio.open(path) as src:
        heights = src.read(1).astype(np.float64)
        transform = src.transform
        nodata = src.nodata
        crs = CRS.from_wkt(src.crs.to_wkt()) if src.crs is not None else None

    if transform == Affine.identity():
        raise PreconditionError(f"The input DEM has no georeference: {path}")

    if nodata is None:
        nodata = DEFAULT_NODATA
        logger.info(f"DEM has no no-data value, using {nodata}")

    logger.info(f"Loaded DEM {path}: {heights.shape[1]}x{heights.shape[0]}")
    return DemRaster(
        heights=heights,
        georef=GeoReference(transform, crs),
        nodata=float(nodata),
        crs=crs,
    )


def read_image(path: str) -> np.ndarray:
    """Read band 1 of an image as float64."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    with rasterio.open(path) as src:
        data = src.read(1).astype(np.float64)

    logger.debug(f"Loaded image {path}: {data.shape[1]}x{data.shape[0]}")
    return data


class RasterWriter:
    """
    Writes single-band float32 GeoTIFFs sharing one geo-reference.

    Example usage:
        writer = RasterWriter(dem.georef.transform, dem.crs)
        writer.write("run/out-final-DEM-0.tif", heights, nodata=-32768)
    """

    def __init__(self, transform: Affine, crs: Optional[CRS] = None):
        self.transform = transform
        self.crs = crs

    def write(self, path: str, array: np.ndarray, nodata: float) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

        height, width = array.shape
        profile = {
            'driver': 'GTiff',
            'dtype': 'float32',
            'width': width,
            'height': height,
            'count': 1,
            'transform': self.transform,
            'nodata': nodata,
            'compress': 'lzw',
        }
        if self.crs is not None:
            profile['crs'] = self.crs.to_wkt()

        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(array.astype(np.float32), 1)

        logger.info(f"Writing: {path}")
