"""
Camera model module for projecting planet-centered points to image pixels.

Implements the pinhole camera model with optional lens distortion.

Coordinate System:
    - World frame: planet-centered Cartesian (meters)
    - Camera frame: X-right, Y-down, Z along the optical axis
    - Image frame: u-right, v-down (origin at top-left corner)

Projection Model:
    1. World to camera: p_cam = R @ (p_world - C)
    2. Perspective projection: x' = X/Z, y' = Y/Z
    3. Distortion (optional): Apply radial and tangential distortion
    4. Pixel mapping: u = fx*x' + cx, v = fy*y' + cy
"""

import numpy as np
from typing import Optional, Tuple
import logging

from .config import CameraIntrinsics
from .errors import ProjectionError

logger = logging.getLogger(__name__)


class PinholeCamera:
    """
    Camera projection model implementing pinhole projection with distortion.

    The distortion model follows OpenCV conventions:
        - Radial distortion: k1, k2, k3
        - Tangential distortion: p1, p2
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        center: np.ndarray,
        rotation: Optional[np.ndarray] = None,
    ):
        """
        Initialize camera model.

        Args:
            intrinsics: Camera intrinsic parameters
            center: Camera center in the world frame (meters)
            rotation: 3x3 world-to-camera rotation (default: looking at the planet center)
        """
        self.fx = intrinsics.fx
        self.fy = intrinsics.fy
        self.cx = intrinsics.cx
        self.cy = intrinsics.cy

        self.k1 = intrinsics.k1
        self.k2 = intrinsics.k2
        self.k3 = intrinsics.k3
        self.p1 = intrinsics.p1
        self.p2 = intrinsics.p2

        self.has_distortion = not np.allclose(
            [self.k1, self.k2, self.k3, self.p1, self.p2], 0
        )

        self.center = np.asarray(center, dtype=np.float64)
        if rotation is None:
            rotation = self.look_at_rotation(self.center, np.zeros(3))
        self.rotation = np.asarray(rotation, dtype=np.float64)

        logger.debug(f"Camera model initialized: fx={self.fx}, fy={self.fy}, center={self.center}")

    @staticmethod
    def look_at_rotation(
        center: np.ndarray,
        target: np.ndarray,
        up: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        World-to-camera rotation for a camera at center looking at target.

        The camera Y axis (image down) is chosen opposite to the projection
        of 'up' onto the image plane. 'up' defaults to the world Z axis, or
        the world X axis when the view direction is parallel to Z.
        """
        z_axis = np.asarray(target, dtype=np.float64) - np.asarray(center, dtype=np.float64)
        z_axis /= np.linalg.norm(z_axis)

        if up is None:
            up = np.array([0.0, 0.0, 1.0])
            if abs(np.dot(up, z_axis)) > 0.999:
                up = np.array([1.0, 0.0, 0.0])
        up = np.asarray(up, dtype=np.float64)

        y_axis = -(up - np.dot(up, z_axis) * z_axis)
        y_axis /= np.linalg.norm(y_axis)
        x_axis = np.cross(y_axis, z_axis)

        return np.vstack([x_axis, y_axis, z_axis])

    @classmethod
    def look_at(
        cls,
        intrinsics: CameraIntrinsics,
        center: np.ndarray,
        target: np.ndarray,
        up: Optional[np.ndarray] = None,
    ) -> "PinholeCamera":
        """Build a camera at center aimed at target."""
        return cls(intrinsics, center, cls.look_at_rotation(center, target, up))

    def _apply_distortion(
        self, x_norm: float, y_norm: float
    ) -> Tuple[float, float]:
        """
        Apply lens distortion to normalized coordinates.

        Uses the Brown-Conrady distortion model (OpenCV convention).
        """
        r2 = x_norm ** 2 + y_norm ** 2
        r4 = r2 ** 2
        r6 = r2 ** 3

        radial = 1 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6

        x_tangential = 2 * self.p1 * x_norm * y_norm + self.p2 * (r2 + 2 * x_norm ** 2)
        y_tangential = self.p1 * (r2 + 2 * y_norm ** 2) + 2 * self.p2 * x_norm * y_norm

        return x_norm * radial + x_tangential, y_norm * radial + y_tangential

    def point_to_pixel(self, point_world: np.ndarray) -> Tuple[float, float]:
        """
        Project a world point to pixel coordinates.

        Args:
            point_world: Planet-centered point (meters)

        Returns:
            (u, v) pixel coordinates

        Raises:
            ProjectionError: If the point is behind the camera or the
                projection is not finite
        """
        X, Y, Z = self.rotation @ (np.asarray(point_world, dtype=np.float64) - self.center)

        if Z <= 0:
            raise ProjectionError(f"Point behind camera: Z={Z}")

        x_norm = X / Z
        y_norm = Y / Z

        if self.has_distortion:
            x_norm, y_norm = self._apply_distortion(x_norm, y_norm)

        u = self.fx * x_norm + self.cx
        v = self.fy * y_norm + self.cy

        if not (np.isfinite(u) and np.isfinite(v)):
            raise ProjectionError(f"Non-finite projection: ({u}, {v})")

        return float(u), float(v)
