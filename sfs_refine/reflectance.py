"""
Reflectance models.

Maps a surface normal and the sun/viewer geometry at a surface point to a
relative brightness. Three models are supported:

    - NO_REFLECTANCE: constant 1
    - LAMBERTIAN: cosine of the incidence angle
    - LUNAR_LAMBERTIAN: McEwen's lunar-Lambert blend with an empirical
      phase-angle correction exp(-c1*alpha) + c2

All positions are in the same planet-centered Cartesian frame.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple
import logging

import numpy as np

from .errors import InvariantViolation

logger = logging.getLogger(__name__)

DEFAULT_PHASE_COEFF_C1 = 1.383488
DEFAULT_PHASE_COEFF_C2 = 0.501149

# Below this cosine of the incidence angle the sun is too low for a
# reliable albedo estimate and the reflectance is taken as zero.
MIN_INCIDENCE_COSINE = 0.3

UNIT_NORMAL_TOLERANCE = 1.0e-4

# McEwen's limb-darkening polynomial, phase angle in degrees
LIMB_A = -0.019
LIMB_B = 0.000242
LIMB_C = -0.00000146


class ReflectanceModel(Enum):
    NO_REFLECTANCE = "none"
    LAMBERTIAN = "lambertian"
    LUNAR_LAMBERTIAN = "lunar_lambertian"

    @classmethod
    def from_name(cls, name: str) -> "ReflectanceModel":
        """Look up a model by its configuration name, case-insensitive."""
        key = str(name).strip().lower()
        for model in cls:
            if model.value == key or model.name.lower() == key:
                return model
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown reflectance model '{name}' (expected one of: {valid})")


@dataclass(frozen=True)
class ReflectanceParams:
    """Run-wide reflectance model selection and phase coefficients."""
    model: ReflectanceModel = ReflectanceModel.LUNAR_LAMBERTIAN
    phase_coeff_c1: float = DEFAULT_PHASE_COEFF_C1
    phase_coeff_c2: float = DEFAULT_PHASE_COEFF_C2


def _normalize(v: np.ndarray) -> np.ndarray:
    return v / np.linalg.norm(v)


def check_unit_normal(normal: np.ndarray) -> None:
    """Raise InvariantViolation if the normal is not of unit length."""
    length2 = float(np.dot(normal, normal))
    if abs(length2 - 1.0) > UNIT_NORMAL_TOLERANCE:
        raise InvariantViolation(
            f"Expecting unit normal in the reflectance computation, got |n|^2={length2}"
        )


def phase_angle(
    sun_position: np.ndarray,
    view_position: np.ndarray,
    surface_point: np.ndarray,
) -> float:
    """
    Angle between the sun and viewer directions seen from a surface point.

    Returns:
        Phase angle in radians
    """
    sun_dir = _normalize(sun_position - surface_point)
    view_dir = _normalize(view_position - surface_point)
    cos_alpha = float(np.dot(sun_dir, view_dir))
    if cos_alpha > 1.0 or cos_alpha < -1.0:
        logger.debug(f"cos_alpha out of range: {cos_alpha}")
        cos_alpha = min(1.0, max(-1.0, cos_alpha))
    return float(np.arccos(cos_alpha))


def lambertian_reflectance(
    sun_position: np.ndarray,
    surface_point: np.ndarray,
    normal: np.ndarray,
) -> float:
    """Cosine of the angle between the sun direction and the normal."""
    sun_dir = _normalize(sun_position - surface_point)
    return float(np.dot(sun_dir, normal))


def limb_darkening(deg_alpha: float) -> float:
    """McEwen's cubic limb-darkening weight L for a phase angle in degrees."""
    return 1.0 + LIMB_A * deg_alpha + LIMB_B * deg_alpha ** 2 + LIMB_C * deg_alpha ** 3


def lunar_lambertian_reflectance(
    sun_position: np.ndarray,
    view_position: np.ndarray,
    surface_point: np.ndarray,
    normal: np.ndarray,
    phase_coeff_c1: float,
    phase_coeff_c2: float,
) -> Tuple[float, float]:
    """
    Lunar-Lambertian reflectance with phase-angle correction.

        R = 2*L*mu0/(mu0 + mu) + (1 - L)*mu0
        R *= exp(-c1*alpha) + c2

    where mu0 and mu are the cosines of the incidence and emission angles
    and L is the limb-darkening weight at phase angle alpha.

    Args:
        sun_position: Sun position (planet-centered)
        view_position: Camera position (planet-centered)
        surface_point: Surface point (planet-centered)
        normal: Unit surface normal
        phase_coeff_c1: Exponential phase coefficient
        phase_coeff_c2: Additive phase coefficient

    Returns:
        Tuple of (reflectance, phase angle in radians)
    """
    check_unit_normal(normal)

    alpha = phase_angle(sun_position, view_position, surface_point)

    sun_dir = _normalize(sun_position - surface_point)
    mu_0 = float(np.dot(sun_dir, normal))
    if mu_0 < MIN_INCIDENCE_COSINE:
        return 0.0, alpha

    view_dir = _normalize(view_position - surface_point)
    mu = float(np.dot(view_dir, normal))
    if mu < 0.0:  # emission angle beyond 90 degrees
        mu = 0.0

    L = limb_darkening(np.degrees(alpha))

    if mu_0 + mu == 0:
        return 0.0, alpha
    reflectance = 2 * L * mu_0 / (mu_0 + mu) + (1 - L) * mu_0
    if reflectance <= 0:
        return 0.0, alpha

    reflectance *= np.exp(-phase_coeff_c1 * alpha) + phase_coeff_c2
    if reflectance <= 0:
        return 0.0, alpha

    return float(reflectance), alpha


def compute_reflectance(
    normal: np.ndarray,
    surface_point: np.ndarray,
    sun_position: np.ndarray,
    view_position: np.ndarray,
    params: ReflectanceParams,
) -> Tuple[float, float]:
    """
    Evaluate the configured reflectance model at a surface point.

    Args:
        normal: Unit surface normal
        surface_point: Surface point (planet-centered)
        sun_position: Sun position (planet-centered)
        view_position: Camera position (planet-centered)
        params: Model selection and phase coefficients

    Returns:
        Tuple of (reflectance, phase angle in radians)
    """
    normal = np.asarray(normal, dtype=np.float64)
    surface_point = np.asarray(surface_point, dtype=np.float64)
    sun_position = np.asarray(sun_position, dtype=np.float64)
    view_position = np.asarray(view_position, dtype=np.float64)

    if params.model is ReflectanceModel.LUNAR_LAMBERTIAN:
        return lunar_lambertian_reflectance(
            sun_position, view_position, surface_point, normal,
            params.phase_coeff_c1, params.phase_coeff_c2,
        )

    check_unit_normal(normal)
    alpha = phase_angle(sun_position, view_position, surface_point)

    if params.model is ReflectanceModel.LAMBERTIAN:
        return lambertian_reflectance(sun_position, surface_point, normal), alpha

    return 1.0, alpha
