"""
Configuration module for shape-from-shading DEM refinement.

Handles loading and validation of configuration from YAML files.
"""

import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, List
import logging

from .reflectance import (
    DEFAULT_PHASE_COEFF_C1,
    DEFAULT_PHASE_COEFF_C2,
    ReflectanceModel,
    ReflectanceParams,
)

logger = logging.getLogger(__name__)


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters."""
    fx: float  # Focal length in x (pixels)
    fy: float  # Focal length in y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    k1: float = 0.0  # Radial distortion coefficient
    k2: float = 0.0  # Radial distortion coefficient
    k3: float = 0.0  # Radial distortion coefficient
    p1: float = 0.0  # Tangential distortion coefficient
    p2: float = 0.0  # Tangential distortion coefficient


@dataclass
class ImageEntry:
    """
    One input image and the geometry needed to model it.

    Sun and camera positions may be given inline or looked up by image name
    (file stem) in the position files referenced by the main config.
    """
    path: str
    camera: CameraIntrinsics
    rotation: Optional[List[List[float]]] = None  # world-to-camera, default nadir
    sun_position: Optional[List[float]] = None
    camera_position: Optional[List[float]] = None

    @property
    def name(self) -> str:
        return Path(self.path).stem


@dataclass
class SolverOptions:
    """Options controlling the optimization."""
    max_iterations: int = 100
    smoothness_weight: float = 1.0
    num_threads: int = 1
    gradient_tolerance: float = 1e-16
    function_tolerance: float = 1e-16
    use_all_images: bool = False  # Only the first image by default
    float_albedo: bool = False  # Optimize the affine parameters jointly
    show_progress: bool = False


@dataclass
class Config:
    """
    Main configuration class for DEM refinement.

    Attributes:
        dem: Path to the input DEM (GeoTIFF)
        output_prefix: Prefix for all output files
        images: Input images with their camera parameters
        reflectance: Reflectance model selection and phase coefficients
        solver: Solver options
        sun_positions: Optional file with 'name x y z' sun positions
        spacecraft_positions: Optional file with 'name x y z' camera centers
    """
    dem: str
    output_prefix: str
    images: List[ImageEntry] = field(default_factory=list)
    reflectance: ReflectanceParams = field(default_factory=ReflectanceParams)
    solver: SolverOptions = field(default_factory=SolverOptions)
    sun_positions: Optional[str] = None
    spacecraft_positions: Optional[str] = None

    def validate(self) -> None:
        """Check the options, raising ValueError on the first problem."""
        if not self.dem:
            raise ValueError("Missing input DEM.")
        if not self.output_prefix:
            raise ValueError("Missing output prefix.")
        if self.solver.max_iterations < 0:
            raise ValueError("The number of iterations must be non-negative.")
        if self.solver.num_threads < 1:
            raise ValueError("The number of threads must be at least 1.")
        if not self.images:
            raise ValueError("Missing input images.")

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config object with loaded parameters

        Example YAML structure:
            dem: dem.tif
            output_prefix: results/run
            images:
              - path: M1234.tif
                camera: {fx: 5000.0, fy: 5000.0, cx: 512.0, cy: 512.0}
            sun_positions: sun_position.txt
            spacecraft_positions: spacecraft_position.txt
            reflectance:
              model: lunar_lambertian
              phase_coeff_c1: 1.383488
              phase_coeff_c2: 0.501149
            solver:
              max_iterations: 100
              smoothness_weight: 1.0
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")

        # Resolve paths relative to config file location
        config_dir = path.parent

        def resolve(p: Optional[str]) -> Optional[str]:
            return str(config_dir / p) if p else p

        # PyYAML reads exponents without a sign ("1.5e11") as strings
        def as_vector(v: Optional[List]) -> Optional[List[float]]:
            return [float(x) for x in v] if v is not None else None

        images = []
        for img in data.get('images', []):
            cam_data = img.get('camera', {})
            camera = CameraIntrinsics(
                fx=float(cam_data['fx']),
                fy=float(cam_data['fy']),
                cx=float(cam_data['cx']),
                cy=float(cam_data['cy']),
                k1=float(cam_data.get('k1', 0.0)),
                k2=float(cam_data.get('k2', 0.0)),
                k3=float(cam_data.get('k3', 0.0)),
                p1=float(cam_data.get('p1', 0.0)),
                p2=float(cam_data.get('p2', 0.0)),
            )
            images.append(ImageEntry(
                path=resolve(img['path']),
                camera=camera,
                rotation=img.get('rotation'),
                sun_position=as_vector(img.get('sun_position')),
                camera_position=as_vector(img.get('camera_position')),
            ))

        refl_data = data.get('reflectance', {})
        reflectance = ReflectanceParams(
            model=ReflectanceModel.from_name(refl_data.get('model', 'lunar_lambertian')),
            phase_coeff_c1=refl_data.get('phase_coeff_c1', DEFAULT_PHASE_COEFF_C1),
            phase_coeff_c2=refl_data.get('phase_coeff_c2', DEFAULT_PHASE_COEFF_C2),
        )

        solver_data = data.get('solver', {})
        defaults = SolverOptions()
        solver = SolverOptions(
            max_iterations=int(solver_data.get('max_iterations', defaults.max_iterations)),
            smoothness_weight=float(solver_data.get('smoothness_weight', defaults.smoothness_weight)),
            num_threads=int(solver_data.get('num_threads', defaults.num_threads)),
            gradient_tolerance=float(solver_data.get('gradient_tolerance', defaults.gradient_tolerance)),
            function_tolerance=float(solver_data.get('function_tolerance', defaults.function_tolerance)),
            use_all_images=bool(solver_data.get('use_all_images', defaults.use_all_images)),
            float_albedo=bool(solver_data.get('float_albedo', defaults.float_albedo)),
            show_progress=bool(solver_data.get('show_progress', defaults.show_progress)),
        )

        return cls(
            dem=resolve(data.get('dem')),
            output_prefix=resolve(data.get('output_prefix')),
            images=images,
            reflectance=reflectance,
            solver=solver,
            sun_positions=resolve(data.get('sun_positions')),
            spacecraft_positions=resolve(data.get('spacecraft_positions')),
        )

    def to_yaml(self, config_path: str) -> None:
        """Save configuration to a YAML file."""
        data = {
            'dem': self.dem,
            'output_prefix': self.output_prefix,
            'images': [
                {
                    'path': img.path,
                    'camera': {
                        'fx': img.camera.fx,
                        'fy': img.camera.fy,
                        'cx': img.camera.cx,
                        'cy': img.camera.cy,
                        'k1': img.camera.k1,
                        'k2': img.camera.k2,
                        'k3': img.camera.k3,
                        'p1': img.camera.p1,
                        'p2': img.camera.p2,
                    },
                    'rotation': img.rotation,
                    'sun_position': img.sun_position,
                    'camera_position': img.camera_position,
                }
                for img in self.images
            ],
            'sun_positions': self.sun_positions,
            'spacecraft_positions': self.spacecraft_positions,
            'reflectance': {
                'model': self.reflectance.model.value,
                'phase_coeff_c1': self.reflectance.phase_coeff_c1,
                'phase_coeff_c2': self.reflectance.phase_coeff_c2,
            },
            'solver': {
                'max_iterations': self.solver.max_iterations,
                'smoothness_weight': self.solver.smoothness_weight,
                'num_threads': self.solver.num_threads,
                'gradient_tolerance': self.solver.gradient_tolerance,
                'function_tolerance': self.solver.function_tolerance,
                'use_all_images': self.solver.use_all_images,
                'float_albedo': self.solver.float_albedo,
                'show_progress': self.solver.show_progress,
            },
        }

        with open(config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")
