"""
Solve loop for shape-from-shading DEM refinement.

This is the main module that orchestrates a refinement run:
    1. Load the DEM, images, cameras and sun/camera positions
    2. Estimate the affine albedo parameters and assemble the problem
    3. Run the nonlinear least-squares solver
    4. After every iteration write the current DEM, the measured intensity
       and the computed intensity, and log their statistics
    5. Report a summary

The optimization itself is delegated to scipy.optimize.least_squares
(trust region reflective with a sparse finite-difference Jacobian).
"""

import numpy as np
from typing import List, Optional
from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
from pathlib import Path

from scipy.optimize import least_squares

from .camera import PinholeCamera
from .config import Config, SolverOptions
from .errors import PreconditionError
from .geometry import NoDataReporter
from .georef import GeoReference
from .observation import BilinearImage, ImageModelParams, reflectance_and_intensity_images
from .positions import read_position_file
from .problem import AffineParams, Problem, ProblemAssembler, compute_image_stats
from .raster_io import RasterWriter, read_dem, read_image
from .reflectance import ReflectanceParams

logger = logging.getLogger(__name__)


class SolveState(Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"
    STOPPED = "stopped"
    TERMINATED = "terminated"


# least_squares status codes
_STATUS_TO_STATE = {
    -2: SolveState.STOPPED,
    -1: SolveState.FAILED,
    0: SolveState.MAX_ITERATIONS_REACHED,
    1: SolveState.CONVERGED,
    2: SolveState.CONVERGED,
    3: SolveState.CONVERGED,
    4: SolveState.CONVERGED,
}


def _clamp_tolerance(tol: float) -> float:
    """Tolerances below machine epsilon make least_squares warn and replace them."""
    return max(tol, float(np.finfo(float).eps))


@dataclass
class SolveContext:
    """
    Everything the solve loop and its iteration callback need.

    The DEM array is refined in place.
    """
    output_prefix: str
    dem: np.ndarray
    georef: GeoReference
    nodata: float
    reflectance_params: ReflectanceParams
    model_params: List[ImageModelParams]
    images: List[BilinearImage]
    cameras: List[PinholeCamera]
    writer: RasterWriter
    options: SolverOptions = field(default_factory=SolverOptions)
    reporter: NoDataReporter = field(default_factory=NoDataReporter)
    stop_event: threading.Event = field(default_factory=threading.Event)
    iteration: int = -1
    state: SolveState = SolveState.INITIALIZED
    problem: Optional[Problem] = None

    def artifact_path(self, kind: str, iteration: int) -> str:
        return f"{self.output_prefix}-{kind}-{iteration}.tif"


@dataclass
class SolveSummary:
    """Outcome of a refinement run."""
    termination: SolveState
    message: str = ""
    iterations: int = 0
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_variables: int = 0
    num_constant_cells: int = 0
    num_intensity_blocks: int = 0
    num_smoothness_blocks: int = 0
    failed_blocks: int = 0
    nodata_reports: int = 0
    nodata_suppressed: int = 0
    affine: List[AffineParams] = field(default_factory=list)

    def full_report(self) -> str:
        lines = [
            "=" * 60,
            "SOLVER SUMMARY",
            "=" * 60,
            f"Termination:            {self.termination.value}",
            f"Message:                {self.message}",
            f"Iterations:             {self.iterations}",
            f"Initial cost:           {self.initial_cost:.6e}",
            f"Final cost:             {self.final_cost:.6e}",
            f"Variables:              {self.num_variables}",
            f"Constant grid cells:    {self.num_constant_cells}",
            f"Intensity blocks:       {self.num_intensity_blocks}",
            f"Smoothness blocks:      {self.num_smoothness_blocks}",
            f"Failed blocks (final):  {self.failed_blocks}",
            f"No-data reports:        {self.nodata_reports} ({self.nodata_suppressed} suppressed)",
        ]
        for i, a in enumerate(self.affine):
            lines.append(f"Albedo params [{i}]:      A[0]={a.scale:.6g}, A[1]={a.offset:.6g}")
        lines.append("=" * 60)
        return "\n".join(lines)


def write_iteration_artifacts(context: SolveContext, iteration: int) -> None:
    """
    Write the DEM, measured intensity and computed intensity for an iteration.

    Intensities use the first image and its affine parameters. Pixels where
    no intensity could be sampled are written as 0, the no-data value of
    the intensity rasters.
    """
    context.writer.write(context.artifact_path("final-DEM", iteration), context.dem, context.nodata)

    reflectance, intensity, valid = reflectance_and_intensity_images(
        context.dem, context.georef, context.nodata, context.reflectance_params,
        context.model_params[0], context.images[0], context.cameras[0], context.reporter,
    )
    context.writer.write(context.artifact_path("measured-intensity", iteration), intensity, 0)

    A = context.problem.affine[0]
    computed = np.where(valid, A[0] * reflectance + A[1], 0.0)
    context.writer.write(context.artifact_path("computed-intensity", iteration), computed, 0)

    img_mean, img_std = compute_image_stats(intensity, valid)
    ref_mean, ref_std = compute_image_stats(computed, valid)
    logger.info(f"img mean and std: {img_mean:.6g} {img_std:.6g}")
    logger.info(f"ref mean and std: {ref_mean:.6g} {ref_std:.6g}")


class IterationCallback:
    """
    Called by the solver after each iteration.

    Writes the solver state back into the DEM and emits the diagnostics.
    Iteration 0 is the initial state, recorded before the first step.
    Stops the solver when the context's stop event is set or once
    options.max_iterations solver iterations have been recorded.
    """

    def __init__(self, context: SolveContext):
        self.context = context
        self.reached_limit = False

    def record(self, x: np.ndarray) -> bool:
        """Record a solver state; returns True if a stop was requested."""
        ctx = self.context
        ctx.iteration += 1
        logger.info(f"Finished iteration: {ctx.iteration}")

        ctx.problem.variables.unpack(x, ctx.dem, ctx.problem.affine)
        write_iteration_artifacts(ctx, ctx.iteration)

        if ctx.stop_event.is_set():
            logger.info("Stop requested, ending optimization")
            return True
        if ctx.iteration > 0 and ctx.iteration >= ctx.options.max_iterations:
            logger.info(f"Reached the maximum of {ctx.options.max_iterations} iterations")
            self.reached_limit = True
            return True
        return False

    def __call__(self, intermediate_result):
        if self.record(intermediate_result.x):
            raise StopIteration


def refine_dem(
    context: SolveContext,
    affine: Optional[List[AffineParams]] = None,
) -> SolveSummary:
    """
    Refine the DEM of a context in place.

    Args:
        context: Solve context; context.dem is modified
        affine: Affine parameters per image in use (estimated if None)

    Returns:
        SolveSummary
    """
    options = context.options
    assembler = ProblemAssembler(
        context.dem, context.georef, context.nodata, context.reflectance_params,
        context.model_params, context.images, context.cameras, context.reporter, options,
    )
    if affine is None:
        affine = assembler.estimate_affine()

    with assembler.build(affine) as problem:
        context.problem = problem
        variables = problem.variables

        x0 = variables.pack(context.dem, problem.affine)
        initial_cost = 0.5 * float(np.sum(problem.residuals(x0) ** 2))

        summary = SolveSummary(
            termination=SolveState.MAX_ITERATIONS_REACHED,
            initial_cost=initial_cost,
            final_cost=initial_cost,
            num_variables=variables.num_variables,
            num_constant_cells=int(variables.constant.sum()),
            num_intensity_blocks=problem.num_intensity_blocks,
            num_smoothness_blocks=problem.num_smoothness_blocks,
            failed_blocks=problem.last_failed_blocks,
        )

        callback = IterationCallback(context)
        if callback.record(x0):
            summary.termination = SolveState.STOPPED
            summary.message = "Stopped before the first iteration"
        elif options.max_iterations == 0 or variables.num_variables == 0:
            summary.message = "No optimization performed"
        else:
            context.state = SolveState.ITERATING
            logger.info(f"Starting optimization: {variables.num_variables} variables, "
                        f"{problem.num_residuals} residuals, initial cost {initial_cost:.6e}")
            try:
                result = least_squares(
                    problem.residuals,
                    x0,
                    jac='3-point',
                    jac_sparsity=problem.jacobian_sparsity(),
                    method='trf',
                    x_scale=1.0,
                    gtol=_clamp_tolerance(options.gradient_tolerance),
                    ftol=_clamp_tolerance(options.function_tolerance),
                    max_nfev=None,  # iterations are capped by the callback
                    callback=callback,
                )
            except (ValueError, np.linalg.LinAlgError) as e:
                logger.error(f"Solver failed: {e}")
                summary.termination = SolveState.FAILED
                summary.message = str(e)
            else:
                variables.unpack(result.x, context.dem, problem.affine)
                summary.termination = _STATUS_TO_STATE.get(result.status, SolveState.FAILED)
                summary.message = result.message
                if result.status == -2 and callback.reached_limit:
                    summary.termination = SolveState.MAX_ITERATIONS_REACHED
                    summary.message = "Maximum number of iterations reached."
                summary.final_cost = 0.5 * float(np.sum(problem.residuals(result.x) ** 2))
                summary.failed_blocks = problem.last_failed_blocks

        summary.iterations = context.iteration
        summary.affine = [AffineParams(float(a[0]), float(a[1])) for a in problem.affine]

    context.state = summary.termination
    summary.nodata_reports = context.reporter.count
    summary.nodata_suppressed = context.reporter.suppressed
    logger.info(f"Optimization ended: {summary.termination.value} after {summary.iterations} iterations")
    context.state = SolveState.TERMINATED
    return summary


def build_context(config: Config) -> SolveContext:
    """
    Load all inputs named by a configuration.

    Sun and camera positions come from the image entries when given,
    otherwise from the position files, keyed by image name.
    """
    dem_raster = read_dem(config.dem)

    sun_records = read_position_file(config.sun_positions) if config.sun_positions else {}
    cam_records = read_position_file(config.spacecraft_positions) if config.spacecraft_positions else {}

    model_params: List[ImageModelParams] = []
    images: List[BilinearImage] = []
    cameras: List[PinholeCamera] = []
    for entry in config.images:
        sun = entry.sun_position if entry.sun_position is not None else sun_records.get(entry.name)
        cam = entry.camera_position if entry.camera_position is not None else cam_records.get(entry.name)
        if sun is None:
            raise PreconditionError(f"No sun position for image {entry.name}")
        if cam is None:
            raise PreconditionError(f"No camera position for image {entry.name}")

        params = ImageModelParams(
            name=entry.name,
            sun_position=np.asarray(sun, dtype=np.float64),
            camera_position=np.asarray(cam, dtype=np.float64),
        )
        logger.info(f"sun position: {params.sun_position}")
        logger.info(f"camera position: {params.camera_position}")

        model_params.append(params)
        images.append(BilinearImage(read_image(entry.path)))
        rotation = np.asarray(entry.rotation, dtype=np.float64) if entry.rotation is not None else None
        cameras.append(PinholeCamera(entry.camera, params.camera_position, rotation))

    return SolveContext(
        output_prefix=config.output_prefix,
        dem=dem_raster.heights,
        georef=dem_raster.georef,
        nodata=dem_raster.nodata,
        reflectance_params=config.reflectance,
        model_params=model_params,
        images=images,
        cameras=cameras,
        writer=RasterWriter(dem_raster.georef.transform, dem_raster.crs),
        options=config.solver,
    )


def run_refinement(config: Config) -> SolveSummary:
    """
    Convenience function to run a full refinement from a configuration.

    Creates the output directory, refines the DEM and prints the solver
    summary to standard output.
    """
    config.validate()
    Path(config.output_prefix).parent.mkdir(parents=True, exist_ok=True)

    context = build_context(config)
    summary = refine_dem(context)
    print(summary.full_report())
    return summary
