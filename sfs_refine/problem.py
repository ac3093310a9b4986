"""
Problem assembly for shape-from-shading.

Builds the sparse residual graph over the DEM grid:
    1. Estimate the affine radiometric parameters from the initial DEM
    2. For every interior grid point add one intensity residual per image
       and one smoothness residual over the same 3x3 neighborhood
    3. Hold the outer ring of the grid (and no-data cells) constant
    4. Map the remaining grid cells, and optionally the affine parameters,
       to the solver's parameter vector
"""

import numpy as np
from typing import Callable, List, Optional, Sequence, Tuple
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
import logging

from scipy.sparse import lil_matrix
from tqdm import tqdm

from .camera import PinholeCamera
from .config import SolverOptions
from .errors import PreconditionError
from .geometry import NoDataReporter, is_nodata
from .georef import GeoReference
from .observation import BilinearImage, ImageModelParams, reflectance_and_intensity_images
from .reflectance import ReflectanceParams
from .residuals import NEIGHBORHOOD, IntensityResidual, SmoothnessResidual

logger = logging.getLogger(__name__)


@dataclass
class AffineParams:
    """Relation intensity ~= scale * reflectance + offset for one image."""
    scale: float = 1.0
    offset: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.scale, self.offset])


def compute_image_stats(image: np.ndarray, valid: np.ndarray) -> Tuple[float, float]:
    """Mean and (population) standard deviation over valid pixels, (0, 0) if none."""
    values = image[valid]
    if values.size == 0:
        return 0.0, 0.0
    return float(np.mean(values)), float(np.std(values))


def estimate_affine_params(
    reflectance: np.ndarray,
    intensity: np.ndarray,
    valid: np.ndarray,
) -> AffineParams:
    """
    Match the mean and spread of scaled reflectance to observed intensity.

        scale  = std(I) / std(R)
        offset = mean(I) - scale * mean(R)

    Raises:
        PreconditionError: If there are no valid samples or the reflectance
            is constant
    """
    if not np.any(valid):
        raise PreconditionError("No valid reflectance/intensity samples to estimate albedo parameters.")

    img_mean, img_std = compute_image_stats(intensity, valid)
    ref_mean, ref_std = compute_image_stats(reflectance, valid)
    if ref_std == 0:
        raise PreconditionError(
            "Reflectance is constant over the DEM, cannot estimate albedo parameters."
        )

    scale = img_std / ref_std
    return AffineParams(scale=scale, offset=img_mean - scale * ref_mean)


class VariableMap:
    """
    Mapping between DEM cells (plus affine parameters) and the solver vector.

    Layout of x: free cells in row-major order, then, if the affine
    parameters float, (scale, offset) for every image.
    """

    def __init__(
        self,
        shape: Tuple[int, int],
        constant: np.ndarray,
        num_images: int,
        float_affine: bool = False,
    ):
        self.shape = shape
        self.constant = constant
        self.free_cells = np.flatnonzero(~constant.ravel())
        self.cell_to_var = np.full(constant.size, -1, dtype=np.int64)
        self.cell_to_var[self.free_cells] = np.arange(self.free_cells.size)
        self.num_images = num_images
        self.float_affine = float_affine

    @property
    def num_cell_variables(self) -> int:
        return int(self.free_cells.size)

    @property
    def num_variables(self) -> int:
        extra = 2 * self.num_images if self.float_affine else 0
        return self.num_cell_variables + extra

    def affine_columns(self, image_index: int) -> Tuple[int, int]:
        start = self.num_cell_variables + 2 * image_index
        return start, start + 1

    def is_constant(self, col: int, row: int) -> bool:
        return bool(self.constant[row, col])

    def pack(self, dem: np.ndarray, affine: np.ndarray) -> np.ndarray:
        x = dem.ravel()[self.free_cells].astype(np.float64)
        if self.float_affine:
            x = np.concatenate([x, affine.ravel()])
        return x

    def unpack(self, x: np.ndarray, dem: np.ndarray, affine: np.ndarray) -> None:
        """Write solver values back into the DEM and affine array, in place."""
        n = self.num_cell_variables
        dem.reshape(-1)[self.free_cells] = x[:n]
        if self.float_affine:
            affine[...] = np.asarray(x[n:]).reshape(affine.shape)


@dataclass
class ResidualBlock:
    """
    A residual functor bound to the grid cells it reads.

    Attributes:
        functor: IntensityResidual or SmoothnessResidual
        cells: Flat DEM indices in neighborhood argument order
        offset: First row of this block in the residual vector
        image_index: Image whose affine parameters the functor takes, if any
    """
    functor: Callable
    cells: np.ndarray
    offset: int
    image_index: Optional[int] = None

    @property
    def num_residuals(self) -> int:
        return self.functor.num_residuals


class Problem:
    """
    The assembled least-squares problem.

    Residuals are evaluated against a working copy of the grid so that the
    DEM itself only changes when the solve loop writes a state back.
    """

    def __init__(
        self,
        dem: np.ndarray,
        affine: np.ndarray,
        blocks: List[ResidualBlock],
        variables: VariableMap,
        num_threads: int = 1,
    ):
        self.dem = dem
        self.affine = affine
        self.blocks = blocks
        self.variables = variables
        self.num_residuals = sum(b.num_residuals for b in blocks)
        self.num_threads = num_threads
        self.last_failed_blocks = 0

        self._grid = dem.astype(np.float64).ravel()
        self._affine = affine.astype(np.float64)
        self._executor: Optional[ThreadPoolExecutor] = None
        if num_threads > 1:
            self._executor = ThreadPoolExecutor(max_workers=num_threads)

    def __enter__(self) -> "Problem":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def num_intensity_blocks(self) -> int:
        return sum(1 for b in self.blocks if b.image_index is not None)

    @property
    def num_smoothness_blocks(self) -> int:
        return sum(1 for b in self.blocks if b.image_index is None)

    def _load(self, x: np.ndarray) -> None:
        n = self.variables.num_cell_variables
        self._grid[self.variables.free_cells] = x[:n]
        if self.variables.float_affine:
            self._affine[...] = np.asarray(x[n:]).reshape(self._affine.shape)

    def _evaluate_blocks(self, blocks: Sequence[ResidualBlock], out: np.ndarray) -> int:
        failed = 0
        for block in blocks:
            heights = self._grid[block.cells]
            if block.image_index is None:
                result = block.functor(*heights)
            else:
                result = block.functor(self._affine[block.image_index], *heights)
            out[block.offset:block.offset + block.num_residuals] = result.values
            if not result.ok:
                failed += 1
        return failed

    def residuals(self, x: np.ndarray) -> np.ndarray:
        """Residual vector at solver state x."""
        self._load(x)
        out = np.empty(self.num_residuals)

        if self._executor is None:
            self.last_failed_blocks = self._evaluate_blocks(self.blocks, out)
            return out

        chunks = np.array_split(np.arange(len(self.blocks)), self.num_threads)
        futures = [
            self._executor.submit(self._evaluate_blocks, [self.blocks[i] for i in chunk], out)
            for chunk in chunks if chunk.size
        ]
        self.last_failed_blocks = sum(f.result() for f in futures)
        return out

    def residual_block_values(self, x: np.ndarray, block_index: int) -> np.ndarray:
        """Residuals of a single block at solver state x."""
        block = self.blocks[block_index]
        return self.residuals(x)[block.offset:block.offset + block.num_residuals]

    def jacobian_sparsity(self) -> lil_matrix:
        """Structural non-zeros: each block row depends on its neighborhood's free cells."""
        sparsity = lil_matrix((self.num_residuals, self.variables.num_variables), dtype=int)
        for block in self.blocks:
            columns = self.variables.cell_to_var[block.cells]
            columns = list(columns[columns >= 0])
            if block.image_index is not None and self.variables.float_affine:
                columns.extend(self.variables.affine_columns(block.image_index))
            if not columns:
                continue
            for i in range(block.num_residuals):
                sparsity[block.offset + i, columns] = 1
        return sparsity


class ProblemAssembler:
    """
    Builds the residual graph for one refinement run.

    Example usage:
        assembler = ProblemAssembler(dem, georef, nodata, reflectance_params,
                                     model_params, images, cameras, reporter, options)
        affine = assembler.estimate_affine()
        problem = assembler.build(affine)
    """

    def __init__(
        self,
        dem: np.ndarray,
        georef: GeoReference,
        nodata: float,
        reflectance_params: ReflectanceParams,
        model_params: List[ImageModelParams],
        images: List[BilinearImage],
        cameras: List[PinholeCamera],
        reporter: NoDataReporter,
        options: SolverOptions,
    ):
        rows, cols = dem.shape
        if rows < 3 or cols < 3:
            raise PreconditionError(f"The DEM must be at least 3x3, got {cols}x{rows}.")
        if not (len(model_params) == len(images) == len(cameras)) or not images:
            raise PreconditionError("Need matching model parameters, images and cameras for at least one image.")

        self.dem = dem
        self.georef = georef
        self.nodata = nodata
        self.reflectance_params = reflectance_params
        self.model_params = model_params
        self.images = images
        self.cameras = cameras
        self.reporter = reporter
        self.options = options

        self.grid_size = georef.grid_size(cols, rows)
        logger.info(f"Grid size is {self.grid_size:.4f} m")
        logger.info(f"Num cols and rows is {cols} {rows}")

    @property
    def image_indices(self) -> List[int]:
        """Images that contribute intensity residuals."""
        if self.options.use_all_images:
            return list(range(len(self.images)))
        return [0]

    def estimate_affine(self) -> List[AffineParams]:
        """Estimate affine parameters for every image in use from the initial DEM."""
        affine = []
        for i in self.image_indices:
            reflectance, intensity, valid = reflectance_and_intensity_images(
                self.dem, self.georef, self.nodata, self.reflectance_params,
                self.model_params[i], self.images[i], self.cameras[i], self.reporter,
            )
            params = estimate_affine_params(reflectance, intensity, valid)
            logger.info(
                f"Albedo params for {self.model_params[i].name}: "
                f"A[0]={params.scale:.6g}, A[1]={params.offset:.6g}"
            )
            affine.append(params)
        return affine

    def _constant_mask(self) -> np.ndarray:
        rows, cols = self.dem.shape
        constant = np.zeros((rows, cols), dtype=bool)

        for row in range(1, rows - 1):
            for col in range(1, cols - 1):
                if col == 1:  # left boundary
                    constant[row - 1:row + 2, col - 1] = True
                if row == 1:  # bottom boundary
                    constant[row - 1, col - 1:col + 2] = True
                if col == cols - 2:  # right boundary
                    constant[row - 1:row + 2, col + 1] = True
                if row == rows - 2:  # top boundary
                    constant[row + 1, col - 1:col + 2] = True

        nodata_cells = is_nodata(self.dem, self.nodata)
        if np.any(nodata_cells):
            logger.warning(f"Holding {int(nodata_cells.sum())} no-data cells constant")
            constant |= nodata_cells

        return constant

    def build(self, affine: List[AffineParams]) -> Problem:
        """
        Assemble the problem.

        Args:
            affine: Affine parameters, one per image in use (see image_indices)

        Returns:
            Problem referencing self.dem
        """
        indices = self.image_indices
        if len(affine) != len(indices):
            raise PreconditionError(
                f"Expected {len(indices)} affine parameter sets, got {len(affine)}"
            )

        rows, cols = self.dem.shape
        offsets = np.array([(drow * cols + dcol) for dcol, drow in NEIGHBORHOOD])

        smoothness = SmoothnessResidual(self.options.smoothness_weight, self.grid_size)

        blocks: List[ResidualBlock] = []
        offset = 0
        interior = [(col, row) for col in range(1, cols - 1) for row in range(1, rows - 1)]
        for col, row in tqdm(interior, desc="Assembling residual blocks",
                             disable=not self.options.show_progress):
            cells = row * cols + col + offsets

            for k, i in enumerate(indices):
                functor = IntensityResidual(
                    col, row, self.dem.shape, self.georef, self.reflectance_params,
                    self.model_params[i], self.images[i], self.cameras[i],
                    self.nodata, self.reporter,
                )
                blocks.append(ResidualBlock(functor, cells, offset, image_index=k))
                offset += functor.num_residuals

            blocks.append(ResidualBlock(smoothness, cells, offset))
            offset += smoothness.num_residuals

        variables = VariableMap(
            self.dem.shape, self._constant_mask(), len(indices),
            float_affine=self.options.float_albedo,
        )
        affine_array = np.array([a.as_array() for a in affine], dtype=np.float64)

        logger.info(
            f"Assembled {len(blocks)} residual blocks over {len(interior)} grid points, "
            f"{variables.num_variables} variables"
        )
        return Problem(self.dem, affine_array, blocks, variables, self.options.num_threads)
