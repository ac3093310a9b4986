"""
End-to-end tests of the refinement loop on small synthetic scenes.
"""

import warnings

import pytest
import numpy as np
from numpy.testing import assert_allclose

from sfs_refine.problem import AffineParams
from sfs_refine.residuals import SENTINEL
from sfs_refine.solver import SolveState, SolveSummary, refine_dem

NODATA = -32768.0


def noisy_dem(rows, cols, seed=0):
    rng = np.random.default_rng(seed)
    return 1000.0 + rng.normal(0.0, 2.0, size=(rows, cols))


class TestFlatScene:
    """A flat DEM lit and viewed from overhead is already optimal."""

    def test_converges_unchanged(self, make_context):
        dem = np.full((5, 5), 1000.0)
        context = make_context(dem, intensity=0.5, smoothness_weight=0.0, max_iterations=20)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination in (SolveState.CONVERGED, SolveState.MAX_ITERATIONS_REACHED)
        assert_allclose(context.dem, 1000.0, atol=1.0)
        assert summary.final_cost < 1e-12
        assert summary.failed_blocks == 0

    def test_zero_iterations(self, make_context):
        dem = np.full((5, 5), 1000.0)
        context = make_context(dem, max_iterations=0)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination is SolveState.MAX_ITERATIONS_REACHED
        assert summary.iterations == 0
        assert summary.final_cost == summary.initial_cost
        assert_allclose(context.dem, 1000.0)

    def test_initial_state_is_iteration_zero(self, make_context):
        context = make_context(np.full((5, 5), 1000.0), max_iterations=0)
        refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        prefix = context.output_prefix
        written = context.writer.written
        assert set(written) == {
            f"{prefix}-final-DEM-0.tif",
            f"{prefix}-measured-intensity-0.tif",
            f"{prefix}-computed-intensity-0.tif",
        }
        assert written[f"{prefix}-final-DEM-0.tif"][1] == NODATA
        assert written[f"{prefix}-measured-intensity-0.tif"][1] == 0

    def test_estimates_affine_when_not_given(self, make_context):
        """Estimation needs reflectance variation, so use an oblique sun."""
        context = make_context(
            noisy_dem(5, 5), sun=[1.0e11, 0.5e11, 0.0], max_iterations=0,
        )
        summary = refine_dem(context)

        assert len(summary.affine) == 1
        # Constant image: no spread to match
        assert summary.affine[0].scale == pytest.approx(0.0, abs=1e-12)
        assert summary.affine[0].offset == pytest.approx(0.5)


class TestNoisyScene:
    """Smoothing a noisy DEM."""

    def test_boundary_is_pinned(self, make_context):
        dem = noisy_dem(6, 6)
        original = dem.copy()
        context = make_context(dem, smoothness_weight=1.0, max_iterations=5)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.iterations >= 1
        assert np.array_equal(context.dem[0, :], original[0, :])
        assert np.array_equal(context.dem[-1, :], original[-1, :])
        assert np.array_equal(context.dem[:, 0], original[:, 0])
        assert np.array_equal(context.dem[:, -1], original[:, -1])
        assert not np.array_equal(context.dem[1:-1, 1:-1], original[1:-1, 1:-1])

    def test_cost_does_not_increase(self, make_context):
        context = make_context(noisy_dem(6, 6, seed=3), smoothness_weight=1.0, max_iterations=5)
        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])
        assert summary.final_cost <= summary.initial_cost

    def test_artifacts_per_iteration(self, make_context):
        context = make_context(noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=3)
        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        prefix = context.output_prefix
        for k in range(summary.iterations + 1):
            for kind in ("final-DEM", "measured-intensity", "computed-intensity"):
                assert f"{prefix}-{kind}-{k}.tif" in context.writer.written

    @pytest.mark.parametrize("max_iterations", [1, 2, 4])
    def test_iteration_limit(self, make_context, max_iterations):
        context = make_context(noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=max_iterations)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination is SolveState.MAX_ITERATIONS_REACHED
        assert summary.iterations == max_iterations
        assert f"{context.output_prefix}-final-DEM-{max_iterations}.tif" in context.writer.written

    def test_tiny_tolerances_do_not_warn(self, make_context):
        context = make_context(
            noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=2,
            gradient_tolerance=1e-16, function_tolerance=1e-16,
        )
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert not [w for w in caught if "machine epsilon" in str(w.message)]

    def test_multithreaded(self, make_context):
        serial = make_context(noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=3)
        threaded = make_context(noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=3, num_threads=2)

        refine_dem(serial, affine=[AffineParams(0.5, 0.0)])
        refine_dem(threaded, affine=[AffineParams(0.5, 0.0)])

        assert_allclose(threaded.dem, serial.dem)

    def test_floating_albedo(self, make_context):
        context = make_context(
            noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=3, float_albedo=True,
        )
        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])
        assert summary.num_variables == 16 + 2

    def test_stop_event(self, make_context):
        context = make_context(noisy_dem(6, 6), smoothness_weight=1.0, max_iterations=10)
        context.stop_event.set()

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination is SolveState.STOPPED
        assert summary.iterations == 0


class TestNoDataScene:
    """A no-data cell must not crash the run."""

    def test_run_completes(self, make_context):
        dem = np.full((5, 5), 1000.0)
        dem[2, 2] = NODATA
        context = make_context(dem, smoothness_weight=0.0, max_iterations=3)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination is not SolveState.FAILED
        assert summary.failed_blocks > 0
        assert context.dem[2, 2] == NODATA
        assert context.reporter.count == 1
        assert summary.nodata_reports == 1
        assert summary.nodata_suppressed > 0

    def test_nan_marker(self, make_context):
        dem = np.full((5, 5), 1000.0)
        dem[2, 2] = np.nan
        context = make_context(dem, smoothness_weight=0.0, max_iterations=3)
        context.nodata = np.nan

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.termination is not SolveState.FAILED
        assert np.isnan(context.dem[2, 2])
        assert np.isfinite(np.delete(context.dem.ravel(), 12)).all()
        assert context.reporter.count == 1
        assert summary.num_constant_cells == 17

    def test_sentinel_in_initial_cost(self, make_context):
        dem = np.full((5, 5), 1000.0)
        dem[2, 2] = NODATA
        context = make_context(dem, smoothness_weight=0.0, max_iterations=0)

        summary = refine_dem(context, affine=[AffineParams(0.5, 0.0)])

        assert summary.initial_cost >= 0.5 * SENTINEL ** 2


class TestSummary:
    """Tests for the printed report."""

    def test_full_report(self):
        summary = SolveSummary(
            termination=SolveState.CONVERGED,
            iterations=4,
            initial_cost=2.0,
            final_cost=0.5,
            affine=[AffineParams(0.8, 0.1)],
        )
        report = summary.full_report()
        assert "converged" in report
        assert "Iterations:             4" in report
        assert "A[0]=0.8" in report
