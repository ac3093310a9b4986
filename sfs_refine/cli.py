"""
Command-line interface for shape-from-shading DEM refinement.

Usage:
    sfs-refine config.yaml [-i DEM] [-o OUTPUT_PREFIX] [-n MAX_ITERATIONS]
"""

import argparse
import logging
import sys

from .config import Config
from .errors import SfsError
from .solver import SolveState, run_refinement


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def main(argv=None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description='Refine a DEM using shape-from-shading',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
    # Run with the settings of a configuration file
    sfs-refine config.yaml

    # Override the input DEM and output prefix
    sfs-refine config.yaml -i dem.tif -o run/out

    # Ten iterations, no smoothness term, verbose output
    sfs-refine config.yaml -n 10 --smoothness-weight 0 -v
'''
    )

    parser.add_argument(
        'config',
        type=str,
        help='Path to YAML configuration file'
    )

    parser.add_argument(
        '--input-dem', '-i',
        type=str,
        default=None,
        help='The input DEM to refine (overrides the configuration)'
    )

    parser.add_argument(
        '--output-prefix', '-o',
        type=str,
        default=None,
        help='Prefix for output filenames (overrides the configuration)'
    )

    parser.add_argument(
        '--max-iterations', '-n',
        type=int,
        default=None,
        help='Maximum number of iterations'
    )

    parser.add_argument(
        '--smoothness-weight',
        type=float,
        default=None,
        help='A larger value will result in a smoother solution'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_yaml(args.config)

        if args.input_dem:
            config.dem = args.input_dem
        if args.output_prefix:
            config.output_prefix = args.output_prefix
        if args.max_iterations is not None:
            config.solver.max_iterations = args.max_iterations
        if args.smoothness_weight is not None:
            config.solver.smoothness_weight = args.smoothness_weight

        summary = run_refinement(config)

        if summary.termination == SolveState.FAILED:
            logger.error(f"Refinement FAILED: {summary.message}")
            return 1
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except SfsError as e:
        logger.error(f"Refinement error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
