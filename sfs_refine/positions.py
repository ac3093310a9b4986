"""
Sun and spacecraft position files.

Format, one record per line, whitespace-separated:
    image_name x y z

Coordinates are planet-centered Cartesian, in meters. Blank lines and
lines starting with '#' are skipped.
"""

import numpy as np
from pathlib import Path
from typing import Dict
import logging

logger = logging.getLogger(__name__)


class PositionFileParser:
    """
    Parser for sun or spacecraft position files.

    Unlike most text inputs, a malformed line or a repeated image name is
    an error, since a silently dropped position changes the result.
    """

    def parse_file(self, filepath: str) -> Dict[str, np.ndarray]:
        """
        Parse a position file.

        Args:
            filepath: Path to the position file

        Returns:
            Dictionary mapping image name to a (3,) position

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: On a malformed line or a duplicate image name
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Position file not found: {filepath}")

        records: Dict[str, np.ndarray] = {}

        with open(path, 'r') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue

                parts = line.split()
                if len(parts) < 4:
                    raise ValueError(f"Unable to read line {line_num} of {filepath}: '{line}'")

                key = parts[0]
                try:
                    value = np.array([float(p) for p in parts[1:4]])
                except ValueError:
                    raise ValueError(f"Unable to read line {line_num} of {filepath}: '{line}'") from None

                if key in records:
                    raise ValueError(f"Duplicate key: {key} in file: {filepath}")
                records[key] = value

        logger.info(f"Parsed {len(records)} position records from {filepath}")
        return records


def read_position_file(filepath: str) -> Dict[str, np.ndarray]:
    """
    Convenience function to parse a position file.

    Args:
        filepath: Path to position file

    Returns:
        Dictionary mapping image name to position
    """
    parser = PositionFileParser()
    return parser.parse_file(filepath)
