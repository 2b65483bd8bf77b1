"""
conftest.py
~~~~~~~~~~~

Shared fixtures for building sparse network files in tests.
"""

import os
import sys
from typing import Dict, Optional, Sequence

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


def build_network_bytes(
    weights: Sequence[float] = (),
    architecture: Optional[Dict[str, str]] = None,
    custom_fields: Optional[Dict[str, str]] = None,
    preamble: str = "# Sparse network\n",
) -> bytes:
    """Assemble a network file: text header, terminator, float32 weights."""
    lines = [preamble, "[ARCHITECTURE]\n"]
    for key, value in (architecture or {}).items():
        lines.append(f"{key}={value}\n")
    lines.append("[CUSTOM_FIELDS]\n")
    for key, value in (custom_fields or {}).items():
        lines.append(f"{key}={value}\n")
    lines.append("# END_OF_TEXT_SECTION\n")
    header = "".join(lines).encode('utf-8')
    return header + np.asarray(weights, dtype='<f4').tobytes()


def image_network_bytes(
    width: int,
    height: int,
    first_order: Optional[Sequence[float]] = None,
    second_order: Optional[Dict[tuple, float]] = None,
    neighborhood_3x3: Optional[Dict[int, float]] = None,
    neighborhood_5x5: Optional[Dict[int, float]] = None,
    cross_3: Optional[Dict[int, float]] = None,
    cross_5: Optional[Dict[int, float]] = None,
    target_positive: Optional[float] = None,
    target_negative: Optional[float] = None,
) -> bytes:
    """Complete file for a ``width`` x ``height`` image with sparse weights."""
    n = width * height
    size_3 = max(width - 2, 0) * max(height - 2, 0)
    size_5 = max(width - 4, 0) * max(height - 4, 0)

    first = np.zeros(n) if first_order is None else np.asarray(first_order, dtype=float)

    second = np.zeros(n * (n + 1) // 2)
    for (i, j), value in (second_order or {}).items():
        second[i * n - i * (i - 1) // 2 + (j - i)] = value

    def dense(size, entries):
        values = np.zeros(size)
        for idx, value in (entries or {}).items():
            values[idx] = value
        return values

    weights = np.concatenate([
        first,
        second,
        dense(size_3, neighborhood_3x3),
        dense(size_5, neighborhood_5x5),
        dense(size_3, cross_3),
        dense(size_5, cross_5),
    ])

    custom = {'image_width': str(width), 'image_height': str(height)}
    if target_positive is not None:
        custom['target_positive'] = str(target_positive)
    if target_negative is not None:
        custom['target_negative'] = str(target_negative)

    return build_network_bytes(
        weights,
        architecture={'input_size': str(n), 'enable_third_order': 'false'},
        custom_fields=custom,
    )


@pytest.fixture
def network_bytes():
    """Factory for raw network files."""
    return build_network_bytes


@pytest.fixture
def image_network():
    """Factory for complete image network files."""
    return image_network_bytes


@pytest.fixture
def model_dir(tmp_path):
    """Create a temporary directory for network files."""
    directory = tmp_path / "models"
    directory.mkdir()
    return str(directory)
