"""
sparse_network.py
~~~~~~~~~~~~~~~~~

Sparse polynomial network: active-index derivation, input preprocessing and
inference.

A network scores a pixel vector by summing weighted terms from six feature
families. Only weights whose magnitude exceeds ``ACTIVE_EPSILON`` take part in
inference; their indices are resolved once at load time into integer gather
tables so that ``evaluate`` is a handful of numpy reductions.
"""

import logging
import math
from typing import Any, Dict, Sequence, Union

import numpy as np

from .network_format import (
    NetworkConfig,
    WeightBlocks,
    read_weight_stream,
    split_header,
)

# Configure module logger
logger = logging.getLogger(__name__)

ACTIVE_EPSILON = 1e-10

# Geometric normalization constants, fixed by the model format
NEIGHBORHOOD_SCALE = 10.0
CROSS_SCALE = 4.0

FAMILIES = (
    'first_order',
    'second_order',
    'neighborhood_3x3',
    'neighborhood_5x5',
    'cross_3_length',
    'cross_5_length',
)

ArrayLike = Union[Sequence[float], np.ndarray]


def triangular_offset(i: int, j: int, n: int) -> int:
    """Flat position of pair ``(i, j)``, ``i <= j``, in row-major upper-triangular storage."""
    return i * n - i * (i - 1) // 2 + (j - i)


def triangular_pairs(flat: np.ndarray, n: int) -> np.ndarray:
    """
    Invert ``triangular_offset`` for an array of flat positions.

    Only rows up to the last position given are materialised, so the cost
    follows the number of weights read rather than the declared ``n``.

    Args:
        flat: Sorted flat positions into the upper-triangular storage
        n: Declared input size

    Returns:
        ``(len(flat), 2)`` integer array of ``(i, j)`` pairs
    """
    if flat.size == 0:
        return np.empty((0, 2), dtype=np.intp)
    # Every row holds at least one entry, so row i starts at or after i
    rows = np.arange(min(n, int(flat[-1]) + 1))
    starts = rows * n - rows * (rows - 1) // 2
    i = np.searchsorted(starts, flat, side='right') - 1
    j = flat - starts[i] + i
    return np.column_stack((i, j))


def active_indices(weights: np.ndarray) -> np.ndarray:
    """Indices of the entries whose magnitude strictly exceeds ``ACTIVE_EPSILON``."""
    return np.flatnonzero(np.abs(weights) > ACTIVE_EPSILON)


def _window_gather(active: np.ndarray, width: int, window: int) -> np.ndarray:
    """
    Pixel indices of the square windows at the given positions.

    Position ``idx`` is the window's top-left corner, laid out row-major over
    the ``width - window + 1`` valid columns.
    """
    columns = width - window + 1
    y, x = np.divmod(active, columns)
    dy, dx = np.divmod(np.arange(window * window), window)
    offsets = dy * width + dx
    return (y * width + x)[:, None] + offsets[None, :]


def _cross_gather(active: np.ndarray, width: int, radius: int) -> np.ndarray:
    """Pixel indices of the plus-shaped samples centred on the given positions."""
    columns = width - 2 * radius
    y, x = np.divmod(active, columns)
    center = (y + radius) * width + (x + radius)
    # center, up, down, left, right
    offsets = np.array([0, -radius * width, radius * width, -radius, radius])
    return center[:, None] + offsets[None, :]


def _geometric_terms(inputs: np.ndarray, gather: np.ndarray, scale: float) -> np.ndarray:
    """k-th root of each row's pixel product, times ``scale``."""
    order = gather.shape[1]
    product = np.prod(inputs[gather], axis=1)
    return np.power(product, 1.0 / order) * scale


class SparseNetwork:
    """
    One parsed network file.

    Instances are immutable after construction and may be shared between
    threads; ``evaluate`` only reads.
    """

    def __init__(self, config: NetworkConfig, blocks: WeightBlocks):
        """
        Derive the active index sets from freshly read weights.

        Args:
            config: Parsed header
            blocks: Dense weight arrays, possibly truncated
        """
        self.config = config
        width = config.image_width

        self.weights_first_order = blocks.first_order
        self.weights_second_order = blocks.second_order
        self.weights_neighborhood_3x3 = blocks.neighborhood_3x3
        self.weights_neighborhood_5x5 = blocks.neighborhood_5x5
        self.weights_cross_3_length = blocks.cross_3
        self.weights_cross_5_length = blocks.cross_5

        self.active_first_order = active_indices(self.weights_first_order)

        flat = active_indices(self.weights_second_order)
        self.active_second_order = triangular_pairs(flat, config.input_size)
        self._second_order_values = self.weights_second_order[flat]

        self.active_neighborhood_3x3 = active_indices(self.weights_neighborhood_3x3)
        self.active_neighborhood_5x5 = active_indices(self.weights_neighborhood_5x5)
        self.active_cross_3_length = active_indices(self.weights_cross_3_length)
        self.active_cross_5_length = active_indices(self.weights_cross_5_length)

        self._gathers = [
            (
                self.weights_neighborhood_3x3[self.active_neighborhood_3x3],
                _window_gather(self.active_neighborhood_3x3, width, 3),
                NEIGHBORHOOD_SCALE,
            ),
            (
                self.weights_neighborhood_5x5[self.active_neighborhood_5x5],
                _window_gather(self.active_neighborhood_5x5, width, 5),
                NEIGHBORHOOD_SCALE,
            ),
            (
                self.weights_cross_3_length[self.active_cross_3_length],
                _cross_gather(self.active_cross_3_length, width, 1),
                CROSS_SCALE,
            ),
            (
                self.weights_cross_5_length[self.active_cross_5_length],
                _cross_gather(self.active_cross_5_length, width, 2),
                CROSS_SCALE,
            ),
        ]

        self.required_input_length = self._required_input_length()
        self._check_active_hints()

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SparseNetwork':
        """
        Parse a complete network file.

        Raises:
            FormatError: If the header terminator is missing
        """
        config, header_length = split_header(data)
        blocks = read_weight_stream(data[header_length:], config)
        network = cls(config, blocks)
        logger.debug(f"Loaded network with active counts {network.active_counts}")
        return network

    def _required_input_length(self) -> int:
        highest = -1
        if self.active_first_order.size:
            highest = max(highest, int(self.active_first_order.max()))
        if self.active_second_order.size:
            highest = max(highest, int(self.active_second_order.max()))
        for _, gather, _ in self._gathers:
            if gather.size:
                highest = max(highest, int(gather.max()))
        return highest + 1

    def _check_active_hints(self) -> None:
        counts = self.active_counts
        for key, hinted in self.config.active_hints.items():
            family = key[len('active_'):]
            if family in counts and counts[family] != hinted:
                logger.debug(
                    f"Header hint {key}={hinted} differs from derived "
                    f"count {counts[family]}"
                )

    @property
    def input_size(self) -> int:
        return self.config.input_size

    @property
    def image_width(self) -> int:
        return self.config.image_width

    @property
    def image_height(self) -> int:
        return self.config.image_height

    @property
    def target_positive(self):
        return self.config.target_positive

    @property
    def target_negative(self):
        return self.config.target_negative

    @property
    def active_counts(self) -> Dict[str, int]:
        """Number of active entries per feature family."""
        return {
            'first_order': int(self.active_first_order.size),
            'second_order': int(len(self.active_second_order)),
            'neighborhood_3x3': int(self.active_neighborhood_3x3.size),
            'neighborhood_5x5': int(self.active_neighborhood_5x5.size),
            'cross_3_length': int(self.active_cross_3_length.size),
            'cross_5_length': int(self.active_cross_5_length.size),
        }

    @property
    def threshold(self) -> float:
        """Midpoint of the two targets, or 0.0 unless both are usable numbers."""
        positive = self.config.target_positive
        negative = self.config.target_negative
        if positive is None or negative is None:
            return 0.0
        if math.isnan(positive) or math.isnan(negative):
            return 0.0
        return (positive + negative) / 2.0

    def evaluate(self, inputs: ArrayLike) -> float:
        """
        Compute the network output for a preprocessed input.

        Args:
            inputs: Pixel vector already mapped to [0, 2] by ``preprocess``

        Returns:
            float: Sum of all active feature terms

        Raises:
            ValueError: If the input is too short for the active weights
        """
        x = np.asarray(inputs, dtype=np.float64).ravel()
        if x.size < self.required_input_length:
            raise ValueError(
                f"Input has {x.size} values, network needs at least "
                f"{self.required_input_length}"
            )

        output = 0.0

        if self.active_first_order.size:
            active = self.active_first_order
            output += float(np.dot(self.weights_first_order[active], x[active]))

        if len(self.active_second_order):
            i = self.active_second_order[:, 0]
            j = self.active_second_order[:, 1]
            output += float(np.sum(self._second_order_values * x[i] * x[j]))

        # Negative pixels give NaN roots, as they would for any real k-th root
        with np.errstate(invalid='ignore'):
            for weights, gather, scale in self._gathers:
                if weights.size:
                    terms = _geometric_terms(x, gather, scale)
                    output += float(np.dot(weights, terms))

        return output

    def describe(self) -> Dict[str, Any]:
        """Summary of the network for listings and diagnostics."""
        return {
            'architecture': dict(self.config.architecture),
            'custom_fields': dict(self.config.custom_fields),
            'input_size': self.input_size,
            'image_width': self.image_width,
            'image_height': self.image_height,
            'enable_third_order': self.config.enable_third_order,
            'target_positive': self.target_positive,
            'target_negative': self.target_negative,
            'threshold': self.threshold,
            'active_counts': self.active_counts,
        }


def load_network(data: bytes) -> SparseNetwork:
    """
    Parse a network from the raw bytes of a network file.

    Args:
        data: Complete file contents

    Returns:
        SparseNetwork ready for evaluation

    Raises:
        FormatError: If the header terminator is missing
    """
    return SparseNetwork.from_bytes(data)


def preprocess(raw_pixels: ArrayLike) -> np.ndarray:
    """
    Rescale a pixel vector to the closed range [0, 2].

    The minimum maps to 0.0 and the maximum to 2.0. A constant vector maps to
    1.0 everywhere.

    Args:
        raw_pixels: Pixel values in any numeric range

    Returns:
        np.ndarray: New float64 array of the same length
    """
    values = np.asarray(raw_pixels, dtype=np.float64).ravel()
    if values.size == 0:
        return values.copy()

    low = values.min()
    high = values.max()
    if high == low:
        return np.ones_like(values)
    return 2.0 * ((values - low) / (high - low))


def evaluate(model: SparseNetwork, preprocessed: ArrayLike) -> float:
    """Score a preprocessed input with ``model``."""
    return model.evaluate(preprocessed)


def threshold(model: SparseNetwork) -> float:
    """Decision threshold of ``model``: the midpoint of its two targets."""
    return model.threshold
