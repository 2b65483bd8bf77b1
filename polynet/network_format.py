"""
network_format.py
~~~~~~~~~~~~~~~~~

Decoder for the sparse polynomial network file format.

A network file is a UTF-8 text header followed by raw weights:

    [ARCHITECTURE]
    input_size=784
    [CUSTOM_FIELDS]
    image_width=28
    ...
    # END_OF_TEXT_SECTION
    <little-endian float32 stream>

The float stream carries no length prefixes; family boundaries are computed
from the header dimensions alone.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

# Configure module logger
logger = logging.getLogger(__name__)

END_OF_TEXT_MARKER = b"# END_OF_TEXT_SECTION\n"

ARCHITECTURE_SECTION = 'ARCHITECTURE'
CUSTOM_FIELDS_SECTION = 'CUSTOM_FIELDS'

# Little-endian float32, independent of host byte order
WEIGHT_DTYPE = np.dtype('<f4')


class FormatError(ValueError):
    """Raised when a network file is structurally invalid."""


@dataclass
class NetworkConfig:
    """
    Typed view of a network file header.

    The raw ``architecture`` and ``custom_fields`` maps are kept as read so
    callers can inspect keys this module does not interpret.
    """

    architecture: Dict[str, str] = field(default_factory=dict)
    custom_fields: Dict[str, str] = field(default_factory=dict)
    input_size: int = 0
    image_width: int = 0
    image_height: int = 0
    target_positive: Optional[float] = None
    target_negative: Optional[float] = None

    @property
    def enable_third_order(self) -> bool:
        """Third-order weights are present only for a literal 'true'."""
        return self.architecture.get('enable_third_order') == 'true'

    @property
    def active_hints(self) -> Dict[str, int]:
        """Informational ``active_*`` counts written by the training tool."""
        hints = {}
        for key, value in self.custom_fields.items():
            if key.startswith('active_'):
                hints[key] = _parse_int(key, value)
        return hints

    def spatial_size(self, window: int) -> int:
        """
        Number of window positions for a square window of ``window`` pixels.

        Args:
            window: Window edge length (3 or 5)

        Returns:
            ``(width - window + 1) * (height - window + 1)``, or 0 when the
            image dimensions are unset or smaller than the window
        """
        margin = window - 1
        if self.image_width <= margin or self.image_height <= margin:
            return 0
        return (self.image_width - margin) * (self.image_height - margin)


@dataclass
class WeightBlocks:
    """
    Dense weight arrays read from the binary section.

    Each array holds only the values actually present in the stream, so an
    array shorter than its declared size means the file was truncated inside
    that family.
    """

    first_order: np.ndarray
    second_order: np.ndarray
    neighborhood_3x3: np.ndarray
    neighborhood_5x5: np.ndarray
    cross_3: np.ndarray
    cross_5: np.ndarray
    third_order_skipped: int = 0
    values_read: int = 0
    values_available: int = 0


# Leading integer prefix, so "784.0" and "28px" read as 784 and 28
_INT_PREFIX = re.compile(r'\s*([+-]?\d+)')


def _parse_int(key: str, value: str) -> int:
    match = _INT_PREFIX.match(value)
    if match is None:
        logger.warning(f"Non-integer value for '{key}': {value!r}, using 0")
        return 0
    parsed = int(match.group(1))
    if match.end() != len(value.rstrip()):
        logger.debug(f"Ignoring trailing text in '{key}': {value!r}")
    if parsed < 0:
        logger.warning(f"Negative value for '{key}': {parsed}, using 0")
        return 0
    return parsed


def _parse_float(key: str, value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        logger.warning(f"Non-numeric value for '{key}': {value!r}")
        return math.nan


def parse_header_text(text: str) -> NetworkConfig:
    """
    Parse the text section of a network file.

    Args:
        text: Header text, terminator line included

    Returns:
        NetworkConfig populated from the ARCHITECTURE and CUSTOM_FIELDS
        sections
    """
    config = NetworkConfig()
    section = ''

    for line in text.split('\n'):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue

        if stripped.startswith('[') and stripped.endswith(']'):
            section = stripped[1:-1]
            continue

        key, sep, value = stripped.partition('=')
        if not sep:
            continue

        if section == ARCHITECTURE_SECTION:
            config.architecture[key] = value
            if key == 'input_size':
                config.input_size = _parse_int(key, value)
        elif section == CUSTOM_FIELDS_SECTION:
            config.custom_fields[key] = value
            if key == 'image_width':
                config.image_width = _parse_int(key, value)
            elif key == 'image_height':
                config.image_height = _parse_int(key, value)
            elif key == 'target_positive':
                config.target_positive = _parse_float(key, value)
            elif key == 'target_negative':
                config.target_negative = _parse_float(key, value)

    if config.image_width and config.image_height:
        pixels = config.image_width * config.image_height
        if pixels != config.input_size:
            logger.warning(
                f"Header input_size={config.input_size} does not match "
                f"image {config.image_width}x{config.image_height}"
            )

    return config


def split_header(data: bytes) -> Tuple[NetworkConfig, int]:
    """
    Locate and parse the text header of a network file.

    Args:
        data: Complete file contents

    Returns:
        tuple: (config, header_length) where header_length is the byte offset
        of the first weight

    Raises:
        FormatError: If the terminator line is missing
    """
    marker_index = data.find(END_OF_TEXT_MARKER)
    if marker_index == -1:
        raise FormatError(
            "Invalid network file format: missing section terminator "
            f"{END_OF_TEXT_MARKER.decode('ascii').strip()!r}"
        )

    text = data[:marker_index + len(END_OF_TEXT_MARKER)].decode(
        'utf-8', errors='replace'
    )
    config = parse_header_text(text)

    # Byte length, not character count: multi-byte characters in the header
    # would otherwise shift the weight stream
    header_length = len(text.encode('utf-8'))
    logger.debug(f"Parsed {header_length}-byte header: {config.architecture}")
    return config, header_length


def read_weight_stream(payload: bytes, config: NetworkConfig) -> WeightBlocks:
    """
    Read the float32 weight families that follow the header.

    Families are consumed in a fixed order. Reading stops silently when the
    stream runs out; the family being read keeps the values seen so far and
    every later family is empty.

    Args:
        payload: Bytes starting right after the header
        config: Parsed header

    Returns:
        WeightBlocks with one float64 array per family
    """
    usable = len(payload) - len(payload) % WEIGHT_DTYPE.itemsize
    if usable != len(payload):
        logger.warning(
            f"Ignoring {len(payload) - usable} trailing byte(s) after the "
            "last whole float32"
        )
    stream = np.frombuffer(payload[:usable], dtype=WEIGHT_DTYPE)
    position = 0

    def take(count: int) -> np.ndarray:
        nonlocal position
        start = min(position, len(stream))
        end = min(position + max(count, 0), len(stream))
        position = end
        return stream[start:end].astype(np.float64)

    n = config.input_size
    first_order = take(n)
    second_order = take(n * (n + 1) // 2)

    third_order_skipped = 0
    if config.enable_third_order:
        third_order_skipped = n * (n + 1) * (n + 2) // 6
        logger.warning(
            f"Skipping {third_order_skipped} third-order weights; "
            "third-order layout is unverified against real models"
        )
        position += third_order_skipped

    size_3 = config.spatial_size(3)
    size_5 = config.spatial_size(5)
    blocks = WeightBlocks(
        first_order=first_order,
        second_order=second_order,
        neighborhood_3x3=take(size_3),
        neighborhood_5x5=take(size_5),
        cross_3=take(size_3),
        cross_5=take(size_5),
        third_order_skipped=third_order_skipped,
        values_read=min(position, len(stream)),
        values_available=len(stream),
    )

    expected = (
        n + n * (n + 1) // 2 + third_order_skipped + 2 * size_3 + 2 * size_5
    )
    if len(stream) < expected:
        logger.debug(
            f"Weight stream truncated: {len(stream)} of {expected} values "
            "present, unread weights are treated as inactive"
        )
    elif len(stream) > expected:
        logger.debug(f"{len(stream) - expected} unused value(s) after weights")

    return blocks
