"""
classifier.py
~~~~~~~~~~~~~

Digit classifier built from ten one-vs-rest sparse networks.

Every network scores the same preprocessed input; the predicted digit is the
one whose output lands closest to that network's positive target.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import gevent

from .model_store import ModelStore
from .sparse_network import ArrayLike, SparseNetwork, preprocess

# Configure module logger
logger = logging.getLogger(__name__)

NUM_DIGITS = 10

# Maps raw distances (typically in the thousands) onto (0, 1]
CONFIDENCE_SCALE = 1e-4


@dataclass
class PredictionResult:
    """Outcome of one ensemble prediction."""

    predicted_digit: int = -1
    confidence: float = 0.0
    all_outputs: List[float] = field(default_factory=list)
    distances_from_target: List[float] = field(default_factory=list)
    confidence_scores: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """
        JSON-friendly representation.

        Non-finite outputs and distances are reported as None since JSON
        has no representation for them.
        """
        result = asdict(self)
        result['all_outputs'] = [
            None if not math.isfinite(o) else o for o in self.all_outputs
        ]
        result['distances_from_target'] = [
            None if not math.isfinite(d) else d for d in self.distances_from_target
        ]
        return result


def distance_from_target(output: float, target: Optional[float]) -> float:
    """
    Absolute distance of ``output`` from ``target``.

    A missing or NaN target, or a NaN output, yields infinity so the digit can
    never win.
    """
    if target is None or math.isnan(target) or math.isnan(output):
        return math.inf
    return abs(output - target)


def confidence_from_distance(distance: float) -> float:
    """Confidence in (0, 1]; an infinite distance gives 0.0."""
    if math.isinf(distance):
        return 0.0
    return 1.0 / (1.0 + distance * CONFIDENCE_SCALE)


def select_digit(distances: List[float]) -> int:
    """
    Index of the smallest distance.

    Ties go to the lowest index. If every distance is infinite, digit 0 is
    returned.
    """
    best_digit = 0
    min_distance = math.inf
    for digit, distance in enumerate(distances):
        if distance < min_distance:
            min_distance = distance
            best_digit = digit
    return best_digit


class DigitClassifier:
    """
    Ensemble of ten sparse networks, one per digit.

    Networks are read from ``digit_{d}_sparse.bin`` files in ``model_dir``.
    """

    def __init__(self, model_dir: str = 'models'):
        """
        Args:
            model_dir: Directory holding the ten network files
        """
        self.store = ModelStore(model_dir)
        self.classifiers: List[SparseNetwork] = []
        self.loaded = False

    @property
    def model_dir(self) -> str:
        return self.store.model_dir

    def load_models(self) -> None:
        """
        Load all ten networks concurrently.

        File reads and parsing run on the gevent hub's native threadpool, so
        they overlap without monkey-patching. Results are collected in digit
        order; the first failure is re-raised and the classifier stays
        unloaded.

        Raises:
            FormatError: If a network file is malformed
            OSError: If a network file cannot be read
        """
        logger.info(f"Loading {NUM_DIGITS} digit networks from {self.model_dir}")

        pool = gevent.get_hub().threadpool
        pending = [
            pool.spawn(self.store.load_digit_network, digit)
            for digit in range(NUM_DIGITS)
        ]

        self.classifiers = [result.get() for result in pending]
        self.loaded = True
        logger.info("All digit networks loaded")

    def set_networks(self, networks: List[SparseNetwork]) -> None:
        """
        Use already-parsed networks instead of reading files.

        Raises:
            ValueError: If the list does not hold exactly ten networks
        """
        if len(networks) != NUM_DIGITS:
            raise ValueError(
                f"Expected {NUM_DIGITS} networks, got {len(networks)}"
            )
        self.classifiers = list(networks)
        self.loaded = True

    def predict(self, pixels: ArrayLike) -> PredictionResult:
        """
        Classify a raw pixel vector.

        Args:
            pixels: Pixel values in any range; they are preprocessed once and
                shared by all ten networks

        Returns:
            PredictionResult with per-digit outputs, distances and confidences

        Raises:
            RuntimeError: If the models have not been loaded
        """
        if not self.loaded:
            raise RuntimeError('Models not loaded yet')

        inputs = preprocess(pixels)
        result = PredictionResult()

        for digit, network in enumerate(self.classifiers):
            output = network.evaluate(inputs)
            distance = distance_from_target(output, network.target_positive)
            if math.isinf(distance):
                logger.warning(
                    f"Digit {digit} has no usable target; excluding it"
                )
            result.all_outputs.append(output)
            result.distances_from_target.append(distance)
            result.confidence_scores.append(confidence_from_distance(distance))

        result.predicted_digit = select_digit(result.distances_from_target)
        result.confidence = result.confidence_scores[result.predicted_digit]
        logger.debug(
            f"Predicted {result.predicted_digit} "
            f"(confidence {result.confidence:.4f})"
        )
        return result

    def thresholds(self) -> List[float]:
        """Decision threshold of every loaded network, in digit order."""
        return [network.threshold for network in self.classifiers]

