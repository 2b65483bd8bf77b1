"""
test_classifier.py
~~~~~~~~~~~~~~~~~~

Unit and integration tests for the ten-network digit ensemble.
"""

import json
import math
import os
import threading

import pytest

from polynet import FormatError, load_network
from polynet.classifier import (
    CONFIDENCE_SCALE,
    NUM_DIGITS,
    DigitClassifier,
    PredictionResult,
    confidence_from_distance,
    distance_from_target,
    select_digit,
)
from polynet.model_store import network_filename


def digit_network_bytes(network_bytes, target_positive, weight=1.0):
    """
    Two-input network whose output is ``2 * weight`` for input [0, 1].

    Preprocessing maps [0, 1] to [0, 2], so only the second pixel counts.
    """
    custom_fields = {'target_negative': '0'}
    if target_positive is not None:
        custom_fields['target_positive'] = str(target_positive)
    return network_bytes(
        [0.0, weight, 0.0, 0.0, 0.0],
        architecture={'input_size': '2'},
        custom_fields=custom_fields,
    )


@pytest.fixture
def make_classifier(network_bytes):
    """Build a loaded classifier from ten positive targets."""
    def factory(targets):
        classifier = DigitClassifier()
        classifier.set_networks([
            load_network(digit_network_bytes(network_bytes, target))
            for target in targets
        ])
        return classifier
    return factory


@pytest.fixture
def populated_model_dir(model_dir, network_bytes):
    """Model directory holding all ten digit networks."""
    for digit in range(NUM_DIGITS):
        target = 2.0 if digit == 6 else 50.0 + digit
        path = os.path.join(model_dir, network_filename(digit))
        with open(path, 'wb') as f:
            f.write(digit_network_bytes(network_bytes, target))
    return model_dir


@pytest.mark.unit
class TestScoring:
    """Test distance, confidence and digit selection."""

    def test_distance(self):
        assert distance_from_target(12.5, 10.0) == 2.5
        assert distance_from_target(-3.0, 1.0) == 4.0

    def test_distance_without_target(self):
        assert distance_from_target(1.0, None) == math.inf
        assert distance_from_target(1.0, math.nan) == math.inf
        assert distance_from_target(math.nan, 1.0) == math.inf

    def test_confidence(self):
        assert confidence_from_distance(0.0) == 1.0
        assert confidence_from_distance(1.0 / CONFIDENCE_SCALE) == pytest.approx(0.5)
        assert confidence_from_distance(math.inf) == 0.0

    def test_tie_goes_to_lower_digit(self):
        distances = [9.0, 5.0, 3.0, 7.0, 3.0, 8.0, 6.0, 3.0, 4.0, 10.0]
        assert select_digit(distances) == 2

    def test_all_infinite(self):
        assert select_digit([math.inf] * NUM_DIGITS) == 0


@pytest.mark.unit
class TestPredict:
    """Test ensemble predictions on synthetic networks."""

    def test_nearest_target_wins(self, make_classifier):
        targets = [100.0] * NUM_DIGITS
        targets[4] = 2.0
        classifier = make_classifier(targets)

        result = classifier.predict([0.0, 1.0])

        assert result.predicted_digit == 4
        assert result.confidence == 1.0
        assert result.all_outputs == [pytest.approx(2.0)] * NUM_DIGITS
        assert result.distances_from_target[4] == pytest.approx(0.0)
        assert result.distances_from_target[0] == pytest.approx(98.0)
        assert len(result.confidence_scores) == NUM_DIGITS

    def test_equal_distances_pick_lower_digit(self, make_classifier):
        targets = [100.0] * NUM_DIGITS
        targets[7] = 5.0
        targets[2] = -1.0
        classifier = make_classifier(targets)

        result = classifier.predict([0.0, 1.0])

        assert result.distances_from_target[2] == result.distances_from_target[7]
        assert result.predicted_digit == 2

    def test_missing_target_never_wins(self, make_classifier):
        targets = [100.0] * NUM_DIGITS
        targets[0] = None
        classifier = make_classifier(targets)

        result = classifier.predict([0.0, 1.0])

        assert result.distances_from_target[0] == math.inf
        assert result.confidence_scores[0] == 0.0
        assert result.predicted_digit == 1
        assert result.to_dict()['distances_from_target'][0] is None

    def test_predict_before_loading(self):
        classifier = DigitClassifier()
        with pytest.raises(RuntimeError) as exc_info:
            classifier.predict([0.0, 1.0])
        assert "not loaded" in str(exc_info.value)

    def test_set_networks_requires_ten(self, network_bytes):
        classifier = DigitClassifier()
        network = load_network(digit_network_bytes(network_bytes, 1.0))
        with pytest.raises(ValueError):
            classifier.set_networks([network] * 3)
        assert classifier.loaded is False

    def test_result_to_dict(self):
        result = PredictionResult(
            predicted_digit=3,
            confidence=0.9,
            all_outputs=[1.0, math.nan],
            distances_from_target=[0.5, math.inf],
            confidence_scores=[0.9, 0.0],
        )

        data = result.to_dict()

        assert data['predicted_digit'] == 3
        assert data['all_outputs'] == [1.0, None]
        assert data['distances_from_target'] == [0.5, None]

    def test_overflowed_outputs_serialize_as_null(self):
        result = PredictionResult(
            predicted_digit=0,
            all_outputs=[math.inf, -math.inf, 2.5],
            distances_from_target=[math.inf, math.inf, 0.5],
            confidence_scores=[0.0, 0.0, 1.0],
        )

        data = result.to_dict()

        assert data['all_outputs'] == [None, None, 2.5]
        assert data['distances_from_target'] == [None, None, 0.5]
        assert 'Infinity' not in json.dumps(data)


@pytest.mark.integration
class TestLoadModels:
    """Test loading the ensemble from network files."""

    def test_load_all_digits(self, populated_model_dir):
        classifier = DigitClassifier(populated_model_dir)

        classifier.load_models()

        assert classifier.loaded is True
        assert len(classifier.classifiers) == NUM_DIGITS
        assert classifier.predict([0.0, 1.0]).predicted_digit == 6
        assert classifier.thresholds()[6] == 1.0

    def test_missing_file_aborts_load(self, populated_model_dir):
        os.remove(os.path.join(populated_model_dir, network_filename(9)))
        classifier = DigitClassifier(populated_model_dir)

        with pytest.raises(OSError):
            classifier.load_models()

        assert classifier.loaded is False
        assert classifier.classifiers == []

    def test_malformed_file_aborts_load(self, populated_model_dir):
        path = os.path.join(populated_model_dir, network_filename(3))
        with open(path, 'wb') as f:
            f.write(b"[ARCHITECTURE]\ninput_size=2\n")
        classifier = DigitClassifier(populated_model_dir)

        with pytest.raises(FormatError):
            classifier.load_models()

        assert classifier.loaded is False

    def test_files_are_read_off_the_calling_thread(self, populated_model_dir):
        """Reads run on worker threads, and results keep digit order."""
        classifier = DigitClassifier(populated_model_dir)
        load_digit_network = classifier.store.load_digit_network
        reader_threads = set()

        def recording_load(digit):
            reader_threads.add(threading.get_ident())
            return load_digit_network(digit)

        classifier.store.load_digit_network = recording_load
        classifier.load_models()

        assert threading.get_ident() not in reader_threads
        assert [net.target_positive for net in classifier.classifiers] == [
            2.0 if digit == 6 else 50.0 + digit for digit in range(NUM_DIGITS)
        ]
