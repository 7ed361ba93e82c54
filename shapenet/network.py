"""
network.py
~~~~~~~~~~

Fully-connected feed-forward network trained online by backpropagation.

Each neuron keeps its own incoming weight vector and a bias weight applied
to a constant -1 signal. Layers are stored in order, sensors first; a
neuron refers to its input layer by index, never by reference, so the
network owns every neuron and stays trivially copyable.
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from shapenet.sample import Sample, SampleSet

logger = logging.getLogger(__name__)

# Constant input multiplied by each neuron's bias weight
BIAS_SIGNAL = -1.0

INIT_MIN_WEIGHT = -1.0
INIT_MAX_WEIGHT = 1.0
INIT_BIAS_WEIGHT = 0.01


class NetworkError(Exception):
    """Base class for network errors."""


class ConfigurationError(NetworkError, ValueError):
    """Raised when a network is built from an invalid layer specification."""


class ShapeMismatchError(NetworkError, ValueError):
    """Raised when a sample does not fit the sensor layer."""


def sigmoid(z):
    """The sigmoid function."""
    # Clipped so saturated neurons do not overflow exp
    return 1.0 / (1.0 + np.exp(-np.clip(z, -500.0, 500.0)))


class Neuron:
    """
    A single unit of the network.

    Sensor neurons (``input_layer is None``) have no weights; their output
    is assigned directly from the sample.
    """

    def __init__(
        self,
        input_layer: Optional[int] = None,
        input_size: int = 0,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Args:
            input_layer: Index of the previous layer, None for sensors
            input_size: Number of neurons in the previous layer
            rng: Generator used to draw the initial weights
        """
        self.input_layer = input_layer
        if input_layer is None:
            self.weights = np.zeros(0)
        else:
            if rng is None:
                rng = np.random.default_rng()
            self.weights = rng.uniform(
                INIT_MIN_WEIGHT, INIT_MAX_WEIGHT, input_size
            )
        self.bias_weight = INIT_BIAS_WEIGHT
        self.output = 0.0
        self.error = 0.0

    @property
    def is_sensor(self) -> bool:
        return self.input_layer is None

    def activate(self, inputs: np.ndarray) -> float:
        """
        Compute the output from the previous layer's outputs.

        Must not be called on sensors.
        """
        charge = float(np.dot(self.weights, inputs)) + self.bias_weight * BIAS_SIGNAL
        self.output = float(sigmoid(charge))
        return self.output

    def backprop_error(
        self,
        learning_rate: float,
        inputs: Optional[np.ndarray] = None,
        input_errors: Optional[np.ndarray] = None
    ) -> None:
        """
        Push this neuron's error to its input layer and update its weights.

        ``error`` must hold the raw delta gathered from the layer above.
        The error is passed down with the weights as they were before this
        update, and is reset to zero afterwards.

        Args:
            learning_rate: Step size of the update
            inputs: Outputs of the input layer
            input_errors: Incoming-error buffer of the input layer
        """
        if self.is_sensor:
            self.error = 0.0
            return

        self.error *= self.output * (1.0 - self.output)
        self.bias_weight += learning_rate * self.error * BIAS_SIGNAL

        input_errors += self.error * self.weights
        self.weights += learning_rate * self.error * inputs

        self.error = 0.0


class Network:
    """
    Feed-forward network of sigmoid neurons.

    Example:
        >>> net = Network([400, 40, 4], seed=1)
        >>> attempts = net.train_one(sample)
        >>> label = net.predict(sample)
    """

    def __init__(
        self,
        sizes: Sequence[int],
        learning_rate: float = 0.01,
        error_threshold: float = 0.2,
        max_attempts: int = 100,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Args:
            sizes: Number of neurons per layer, sensors first
            learning_rate: Step size used by ``train_one``
            error_threshold: Squared error below which a sample counts as learned
            max_attempts: Cap on backward passes per ``train_one`` call
            seed: Seed for weight initialization, ignored when ``rng`` is given
            rng: Generator used for weight initialization

        Raises:
            ConfigurationError: If fewer than two layers or an empty layer is given
        """
        sizes = list(sizes)
        if len(sizes) < 2:
            raise ConfigurationError(
                f"Network needs at least 2 layers, got {len(sizes)}"
            )
        if any(not isinstance(size, (int, np.integer)) or isinstance(size, bool)
               or size < 1 for size in sizes):
            raise ConfigurationError(
                f"Layer sizes must be positive integers, got {sizes}"
            )

        if rng is None:
            rng = np.random.default_rng(seed)

        self.sizes = [int(size) for size in sizes]
        self.num_layers = len(self.sizes)
        self.learning_rate = learning_rate
        self.error_threshold = error_threshold
        self.max_attempts = max_attempts

        self.layers: List[List[Neuron]] = [
            [Neuron() for _ in range(self.sizes[0])]
        ]
        for index in range(1, self.num_layers):
            self.layers.append([
                Neuron(index - 1, self.sizes[index - 1], rng)
                for _ in range(self.sizes[index])
            ])

        # Incoming error per layer, filled by the layer above during back_prop
        self._incoming_errors = [np.zeros(size) for size in self.sizes]

    @property
    def sensors(self) -> List[Neuron]:
        return self.layers[0]

    @property
    def outputs(self) -> List[Neuron]:
        return self.layers[-1]

    def _layer_outputs(self, index: int) -> np.ndarray:
        return np.array([neuron.output for neuron in self.layers[index]])

    def run(self, sample: Sample) -> None:
        """
        Forward pass: feed ``sample.input`` through the network.

        Stores the output layer's activations in ``sample.output`` and
        lets the sample derive its error and recognized class.

        Raises:
            ShapeMismatchError: If the input width differs from the sensor layer
        """
        if len(sample.input) != self.sizes[0]:
            raise ShapeMismatchError(
                f"Sample has {len(sample.input)} inputs, "
                f"network expects {self.sizes[0]}"
            )

        for neuron, value in zip(self.sensors, sample.input):
            neuron.output = float(value)

        for index in range(1, self.num_layers):
            inputs = self._layer_outputs(index - 1)
            for neuron in self.layers[index]:
                neuron.activate(inputs)

        sample.output = self.get_outputs()
        sample.process_output()

    def back_prop(self, sample: Sample, learning_rate: float) -> None:
        """
        Backward pass for a sample that has already been run.

        Layers are processed from the output down; a layer only reads its
        incoming-error buffer once every neuron above it has written to it.
        """
        for buffer in self._incoming_errors:
            buffer.fill(0.0)
        self._incoming_errors[-1][:] = sample.error

        for index in range(self.num_layers - 1, -1, -1):
            errors = self._incoming_errors[index]
            if index > 0:
                inputs = self._layer_outputs(index - 1)
                input_errors = self._incoming_errors[index - 1]
            else:
                inputs = input_errors = None

            for position, neuron in enumerate(self.layers[index]):
                neuron.error = float(errors[position])
                errors[position] = 0.0
                neuron.backprop_error(learning_rate, inputs, input_errors)

    def predict(self, sample: Sample) -> Optional[int]:
        """Run the sample and return the recognized class."""
        self.run(sample)
        return sample.recognized_class

    def train_one(self, sample: Sample) -> int:
        """
        Train the network on a single sample.

        Alternates forward and backward passes until the sample is both
        recognized correctly and its squared error drops below
        ``error_threshold``, or ``max_attempts`` backward passes were made.

        Returns:
            int: Number of backward passes performed; 0 means the sample was
            already learned, ``max_attempts`` means it was given up on
        """
        attempts = 0
        while attempts < self.max_attempts:
            self.run(sample)
            error = sample.estimated_error()
            logger.debug(f"Attempt {attempts}: error {error:.4f}, {sample!r}")

            if error < self.error_threshold and sample.correct():
                logger.debug(f"Sample learned after {attempts} attempt(s)")
                return attempts

            attempts += 1
            self.back_prop(sample, self.learning_rate)

        logger.debug(
            f"Giving up on sample of class {sample.actual_class} "
            f"after {attempts} attempts"
        )
        return attempts

    def train_on_dataset(
        self,
        samples: SampleSet,
        epochs: int,
        acceptable_accuracy: float,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> Optional[float]:
        """
        Train on every sample of a set, epoch after epoch.

        A sample counts as solved in an epoch when ``train_one`` needed no
        backward pass for it. Training stops as soon as the fraction of
        solved samples exceeds ``acceptable_accuracy``.

        Args:
            samples: Training set
            epochs: Maximum number of passes over the set
            acceptable_accuracy: Early-stopping threshold in [0, 1]
            callback: Called after each epoch with a progress dict
            yield_func: Called after each sample, e.g. to yield to other greenlets

        Returns:
            float: Accuracy of the last epoch, or None for an empty set

        Raises:
            ValueError: If epochs or acceptable_accuracy are out of range
        """
        if epochs < 1:
            raise ValueError(f"epochs must be at least 1, got {epochs}")
        if not 0.0 <= acceptable_accuracy <= 1.0:
            raise ValueError(
                "acceptable_accuracy must be between 0.0 and 1.0, "
                f"got {acceptable_accuracy}"
            )

        total = len(samples)
        if total == 0:
            logger.warning("Training requested on an empty sample set")
            return None

        start_time = time.time()
        accuracy = 0.0
        for epoch in range(1, epochs + 1):
            solved = 0
            for sample in samples:
                if self.train_one(sample) == 0:
                    solved += 1
                if yield_func is not None:
                    yield_func()

            accuracy = solved / total
            logger.info(
                f"Epoch {epoch}/{epochs}: {solved}/{total} solved "
                f"({accuracy:.2%})"
            )

            if callback is not None:
                callback({
                    'epoch': epoch,
                    'total_epochs': epochs,
                    'accuracy': accuracy,
                    'correct': solved,
                    'total': total,
                    'elapsed_time': time.time() - start_time
                })

            if accuracy > acceptable_accuracy:
                break

        return accuracy

    def test_on_dataset(self, samples: SampleSet) -> Optional[float]:
        """
        Fraction of samples recognized correctly. No weights are changed.

        Returns:
            float: Accuracy in [0, 1], or None if the set is empty
        """
        if len(samples) == 0:
            return None

        correct = 0
        for sample in samples:
            self.predict(sample)
            if sample.correct():
                correct += 1
        return correct / len(samples)

    def get_outputs(self) -> np.ndarray:
        """Current activations of the output layer."""
        return self._layer_outputs(self.num_layers - 1)

    def copy(self) -> 'Network':
        """Independent copy of the network, weights included."""
        return copy.deepcopy(self)
