"""
sample.py
~~~~~~~~~

Labeled feature vectors and collections of them.

A ``Sample`` carries the sensor input for one image together with the
network's response to it; a ``SampleSet`` is an ordered collection used for
training and testing.
"""

import math
from enum import IntEnum
from typing import Iterator, List, Optional, Sequence

import numpy as np


class FigureType(IntEnum):
    """Shape classes produced by the generator, in output-neuron order."""

    TRIANGLE = 0
    RECTANGLE = 1
    CIRCLE = 2
    SINUSOID = 3


class Sample:
    """
    One input image as seen by the network.

    The input vector is copied on construction, so the caller may reuse
    its buffer. ``output``, ``error`` and ``recognized_class`` stay ``None``
    until the sample has been run through a network.
    """

    def __init__(
        self,
        input_values: Sequence[float],
        actual_class: Optional[int] = None
    ):
        """
        Args:
            input_values: Sensor values for the image
            actual_class: Ground-truth class index, or None if unlabeled
        """
        self.input = np.array(input_values, dtype=float)
        self.output: Optional[np.ndarray] = None
        self.error: Optional[np.ndarray] = None
        self.actual_class = actual_class
        self.recognized_class: Optional[int] = None

    def process_output(self) -> None:
        """
        Derive the error vector and recognized class from ``output``.

        The target is 1 for the actual class and 0 elsewhere. Ties in the
        output are resolved in favour of the lowest index.
        """
        target = np.zeros(len(self.output))
        if self.actual_class is not None and 0 <= self.actual_class < len(target):
            target[self.actual_class] = 1.0
        self.error = target - self.output
        self.recognized_class = int(np.argmax(self.output))

    def estimated_error(self) -> float:
        """Squared error summed over all outputs."""
        return float(np.sum(self.error ** 2))

    def update_error_vector(self, error_vector: np.ndarray) -> None:
        """Add this sample's (non-squared) error into ``error_vector``."""
        error_vector += self.error

    def correct(self) -> bool:
        """Whether the sample was recognized as its actual class."""
        return (
            self.recognized_class is not None
            and self.recognized_class == self.actual_class
        )

    def __str__(self) -> str:
        def fmt(vector):
            if vector is None:
                return 'None'
            return '; '.join(f'{value:g}' for value in vector)

        return (
            f"Sample class: {_label_name(self.actual_class)}\n"
            f"Input: {fmt(self.input)}\n"
            f"Output: {fmt(self.output)}\n"
            f"Error: {fmt(self.error)}\n"
            f"Recognized: {_label_name(self.recognized_class)}"
        )

    def __repr__(self) -> str:
        return (
            f"Sample(inputs={len(self.input)}, actual={self.actual_class}, "
            f"recognized={self.recognized_class})"
        )


def _label_name(label: Optional[int]) -> str:
    if label is None:
        return 'None'
    try:
        return f'{FigureType(label).name} ({label})'
    except ValueError:
        return str(label)


class SampleSet:
    """Ordered collection of samples. Duplicates are kept."""

    def __init__(self, samples: Optional[List[Sample]] = None):
        self.samples: List[Sample] = list(samples) if samples else []

    def add_sample(self, sample: Sample) -> None:
        self.samples.append(sample)

    def __len__(self) -> int:
        return len(self.samples)

    def __getitem__(self, index: int) -> Sample:
        return self.samples[index]

    def __setitem__(self, index: int, sample: Sample) -> None:
        self.samples[index] = sample

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.samples)

    def accuracy(self) -> float:
        """
        Fraction of samples whose recognized class matches the actual one.

        Returns:
            float: Accuracy in [0, 1], or nan for an empty set
        """
        if not self.samples:
            return math.nan
        correct = sum(1 for sample in self.samples if sample.correct())
        return correct / len(self.samples)
