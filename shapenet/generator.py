"""
generator.py
~~~~~~~~~~~~

Procedural shape images and the feature vectors the network is fed.

Figures are drawn into a 200x200 binary raster. The feature vector is the
raster's projection: the number of set pixels in every row followed by
the number of set pixels in every column.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from shapenet.sample import FigureType, Sample, SampleSet

logger = logging.getLogger(__name__)

IMAGE_SIZE = 200
FEATURE_COUNT = 2 * IMAGE_SIZE

CIRCLE_RADIUS_RANGE = (50, 65)
CIRCLE_STEP = 0.01
SINUSOID_FREQUENCY = 0.25
SINUSOID_STEP = 0.05


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


class ShapeGenerator:
    """
    Draws random triangles, rectangles, circles and sine curves.

    Attributes:
        figure_count: Number of figure classes to pick from (1 to 4)
        figure_size: Nominal width and height of a figure in pixels
        size_jitter: Spread of figure corners around their nominal position
        center_jitter: Spread of the triangle apex around the image center
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.image = np.zeros((IMAGE_SIZE, IMAGE_SIZE), dtype=bool)
        self.current_figure: Optional[FigureType] = None
        self._figure_count = len(FigureType)
        self.figure_size = 100
        self.size_jitter = 20
        self.center_jitter = 20

    @property
    def figure_count(self) -> int:
        return self._figure_count

    @figure_count.setter
    def figure_count(self, value: int) -> None:
        if not 1 <= value <= len(FigureType):
            raise ValueError(
                f"figure_count must be between 1 and {len(FigureType)}, "
                f"got {value}"
            )
        self._figure_count = int(value)

    def clear_image(self) -> None:
        self.image[:, :] = False

    def _jitter(self, spread: int) -> int:
        half = spread // 2
        if half <= 0:
            return 0
        return int(self.rng.integers(-half, half))

    def _left_upper_point(self) -> Tuple[int, int]:
        corner = IMAGE_SIZE // 2 - self.figure_size // 2
        return (corner + self._jitter(self.size_jitter),
                corner + self._jitter(self.size_jitter))

    def _right_down_point(self) -> Tuple[int, int]:
        corner = IMAGE_SIZE // 2 + self.figure_size // 2
        return (corner + self._jitter(self.size_jitter),
                corner + self._jitter(self.size_jitter))

    def _center_point(self) -> Tuple[int, int]:
        center = IMAGE_SIZE // 2
        return (center + self._jitter(self.size_jitter),
                center + self._jitter(self.size_jitter))

    def _plot(self, xs, ys) -> None:
        xs = np.clip(np.asarray(xs, dtype=int), 0, IMAGE_SIZE - 1)
        ys = np.clip(np.asarray(ys, dtype=int), 0, IMAGE_SIZE - 1)
        self.image[xs, ys] = True

    def draw_line(self, x: int, y: int, x2: int, y2: int) -> None:
        """Draw a segment with Bresenham's integer line walk."""
        w = x2 - x
        h = y2 - y
        dx1 = dx2 = _sign(w)
        dy1 = _sign(h)
        dy2 = 0
        longest = abs(w)
        shortest = abs(h)
        if not longest > shortest:
            longest, shortest = abs(h), abs(w)
            dx2, dy2 = 0, _sign(h)

        xs, ys = [], []
        numerator = longest >> 1
        for _ in range(longest + 1):
            xs.append(x)
            ys.append(y)
            numerator += shortest
            if not numerator < longest:
                numerator -= longest
                x += dx1
                y += dy1
            else:
                x += dx2
                y += dy2
        self._plot(xs, ys)

    def create_triangle(self) -> None:
        self.current_figure = FigureType.TRIANGLE
        left, top = self._left_upper_point()
        right, bottom = self._right_down_point()
        apex = IMAGE_SIZE // 2 + self._jitter(self.center_jitter)

        self.draw_line(left, bottom, apex, top)
        self.draw_line(apex, top, right, bottom)
        self.draw_line(right, bottom, left, bottom)

    def create_rectangle(self) -> None:
        self.current_figure = FigureType.RECTANGLE
        left, top = self._left_upper_point()
        right, bottom = self._right_down_point()

        self.draw_line(left, top, right, top)
        self.draw_line(right, top, right, bottom)
        self.draw_line(right, bottom, left, bottom)
        self.draw_line(left, bottom, left, top)

    def create_circle(self) -> None:
        self.current_figure = FigureType.CIRCLE
        cx, cy = self._center_point()
        radius = int(self.rng.integers(*CIRCLE_RADIUS_RANGE))

        t = np.arange(0.0, 2 * np.pi, CIRCLE_STEP)
        self._plot(cx + radius * np.cos(t), cy + radius * np.sin(t))

    def create_sinusoid(self) -> None:
        self.current_figure = FigureType.SINUSOID
        left, top = self._left_upper_point()
        right, bottom = self._right_down_point()
        amplitude = (bottom - top) // 2
        center_y = top + amplitude

        xs = np.arange(left, right + SINUSOID_STEP / 2, SINUSOID_STEP)
        ys = np.round(center_y + amplitude * np.sin(SINUSOID_FREQUENCY * xs))
        self._plot(xs, ys)

    def generate_figure(
        self,
        figure_type: Optional[int] = None
    ) -> FigureType:
        """
        Clear the raster and draw one figure.

        Args:
            figure_type: Figure to draw; a random one of the first
                ``figure_count`` types if None or out of range

        Returns:
            FigureType: The figure that was drawn
        """
        if figure_type is None or not 0 <= int(figure_type) < self.figure_count:
            figure_type = int(self.rng.integers(self.figure_count))
        figure_type = FigureType(figure_type)

        self.clear_image()
        drawers = {
            FigureType.TRIANGLE: self.create_triangle,
            FigureType.RECTANGLE: self.create_rectangle,
            FigureType.CIRCLE: self.create_circle,
            FigureType.SINUSOID: self.create_sinusoid,
        }
        drawers[figure_type]()
        return figure_type

    def features(self) -> np.ndarray:
        """Row counts followed by column counts of the current raster."""
        return np.concatenate(
            (self.image.sum(axis=1), self.image.sum(axis=0))
        ).astype(float)

    def generate_sample(self, figure_type: Optional[int] = None) -> Sample:
        """Draw a figure and return it as a labeled sample."""
        figure = self.generate_figure(figure_type)
        return Sample(self.features(), figure)

    def generate_set(self, count: int) -> SampleSet:
        """Build a set of ``count`` random labeled samples."""
        samples = SampleSet()
        for _ in range(count):
            samples.add_sample(self.generate_sample())
        logger.debug(f"Generated {count} samples over {self.figure_count} classes")
        return samples
