"""Anchor shape generator for SSD output layers.

Every spatial location of an SSD feature layer shares the same set of prior
boxes. Only their extent depends on the layer configuration, so this module
produces the ordered ``(height, width)`` fractions of the image for one layer;
the centers are derived separately by :mod:`ssdax.models.utils.box_coder`.

The order of the generated shapes is part of the contract: the decoder pairs
the ``a``-th regression slot of each cell with the ``a``-th shape.

    1. ``min_size`` square prior.
    2. ``sqrt(min_size * max_size)`` square prior (only if ``max_size > min_size``).
    3. One prior per configured aspect ratio. Reciprocal ratios are not added.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import NamedTuple


class AnchorShape(NamedTuple):
    """Prior extent as fractions of the image height and width."""

    height: float
    width: float


def _validate_image_size(image_height: float, image_width: float) -> None:
    if image_height <= 0 or image_width <= 0:
        raise ValueError(f"Image dimensions must be positive; received ({image_height}, {image_width}).")


@dataclass(frozen=True, kw_only=True)
class SSDAnchorGenerator:
    """Generator for the prior shapes of a single SSD layer.

    Attributes:
        min_size: Edge length in pixels of the base square prior.
        max_size: Upper size in pixels. An extra square prior of edge
            ``sqrt(min_size * max_size)`` is added when it exceeds ``min_size``.
        ratios: Aspect ratios (width / height) of the additional priors.
    """

    min_size: float
    max_size: float = 0.0
    ratios: Sequence[float] = ()

    def __post_init__(self) -> None:
        """Validate the layer configuration."""
        if self.min_size <= 0:
            raise ValueError(f"min_size must be positive; received {self.min_size}.")
        if self.max_size < 0:
            raise ValueError(f"max_size must be non-negative; received {self.max_size}.")
        if any(r <= 0 for r in self.ratios):
            raise ValueError(f"ratios must be positive; received {tuple(self.ratios)}.")
        object.__setattr__(self, "ratios", tuple(float(r) for r in self.ratios))

    @property
    def anchors_per_location(self) -> int:
        """Return the number of priors placed at each feature location."""
        return 1 + int(self.max_size > self.min_size) + len(self.ratios)

    def shapes(self, image_height: float, image_width: float) -> list[AnchorShape]:
        """Return the ordered prior shapes for an image of the given size."""
        _validate_image_size(image_height, image_width)

        shapes = [AnchorShape(self.min_size / image_height, self.min_size / image_width)]
        if self.max_size > self.min_size:
            edge = math.sqrt(self.min_size * self.max_size)
            shapes.append(AnchorShape(edge / image_height, edge / image_width))

        for ratio in self.ratios:
            sqrt_ratio = math.sqrt(ratio)
            shapes.append(
                AnchorShape(
                    self.min_size / image_height / sqrt_ratio,
                    self.min_size / image_width * sqrt_ratio,
                )
            )
        return shapes


def generate_anchor_shapes(
    image_height: float,
    image_width: float,
    min_size: float,
    max_size: float,
    ratios: Sequence[float] = (),
) -> list[AnchorShape]:
    """Functional API for anchor shape generation.

    Args:
        image_height: Input image height in pixels.
        image_width: Input image width in pixels.
        min_size: Base prior size in pixels.
        max_size: Upper prior size in pixels; ignored unless ``> min_size``.
        ratios: Aspect ratios of the additional priors.

    Returns:
        ``1 + (max_size > min_size) + len(ratios)`` shapes in decoding order.
    """
    generator = SSDAnchorGenerator(min_size=min_size, max_size=max_size, ratios=ratios)
    return generator.shapes(image_height, image_width)


__all__ = ["AnchorShape", "SSDAnchorGenerator", "generate_anchor_shapes"]
