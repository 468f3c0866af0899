"""Jaccard overlap (Intersection-over-Union) for normalized boxes.

Boxes use the ``(ymin, xmin, ymax, xmax)`` layout produced by
:func:`ssdax.models.utils.box_coder.decode_regression`. Areas are taken as the
raw ``(ymax - ymin) * (xmax - xmin)`` product; only the intersection extents
are clamped at zero. Pairs whose union is not positive have an overlap of
``0``.
"""

from __future__ import annotations

from collections.abc import Sequence

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

Box = Float[Array, "4"]
Boxes = Float[Array, "num_boxes 4"]
IoUMatrix = Float[Array, "num_boxes1 num_boxes2"]


def _box_area(box: Box) -> Float[Array, ""]:
    return (box[2] - box[0]) * (box[3] - box[1])


def _overlap(box1: Box, area1: Float[Array, ""], box2: Box, area2: Float[Array, ""]) -> Float[Array, ""]:
    """Return the Jaccard overlap of a box pair given their areas."""
    inter_h = jnp.maximum(0.0, jnp.minimum(box1[2], box2[2]) - jnp.maximum(box1[0], box2[0]))
    inter_w = jnp.maximum(0.0, jnp.minimum(box1[3], box2[3]) - jnp.maximum(box1[1], box2[1]))
    intersection = inter_h * inter_w
    union = area1 + area2 - intersection
    positive = union > 0.0
    return jnp.where(positive, intersection / jnp.where(positive, union, 1.0), 0.0)


def _validate_boxes(name: str, boxes: jnp.ndarray) -> Boxes:
    """Validate box tensor shape."""
    if boxes.ndim != 2 or boxes.shape[-1] != 4:
        raise ValueError(f"{name} must have shape (N, 4); received {boxes.shape}.")
    return boxes


def jaccard_overlap(box_a: Box | Sequence[float], box_b: Box | Sequence[float]) -> float:
    """Compute the Jaccard overlap of two boxes.

    Args:
        box_a: Box in ``(ymin, xmin, ymax, xmax)`` format.
        box_b: Box in ``(ymin, xmin, ymax, xmax)`` format.

    Returns:
        Intersection area over union area. ``0.0`` when the union is not
        positive (e.g. two zero-area boxes).
    """
    lhs = jnp.asarray(box_a, dtype=jnp.float32)
    rhs = jnp.asarray(box_b, dtype=jnp.float32)
    if lhs.shape != (4,) or rhs.shape != (4,):
        raise ValueError(f"Boxes must have shape (4,); received {lhs.shape} and {rhs.shape}.")
    return float(_overlap(lhs, _box_area(lhs), rhs, _box_area(rhs)))


def pairwise_jaccard(boxes1: Boxes, boxes2: Boxes) -> IoUMatrix:
    """Compute the pairwise Jaccard overlap between two box sets."""
    boxes1 = _validate_boxes("boxes1", jnp.asarray(boxes1, dtype=jnp.float32))
    boxes2 = _validate_boxes("boxes2", jnp.asarray(boxes2, dtype=jnp.float32))

    if boxes1.shape[0] == 0 or boxes2.shape[0] == 0:
        return jnp.zeros((boxes1.shape[0], boxes2.shape[0]), dtype=jnp.float32)

    areas1 = jax.vmap(_box_area)(boxes1)
    areas2 = jax.vmap(_box_area)(boxes2)

    def row(box1: Box, area1: Float[Array, ""]) -> Float[Array, "num_boxes2"]:
        return jax.vmap(lambda box2, area2: _overlap(box1, area1, box2, area2))(boxes2, areas2)

    return jax.vmap(row)(boxes1, areas1)


__all__ = ["jaccard_overlap", "pairwise_jaccard"]
