"""Top-K selection and non-maximum suppression for SSD layers.

Two suppression rules are implemented:

* :func:`select_top_k_with_nms` ranks the anchors of a layer by score, keeps
  the ``top_k`` best and drops every candidate that overlaps *any* earlier
  ranked candidate by more than the threshold, whether or not that earlier
  candidate survived.
* :func:`greedy_nms` is the canonical greedy algorithm that only compares a
  candidate against boxes already kept. It is exposed through
  ``select_top_k_with_nms(..., suppress_against="kept")``.

Ranking is a total order: scores descending, ties broken by ascending index.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Final, Literal, NamedTuple

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float, Int

from .iou import pairwise_jaccard

logger = logging.getLogger(__name__)

SingleBoxes = Float[Array, "num_boxes 4"]
BatchedBoxes = Float[Array, "batch num_boxes 4"]
SingleScores = Float[Array, "num_boxes"]
BatchedScores = Float[Array, "batch num_boxes"]

DEFAULT_NMS_THRESHOLD: Final[float] = 0.45
_NEGATIVE_ONE: Final[int] = -1
_SUPPRESSION_MODES: Final[tuple[str, ...]] = ("ranked", "kept")


class NMSResult(NamedTuple):
    """Container for :func:`greedy_nms` outputs.

    Attributes:
        indices: Indices of the kept boxes in ranked order, padded with ``-1``
            to ``min(num_boxes, max_output_size)``.
        valid_counts: Number of valid entries in ``indices``.
    """

    indices: Int[Array, "max_kept"] | Int[Array, "batch max_kept"]
    valid_counts: Int[Array, ""] | Int[Array, "batch"]


class SelectionResult(NamedTuple):
    """Boxes kept for one layer, in ranked order.

    Attributes:
        scores: Kept confidence scores ``[K]``.
        boxes: Kept ``(ymin, xmin, ymax, xmax)`` boxes flattened to ``[K * 4]``.
        indices: Source anchor index of each kept entry ``[K]``.
    """

    scores: Float[Array, "kept"]
    boxes: Float[Array, "kept_times_4"]
    indices: Int[Array, "kept"]


def rank_by_score(scores: SingleScores | Sequence[float]) -> Int[Array, "num_boxes"]:
    """Return indices ordered by descending score, ties by ascending index."""
    scores = jnp.asarray(scores, dtype=jnp.float32)
    if scores.ndim != 1:
        raise ValueError(f"scores must have shape (N,); received {scores.shape}.")
    positions = jnp.arange(scores.shape[0], dtype=jnp.int32)
    return jnp.lexsort((positions, -scores)).astype(jnp.int32)


def _greedy_nms_single(
    boxes: SingleBoxes,
    scores: SingleScores,
    iou_threshold: float,
    max_output_size: int,
) -> tuple[Int[Array, "max_kept"], Int[Array, ""]]:
    num_boxes = boxes.shape[0]
    if num_boxes == 0 or max_output_size == 0:
        return jnp.zeros((0,), dtype=jnp.int32), jnp.asarray(0, dtype=jnp.int32)

    max_kept = min(num_boxes, max_output_size)
    order = rank_by_score(scores)
    overlaps = pairwise_jaccard(boxes[order], boxes[order]) > iou_threshold

    def cond_fn(state: tuple[Array, Array, Array, Array]) -> Array:
        rank, kept_count, _, _ = state
        return jnp.logical_and(rank < num_boxes, kept_count < max_kept)

    def body_fn(state: tuple[Array, Array, Array, Array]) -> tuple[Array, Array, Array, Array]:
        rank, kept_count, suppressed, kept = state
        keep_this = jnp.logical_not(suppressed[rank])
        suppressed = jnp.where(keep_this, jnp.logical_or(suppressed, overlaps[rank]), suppressed)
        kept = jnp.where(keep_this, kept.at[kept_count].set(order[rank]), kept)
        return rank + 1, kept_count + keep_this.astype(jnp.int32), suppressed, kept

    initial_state = (
        jnp.asarray(0, dtype=jnp.int32),
        jnp.asarray(0, dtype=jnp.int32),
        jnp.zeros((num_boxes,), dtype=jnp.bool_),
        jnp.full((max_kept,), _NEGATIVE_ONE, dtype=jnp.int32),
    )
    _, valid_count, _, kept_indices = jax.lax.while_loop(cond_fn, body_fn, initial_state)
    return kept_indices, valid_count


def greedy_nms(
    boxes: SingleBoxes | BatchedBoxes,
    scores: SingleScores | BatchedScores,
    iou_threshold: float = DEFAULT_NMS_THRESHOLD,
    max_output_size: int = 200,
) -> NMSResult:
    """Perform canonical (batched) greedy non-maximum suppression.

    Args:
        boxes: Boxes in ``(ymin, xmin, ymax, xmax)`` format shaped ``(N, 4)``
            or ``(B, N, 4)``.
        scores: Scores shaped ``(N,)`` or ``(B, N)``.
        iou_threshold: Candidates with overlap ``> iou_threshold`` against a
            kept box are suppressed.
        max_output_size: Maximum number of boxes kept per example.

    Returns:
        An :class:`NMSResult` with ``-1`` padded indices in ranked order.
    """
    boxes_array = jnp.asarray(boxes, dtype=jnp.float32)
    scores_array = jnp.asarray(scores, dtype=jnp.float32)
    if max_output_size < 0:
        raise ValueError(f"max_output_size must be non-negative; received {max_output_size}.")

    if boxes_array.ndim == 2:
        if boxes_array.shape[-1] != 4:
            raise ValueError(f"boxes must have shape (N, 4); received {boxes_array.shape}.")
        if scores_array.shape != boxes_array.shape[:1]:
            raise ValueError(f"scores must have shape (N,); received {scores_array.shape} for {boxes_array.shape[0]} boxes.")
        indices, valid_count = _greedy_nms_single(boxes_array, scores_array, iou_threshold, max_output_size)
        return NMSResult(indices=indices, valid_counts=valid_count)

    if boxes_array.ndim != 3 or boxes_array.shape[-1] != 4:
        raise ValueError(f"boxes must have shape (N, 4) or (B, N, 4); received {boxes_array.shape}.")
    if scores_array.shape != boxes_array.shape[:2]:
        raise ValueError(f"scores must have shape (B, N) matching boxes; received {scores_array.shape} for boxes {boxes_array.shape}.")

    batched = jax.vmap(_greedy_nms_single, in_axes=(0, 0, None, None))
    indices, counts = batched(boxes_array, scores_array, iou_threshold, max_output_size)
    return NMSResult(indices=indices, valid_counts=counts)


def select_top_k_with_nms(
    scores: SingleScores | Sequence[float],
    localization: SingleBoxes | Float[Array, "num_boxes_times_4"] | Sequence[float],
    anchor_count: int,
    top_k: int,
    *,
    nms_threshold: float = DEFAULT_NMS_THRESHOLD,
    suppress_against: Literal["ranked", "kept"] = "ranked",
) -> SelectionResult:
    """Select the ``top_k`` best boxes of a layer and suppress duplicates.

    Args:
        scores: One confidence score per anchor, length ``anchor_count``.
        localization: Decoded ``(ymin, xmin, ymax, xmax)`` boxes parallel to
            ``scores``, flat (``anchor_count * 4``) or shaped ``(anchor_count, 4)``.
        anchor_count: Number of anchors in the layer.
        top_k: Number of ranked candidates considered, ``1 <= top_k <= anchor_count``.
        nms_threshold: Overlap above which a candidate is discarded.
        suppress_against: ``"ranked"`` compares each candidate with every
            earlier ranked candidate. ``"kept"`` compares only with kept ones.

    Returns:
        A :class:`SelectionResult` with at most ``top_k`` entries sorted by
        non-increasing score. The top ranked candidate is always kept.

    Raises:
        ValueError: If the buffer sizes disagree with ``anchor_count``, if
            ``top_k`` is out of range or ``suppress_against`` is unknown.
    """
    scores_array = jnp.asarray(scores, dtype=jnp.float32)
    boxes_array = jnp.asarray(localization, dtype=jnp.float32)

    if scores_array.ndim != 1 or scores_array.shape[0] != anchor_count:
        raise ValueError(f"scores must have shape ({anchor_count},); received {scores_array.shape}.")
    if boxes_array.size != anchor_count * 4:
        raise ValueError(f"localization must hold anchor_count * 4 = {anchor_count * 4} values; received {boxes_array.size}.")
    if not 1 <= top_k <= anchor_count:
        raise ValueError(f"top_k must satisfy 1 <= top_k <= anchor_count ({anchor_count}); received {top_k}.")
    if suppress_against not in _SUPPRESSION_MODES:
        raise ValueError(f"suppress_against must be one of {_SUPPRESSION_MODES}; received {suppress_against!r}.")

    boxes_array = boxes_array.reshape(anchor_count, 4)
    ranked = rank_by_score(scores_array)[:top_k]
    ranked_boxes = boxes_array[ranked]

    if suppress_against == "ranked":
        overlaps = pairwise_jaccard(ranked_boxes, ranked_boxes) > nms_threshold
        suppressed = jnp.any(jnp.tril(overlaps, k=-1), axis=1)
        kept = ranked[jnp.nonzero(jnp.logical_not(suppressed))[0]]
    else:
        result = greedy_nms(ranked_boxes, scores_array[ranked], nms_threshold, top_k)
        kept = ranked[result.indices[: int(result.valid_counts)]]

    logger.debug("Kept %d of %d ranked candidates (suppress_against=%s).", kept.shape[0], top_k, suppress_against)
    return SelectionResult(
        scores=scores_array[kept],
        boxes=boxes_array[kept].reshape(-1),
        indices=kept,
    )


__all__ = ["DEFAULT_NMS_THRESHOLD", "NMSResult", "SelectionResult", "greedy_nms", "rank_by_score", "select_top_k_with_nms"]
