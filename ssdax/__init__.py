"""SSDAX: SSD box decoding, anchor generation and suppression in JAX."""

from ssdax.models.utils import (
    AnchorShape,
    SelectionResult,
    decode_boxes,
    generate_anchor_shapes,
    jaccard_overlap,
    select_top_k_with_nms,
)

__all__ = [
    "AnchorShape",
    "SelectionResult",
    "decode_boxes",
    "generate_anchor_shapes",
    "jaccard_overlap",
    "select_top_k_with_nms",
]
