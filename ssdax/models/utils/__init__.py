"""Numeric building blocks for SSD post-processing."""

from .anchor_generator import AnchorShape, SSDAnchorGenerator, generate_anchor_shapes
from .box_coder import decode_boxes, decode_regression, encode_boxes, prior_centers
from .iou import jaccard_overlap, pairwise_jaccard
from .nms import NMSResult, SelectionResult, greedy_nms, rank_by_score, select_top_k_with_nms

__all__ = [
    "AnchorShape",
    "NMSResult",
    "SSDAnchorGenerator",
    "SelectionResult",
    "decode_boxes",
    "decode_regression",
    "encode_boxes",
    "generate_anchor_shapes",
    "greedy_nms",
    "jaccard_overlap",
    "pairwise_jaccard",
    "prior_centers",
    "rank_by_score",
    "select_top_k_with_nms",
]
