"""Single-layer SSD post-processing.

Chains the numeric building blocks for one output layer of an SSD detector:

* Generate the layer's prior shapes from its size/ratio configuration.
* Decode the regression buffer in place into normalized corner boxes.
* Rank by score, keep the ``top_k`` best and suppress overlapping duplicates.

Layer settings are described by :class:`SSDLayerConfig`, which can be built
from an :class:`ml_collections.ConfigDict` (see :mod:`ssdax.configs.face_ssd`).
Combining the results of several layers is left to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import numpy as np
from ml_collections import ConfigDict

from ssdax.models.utils.anchor_generator import AnchorShape, SSDAnchorGenerator
from ssdax.models.utils.box_coder import decode_boxes
from ssdax.models.utils.nms import DEFAULT_NMS_THRESHOLD, SelectionResult, select_top_k_with_nms

logger = logging.getLogger(__name__)

DEFAULT_PRIOR_SCALING: tuple[float, float, float, float] = (0.1, 0.1, 0.2, 0.2)

LayerMapping = Mapping[str, Any] | ConfigDict


@dataclass(frozen=True, kw_only=True)
class SSDLayerConfig:
    """Configuration of one SSD output layer.

    Attributes:
        min_size: Base prior size in pixels.
        max_size: Upper prior size in pixels (``0`` disables the extra prior).
        ratios: Aspect ratios of the additional priors.
        step: Pixel stride of the layer; ``0`` derives it from the feature height.
        offset: Sub-cell offset of the prior centers.
        prior_scaling: Scale factors of the ``(cy, cx, h, w)`` regression channels.
        feature_shape: Optional expected ``(H, W)`` of the layer output.
    """

    min_size: float
    max_size: float = 0.0
    ratios: Sequence[float] = ()
    step: float = 0
    offset: float = 0.5
    prior_scaling: Sequence[float] = DEFAULT_PRIOR_SCALING
    feature_shape: tuple[int, int] | None = None

    def __post_init__(self) -> None:
        if self.step < 0:
            raise ValueError(f"step must be non-negative; received {self.step}.")
        if len(self.prior_scaling) != 4 or any(s <= 0 for s in self.prior_scaling):
            raise ValueError(f"prior_scaling must contain four positive values; received {tuple(self.prior_scaling)}.")
        if self.feature_shape is not None:
            if len(self.feature_shape) != 2 or any(int(v) <= 0 for v in self.feature_shape):
                raise ValueError(f"feature_shape must be a positive (H, W) pair; received {self.feature_shape}.")
            object.__setattr__(self, "feature_shape", (int(self.feature_shape[0]), int(self.feature_shape[1])))
        object.__setattr__(self, "prior_scaling", tuple(float(s) for s in self.prior_scaling))
        object.__setattr__(self, "_generator", SSDAnchorGenerator(min_size=self.min_size, max_size=self.max_size, ratios=self.ratios))
        object.__setattr__(self, "ratios", self._generator.ratios)

    @classmethod
    def from_config(cls, cfg: LayerMapping, *, prior_scaling: Sequence[float] | None = None) -> SSDLayerConfig:
        """Build a layer configuration from a mapping or ``ConfigDict``.

        ``prior_scaling`` is used when the layer entry does not define its own.
        """
        if "min_size" not in cfg:
            raise KeyError("Layer configuration is missing 'min_size'.")
        layer_scaling = cfg.get("prior_scaling", None) or prior_scaling or DEFAULT_PRIOR_SCALING
        feature_shape = cfg.get("feature_shape", None)
        return cls(
            min_size=float(cfg["min_size"]),
            max_size=float(cfg.get("max_size", 0.0)),
            ratios=tuple(cfg.get("ratios", ())),
            step=cfg.get("step", 0),
            offset=float(cfg.get("offset", 0.5)),
            prior_scaling=tuple(layer_scaling),
            feature_shape=tuple(feature_shape) if feature_shape is not None else None,
        )

    @property
    def anchors_per_location(self) -> int:
        return self._generator.anchors_per_location

    def anchor_shapes(self, image_height: float, image_width: float) -> list[AnchorShape]:
        """Return the layer's prior shapes for the given image size."""
        return self._generator.shapes(image_height, image_width)


def layers_from_config(config: ConfigDict | Mapping[str, Any]) -> tuple[SSDLayerConfig, ...]:
    """Create one :class:`SSDLayerConfig` per entry of ``config.layers``."""
    if "layers" not in config:
        raise KeyError("Detector configuration is missing 'layers'.")
    prior_scaling = config.get("prior_scaling", None)
    return tuple(SSDLayerConfig.from_config(layer, prior_scaling=prior_scaling) for layer in config["layers"])


def postprocess_layer(
    localization: np.ndarray,
    scores: np.ndarray | Sequence[float],
    feature_shape: Sequence[int] | None,
    image_shape: Sequence[float],
    layer: SSDLayerConfig,
    *,
    top_k: int,
    nms_threshold: float = DEFAULT_NMS_THRESHOLD,
    suppress_against: Literal["ranked", "kept"] = "ranked",
) -> SelectionResult:
    """Turn one layer's raw outputs into its final boxes.

    Args:
        localization: Writable ``numpy`` regression buffer of ``H * W * A * 4``
            values. It is decoded in place.
        scores: ``H * W * A`` confidence scores for the box slot of interest.
        feature_shape: Layer shape ``(H, W)``; ``None`` uses ``layer.feature_shape``.
        image_shape: Image shape ``(height, width)`` in pixels.
        layer: Layer configuration.
        top_k: Number of ranked candidates considered. Clamped to the number
            of anchors of the layer.
        nms_threshold: Overlap above which a candidate is discarded.
        suppress_against: Suppression rule, see :func:`select_top_k_with_nms`.

    Returns:
        The :class:`SelectionResult` of the layer.
    """
    if feature_shape is None:
        if layer.feature_shape is None:
            raise ValueError("feature_shape must be given when the layer configuration does not define one.")
        feature_shape = layer.feature_shape
    if top_k < 1:
        raise ValueError(f"top_k must be positive; received {top_k}.")

    image_height, image_width = image_shape
    anchor_shapes = layer.anchor_shapes(image_height, image_width)
    decode_boxes(localization, feature_shape, image_shape, layer.step, anchor_shapes, layer.prior_scaling, layer.offset)

    height, width = feature_shape
    anchor_count = int(height) * int(width) * len(anchor_shapes)
    effective_top_k = min(top_k, anchor_count)
    logger.debug(
        "Decoded layer %sx%s with %d priors per cell; selecting top %d of %d anchors.",
        height,
        width,
        len(anchor_shapes),
        effective_top_k,
        anchor_count,
    )

    flat_scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    return select_top_k_with_nms(
        flat_scores,
        localization,
        anchor_count,
        effective_top_k,
        nms_threshold=nms_threshold,
        suppress_against=suppress_against,
    )


__all__ = ["DEFAULT_PRIOR_SCALING", "SSDLayerConfig", "layers_from_config", "postprocess_layer"]
