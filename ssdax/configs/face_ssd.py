"""Configuration of a 300x300 single-shot face detector.

The six output layers follow the classic SSD300 layout. Layer ``i`` predicts
``feature_shape[i]`` cells with ``1 + 1 + len(ratios)`` priors each.
"""

from __future__ import annotations

from ml_collections import ConfigDict


def _layer(feature_size: int, min_size: int, max_size: int, step: int, ratios: tuple[float, ...]) -> dict:
    return {
        "feature_shape": (feature_size, feature_size),
        "min_size": min_size,
        "max_size": max_size,
        "step": step,
        "ratios": ratios,
        "offset": 0.5,
    }


def get_config() -> ConfigDict:
    """Return the default face SSD post-processing configuration."""
    config = ConfigDict()
    config.image_shape = (300, 300)
    config.top_k = 200
    config.nms_threshold = 0.45
    config.prior_scaling = (0.1, 0.1, 0.2, 0.2)
    config.layers = [
        _layer(38, 30, 60, 8, (2.0,)),
        _layer(19, 60, 111, 16, (2.0, 3.0)),
        _layer(10, 111, 162, 32, (2.0, 3.0)),
        _layer(5, 162, 213, 64, (2.0, 3.0)),
        _layer(3, 213, 264, 100, (2.0,)),
        _layer(1, 264, 315, 300, (2.0,)),
    ]
    return config
