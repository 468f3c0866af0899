"""Tests for single-layer SSD post-processing and its configuration."""

from __future__ import annotations

import numpy as np
import pytest
from ml_collections import ConfigDict

from ssdax.configs import get_config
from ssdax.models.task_modules.post_processors import SSDLayerConfig, layers_from_config, postprocess_layer
from ssdax.models.utils import encode_boxes, prior_centers

IMAGE_SHAPE = (300, 300)


@pytest.fixture
def layer() -> SSDLayerConfig:
    return SSDLayerConfig(min_size=30, max_size=60, ratios=(2.0,), step=100, feature_shape=(3, 3))


def _cell_boxes(layer: SSDLayerConfig, size: float = 0.05) -> np.ndarray:
    """Identical small boxes for every anchor of a cell, centered on the cell."""
    center_y, center_x = (np.asarray(c) for c in prior_centers(layer.feature_shape, IMAGE_SHAPE, layer.step, layer.offset))
    anchors = layer.anchors_per_location
    cy = np.broadcast_to(center_y[:, None, None], (3, 3, anchors))
    cx = np.broadcast_to(center_x[None, :, None], (3, 3, anchors))
    half = size / 2
    return np.stack((cy - half, cx - half, cy + half, cx + half), axis=-1).astype(np.float32)


def test_default_config_describes_six_layers() -> None:
    config = get_config()
    layers = layers_from_config(config)

    assert len(layers) == 6
    assert [layer.anchors_per_location for layer in layers] == [3, 4, 4, 4, 3, 3]
    assert [layer.feature_shape for layer in layers] == [(38, 38), (19, 19), (10, 10), (5, 5), (3, 3), (1, 1)]
    assert all(layer.prior_scaling == (0.1, 0.1, 0.2, 0.2) for layer in layers)
    assert config.nms_threshold == pytest.approx(0.45)


def test_layer_from_mapping_uses_defaults() -> None:
    layer = SSDLayerConfig.from_config({"min_size": 30}, prior_scaling=(1.0, 1.0, 1.0, 1.0))

    assert layer.max_size == 0.0
    assert layer.ratios == ()
    assert layer.step == 0
    assert layer.offset == 0.5
    assert layer.prior_scaling == (1.0, 1.0, 1.0, 1.0)
    assert layer.anchors_per_location == 1


def test_layer_scaling_overrides_global_scaling() -> None:
    cfg = ConfigDict({"min_size": 30, "prior_scaling": (0.2, 0.2, 0.5, 0.5)})
    layer = SSDLayerConfig.from_config(cfg, prior_scaling=(0.1, 0.1, 0.2, 0.2))
    assert layer.prior_scaling == (0.2, 0.2, 0.5, 0.5)


def test_missing_keys_raise() -> None:
    with pytest.raises(KeyError, match="min_size"):
        SSDLayerConfig.from_config({"max_size": 60})
    with pytest.raises(KeyError, match="layers"):
        layers_from_config(ConfigDict({"top_k": 10}))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_size": 30, "step": -1},
        {"min_size": 30, "prior_scaling": (0.1, 0.1, 0.2)},
        {"min_size": 30, "feature_shape": (0, 3)},
        {"min_size": 0},
    ],
)
def test_invalid_layer_config_raises(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        SSDLayerConfig(**kwargs)


def test_anchor_shapes_follow_generator_order(layer: SSDLayerConfig) -> None:
    shapes = layer.anchor_shapes(*IMAGE_SHAPE)
    np.testing.assert_allclose(np.asarray(shapes), [[0.1, 0.1], [0.1414214, 0.1414214], [0.0707107, 0.1414214]], rtol=1e-5)


def test_postprocess_layer_keeps_best_anchor_per_cell(layer: SSDLayerConfig) -> None:
    boxes = _cell_boxes(layer)
    anchor_shapes = layer.anchor_shapes(*IMAGE_SHAPE)
    localization = np.array(
        encode_boxes(boxes, layer.feature_shape, IMAGE_SHAPE, layer.step, anchor_shapes, layer.prior_scaling, layer.offset),
        dtype=np.float32,
    ).reshape(-1)
    rng = np.random.default_rng(7)
    scores = rng.permutation(boxes.shape[0] * boxes.shape[1] * boxes.shape[2]).astype(np.float32) / 100.0

    result = postprocess_layer(localization, scores, None, IMAGE_SHAPE, layer, top_k=1000)

    per_cell = scores.reshape(9, 3)
    expected_indices = np.arange(9) * 3 + per_cell.argmax(axis=1)
    expected_indices = expected_indices[np.argsort(-scores[expected_indices], kind="stable")]

    np.testing.assert_array_equal(result.indices, expected_indices)
    np.testing.assert_allclose(result.scores, scores[expected_indices], rtol=1e-6)
    np.testing.assert_allclose(localization.reshape(boxes.shape), boxes, rtol=1e-5, atol=1e-5)


def test_postprocess_layer_respects_top_k(layer: SSDLayerConfig) -> None:
    localization = np.array(
        encode_boxes(_cell_boxes(layer), (3, 3), IMAGE_SHAPE, layer.step, layer.anchor_shapes(*IMAGE_SHAPE), layer.prior_scaling),
        dtype=np.float32,
    )
    scores = np.linspace(0.0, 1.0, 27, dtype=np.float32)

    result = postprocess_layer(localization, scores, (3, 3), IMAGE_SHAPE, layer, top_k=2)

    np.testing.assert_array_equal(result.indices, [26])


def test_postprocess_layer_requires_feature_shape() -> None:
    layer = SSDLayerConfig(min_size=30)
    with pytest.raises(ValueError, match="feature_shape"):
        postprocess_layer(np.zeros(4, dtype=np.float32), [0.5], None, IMAGE_SHAPE, layer, top_k=1)


def test_postprocess_layer_rejects_non_positive_top_k(layer: SSDLayerConfig) -> None:
    with pytest.raises(ValueError, match="top_k"):
        postprocess_layer(np.zeros(108, dtype=np.float32), np.zeros(27), None, IMAGE_SHAPE, layer, top_k=0)
