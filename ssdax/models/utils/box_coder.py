"""SSD bounding box decoding and encoding.

Regression outputs of an SSD layer are laid out as ``[H, W, A, 4]`` with the
channels ``(cy, cx, h, w)`` expressed relative to the prior of anchor ``a``
placed at cell ``(h, w)``. Decoding applies::

    g_cy = d_cy + r_cy * d_h * s_cy
    g_cx = d_cx + r_cx * d_w * s_cx
    g_h  = exp(r_h * d_h * s_h)
    g_w  = exp(r_w * d_w * s_w)

where ``(d_cy, d_cx)`` is the prior center, ``(d_h, d_w)`` the prior shape and
``s`` the prior scaling, and returns normalized ``(ymin, xmin, ymax, xmax)``
corners clamped to ``[0, 1]``.

Three helpers are provided:

* :func:`decode_regression` is the functional JAX implementation.
* :func:`decode_boxes` rewrites a caller-owned ``numpy`` buffer in place.
* :func:`encode_boxes` is the inverse transform used to build regression targets.
"""

from __future__ import annotations

from collections.abc import Sequence

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from .anchor_generator import AnchorShape

Regression = Float[Array, "height width anchors 4"]
Boxes = Float[Array, "height width anchors 4"]
AnchorShapes = Sequence[AnchorShape] | Sequence[Sequence[float]] | Float[Array, "anchors 2"]

_EPSILON = 1e-7


def _validate_scaling(prior_scaling: Sequence[float]) -> jnp.ndarray:
    """Convert and validate the per-channel prior scaling."""
    scaling = jnp.asarray(prior_scaling, dtype=jnp.float32)
    if scaling.shape != (4,):
        raise ValueError(f"prior_scaling must contain four values, received shape {scaling.shape}.")
    if bool(jnp.any(scaling <= 0.0)):
        raise ValueError(f"prior_scaling must be positive; received {tuple(float(s) for s in scaling)}.")
    return scaling


def _validate_priors(anchor_shapes: AnchorShapes) -> jnp.ndarray:
    """Stack anchor shapes into a ``[A, 2]`` ``(height, width)`` array."""
    priors = jnp.asarray(anchor_shapes, dtype=jnp.float32)
    if priors.ndim != 2 or priors.shape[-1] != 2:
        raise ValueError(f"anchor_shapes must have shape (A, 2); received {priors.shape}.")
    if priors.shape[0] == 0:
        raise ValueError("anchor_shapes must contain at least one shape.")
    return priors


def _validate_geometry(
    feature_shape: Sequence[int],
    image_shape: Sequence[float],
) -> tuple[tuple[int, int], tuple[float, float]]:
    if len(feature_shape) != 2:
        raise ValueError(f"feature_shape must be (height, width); received {tuple(feature_shape)}.")
    if len(image_shape) != 2:
        raise ValueError(f"image_shape must be (height, width); received {tuple(image_shape)}.")
    height, width = (int(v) for v in feature_shape)
    image_height, image_width = (float(v) for v in image_shape)
    if height <= 0 or width <= 0:
        raise ValueError(f"feature_shape must be positive; received ({height}, {width}).")
    if image_height <= 0 or image_width <= 0:
        raise ValueError(f"image_shape must be positive; received ({image_height}, {image_width}).")
    return (height, width), (image_height, image_width)


def _reshape_to_layer(values: jnp.ndarray, layer_shape: tuple[int, int, int, int], name: str) -> jnp.ndarray:
    expected = int(np.prod(layer_shape))
    if values.size != expected:
        raise ValueError(f"{name} must hold H*W*A*4 = {expected} values for layer shape {layer_shape}; received {values.size}.")
    return values.reshape(layer_shape)


def prior_centers(
    feature_shape: Sequence[int],
    image_shape: Sequence[float],
    step: float = 0,
    offset: float = 0.5,
) -> tuple[Float[Array, "height"], Float[Array, "width"]]:
    """Return normalized prior centers for the rows and columns of a layer.

    Args:
        feature_shape: Layer shape ``(H, W)``.
        image_shape: Image shape ``(height, width)`` in pixels.
        step: Pixel stride of the layer. ``0`` derives it as ``height / H``;
            the derived stride is used for both axes.
        offset: Sub-cell offset of the center, as a fraction of a cell.

    Returns:
        Tuple ``(center_y, center_x)`` shaped ``[H]`` and ``[W]``.
    """
    (height, width), (image_height, image_width) = _validate_geometry(feature_shape, image_shape)
    if step < 0:
        raise ValueError(f"step must be non-negative; received {step}.")

    step_scale = image_height / height if step == 0 else float(step)
    rows = jnp.arange(height, dtype=jnp.float32)
    cols = jnp.arange(width, dtype=jnp.float32)
    center_y = (rows + offset) * step_scale / image_height
    center_x = (cols + offset) * step_scale / image_width
    return center_y, center_x


def decode_regression(
    regression: Regression | Float[Array, "n"],
    feature_shape: Sequence[int],
    image_shape: Sequence[float],
    step: float,
    anchor_shapes: AnchorShapes,
    prior_scaling: Sequence[float],
    offset: float = 0.5,
) -> Boxes:
    """Decode SSD regression outputs into normalized corner boxes.

    Args:
        regression: Layer regression output, either flat or shaped
            ``[H, W, A, 4]`` with channels ``(cy, cx, h, w)``.
        feature_shape: Layer shape ``(H, W)``.
        image_shape: Image shape ``(height, width)`` in pixels.
        step: Pixel stride of the layer, ``0`` to derive it from ``H``.
        anchor_shapes: ``A`` prior shapes in generator order.
        prior_scaling: Scale factors for the ``(cy, cx, h, w)`` channels.
        offset: Sub-cell offset of the prior centers.

    Returns:
        Boxes shaped ``[H, W, A, 4]`` in ``(ymin, xmin, ymax, xmax)`` format,
        every coordinate clamped to ``[0, 1]``.
    """
    (height, width), _ = _validate_geometry(feature_shape, image_shape)
    priors = _validate_priors(anchor_shapes)
    scaling = _validate_scaling(prior_scaling)
    regression = _reshape_to_layer(
        jnp.asarray(regression, dtype=jnp.float32),
        (height, width, priors.shape[0], 4),
        "regression",
    )

    center_y, center_x = prior_centers(feature_shape, image_shape, step, offset)
    prior_h = priors[:, 0]
    prior_w = priors[:, 1]

    g_cy = center_y[:, None, None] + regression[..., 0] * prior_h * scaling[0]
    g_cx = center_x[None, :, None] + regression[..., 1] * prior_w * scaling[1]
    g_h = jnp.exp(regression[..., 2] * prior_h * scaling[2])
    g_w = jnp.exp(regression[..., 3] * prior_w * scaling[3])

    boxes = jnp.stack((g_cy - g_h / 2, g_cx - g_w / 2, g_cy + g_h / 2, g_cx + g_w / 2), axis=-1)
    return jnp.clip(boxes, min=0.0, max=1.0)


def decode_boxes(
    buffer: np.ndarray,
    feature_shape: Sequence[int],
    image_shape: Sequence[float],
    step: float,
    anchor_shapes: AnchorShapes,
    prior_scaling: Sequence[float],
    offset: float = 0.5,
) -> None:
    """Decode an SSD localization buffer in place.

    The buffer keeps its identity, shape and dtype; only its values are
    replaced by the ``(ymin, xmin, ymax, xmax)`` boxes computed by
    :func:`decode_regression`.

    Raises:
        TypeError: If ``buffer`` is not a floating point ``numpy`` array.
        ValueError: If the buffer is read-only, not C-contiguous, or its size
            does not match ``H * W * len(anchor_shapes) * 4``.
    """
    if not isinstance(buffer, np.ndarray):
        raise TypeError(f"buffer must be a numpy.ndarray; received {type(buffer).__name__}.")
    if not np.issubdtype(buffer.dtype, np.floating):
        raise TypeError(f"buffer must have a floating dtype; received {buffer.dtype}.")
    if not buffer.flags.writeable:
        raise ValueError("buffer must be writable to be decoded in place.")
    if not buffer.flags.c_contiguous:
        raise ValueError("buffer must be C-contiguous to be decoded in place.")

    decoded = decode_regression(buffer, feature_shape, image_shape, step, anchor_shapes, prior_scaling, offset)
    buffer.reshape(decoded.shape)[...] = np.asarray(decoded)


def encode_boxes(
    boxes: Boxes | Float[Array, "n"],
    feature_shape: Sequence[int],
    image_shape: Sequence[float],
    step: float,
    anchor_shapes: AnchorShapes,
    prior_scaling: Sequence[float],
    offset: float = 0.5,
    *,
    epsilon: float = _EPSILON,
) -> Regression:
    """Encode normalized corner boxes into SSD regression space.

    This is the inverse of :func:`decode_regression` for boxes that lie inside
    the image, where the decoder's clamping is a no-op::

        r_cy = (cy - d_cy) / (d_h * s_cy)
        r_cx = (cx - d_cx) / (d_w * s_cx)
        r_h  = log(h) / (d_h * s_h)
        r_w  = log(w) / (d_w * s_w)

    Args:
        boxes: Boxes shaped ``[H, W, A, 4]`` (or flat) in
            ``(ymin, xmin, ymax, xmax)`` format.
        epsilon: Lower bound on box height/width before taking the log.

    Returns:
        Regression values shaped ``[H, W, A, 4]``.
    """
    (height, width), _ = _validate_geometry(feature_shape, image_shape)
    priors = _validate_priors(anchor_shapes)
    scaling = _validate_scaling(prior_scaling)
    boxes = _reshape_to_layer(
        jnp.asarray(boxes, dtype=jnp.float32),
        (height, width, priors.shape[0], 4),
        "boxes",
    )

    center_y, center_x = prior_centers(feature_shape, image_shape, step, offset)
    prior_h = priors[:, 0]
    prior_w = priors[:, 1]

    ymin, xmin, ymax, xmax = boxes[..., 0], boxes[..., 1], boxes[..., 2], boxes[..., 3]
    box_h = jnp.maximum(ymax - ymin, epsilon)
    box_w = jnp.maximum(xmax - xmin, epsilon)
    box_cy = ymin + 0.5 * (ymax - ymin)
    box_cx = xmin + 0.5 * (xmax - xmin)

    r_cy = (box_cy - center_y[:, None, None]) / (prior_h * scaling[0])
    r_cx = (box_cx - center_x[None, :, None]) / (prior_w * scaling[1])
    r_h = jnp.log(box_h) / (prior_h * scaling[2])
    r_w = jnp.log(box_w) / (prior_w * scaling[3])

    return jnp.stack((r_cy, r_cx, r_h, r_w), axis=-1)


__all__ = ["decode_boxes", "decode_regression", "encode_boxes", "prior_centers"]
