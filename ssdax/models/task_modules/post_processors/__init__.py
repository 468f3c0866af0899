"""Post-processing utilities for SSD layer outputs."""

from __future__ import annotations

from .ssd_postprocessor import SSDLayerConfig, layers_from_config, postprocess_layer

__all__ = ["SSDLayerConfig", "layers_from_config", "postprocess_layer"]
