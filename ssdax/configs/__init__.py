"""Detector configurations."""

from .face_ssd import get_config

__all__ = ["get_config"]
