"""Pytest configuration for SSDAX tests."""


def pytest_configure(config):
    """Run JAX on CPU for deterministic test numerics."""
    import os

    os.environ["JAX_PLATFORMS"] = "cpu"
