"""Task-specific modules built on top of :mod:`ssdax.models.utils`."""
