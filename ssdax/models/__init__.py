"""SSDAX model component exports."""
