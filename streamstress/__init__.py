"""Secure-stream client stress harness."""

__version__ = "0.1.0"
