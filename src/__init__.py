# src/__init__.py — v1
"""progcompute: time-sliced progressive computation with a persistent result cache."""

from progcompute.version import __version__

__all__ = ["__version__"]
