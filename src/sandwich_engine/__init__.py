"""Sandwich opportunity engine: mempool swap detection, evaluation, screening and bundle execution."""

__version__ = "0.1.0"
