"""CLI command modules."""

from . import batch

__all__ = ["batch"]
