"""Utility package for tagvault."""

from . import imaging, validation

__all__ = ["imaging", "validation"]
