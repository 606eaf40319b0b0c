"""Encrypted, tagged item datasources with pooled thumbnails."""

__version__ = "0.1.0"
