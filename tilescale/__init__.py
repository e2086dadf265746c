"""Tile-based image super-resolution service."""

__version__ = "1.0.0"
